"""
History Query Service

Read-only projections over an account's transaction records: full history,
filters by kind and by time range, fixed-size pages, a reconciliation check
and CSV export. Nothing here writes to the store.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union
import csv
import io

from .errors import AccountNotFound, InvalidPage
from .ledger import Account, LedgerStore, TransactionKind, TransactionRecord
from .money import ZERO


CSV_COLUMNS = [
    "transaction_id", "account_id", "type", "amount", "balance_after",
    "description", "counterparty_account_id", "timestamp"
]


@dataclass
class Reconciliation:
    """Result of replaying an account's records against its balance"""
    account_id: str
    stored_balance: Decimal
    replayed_balance: Decimal
    record_count: int
    broken_sequences: List[int] = field(default_factory=list)

    @property
    def is_balanced(self) -> bool:
        return self.stored_balance == self.replayed_balance and not self.broken_sequences


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are taken to be UTC, matching stored timestamps
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class HistoryQueryService:
    """Queries over committed transaction records"""

    def __init__(self, store: LedgerStore, page_size: int = 10):
        self.store = store
        self.page_size = page_size

    def _account(self, account_ref: str) -> Account:
        account = self.store.resolve(account_ref)
        if account is None:
            raise AccountNotFound(f"Account {account_ref} not found", account_ref=account_ref)
        return account

    def history(self, account_ref: str) -> List[TransactionRecord]:
        """Full history of an account, most recent first"""
        return self.store.records_for_account(self._account(account_ref).id)

    def by_kind(
        self,
        account_ref: str,
        kind: Optional[Union[TransactionKind, str]]
    ) -> List[TransactionRecord]:
        """History filtered to one record kind; None returns everything"""
        records = self.history(account_ref)
        if kind is None:
            return records
        kind = TransactionKind(kind)
        return [r for r in records if r.kind == kind]

    def between(
        self,
        account_ref: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[TransactionRecord]:
        """History with start <= created_at <= end; either bound may be open"""
        start, end = _as_utc(start), _as_utc(end)
        return [
            r for r in self.history(account_ref)
            if (start is None or r.created_at >= start)
            and (end is None or r.created_at <= end)
        ]

    def page(
        self,
        account_ref: str,
        page_index: int,
        page_size: Optional[int] = None
    ) -> List[TransactionRecord]:
        """
        One zero-based page of the history

        Pages past the end are empty rather than an error.

        Raises:
            InvalidPage: negative page index or non-positive page size
        """
        return self.paginate(self.history(account_ref), page_index, page_size)

    def paginate(
        self,
        records: Sequence[TransactionRecord],
        page_index: int,
        page_size: Optional[int] = None
    ) -> List[TransactionRecord]:
        """Cut one zero-based page out of already-filtered records"""
        page_size = self.page_size if page_size is None else page_size
        if page_index < 0 or page_size <= 0:
            raise InvalidPage(
                f"Invalid page parameters: index={page_index}, size={page_size}",
                page_index=page_index, page_size=page_size
            )
        offset = page_index * page_size
        return list(records[offset:offset + page_size])

    def reconcile(self, account_ref: str) -> Reconciliation:
        """
        Replay an account's records in creation order from zero

        Also checks that each record's balance_after equals the running
        balance at that point; sequences where it does not are reported.
        The balance and the records are read as one snapshot.
        """
        account_id = self._account(account_ref).id
        account, records = self.store.snapshot(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_ref} not found", account_ref=account_ref)
        records = sorted(records, key=lambda r: r.sequence)

        running = ZERO
        broken = []
        for record in records:
            running += record.signed_amount
            if record.balance_after != running:
                broken.append(record.sequence)

        return Reconciliation(
            account_id=account.id,
            stored_balance=account.balance,
            replayed_balance=running,
            record_count=len(records),
            broken_sequences=broken
        )

    def render_csv(self, account_ref: str) -> str:
        """Account history (most recent first) as CSV text"""
        records = self.history(account_ref)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for r in records:
            writer.writerow([
                r.id, r.account_id, r.kind.value, str(r.amount), str(r.balance_after),
                r.description, r.counterparty_account_id or "", r.created_at.isoformat()
            ])
        return buffer.getvalue()

    def export_csv(self, account_ref: str, output_path: Union[str, Path]) -> Path:
        """Write an account's history to a CSV file"""
        output_path = Path(output_path)
        content = self.render_csv(account_ref)
        with output_path.open("w", newline="", encoding="utf-8") as handle:
            handle.write(content)
        return output_path
