"""
Ledger Store

Durable home of account balances and the append-only transaction record
sequence. Every balance mutation happens inside an atomic unit opened with
LedgerStore.atomic(), which locks the touched accounts in a fixed global
order (sorted identifiers) before opening a storage transaction. Records are
immutable once appended: replaying an account's records from zero in
creation order reproduces its balance.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Any
from enum import Enum
from contextlib import contextmanager
import threading
import time
import uuid

from .errors import AccountNotFound, DuplicateAccount, InsufficientFunds, InvalidAmount, Timeout
from .money import ZERO, quantize_amount
from .storage import StorageInterface, StorageRecord, UniqueViolation
from .logging_config import get_logger


class TransactionKind(Enum):
    """Kinds of transaction records"""
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER_OUT = "transfer-out"
    TRANSFER_IN = "transfer-in"

    @property
    def is_debit(self) -> bool:
        """Debits reduce the owning account's balance"""
        return self in (TransactionKind.WITHDRAW, TransactionKind.TRANSFER_OUT)


@dataclass
class Account(StorageRecord):
    """
    Bank account balance record

    The balance is only ever changed through LedgerUnit.post(); accounts are
    deactivated, never deleted.
    """
    account_number: str
    owner_id: str
    balance: Decimal = ZERO
    currency: str = "ZAR"
    is_active: bool = True

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            self.balance = Decimal(str(self.balance))
        self.balance = quantize_amount(self.balance)
        if self.balance < ZERO:
            raise ValueError("Account balance cannot be negative")

    def can_transact(self) -> bool:
        """Check if account accepts mutating operations"""
        return self.is_active

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['balance'] = Decimal(data['balance'])
        return super().from_dict(data)


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable ledger entry for one account

    `amount` is always positive; the direction is implied by `kind`.
    `balance_after` is the owning account's balance once this record applied.
    """
    id: str
    sequence: int
    account_id: str
    kind: TransactionKind
    amount: Decimal
    balance_after: Decimal
    description: str
    created_at: datetime
    counterparty_account_id: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign of its effect on the balance"""
        return -self.amount if self.kind.is_debit else self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence': self.sequence,
            'account_id': self.account_id,
            'kind': self.kind.value,
            'amount': str(self.amount),
            'balance_after': str(self.balance_after),
            'description': self.description,
            'created_at': self.created_at.isoformat(),
            'counterparty_account_id': self.counterparty_account_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        return cls(
            id=data['id'],
            sequence=int(data['sequence']),
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            amount=Decimal(data['amount']),
            balance_after=Decimal(data['balance_after']),
            description=data.get('description') or "",
            created_at=datetime.fromisoformat(data['created_at']),
            counterparty_account_id=data.get('counterparty_account_id'),
        )


class LedgerUnit:
    """
    Handle for reads and writes inside one atomic unit

    Only accounts locked when the unit was opened may be written. The handle
    is unusable once the unit has committed or rolled back.
    """

    def __init__(self, store: 'LedgerStore', locked_ids: Sequence[str]):
        self._store = store
        self._storage = store.storage
        self._locked = frozenset(locked_ids)
        self._closed = False
        self.records: List[TransactionRecord] = []

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Atomic unit is already closed")

    def _check_locked(self, account_id: str) -> None:
        if account_id not in self._locked:
            raise RuntimeError(f"Account {account_id} is not locked by this unit")

    def load_account(self, account_id: str) -> Account:
        """Read the current committed balance record of a locked account"""
        self._check_open()
        data = self._storage.load(self._store.accounts_table, account_id)
        if not data:
            raise AccountNotFound(f"Account {account_id} not found", account_ref=account_id)
        return Account.from_dict(data)

    def save_account(self, account: Account) -> None:
        """Write back a locked account"""
        self._check_open()
        self._check_locked(account.id)
        account.updated_at = datetime.now(timezone.utc)
        self._storage.save(self._store.accounts_table, account.id, account.to_dict())

    def insert_account(self, account: Account) -> None:
        """
        Store a new account, enforcing the unique account number

        Raises:
            DuplicateAccount: if the identifier or account number is taken
        """
        self._check_open()
        self._check_locked(account.id)
        if self._storage.exists(self._store.accounts_table, account.id):
            raise DuplicateAccount(f"Account {account.id} already exists", account_id=account.id)
        if self._storage.find(self._store.accounts_table, {'account_number': account.account_number}):
            raise DuplicateAccount(
                f"Account number {account.account_number} is already in use",
                account_number=account.account_number
            )
        try:
            self._storage.save(self._store.accounts_table, account.id, account.to_dict())
        except UniqueViolation:
            raise DuplicateAccount(
                f"Account number {account.account_number} is already in use",
                account_number=account.account_number
            )

    def append_record(self, record: TransactionRecord) -> None:
        """Append a record; existing records are never overwritten"""
        self._check_open()
        self._check_locked(record.account_id)
        if self._storage.exists(self._store.records_table, record.id):
            raise ValueError(f"Transaction record {record.id} already exists")
        self._storage.save(self._store.records_table, record.id, record.to_dict())
        self.records.append(record)

    def next_sequence(self) -> int:
        """Next store-wide record sequence number (records are never deleted)"""
        self._check_open()
        return self._storage.count(self._store.records_table) + 1

    def post(
        self,
        account: Account,
        kind: TransactionKind,
        amount: Decimal,
        description: str,
        counterparty_account_id: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> TransactionRecord:
        """
        Apply one balance change and append its record

        Args:
            account: Account loaded through this unit
            kind: Record kind; debits subtract, credits add
            amount: Positive, already-normalized amount
            description: Free text
            counterparty_account_id: Other side of a transfer
            at: Record timestamp (defaults to now)

        Returns:
            The appended TransactionRecord

        Raises:
            InsufficientFunds: if a debit would make the balance negative
            InvalidAmount: if a credit would overflow the balance precision
        """
        if amount <= ZERO:
            raise ValueError("Posted amount must be positive")

        if kind.is_debit:
            if account.balance < amount:
                raise InsufficientFunds(
                    f"Balance {account.balance} is less than {amount}",
                    account_id=account.id,
                    balance=str(account.balance),
                    requested=str(amount)
                )
            new_balance = account.balance - amount
        else:
            new_balance = account.balance + amount

        try:
            account.balance = quantize_amount(new_balance)
        except InvalidOperation:
            raise InvalidAmount(
                f"Balance {account.balance} plus {amount} exceeds the supported precision",
                account_id=account.id,
                balance=str(account.balance),
                requested=str(amount)
            )
        self.save_account(account)

        record = TransactionRecord(
            id=str(uuid.uuid4()),
            sequence=self.next_sequence(),
            account_id=account.id,
            kind=kind,
            amount=amount,
            balance_after=account.balance,
            description=description or "",
            created_at=at or datetime.now(timezone.utc),
            counterparty_account_id=counterparty_account_id
        )
        self.append_record(record)
        return record


class LedgerStore:
    """
    Accounts and transaction records, mutated only through atomic units
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts_table: str = "accounts",
        records_table: str = "ledger_transactions"
    ):
        self.storage = storage
        self.accounts_table = accounts_table
        self.records_table = records_table
        self.logger = get_logger("bank_ledger.ledger")
        self._account_locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

        # Account number is a unique secondary key; history reads by account
        storage.create_index(accounts_table, ["account_number"], unique=True)
        storage.create_index(records_table, ["account_id", "sequence"])

    def _account_lock(self, account_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._account_locks[account_id] = lock
            return lock

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(deadline - time.monotonic(), 0.0)

    @contextmanager
    def atomic(self, *account_ids: str, timeout: Optional[float] = None) -> Iterator[LedgerUnit]:
        """
        Open an atomic unit over the given accounts

        Account locks are taken in sorted identifier order whatever order the
        caller lists them in, so two units over the same pair of accounts can
        never deadlock. The unit commits when the block exits normally and
        rolls back on any exception.

        Args:
            account_ids: Accounts the unit may write
            timeout: Seconds allowed for waiting plus running; None waits forever

        Raises:
            Timeout: lock wait or unit duration exceeded `timeout` (nothing committed)
        """
        ordered = sorted(set(account_ids))
        deadline = None if timeout is None else time.monotonic() + timeout
        held = []
        unit = None
        try:
            for account_id in ordered:
                lock = self._account_lock(account_id)
                remaining = self._remaining(deadline)
                if not lock.acquire(timeout=-1 if remaining is None else remaining):
                    self.logger.warning(f"Lock wait on account {account_id} timed out after {timeout}s")
                    raise Timeout(
                        f"Timed out waiting for account {account_id}",
                        account_id=account_id
                    )
                held.append(lock)

            with self.storage.atomic(timeout=self._remaining(deadline)):
                unit = LedgerUnit(self, ordered)
                yield unit
                if deadline is not None and time.monotonic() > deadline:
                    raise Timeout(
                        f"Atomic unit over {ordered} exceeded {timeout}s and was rolled back"
                    )
        finally:
            if unit is not None:
                unit._closed = True
            for lock in reversed(held):
                lock.release()

    def get_account(self, account_id: str) -> Optional[Account]:
        """Point lookup by internal identifier"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Point lookup by human-facing account number"""
        found = self.storage.find(self.accounts_table, {'account_number': account_number})
        if found:
            return Account.from_dict(found[0])
        return None

    def resolve(self, account_ref: str) -> Optional[Account]:
        """Resolve an account reference (identifier or account number)"""
        if not account_ref:
            return None
        account_ref = str(account_ref).strip()
        return self.get_account(account_ref) or self.get_account_by_number(account_ref)

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        """All accounts, optionally restricted to one owner"""
        filters = {'owner_id': owner_id} if owner_id else {}
        accounts = [Account.from_dict(data) for data in self.storage.find(self.accounts_table, filters)]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def insert_account(self, account: Account, timeout: Optional[float] = None) -> Account:
        """Store a new account in its own atomic unit"""
        with self.atomic(account.id, timeout=timeout) as unit:
            unit.insert_account(account)
        return account

    def records_for_account(self, account_id: str) -> List[TransactionRecord]:
        """Records of an account, most recent first"""
        records = [
            TransactionRecord.from_dict(data)
            for data in self.storage.find(self.records_table, {'account_id': account_id})
        ]
        records.sort(key=lambda r: r.sequence, reverse=True)
        return records

    def snapshot(self, account_id: str) -> Tuple[Optional[Account], List[TransactionRecord]]:
        """
        Account and its records (most recent first) read as one consistent view

        Both reads happen under the backend lock, so no unit can commit
        between them.
        """
        with self.storage.atomic():
            return self.get_account(account_id), self.records_for_account(account_id)

    def record_count(self) -> int:
        """Total number of transaction records in the store"""
        return self.storage.count(self.records_table)
