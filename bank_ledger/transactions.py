"""
Ledger Engine

Deposits, withdrawals and transfers as atomic units against the Ledger
Store. Each call validates its inputs, resolves the account references,
consults the authorizer, then reads, checks and writes balances inside one
atomic unit. The engine keeps no state between calls.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from .auth import AllowAllAuthorizer, Authorizer, Session
from .errors import (
    LedgerError, AccountInactive, AccountNotFound, SameAccount, Unauthorized
)
from .ledger import Account, LedgerStore, LedgerUnit, TransactionKind, TransactionRecord
from .money import parse_amount
from .logging_config import get_logger, log_action


class LedgerEngine:
    """
    Applies balance mutations with all-or-nothing semantics

    Failures are raised as LedgerError subclasses; whatever the failure, the
    atomic unit in progress is rolled back and nothing is persisted.
    """

    def __init__(
        self,
        store: LedgerStore,
        authorizer: Optional[Authorizer] = None,
        timeout: Optional[float] = None
    ):
        self.store = store
        self.authorizer = authorizer or AllowAllAuthorizer()
        self.timeout = timeout
        self.logger = get_logger("bank_ledger.transactions")

    def get_account(self, account_ref: str) -> Account:
        """
        Resolve an account reference

        Raises:
            AccountNotFound: if neither an identifier nor an account number matches
        """
        account = self.store.resolve(account_ref)
        if account is None:
            raise AccountNotFound(f"Account {account_ref} not found", account_ref=account_ref)
        return account

    def get_balance(self, account_ref: str) -> Decimal:
        """Latest committed balance of an account"""
        return self.get_account(account_ref).balance

    def account_exists(self, account_ref: str) -> bool:
        """Check if a reference resolves to an account"""
        return self.store.resolve(account_ref) is not None

    def deposit(
        self,
        account_ref: str,
        amount: Any,
        description: str = "",
        session: Optional[Session] = None
    ) -> TransactionRecord:
        """
        Credit an account

        Args:
            account_ref: Account identifier or account number
            amount: Decimal-capable value or text such as "1,500.00"
            description: Free text stored on the record
            session: Caller session passed to the authorizer

        Returns:
            The appended deposit record

        Raises:
            InvalidAmount, AccountNotFound, Unauthorized, AccountInactive,
            StorageUnavailable, Timeout
        """
        try:
            value = parse_amount(amount)
            account = self.get_account(account_ref)
            self._authorize(session, account_ref)

            with self.store.atomic(account.id, timeout=self.timeout) as unit:
                account = self._load_active(unit, account.id)
                record = unit.post(account, TransactionKind.DEPOSIT, value, description)
        except LedgerError as e:
            self._log_failure("deposit", e, session, account_ref=account_ref, amount=amount)
            raise

        self._log_success("deposit", record, session)
        return record

    def withdraw(
        self,
        account_ref: str,
        amount: Any,
        description: str = "",
        session: Optional[Session] = None
    ) -> TransactionRecord:
        """
        Debit an account

        The balance check and the debit run in the same atomic unit, so
        concurrent withdrawals can never drive the balance below zero.

        Raises:
            InvalidAmount, AccountNotFound, Unauthorized, AccountInactive,
            InsufficientFunds, StorageUnavailable, Timeout
        """
        try:
            value = parse_amount(amount)
            account = self.get_account(account_ref)
            self._authorize(session, account_ref)

            with self.store.atomic(account.id, timeout=self.timeout) as unit:
                account = self._load_active(unit, account.id)
                record = unit.post(account, TransactionKind.WITHDRAW, value, description)
        except LedgerError as e:
            self._log_failure("withdraw", e, session, account_ref=account_ref, amount=amount)
            raise

        self._log_success("withdraw", record, session)
        return record

    def transfer(
        self,
        from_ref: str,
        to_ref: str,
        amount: Any,
        description: str = "",
        session: Optional[Session] = None
    ) -> Tuple[TransactionRecord, TransactionRecord]:
        """
        Move funds between two accounts

        Both accounts are locked in identifier order, whichever direction the
        caller asks for. The transfer-out and transfer-in records reference
        each other's account as counterparty and share amount and description.

        Returns:
            (transfer-out record on the source, transfer-in record on the destination)

        Raises:
            SameAccount, InvalidAmount, AccountNotFound, Unauthorized,
            AccountInactive, InsufficientFunds, StorageUnavailable, Timeout
        """
        try:
            if str(from_ref).strip() == str(to_ref).strip():
                raise SameAccount(f"Cannot transfer from {from_ref} to itself")
            value = parse_amount(amount)
            source = self.get_account(from_ref)
            destination = self.get_account(to_ref)
            if source.id == destination.id:
                raise SameAccount(f"{from_ref} and {to_ref} are the same account")
            self._authorize(session, from_ref)

            with self.store.atomic(source.id, destination.id, timeout=self.timeout) as unit:
                source = self._load_active(unit, source.id)
                destination = self._load_active(unit, destination.id)
                now = datetime.now(timezone.utc)
                out_record = unit.post(
                    source, TransactionKind.TRANSFER_OUT, value, description,
                    counterparty_account_id=destination.id, at=now
                )
                in_record = unit.post(
                    destination, TransactionKind.TRANSFER_IN, value, description,
                    counterparty_account_id=source.id, at=now
                )
        except LedgerError as e:
            self._log_failure(
                "transfer", e, session, from_ref=from_ref, to_ref=to_ref, amount=amount
            )
            raise

        self._log_success("transfer", out_record, session, to_account=in_record.account_id)
        return out_record, in_record

    def _authorize(self, session: Optional[Session], account_ref: str) -> None:
        if not self.authorizer.is_authorized(session, account_ref):
            raise Unauthorized(
                f"Session is not allowed to act on account {account_ref}",
                account_ref=account_ref
            )

    @staticmethod
    def _load_active(unit: LedgerUnit, account_id: str) -> Account:
        account = unit.load_account(account_id)
        if not account.can_transact():
            raise AccountInactive(
                f"Account {account.account_number} is inactive",
                account_id=account.id
            )
        return account

    def _log_success(self, action: str, record: TransactionRecord,
                     session: Optional[Session], **extra) -> None:
        log_action(
            self.logger, "info", f"{action} committed",
            action=action, resource=f"account:{record.account_id}",
            session_id=session.session_id if session else None,
            extra={
                "transaction_id": record.id,
                "amount": str(record.amount),
                "balance_after": str(record.balance_after),
                **extra
            }
        )

    def _log_failure(self, action: str, error: LedgerError,
                     session: Optional[Session], **extra) -> None:
        log_action(
            self.logger, "warning", f"{action} rejected: {error.kind.value}",
            action=action,
            session_id=session.session_id if session else None,
            extra={"error": error.message, **{k: str(v) for k, v in extra.items()}}
        )
