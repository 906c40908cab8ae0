"""
Account Management Module

Opens, deactivates and reactivates accounts. Accounts start at a zero
balance; an initial deposit is posted as an ordinary deposit record in the
same atomic unit so the account's history always reconciles.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional
import secrets
import uuid

from .errors import AccountNotFound
from .ledger import Account, LedgerStore, TransactionKind
from .money import parse_amount
from .logging_config import get_logger, log_action


class AccountManager:
    """
    Manages account lifecycle around the ledger
    """

    def __init__(
        self,
        store: LedgerStore,
        default_currency: str = "ZAR",
        account_number_length: int = 10,
        timeout: Optional[float] = None
    ):
        self.store = store
        self.default_currency = default_currency
        self.account_number_length = account_number_length
        self.timeout = timeout
        self.logger = get_logger("bank_ledger.accounts")

    def open_account(
        self,
        owner_id: str,
        account_number: Optional[str] = None,
        initial_deposit: Optional[Any] = None,
        currency: Optional[str] = None
    ) -> Account:
        """
        Create a new active account

        Args:
            owner_id: Owning user
            account_number: Specific account number (generated if not provided)
            initial_deposit: Optional opening amount, posted as a deposit record
            currency: Account currency code (defaults to configuration)

        Returns:
            Created Account, with its post-deposit balance

        Raises:
            InvalidAmount: if initial_deposit is given but not a positive amount
            DuplicateAccount: if the account number is already in use
        """
        amount = parse_amount(initial_deposit) if initial_deposit is not None else None

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number or self._generate_account_number(),
            owner_id=owner_id,
            currency=currency or self.default_currency
        )

        with self.store.atomic(account.id, timeout=self.timeout) as unit:
            unit.insert_account(account)
            if amount is not None:
                unit.post(account, TransactionKind.DEPOSIT, amount, "Initial deposit", at=now)

        log_action(
            self.logger, "info", "Account opened",
            action="open_account", resource=f"account:{account.id}",
            extra={
                "account_number": account.account_number,
                "owner_id": owner_id,
                "initial_deposit": str(amount) if amount is not None else None
            }
        )
        return account

    def deactivate_account(self, account_ref: str) -> Account:
        """Stop an account from accepting mutations; it stays readable"""
        return self._set_active(account_ref, False)

    def reactivate_account(self, account_ref: str) -> Account:
        """Allow a deactivated account to transact again"""
        return self._set_active(account_ref, True)

    def list_accounts(self, owner_id: Optional[str] = None) -> List[Account]:
        """List accounts, optionally for one owner"""
        return self.store.list_accounts(owner_id)

    def _set_active(self, account_ref: str, active: bool) -> Account:
        account = self.store.resolve(account_ref)
        if account is None:
            raise AccountNotFound(f"Account {account_ref} not found", account_ref=account_ref)

        with self.store.atomic(account.id, timeout=self.timeout) as unit:
            account = unit.load_account(account.id)
            account.is_active = active
            unit.save_account(account)

        log_action(
            self.logger, "info", "Account reactivated" if active else "Account deactivated",
            action="reactivate_account" if active else "deactivate_account",
            resource=f"account:{account.id}"
        )
        return account

    def _generate_account_number(self) -> str:
        """Random digits, retried until unused"""
        while True:
            number = "".join(
                str(secrets.randbelow(10)) for _ in range(self.account_number_length)
            )
            if self.store.get_account_by_number(number) is None:
                return number
