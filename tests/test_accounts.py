"""
Test suite for account management

Tests opening accounts with and without an initial deposit, account number
generation and the deactivate/reactivate lifecycle.
"""

import pytest
from decimal import Decimal

from bank_ledger.accounts import AccountManager
from bank_ledger.errors import AccountNotFound, DuplicateAccount, InvalidAmount
from bank_ledger.history import HistoryQueryService
from bank_ledger.ledger import LedgerStore, TransactionKind
from bank_ledger.storage import InMemoryStorage


class TestAccountManager:
    """Test account lifecycle"""

    def setup_method(self):
        """Set up test environment"""
        self.store = LedgerStore(InMemoryStorage())
        self.manager = AccountManager(self.store, default_currency="ZAR", account_number_length=8)
        self.history = HistoryQueryService(self.store)

    def test_open_account_defaults(self):
        """Test opening an account without a deposit"""
        account = self.manager.open_account("alice")

        assert account.owner_id == "alice"
        assert account.balance == Decimal('0.00')
        assert account.currency == "ZAR"
        assert account.is_active
        assert len(account.account_number) == 8
        assert account.account_number.isdigit()
        assert self.store.get_account(account.id) == account

    def test_open_account_with_initial_deposit(self):
        """Test that the opening amount is posted as a deposit record"""
        account = self.manager.open_account("alice", initial_deposit="R 2,450.00")

        assert account.balance == Decimal('2450.00')
        records = self.history.history(account.id)
        assert len(records) == 1
        assert records[0].kind == TransactionKind.DEPOSIT
        assert records[0].description == "Initial deposit"
        assert self.history.reconcile(account.id).is_balanced

    def test_open_account_invalid_deposit(self):
        """Test that a bad opening amount creates nothing"""
        with pytest.raises(InvalidAmount):
            self.manager.open_account("alice", initial_deposit="-10")
        assert self.manager.list_accounts() == []

    def test_explicit_account_number(self):
        account = self.manager.open_account("alice", account_number="12345678", currency="USD")
        assert account.account_number == "12345678"
        assert account.currency == "USD"

    def test_duplicate_account_number(self):
        """Test that account numbers cannot be reused"""
        self.manager.open_account("alice", account_number="12345678")
        with pytest.raises(DuplicateAccount):
            self.manager.open_account("bob", account_number="12345678", initial_deposit="5")
        assert len(self.manager.list_accounts()) == 1
        assert self.store.record_count() == 0

    def test_generated_numbers_are_unique(self):
        numbers = {self.manager.open_account("alice").account_number for _ in range(25)}
        assert len(numbers) == 25

    def test_list_accounts_by_owner(self):
        a1 = self.manager.open_account("alice")
        self.manager.open_account("bob")
        a2 = self.manager.open_account("alice")

        assert [a.id for a in self.manager.list_accounts("alice")] == [a1.id, a2.id]
        assert len(self.manager.list_accounts()) == 3

    def test_deactivate_and_reactivate(self):
        """Test the account lifecycle"""
        account = self.manager.open_account("alice", initial_deposit="10.00")

        deactivated = self.manager.deactivate_account(account.account_number)
        assert not deactivated.is_active
        assert not self.store.get_account(account.id).is_active
        assert self.store.get_account(account.id).balance == Decimal('10.00')

        reactivated = self.manager.reactivate_account(account.id)
        assert reactivated.is_active
        assert self.store.get_account(account.id).can_transact()

    def test_deactivate_unknown_account(self):
        with pytest.raises(AccountNotFound):
            self.manager.deactivate_account("00000000")
