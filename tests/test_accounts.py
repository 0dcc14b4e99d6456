"""
Tests for the account service
"""

import logging

import pytest

from bank_accounts.accounts import MAX_NAME_LENGTH, AccountService
from bank_accounts.balance import BalanceEngine
from bank_accounts.exceptions import (
    AccountNotFound, BalanceOverflow, InsufficientFunds, InvalidAccountData
)
from bank_accounts.storage import InMemoryAccountStore


class TestAccountService:
    """Identity lifecycle on every backend"""

    @pytest.fixture(autouse=True)
    def setup_service(self, store):
        self.store = store
        self.service = AccountService(store)

    def test_create_account(self):
        account = self.service.create_account("John", "Doe")

        assert account.first_name == "John"
        assert account.last_name == "Doe"
        assert account.balance == 0
        assert self.service.get_account(account.id) == account

    def test_create_account_strips_names(self):
        account = self.service.create_account("  Jane ", "\tSmith\n")

        assert account.first_name == "Jane"
        assert account.last_name == "Smith"

    @pytest.mark.parametrize("first_name,last_name", [
        ("", "Doe"),
        ("John", "   "),
        ("x" * (MAX_NAME_LENGTH + 1), "Doe"),
        ("John", None),
    ])
    def test_create_account_invalid_names(self, first_name, last_name):
        with pytest.raises(InvalidAccountData):
            self.service.create_account(first_name, last_name)
        assert self.store.count() == 0

    def test_name_at_length_limit(self):
        name = "x" * MAX_NAME_LENGTH

        assert self.service.create_account(name, name).first_name == name

    def test_get_account_by_number(self):
        account = self.service.create_account("John", "Doe")

        assert self.service.get_account_by_number(account.number) == account

    def test_get_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.service.get_account(424242)

    def test_list_accounts(self):
        assert self.service.list_accounts() == []

        first = self.service.create_account("A", "One")
        second = self.service.create_account("B", "Two")

        assert self.service.list_accounts() == [first, second]

    def test_rename_keeps_balance_and_number(self):
        account = self.service.create_account("Bob", "Johnson")
        self.service.top_up(account.number, 250)

        renamed = self.service.rename_account(account.id, "Robert", " Johnson ")

        assert renamed.first_name == "Robert"
        assert renamed.last_name == "Johnson"
        assert renamed.balance == 250
        assert renamed.number == account.number
        assert self.service.get_account(account.id) == renamed

    def test_rename_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.service.rename_account(424242, "No", "Body")

    def test_rename_invalid_name(self):
        account = self.service.create_account("Bob", "Johnson")

        with pytest.raises(InvalidAccountData):
            self.service.rename_account(account.id, "", "Johnson")
        assert self.service.get_account(account.id).first_name == "Bob"

    def test_delete_account(self):
        account = self.service.create_account("Carol", "King")

        self.service.delete_account(account.id)

        with pytest.raises(AccountNotFound):
            self.service.get_account(account.id)
        with pytest.raises(AccountNotFound):
            self.service.delete_account(account.id)

    def test_top_up_and_transfer(self):
        alice = self.service.create_account("Alice", "Wilson")
        bob = self.service.create_account("Bob", "Johnson")

        assert self.service.top_up(alice.number, 100).balance == 100
        sender = self.service.transfer(alice.number, bob.number, 40)

        assert sender.balance == 60
        assert self.service.get_account(bob.id).balance == 40
        with pytest.raises(InsufficientFunds):
            self.service.transfer(alice.number, bob.number, 61)

    def test_create_is_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="bank_accounts"):
            account = self.service.create_account("John", "Doe")

        record = next(r for r in caplog.records if r.getMessage() == "Account created")
        assert record.action == "create_account"
        assert record.resource == f"account:{account.id}"


class TestAccountServiceEngine:
    """Service wiring to a custom engine"""

    def test_uses_given_engine(self):
        store = InMemoryAccountStore()
        service = AccountService(store, BalanceEngine(store, max_balance=10))
        account = service.create_account("John", "Doe")

        with pytest.raises(BalanceOverflow):
            service.top_up(account.number, 11)

    def test_default_engine(self):
        store = InMemoryAccountStore()
        service = AccountService(store)

        assert isinstance(service.engine, BalanceEngine)
        assert service.engine.store is store
