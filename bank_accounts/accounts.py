"""
Account Management Module

Manages the account identity lifecycle: opening, lookup, renaming and
closing accounts. Balance changes are delegated to the BalanceEngine.
"""

from typing import List, Optional, Tuple

from .balance import BalanceEngine
from .exceptions import InvalidAccountData
from .logging_config import get_logger, log_action
from .models import Account
from .storage import AccountStore


MAX_NAME_LENGTH = 50


class AccountService:
    """
    Orchestrates account create, read, update and delete
    """

    def __init__(self, store: AccountStore, engine: Optional[BalanceEngine] = None):
        self.store = store
        self.engine = engine or BalanceEngine(store)
        self.logger = get_logger("bank_accounts.accounts")

    @staticmethod
    def _clean_names(first_name: str, last_name: str) -> Tuple[str, str]:
        cleaned = []
        for field_name, value in (("firstName", first_name), ("lastName", last_name)):
            value = (value or "").strip()
            if not value:
                raise InvalidAccountData(f"{field_name} must not be empty")
            if len(value) > MAX_NAME_LENGTH:
                raise InvalidAccountData(
                    f"{field_name} must be at most {MAX_NAME_LENGTH} characters"
                )
            cleaned.append(value)
        return cleaned[0], cleaned[1]

    def create_account(self, first_name: str, last_name: str) -> Account:
        """
        Open a new account with a zero balance

        Args:
            first_name: Holder first name
            last_name: Holder last name

        Returns:
            Created Account with its assigned id and number
        """
        first_name, last_name = self._clean_names(first_name, last_name)
        account = self.store.create(first_name, last_name)

        log_action(
            self.logger, "info", "Account created",
            action="create_account", resource=f"account:{account.id}",
            extra={"number": account.number}
        )
        return account

    def get_account(self, account_id: int) -> Account:
        """Get account by id"""
        return self.store.get_by_id(account_id)

    def get_account_by_number(self, number: int) -> Account:
        """Get account by account number"""
        return self.store.get_by_number(number)

    def list_accounts(self) -> List[Account]:
        return list(self.store.list_all())

    def rename_account(self, account_id: int, first_name: str, last_name: str) -> Account:
        """
        Change the holder name of an account

        Balance and number are left untouched.

        Raises:
            AccountNotFound: If the account does not exist
            InvalidAccountData: If a name is empty or too long
        """
        first_name, last_name = self._clean_names(first_name, last_name)
        with self.store.atomic():
            self.store.get_by_id(account_id, for_update=True)
            account = self.store.update_identity(account_id, first_name, last_name)

        log_action(
            self.logger, "info", "Account renamed",
            action="rename_account", resource=f"account:{account_id}"
        )
        return account

    def delete_account(self, account_id: int) -> None:
        """
        Delete an account permanently

        Raises:
            AccountNotFound: If the account does not exist
        """
        self.store.delete(account_id)

        log_action(
            self.logger, "info", "Account deleted",
            action="delete_account", resource=f"account:{account_id}"
        )

    def top_up(self, account_number: int, amount: int) -> Account:
        return self.engine.top_up(account_number, amount)

    def transfer(self, sender_number: int, recipient_number: int, amount: int) -> Account:
        return self.engine.transfer(sender_number, recipient_number, amount)
