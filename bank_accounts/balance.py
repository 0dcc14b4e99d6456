"""
Balance Mutation Module

Applies top-ups and transfers to account balances. Every read-validate-write
sequence runs inside one storage transaction with the affected rows locked,
so balances never go negative, transfers conserve money, and a failure
leaves every row as it was.
"""

from .config import INT64_MAX
from .exceptions import (
    BalanceOverflow, BankAccountsError, InsufficientFunds, InvalidAmount
)
from .logging_config import get_logger, log_action
from .models import Account
from .storage import AccountStore


class BalanceEngine:
    """
    Computes and commits balance changes
    """

    def __init__(self, store: AccountStore, max_balance: int = INT64_MAX):
        self.store = store
        self.max_balance = max_balance
        self.logger = get_logger("bank_accounts.balance")

    def _check_amount(self, amount: int) -> None:
        # bool is an int subclass but never a valid amount
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmount(f"amount must be an integer, got {amount!r}")
        if amount <= 0:
            raise InvalidAmount(f"amount must be positive, got {amount}")
        if amount > self.max_balance:
            raise BalanceOverflow(f"amount {amount} exceeds the maximum balance {self.max_balance}")

    def _credit(self, account: Account, amount: int) -> int:
        if account.balance > self.max_balance - amount:
            raise BalanceOverflow(
                f"crediting {amount} to account {account.number} would exceed "
                f"the maximum balance {self.max_balance}"
            )
        return account.balance + amount

    def top_up(self, account_number: int, amount: int) -> Account:
        """
        Credit a positive amount to an account

        Args:
            account_number: Number of the account to credit
            amount: Amount in the smallest currency unit

        Returns:
            The updated Account

        Raises:
            InvalidAmount: If amount is not a positive integer
            AccountNotFound: If no account has this number
            BalanceOverflow: If the new balance would exceed the maximum
        """
        try:
            self._check_amount(amount)
            with self.store.atomic():
                account = self.store.get_by_number(account_number, for_update=True)
                new_balance = self._credit(account, amount)
                updated = self.store.set_balance(account.id, new_balance)
        except BankAccountsError as e:
            log_action(
                self.logger, "warning", f"Top-up rejected: {e}",
                action="top_up", resource=f"account:{account_number}",
                extra={"amount": amount, "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info", "Top-up applied",
            action="top_up", resource=f"account:{account_number}",
            extra={
                "amount": amount,
                "balance_before": account.balance,
                "balance_after": updated.balance
            }
        )
        return updated

    def transfer(self, sender_number: int, recipient_number: int, amount: int) -> Account:
        """
        Move an amount from one account to another

        Both balances are read and written in a single transaction. Rows are
        locked in ascending account-number order so that two opposing transfers
        cannot deadlock.

        Args:
            sender_number: Number of the account to debit
            recipient_number: Number of the account to credit
            amount: Amount in the smallest currency unit

        Returns:
            The updated sender Account

        Raises:
            InvalidAmount: If amount is not a positive integer, or sender and
                recipient are the same account
            AccountNotFound: If either account does not exist
            InsufficientFunds: If the sender balance would go negative
            BalanceOverflow: If the recipient balance would exceed the maximum
        """
        resource = f"transfer:{sender_number}->{recipient_number}"
        try:
            self._check_amount(amount)
            if sender_number == recipient_number:
                raise InvalidAmount(f"cannot transfer from account {sender_number} to itself")

            with self.store.atomic():
                locked = {}
                for number in sorted((sender_number, recipient_number)):
                    locked[number] = self.store.get_by_number(number, for_update=True)
                sender = locked[sender_number]
                recipient = locked[recipient_number]

                new_sender_balance = sender.balance - amount
                if new_sender_balance < 0:
                    raise InsufficientFunds(
                        f"account {sender_number} has insufficient funds: "
                        f"balance {sender.balance}, requested {amount}"
                    )
                new_recipient_balance = self._credit(recipient, amount)

                updated_sender = self.store.set_balance(sender.id, new_sender_balance)
                self.store.set_balance(recipient.id, new_recipient_balance)
        except BankAccountsError as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e}",
                action="transfer", resource=resource,
                extra={"amount": amount, "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info", "Transfer applied",
            action="transfer", resource=resource,
            extra={
                "amount": amount,
                "sender_balance_after": new_sender_balance,
                "recipient_balance_after": new_recipient_balance
            }
        )
        return updated_sender

