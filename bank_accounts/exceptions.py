"""Exception hierarchy for the bank accounts service."""


class BankAccountsError(Exception):
    """Base exception for all bank accounts errors."""


class AccountNotFound(BankAccountsError):
    """Raised when no account matches the given id or number."""


class InvalidAmount(BankAccountsError):
    """Raised for a non-positive or non-integer amount, or a self-transfer."""


class InsufficientFunds(BankAccountsError):
    """Raised when a debit would drive a balance below zero."""


class BalanceOverflow(BankAccountsError):
    """Raised when a credit would push a balance past the representable range."""


class StorageFailure(BankAccountsError):
    """Raised when the backing store fails, aborts or rejects a write."""


class InvalidAccountData(BankAccountsError):
    """Raised when account identity fields are missing or too long."""


class ConfigurationError(BankAccountsError):
    """Raised when configuration is invalid."""
