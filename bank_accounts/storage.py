"""
Storage Backend Module

Provides the account repository interface and implementations for in-memory
(testing), SQLite (persistence) and PostgreSQL (production). Every backend
offers a thread-bound transactional scope through ``atomic()``; balances are
written only through ``set_balance`` and validated by the balance engine.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, Union
from datetime import datetime
from contextlib import contextmanager, nullcontext
from pathlib import Path
import secrets
import sqlite3
import threading

from .config import INT64_MAX
from .exceptions import AccountNotFound, ConfigurationError, StorageFailure
from .logging_config import get_logger
from .models import Account, utc_now


DEFAULT_NUMBER_LIMIT = 10_000_000
DEFAULT_NUMBER_ATTEMPTS = 10

COLUMNS = "id, first_name, last_name, number, balance, created_at, updated_at"


class AccountStore(ABC):
    """Abstract interface for account storage backends"""

    def __init__(self, number_limit: int = DEFAULT_NUMBER_LIMIT,
                 number_attempts: int = DEFAULT_NUMBER_ATTEMPTS):
        if number_limit <= 0:
            raise ValueError("number_limit must be positive")
        if number_attempts <= 0:
            raise ValueError("number_attempts must be positive")
        self.number_limit = number_limit
        self.number_attempts = number_attempts
        self._local = threading.local()
        self.logger = get_logger("bank_accounts.storage")

    @abstractmethod
    def init(self) -> None:
        """Create the accounts table if it does not exist"""
        pass

    @abstractmethod
    def get_by_id(self, account_id: int, for_update: bool = False) -> Account:
        """Load an account by id, optionally locking it until the transaction ends"""
        pass

    @abstractmethod
    def get_by_number(self, number: int, for_update: bool = False) -> Account:
        """Load an account by number, optionally locking it until the transaction ends"""
        pass

    @abstractmethod
    def list_all(self) -> Iterator[Account]:
        """Iterate over all accounts in insertion order"""
        pass

    @abstractmethod
    def update_identity(self, account_id: int, first_name: str, last_name: str) -> Account:
        """Update name fields, leaving balance and number untouched"""
        pass

    @abstractmethod
    def set_balance(self, account_id: int, new_balance: int) -> Account:
        """Overwrite the balance of an account"""
        pass

    @abstractmethod
    def delete(self, account_id: int) -> None:
        """Delete an account"""
        pass

    @abstractmethod
    def count(self) -> int:
        """Count stored accounts"""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every account"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connections"""
        pass

    @abstractmethod
    def _insert(self, first_name: str, last_name: str, number: int,
                now: datetime) -> Optional[Account]:
        """Insert a new row; return None if the number is already taken"""
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the calling thread's transaction"""
        pass

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside ``atomic()``"""
        return getattr(self._local, 'depth', 0) > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Everything the calling thread does inside the block commits together
        or not at all. Nested blocks join the outermost one.
        """
        if self.in_transaction:
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        self.begin_transaction()
        self._local.depth = 1
        try:
            yield
        except BaseException:
            self._local.depth = 0
            self.rollback()
            raise
        self._local.depth = 0
        self.commit()

    def create(self, first_name: str, last_name: str) -> Account:
        """
        Create an account with a freshly drawn number and a zero balance

        Args:
            first_name: Holder first name
            last_name: Holder last name

        Returns:
            The stored Account, including its assigned id

        Raises:
            StorageFailure: If no free number was found or the store failed
        """
        for attempt in range(1, self.number_attempts + 1):
            number = self._generate_number()
            account = self._insert(first_name, last_name, number, utc_now())
            if account is not None:
                self.logger.debug("Created account %d with number %d", account.id, account.number)
                return account
            self.logger.warning(
                "Account number %d already taken (attempt %d/%d)",
                number, attempt, self.number_attempts
            )
        raise StorageFailure(
            f"Could not allocate a unique account number after {self.number_attempts} attempts"
        )

    def _generate_number(self) -> int:
        return secrets.randbelow(self.number_limit)


class InMemoryAccountStore(AccountStore):
    """
    In-memory storage implementation for testing

    Committed rows sit behind a mutex. A transaction buffers its writes
    privately and publishes them in one step on commit, so other threads
    never observe half of a transfer. Rows are locked individually.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._rows: Dict[int, Account] = {}
        self._numbers: Dict[int, int] = {}  # number -> id, including uncommitted inserts
        self._row_locks: Dict[int, threading.Lock] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    def init(self) -> None:
        pass

    def begin_transaction(self) -> None:
        self._local.writes = {}
        self._local.inserted = []
        self._local.released = {}
        self._local.held = {}

    def commit(self) -> None:
        with self._lock:
            for account_id, row in self._local.writes.items():
                if row is None:
                    self._rows.pop(account_id, None)
                    self._row_locks.pop(account_id, None)
                else:
                    self._rows[account_id] = row
            for account_id, number in self._local.released.items():
                if self._numbers.get(number) == account_id:
                    del self._numbers[number]
        self._end_transaction()

    def rollback(self) -> None:
        with self._lock:
            for account_id, number in self._local.inserted:
                if self._numbers.get(number) == account_id:
                    del self._numbers[number]
        self._end_transaction()

    def _end_transaction(self) -> None:
        held = self._local.held
        self._local.writes = None
        self._local.inserted = None
        self._local.released = None
        self._local.held = None
        for lock in reversed(list(held.values())):
            lock.release()

    def _acquire_row(self, account_id: int) -> None:
        held = self._local.held
        if account_id in held:
            return
        with self._lock:
            # Missing rows get no lock entry
            if account_id not in self._rows and account_id not in self._local.writes:
                return
            lock = self._row_locks.setdefault(account_id, threading.Lock())
        lock.acquire()
        held[account_id] = lock

    def _visible(self, account_id: int) -> Optional[Account]:
        writes = getattr(self._local, 'writes', None)
        if writes is not None and account_id in writes:
            return writes[account_id]
        with self._lock:
            return self._rows.get(account_id)

    def _insert(self, first_name, last_name, number, now):
        with self.atomic():
            with self._lock:
                if number in self._numbers:
                    return None
                account_id = self._next_id
                self._next_id += 1
                self._numbers[number] = account_id
            self._local.inserted.append((account_id, number))

            account = Account(
                id=account_id,
                first_name=first_name,
                last_name=last_name,
                number=number,
                balance=0,
                created_at=now,
                updated_at=now
            )
            self._local.writes[account_id] = account
            self._acquire_row(account_id)
            return account

    def get_by_id(self, account_id: int, for_update: bool = False) -> Account:
        if for_update and self.in_transaction:
            self._acquire_row(account_id)
        account = self._visible(account_id)
        if account is None:
            raise AccountNotFound(f"account with id {account_id} not found")
        return account

    def get_by_number(self, number: int, for_update: bool = False) -> Account:
        with self._lock:
            account_id = self._numbers.get(number)
        if account_id is not None:
            if for_update and self.in_transaction:
                self._acquire_row(account_id)
            account = self._visible(account_id)
            if account is not None and account.number == number:
                return account
        raise AccountNotFound(f"account with account number {number} not found")

    def list_all(self) -> Iterator[Account]:
        with self._lock:
            rows = dict(self._rows)
        writes = getattr(self._local, 'writes', None) or {}
        for account_id, row in writes.items():
            if row is None:
                rows.pop(account_id, None)
            else:
                rows[account_id] = row
        return iter([rows[account_id] for account_id in sorted(rows)])

    def _write(self, account_id: int, **changes) -> Account:
        with self.atomic():
            self._acquire_row(account_id)
            current = self._visible(account_id)
            if current is None:
                raise AccountNotFound(f"account with id {account_id} not found")
            updated = current.with_changes(**changes)
            self._local.writes[account_id] = updated
            return updated

    def update_identity(self, account_id: int, first_name: str, last_name: str) -> Account:
        return self._write(account_id, first_name=first_name, last_name=last_name)

    def set_balance(self, account_id: int, new_balance: int) -> Account:
        return self._write(account_id, balance=new_balance)

    def delete(self, account_id: int) -> None:
        with self.atomic():
            self._acquire_row(account_id)
            current = self._visible(account_id)
            if current is None:
                raise AccountNotFound(f"account with id {account_id} not found")
            self._local.writes[account_id] = None
            self._local.released[account_id] = current.number

    def count(self) -> int:
        return sum(1 for _ in self.list_all())

    def clear(self) -> None:
        with self._lock:
            self._rows.clear()
            self._numbers.clear()
            self._row_locks.clear()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class _Result(NamedTuple):
    rows: List[Any]
    rowcount: int
    lastrowid: Optional[int]


class _SQLAccountStore(AccountStore):
    """Queries shared by the SQL backends; placeholders are written as ``?``"""

    @abstractmethod
    def _run(self, sql: str, params: Sequence[Any] = ()) -> _Result:
        """Execute one statement on the calling thread's connection"""
        pass

    def _lock_clause(self, for_update: bool) -> str:
        return ""

    def _timestamp(self, value: datetime) -> Any:
        return value

    @staticmethod
    def _to_account(row) -> Account:
        return Account.from_dict(dict(row))

    @staticmethod
    def _check_id(account_id: int) -> None:
        # Values outside the BIGINT column range cannot match any row
        if not -INT64_MAX - 1 <= account_id <= INT64_MAX:
            raise AccountNotFound(f"account with id {account_id} not found")

    @staticmethod
    def _check_number(number: int) -> None:
        if not -INT64_MAX - 1 <= number <= INT64_MAX:
            raise AccountNotFound(f"account with account number {number} not found")

    def get_by_id(self, account_id: int, for_update: bool = False) -> Account:
        self._check_id(account_id)
        result = self._run(
            f"SELECT {COLUMNS} FROM accounts WHERE id = ?{self._lock_clause(for_update)}",
            (account_id,)
        )
        if not result.rows:
            raise AccountNotFound(f"account with id {account_id} not found")
        return self._to_account(result.rows[0])

    def get_by_number(self, number: int, for_update: bool = False) -> Account:
        self._check_number(number)
        result = self._run(
            f"SELECT {COLUMNS} FROM accounts WHERE number = ?{self._lock_clause(for_update)}",
            (number,)
        )
        if not result.rows:
            raise AccountNotFound(f"account with account number {number} not found")
        return self._to_account(result.rows[0])

    def list_all(self) -> Iterator[Account]:
        result = self._run(f"SELECT {COLUMNS} FROM accounts ORDER BY id")
        return (self._to_account(row) for row in result.rows)

    def update_identity(self, account_id: int, first_name: str, last_name: str) -> Account:
        self._check_id(account_id)
        with self.atomic():
            result = self._run(
                "UPDATE accounts SET first_name = ?, last_name = ?, updated_at = ? WHERE id = ?",
                (first_name, last_name, self._timestamp(utc_now()), account_id)
            )
            if result.rowcount == 0:
                raise AccountNotFound(f"account with id {account_id} not found")
            return self.get_by_id(account_id)

    def set_balance(self, account_id: int, new_balance: int) -> Account:
        self._check_id(account_id)
        with self.atomic():
            result = self._run(
                "UPDATE accounts SET balance = ?, updated_at = ? WHERE id = ?",
                (new_balance, self._timestamp(utc_now()), account_id)
            )
            if result.rowcount == 0:
                raise AccountNotFound(f"account with id {account_id} not found")
            return self.get_by_id(account_id)

    def delete(self, account_id: int) -> None:
        self._check_id(account_id)
        result = self._run("DELETE FROM accounts WHERE id = ?", (account_id,))
        if result.rowcount == 0:
            raise AccountNotFound(f"account with id {account_id} not found")

    def count(self) -> int:
        result = self._run("SELECT COUNT(*) AS count FROM accounts")
        return result.rows[0]['count']

    def clear(self) -> None:
        self._run("DELETE FROM accounts")


class SQLiteAccountStore(_SQLAccountStore):
    """
    SQLite storage implementation for persistence

    Each thread gets its own connection in autocommit mode; transactions are
    opened with ``BEGIN IMMEDIATE`` so the read-modify-write of a balance holds
    the database write lock from the first read. An in-memory database cannot
    be shared between connections, so it uses one connection serialized by a
    lock that is held for the whole transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout: float = 5.0,
                 **kwargs):
        super().__init__(**kwargs)
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._shared = self.db_path == ":memory:"
        self._lock = threading.RLock()
        self._connections: List[sqlite3.Connection] = []
        self._shared_connection = self._connect() if self._shared else None

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                check_same_thread=False,
                isolation_level=None
            )
            connection.row_factory = sqlite3.Row
            if not self._shared:
                # WAL lets readers proceed while a writer holds the lock
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open SQLite database {self.db_path}: {e}") from e
        with self._lock:
            self._connections.append(connection)
        return connection

    def _connection(self) -> sqlite3.Connection:
        if self._shared:
            return self._shared_connection
        connection = getattr(self._local, 'connection', None)
        if connection is None:
            connection = self._connect()
            self._local.connection = connection
        return connection

    def _guard(self):
        return self._lock if self._shared else nullcontext()

    def _run(self, sql: str, params: Sequence[Any] = ()) -> _Result:
        try:
            with self._guard():
                cursor = self._connection().execute(sql, params)
                return _Result(cursor.fetchall(), cursor.rowcount, cursor.lastrowid)
        except sqlite3.Error as e:
            raise StorageFailure(f"SQLite error: {e}") from e
        except OverflowError as e:
            raise StorageFailure(f"SQLite cannot store parameter: {e}") from e

    def _timestamp(self, value: datetime) -> str:
        return value.isoformat()

    def init(self) -> None:
        self._run("""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                first_name VARCHAR(50) NOT NULL,
                last_name VARCHAR(50) NOT NULL,
                number INTEGER NOT NULL,
                balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._run("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_number
            ON accounts(number)
        """)
        self.logger.info("SQLite accounts table ready at %s", self.db_path)

    def _insert(self, first_name, last_name, number, now):
        with self.atomic():
            result = self._run("""
                INSERT INTO accounts
                    (first_name, last_name, number, balance, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT (number) DO NOTHING
            """, (first_name, last_name, number, self._timestamp(now), self._timestamp(now)))
            if result.rowcount == 0:
                return None
            return self.get_by_id(result.lastrowid)

    def begin_transaction(self) -> None:
        if self._shared:
            self._lock.acquire()
        try:
            self._run("BEGIN IMMEDIATE")
        except StorageFailure:
            if self._shared:
                self._lock.release()
            raise

    def commit(self) -> None:
        try:
            self._run("COMMIT")
        except StorageFailure:
            self._release(rollback=True)
            raise
        self._release()

    def rollback(self) -> None:
        self._release(rollback=True)

    def _release(self, rollback: bool = False) -> None:
        try:
            if rollback and self._connection().in_transaction:
                self._run("ROLLBACK")
        except StorageFailure:
            self.logger.exception("Rollback failed on %s", self.db_path)
        finally:
            if self._shared:
                self._lock.release()

    def close(self) -> None:
        """Close every SQLite connection opened by this store"""
        with self._lock:
            for connection in self._connections:
                connection.close()
            self._connections = []
            self._shared_connection = None


class PostgreSQLAccountStore(_SQLAccountStore):
    """PostgreSQL storage backend with row-level locking"""

    def __init__(self, connection_string: str, **kwargs):
        super().__init__(**kwargs)
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._lock = threading.Lock()
        self._connections = []

    def _connection(self):
        connection = getattr(self._local, 'connection', None)
        if connection is None or connection.closed:
            try:
                connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor
                )
            except self.psycopg2.Error as e:
                raise StorageFailure(f"Cannot connect to PostgreSQL: {e}") from e
            # Transactions are opened explicitly with BEGIN
            connection.autocommit = True
            self._local.connection = connection
            with self._lock:
                self._connections.append(connection)
        return connection

    def _run(self, sql: str, params: Sequence[Any] = ()) -> _Result:
        try:
            with self._connection().cursor() as cursor:
                cursor.execute(sql.replace("?", "%s"), tuple(params))
                rows = cursor.fetchall() if cursor.description else []
                return _Result(rows, cursor.rowcount, None)
        except self.psycopg2.Error as e:
            raise StorageFailure(f"PostgreSQL error: {e}") from e

    def _lock_clause(self, for_update: bool) -> str:
        return " FOR UPDATE" if for_update and self.in_transaction else ""

    def init(self) -> None:
        self._run("""
            CREATE TABLE IF NOT EXISTS accounts (
                id BIGSERIAL PRIMARY KEY,
                first_name VARCHAR(50) NOT NULL,
                last_name VARCHAR(50) NOT NULL,
                number BIGINT NOT NULL,
                balance BIGINT NOT NULL DEFAULT 0 CHECK (balance >= 0),
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
        """)
        self._run("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_accounts_number
            ON accounts(number)
        """)
        self.logger.info("PostgreSQL accounts table ready")

    def _insert(self, first_name, last_name, number, now):
        result = self._run(f"""
            INSERT INTO accounts
                (first_name, last_name, number, balance, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?)
            ON CONFLICT (number) DO NOTHING
            RETURNING {COLUMNS}
        """, (first_name, last_name, number, now, now))
        if not result.rows:
            return None
        return self._to_account(result.rows[0])

    def begin_transaction(self) -> None:
        self._run("BEGIN")

    def commit(self) -> None:
        try:
            self._run("COMMIT")
        except StorageFailure:
            self.rollback()
            raise

    def rollback(self) -> None:
        try:
            self._run("ROLLBACK")
        except StorageFailure:
            self.logger.exception("Rollback failed")

    def close(self) -> None:
        """Close PostgreSQL connections"""
        with self._lock:
            for connection in self._connections:
                if not connection.closed:
                    connection.close()
            self._connections = []


def create_store(config) -> AccountStore:
    """
    Build and initialize the storage backend named in configuration

    Args:
        config: BankAccountsConfig instance

    Returns:
        Initialized AccountStore

    Raises:
        ConfigurationError: If the backend name is unknown
    """
    backend = config.storage_backend.lower()
    options = {
        "number_limit": config.account_number_limit,
        "number_attempts": config.number_generation_attempts,
    }

    if backend == "memory":
        store = InMemoryAccountStore(**options)
    elif backend == "sqlite":
        store = SQLiteAccountStore(config.sqlite_path, busy_timeout=config.sqlite_busy_timeout,
                                   **options)
    elif backend == "postgresql":
        store = PostgreSQLAccountStore(config.database_url, **options)
    else:
        raise ConfigurationError(f"Unknown storage backend: {config.storage_backend}")

    store.init()
    return store
