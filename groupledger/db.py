import logging
from contextlib import contextmanager
from importlib import resources
from typing import Any, Dict, Iterable, Iterator, List, Optional

import mysql.connector
from mysql.connector import errorcode, pooling

from .config import config
from .errors import LedgerError, TransactionError

logger = logging.getLogger(__name__)

# InnoDB reports these when a transaction lost a lock race; the whole unit can be retried.
RETRYABLE_ERRORS = (errorcode.ER_LOCK_DEADLOCK, errorcode.ER_LOCK_WAIT_TIMEOUT)


class UnitOfWork:
    """One open transaction. Every write that belongs to a ledger event goes through it."""

    def __init__(self, conn, cursor) -> None:
        self.conn = conn
        self.cursor = cursor

    def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        self.cursor.execute(query, params or ())
        return self.cursor.rowcount

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        self.cursor.execute(query, params or ())
        return self.cursor.fetchone()

    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        self.cursor.execute(query, params or ())
        return self.cursor.fetchall()

    @property
    def lastrowid(self) -> int:
        return self.cursor.lastrowid


class Database:
    def __init__(self) -> None:
        self._pool: Optional[pooling.MySQLConnectionPool] = None

    @property
    def pool(self) -> pooling.MySQLConnectionPool:
        if self._pool is None:
            self._pool = pooling.MySQLConnectionPool(
                pool_name="groupledger_pool",
                pool_size=config.DB_POOL_SIZE,
                host=config.DB_HOST,
                port=config.DB_PORT,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                database=config.DB_NAME,
                auth_plugin="mysql_native_password",
            )
        return self._pool

    @contextmanager
    def connection(self):
        conn = self.pool.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def cursor(self, dictionary: bool = True):
        """Short-lived cursor outside any ledger transaction; driver errors surface as TransactionError."""
        try:
            with self.connection() as conn:
                cursor = conn.cursor(dictionary=dictionary)
                try:
                    yield cursor
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
                finally:
                    cursor.close()
        except mysql.connector.Error as exc:
            logger.exception("query failed")
            raise TransactionError(f"query failed: {exc}") from exc

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """Run a block as one all-or-nothing unit.

        Ledger errors raised inside the block roll back and propagate unchanged;
        driver errors roll back and surface as TransactionError.
        """
        with self.connection() as conn:
            cursor = conn.cursor(dictionary=True)
            try:
                conn.start_transaction(isolation_level="REPEATABLE READ")
                yield UnitOfWork(conn, cursor)
                conn.commit()
            except LedgerError:
                conn.rollback()
                raise
            except mysql.connector.Error as exc:
                conn.rollback()
                if exc.errno in RETRYABLE_ERRORS:
                    logger.warning("transaction aborted on lock contention: %s", exc)
                else:
                    logger.exception("transaction aborted")
                raise TransactionError(f"transaction failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchone()

    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> Iterable[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchall()

    def init_schema(self) -> None:
        script = resources.files("groupledger").joinpath("schema.sql").read_text(encoding="utf-8")
        with self.cursor() as cursor:
            for chunk in script.split(";"):
                statement = "\n".join(
                    line for line in chunk.splitlines() if not line.strip().startswith("--")
                ).strip()
                if statement:
                    cursor.execute(statement)


db = Database()
