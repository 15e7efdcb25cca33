"""
SQL repositories for the ledger.

Write methods take the caller's UnitOfWork and never open a transaction of
their own; read methods use it when given one (so a coordinator sees its own
uncommitted writes) and fall back to a short-lived pooled cursor otherwise.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import mysql.connector
from mysql.connector import errorcode

from .db import Database, UnitOfWork
from .errors import AlreadyExistsError, AlreadyFinalizedError, NotFoundError, OptimisticLockError
from .models import (
    Balance,
    BalanceChangeType,
    BalanceHistory,
    Expense,
    PaidBy,
    Settlement,
    SettlementMethod,
    SettlementStatus,
    SplitDetail,
    SplitShare,
    SplitType,
)
from .money import ZERO, to_decimal

logger = logging.getLogger(__name__)

PERSONAL_SCOPE = ""
NO_LIMIT = 18446744073709551615

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def group_key(group_id: Optional[str]) -> str:
    return group_id if group_id else PERSONAL_SCOPE


def _group_id(key: Optional[str]) -> Optional[str]:
    return key or None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _page(limit: int, offset: int) -> Tuple[str, List[int]]:
    if limit > 0:
        return " LIMIT %s OFFSET %s", [limit, offset]
    if offset > 0:
        return " LIMIT %s OFFSET %s", [NO_LIMIT, offset]
    return "", []


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join(["%s"] * len(values))


class _Repository:
    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    def _fetch_one(self, uow: Optional[UnitOfWork], query: str, params: Iterable[Any]) -> Optional[Dict[str, Any]]:
        if uow is not None:
            return uow.fetch_one(query, params)
        return self.db.fetch_one(query, params)

    def _fetch_all(self, uow: Optional[UnitOfWork], query: str, params: Iterable[Any]) -> List[Dict[str, Any]]:
        if uow is not None:
            return list(uow.fetch_all(query, params))
        return list(self.db.fetch_all(query, params))


class BalanceRepository(_Repository):
    """Owns the balances and balance_history tables."""

    _COLUMNS = "user_id, group_key, currency, balance, version, updated_at"

    def adjust(
        self,
        uow: UnitOfWork,
        user_id: str,
        group_id: Optional[str],
        currency: str,
        delta: Decimal,
    ) -> None:
        """Blind increment of one balance row.

        Get-or-create: a missing (user, scope, currency) row is inserted with
        version 1 and ``delta`` as its balance; an existing one has ``delta``
        added and its version bumped. No read happens first, so concurrent
        increments on the same row serialize on its row lock and commute.
        """
        uow.execute(
            """
            INSERT INTO balances (user_id, group_key, currency, balance, version, updated_at)
            VALUES (%s, %s, %s, %s, 1, %s)
            ON DUPLICATE KEY UPDATE
                balance = balance + VALUES(balance),
                version = version + 1,
                updated_at = VALUES(updated_at)
            """,
            (user_id, group_key(group_id), currency, str(delta), self.clock()),
        )

    def create(self, uow: UnitOfWork, balance: Balance) -> Balance:
        """Insert a new balance row at version 1; the (user, scope, currency) key must be free."""
        now = self.clock()
        try:
            uow.execute(
                """
                INSERT INTO balances (user_id, group_key, currency, balance, version, updated_at)
                VALUES (%s, %s, %s, %s, 1, %s)
                """,
                (balance.user_id, group_key(balance.group_id), balance.currency, str(balance.balance), now),
            )
        except mysql.connector.IntegrityError as exc:
            if exc.errno != errorcode.ER_DUP_ENTRY:
                raise
            raise AlreadyExistsError("balance already exists") from exc
        balance.version = 1
        balance.updated_at = now
        return balance

    def compare_and_set(self, uow: UnitOfWork, balance: Balance) -> Balance:
        """Write ``balance.balance`` only if the stored version is still ``balance.version``."""
        now = self.clock()
        matched = uow.execute(
            """
            UPDATE balances
            SET balance=%s, version=version + 1, updated_at=%s
            WHERE user_id=%s AND group_key=%s AND currency=%s AND version=%s
            """,
            (
                str(balance.balance),
                now,
                balance.user_id,
                group_key(balance.group_id),
                balance.currency,
                balance.version,
            ),
        )
        if matched == 0:
            raise OptimisticLockError()
        balance.version += 1
        balance.updated_at = now
        return balance

    def get_by_user(self, user_id: str) -> List[Balance]:
        rows = self._fetch_all(
            None,
            f"SELECT {self._COLUMNS} FROM balances WHERE user_id=%s ORDER BY group_key, currency",
            (user_id,),
        )
        return [self._to_balance(row) for row in rows]

    def get_by_group(self, group_id: str) -> List[Balance]:
        rows = self._fetch_all(
            None,
            f"SELECT {self._COLUMNS} FROM balances WHERE group_key=%s ORDER BY user_id, currency",
            (group_key(group_id),),
        )
        return [self._to_balance(row) for row in rows]

    def get_by_user_and_group(
        self,
        user_id: str,
        group_id: Optional[str],
        currency: str,
        uow: Optional[UnitOfWork] = None,
    ) -> Balance:
        row = self._fetch_one(
            uow,
            f"""
            SELECT {self._COLUMNS} FROM balances
            WHERE user_id=%s AND group_key=%s AND currency=%s
            """,
            (user_id, group_key(group_id), currency),
        )
        if not row:
            raise NotFoundError("balance not found")
        return self._to_balance(row)

    def add_history(self, uow: UnitOfWork, history: BalanceHistory) -> BalanceHistory:
        history.created_at = history.created_at or self.clock()
        uow.execute(
            """
            INSERT INTO balance_history
                (user_id, group_key, amount, currency, type, reference_id, description, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                history.user_id,
                group_key(history.group_id),
                str(history.amount),
                history.currency,
                history.type.value,
                history.reference_id,
                history.description,
                history.created_at,
            ),
        )
        history.id = uow.lastrowid
        return history

    def get_history(
        self,
        user_id: str,
        group_id: Optional[str] = None,
        limit: int = 0,
        offset: int = 0,
    ) -> List[BalanceHistory]:
        query = """
            SELECT id, user_id, group_key, amount, currency, type, reference_id, description, created_at
            FROM balance_history
            WHERE user_id=%s
        """
        params: List[Any] = [user_id]
        if group_id is not None:
            query += " AND group_key=%s"
            params.append(group_key(group_id))
        query += " ORDER BY created_at DESC, id DESC"
        page, page_params = _page(limit, offset)
        rows = self._fetch_all(None, query + page, params + page_params)
        return [
            BalanceHistory(
                id=row["id"],
                user_id=row["user_id"],
                group_id=_group_id(row["group_key"]),
                amount=to_decimal(row["amount"]),
                currency=row["currency"],
                type=BalanceChangeType(row["type"]),
                reference_id=row["reference_id"],
                description=row["description"],
                created_at=_aware(row["created_at"]),
            )
            for row in rows
        ]

    def history_total(self, user_id: str, group_id: Optional[str], currency: str) -> Decimal:
        row = self._fetch_one(
            None,
            """
            SELECT SUM(amount) AS total FROM balance_history
            WHERE user_id=%s AND group_key=%s AND currency=%s
            """,
            (user_id, group_key(group_id), currency),
        )
        return to_decimal(row["total"] or 0) if row else ZERO

    @staticmethod
    def _to_balance(row: Dict[str, Any]) -> Balance:
        return Balance(
            user_id=row["user_id"],
            group_id=_group_id(row["group_key"]),
            currency=row["currency"],
            balance=to_decimal(row["balance"]),
            version=row["version"],
            updated_at=_aware(row["updated_at"]),
        )


class ExpenseRepository(_Repository):
    _COLUMNS = "expense_id, group_id, creator_id, title, amount, currency, split_type, is_deleted, created_at, updated_at"

    def create(self, uow: UnitOfWork, expense: Expense) -> Expense:
        uow.execute(
            """
            INSERT INTO expenses
                (expense_id, group_id, creator_id, title, amount, currency, split_type,
                 is_deleted, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                expense.expense_id,
                expense.group_id,
                expense.creator_id,
                expense.title,
                str(expense.amount),
                expense.currency,
                expense.split.type.value,
                int(expense.is_deleted),
                expense.created_at,
                expense.updated_at,
            ),
        )
        self._insert_lines(uow, expense)
        return expense

    def update(self, uow: UnitOfWork, expense: Expense) -> Expense:
        matched = uow.execute(
            """
            UPDATE expenses
            SET title=%s, amount=%s, currency=%s, split_type=%s, updated_at=%s
            WHERE expense_id=%s AND is_deleted=0
            """,
            (
                expense.title,
                str(expense.amount),
                expense.currency,
                expense.split.type.value,
                expense.updated_at,
                expense.expense_id,
            ),
        )
        if matched == 0:
            raise NotFoundError("expense not found")
        uow.execute("DELETE FROM expense_payers WHERE expense_id=%s", (expense.expense_id,))
        uow.execute("DELETE FROM expense_shares WHERE expense_id=%s", (expense.expense_id,))
        self._insert_lines(uow, expense)
        return expense

    def soft_delete(self, uow: UnitOfWork, expense_id: str) -> None:
        matched = uow.execute(
            "UPDATE expenses SET is_deleted=1, updated_at=%s WHERE expense_id=%s AND is_deleted=0",
            (self.clock(), expense_id),
        )
        if matched == 0:
            raise NotFoundError("expense not found")

    def get_by_id(self, expense_id: str, uow: Optional[UnitOfWork] = None, for_update: bool = False) -> Expense:
        query = f"SELECT {self._COLUMNS} FROM expenses WHERE expense_id=%s AND is_deleted=0"
        if for_update:
            query += " FOR UPDATE"
        row = self._fetch_one(uow, query, (expense_id,))
        if not row:
            raise NotFoundError("expense not found")
        return self._hydrate([row], uow)[0]

    def get_by_group(self, group_id: str, limit: int = 0, offset: int = 0) -> List[Expense]:
        page, page_params = _page(limit, offset)
        rows = self._fetch_all(
            None,
            f"""
            SELECT {self._COLUMNS} FROM expenses
            WHERE group_id=%s AND is_deleted=0
            ORDER BY created_at DESC
            """ + page,
            [group_id] + page_params,
        )
        return self._hydrate(rows)

    def get_by_user(self, user_id: str, limit: int = 0, offset: int = 0) -> List[Expense]:
        page, page_params = _page(limit, offset)
        rows = self._fetch_all(
            None,
            f"""
            SELECT {self._COLUMNS} FROM expenses e
            WHERE e.is_deleted=0 AND (
                e.creator_id=%s
                OR EXISTS (SELECT 1 FROM expense_payers p WHERE p.expense_id=e.expense_id AND p.user_id=%s)
                OR EXISTS (SELECT 1 FROM expense_shares s WHERE s.expense_id=e.expense_id AND s.user_id=%s)
            )
            ORDER BY e.created_at DESC
            """ + page,
            [user_id, user_id, user_id] + page_params,
        )
        return self._hydrate(rows)

    def _insert_lines(self, uow: UnitOfWork, expense: Expense) -> None:
        for payer in expense.paid_by:
            uow.execute(
                "INSERT INTO expense_payers (expense_id, user_id, amount) VALUES (%s, %s, %s)",
                (expense.expense_id, payer.user_id, str(payer.amount)),
            )
        for share in expense.split.details:
            uow.execute(
                "INSERT INTO expense_shares (expense_id, user_id, share_amount) VALUES (%s, %s, %s)",
                (expense.expense_id, share.user_id, str(share.value)),
            )

    def _hydrate(self, rows: List[Dict[str, Any]], uow: Optional[UnitOfWork] = None) -> List[Expense]:
        if not rows:
            return []

        expense_ids = [row["expense_id"] for row in rows]
        placeholders = _placeholders(expense_ids)
        payers_map: Dict[str, List[PaidBy]] = {}
        shares_map: Dict[str, List[SplitShare]] = {}

        for payer in self._fetch_all(
            uow,
            f"SELECT expense_id, user_id, amount FROM expense_payers WHERE expense_id IN ({placeholders}) ORDER BY id",
            expense_ids,
        ):
            payers_map.setdefault(payer["expense_id"], []).append(
                PaidBy(user_id=payer["user_id"], amount=to_decimal(payer["amount"]))
            )

        for share in self._fetch_all(
            uow,
            f"SELECT expense_id, user_id, share_amount FROM expense_shares WHERE expense_id IN ({placeholders}) ORDER BY id",
            expense_ids,
        ):
            shares_map.setdefault(share["expense_id"], []).append(
                SplitShare(user_id=share["user_id"], value=to_decimal(share["share_amount"]))
            )

        return [
            Expense(
                expense_id=row["expense_id"],
                group_id=row["group_id"],
                creator_id=row["creator_id"],
                title=row["title"],
                amount=to_decimal(row["amount"]),
                currency=row["currency"],
                paid_by=payers_map.get(row["expense_id"], []),
                split=SplitDetail(
                    type=SplitType(row["split_type"]),
                    details=shares_map.get(row["expense_id"], []),
                ),
                is_deleted=bool(row["is_deleted"]),
                created_at=_aware(row["created_at"]),
                updated_at=_aware(row["updated_at"]),
            )
            for row in rows
        ]


class SettlementRepository(_Repository):
    _COLUMNS = (
        "settlement_id, from_user_id, to_user_id, group_id, amount, currency, status, method, "
        "description, transaction_id, failure_reason, created_at, updated_at, completed_at, failed_at"
    )

    def create(self, uow: UnitOfWork, settlement: Settlement) -> Settlement:
        uow.execute(
            """
            INSERT INTO settlements
                (settlement_id, from_user_id, to_user_id, group_id, amount, currency, status,
                 method, description, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                settlement.settlement_id,
                settlement.from_user_id,
                settlement.to_user_id,
                settlement.group_id,
                str(settlement.amount),
                settlement.currency,
                settlement.status.value,
                settlement.method.value,
                settlement.description,
                settlement.created_at,
                settlement.updated_at,
            ),
        )
        return settlement

    def get_by_id(self, settlement_id: str, uow: Optional[UnitOfWork] = None, for_update: bool = False) -> Settlement:
        query = f"SELECT {self._COLUMNS} FROM settlements WHERE settlement_id=%s"
        if for_update:
            query += " FOR UPDATE"
        row = self._fetch_one(uow, query, (settlement_id,))
        if not row:
            raise NotFoundError("settlement not found")
        return self._to_settlement(row)

    def get_by_user(self, user_id: str, limit: int = 0, offset: int = 0) -> List[Settlement]:
        page, page_params = _page(limit, offset)
        rows = self._fetch_all(
            None,
            f"""
            SELECT {self._COLUMNS} FROM settlements
            WHERE from_user_id=%s OR to_user_id=%s
            ORDER BY created_at DESC
            """ + page,
            [user_id, user_id] + page_params,
        )
        return [self._to_settlement(row) for row in rows]

    def get_by_group(self, group_id: str, limit: int = 0, offset: int = 0) -> List[Settlement]:
        page, page_params = _page(limit, offset)
        rows = self._fetch_all(
            None,
            f"SELECT {self._COLUMNS} FROM settlements WHERE group_id=%s ORDER BY created_at DESC" + page,
            [group_id] + page_params,
        )
        return [self._to_settlement(row) for row in rows]

    def get_pending(self, user_id: str) -> List[Settlement]:
        rows = self._fetch_all(
            None,
            f"""
            SELECT {self._COLUMNS} FROM settlements
            WHERE status=%s AND (from_user_id=%s OR to_user_id=%s)
            ORDER BY created_at DESC
            """,
            (SettlementStatus.PENDING.value, user_id, user_id),
        )
        return [self._to_settlement(row) for row in rows]

    def mark_completed(self, uow: UnitOfWork, settlement_id: str, transaction_id: Optional[str]) -> datetime:
        now = self.clock()
        self._finalize(
            uow,
            settlement_id,
            "status=%s, completed_at=%s, updated_at=%s, transaction_id=%s",
            [SettlementStatus.COMPLETED.value, now, now, transaction_id],
        )
        return now

    def mark_failed(self, uow: UnitOfWork, settlement_id: str, reason: str) -> datetime:
        now = self.clock()
        self._finalize(
            uow,
            settlement_id,
            "status=%s, failed_at=%s, failure_reason=%s, updated_at=%s",
            [SettlementStatus.FAILED.value, now, reason, now],
        )
        return now

    def mark_cancelled(self, uow: UnitOfWork, settlement_id: str) -> datetime:
        now = self.clock()
        self._finalize(
            uow,
            settlement_id,
            "status=%s, updated_at=%s",
            [SettlementStatus.CANCELLED.value, now],
        )
        return now

    def _finalize(self, uow: UnitOfWork, settlement_id: str, assignments: str, params: List[Any]) -> None:
        # Only a pending row matches, so a second transition finds nothing to update.
        matched = uow.execute(
            f"UPDATE settlements SET {assignments} WHERE settlement_id=%s AND status=%s",
            params + [settlement_id, SettlementStatus.PENDING.value],
        )
        if matched == 0:
            raise AlreadyFinalizedError(f"settlement {settlement_id} is no longer pending")

    @staticmethod
    def _to_settlement(row: Dict[str, Any]) -> Settlement:
        return Settlement(
            settlement_id=row["settlement_id"],
            from_user_id=row["from_user_id"],
            to_user_id=row["to_user_id"],
            group_id=row["group_id"],
            amount=to_decimal(row["amount"]),
            currency=row["currency"],
            status=SettlementStatus(row["status"]),
            method=SettlementMethod(row["method"]),
            description=row["description"],
            transaction_id=row["transaction_id"],
            failure_reason=row["failure_reason"],
            created_at=_aware(row["created_at"]),
            updated_at=_aware(row["updated_at"]),
            completed_at=_aware(row["completed_at"]),
            failed_at=_aware(row["failed_at"]),
        )


class UserDirectory(_Repository):
    """Read-only view of the users table owned by the identity service."""

    def missing(self, user_ids: Sequence[str]) -> List[str]:
        """Return the ids from ``user_ids`` that do not exist, in input order."""
        if not user_ids:
            return []
        rows = self._fetch_all(
            None,
            f"SELECT user_id FROM users WHERE user_id IN ({_placeholders(user_ids)})",
            list(user_ids),
        )
        existing = {row["user_id"] for row in rows}
        return [user_id for user_id in user_ids if user_id not in existing]


class GroupDirectory(_Repository):
    """Read-only view of group membership owned by the membership service."""

    def non_members(self, group_id: str, user_ids: Sequence[str]) -> List[str]:
        """Return the ids from ``user_ids`` that are not active members of the group."""
        if not user_ids:
            return []
        rows = self._fetch_all(
            None,
            f"""
            SELECT gm.user_id
            FROM group_members gm
            JOIN `groups` g ON g.group_id = gm.group_id
            WHERE gm.group_id=%s AND gm.is_active=1 AND g.is_active=1
              AND gm.user_id IN ({_placeholders(user_ids)})
            """,
            [group_id] + list(user_ids),
        )
        members = {row["user_id"] for row in rows}
        return [user_id for user_id in user_ids if user_id not in members]
