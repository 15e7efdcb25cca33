"""
Expense ledger coordinator.

Recording an expense validates it, resolves its split, and then persists the
expense together with every balance delta and history row it causes inside a
single transaction. Edits and deletions reverse the previous deltas in the
same transaction that applies the new state, so balances and history always
reconcile.
"""
from __future__ import annotations

import copy
import logging
import re
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from .db import Database, UnitOfWork
from .errors import (
    ForbiddenError,
    NotAMemberError,
    NotFoundError,
    OptimisticLockError,
    UnknownUserError,
    ValidationError,
)
from .models import BalanceChangeType, BalanceHistory, Expense, PaidBy, SplitDetail, SplitType
from .money import ZERO, to_decimal
from .repositories import (
    BalanceRepository,
    Clock,
    ExpenseRepository,
    GroupDirectory,
    UserDirectory,
    utcnow,
)
from .splits import calculate_shares, validate_payers

logger = logging.getLogger(__name__)

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
EDITABLE_FIELDS = frozenset({"title", "amount", "currency", "paid_by", "split"})


def new_id() -> str:
    return str(uuid.uuid4())


def net_deltas(expense: Expense) -> Dict[str, Decimal]:
    """Signed balance change per user for a resolved expense.

    Each participant's share is owed to the payers, so a user's net change is
    what they paid minus what they consumed. The deltas of one expense sum to
    zero.
    """
    deltas: Dict[str, Decimal] = {}
    for payer in expense.paid_by:
        deltas[payer.user_id] = deltas.get(payer.user_id, ZERO) + payer.amount
    for share in expense.split.details:
        deltas[share.user_id] = deltas.get(share.user_id, ZERO) - share.value
    return deltas


class ExpenseLedger:
    def __init__(
        self,
        db: Database,
        expenses: ExpenseRepository,
        balances: BalanceRepository,
        users: UserDirectory,
        groups: GroupDirectory,
        clock: Clock = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.db = db
        self.expenses = expenses
        self.balances = balances
        self.users = users
        self.groups = groups
        self.clock = clock
        self.id_factory = id_factory

    def record_expense(self, expense: Expense) -> Expense:
        self._validate_structure(expense)
        self._validate_references(expense)
        expense.split.details = calculate_shares(expense.amount, expense.currency, expense.paid_by, expense.split)

        expense.expense_id = self.id_factory()
        expense.created_at = self.clock()
        expense.updated_at = expense.created_at
        expense.is_deleted = False

        with self.db.transaction() as uow:
            self.expenses.create(uow, expense)
            self._apply(uow, expense, net_deltas(expense), BalanceChangeType.EXPENSE, f"Expense: {expense.title}")

        logger.info(
            "expense %s recorded: %s %s split %s among %d",
            expense.expense_id,
            expense.amount,
            expense.currency,
            expense.split.type.value,
            len(expense.split.details),
        )
        return expense

    def get_expense(self, expense_id: str, user_id: str) -> Expense:
        expense = self.expenses.get_by_id(expense_id)
        # Users outside the expense get the same answer as for a missing one.
        if not expense.involves(user_id):
            raise NotFoundError("expense not found")
        return expense

    def list_group_expenses(
        self,
        group_id: str,
        limit: int = 0,
        offset: int = 0,
        user_id: Optional[str] = None,
    ) -> List[Expense]:
        if user_id is not None and self.groups.non_members(group_id, [user_id]):
            raise NotAMemberError(user_id, group_id)
        return self.expenses.get_by_group(group_id, limit, offset)

    def list_user_expenses(self, user_id: str, limit: int = 0, offset: int = 0) -> List[Expense]:
        return self.expenses.get_by_user(user_id, limit, offset)

    def update_expense(self, expense_id: str, user_id: str, changes: Mapping[str, Any]) -> Expense:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields cannot be edited: {', '.join(sorted(unknown))}")

        current = self.expenses.get_by_id(expense_id)
        if current.creator_id != user_id:
            raise ForbiddenError("only the creator can edit an expense")

        updated = copy.deepcopy(current)
        for name, value in changes.items():
            setattr(updated, name, value)
        self._validate_structure(updated)

        if "split" in changes or updated.split.type == SplitType.EQUAL:
            self._validate_references(updated)
            updated.split.details = calculate_shares(updated.amount, updated.currency, updated.paid_by, updated.split)
        elif updated.amount == current.amount:
            # Resolved shares still cover the same total; only payers or title moved.
            self._validate_references(updated)
        else:
            raise ValidationError("split must be provided when the amount changes")

        updated.updated_at = self.clock()

        with self.db.transaction() as uow:
            locked = self.expenses.get_by_id(expense_id, uow=uow, for_update=True)
            if locked.updated_at != current.updated_at:
                raise OptimisticLockError("expense was modified concurrently")
            self._reverse(uow, locked, f"Expense edited: {locked.title}")
            self.expenses.update(uow, updated)
            self._apply(uow, updated, net_deltas(updated), BalanceChangeType.EXPENSE, f"Expense: {updated.title}")

        logger.info("expense %s updated by %s", expense_id, user_id)
        return updated

    def delete_expense(self, expense_id: str, user_id: str) -> None:
        current = self.expenses.get_by_id(expense_id)
        if current.creator_id != user_id:
            raise ForbiddenError("only the creator can delete an expense")

        with self.db.transaction() as uow:
            locked = self.expenses.get_by_id(expense_id, uow=uow, for_update=True)
            self.expenses.soft_delete(uow, expense_id)
            self._reverse(uow, locked, f"Expense deleted: {locked.title}")

        logger.info("expense %s deleted by %s", expense_id, user_id)

    def _reverse(self, uow: UnitOfWork, expense: Expense, description: str) -> None:
        reversal = {user_id: -delta for user_id, delta in net_deltas(expense).items()}
        self._apply(uow, expense, reversal, BalanceChangeType.CORRECTION, description)

    def _apply(
        self,
        uow: UnitOfWork,
        expense: Expense,
        deltas: Dict[str, Decimal],
        change_type: BalanceChangeType,
        description: str,
    ) -> None:
        # Sorted so concurrent transactions take balance row locks in the same order.
        for user_id in sorted(deltas):
            delta = deltas[user_id]
            if delta == ZERO:
                continue
            self.balances.adjust(uow, user_id, expense.group_id, expense.currency, delta)
            self.balances.add_history(
                uow,
                BalanceHistory(
                    user_id=user_id,
                    group_id=expense.group_id,
                    amount=delta,
                    currency=expense.currency,
                    type=change_type,
                    reference_id=expense.expense_id,
                    description=description,
                    created_at=self.clock(),
                ),
            )

    def _validate_structure(self, expense: Expense) -> None:
        if not expense.creator_id:
            raise ValidationError("creator is required")
        if not isinstance(expense.currency, str) or not CURRENCY_RE.match(expense.currency):
            raise ValidationError(f"invalid currency: {expense.currency!r}")

        expense.amount = to_decimal(expense.amount)
        expense.paid_by = [PaidBy(user_id=p.user_id, amount=to_decimal(p.amount)) for p in expense.paid_by]
        validate_payers(expense.amount, expense.paid_by)

        if not isinstance(expense.split, SplitDetail):
            raise ValidationError("split is required")
        try:
            expense.split.type = SplitType(expense.split.type)
        except ValueError:
            raise ValidationError(f"invalid split type: {expense.split.type}") from None

    def _validate_references(self, expense: Expense) -> None:
        user_ids = expense.user_ids()

        missing = self.users.missing(user_ids)
        if missing:
            raise UnknownUserError(missing[0])

        if expense.group_id is not None:
            non_members = self.groups.non_members(expense.group_id, user_ids)
            if non_members:
                raise NotAMemberError(non_members[0], expense.group_id)
