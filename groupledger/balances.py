"""
Balance aggregation, corrections and settlement suggestions.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from .db import Database
from .errors import (
    AlreadyExistsError,
    NotAMemberError,
    NotFoundError,
    OptimisticLockError,
    UnknownUserError,
    ValidationError,
)
from .models import Balance, BalanceChangeType, BalanceHistory, SuggestedTransfer, UserBalanceSummary
from .money import ZERO, quantize, to_decimal
from .repositories import BalanceRepository, Clock, GroupDirectory, UserDirectory, utcnow

logger = logging.getLogger(__name__)


class BalanceService:
    def __init__(
        self,
        db: Database,
        balances: BalanceRepository,
        users: UserDirectory,
        groups: GroupDirectory,
        clock: Clock = utcnow,
        max_retries: int = 3,
    ) -> None:
        self.db = db
        self.balances = balances
        self.users = users
        self.groups = groups
        self.clock = clock
        self.max_retries = max_retries

    def get_user_balance_summary(self, user_id: str) -> UserBalanceSummary:
        missing = self.users.missing([user_id])
        if missing:
            raise UnknownUserError(missing[0])

        summary = UserBalanceSummary(user_id=user_id)
        for balance in self.balances.get_by_user(user_id):
            summary.totals[balance.currency] = summary.totals.get(balance.currency, ZERO) + balance.balance
            if balance.group_id is not None:
                summary.group_balances.append(balance)
            else:
                summary.personal_balances.append(balance)
            if balance.updated_at and (summary.last_updated is None or balance.updated_at > summary.last_updated):
                summary.last_updated = balance.updated_at
        return summary

    def get_group_balances(self, group_id: str, user_id: Optional[str] = None) -> List[Balance]:
        if user_id is not None and self.groups.non_members(group_id, [user_id]):
            raise NotAMemberError(user_id, group_id)
        return self.balances.get_by_group(group_id)

    def get_user_balance_in_group(self, user_id: str, group_id: Optional[str], currency: str) -> Balance:
        try:
            return self.balances.get_by_user_and_group(user_id, group_id, currency)
        except NotFoundError:
            # No event has touched this scope yet
            return Balance(user_id=user_id, group_id=group_id, currency=currency, balance=ZERO, version=0)

    def get_balance_history(
        self,
        user_id: str,
        group_id: Optional[str] = None,
        limit: int = 0,
        offset: int = 0,
    ) -> List[BalanceHistory]:
        return self.balances.get_history(user_id, group_id, limit, offset)

    def correct_balance(
        self,
        user_id: str,
        group_id: Optional[str],
        currency: str,
        new_amount: Decimal,
        reason: str,
        reference_id: str = "",
    ) -> Balance:
        """Set a balance to ``new_amount`` and record the difference as a correction.

        Read-modify-write guarded by the version counter; a concurrent change
        makes the write miss, and the correction is recomputed from a fresh read.
        """
        if not reason or not reason.strip():
            raise ValidationError("a correction needs a reason")
        target = to_decimal(new_amount)

        attempt = 0
        while True:
            attempt += 1
            current = self.get_user_balance_in_group(user_id, group_id, currency)
            delta = target - current.balance
            if delta == ZERO:
                return current
            try:
                with self.db.transaction() as uow:
                    current.balance = target
                    if current.version == 0:
                        self.balances.create(uow, current)
                    else:
                        self.balances.compare_and_set(uow, current)
                    self.balances.add_history(
                        uow,
                        BalanceHistory(
                            user_id=user_id,
                            group_id=group_id,
                            amount=delta,
                            currency=currency,
                            type=BalanceChangeType.CORRECTION,
                            reference_id=reference_id,
                            description=reason.strip(),
                            created_at=self.clock(),
                        ),
                    )
            except (OptimisticLockError, AlreadyExistsError):
                if attempt >= self.max_retries:
                    raise
                logger.warning(
                    "balance of %s in %s changed during correction, retrying (%d/%d)",
                    user_id,
                    group_id or "personal",
                    attempt,
                    self.max_retries,
                )
                continue

            logger.info("balance of %s in %s corrected by %s %s", user_id, group_id or "personal", delta, currency)
            return current

    def reconcile(self, user_id: str, group_id: Optional[str], currency: str) -> Decimal:
        """Balance minus the sum of its history; zero when the audit trail is consistent."""
        balance = self.get_user_balance_in_group(user_id, group_id, currency)
        return balance.balance - self.balances.history_total(user_id, group_id, currency)

    def suggest_settlements(self, group_id: str) -> List[SuggestedTransfer]:
        by_currency: Dict[str, List[Balance]] = {}
        for balance in self.balances.get_by_group(group_id):
            by_currency.setdefault(balance.currency, []).append(balance)

        transfers: List[SuggestedTransfer] = []
        for currency in sorted(by_currency):
            transfers.extend(simplify_debts(by_currency[currency], currency))
        return transfers


def simplify_debts(balances: List[Balance], currency: str) -> List[SuggestedTransfer]:
    """Pair debtors with creditors greedily until every net balance is zero."""
    debtors = []
    creditors = []

    for balance in balances:
        amount = quantize(balance.balance)
        if amount > 0:
            creditors.append({"user_id": balance.user_id, "amount": amount})
        elif amount < 0:
            debtors.append({"user_id": balance.user_id, "amount": -amount})

    debtors.sort(key=lambda entry: (-entry["amount"], entry["user_id"]))
    creditors.sort(key=lambda entry: (-entry["amount"], entry["user_id"]))

    transfers: List[SuggestedTransfer] = []

    debtor_idx = 0
    creditor_idx = 0

    while debtor_idx < len(debtors) and creditor_idx < len(creditors):
        debtor = debtors[debtor_idx]
        creditor = creditors[creditor_idx]

        settled_amount = min(debtor["amount"], creditor["amount"])
        if settled_amount > ZERO:
            transfers.append(
                SuggestedTransfer(
                    from_user_id=debtor["user_id"],
                    to_user_id=creditor["user_id"],
                    amount=settled_amount,
                    currency=currency,
                )
            )

        debtor["amount"] -= settled_amount
        creditor["amount"] -= settled_amount

        if debtor["amount"] <= ZERO:
            debtor_idx += 1
        if creditor["amount"] <= ZERO:
            creditor_idx += 1

    return transfers
