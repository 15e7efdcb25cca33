"""
Settlement lifecycle: pending -> completed | failed | cancelled.

Only completion touches balances; it moves the amount between the two parties
and writes the matching history rows in the same transaction as the status
change.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .db import Database
from .errors import ForbiddenError, NotAMemberError, NotFoundError, UnknownUserError, ValidationError
from .expenses import CURRENCY_RE, new_id
from .models import (
    BalanceChangeType,
    BalanceHistory,
    Settlement,
    SettlementMethod,
    SettlementRequest,
    SettlementStatus,
)
from .money import to_decimal
from .repositories import (
    BalanceRepository,
    Clock,
    GroupDirectory,
    SettlementRepository,
    UserDirectory,
    utcnow,
)

logger = logging.getLogger(__name__)


class SettlementService:
    def __init__(
        self,
        db: Database,
        settlements: SettlementRepository,
        balances: BalanceRepository,
        users: UserDirectory,
        groups: GroupDirectory,
        clock: Clock = utcnow,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.db = db
        self.settlements = settlements
        self.balances = balances
        self.users = users
        self.groups = groups
        self.clock = clock
        self.id_factory = id_factory

    def create_settlement(self, req: SettlementRequest) -> Settlement:
        if not req.from_user_id or not req.to_user_id:
            raise ValidationError("both parties are required")
        if req.from_user_id == req.to_user_id:
            raise ValidationError("cannot settle with yourself")

        amount = to_decimal(req.amount)
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if not isinstance(req.currency, str) or not CURRENCY_RE.match(req.currency):
            raise ValidationError(f"invalid currency: {req.currency!r}")
        try:
            method = SettlementMethod(req.method)
        except ValueError:
            raise ValidationError(f"invalid settlement method: {req.method}") from None

        parties = [req.from_user_id, req.to_user_id]
        missing = self.users.missing(parties)
        if missing:
            raise UnknownUserError(missing[0])
        if req.group_id is not None:
            non_members = self.groups.non_members(req.group_id, parties)
            if non_members:
                raise NotAMemberError(non_members[0], req.group_id)

        now = self.clock()
        settlement = Settlement(
            settlement_id=self.id_factory(),
            from_user_id=req.from_user_id,
            to_user_id=req.to_user_id,
            group_id=req.group_id,
            amount=amount,
            currency=req.currency,
            method=method,
            description=req.description or "",
            status=SettlementStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as uow:
            self.settlements.create(uow, settlement)

        logger.info(
            "settlement %s created: %s -> %s %s %s",
            settlement.settlement_id,
            settlement.from_user_id,
            settlement.to_user_id,
            settlement.amount,
            settlement.currency,
        )
        return settlement

    def get_settlement(self, settlement_id: str, user_id: str) -> Settlement:
        settlement = self.settlements.get_by_id(settlement_id)
        if user_id not in (settlement.from_user_id, settlement.to_user_id):
            raise NotFoundError("settlement not found")
        return settlement

    def list_user_settlements(self, user_id: str, limit: int = 0, offset: int = 0) -> List[Settlement]:
        return self.settlements.get_by_user(user_id, limit, offset)

    def list_group_settlements(
        self,
        group_id: str,
        limit: int = 0,
        offset: int = 0,
        user_id: Optional[str] = None,
    ) -> List[Settlement]:
        if user_id is not None and self.groups.non_members(group_id, [user_id]):
            raise NotAMemberError(user_id, group_id)
        return self.settlements.get_by_group(group_id, limit, offset)

    def get_pending_settlements(self, user_id: str) -> List[Settlement]:
        return self.settlements.get_pending(user_id)

    def complete_settlement(
        self,
        settlement_id: str,
        user_id: str,
        transaction_id: Optional[str] = None,
    ) -> Settlement:
        settlement = self.settlements.get_by_id(settlement_id)

        # Only the person who owes money can mark it as complete
        if settlement.from_user_id != user_id:
            raise ForbiddenError("only the payer can complete the settlement")

        with self.db.transaction() as uow:
            locked = self.settlements.get_by_id(settlement_id, uow=uow, for_update=True)
            completed_at = self.settlements.mark_completed(uow, settlement_id, transaction_id)

            # from_user owes less, to_user is owed less
            deltas = {locked.from_user_id: locked.amount, locked.to_user_id: -locked.amount}
            # Same lock order as expense writes.
            for party in sorted(deltas):
                self.balances.adjust(uow, party, locked.group_id, locked.currency, deltas[party])

            self.balances.add_history(
                uow,
                BalanceHistory(
                    user_id=locked.from_user_id,
                    group_id=locked.group_id,
                    amount=locked.amount,
                    currency=locked.currency,
                    type=BalanceChangeType.SETTLEMENT,
                    reference_id=settlement_id,
                    description=f"Settlement payment to {locked.to_user_id}",
                    created_at=completed_at,
                ),
            )
            self.balances.add_history(
                uow,
                BalanceHistory(
                    user_id=locked.to_user_id,
                    group_id=locked.group_id,
                    amount=-locked.amount,
                    currency=locked.currency,
                    type=BalanceChangeType.SETTLEMENT,
                    reference_id=settlement_id,
                    description=f"Settlement received from {locked.from_user_id}",
                    created_at=completed_at,
                ),
            )

        locked.status = SettlementStatus.COMPLETED
        locked.transaction_id = transaction_id
        locked.completed_at = completed_at
        locked.updated_at = completed_at
        logger.info("settlement %s completed", settlement_id)
        return locked

    def cancel_settlement(self, settlement_id: str, user_id: str) -> Settlement:
        settlement = self.settlements.get_by_id(settlement_id)

        # Only involved parties can cancel
        if user_id not in (settlement.from_user_id, settlement.to_user_id):
            raise NotFoundError("settlement not found")

        with self.db.transaction() as uow:
            cancelled_at = self.settlements.mark_cancelled(uow, settlement_id)

        settlement.status = SettlementStatus.CANCELLED
        settlement.updated_at = cancelled_at
        logger.info("settlement %s cancelled by %s", settlement_id, user_id)
        return settlement

    def fail_settlement(self, settlement_id: str, reason: str) -> Settlement:
        if not reason or not reason.strip():
            raise ValidationError("failure reason is required")
        settlement = self.settlements.get_by_id(settlement_id)

        with self.db.transaction() as uow:
            failed_at = self.settlements.mark_failed(uow, settlement_id, reason.strip())

        settlement.status = SettlementStatus.FAILED
        settlement.failure_reason = reason.strip()
        settlement.failed_at = failed_at
        settlement.updated_at = failed_at
        logger.warning("settlement %s failed: %s", settlement_id, settlement.failure_reason)
        return settlement
