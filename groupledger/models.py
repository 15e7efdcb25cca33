"""
Data models for the group ledger
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .money import ZERO


class SplitType(str, Enum):
    EQUAL = "equal"
    EXACT = "exact"
    PERCENTAGE = "percentage"
    SHARES = "shares"


class BalanceChangeType(str, Enum):
    EXPENSE = "expense"
    SETTLEMENT = "settlement"
    ADJUSTMENT = "adjustment"
    CORRECTION = "correction"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SettlementMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    PAYPAL = "paypal"
    VENMO = "venmo"
    OTHER = "other"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class PaidBy:
    user_id: str
    amount: Decimal


@dataclass
class SplitShare:
    """One split entry; ``value`` is raw input before calculation, a share after."""
    user_id: str
    value: Decimal


@dataclass
class SplitDetail:
    type: SplitType
    details: List[SplitShare] = field(default_factory=list)


@dataclass
class Expense:
    creator_id: str
    title: str
    amount: Decimal
    currency: str
    paid_by: List[PaidBy]
    split: SplitDetail
    group_id: Optional[str] = None
    expense_id: Optional[str] = None
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def user_ids(self) -> List[str]:
        """Creator, payers and split participants, first-seen order, no duplicates."""
        seen: Dict[str, None] = {self.creator_id: None}
        for payer in self.paid_by:
            seen.setdefault(payer.user_id, None)
        for share in self.split.details:
            seen.setdefault(share.user_id, None)
        return list(seen)

    def involves(self, user_id: str) -> bool:
        return user_id in self.user_ids()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expense_id": self.expense_id,
            "group_id": self.group_id,
            "creator_id": self.creator_id,
            "title": self.title,
            "amount": float(self.amount),
            "currency": self.currency,
            "paid_by": [{"user_id": p.user_id, "amount": float(p.amount)} for p in self.paid_by],
            "split": {
                "type": self.split.type.value,
                "details": [{"user_id": s.user_id, "value": float(s.value)} for s in self.split.details],
            },
            "is_deleted": self.is_deleted,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class Balance:
    user_id: str
    group_id: Optional[str]
    currency: str
    balance: Decimal = ZERO
    version: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "group_id": self.group_id,
            "balance": float(self.balance),
            "currency": self.currency,
            "version": self.version,
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class BalanceHistory:
    user_id: str
    group_id: Optional[str]
    amount: Decimal
    currency: str
    type: BalanceChangeType
    reference_id: str
    description: str = ""
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "group_id": self.group_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "type": self.type.value,
            "reference_id": self.reference_id,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Settlement:
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str
    method: SettlementMethod
    group_id: Optional[str] = None
    description: str = ""
    settlement_id: Optional[str] = None
    status: SettlementStatus = SettlementStatus.PENDING
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status != SettlementStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "group_id": self.group_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "method": self.method.value,
            "description": self.description,
            "transaction_id": self.transaction_id,
            "failure_reason": self.failure_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
        }


@dataclass
class SettlementRequest:
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str
    method: SettlementMethod = SettlementMethod.OTHER
    group_id: Optional[str] = None
    description: str = ""


@dataclass
class UserBalanceSummary:
    user_id: str
    totals: Dict[str, Decimal] = field(default_factory=dict)
    group_balances: List[Balance] = field(default_factory=list)
    personal_balances: List[Balance] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "totals": {currency: float(total) for currency, total in self.totals.items()},
            "group_balances": [b.to_dict() for b in self.group_balances],
            "personal_balances": [b.to_dict() for b in self.personal_balances],
            "last_updated": _iso(self.last_updated),
        }


@dataclass
class SuggestedTransfer:
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": float(self.amount),
            "currency": self.currency,
        }
