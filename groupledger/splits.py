"""
Split calculation: turns an expense amount, its payers and a SplitDetail into
per-user monetary shares that sum to the amount.

Rounding remainders are absorbed positionally: the first participant for an
equal split, the last detail entry for percentage and share-weighted splits.
Exact values are stored as entered, so they may differ from the amount by up
to one cent.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_DOWN
from typing import Callable, Dict, List, Sequence

from .errors import ValidationError
from .models import PaidBy, SplitDetail, SplitShare, SplitType
from .money import ZERO, amounts_close, quantize

HUNDRED = Decimal("100")

Resolver = Callable[[Decimal, Sequence[PaidBy], Sequence[SplitShare]], List[SplitShare]]


def validate_payers(amount: Decimal, paid_by: Sequence[PaidBy]) -> None:
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if not paid_by:
        raise ValidationError("at least one payer must be specified")

    total_paid = ZERO
    for payer in paid_by:
        if payer.amount <= 0:
            raise ValidationError(f"invalid amount for user {payer.user_id}")
        total_paid += payer.amount

    if not amounts_close(total_paid, amount):
        raise ValidationError(
            f"total paid amount {total_paid:.2f} does not match expense amount {amount:.2f}"
        )


def calculate_shares(
    amount: Decimal,
    currency: str,
    paid_by: Sequence[PaidBy],
    split: SplitDetail,
) -> List[SplitShare]:
    validate_payers(amount, paid_by)
    try:
        split_type = SplitType(split.type)
    except ValueError:
        raise ValidationError(f"invalid split type: {split.type}") from None

    shares = _RESOLVERS[split_type](amount, paid_by, split.details)
    # Exact values are kept as entered; every other split absorbs its remainder.
    assert amounts_close(sum((s.value for s in shares), ZERO), amount), (currency, amount, shares)
    return shares


def _reject_duplicates(details: Sequence[SplitShare]) -> None:
    seen = set()
    for share in details:
        if share.user_id in seen:
            raise ValidationError(f"duplicate split entry for user {share.user_id}")
        seen.add(share.user_id)


def _equal(amount: Decimal, paid_by: Sequence[PaidBy], details: Sequence[SplitShare]) -> List[SplitShare]:
    participants: Dict[str, None] = {}
    for payer in paid_by:
        participants.setdefault(payer.user_id, None)
    for share in details:
        participants.setdefault(share.user_id, None)

    count = len(participants)
    if count == 0:
        raise ValidationError("no participants found for equal split")

    per_person = quantize(amount / count, rounding=ROUND_DOWN)
    shares = [SplitShare(user_id=user_id, value=per_person) for user_id in participants]
    shares[0].value = per_person + (amount - per_person * count)
    return shares


def _exact(amount: Decimal, paid_by: Sequence[PaidBy], details: Sequence[SplitShare]) -> List[SplitShare]:
    if not details:
        raise ValidationError("exact split requires split details with specific amounts")
    _reject_duplicates(details)

    shares = [SplitShare(user_id=s.user_id, value=quantize(s.value)) for s in details]

    total_specified = ZERO
    for share in shares:
        if share.value <= 0:
            raise ValidationError(f"invalid amount {share.value} for user {share.user_id} in exact split")
        total_specified += share.value

    if not amounts_close(total_specified, amount):
        raise ValidationError(
            f"total specified amounts {total_specified:.2f} do not match expense amount {amount:.2f}"
        )

    return shares


def _percentage(amount: Decimal, paid_by: Sequence[PaidBy], details: Sequence[SplitShare]) -> List[SplitShare]:
    if not details:
        raise ValidationError("percentage split requires split details with percentages")
    _reject_duplicates(details)

    total_percentage = ZERO
    for share in details:
        if share.value <= 0 or share.value > HUNDRED:
            raise ValidationError(f"invalid percentage {share.value} for user {share.user_id}")
        total_percentage += share.value

    if not amounts_close(total_percentage, HUNDRED):
        raise ValidationError(f"total percentage {total_percentage} does not equal 100")

    return _weighted(amount, details, HUNDRED)


def _shares(amount: Decimal, paid_by: Sequence[PaidBy], details: Sequence[SplitShare]) -> List[SplitShare]:
    if not details:
        raise ValidationError("share-based split requires split details with share counts")
    _reject_duplicates(details)

    total_shares = ZERO
    for share in details:
        if share.value <= 0:
            raise ValidationError(f"invalid share count {share.value} for user {share.user_id}")
        total_shares += share.value

    if total_shares == 0:
        raise ValidationError("total shares cannot be zero")

    return _weighted(amount, details, total_shares)


def _weighted(amount: Decimal, details: Sequence[SplitShare], total: Decimal) -> List[SplitShare]:
    shares: List[SplitShare] = []
    total_calculated = ZERO
    last = len(details) - 1

    for index, share in enumerate(details):
        if index == last:
            value = amount - total_calculated
        else:
            # Rounded down: the remainder left for the last entry is never negative.
            value = quantize(share.value * amount / total, rounding=ROUND_DOWN)
        shares.append(SplitShare(user_id=share.user_id, value=value))
        total_calculated += value

    return shares


_RESOLVERS: Dict[SplitType, Resolver] = {
    SplitType.EQUAL: _equal,
    SplitType.EXACT: _exact,
    SplitType.PERCENTAGE: _percentage,
    SplitType.SHARES: _shares,
}

assert set(_RESOLVERS) == set(SplitType), "every split type needs a resolver"
