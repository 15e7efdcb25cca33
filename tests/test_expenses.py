import threading
from decimal import Decimal

import pytest

from fakes import GROUP, balance_of, make_expense
from groupledger.errors import (
    ForbiddenError,
    NotAMemberError,
    NotFoundError,
    TransactionError,
    UnknownUserError,
    ValidationError,
)
from groupledger.expenses import net_deltas
from groupledger.models import BalanceChangeType, PaidBy, SplitDetail, SplitShare, SplitType


def history_sum(state, user_id, reference_id=None):
    return sum(
        (
            h.amount
            for h in state.history
            if h.user_id == user_id and (reference_id is None or h.reference_id == reference_id)
        ),
        Decimal("0.00"),
    )


def test_equal_split_scenario(expense_ledger, state):
    expense = make_expense(
        "90.00", [("alice", "90.00")], details=[("alice", 0), ("bob", 0), ("carol", 0)]
    )
    recorded = expense_ledger.record_expense(expense)

    assert recorded.expense_id == "id-1"
    assert {s.user_id: s.value for s in recorded.split.details} == {
        "alice": Decimal("30.00"),
        "bob": Decimal("30.00"),
        "carol": Decimal("30.00"),
    }
    assert balance_of(state, "alice") == Decimal("60.00")
    assert balance_of(state, "bob") == Decimal("-30.00")
    assert balance_of(state, "carol") == Decimal("-30.00")
    assert state.expenses["id-1"].split.details == recorded.split.details


def test_history_mirrors_balance_changes(expense_ledger, state):
    expense_ledger.record_expense(
        make_expense("90.00", [("alice", "90.00")], details=[("alice", 0), ("bob", 0), ("carol", 0)])
    )
    second = expense_ledger.record_expense(
        make_expense(
            "40.00",
            [("bob", "25.00"), ("carol", "15.00")],
            SplitType.EXACT,
            [("alice", "10.00"), ("bob", "10.00"), ("carol", "20.00")],
        )
    )

    for user in ("alice", "bob", "carol"):
        assert history_sum(state, user) == balance_of(state, user)

    assert history_sum(state, "alice", second.expense_id) == Decimal("-10.00")
    assert history_sum(state, "bob", second.expense_id) == Decimal("15.00")
    assert history_sum(state, "carol", second.expense_id) == Decimal("-5.00")
    assert all(h.type == BalanceChangeType.EXPENSE for h in state.history)
    assert all(h.currency == "USD" and h.group_id == GROUP for h in state.history)


def test_net_deltas_sum_to_zero():
    expense = make_expense(
        "100.00",
        [("alice", "70.00"), ("bob", "30.00")],
        SplitType.EXACT,
        [("alice", "25.00"), ("bob", "25.00"), ("carol", "50.00")],
    )
    deltas = net_deltas(expense)
    assert deltas == {"alice": Decimal("45.00"), "bob": Decimal("5.00"), "carol": Decimal("-50.00")}
    assert sum(deltas.values()) == 0


def test_participant_paying_exact_share_gets_no_history(expense_ledger, state):
    expense_ledger.record_expense(
        make_expense(
            "20.00",
            [("alice", "10.00"), ("bob", "10.00")],
            SplitType.EXACT,
            [("alice", "10.00"), ("bob", "5.00"), ("carol", "5.00")],
        )
    )
    assert [h.user_id for h in state.history] == ["bob", "carol"]
    assert ("alice", GROUP, "USD") not in state.balances


def test_personal_expense_uses_personal_scope(expense_ledger, state, groups):
    expense_ledger.record_expense(
        make_expense("30.00", [("erin", "30.00")], details=[("alice", 0)], group_id=None, creator="erin")
    )
    assert balance_of(state, "erin", None) == Decimal("15.00")
    assert balance_of(state, "alice", None) == Decimal("-15.00")
    assert groups.calls == []


def test_balances_are_kept_per_currency(expense_ledger, state):
    expense_ledger.record_expense(make_expense("10.00", [("alice", "10.00")], details=[("bob", 0)]))
    expense_ledger.record_expense(
        make_expense("8.00", [("alice", "8.00")], details=[("bob", 0)], currency="EUR")
    )
    assert balance_of(state, "bob") == Decimal("-5.00")
    assert balance_of(state, "bob", currency="EUR") == Decimal("-4.00")


def test_unknown_user_is_reported_from_one_batched_lookup(expense_ledger, state, users):
    expense = make_expense("30.00", [("alice", "30.00")], details=[("zoe", 0), ("yan", 0)])
    with pytest.raises(UnknownUserError) as exc_info:
        expense_ledger.record_expense(expense)

    assert exc_info.value.user_id == "zoe"
    assert users.calls == [["alice", "zoe", "yan"]]
    assert state.balances == {} and state.expenses == {}


def test_group_expense_requires_membership(expense_ledger, state):
    expense = make_expense("30.00", [("alice", "30.00")], details=[("bob", 0), ("erin", 0)])
    with pytest.raises(NotAMemberError) as exc_info:
        expense_ledger.record_expense(expense)

    assert exc_info.value.user_id == "erin"
    assert exc_info.value.group_id == GROUP
    assert state.history == []


@pytest.mark.parametrize("currency", ["usd", "US", "", None])
def test_invalid_currency(expense_ledger, currency):
    expense = make_expense("10.00", [("alice", "10.00")], details=[("bob", 0)])
    expense.currency = currency
    with pytest.raises(ValidationError):
        expense_ledger.record_expense(expense)


def test_invalid_split_leaves_ledger_untouched(expense_ledger, state, fake_db):
    expense = make_expense(
        "100.00",
        [("alice", "100.00")],
        SplitType.PERCENTAGE,
        [("alice", "50"), ("bob", "49")],
    )
    with pytest.raises(ValidationError):
        expense_ledger.record_expense(expense)
    assert state.balances == {} and state.expenses == {}
    assert fake_db.commits == 0


def test_storage_failure_rolls_back_everything(expense_ledger, state, balance_repo):
    expense_ledger.record_expense(make_expense("10.00", [("alice", "10.00")], details=[("bob", 0)]))
    before = dict((key, b.balance) for key, b in state.balances.items())
    history_before = len(state.history)

    balance_repo.fail_after = balance_repo.adjust_calls + 1
    with pytest.raises(TransactionError):
        expense_ledger.record_expense(
            make_expense("90.00", [("alice", "90.00")], details=[("bob", 0), ("carol", 0)])
        )

    assert {key: b.balance for key, b in state.balances.items()} == before
    assert len(state.history) == history_before
    assert list(state.expenses) == ["id-1"]


def test_get_expense_hides_it_from_outsiders(expense_ledger):
    recorded = expense_ledger.record_expense(
        make_expense("10.00", [("alice", "10.00")], details=[("bob", 0)])
    )
    assert expense_ledger.get_expense(recorded.expense_id, "bob").amount == Decimal("10.00")
    with pytest.raises(NotFoundError):
        expense_ledger.get_expense(recorded.expense_id, "carol")
    with pytest.raises(NotFoundError):
        expense_ledger.get_expense("missing", "alice")


def test_list_expenses(expense_ledger):
    first = expense_ledger.record_expense(make_expense("10.00", [("alice", "10.00")], details=[("bob", 0)]))
    second = expense_ledger.record_expense(
        make_expense("20.00", [("carol", "20.00")], details=[("dave", 0)], creator="carol")
    )

    assert [e.expense_id for e in expense_ledger.list_group_expenses(GROUP)] == [
        second.expense_id,
        first.expense_id,
    ]
    assert [e.expense_id for e in expense_ledger.list_group_expenses(GROUP, limit=1, offset=1)] == [
        first.expense_id
    ]
    assert [e.expense_id for e in expense_ledger.list_user_expenses("bob")] == [first.expense_id]
    with pytest.raises(NotAMemberError):
        expense_ledger.list_group_expenses(GROUP, user_id="erin")


def test_delete_expense_reverses_balances(expense_ledger, state):
    recorded = expense_ledger.record_expense(
        make_expense("90.00", [("alice", "90.00")], details=[("bob", 0), ("carol", 0)])
    )

    with pytest.raises(ForbiddenError):
        expense_ledger.delete_expense(recorded.expense_id, "bob")

    expense_ledger.delete_expense(recorded.expense_id, "alice")

    for user in ("alice", "bob", "carol"):
        assert balance_of(state, user) == Decimal("0.00")
        assert history_sum(state, user) == Decimal("0.00")
    corrections = [h for h in state.history if h.type == BalanceChangeType.CORRECTION]
    assert len(corrections) == 3
    assert all(h.reference_id == recorded.expense_id for h in corrections)

    with pytest.raises(NotFoundError):
        expense_ledger.delete_expense(recorded.expense_id, "alice")
    assert expense_ledger.list_user_expenses("bob") == []


def test_update_expense_rebalances(expense_ledger, state):
    recorded = expense_ledger.record_expense(
        make_expense("90.00", [("alice", "90.00")], details=[("bob", 0), ("carol", 0)])
    )

    updated = expense_ledger.update_expense(
        recorded.expense_id,
        "alice",
        {
            "amount": Decimal("60.00"),
            "paid_by": [PaidBy(user_id="alice", amount=Decimal("60.00"))],
            "split": SplitDetail(
                type=SplitType.EXACT,
                details=[SplitShare(user_id="alice", value=Decimal("20.00")), SplitShare(user_id="bob", value=Decimal("40.00"))],
            ),
        },
    )

    assert updated.amount == Decimal("60.00")
    assert balance_of(state, "alice") == Decimal("40.00")
    assert balance_of(state, "bob") == Decimal("-40.00")
    assert balance_of(state, "carol") == Decimal("0.00")
    for user in ("alice", "bob", "carol"):
        assert history_sum(state, user) == balance_of(state, user)
    assert state.expenses[recorded.expense_id].amount == Decimal("60.00")


def test_update_title_only_keeps_balances(expense_ledger, state):
    recorded = expense_ledger.record_expense(
        make_expense("50.00", [("alice", "50.00")], SplitType.SHARES, [("alice", 3), ("bob", 2)])
    )
    expense_ledger.update_expense(recorded.expense_id, "alice", {"title": "Lunch"})

    assert state.expenses[recorded.expense_id].title == "Lunch"
    assert balance_of(state, "alice") == Decimal("20.00")
    assert balance_of(state, "bob") == Decimal("-20.00")


def test_update_rejects_amount_change_without_split(expense_ledger):
    recorded = expense_ledger.record_expense(
        make_expense("50.00", [("alice", "50.00")], SplitType.SHARES, [("alice", 3), ("bob", 2)])
    )
    with pytest.raises(ValidationError):
        expense_ledger.update_expense(
            recorded.expense_id,
            "alice",
            {"amount": Decimal("60.00"), "paid_by": [PaidBy(user_id="alice", amount=Decimal("60.00"))]},
        )
    with pytest.raises(ValidationError):
        expense_ledger.update_expense(recorded.expense_id, "alice", {"creator_id": "bob"})
    with pytest.raises(ForbiddenError):
        expense_ledger.update_expense(recorded.expense_id, "bob", {"title": "Mine"})


def test_concurrent_expenses_on_same_balance(expense_ledger, state):
    # The fake store serializes transactions; the commuting upsert SQL itself is checked in
    # test_repositories.test_adjust_is_a_single_upsert.
    rounds = 25

    def record(payer, other):
        for _ in range(rounds):
            expense_ledger.record_expense(
                make_expense("10.00", [(payer, "10.00")], details=[(other, 0)], creator=payer)
            )

    threads = [
        threading.Thread(target=record, args=("alice", "bob")),
        threading.Thread(target=record, args=("carol", "bob")),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert balance_of(state, "bob") == Decimal("-250.00")
    assert balance_of(state, "alice") == Decimal("125.00")
    assert balance_of(state, "carol") == Decimal("125.00")
    assert state.balances[("bob", GROUP, "USD")].version == 2 * rounds
    assert history_sum(state, "bob") == Decimal("-250.00")
