import logging
from decimal import Decimal

import pytest

from fakes import GROUP, balance_of, make_expense
from groupledger.balances import simplify_debts
from groupledger.errors import NotAMemberError, OptimisticLockError, UnknownUserError, ValidationError
from groupledger.models import Balance, BalanceChangeType


def D(value):
    return Decimal(value)


def bump_between_read_and_write(balance_repo, state, times):
    """Make another writer touch the row right after each of the next ``times`` reads."""
    read = balance_repo.get_by_user_and_group
    remaining = {"count": times}

    def racing_read(user_id, group_id, currency, uow=None):
        balance = read(user_id, group_id, currency, uow=uow)
        if remaining["count"] > 0:
            remaining["count"] -= 1
            stored = state.balances[(user_id, group_id or "", currency)]
            stored.balance += D("1.00")
            stored.version += 1
        return balance

    balance_repo.get_by_user_and_group = racing_read


def test_summary_splits_group_and_personal(expense_ledger, balance_service):
    expense_ledger.record_expense(make_expense("90.00", [("alice", "90.00")], details=[("bob", 0), ("carol", 0)]))
    expense_ledger.record_expense(make_expense("20.00", [("alice", "20.00")], details=[("bob", 0)], currency="EUR"))
    expense_ledger.record_expense(
        make_expense("10.00", [("erin", "10.00")], details=[("alice", 0)], group_id=None, creator="erin")
    )

    summary = balance_service.get_user_balance_summary("alice")

    # +60 in the group, -5 personally
    assert summary.totals == {"USD": D("55.00"), "EUR": D("10.00")}
    assert {(b.group_id, b.currency) for b in summary.group_balances} == {(GROUP, "USD"), (GROUP, "EUR")}
    assert [(b.group_id, b.balance) for b in summary.personal_balances] == [(None, D("-5.00"))]
    assert summary.last_updated == max(b.updated_at for b in summary.group_balances + summary.personal_balances)


def test_summary_for_user_without_activity(balance_service):
    summary = balance_service.get_user_balance_summary("dave")
    assert summary.totals == {}
    assert summary.group_balances == [] and summary.personal_balances == []
    assert summary.last_updated is None

    with pytest.raises(UnknownUserError):
        balance_service.get_user_balance_summary("zoe")


def test_missing_balance_reads_as_zero(balance_service, state):
    balance = balance_service.get_user_balance_in_group("dave", GROUP, "USD")
    assert balance == Balance(user_id="dave", group_id=GROUP, currency="USD", balance=D("0.00"), version=0)
    assert state.balances == {}


def test_group_balances_require_membership(expense_ledger, balance_service):
    expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))

    assert {b.user_id for b in balance_service.get_group_balances(GROUP)} == {"alice", "bob"}
    assert len(balance_service.get_group_balances(GROUP, user_id="carol")) == 2
    with pytest.raises(NotAMemberError):
        balance_service.get_group_balances(GROUP, user_id="erin")


def test_history_is_newest_first_and_filterable(expense_ledger, balance_service):
    first = expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))
    second = expense_ledger.record_expense(
        make_expense("10.00", [("bob", "10.00")], details=[("erin", 0)], group_id=None, creator="bob")
    )

    history = balance_service.get_balance_history("bob")
    assert [h.reference_id for h in history] == [second.expense_id, first.expense_id]
    assert [h.reference_id for h in balance_service.get_balance_history("bob", GROUP)] == [first.expense_id]
    assert [h.reference_id for h in balance_service.get_balance_history("bob", limit=1, offset=1)] == [
        first.expense_id
    ]


def test_correct_balance_creates_missing_row(balance_service, state):
    corrected = balance_service.correct_balance("dave", GROUP, "USD", D("12.50"), "opening balance")

    assert corrected.balance == D("12.50")
    assert corrected.version == 1
    assert balance_of(state, "dave") == D("12.50")
    [row] = state.history
    assert row.type == BalanceChangeType.CORRECTION
    assert row.amount == D("12.50")
    assert row.description == "opening balance"
    assert balance_service.reconcile("dave", GROUP, "USD") == D("0.00")


def test_correct_balance_records_the_difference(expense_ledger, balance_service, state):
    expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))

    balance_service.correct_balance("bob", GROUP, "USD", D("-10.00"), "paid back in cash", reference_id="note-1")

    assert balance_of(state, "bob") == D("-10.00")
    assert state.history[-1].amount == D("5.00")
    assert state.history[-1].reference_id == "note-1"
    assert balance_service.reconcile("bob", GROUP, "USD") == D("0.00")


def test_correct_balance_to_same_value_is_a_no_op(expense_ledger, balance_service, state, fake_db):
    expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))
    commits = fake_db.commits

    balance_service.correct_balance("bob", GROUP, "USD", D("-15.00"), "check")

    assert fake_db.commits == commits
    assert len(state.history) == 2


def test_correct_balance_needs_reason(balance_service):
    with pytest.raises(ValidationError):
        balance_service.correct_balance("bob", GROUP, "USD", D("1.00"), " ")


def test_correct_balance_retries_after_concurrent_write(
    expense_ledger, balance_service, balance_repo, state, caplog
):
    expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))
    bump_between_read_and_write(balance_repo, state, times=1)

    with caplog.at_level(logging.WARNING, logger="groupledger.balances"):
        corrected = balance_service.correct_balance("bob", GROUP, "USD", D("0.00"), "forgiven")

    assert corrected.balance == D("0.00")
    assert balance_of(state, "bob") == D("0.00")
    # fresh read after the race saw -14.00
    assert state.history[-1].amount == D("14.00")
    assert "retrying (1/3)" in caplog.text


def test_correct_balance_gives_up_after_max_retries(expense_ledger, balance_service, balance_repo, state):
    expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))
    bump_between_read_and_write(balance_repo, state, times=3)
    history_before = len(state.history)

    with pytest.raises(OptimisticLockError):
        balance_service.correct_balance("bob", GROUP, "USD", D("0.00"), "forgiven")

    assert balance_of(state, "bob") == D("-12.00")
    assert len(state.history) == history_before


def test_reconcile_reports_drift(expense_ledger, balance_service, state):
    expense_ledger.record_expense(make_expense("30.00", [("alice", "30.00")], details=[("bob", 0)]))
    assert balance_service.reconcile("bob", GROUP, "USD") == D("0.00")

    state.balances[("bob", GROUP, "USD")].balance += D("2.00")
    assert balance_service.reconcile("bob", GROUP, "USD") == D("2.00")


def test_suggest_settlements_per_currency(expense_ledger, balance_service):
    expense_ledger.record_expense(make_expense("90.00", [("alice", "90.00")], details=[("bob", 0), ("carol", 0)]))
    expense_ledger.record_expense(make_expense("8.00", [("dave", "8.00")], details=[("bob", 0)], currency="EUR", creator="dave"))

    transfers = [(t.from_user_id, t.to_user_id, t.amount, t.currency) for t in balance_service.suggest_settlements(GROUP)]
    assert transfers == [
        ("bob", "dave", D("4.00"), "EUR"),
        ("bob", "alice", D("30.00"), "USD"),
        ("carol", "alice", D("30.00"), "USD"),
    ]


def test_simplify_debts_pairs_largest_first():
    balances = [
        Balance(user_id="a", group_id=GROUP, currency="USD", balance=D("50.00")),
        Balance(user_id="b", group_id=GROUP, currency="USD", balance=D("10.00")),
        Balance(user_id="c", group_id=GROUP, currency="USD", balance=D("-45.00")),
        Balance(user_id="d", group_id=GROUP, currency="USD", balance=D("-15.00")),
        Balance(user_id="e", group_id=GROUP, currency="USD", balance=D("0.00")),
    ]
    transfers = [(t.from_user_id, t.to_user_id, t.amount) for t in simplify_debts(balances, "USD")]
    assert transfers == [
        ("c", "a", D("45.00")),
        ("d", "a", D("5.00")),
        ("d", "b", D("10.00")),
    ]
    assert simplify_debts([], "USD") == []
