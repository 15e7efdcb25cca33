from itertools import count

import pytest

from fakes import (
    FakeBalanceRepository,
    FakeClock,
    FakeDatabase,
    FakeExpenseRepository,
    FakeGroupDirectory,
    FakeSettlementRepository,
    FakeUserDirectory,
    GROUP,
    MemoryState,
)
from groupledger.balances import BalanceService
from groupledger.expenses import ExpenseLedger
from groupledger.settlements import SettlementService


@pytest.fixture
def state():
    state = MemoryState()
    state.users = {"alice", "bob", "carol", "dave", "erin"}
    # erin exists but is not in the trip
    state.members = {GROUP: {"alice", "bob", "carol", "dave"}}
    return state


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ids():
    sequence = count(1)
    return lambda: f"id-{next(sequence)}"


@pytest.fixture
def fake_db(state):
    return FakeDatabase(state)


@pytest.fixture
def balance_repo(state, clock):
    return FakeBalanceRepository(state, clock)


@pytest.fixture
def users(state):
    return FakeUserDirectory(state)


@pytest.fixture
def groups(state):
    return FakeGroupDirectory(state)


@pytest.fixture
def expense_ledger(fake_db, state, balance_repo, users, groups, clock, ids):
    return ExpenseLedger(
        fake_db,
        FakeExpenseRepository(state, clock),
        balance_repo,
        users,
        groups,
        clock=clock,
        id_factory=ids,
    )


@pytest.fixture
def settlement_service(fake_db, state, balance_repo, users, groups, clock, ids):
    return SettlementService(
        fake_db,
        FakeSettlementRepository(state, clock),
        balance_repo,
        users,
        groups,
        clock=clock,
        id_factory=ids,
    )


@pytest.fixture
def balance_service(fake_db, balance_repo, users, groups, clock):
    return BalanceService(fake_db, balance_repo, users, groups, clock=clock, max_retries=3)
