from datetime import date

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from capabilities import SchemaCapabilities
from database import Base, create_ledger_engine
from errors import (
    ConcurrentModification,
    ConstraintViolation,
    InsufficientBalance,
    NotFound,
    RuleViolation,
)
from ledger import BalanceLedger
from models import AccountType
from schemas import AccountIn, ContributionIn, ContributionPatch, GoalIn, GoalPatch
from services import AccountService, GoalContributionService, GoalService, goal_status
from store import LedgerStore

USER = "user-1"


def make_env(tmp_path):
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    store = LedgerStore(Session(engine, expire_on_commit=False))
    return engine, store, SchemaCapabilities(engine)


def make_account(store: LedgerStore, name: str, balance: int) -> dict:
    return AccountService(store, USER).create(
        AccountIn(name=name, type=AccountType.savings, balance=balance)
    )


def balance_of(store: LedgerStore, account_id: str) -> int:
    return BalanceLedger(store, USER).load_account(account_id)["balance"]


def test_goal_status_precedence() -> None:
    assert goal_status(100, "paused") == "completed"
    assert goal_status(99.99, "paused") == "paused"
    assert goal_status(40, "completed") == "active"
    assert goal_status(0, None) == "active"


def test_contributions_complete_goal_and_block_delete(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    account = make_account(store, "Savings", 1_000_000)
    goals = GoalService(store, caps, USER)
    contributions = GoalContributionService(store, caps, USER)

    goal = goals.create(GoalIn(name="Trip", target_amount=500_000))
    assert goal["status"] == "active"
    assert goal["saved_amount"] == 0

    contributions.create(
        goal["id"], ContributionIn(account_id=account["id"], amount=200_000)
    )
    midway = goals.get(goal["id"])
    assert midway["progress_percentage"] == 40.0
    assert midway["remaining_amount"] == 300_000

    contributions.create(
        goal["id"], ContributionIn(account_id=account["id"], amount=300_000)
    )
    done = goals.get(goal["id"])
    assert done["saved_amount"] == 500_000
    assert done["progress_percentage"] == 100.0
    assert done["status"] == "completed"
    assert goals.get_row(goal["id"])["status"] == "completed"
    assert balance_of(store, account["id"]) == 500_000

    with pytest.raises(RuleViolation):
        goals.delete(goal["id"])


def test_removing_contribution_reopens_goal(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    account = make_account(store, "Savings", 100_000)
    goals = GoalService(store, caps, USER)
    contributions = GoalContributionService(store, caps, USER)

    goal = goals.create(GoalIn(name="Bike", target_amount=50_000))
    first = contributions.create(
        goal["id"], ContributionIn(account_id=account["id"], amount=50_000)
    )
    assert goals.get_row(goal["id"])["status"] == "completed"

    contributions.delete(goal["id"], first["id"])
    assert goals.get_row(goal["id"])["status"] == "active"
    assert balance_of(store, account["id"]) == 100_000

    goals.delete(goal["id"])
    with pytest.raises(NotFound):
        goals.get(goal["id"])


def test_contribution_cannot_overdraw_account(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    account = make_account(store, "Savings", 10_000)
    goal = GoalService(store, caps, USER).create(GoalIn(name="Car", target_amount=900_000))

    with pytest.raises(InsufficientBalance):
        GoalContributionService(store, caps, USER).create(
            goal["id"], ContributionIn(account_id=account["id"], amount=20_000)
        )
    assert balance_of(store, account["id"]) == 10_000


def test_target_cannot_drop_below_saved(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    account = make_account(store, "Savings", 100_000)
    goals = GoalService(store, caps, USER)
    goal = goals.create(GoalIn(name="Laptop", target_amount=80_000))
    GoalContributionService(store, caps, USER).create(
        goal["id"], ContributionIn(account_id=account["id"], amount=30_000)
    )

    with pytest.raises(RuleViolation):
        goals.update(goal["id"], GoalPatch(target_amount=20_000))

    updated = goals.update(goal["id"], GoalPatch(target_amount=30_000))
    assert updated["status"] == "completed"


def test_amount_change_on_same_account(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    account = make_account(store, "Savings", 100_000)
    goal = GoalService(store, caps, USER).create(GoalIn(name="Fund", target_amount=500_000))
    contributions = GoalContributionService(store, caps, USER)
    row = contributions.create(
        goal["id"], ContributionIn(account_id=account["id"], amount=40_000)
    )

    contributions.update(goal["id"], row["id"], ContributionPatch(amount=10_000))
    assert balance_of(store, account["id"]) == 90_000

    with pytest.raises(InsufficientBalance):
        contributions.update(goal["id"], row["id"], ContributionPatch(amount=200_000))
    assert balance_of(store, account["id"]) == 90_000


def test_moving_contribution_between_accounts(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    x = make_account(store, "X", 150_000)
    y = make_account(store, "Y", 200_000)
    goal = GoalService(store, caps, USER).create(GoalIn(name="House", target_amount=900_000))
    contributions = GoalContributionService(store, caps, USER)
    row = contributions.create(
        goal["id"], ContributionIn(account_id=x["id"], amount=50_000)
    )
    assert balance_of(store, x["id"]) == 100_000

    moved = contributions.update(
        goal["id"], row["id"], ContributionPatch(account_id=y["id"])
    )
    assert moved["account_id"] == y["id"]
    assert balance_of(store, x["id"]) == 150_000
    assert balance_of(store, y["id"]) == 150_000


def test_move_to_account_without_funds_leaves_source_untouched(tmp_path) -> None:
    _, store, caps = make_env(tmp_path)
    x = make_account(store, "X", 150_000)
    y = make_account(store, "Y", 10_000)
    goal = GoalService(store, caps, USER).create(GoalIn(name="House", target_amount=900_000))
    contributions = GoalContributionService(store, caps, USER)
    row = contributions.create(
        goal["id"], ContributionIn(account_id=x["id"], amount=50_000)
    )

    with pytest.raises(InsufficientBalance):
        contributions.update(
            goal["id"], row["id"], ContributionPatch(account_id=y["id"])
        )
    assert balance_of(store, x["id"]) == 100_000
    assert balance_of(store, y["id"]) == 10_000
    assert contributions.get(goal["id"], row["id"])["account_id"] == x["id"]


def test_progress_view_is_used_when_present(tmp_path) -> None:
    engine, store, _ = make_env(tmp_path)
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE VIEW saving_goals_with_progress AS "
                "SELECT g.*, COALESCE(c.saved, 0) AS saved_amount, "
                "COALESCE(c.saved, 0) * 100.0 / g.target_amount AS progress_percentage "
                "FROM saving_goals g LEFT JOIN ("
                "SELECT goal_id, SUM(amount) AS saved FROM saving_goal_contributions "
                "GROUP BY goal_id) c ON c.goal_id = g.id"
            )
        )
    caps = SchemaCapabilities(engine)
    assert caps.goal_layout().progress_view == "saving_goals_with_progress"

    account = make_account(store, "Savings", 100_000)
    goals = GoalService(store, caps, USER)
    goal = goals.create(
        GoalIn(name="Phone", target_amount=40_000, target_date=date(2030, 1, 1))
    )
    GoalContributionService(store, caps, USER).create(
        goal["id"], ContributionIn(account_id=account["id"], amount=10_000)
    )

    listed = goals.list_all()
    assert len(listed) == 1
    assert listed[0]["saved_amount"] == 10_000
    assert listed[0]["progress_percentage"] == 25.0
    assert listed[0]["target_date"] == "2030-01-01"


def test_lost_race_on_destination_reverts_source_refund(tmp_path, monkeypatch) -> None:
    _, store, caps = make_env(tmp_path)
    x = make_account(store, "X", 150_000)
    y = make_account(store, "Y", 200_000)
    goal = GoalService(store, caps, USER).create(GoalIn(name="House", target_amount=900_000))
    contributions = GoalContributionService(store, caps, USER)
    row = contributions.create(
        goal["id"], ContributionIn(account_id=x["id"], amount=50_000)
    )

    original_set_balance = contributions.ledger.set_balance
    raced = []

    def set_balance_after_concurrent_deposit(account_id, expected, new):
        if account_id == y["id"] and not raced:
            raced.append(account_id)
            store.update("accounts", {"id": y["id"]}, {"balance": 205_000})
        return original_set_balance(account_id, expected, new)

    monkeypatch.setattr(
        contributions.ledger, "set_balance", set_balance_after_concurrent_deposit
    )

    with pytest.raises(ConcurrentModification):
        contributions.update(
            goal["id"], row["id"], ContributionPatch(account_id=y["id"])
        )
    assert balance_of(store, x["id"]) == 100_000
    assert balance_of(store, y["id"]) == 205_000
    assert contributions.get(goal["id"], row["id"])["account_id"] == x["id"]


def test_failed_row_write_reverts_refund_and_charge(tmp_path, monkeypatch) -> None:
    _, store, caps = make_env(tmp_path)
    x = make_account(store, "X", 150_000)
    y = make_account(store, "Y", 200_000)
    goal = GoalService(store, caps, USER).create(GoalIn(name="House", target_amount=900_000))
    contributions = GoalContributionService(store, caps, USER)
    row = contributions.create(
        goal["id"], ContributionIn(account_id=x["id"], amount=50_000)
    )

    def failing_write(goal_id, contribution_id, values):
        raise ConstraintViolation("update rejected")

    monkeypatch.setattr(contributions, "_write_row", failing_write)

    with pytest.raises(ConstraintViolation):
        contributions.update(
            goal["id"], row["id"], ContributionPatch(account_id=y["id"])
        )
    assert balance_of(store, x["id"]) == 100_000
    assert balance_of(store, y["id"]) == 200_000
    assert contributions.get(goal["id"], row["id"])["account_id"] == x["id"]
