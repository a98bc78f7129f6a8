from datetime import date

import pytest
from sqlalchemy.orm import Session

from database import Base, create_ledger_engine
from errors import (
    CompensationFailed,
    ConcurrentModification,
    ConstraintViolation,
    InsufficientBalance,
    NotFound,
    TypeMismatch,
)
from ledger import BalanceLedger, check_debit, signed_impact
from models import AccountType, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionPatch, TransactionQuery
from services import AccountService, CategoryService, TransactionService
from store import LedgerStore

USER = "user-1"


def make_store(tmp_path) -> LedgerStore:
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return LedgerStore(Session(engine, expire_on_commit=False))


def make_fixtures(store: LedgerStore, balance: int = 100_000):
    account = AccountService(store, USER).create(
        AccountIn(name="Wallet", type=AccountType.cash, balance=balance)
    )
    categories = CategoryService(store, USER)
    food = categories.create(
        CategoryIn(name="Food", type=TransactionType.expense, color="#ff0000")
    )
    salary = categories.create(
        CategoryIn(name="Salary", type=TransactionType.income, color="#00ff00")
    )
    return account, food, salary


def balance_of(store: LedgerStore, account_id: str) -> int:
    return BalanceLedger(store, USER).load_account(account_id)["balance"]


def test_signed_impact_and_debit_check() -> None:
    assert signed_impact(TransactionType.income, 500) == 500
    assert signed_impact("expense", 500) == -500

    check_debit(100, 0)
    check_debit(-50, -20)
    with pytest.raises(InsufficientBalance):
        check_debit(100, -1)


def test_create_update_delete_restore_initial_balance(tmp_path) -> None:
    store = make_store(tmp_path)
    account, food, salary = make_fixtures(store)
    txns = TransactionService(store, USER)

    lunch = txns.create(
        TransactionIn(
            account_id=account["id"],
            category_id=food["id"],
            type=TransactionType.expense,
            amount=30_000,
            date=date(2024, 3, 5),
        )
    )
    assert balance_of(store, account["id"]) == 70_000

    pay = txns.create(
        TransactionIn(
            account_id=account["id"],
            category_id=salary["id"],
            type=TransactionType.income,
            amount=5_000,
            date=date(2024, 3, 6),
        )
    )
    assert balance_of(store, account["id"]) == 75_000

    txns.update(
        lunch["id"],
        TransactionPatch(
            type=TransactionType.income, category_id=salary["id"], amount=10_000
        ),
    )
    # 75000 + 30000 (undo expense) + 10000 (new income)
    assert balance_of(store, account["id"]) == 115_000

    txns.delete(lunch["id"])
    txns.delete(pay["id"])
    assert balance_of(store, account["id"]) == 100_000
    assert txns.list() == []


def test_expense_larger_than_balance_is_rejected(tmp_path) -> None:
    store = make_store(tmp_path)
    account, food, _ = make_fixtures(store, balance=1_000)
    txns = TransactionService(store, USER)

    with pytest.raises(InsufficientBalance):
        txns.create(
            TransactionIn(
                account_id=account["id"],
                category_id=food["id"],
                type=TransactionType.expense,
                amount=5_000,
            )
        )
    assert balance_of(store, account["id"]) == 1_000
    assert txns.list() == []


def test_category_type_must_match_transaction_type(tmp_path) -> None:
    store = make_store(tmp_path)
    account, _, salary = make_fixtures(store)

    with pytest.raises(TypeMismatch):
        TransactionService(store, USER).create(
            TransactionIn(
                account_id=account["id"],
                category_id=salary["id"],
                type=TransactionType.expense,
                amount=100,
            )
        )
    assert balance_of(store, account["id"]) == 100_000


def test_unknown_account_and_foreign_user_are_not_found(tmp_path) -> None:
    store = make_store(tmp_path)
    account, food, _ = make_fixtures(store)

    with pytest.raises(NotFound):
        TransactionService(store, "someone-else").create(
            TransactionIn(
                account_id=account["id"],
                category_id=food["id"],
                type=TransactionType.expense,
                amount=100,
            )
        )
    with pytest.raises(NotFound):
        TransactionService(store, USER).get("missing")


def test_stale_balance_write_is_rejected(tmp_path) -> None:
    store = make_store(tmp_path)
    account, _, _ = make_fixtures(store)
    ledger = BalanceLedger(store, USER)

    seen = ledger.load_account(account["id"])["balance"]
    ledger.set_balance(account["id"], seen, seen - 10_000)

    with pytest.raises(ConcurrentModification):
        ledger.set_balance(account["id"], seen, seen - 20_000)
    assert balance_of(store, account["id"]) == 90_000


def test_failed_insert_reverts_balance(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    account, food, _ = make_fixtures(store)
    original_insert = store.insert

    def failing_insert(table_name, values):
        if table_name == "transactions":
            raise ConstraintViolation("insert rejected")
        return original_insert(table_name, values)

    monkeypatch.setattr(store, "insert", failing_insert)

    with pytest.raises(ConstraintViolation):
        TransactionService(store, USER).create(
            TransactionIn(
                account_id=account["id"],
                category_id=food["id"],
                type=TransactionType.expense,
                amount=40_000,
            )
        )
    assert balance_of(store, account["id"]) == 100_000


def test_rollback_failure_surfaces_compensation_failed(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    account, food, _ = make_fixtures(store)
    original_insert = store.insert

    def insert_after_concurrent_write(table_name, values):
        if table_name == "transactions":
            store.update("accounts", {"id": account["id"]}, {"balance": 1})
            raise ConstraintViolation("insert rejected")
        return original_insert(table_name, values)

    monkeypatch.setattr(store, "insert", insert_after_concurrent_write)

    with pytest.raises(CompensationFailed) as excinfo:
        TransactionService(store, USER).create(
            TransactionIn(
                account_id=account["id"],
                category_id=food["id"],
                type=TransactionType.expense,
                amount=40_000,
            )
        )
    assert isinstance(excinfo.value.original, ConstraintViolation)
    assert isinstance(excinfo.value.failures[0], ConcurrentModification)
    assert balance_of(store, account["id"]) == 1


def test_list_filters_and_embeds_names(tmp_path) -> None:
    store = make_store(tmp_path)
    account, food, salary = make_fixtures(store)
    txns = TransactionService(store, USER)
    for day, category, txn_type in [
        (1, food, TransactionType.expense),
        (15, salary, TransactionType.income),
        (28, food, TransactionType.expense),
    ]:
        txns.create(
            TransactionIn(
                account_id=account["id"],
                category_id=category["id"],
                type=txn_type,
                amount=1_000,
                date=date(2024, 3, day),
            )
        )

    everything = txns.list()
    assert [t["date"] for t in everything] == ["2024-03-28", "2024-03-15", "2024-03-01"]
    assert everything[0]["account"] == {"name": "Wallet"}
    assert everything[0]["category"] == {"name": "Food", "color": "#ff0000"}

    expenses = txns.list(TransactionQuery(type=TransactionType.expense))
    assert len(expenses) == 2

    window = txns.list(
        TransactionQuery(date_from=date(2024, 3, 10), date_to=date(2024, 3, 20))
    )
    assert [t["category_id"] for t in window] == [salary["id"]]


def test_failed_row_update_restores_balance(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    account, food, _ = make_fixtures(store)
    txns = TransactionService(store, USER)
    lunch = txns.create(
        TransactionIn(
            account_id=account["id"],
            category_id=food["id"],
            type=TransactionType.expense,
            amount=30_000,
        )
    )
    original_update = store.update

    def failing_update(table_name, filters, values, *, expected=None):
        if table_name == "transactions":
            raise ConstraintViolation("update rejected")
        return original_update(table_name, filters, values, expected=expected)

    monkeypatch.setattr(store, "update", failing_update)

    with pytest.raises(ConstraintViolation):
        txns.update(lunch["id"], TransactionPatch(amount=50_000))
    assert balance_of(store, account["id"]) == 70_000
    assert txns.get(lunch["id"])["amount"] == 30_000


def test_failed_row_delete_restores_balance(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    account, food, _ = make_fixtures(store)
    txns = TransactionService(store, USER)
    lunch = txns.create(
        TransactionIn(
            account_id=account["id"],
            category_id=food["id"],
            type=TransactionType.expense,
            amount=30_000,
        )
    )
    original_delete = store.delete

    def failing_delete(table_name, filters):
        if table_name == "transactions":
            raise ConstraintViolation("delete rejected")
        return original_delete(table_name, filters)

    monkeypatch.setattr(store, "delete", failing_delete)

    with pytest.raises(ConstraintViolation):
        txns.delete(lunch["id"])
    assert balance_of(store, account["id"]) == 70_000
    assert txns.get(lunch["id"])["id"] == lunch["id"]
