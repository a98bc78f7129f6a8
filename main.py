import logging
import datetime as dt
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from auth import current_user_id
from capabilities import SchemaCapabilities
from config import get_settings
from database import SessionLocal, engine
from errors import CompensationFailed, LedgerError
from models import TransactionType
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryPatch,
    ContributionIn,
    ContributionPatch,
    GoalIn,
    GoalPatch,
    TransactionIn,
    TransactionPatch,
    TransactionQuery,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    GoalContributionService,
    GoalService,
    TransactionService,
)
from store import LedgerStore

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Finance Ledger")

capabilities = SchemaCapabilities(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_capabilities() -> SchemaCapabilities:
    return capabilities


def get_store(db: Session = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db)


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, CompensationFailed):
        logger.error(f"request_failed: kind={exc.kind} original={exc.original!r}")
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return AccountService(store, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts")
def list_accounts(
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    return AccountService(store, user_id).list_all()


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return AccountService(store, user_id).get(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: str,
    payload: AccountPatch,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return AccountService(store, user_id).update(account_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        AccountService(store, user_id).delete(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return CategoryService(store, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    return CategoryService(store, user_id).list_all(type)


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryPatch,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return CategoryService(store, user_id).update(category_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        CategoryService(store, user_id).delete(category_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return TransactionService(store, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[str] = None,
    category_id: Optional[str] = None,
    type: Optional[TransactionType] = None,
    date: Optional[dt.date] = None,
    date_from: Optional[dt.date] = None,
    date_to: Optional[dt.date] = None,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        query = TransactionQuery(
            account_id=account_id,
            category_id=category_id,
            type=type,
            date=date,
            date_from=date_from,
            date_to=date_to,
        )
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={"error": exc.errors()[0]["msg"], "kind": "validation_error"},
        ) from exc
    return TransactionService(store, user_id).list(query)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return TransactionService(store, user_id).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    payload: TransactionPatch,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        return TransactionService(store, user_id).update(transaction_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: str,
    store: LedgerStore = Depends(get_store),
    user_id: str = Depends(current_user_id),
):
    try:
        TransactionService(store, user_id).delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return BudgetService(store, caps, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/budgets")
def list_budgets(
    month: Optional[str] = None,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return BudgetService(store, caps, user_id).list(month)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/budgets/{budget_id}")
def get_budget(
    budget_id: str,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return BudgetService(store, caps, user_id).get(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/budgets/{budget_id}")
def update_budget(
    budget_id: str,
    payload: BudgetPatch,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return BudgetService(store, caps, user_id).update(budget_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: str,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        BudgetService(store, caps, user_id).delete(budget_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/goals", status_code=201)
def create_goal(
    payload: GoalIn,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalService(store, caps, user_id).create(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/goals")
def list_goals(
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalService(store, caps, user_id).list_all()
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/goals/{goal_id}")
def get_goal(
    goal_id: str,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalService(store, caps, user_id).get(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/goals/{goal_id}")
def update_goal(
    goal_id: str,
    payload: GoalPatch,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalService(store, caps, user_id).update(goal_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: str,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        GoalService(store, caps, user_id).delete(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/goals/{goal_id}/contributions")
def list_contributions(
    goal_id: str,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalContributionService(store, caps, user_id).list(goal_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/goals/{goal_id}/contributions", status_code=201)
def create_contribution(
    goal_id: str,
    payload: ContributionIn,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalContributionService(store, caps, user_id).create(goal_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/goals/{goal_id}/contributions/{contribution_id}")
def update_contribution(
    goal_id: str,
    contribution_id: str,
    payload: ContributionPatch,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        return GoalContributionService(store, caps, user_id).update(
            goal_id, contribution_id, payload
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/goals/{goal_id}/contributions/{contribution_id}", status_code=204)
def delete_contribution(
    goal_id: str,
    contribution_id: str,
    store: LedgerStore = Depends(get_store),
    caps: SchemaCapabilities = Depends(get_capabilities),
    user_id: str = Depends(current_user_id),
):
    try:
        GoalContributionService(store, caps, user_id).delete(goal_id, contribution_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)
