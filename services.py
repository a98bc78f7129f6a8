from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import column

from capabilities import BudgetLayout, GoalLayout, SchemaCapabilities
from errors import (
    ClosedPeriod,
    ConstraintViolation,
    DuplicateBudget,
    NotFound,
    RuleViolation,
    SchemaError,
    TypeMismatch,
    ValidationError,
)
from ledger import BalanceLedger, check_debit, signed_impact
from models import AccountType, BudgetPeriod, BudgetStatus, GoalStatus, TransactionType
from periods import (
    PeriodRange,
    RangePeriod,
    as_date,
    month_range,
    month_timestamp_window,
    month_token,
    period_spec,
    resolve_period_range,
    utc_now,
)
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
from store import LedgerStore, Row


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ACCOUNTS = "accounts"
CATEGORIES = "categories"
TRANSACTIONS = "transactions"

BUDGET_WARNING_PERCENTAGE = 70
BUDGET_EXCEEDED_PERCENTAGE = 100


def _value(item: object) -> object:
    return getattr(item, "value", item)


class AccountService:
    def __init__(
        self, store: LedgerStore, user_id: str, now: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.now = now or utc_now

    def list_all(self) -> list[Row]:
        return self.store.list(
            ACCOUNTS,
            {"user_id": self.user_id},
            order_by=[column("created_at").asc()],
        )

    def get(self, account_id: str) -> Row:
        return BalanceLedger(self.store, self.user_id).load_account(account_id)

    def create(self, data: AccountIn) -> Row:
        account = self.store.insert(
            ACCOUNTS,
            {
                "user_id": self.user_id,
                "name": data.name.strip(),
                "type": data.type,
                "balance": data.balance,
                "bank_name": data.bank_name if data.type == AccountType.bank else None,
                "created_at": self.now(),
            },
        )
        logger.info(f"account_created: id={account['id']} balance={data.balance}")
        return account

    def update(self, account_id: str, patch: AccountPatch) -> Row:
        account = self.get(account_id)
        changes = patch.changes()
        next_type = AccountType(changes.get("type") or account["type"])
        if next_type != AccountType.bank:
            changes["bank_name"] = None
        if "name" in changes:
            changes["name"] = changes["name"].strip()

        balance = changes.pop("balance", None)
        if balance is not None and balance != int(account["balance"]):
            # manual correction, still a compare-and-swap on the read balance
            BalanceLedger(self.store, self.user_id).set_balance(
                account_id, int(account["balance"]), balance
            )
        if changes:
            self.store.update(
                ACCOUNTS, {"id": account_id, "user_id": self.user_id}, changes
            )
        return self.get(account_id)

    def delete(self, account_id: str) -> None:
        self.get(account_id)
        try:
            self.store.delete(ACCOUNTS, {"id": account_id, "user_id": self.user_id})
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "Cannot delete an account referenced by transactions or contributions"
            ) from exc


def _normalize_name(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class CategoryService:
    def __init__(
        self, store: LedgerStore, user_id: str, now: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.now = now or utc_now

    def get(self, category_id: str) -> Row:
        category = self.store.get(
            CATEGORIES, {"id": category_id, "user_id": self.user_id}
        )
        if not category:
            raise NotFound("Category not found")
        return category

    def transaction_count(self, category_id: str) -> int:
        return self.store.count(
            TRANSACTIONS, {"user_id": self.user_id, "category_id": category_id}
        )

    def _ensure_unique_name(
        self, txn_type: str, name: str, exclude_id: Optional[str] = None
    ) -> None:
        same_type = self.store.list(
            CATEGORIES, {"user_id": self.user_id, "type": txn_type}
        )
        for category in same_type:
            if category["id"] == exclude_id:
                continue
            if _normalize_name(category["name"]) == _normalize_name(name):
                raise ConstraintViolation("Category name already exists for this type")

    @staticmethod
    def _decorate(category: Row, transaction_count: int) -> Row:
        is_active = category.get("is_active")
        return {
            **category,
            "transaction_count": transaction_count,
            "status": "inactive" if is_active is not None and not is_active else "active",
        }

    def list_all(self, txn_type: Optional[TransactionType] = None) -> list[Row]:
        filters: dict[str, object] = {"user_id": self.user_id}
        if txn_type:
            filters["type"] = txn_type
        categories = self.store.list(
            CATEGORIES, filters, order_by=[column("name").asc()]
        )
        if not categories:
            return []
        counts = self.store.count_by(
            TRANSACTIONS,
            "category_id",
            {"user_id": self.user_id},
            where=[column("category_id").in_([c["id"] for c in categories])],
        )
        return [self._decorate(c, counts.get(c["id"], 0)) for c in categories]

    def create(self, data: CategoryIn) -> Row:
        self._ensure_unique_name(data.type.value, data.name)
        category = self.store.insert(
            CATEGORIES,
            {
                "user_id": self.user_id,
                "name": data.name.strip(),
                "type": data.type,
                "color": data.color,
                "icon": data.icon,
                "is_active": True,
                "created_at": self.now(),
            },
        )
        return self._decorate(category, 0)

    def update(self, category_id: str, patch: CategoryPatch) -> Row:
        current = self.get(category_id)
        count = self.transaction_count(category_id)
        changes = patch.changes()

        next_type = _value(changes.get("type") or current["type"])
        if next_type != current["type"] and count > 0:
            raise RuleViolation("Cannot change type for a category with transactions")

        next_name = changes.get("name") or current["name"]
        self._ensure_unique_name(next_type, next_name, exclude_id=category_id)
        if "name" in changes:
            changes["name"] = changes["name"].strip()

        updated = self.store.update(
            CATEGORIES, {"id": category_id, "user_id": self.user_id}, changes
        )
        if updated is None:
            raise NotFound("Category not found")
        return self._decorate(updated, count)

    def delete(self, category_id: str) -> None:
        self.get(category_id)
        if self.transaction_count(category_id) > 0:
            raise ConstraintViolation(
                "Cannot delete category with associated transactions"
            )
        self.store.delete(CATEGORIES, {"id": category_id, "user_id": self.user_id})


class TransactionService:
    def __init__(
        self, store: LedgerStore, user_id: str, now: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.now = now or utc_now
        self.ledger = BalanceLedger(store, user_id)

    def get(self, transaction_id: str) -> Row:
        txn = self.store.get(
            TRANSACTIONS, {"id": transaction_id, "user_id": self.user_id}
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def _category_for(self, category_id: str, txn_type: object) -> Row:
        category = CategoryService(self.store, self.user_id).get(category_id)
        if category["type"] != _value(txn_type):
            raise TypeMismatch("Category type does not match transaction type")
        return category

    def create(self, data: TransactionIn) -> Row:
        account = self.ledger.load_account(data.account_id)
        self._category_for(data.category_id, data.type)

        balance = int(account["balance"])
        impact = signed_impact(data.type, data.amount)
        new_balance = balance + impact
        check_debit(balance, new_balance)

        with self.ledger.saga() as saga:
            saga.apply(account["id"], balance, new_balance)
            txn = self.store.insert(
                TRANSACTIONS,
                {
                    "user_id": self.user_id,
                    "account_id": data.account_id,
                    "category_id": data.category_id,
                    "type": data.type,
                    "amount": data.amount,
                    "description": data.description,
                    "date": data.date,
                    "created_at": self.now(),
                },
            )
        logger.info(
            f"transaction_created: id={txn['id']} account_id={account['id']} impact={impact}"
        )
        return txn

    def update(self, transaction_id: str, patch: TransactionPatch) -> Row:
        current = self.get(transaction_id)
        changes = patch.changes()
        merged = {**current, **changes}

        self._category_for(merged["category_id"], merged["type"])
        account = self.ledger.load_account(current["account_id"])

        balance = int(account["balance"])
        previous_impact = signed_impact(current["type"], current["amount"])
        new_impact = signed_impact(merged["type"], merged["amount"])
        new_balance = balance - previous_impact + new_impact
        check_debit(balance, new_balance)

        with self.ledger.saga() as saga:
            if new_balance != balance:
                saga.apply(account["id"], balance, new_balance)
            updated = self.store.update(
                TRANSACTIONS, {"id": transaction_id, "user_id": self.user_id}, changes
            )
            if updated is None:
                raise NotFound("Transaction not found")
        logger.info(
            f"transaction_updated: id={transaction_id} "
            f"previous_impact={previous_impact} new_impact={new_impact}"
        )
        return updated

    def delete(self, transaction_id: str) -> None:
        current = self.get(transaction_id)
        account = self.ledger.load_account(current["account_id"])

        balance = int(account["balance"])
        impact = signed_impact(current["type"], current["amount"])
        new_balance = balance - impact
        check_debit(balance, new_balance)

        with self.ledger.saga() as saga:
            saga.apply(account["id"], balance, new_balance)
            deleted = self.store.delete(
                TRANSACTIONS, {"id": transaction_id, "user_id": self.user_id}
            )
            if not deleted:
                raise NotFound("Transaction not found")
        logger.info(f"transaction_deleted: id={transaction_id} reverted={impact}")

    def list(self, query: Optional[TransactionQuery] = None) -> list[Row]:
        query = query or TransactionQuery()
        filters: dict[str, object] = {"user_id": self.user_id}
        for key in ("account_id", "category_id", "type", "date"):
            value = getattr(query, key)
            if value is not None:
                filters[key] = value
        where = []
        if query.date_from:
            where.append(column("date") >= query.date_from.isoformat())
        if query.date_to:
            where.append(column("date") <= query.date_to.isoformat())

        rows = self.store.list(
            TRANSACTIONS,
            filters,
            where=where,
            order_by=[column("date").desc(), column("created_at").desc()],
        )
        if not rows:
            return []

        account_ids = sorted({row["account_id"] for row in rows})
        category_ids = sorted({row["category_id"] for row in rows})
        accounts = {
            a["id"]: a
            for a in self.store.list(
                ACCOUNTS,
                {"user_id": self.user_id},
                where=[column("id").in_(account_ids)],
            )
        }
        categories = {
            c["id"]: c
            for c in self.store.list(
                CATEGORIES,
                {"user_id": self.user_id},
                where=[column("id").in_(category_ids)],
            )
        }
        items = []
        for row in rows:
            account = accounts.get(row["account_id"])
            category = categories.get(row["category_id"])
            items.append(
                {
                    **row,
                    "account": {"name": account["name"]} if account else None,
                    "category": (
                        {"name": category["name"], "color": category.get("color")}
                        if category
                        else None
                    ),
                }
            )
        return items


def budget_status(usage_percentage: float) -> BudgetStatus:
    if usage_percentage >= BUDGET_EXCEEDED_PERCENTAGE:
        return BudgetStatus.exceeded
    if usage_percentage >= BUDGET_WARNING_PERCENTAGE:
        return BudgetStatus.warning
    return BudgetStatus.healthy


def build_summary(items: list[Row], month: str) -> dict[str, object]:
    total_budgeted = sum(int(item.get("amount") or 0) for item in items)
    total_spent = sum(int(item.get("current_spent") or 0) for item in items)
    return {
        **month_range(month).as_dict(),
        "total_budgeted": total_budgeted,
        "total_spent": total_spent,
        "total_remaining": total_budgeted - total_spent,
    }


class BudgetService:
    def __init__(
        self,
        store: LedgerStore,
        capabilities: SchemaCapabilities,
        user_id: str,
        now: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.capabilities = capabilities
        self.user_id = user_id
        self.now = now or utc_now

    def _today(self) -> date:
        return self.now().date()

    def _layout(self) -> BudgetLayout:
        return self.capabilities.budget_layout()

    def _get_row(self, budget_id: str) -> Row:
        budget = self.store.get(
            self._layout().table, {"id": budget_id, "user_id": self.user_id}
        )
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def _ensure_expense_category(self, category_id: str) -> None:
        category = CategoryService(self.store, self.user_id).get(category_id)
        if category["type"] != TransactionType.expense.value:
            raise TypeMismatch("Budgets can only be created for expense categories")

    def normalize(self, budget: Row, fallback_month: Optional[str] = None) -> Row:
        """Report amount and period the same way whatever the stored layout."""
        layout = self._layout()
        amount = int(budget.get(layout.amount) or 0)
        start = as_date(budget.get("period_start"))
        end = as_date(budget.get("period_end"))
        if start and end:
            period = PeriodRange(month_token(start), start, end)
        else:
            created = as_date(budget.get("created_at"))
            month = fallback_month or month_token(created or self._today())
            period = month_range(month)
        return {
            **budget,
            "amount": amount,
            "limit_amount": amount,
            "month": period.month,
            "period_start": period.start,
            "period_end": period.end,
        }

    def _period_conditions(
        self, period: PeriodRange
    ) -> tuple[dict[str, object], list]:
        if self._layout().has_range:
            return {"period_start": period.start, "period_end": period.end}, []
        created_from, created_to = month_timestamp_window(period.month)
        return {}, [
            column("created_at") >= created_from.isoformat(sep=" "),
            column("created_at") < created_to.isoformat(sep=" "),
        ]

    def ensure_unique_budget(
        self,
        category_id: str,
        period: object,
        period_range: PeriodRange,
        exclude_id: Optional[str] = None,
    ) -> None:
        filters, where = self._period_conditions(period_range)
        filters.update(
            {
                "user_id": self.user_id,
                "category_id": category_id,
                "period": _value(period),
            }
        )
        if exclude_id:
            where.append(column("id") != exclude_id)
        if self.store.get(self._layout().table, filters, where=where):
            raise DuplicateBudget(
                "This category already has a budget for the selected period"
            )

    def _ensure_not_past(self, period_range: PeriodRange, message: str) -> None:
        current = month_range(month_token(self._today()))
        if period_range.start < current.start:
            raise ClosedPeriod(message)

    def attach_progress(self, budgets: list[Row]) -> list[Row]:
        if not budgets:
            return []
        category_ids = sorted({b["category_id"] for b in budgets})
        span_start = min(b["period_start"] for b in budgets)
        span_end = max(b["period_end"] for b in budgets)

        categories = {
            c["id"]: c
            for c in self.store.list(
                CATEGORIES,
                {"user_id": self.user_id},
                where=[column("id").in_(category_ids)],
            )
        }
        expenses = self.store.list(
            TRANSACTIONS,
            {"user_id": self.user_id, "type": TransactionType.expense},
            where=[
                column("category_id").in_(category_ids),
                column("date") >= span_start.isoformat(),
                column("date") <= span_end.isoformat(),
            ],
        )

        enriched = []
        for budget in budgets:
            spent = sum(
                int(txn["amount"] or 0)
                for txn in expenses
                if txn["category_id"] == budget["category_id"]
                and budget["period_start"] <= as_date(txn["date"]) <= budget["period_end"]
            )
            amount = int(budget["amount"])
            usage = (spent / amount) * 100 if amount > 0 else 0
            category = categories.get(budget["category_id"])
            enriched.append(
                {
                    **budget,
                    "category": (
                        {
                            key: category.get(key)
                            for key in ("id", "name", "type", "color", "icon")
                        }
                        if category
                        else None
                    ),
                    "current_spent": spent,
                    "usage_percentage": round(usage, 2),
                    "remaining_amount": round(amount - spent, 2),
                    "status": budget_status(usage).value,
                }
            )
        return enriched

    def create(self, data: BudgetIn) -> Row:
        layout = self._layout()
        today = self._today()
        period_range = resolve_period_range(
            period_spec(data.month, data.period_start, data.period_end), today=today
        )
        self._ensure_expense_category(data.category_id)

        if not layout.has_range and period_range.month != month_token(today):
            raise ValidationError(
                "Database migration required to create budgets in months "
                "different from current month"
            )
        self._ensure_not_past(
            period_range, "Budgets must target current or future months"
        )
        self.ensure_unique_budget(data.category_id, data.period, period_range)

        payload: dict[str, object] = {
            "user_id": self.user_id,
            "category_id": data.category_id,
            "period": data.period,
            layout.amount: data.amount,
            "created_at": self.now(),
        }
        if layout.has_range:
            payload["period_start"] = period_range.start
            payload["period_end"] = period_range.end

        budget = self.store.insert(layout.table, payload)
        logger.info(
            f"budget_created: id={budget['id']} month={period_range.month} "
            f"range_columns={layout.has_range}"
        )
        return self.attach_progress([self.normalize(budget, period_range.month)])[0]

    def list(self, month: Optional[str] = None) -> dict[str, object]:
        month = month or month_token(self._today())
        filters, where = self._period_conditions(month_range(month))
        filters.update({"user_id": self.user_id, "period": BudgetPeriod.monthly})
        budgets = self.store.list(
            self._layout().table,
            filters,
            where=where,
            order_by=[column("created_at").desc()],
        )
        items = self.attach_progress([self.normalize(b, month) for b in budgets])
        return {"items": items, "summary": build_summary(items, month)}

    def get(self, budget_id: str) -> Row:
        return self.attach_progress([self.normalize(self._get_row(budget_id))])[0]

    def update(self, budget_id: str, patch: BudgetPatch) -> Row:
        layout = self._layout()
        current = self._get_row(budget_id)
        normalized = self.normalize(current)
        today = self._today()

        if normalized["period_end"] < today:
            raise ClosedPeriod("Closed period budgets cannot be modified")

        changes = patch.changes()
        next_period = changes.get("period") or current.get("period") or BudgetPeriod.monthly
        spec = period_spec(
            changes.get("month"), changes.get("period_start"), changes.get("period_end")
        ) or RangePeriod(normalized["period_start"], normalized["period_end"])
        next_range = resolve_period_range(spec, today=today)

        if not layout.has_range and next_range.month != normalized["month"]:
            raise ValidationError(
                "Database migration required to move budgets to another month"
            )
        self._ensure_not_past(
            next_range, "Budget period updates must target current or future months"
        )

        payload: dict[str, object] = {}
        if changes.get("amount") is not None:
            payload[layout.amount] = changes["amount"]
        if changes.keys() & {"month", "period_start", "period_end", "period"}:
            payload["period"] = next_period
            if layout.has_range:
                payload["period_start"] = next_range.start
                payload["period_end"] = next_range.end
            self.ensure_unique_budget(
                current["category_id"], next_period, next_range, exclude_id=budget_id
            )

        updated = self.store.update(
            layout.table, {"id": budget_id, "user_id": self.user_id}, payload
        )
        if updated is None:
            raise NotFound("Budget not found")
        return self.attach_progress([self.normalize(updated, next_range.month)])[0]

    def delete(self, budget_id: str) -> None:
        self._get_row(budget_id)
        self.store.delete(
            self._layout().table, {"id": budget_id, "user_id": self.user_id}
        )


def goal_status(progress_percentage: float, stored_status: Optional[str]) -> str:
    if progress_percentage >= 100:
        return GoalStatus.completed.value
    if stored_status == GoalStatus.paused.value:
        return GoalStatus.paused.value
    return GoalStatus.active.value


def progress_percentage(saved: int, target: int) -> float:
    return (saved / target) * 100 if target > 0 else 0


def normalize_goal(raw: Row, layout: GoalLayout) -> Row:
    target = int(raw.get(layout.target_amount) or 0)
    saved = next(
        (
            raw[key]
            for key in ("saved_amount", "current_saved", "current_amount", "amount_saved")
            if raw.get(key) is not None
        ),
        0,
    )
    saved = int(saved)
    progress = raw.get("progress_percentage")
    progress = float(progress) if progress is not None else progress_percentage(saved, target)
    return {
        **raw,
        "target_amount": target,
        "saved_amount": saved,
        "remaining_amount": round(target - saved, 2),
        "progress_percentage": round(progress, 2),
        "target_date": raw.get(layout.target_date) if layout.target_date else None,
        "frequency": raw.get("frequency") or "monthly",
        "status": goal_status(progress, raw.get("status")),
    }


class GoalService:
    def __init__(
        self,
        store: LedgerStore,
        capabilities: SchemaCapabilities,
        user_id: str,
        now: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.capabilities = capabilities
        self.user_id = user_id
        self.now = now or utc_now

    def _layout(self) -> GoalLayout:
        return self.capabilities.goal_layout()

    def get_row(self, goal_id: str) -> Row:
        goal = self.store.get(
            self._layout().table, {"id": goal_id, "user_id": self.user_id}
        )
        if not goal:
            raise NotFound("Goal not found")
        return goal

    def contribution_sums(self, goal_ids: list[str]) -> dict[str, int]:
        sums = {goal_id: 0 for goal_id in goal_ids}
        if not goal_ids:
            return sums
        try:
            layout = self.capabilities.contribution_layout()
        except SchemaError:
            return sums

        filters: dict[str, object] = {}
        if layout.user_id:
            filters["user_id"] = self.user_id
        rows = self.store.list(
            layout.table, filters, where=[column("goal_id").in_(goal_ids)]
        )
        for row in rows:
            sums[row["goal_id"]] = sums.get(row["goal_id"], 0) + int(row["amount"] or 0)
        return sums

    def accumulated(self, goal_id: str) -> int:
        return self.contribution_sums([goal_id])[goal_id]

    def _with_computed_progress(self, goals: list[Row]) -> list[Row]:
        layout = self._layout()
        sums = self.contribution_sums([g["id"] for g in goals])
        return [
            normalize_goal({**goal, "saved_amount": sums.get(goal["id"], 0)}, layout)
            for goal in goals
        ]

    def sync_goal_status(self, goal_id: str) -> None:
        layout = self._layout()
        if not layout.status:
            return
        goal = self.get_row(goal_id)
        target = int(goal.get(layout.target_amount) or 0)
        saved = self.accumulated(goal_id)
        next_status = goal_status(progress_percentage(saved, target), goal.get("status"))
        if next_status == goal.get("status"):
            return
        self.store.update(
            layout.table,
            {"id": goal_id, "user_id": self.user_id},
            {layout.status: next_status},
        )
        logger.info(
            f"goal_status_synced: id={goal_id} status={next_status} saved={saved} target={target}"
        )

    def list_all(self) -> list[Row]:
        layout = self._layout()
        order = [column("created_at").desc()]
        if layout.progress_view:
            rows = self.store.list(
                layout.progress_view, {"user_id": self.user_id}, order_by=order
            )
            return [normalize_goal(row, layout) for row in rows]
        rows = self.store.list(layout.table, {"user_id": self.user_id}, order_by=order)
        return self._with_computed_progress(rows)

    def get(self, goal_id: str) -> Row:
        layout = self._layout()
        if layout.progress_view:
            row = self.store.get(
                layout.progress_view, {"id": goal_id, "user_id": self.user_id}
            )
            if not row:
                raise NotFound("Goal not found")
            return normalize_goal(row, layout)
        return self._with_computed_progress([self.get_row(goal_id)])[0]

    def create(self, data: GoalIn) -> Row:
        layout = self._layout()
        payload: dict[str, object] = {
            "user_id": self.user_id,
            "name": data.name,
            layout.target_amount: data.target_amount,
            "created_at": self.now(),
        }
        if layout.start_date:
            payload[layout.start_date] = data.start_date or self.now().date()
        if layout.target_date and data.target_date:
            payload[layout.target_date] = data.target_date
        if layout.frequency:
            payload[layout.frequency] = data.frequency or "monthly"
        if layout.description and data.description is not None:
            payload[layout.description] = data.description
        if layout.account_id and data.account_id:
            BalanceLedger(self.store, self.user_id).load_account(data.account_id)
            payload[layout.account_id] = data.account_id
        if layout.status:
            payload[layout.status] = data.status

        goal = self.store.insert(layout.table, payload)
        logger.info(f"goal_created: id={goal['id']} target={data.target_amount}")
        return self.get(goal["id"])

    def update(self, goal_id: str, patch: GoalPatch) -> Row:
        layout = self._layout()
        self.get_row(goal_id)
        saved = self.accumulated(goal_id)
        changes = patch.changes()

        target = changes.get("target_amount")
        if target is not None and target < saved:
            raise RuleViolation("Target amount cannot be lower than current saved amount")

        payload: dict[str, object] = {}
        if changes.get("name"):
            payload["name"] = changes["name"]
        if target is not None:
            payload[layout.target_amount] = target
        optional_columns = {
            "target_date": layout.target_date,
            "description": layout.description,
            "frequency": layout.frequency,
            "status": layout.status,
        }
        for field, column_name in optional_columns.items():
            if column_name and field in changes:
                payload[column_name] = changes[field]

        self.store.update(layout.table, {"id": goal_id, "user_id": self.user_id}, payload)
        self.sync_goal_status(goal_id)
        return self.get(goal_id)

    def delete(self, goal_id: str) -> None:
        layout = self._layout()
        self.get_row(goal_id)
        if self.accumulated(goal_id) != 0:
            raise RuleViolation("Goal with saved funds cannot be deleted")
        self.store.delete(layout.table, {"id": goal_id, "user_id": self.user_id})


class GoalContributionService:
    def __init__(
        self,
        store: LedgerStore,
        capabilities: SchemaCapabilities,
        user_id: str,
        now: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.capabilities = capabilities
        self.user_id = user_id
        self.now = now or utc_now
        self.goals = GoalService(store, capabilities, user_id, now=self.now)
        self.ledger = BalanceLedger(store, user_id)

    def _layout_with_accounts(self):
        layout = self.capabilities.contribution_layout()
        if not layout.account_id:
            raise SchemaError(
                f"{layout.table}.account_id is required to keep balances consistent. "
                "Add this column before registering contributions."
            )
        return layout

    def _scope(self, goal_id: str, contribution_id: Optional[str] = None) -> dict:
        scope: dict[str, object] = {"goal_id": goal_id}
        if contribution_id is not None:
            scope["id"] = contribution_id
        if self.capabilities.contribution_layout().user_id:
            scope["user_id"] = self.user_id
        return scope

    def get(self, goal_id: str, contribution_id: str) -> Row:
        table_name = self.capabilities.contribution_layout().table
        contribution = self.store.get(table_name, self._scope(goal_id, contribution_id))
        if not contribution:
            raise NotFound("Goal contribution not found")
        return contribution

    def list(self, goal_id: str) -> list[Row]:
        self.goals.get_row(goal_id)
        layout = self.capabilities.contribution_layout()
        order = []
        if layout.date:
            order.append(column(layout.date).desc())
        order.append(column("created_at").desc())
        return self.store.list(layout.table, self._scope(goal_id), order_by=order)

    def _row_changes(self, layout, changes: dict[str, object]) -> dict[str, object]:
        extra: dict[str, object] = {}
        if layout.date and "date" in changes:
            extra[layout.date] = changes["date"]
        if layout.description and "description" in changes:
            extra[layout.description] = changes["description"]
        return extra

    def create(self, goal_id: str, data: ContributionIn) -> Row:
        self.goals.get_row(goal_id)
        layout = self._layout_with_accounts()
        account = self.ledger.load_account(data.account_id)

        balance = int(account["balance"])
        new_balance = balance - data.amount
        check_debit(balance, new_balance)

        payload: dict[str, object] = {
            "goal_id": goal_id,
            layout.account_id: data.account_id,
            "amount": data.amount,
            "created_at": self.now(),
        }
        if layout.user_id:
            payload[layout.user_id] = self.user_id
        if layout.date:
            payload[layout.date] = data.date or self.now().date()
        if layout.description and data.description is not None:
            payload[layout.description] = data.description

        with self.ledger.saga() as saga:
            saga.apply(account["id"], balance, new_balance)
            contribution = self.store.insert(layout.table, payload)
        logger.info(
            f"contribution_created: id={contribution['id']} goal_id={goal_id} "
            f"account_id={account['id']} amount={data.amount}"
        )
        self.goals.sync_goal_status(goal_id)
        return contribution

    def update(
        self, goal_id: str, contribution_id: str, patch: ContributionPatch
    ) -> Row:
        self.goals.get_row(goal_id)
        layout = self._layout_with_accounts()
        current = self.get(goal_id, contribution_id)
        changes = patch.changes()

        current_account_id = current[layout.account_id]
        next_account_id = changes.get("account_id") or current_account_id
        current_amount = int(current["amount"])
        next_amount = int(changes.get("amount") or current_amount)

        row_changes = {layout.account_id: next_account_id, "amount": next_amount}
        row_changes.update(self._row_changes(layout, changes))

        if next_account_id == current_account_id:
            account = self.ledger.load_account(next_account_id)
            balance = int(account["balance"])
            new_balance = balance + current_amount - next_amount
            check_debit(balance, new_balance)
            with self.ledger.saga() as saga:
                if new_balance != balance:
                    saga.apply(next_account_id, balance, new_balance)
                updated = self._write_row(goal_id, contribution_id, row_changes)
        else:
            source = self.ledger.load_account(current_account_id)
            target = self.ledger.load_account(next_account_id)
            source_balance = int(source["balance"])
            target_balance = int(target["balance"])
            target_after_charge = target_balance - next_amount
            check_debit(target_balance, target_after_charge)
            with self.ledger.saga() as saga:
                saga.apply(current_account_id, source_balance, source_balance + current_amount)
                saga.apply(next_account_id, target_balance, target_after_charge)
                updated = self._write_row(goal_id, contribution_id, row_changes)
            logger.info(
                f"contribution_moved: id={contribution_id} from={current_account_id} "
                f"to={next_account_id} amount={next_amount}"
            )

        self.goals.sync_goal_status(goal_id)
        return updated

    def _write_row(
        self, goal_id: str, contribution_id: str, values: dict[str, object]
    ) -> Row:
        table_name = self.capabilities.contribution_layout().table
        updated = self.store.update(
            table_name, self._scope(goal_id, contribution_id), values
        )
        if updated is None:
            raise NotFound("Goal contribution not found")
        return updated

    def delete(self, goal_id: str, contribution_id: str) -> None:
        self.goals.get_row(goal_id)
        layout = self._layout_with_accounts()
        contribution = self.get(goal_id, contribution_id)
        account = self.ledger.load_account(contribution[layout.account_id])

        balance = int(account["balance"])
        new_balance = balance + int(contribution["amount"])

        with self.ledger.saga() as saga:
            saga.apply(account["id"], balance, new_balance)
            deleted = self.store.delete(
                layout.table, self._scope(goal_id, contribution_id)
            )
            if not deleted:
                raise NotFound("Goal contribution not found")
        logger.info(f"contribution_deleted: id={contribution_id} refunded={contribution['amount']}")
        self.goals.sync_goal_status(goal_id)
