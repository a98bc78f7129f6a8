"""Detection of which historical ledger schema the database carries.

Goals, contributions and budgets were renamed and reshaped across
deployments. Instead of requiring a migration, the tables and columns are
probed once with zero-row selects and the first candidate that exists wins.
Candidate lists are ordered newest name first.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import column, select, table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from errors import SchemaError


logger = logging.getLogger(__name__)

GOAL_TABLES = ("saving_goals", "goals")
GOAL_PROGRESS_VIEWS = ("saving_goals_with_progress", "goals_with_progress")
CONTRIBUTION_TABLES = (
    "saving_goal_contributions",
    "goal_contributions",
    "goals_contributions",
)
BUDGET_TABLE = "budgets"

_MISSING_MARKERS = (
    "no such table",
    "no such column",
    "could not find the table",
    "could not find the '",
    "unknown column",
)
_MISSING_PATTERN = re.compile(r"\b(relation|column|table) \S+ does not exist")
_MISSING_DRIVER_ERRORS = {"UndefinedTable", "UndefinedColumn"}


def is_missing_object_error(exc: DBAPIError) -> bool:
    if type(exc.orig).__name__ in _MISSING_DRIVER_ERRORS:
        return True
    message = str(exc.orig).lower()
    if any(marker in message for marker in _MISSING_MARKERS):
        return True
    return bool(_MISSING_PATTERN.search(message))


@dataclass(frozen=True)
class GoalLayout:
    table: str
    target_amount: str
    target_date: Optional[str]
    start_date: Optional[str]
    frequency: Optional[str]
    description: Optional[str]
    status: Optional[str]
    account_id: Optional[str]
    progress_view: Optional[str]


@dataclass(frozen=True)
class ContributionLayout:
    table: str
    user_id: Optional[str]
    account_id: Optional[str]
    date: Optional[str]
    description: Optional[str]


@dataclass(frozen=True)
class BudgetLayout:
    table: str
    amount: str
    has_range: bool


class SchemaCapabilities:
    """Memoised answers to "which table/column exists" for one database.

    Build one per process and hand it to the services. Negative answers are
    cached as well; probe errors that are not about a missing object are
    raised and leave the cache untouched.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._tables: dict[tuple[str, ...], Optional[str]] = {}
        self._columns: dict[tuple[str, tuple[str, ...]], Optional[str]] = {}
        self._goal_layout: Optional[GoalLayout] = None
        self._contribution_layout: Optional[ContributionLayout] = None
        self._budget_layout: Optional[BudgetLayout] = None

    def _probe(self, table_name: str, column_name: str) -> bool:
        stmt = select(column(column_name)).select_from(table(table_name)).limit(0)
        try:
            with self.engine.connect() as conn:
                conn.execute(stmt)
        except DBAPIError as exc:
            if is_missing_object_error(exc):
                return False
            raise
        return True

    def resolve_table(
        self, candidates: Sequence[str], *, required: bool = True
    ) -> Optional[str]:
        key = tuple(candidates)
        if key not in self._tables:
            found = None
            for name in key:
                if self._probe(name, "id"):
                    found = name
                    break
            self._tables[key] = found
            logger.info(f"schema_probe: tables={list(key)} resolved={found}")
        resolved = self._tables[key]
        if resolved is None and required:
            raise SchemaError(
                f"Table not found. Expected one of: {', '.join(candidates)}"
            )
        return resolved

    def resolve_column(
        self, table_name: str, candidates: Sequence[str]
    ) -> Optional[str]:
        key = (table_name, tuple(candidates))
        if key not in self._columns:
            found = None
            for name in key[1]:
                if self._probe(table_name, name):
                    found = name
                    break
            self._columns[key] = found
            logger.info(
                f"schema_probe: table={table_name} columns={list(key[1])} resolved={found}"
            )
        return self._columns[key]

    def goal_layout(self) -> GoalLayout:
        if self._goal_layout is None:
            goal_table = self.resolve_table(GOAL_TABLES)
            target_amount = self.resolve_column(
                goal_table, ["target_amount", "goal_amount", "amount"]
            )
            if not target_amount:
                raise SchemaError("Missing target amount column in goals table")
            self._goal_layout = GoalLayout(
                table=goal_table,
                target_amount=target_amount,
                target_date=self.resolve_column(
                    goal_table, ["target_date", "deadline", "end_date"]
                ),
                start_date=self.resolve_column(goal_table, ["start_date"]),
                frequency=self.resolve_column(goal_table, ["frequency"]),
                description=self.resolve_column(goal_table, ["description"]),
                status=self.resolve_column(goal_table, ["status"]),
                account_id=self.resolve_column(goal_table, ["account_id"]),
                progress_view=self.resolve_table(GOAL_PROGRESS_VIEWS, required=False),
            )
        return self._goal_layout

    def contribution_layout(self) -> ContributionLayout:
        if self._contribution_layout is None:
            contribution_table = self.resolve_table(CONTRIBUTION_TABLES)
            self._contribution_layout = ContributionLayout(
                table=contribution_table,
                user_id=self.resolve_column(contribution_table, ["user_id"]),
                account_id=self.resolve_column(contribution_table, ["account_id"]),
                date=self.resolve_column(contribution_table, ["date"]),
                description=self.resolve_column(contribution_table, ["description"]),
            )
        return self._contribution_layout

    def budget_layout(self) -> BudgetLayout:
        if self._budget_layout is None:
            amount = self.resolve_column(BUDGET_TABLE, ["limit_amount", "amount"])
            if not amount:
                raise SchemaError("Missing amount column in budgets table")
            has_range = bool(
                self.resolve_column(BUDGET_TABLE, ["period_start"])
                and self.resolve_column(BUDGET_TABLE, ["period_end"])
            )
            self._budget_layout = BudgetLayout(
                table=BUDGET_TABLE, amount=amount, has_range=has_range
            )
        return self._budget_layout
