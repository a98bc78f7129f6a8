from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional
from uuid import uuid4

from sqlalchemy import column, delete, func, insert, literal_column, select, table, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement

from errors import ConstraintViolation


logger = logging.getLogger(__name__)

Row = dict[str, Any]


def _bind(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S.%f")
    if isinstance(value, date):
        return value.isoformat()
    return value


def _bound(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _bind(value) for key, value in values.items()}


def _conditions(
    filters: Optional[Mapping[str, Any]], where: Iterable[ColumnElement]
) -> list[ColumnElement]:
    conds: list[ColumnElement] = [
        column(key) == _bind(value) for key, value in (filters or {}).items()
    ]
    conds.extend(where)
    return conds


class LedgerStore:
    """Row-level access to the ledger tables, addressed by table name.

    Table and column names are plain strings so that callers can target
    whichever physical layout the capability probe found. Every write is
    committed on its own.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(
        self,
        table_name: str,
        filters: Mapping[str, Any],
        *,
        where: Iterable[ColumnElement] = (),
    ) -> Optional[Row]:
        rows = self.list(table_name, filters, where=where, limit=1)
        return rows[0] if rows else None

    def list(
        self,
        table_name: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        where: Iterable[ColumnElement] = (),
        order_by: Iterable[ColumnElement] = (),
        limit: Optional[int] = None,
    ) -> list[Row]:
        stmt = (
            select(literal_column("*"))
            .select_from(table(table_name))
            .where(*_conditions(filters, where))
            .order_by(*order_by)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [dict(row) for row in self.session.execute(stmt).mappings().all()]

    def count(
        self,
        table_name: str,
        filters: Mapping[str, Any],
        *,
        where: Iterable[ColumnElement] = (),
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(table(table_name))
            .where(*_conditions(filters, where))
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def count_by(
        self,
        table_name: str,
        group_column: str,
        filters: Mapping[str, Any],
        *,
        where: Iterable[ColumnElement] = (),
    ) -> dict[Any, int]:
        key = column(group_column)
        stmt = (
            select(key, func.count())
            .select_from(table(table_name))
            .where(*_conditions(filters, where))
            .group_by(key)
        )
        return {value: int(total) for value, total in self.session.execute(stmt).all()}

    def insert(self, table_name: str, values: Mapping[str, Any]) -> Row:
        payload = _bound(values)
        payload.setdefault("id", str(uuid4()))
        target = table(table_name, *[column(key) for key in payload])
        self._write(insert(target).values(**payload), table_name, "insert")
        row = self.get(table_name, {"id": payload["id"]})
        if row is None:
            raise ConstraintViolation(f"Inserted row vanished from {table_name}")
        return row

    def update(
        self,
        table_name: str,
        filters: Mapping[str, Any],
        values: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Row]:
        if not values:
            return self.get(table_name, filters)
        payload = _bound(values)
        target = table(table_name, *[column(key) for key in payload])
        stmt = (
            update(target)
            .where(*_conditions(filters, ()))
            .where(*_conditions(expected, ()))
            .values(**payload)
        )
        result = self._write(stmt, table_name, "update")
        if result.rowcount == 0:
            return None
        return self.get(table_name, filters)

    def delete(self, table_name: str, filters: Mapping[str, Any]) -> bool:
        stmt = delete(table(table_name)).where(*_conditions(filters, ()))
        result = self._write(stmt, table_name, "delete")
        return result.rowcount > 0

    def _write(self, stmt, table_name: str, action: str):
        try:
            result = self.session.execute(stmt)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.info(f"store_conflict: table={table_name} action={action}")
            raise ConstraintViolation(
                f"{action.capitalize()} on {table_name} rejected: {exc.orig}"
            ) from exc
        except Exception:
            self.session.rollback()
            raise
        return result
