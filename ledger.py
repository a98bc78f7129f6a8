"""Account balance bookkeeping shared by transactions and goal contributions.

The balance column is only ever written through ``BalanceLedger.set_balance``,
a compare-and-swap keyed on the balance that was read. Operations that write
a balance and then a domain row run inside ``BalanceLedger.saga()`` so that a
failing domain write reverts the balance writes that preceded it.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError

from errors import (
    CompensationFailed,
    ConcurrentModification,
    InsufficientBalance,
    LedgerError,
    NotFound,
)
from models import TransactionType
from store import LedgerStore, Row


logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = "accounts"


def signed_impact(txn_type: TransactionType | str, amount: int) -> int:
    if TransactionType(txn_type) == TransactionType.income:
        return int(amount)
    return -int(amount)


def check_debit(current: int, new: int) -> None:
    """Reject a balance change that lowers the balance below zero.

    Balances that are already negative (manual edits) may still be credited.
    """
    if new < current and new < 0:
        raise InsufficientBalance("Insufficient balance")


@dataclass(frozen=True)
class BalanceWrite:
    account_id: str
    previous: int
    written: int


class BalanceSaga:
    def __init__(self, ledger: "BalanceLedger") -> None:
        self.ledger = ledger
        self.applied: list[BalanceWrite] = []

    def apply(self, account_id: str, expected: int, new: int) -> None:
        self.ledger.set_balance(account_id, expected, new)
        self.applied.append(BalanceWrite(account_id, expected, new))

    def rollback(self, original: BaseException) -> None:
        failures: list[BaseException] = []
        for write in reversed(self.applied):
            logger.warning(
                f"compensation: account_id={write.account_id} "
                f"restore={write.previous} from={write.written} cause={original!r}"
            )
            try:
                self.ledger.set_balance(write.account_id, write.written, write.previous)
            except (LedgerError, SQLAlchemyError) as exc:
                failures.append(exc)
                logger.critical(
                    f"compensation_failed: account_id={write.account_id} "
                    f"expected={write.written} restore={write.previous} error={exc!r}"
                )
        self.applied.clear()
        if failures:
            raise CompensationFailed(
                f"Balance rollback failed after: {original}",
                original=original,
                failures=failures,
            ) from original


class BalanceLedger:
    def __init__(self, store: LedgerStore, user_id: str) -> None:
        self.store = store
        self.user_id = user_id

    def load_account(self, account_id: str) -> Row:
        account = self.store.get(
            ACCOUNTS_TABLE, {"id": account_id, "user_id": self.user_id}
        )
        if not account:
            raise NotFound("Account not found")
        return account

    def set_balance(self, account_id: str, expected: int, new: int) -> Row:
        updated = self.store.update(
            ACCOUNTS_TABLE,
            {"id": account_id, "user_id": self.user_id},
            {"balance": int(new)},
            expected={"balance": int(expected)},
        )
        if updated is None:
            if not self.store.get(
                ACCOUNTS_TABLE, {"id": account_id, "user_id": self.user_id}
            ):
                raise NotFound("Account not found")
            raise ConcurrentModification(
                "Account balance changed concurrently, retry the operation"
            )
        logger.info(
            f"balance_update: account_id={account_id} expected={expected} new={new}"
        )
        return updated

    @contextmanager
    def saga(self) -> Iterator[BalanceSaga]:
        saga = BalanceSaga(self)
        try:
            yield saga
        except Exception as exc:
            saga.rollback(exc)
            raise
