from __future__ import annotations

from typing import Optional


class LedgerError(ValueError):
    kind = "ledger_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class NotFound(LedgerError):
    kind = "not_found"
    status_code = 404


class ValidationError(LedgerError):
    kind = "validation_error"
    status_code = 422


class RuleViolation(LedgerError):
    kind = "rule_violation"
    status_code = 422


class TypeMismatch(LedgerError):
    kind = "type_mismatch"
    status_code = 422


class InsufficientBalance(LedgerError):
    kind = "insufficient_balance"
    status_code = 422


class DuplicateBudget(LedgerError):
    kind = "duplicate_budget"
    status_code = 409


class ClosedPeriod(LedgerError):
    kind = "closed_period"
    status_code = 422


class ConcurrentModification(LedgerError):
    kind = "concurrent_modification"
    status_code = 409


class ConstraintViolation(LedgerError):
    kind = "constraint_violation"
    status_code = 409


class SchemaError(LedgerError):
    kind = "schema_error"
    status_code = 500


class CompensationFailed(LedgerError):
    """A rollback step of a balance saga failed after the operation itself failed.

    The account balance and the domain rows may now disagree; ``original`` is
    the error that triggered the rollback.
    """

    kind = "compensation_failed"
    status_code = 500

    def __init__(
        self,
        message: str,
        original: Optional[BaseException] = None,
        failures: Optional[list[BaseException]] = None,
    ) -> None:
        super().__init__(message)
        self.original = original
        self.failures = failures or []
