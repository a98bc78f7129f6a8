import datetime as dt
from typing import ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, BudgetPeriod, TransactionType
from periods import utc_now


MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
HEX_COLOR_PATTERN = r"^#([0-9A-Fa-f]{6})$"


def _today() -> dt.date:
    return utc_now().date()


class PatchModel(BaseModel):
    """Partial update: only fields the caller actually sent are applied."""

    model_config = ConfigDict(extra="forbid")
    nullable_fields: ClassVar[frozenset[str]] = frozenset()

    def changes(self) -> dict[str, object]:
        return self.model_dump(exclude_unset=True)

    @model_validator(mode="after")
    def require_any_field(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self

    @model_validator(mode="after")
    def reject_nulls(self):
        for name in sorted(self.model_fields_set - self.nullable_fields):
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance: int = Field(default=0, ge=0)
    bank_name: Optional[str] = Field(default=None, max_length=100)


class AccountPatch(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"bank_name"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    balance: Optional[int] = Field(default=None, ge=0)
    bank_name: Optional[str] = Field(default=None, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    type: TransactionType
    color: str = Field(..., pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, max_length=50)


class CategoryPatch(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"icon"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class TransactionIn(BaseModel):
    account_id: str
    category_id: str
    type: TransactionType
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=255)
    date: dt.date = Field(default_factory=_today)


class TransactionPatch(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"description"})

    category_id: Optional[str] = None
    type: Optional[TransactionType] = None
    amount: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=255)
    date: Optional[dt.date] = None


class TransactionQuery(BaseModel):
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    date_from: Optional[dt.date] = None
    date_to: Optional[dt.date] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must be less than or equal to date_to")
        return self


class BudgetIn(BaseModel):
    category_id: str
    amount: int = Field(..., gt=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    month: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)
    period_start: Optional[dt.date] = None
    period_end: Optional[dt.date] = None

    @model_validator(mode="after")
    def require_period(self):
        if not self.month and not (self.period_start and self.period_end):
            raise ValueError("Provide month or period_start/period_end")
        return self


class BudgetPatch(PatchModel):
    amount: Optional[int] = Field(default=None, gt=0)
    period: Optional[BudgetPeriod] = None
    month: Optional[str] = Field(default=None, pattern=MONTH_PATTERN)
    period_start: Optional[dt.date] = None
    period_end: Optional[dt.date] = None

    @model_validator(mode="after")
    def range_together(self):
        if bool(self.period_start) != bool(self.period_end):
            raise ValueError("period_start and period_end must be provided together")
        return self


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1)
    account_id: Optional[str] = None
    target_amount: int = Field(..., gt=0)
    start_date: Optional[dt.date] = None
    target_date: Optional[dt.date] = None
    frequency: str = Field(default="monthly", min_length=1)
    description: Optional[str] = Field(default=None, max_length=255)
    status: Literal["active", "paused"] = "active"


class GoalPatch(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"description", "target_date"})

    name: Optional[str] = Field(default=None, min_length=1)
    target_amount: Optional[int] = Field(default=None, gt=0)
    target_date: Optional[dt.date] = None
    frequency: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, max_length=255)
    status: Optional[Literal["active", "paused"]] = None


class ContributionIn(BaseModel):
    account_id: str
    amount: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=255)
    date: Optional[dt.date] = None


class ContributionPatch(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"description"})

    account_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, max_length=255)
    date: Optional[dt.date] = None
