import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AlertLevel, Frequency, TransactionKind, TransactionStatus


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    opening_balance_cents: int = 0


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    balance_cents: int
    is_active: bool


class TransactionIn(BaseModel):
    account_id: int
    to_account_id: Optional[int] = None
    date: date
    kind: TransactionKind
    status: TransactionStatus = TransactionStatus.completed
    amount_cents: int = Field(..., gt=0)
    is_active: bool = True
    category_id: Optional[int] = None
    budget_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)


class TransactionPatch(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    date: Optional[dt.date] = None
    kind: Optional[TransactionKind] = None
    status: Optional[TransactionStatus] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    is_active: Optional[bool] = None
    category_id: Optional[int] = None
    budget_id: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=200)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    to_account_id: Optional[int]
    date: date
    kind: TransactionKind
    status: TransactionStatus
    amount_cents: int
    is_active: bool
    category_id: Optional[int]
    budget_id: Optional[int]
    note: Optional[str]
    recurring_rule_id: Optional[int]
    occurrence_date: Optional[dt.date]


class RecurringRuleIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    kind: TransactionKind = TransactionKind.expense
    amount_cents: int = Field(..., gt=0)
    frequency: Frequency
    start_date: date
    end_date: Optional[date] = None
    account_id: int
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    is_active: bool = True


class RecurringRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str]
    kind: TransactionKind
    amount_cents: int
    frequency: Frequency
    start_date: date
    end_date: Optional[date]
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    is_active: bool
    materialized_through: Optional[date]


class OccurrenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: int
    date: date
    status: TransactionStatus
    transaction_id: Optional[int]


class BudgetIn(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    category_id: Optional[int] = None
    amount_cents: int = Field(..., gt=0)
    alert_threshold: int = Field(default=80, ge=0, le=100)
    is_active: bool = True
    note: Optional[str] = Field(default=None, max_length=200)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    year: int
    month: int
    category_id: Optional[int]
    amount_cents: int
    alert_threshold: int
    is_active: bool
    used_cents: int
    remaining_cents: int
    percentage: int
    usage_stale: bool
    alert_level: Optional[AlertLevel]
    recomputed_at: Optional[datetime]


class BudgetUsageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    used_cents: int
    remaining_cents: int
    percentage: int
