from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from models import AccountType, BudgetType, RecurrenceFrequency, TransactionType


class GroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class UserIn(BaseModel):
    group_id: int
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=200)


class DefaultAccountIn(BaseModel):
    account_id: int


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    user_ids: list[int] = Field(..., min_length=1)
    balance_cents: int = 0


class CategoryIn(BaseModel):
    key: str = Field(..., min_length=1, max_length=60)
    label: str = Field(..., min_length=1, max_length=100)
    color: str = Field(default="#6B7280", max_length=7)
    icon: str = Field(default="default", min_length=1, max_length=60)


class TransactionIn(BaseModel):
    account_id: int
    to_account_id: Optional[int] = None
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=60)
    description: str = Field(..., min_length=1, max_length=200)
    date: date

    @field_validator("category", "description")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @model_validator(mode="after")
    def _check_accounts(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            if self.to_account_id is None:
                raise ValueError("Destination account is required for transfers")
            if self.to_account_id == self.account_id:
                raise ValueError("Source and destination accounts must be different")
        elif self.to_account_id is not None:
            raise ValueError("Only transfers can have a destination account")
        return self


class BudgetIn(BaseModel):
    description: str = Field(..., min_length=2, max_length=120)
    amount_cents: int = Field(..., gt=0)
    type: BudgetType
    categories: list[str] = Field(..., min_length=1)

    @field_validator("categories")
    @classmethod
    def _dedupe_categories(cls, value: list[str]) -> list[str]:
        seen: list[str] = []
        for item in value:
            clean = item.strip()
            if clean and clean not in seen:
                seen.append(clean)
        if not seen:
            raise ValueError("At least one category is required")
        return seen


class BudgetPeriodStartIn(BaseModel):
    start_date: date


class BudgetPeriodCloseIn(BaseModel):
    end_date: date


class RecurringSeriesIn(BaseModel):
    account_id: int
    to_account_id: Optional[int] = None
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category: str = Field(..., min_length=1, max_length=60)
    description: str = Field(..., min_length=1, max_length=200)
    frequency: RecurrenceFrequency
    due_day: int = Field(default=1, ge=1, le=31)
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True

    @model_validator(mode="after")
    def _check(self) -> "RecurringSeriesIn":
        if self.frequency in (
            RecurrenceFrequency.weekly,
            RecurrenceFrequency.biweekly,
        ) and self.due_day > 7:
            raise ValueError("Weekly series need a weekday between 1 and 7")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must be on or after start date")
        if self.type == TransactionType.transfer:
            if self.to_account_id is None or self.to_account_id == self.account_id:
                raise ValueError("Transfers need a distinct destination account")
        elif self.to_account_id is not None:
            raise ValueError("Only transfers can have a destination account")
        return self


class InvestmentIn(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    amount_cents: int = Field(..., gt=0)
    shares_acquired: Decimal = Field(..., gt=0)
    purchased_on: date

