from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import GoalType, TransactionType

# integer cents must fit a signed 64-bit column
MAX_AMOUNT = Decimal("999999999999.99")


class TransactionIn(BaseModel):
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    note: str = Field(default="", max_length=500)
    created_at: Optional[datetime] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: TransactionType
    category: str
    amount: Decimal
    note: str
    created_at: datetime


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class CategoryOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    type: TransactionType
    created_at: datetime


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT, decimal_places=2)


class BudgetOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    category: str
    amount: Decimal
    created_at: datetime


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: GoalType
    target_amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    current_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    deadline: Optional[date] = None

    @model_validator(mode="after")
    def _current_within_target(self) -> "GoalIn":
        if self.current_amount > self.target_amount:
            raise ValueError("Current amount cannot exceed the target amount")
        return self


class GoalOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    type: GoalType
    target_amount: Decimal
    current_amount: Decimal
    deadline: Optional[date]
    created_at: datetime


class QuickAddIn(BaseModel):
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)


class SessionIn(BaseModel):
    credential: str = Field(..., min_length=1)


class Totals(BaseModel):
    income: Decimal = Decimal("0")
    expense: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")


class BudgetStatus(BaseModel):
    budget_id: int
    category: str
    amount: Decimal
    spent: Decimal
    percentage: float
    status: Literal["nominal", "warning", "over_budget"]
    overage: Decimal = Decimal("0")


class CategoryShare(BaseModel):
    category: str
    amount: Decimal
    percentage: float


class DailyPoint(BaseModel):
    day: date
    income: Decimal = Decimal("0")
    expense: Decimal = Decimal("0")


class Dashboard(BaseModel):
    window: str
    type_filter: str
    totals: Totals
    budgets: list[BudgetStatus]
    transactions: list[TransactionOut]


class SlipGuess(BaseModel):
    type: TransactionType
    category: str
    amount: Decimal
    note: str = ""


class TopExpenseCategory(BaseModel):
    category: str
    amount: Decimal
    percentage: float


class MonthlyTotals(BaseModel):
    income: Decimal = Decimal("0")
    expense: Decimal = Decimal("0")


class SpendingSummary(BaseModel):
    summary: str
    top_expense_categories: list[TopExpenseCategory] = Field(default_factory=list)
    savings_suggestions: list[str] = Field(default_factory=list)
    monthly_totals: MonthlyTotals = Field(default_factory=MonthlyTotals)
