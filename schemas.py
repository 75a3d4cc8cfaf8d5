from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    CounterpartyType,
    ExpenseCategory,
    Frequency,
    PaymentMethod,
    TransactionType,
)

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


def _strip_text(value):
    # Runs before length checks so whitespace-only input fails min_length.
    return value.strip() if isinstance(value, str) else value


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=6, max_length=200)


class UserLogin(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    username: str


class AuthOut(BaseModel):
    token: Optional[str] = None
    user: UserOut


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., ge=0)
    date: datetime
    category: str = Field(..., min_length=1, max_length=100)
    payment_method: PaymentMethod
    type: TransactionType = TransactionType.expense
    from_party: Optional[str] = Field(default=None, max_length=200)
    to_party: Optional[str] = Field(default=None, max_length=200)
    counterparty_ref: Optional[str] = Field(default=None, max_length=100)
    counterparty_type: Optional[CounterpartyType] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    recurring: bool = False
    frequency: Optional[Frequency] = None

    _strip = field_validator(
        "category", "from_party", "to_party", "notes", mode="before"
    )(_strip_text)


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0)
    date: Optional[datetime] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    payment_method: Optional[PaymentMethod] = None
    type: Optional[TransactionType] = None
    from_party: Optional[str] = Field(default=None, max_length=200)
    to_party: Optional[str] = Field(default=None, max_length=200)
    counterparty_ref: Optional[str] = Field(default=None, max_length=100)
    counterparty_type: Optional[CounterpartyType] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None
    recurring: Optional[bool] = None
    frequency: Optional[Frequency] = None

    _strip = field_validator(
        "category", "from_party", "to_party", "notes", mode="before"
    )(_strip_text)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    amount_cents: int
    date: datetime
    category: str
    payment_method: PaymentMethod
    type: Optional[TransactionType]
    from_party: Optional[str]
    to_party: Optional[str]
    counterparty_ref: Optional[str]
    counterparty_type: Optional[CounterpartyType]
    notes: Optional[str]
    tags: list[str] = Field(default_factory=list)
    recurring: bool
    frequency: Optional[Frequency]
    created_at: datetime
    updated_at: datetime

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_names(cls, value):
        return [getattr(tag, "name", tag) for tag in value or []]


class ExpenseIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int = Field(..., ge=0)
    category: ExpenseCategory
    date: datetime
    payment_method: PaymentMethod
    notes: Optional[str] = None


class ExpenseUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = Field(default=None, ge=0)
    category: Optional[ExpenseCategory] = None
    date: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    amount_cents: int
    category: ExpenseCategory
    date: datetime
    payment_method: PaymentMethod
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool


class TransactionPage(BaseModel):
    transactions: list[TransactionOut]
    pagination: Pagination


class ExpensePage(BaseModel):
    expenses: list[ExpenseOut]
    pagination: Pagination


class BudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=100)
    limit_amount_cents: int = Field(..., ge=0)
    month: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")

    _strip = field_validator("category", mode="before")(_strip_text)


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    category: str
    month: str
    year: int
    limit_amount_cents: Optional[int]
    current_spent_cents: int


class BudgetAlert(BaseModel):
    category: str
    percentage: int
    spent_cents: int
    limit_cents: int
    severity: Literal["high", "medium"]


class MonthlyPoint(BaseModel):
    month: str
    key: str
    expenses_cents: int
    income_cents: int
    net_cents: int
    # Same as expenses_cents; kept for older dashboard clients.
    amount_cents: int


class DashboardStats(BaseModel):
    total_spent_cents: int
    total_income_cents: int
    net_amount_cents: int
    savings_rate: float

    top_expense_category: str
    top_income_category: str
    expense_category_data: dict[str, int]
    income_category_data: dict[str, int]

    top_payment_methods: list[str]
    payment_method_data: dict[str, int]

    monthly_data: list[MonthlyPoint]

    total_transactions: int
    expense_count: int
    income_count: int
    avg_expense_cents: float
    avg_income_cents: float

    top_category: str
    category_data: dict[str, int]


class ExpenseMonthlyPoint(BaseModel):
    month: str
    key: str
    amount_cents: int


class ExpenseDashboardStats(BaseModel):
    total_spent_cents: int
    top_category: str
    top_payment_methods: list[str]
    category_data: dict[str, int]
    monthly_data: list[ExpenseMonthlyPoint]


class MonthlyReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    month: int
    total_spent_cents: int
    top_category: Optional[str]
    overbudget_categories: list[str]
    category_breakdown: dict[str, int]
    payment_method_stats: dict[str, int]


class UserSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_lifetime_spent_cents: int
    most_used_category: Optional[str]
    most_used_payment_method: Optional[str]
    last_updated: datetime


class ReportsOut(BaseModel):
    reports: list[MonthlyReportOut]
    summary: Optional[UserSummaryOut] = None
