from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class PaymentMethod(str, Enum):
    upi = "UPI"
    credit_card = "Credit Card"
    debit_card = "Debit Card"
    cash = "Cash"
    net_banking = "Net Banking"


class ExpenseCategory(str, Enum):
    food = "Food"
    rent = "Rent"
    shopping = "Shopping"
    transport = "Transport"
    entertainment = "Entertainment"
    healthcare = "Healthcare"
    other = "Other"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class CounterpartyType(str, Enum):
    individual = "individual"
    business = "business"


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


PAYMENT_METHOD_ENUM = _value_enum(PaymentMethod, "paymentmethod")
EXPENSE_CATEGORY_ENUM = _value_enum(ExpenseCategory, "expensecategory")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    ),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False
    )
    # NULL marks records written before income tracking existed; read as expense.
    type: Mapped[Optional[TransactionType]] = mapped_column(
        SAEnum(TransactionType), default=TransactionType.expense
    )
    from_party: Mapped[Optional[str]] = mapped_column(String(200))
    to_party: Mapped[Optional[str]] = mapped_column(String(200))
    counterparty_ref: Mapped[Optional[str]] = mapped_column(String(100))
    counterparty_type: Mapped[Optional[CounterpartyType]] = mapped_column(
        SAEnum(CounterpartyType)
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    frequency: Mapped[Optional[Frequency]] = mapped_column(SAEnum(Frequency))

    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category", "user_id", "category"),
        Index("ix_transactions_user_type", "user_id", "type"),
        Index("ix_transactions_recurring", "recurring"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[ExpenseCategory] = mapped_column(
        EXPENSE_CATEGORY_ENUM, nullable=False
    )
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_expenses_user_date", "user_id", "date"),
        Index("ix_expenses_user_category", "user_id", "category"),
        CheckConstraint("amount_cents >= 0", name="ck_expenses_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    current_spent_cents: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category", "month", name="uq_budget_user_category_month"
        ),
        Index("ix_budget_user_month", "user_id", "month"),
        CheckConstraint(
            "limit_amount_cents IS NULL OR limit_amount_cents >= 0",
            name="ck_budget_limit_positive",
        ),
        CheckConstraint(
            "current_spent_cents >= 0", name="ck_budget_current_spent_positive"
        ),
    )


class MonthlyReport(Base, TimestampMixin):
    __tablename__ = "monthly_reports"
    __table_args__ = (
        UniqueConstraint("user_id", "year", "month", name="uq_report_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top_category: Mapped[Optional[str]] = mapped_column(String(100))
    overbudget_categories: Mapped[list] = mapped_column(JSON, default=list)
    category_breakdown: Mapped[dict] = mapped_column(JSON, default=dict)
    payment_method_stats: Mapped[dict] = mapped_column(JSON, default=dict)


class UserSummary(Base):
    __tablename__ = "user_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, unique=True
    )
    total_lifetime_spent_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    most_used_category: Mapped[Optional[str]] = mapped_column(String(100))
    most_used_payment_method: Mapped[Optional[str]] = mapped_column(String(100))
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
