from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from models import TransactionType


class Record(Protocol):
    amount_cents: int
    category: object
    payment_method: object


def _label(value: object) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def is_expense(record: object) -> bool:
    # Records without a type predate income tracking and count as spending.
    txn_type = getattr(record, "type", None)
    return txn_type is None or txn_type == TransactionType.expense


def is_income(record: object) -> bool:
    return getattr(record, "type", None) == TransactionType.income


def split_by_type(records: Iterable[Record]) -> tuple[list[Record], list[Record]]:
    expenses: list[Record] = []
    income: list[Record] = []
    for record in records:
        if is_income(record):
            income.append(record)
        elif is_expense(record):
            expenses.append(record)
    return expenses, income


def total_cents(records: Iterable[Record]) -> int:
    return sum(record.amount_cents for record in records)


def category_totals(records: Iterable[Record]) -> dict[str, int]:
    totals: dict[str, int] = {}
    for record in records:
        key = _label(record.category)
        totals[key] = totals.get(key, 0) + record.amount_cents
    return totals


def payment_method_counts(records: Iterable[Record]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in records:
        key = _label(record.payment_method)
        counts[key] = counts.get(key, 0) + 1
    return counts


def top_key(values: dict[str, int]) -> str:
    """Key with the largest value; ties go to the alphabetically first key."""
    if not values:
        return ""
    return min(values, key=lambda k: (-values[k], k))


def ranked_keys(values: dict[str, int], limit: Optional[int] = None) -> list[str]:
    ranked = sorted(values, key=lambda k: (-values[k], k))
    if limit is not None:
        return ranked[:limit]
    return ranked


def round_half_up(value: Decimal, places: int = 0) -> Decimal:
    exponent = Decimal(1).scaleb(-places)
    return value.quantize(exponent, rounding=ROUND_HALF_UP)


def savings_rate(income_cents: int, spent_cents: int) -> float:
    if income_cents <= 0:
        return 0.0
    rate = Decimal(income_cents - spent_cents) / Decimal(income_cents) * 100
    return float(round_half_up(rate, 2))


def budget_percentage(spent_cents: int, limit_cents: int) -> int:
    """Whole-number share of ``limit_cents`` used; callers must skip zero limits."""
    ratio = Decimal(spent_cents) / Decimal(limit_cents) * 100
    return int(round_half_up(ratio))


def average_cents(total: int, count: int) -> float:
    if count == 0:
        return 0.0
    return total / count


@dataclass(frozen=True)
class Summary:
    expense_cents: int
    income_cents: int
    expense_count: int
    income_count: int
    expense_categories: dict[str, int] = field(default_factory=dict)
    income_categories: dict[str, int] = field(default_factory=dict)
    payment_methods: dict[str, int] = field(default_factory=dict)

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents

    @property
    def transaction_count(self) -> int:
        return self.expense_count + self.income_count


def summarize(records: Sequence[Record]) -> Summary:
    expenses, income = split_by_type(records)
    return Summary(
        expense_cents=total_cents(expenses),
        income_cents=total_cents(income),
        expense_count=len(expenses),
        income_count=len(income),
        expense_categories=category_totals(expenses),
        income_categories=category_totals(income),
        payment_methods=payment_method_counts([*expenses, *income]),
    )
