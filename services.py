from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date, datetime
from typing import Optional

from sqlalchemy import Select, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from auth import hash_password, verify_password
from models import (
    Budget,
    Expense,
    MonthlyReport,
    Tag,
    Transaction,
    TransactionType,
    User,
    UserSummary,
)
from periods import (
    Period,
    as_local_naive,
    month_key,
    month_label,
    month_period,
    parse_month_key,
    resolve_range,
    trailing_months,
)
from schemas import (
    BudgetAlert,
    BudgetIn,
    ExpenseIn,
    ExpenseUpdate,
    Pagination,
    TransactionIn,
    TransactionUpdate,
    UserCreate,
)
from stats import (
    average_cents,
    budget_percentage,
    category_totals,
    payment_method_counts,
    ranked_keys,
    savings_rate,
    split_by_type,
    summarize,
    top_key,
    total_cents,
)

logger = logging.getLogger(__name__)

ALERT_THRESHOLD_PERCENT = 80
HISTORY_MONTHS = 6
TOP_PAYMENT_METHODS = 5
RECENT_LIMIT = 100


class NotFoundError(ValueError):
    pass


class InvalidCredentials(ValueError):
    pass


class BudgetUpdateError(RuntimeError):
    """The record was stored but its budget counter could not be incremented."""


def _upsert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Atomic budget upserts are not supported on {dialect}")


def _paginate(
    session: Session, stmt: Select, count_stmt: Select, page: int, limit: int
) -> tuple[list, Pagination]:
    total = int(session.execute(count_stmt).scalar_one() or 0)
    items = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
    total_pages = math.ceil(total / limit) if total else 0
    return list(items), Pagination(
        current_page=page,
        total_pages=total_pages,
        total_items=total,
        items_per_page=limit,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: UserCreate) -> User:
        email = data.email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise ValueError("User already exists")
        user = User(
            email=email,
            username=data.username.strip(),
            password_hash=hash_password(data.password),
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )
        if not user or not verify_password(password, user.password_hash):
            raise InvalidCredentials("Invalid credentials")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user


class TagService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get_or_create(self, name: str) -> Tag:
        clean = name.strip()
        if not clean:
            raise ValueError("Tag name cannot be empty")
        existing = self.session.scalar(
            select(Tag).where(
                Tag.user_id == self.user_id,
                func.lower(Tag.name) == clean.lower(),
            )
        )
        if existing:
            return existing
        tag = Tag(user_id=self.user_id, name=clean)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: list[str]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for name in names:
            if not name.strip():
                continue
            tag = self.get_or_create(name)
            if tag.id not in seen:
                tags.append(tag)
                seen.add(tag.id)
        return tags


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def apply_transaction(
        self, category: str, month: str, year: int, amount_cents: int
    ) -> None:
        """Add ``amount_cents`` to the (user, category, month) budget, creating it at zero."""
        now = datetime.utcnow()
        try:
            insert = _upsert_for(self.session)
            stmt = insert(Budget).values(
                user_id=self.user_id,
                category=category,
                month=month,
                year=year,
                current_spent_cents=amount_cents,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "category", "month"],
                set_={
                    "current_spent_cents": Budget.current_spent_cents
                    + stmt.excluded.current_spent_cents,
                    "year": stmt.excluded.year,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            self.session.execute(stmt)
            self.session.commit()
        except (SQLAlchemyError, NotImplementedError) as exc:
            self.session.rollback()
            logger.exception(
                "budget_update_failed: user_id=%s category=%s month=%s amount_cents=%s",
                self.user_id,
                category,
                month,
                amount_cents,
            )
            raise BudgetUpdateError("Failed to update budget") from exc

    def apply_record(self, record: Transaction | Expense) -> None:
        category = getattr(record.category, "value", record.category)
        self.apply_transaction(
            str(category),
            month_key(record.date),
            record.date.year,
            record.amount_cents,
        )

    def get(self, category: str, month: str) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category == category,
                Budget.month == month,
            )
            .execution_options(populate_existing=True)
        )

    def list_for_month(self, month: str) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id, Budget.month == month)
            .order_by(Budget.category.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def set_limit(self, data: BudgetIn, month: str) -> Budget:
        year, _ = parse_month_key(month)
        insert = _upsert_for(self.session)
        now = datetime.utcnow()
        stmt = insert(Budget).values(
            user_id=self.user_id,
            category=data.category,
            month=month,
            year=year,
            limit_amount_cents=data.limit_amount_cents,
            current_spent_cents=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "category", "month"],
            set_={
                "limit_amount_cents": stmt.excluded.limit_amount_cents,
                "year": stmt.excluded.year,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.session.execute(stmt)
        self.session.commit()
        budget = self.get(data.category, month)
        if budget is None:
            raise NotFoundError("Budget not found")
        return budget

    def alerts_for_month(self, month: str) -> list[BudgetAlert]:
        alerts: list[BudgetAlert] = []
        for budget in self.list_for_month(month):
            limit = budget.limit_amount_cents
            if not limit:
                continue
            percentage = budget_percentage(budget.current_spent_cents, limit)
            if percentage < ALERT_THRESHOLD_PERCENT:
                continue
            alerts.append(
                BudgetAlert(
                    category=budget.category,
                    percentage=percentage,
                    spent_cents=budget.current_spent_cents,
                    limit_cents=limit,
                    severity="high"
                    if budget.current_spent_cents >= limit
                    else "medium",
                )
            )
        alerts.sort(key=lambda alert: (-alert.percentage, alert.category))
        return alerts


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base(self) -> Select:
        return (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.user_id == self.user_id)
        )

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            date=as_local_naive(data.date),
            category=data.category,
            payment_method=data.payment_method,
            type=data.type,
            from_party=data.from_party,
            to_party=data.to_party,
            counterparty_ref=data.counterparty_ref,
            counterparty_type=data.counterparty_type,
            notes=data.notes,
            recurring=data.recurring,
            frequency=data.frequency,
        )
        if data.tags:
            txn.tags = TagService(self.session, self.user_id).resolve(data.tags)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)

        # The transaction stays stored even if the budget counter cannot be bumped.
        BudgetService(self.session, self.user_id).apply_record(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(self._base().where(Transaction.id == transaction_id))
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def recent(self, limit: int = RECENT_LIMIT) -> list[Transaction]:
        stmt = self._base().order_by(Transaction.date.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def page(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> tuple[list[Transaction], Pagination]:
        lower, upper = resolve_range(start, end)
        conditions = [Transaction.user_id == self.user_id]
        if lower is not None:
            conditions.append(Transaction.date >= lower)
        if upper is not None:
            conditions.append(Transaction.date < upper)
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(*conditions)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
        )
        count_stmt = select(func.count(Transaction.id)).where(*conditions)
        return _paginate(self.session, stmt, count_stmt, page, limit)

    def for_period(self, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date >= period.start,
                Transaction.date < period.end,
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        # Budget counters are not adjusted here; edits can leave them out of step.
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        tags = changes.pop("tags", None)
        for field, value in changes.items():
            if field == "date" and value is not None:
                value = as_local_naive(value)
            if value is None and field in {
                "amount_cents",
                "date",
                "category",
                "payment_method",
                "type",
                "recurring",
            }:
                raise ValueError(f"{field} cannot be empty")
            setattr(txn, field, value)
        if tags is not None:
            txn.tags = TagService(self.session, self.user_id).resolve(tags)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _base(self) -> Select:
        return select(Expense).where(Expense.user_id == self.user_id)

    def create(self, data: ExpenseIn) -> Expense:
        expense = Expense(
            user_id=self.user_id,
            amount_cents=data.amount_cents,
            category=data.category,
            date=as_local_naive(data.date),
            payment_method=data.payment_method,
            notes=data.notes.strip() if data.notes else data.notes,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)

        BudgetService(self.session, self.user_id).apply_record(expense)
        return expense

    def get(self, expense_id: int) -> Expense:
        expense = self.session.scalar(self._base().where(Expense.id == expense_id))
        if not expense:
            raise NotFoundError("Expense not found")
        return expense

    def recent(self, limit: int = RECENT_LIMIT) -> list[Expense]:
        stmt = self._base().order_by(Expense.date.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def page(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> tuple[list[Expense], Pagination]:
        lower, upper = resolve_range(start, end)
        conditions = [Expense.user_id == self.user_id]
        if lower is not None:
            conditions.append(Expense.date >= lower)
        if upper is not None:
            conditions.append(Expense.date < upper)
        stmt = (
            select(Expense)
            .where(*conditions)
            .order_by(Expense.date.desc(), Expense.created_at.desc(), Expense.id.desc())
        )
        count_stmt = select(func.count(Expense.id)).where(*conditions)
        return _paginate(self.session, stmt, count_stmt, page, limit)

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            if value is None and field != "notes":
                raise ValueError(f"{field} cannot be empty")
            if field == "date":
                value = as_local_naive(value)
            setattr(expense, field, value)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()

    def for_period(self, period: Period) -> list[Expense]:
        stmt = (
            self._base()
            .where(Expense.date >= period.start, Expense.date < period.end)
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def dashboard_for(self, as_of: date) -> dict[str, object]:
        current = self.for_period(month_period(as_of.year, as_of.month))
        categories = category_totals(current)
        monthly: list[dict[str, object]] = []
        for first in trailing_months(as_of, HISTORY_MONTHS):
            records = self.for_period(month_period(first.year, first.month))
            monthly.append(
                {
                    "month": month_label(first),
                    "key": month_key(first),
                    "amount_cents": total_cents(records),
                }
            )
        return {
            "total_spent_cents": total_cents(current),
            "top_category": top_key(categories),
            "top_payment_methods": ranked_keys(payment_method_counts(current)),
            "category_data": categories,
            "monthly_data": monthly,
        }


class DashboardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.transactions = TransactionService(session, user_id)

    def monthly_series(self, as_of: date) -> list[dict[str, object]]:
        out: list[dict[str, object]] = []
        for first in trailing_months(as_of, HISTORY_MONTHS):
            period = month_period(first.year, first.month)
            summary = summarize(self.transactions.for_period(period))
            out.append(
                {
                    "month": month_label(first),
                    "key": month_key(first),
                    "expenses_cents": summary.expense_cents,
                    "income_cents": summary.income_cents,
                    "net_cents": summary.net_cents,
                    "amount_cents": summary.expense_cents,
                }
            )
        return out

    def dashboard_for(self, as_of: date) -> dict[str, object]:
        period = month_period(as_of.year, as_of.month)
        summary = summarize(self.transactions.for_period(period))
        top_expense = top_key(summary.expense_categories)
        return {
            "total_spent_cents": summary.expense_cents,
            "total_income_cents": summary.income_cents,
            "net_amount_cents": summary.net_cents,
            "savings_rate": savings_rate(summary.income_cents, summary.expense_cents),
            "top_expense_category": top_expense,
            "top_income_category": top_key(summary.income_categories),
            "expense_category_data": summary.expense_categories,
            "income_category_data": summary.income_categories,
            "top_payment_methods": ranked_keys(
                summary.payment_methods, TOP_PAYMENT_METHODS
            ),
            "payment_method_data": summary.payment_methods,
            "monthly_data": self.monthly_series(as_of),
            "total_transactions": summary.transaction_count,
            "expense_count": summary.expense_count,
            "income_count": summary.income_count,
            "avg_expense_cents": average_cents(
                summary.expense_cents, summary.expense_count
            ),
            "avg_income_cents": average_cents(
                summary.income_cents, summary.income_count
            ),
            "top_category": top_expense,
            "category_data": summary.expense_categories,
        }


class ReportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def recompute_monthly_report(self, year: int, month: int) -> Optional[MonthlyReport]:
        period = month_period(year, month)
        records = TransactionService(self.session, self.user_id).for_period(period)
        expenses, _income = split_by_type(records)

        report = self.session.scalar(
            select(MonthlyReport).where(
                MonthlyReport.user_id == self.user_id,
                MonthlyReport.year == year,
                MonthlyReport.month == month,
            )
        )
        if not records:
            if report:
                self.session.delete(report)
            return None

        breakdown = category_totals(expenses)
        overbudget = [
            budget.category
            for budget in BudgetService(self.session, self.user_id).list_for_month(
                period.slug
            )
            if budget.limit_amount_cents
            and budget.current_spent_cents > budget.limit_amount_cents
        ]
        if not report:
            report = MonthlyReport(user_id=self.user_id, year=year, month=month)
            self.session.add(report)
        report.total_spent_cents = total_cents(expenses)
        report.top_category = top_key(breakdown) or None
        report.overbudget_categories = overbudget
        report.category_breakdown = breakdown
        report.payment_method_stats = payment_method_counts(records)
        self.session.flush()
        return report

    def refresh_user_summary(self) -> UserSummary:
        rows = self.session.execute(
            select(
                Transaction.amount_cents,
                Transaction.category,
                Transaction.payment_method,
            ).where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.type == TransactionType.expense,
                    Transaction.type.is_(None),
                ),
            )
        ).all()
        categories = Counter(row.category for row in rows)
        methods = Counter(row.payment_method.value for row in rows)

        summary = self.session.scalar(
            select(UserSummary).where(UserSummary.user_id == self.user_id)
        )
        if not summary:
            summary = UserSummary(user_id=self.user_id)
            self.session.add(summary)
        summary.total_lifetime_spent_cents = sum(row.amount_cents for row in rows)
        summary.most_used_category = top_key(dict(categories)) or None
        summary.most_used_payment_method = top_key(dict(methods)) or None
        summary.last_updated = datetime.utcnow()
        self.session.flush()
        return summary

    def rebuild(self, months: list[date]) -> int:
        rebuilt = 0
        for first in months:
            if self.recompute_monthly_report(first.year, first.month):
                rebuilt += 1
        self.refresh_user_summary()
        self.session.commit()
        return rebuilt

    def rebuild_all(self) -> int:
        self.session.execute(
            delete(MonthlyReport).where(MonthlyReport.user_id == self.user_id)
        )
        self.session.flush()

        dates = self.session.scalars(
            select(Transaction.date).where(Transaction.user_id == self.user_id)
        ).all()
        months = sorted({d.date().replace(day=1) for d in dates})
        rebuilt = self.rebuild(months)
        logger.info("reports_rebuilt: user_id=%s months=%s", self.user_id, rebuilt)
        return rebuilt

    def list_reports(self) -> list[MonthlyReport]:
        stmt = (
            select(MonthlyReport)
            .where(MonthlyReport.user_id == self.user_id)
            .order_by(MonthlyReport.year.desc(), MonthlyReport.month.desc())
        )
        return list(self.session.scalars(stmt).all())

    def summary(self) -> Optional[UserSummary]:
        return self.session.scalar(
            select(UserSummary).where(UserSummary.user_id == self.user_id)
        )


def rebuild_reports_for_all_users(session: Session, months: list[date]) -> int:
    user_ids = session.scalars(select(User.id).order_by(User.id)).all()
    total = 0
    for user_id in user_ids:
        total += ReportService(session, user_id).rebuild(months)
    return total

