import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Budget, ExpenseCategory, PaymentMethod, Transaction, TransactionType
from schemas import BudgetIn, ExpenseIn, TransactionIn, TransactionUpdate
from services import BudgetService, BudgetUpdateError, ExpenseService, TransactionService


def _txn(amount_cents: int, when: datetime, category: str = "Food") -> TransactionIn:
    return TransactionIn(
        amount_cents=amount_cents,
        date=when,
        category=category,
        payment_method=PaymentMethod.upi,
        type=TransactionType.expense,
    )


def test_increments_commute_for_same_budget_key() -> None:
    first = _txn(1_250, datetime(2025, 3, 2, 9, 0))
    second = _txn(4_000, datetime(2025, 3, 28, 18, 30))

    totals = []
    for ordering in ([first, second], [second, first]):
        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(engine)
        with Session(engine) as session:
            txns = TransactionService(session, user_id=1)
            for data in ordering:
                txns.create(data)
            budget = BudgetService(session, user_id=1).get("Food", "2025-03")
            totals.append(budget.current_spent_cents)

    assert totals == [5_250, 5_250]


def test_first_transaction_creates_budget_without_limit() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        TransactionService(session, user_id=7).create(
            _txn(999, datetime(2024, 12, 31, 23, 0), category="Gifts")
        )

        budget = BudgetService(session, user_id=7).get("Gifts", "2024-12")
        assert budget is not None
        assert budget.year == 2024
        assert budget.current_spent_cents == 999
        assert budget.limit_amount_cents is None
        assert BudgetService(session, user_id=7).alerts_for_month("2024-12") == []


def test_budgets_are_keyed_per_user_and_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        TransactionService(session, user_id=1).create(
            _txn(100, datetime(2025, 1, 31, 12, 0))
        )
        TransactionService(session, user_id=1).create(
            _txn(200, datetime(2025, 2, 1, 12, 0))
        )
        TransactionService(session, user_id=2).create(
            _txn(300, datetime(2025, 1, 15, 12, 0))
        )

        assert BudgetService(session, 1).get("Food", "2025-01").current_spent_cents == 100
        assert BudgetService(session, 1).get("Food", "2025-02").current_spent_cents == 200
        assert BudgetService(session, 2).get("Food", "2025-01").current_spent_cents == 300
        assert session.scalar(select(func.count(Budget.id))) == 3


def test_set_limit_keeps_accumulated_spend() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budgets = BudgetService(session, user_id=1)
        TransactionService(session, user_id=1).create(
            _txn(3_000, datetime(2025, 5, 10, 8, 0), category="Rent")
        )

        budget = budgets.set_limit(
            BudgetIn(category="Rent", limit_amount_cents=10_000), "2025-05"
        )
        assert budget.limit_amount_cents == 10_000
        assert budget.current_spent_cents == 3_000

        TransactionService(session, user_id=1).create(
            _txn(2_000, datetime(2025, 5, 20, 8, 0), category="Rent")
        )
        budget = budgets.get("Rent", "2025-05")
        assert budget.limit_amount_cents == 10_000
        assert budget.current_spent_cents == 5_000


def test_set_limit_creates_empty_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = BudgetService(session, user_id=1).set_limit(
            BudgetIn(category="Transport", limit_amount_cents=5_000), "2026-02"
        )
        assert budget.current_spent_cents == 0
        assert budget.year == 2026
        assert budget.month == "2026-02"


def test_expense_records_also_feed_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ExpenseService(session, user_id=1).create(
            ExpenseIn(
                amount_cents=4_500,
                category=ExpenseCategory.healthcare,
                date=datetime(2025, 6, 3, 10, 0),
                payment_method=PaymentMethod.cash,
            )
        )
        budget = BudgetService(session, user_id=1).get("Healthcare", "2025-06")
        assert budget.current_spent_cents == 4_500


def test_editing_a_transaction_leaves_budget_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txns = TransactionService(session, user_id=1)
        txn = txns.create(_txn(1_000, datetime(2025, 4, 1, 12, 0)))
        txns.update(txn.id, TransactionUpdate(amount_cents=2_500))
        txns.delete(txn.id)

        budget = BudgetService(session, user_id=1).get("Food", "2025-04")
        assert budget.current_spent_cents == 1_000


def test_failed_budget_update_keeps_transaction() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Budget.__table__.drop(engine)

    with Session(engine) as session:
        with pytest.raises(BudgetUpdateError):
            TransactionService(session, user_id=1).create(
                _txn(700, datetime(2025, 1, 5, 12, 0))
            )

        stored = session.scalars(select(Transaction)).all()
        assert [t.amount_cents for t in stored] == [700]


def test_unsupported_dialect_is_reported_as_budget_failure(monkeypatch) -> None:
    import services

    def _unsupported(session):
        raise NotImplementedError("Atomic budget upserts are not supported on mssql")

    monkeypatch.setattr(services, "_upsert_for", _unsupported)
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(BudgetUpdateError):
            TransactionService(session, user_id=1).create(
                _txn(250, datetime(2025, 1, 5, 12, 0))
            )

        stored = session.scalars(select(Transaction)).all()
        assert [t.amount_cents for t in stored] == [250]


def test_whitespace_category_is_rejected_before_any_write() -> None:
    with pytest.raises(ValidationError):
        _txn(500, datetime(2025, 1, 5, 12, 0), category="   ")
    with pytest.raises(ValidationError):
        BudgetIn(category="  ", limit_amount_cents=1_000)
    with pytest.raises(ValidationError):
        TransactionUpdate(category=" \t ")

    assert BudgetIn(category=" Rent ", limit_amount_cents=1).category == "Rent"
    assert TransactionUpdate(category=" Rent ").category == "Rent"


def test_concurrent_writers_do_not_lose_increments(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'budgets.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    per_writer = 40
    start = threading.Barrier(2)

    def writer() -> None:
        start.wait()
        with Session(engine) as session:
            budgets = BudgetService(session, user_id=1)
            for _ in range(per_writer):
                budgets.apply_transaction("Food", "2025-03", 2025, 5)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(writer) for _ in range(2)]
        for future in futures:
            future.result()

    with Session(engine) as session:
        budget = BudgetService(session, user_id=1).get("Food", "2025-03")
        assert budget.current_spent_cents == 2 * per_writer * 5
        assert session.scalar(select(func.count(Budget.id))) == 1
    engine.dispose()
