from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import CounterpartyType, Frequency, PaymentMethod, TransactionType
from schemas import TransactionIn, TransactionUpdate
from services import NotFoundError, TransactionService


def _data(when: datetime, amount_cents: int = 1_000, **extra) -> TransactionIn:
    return TransactionIn(
        amount_cents=amount_cents,
        date=when,
        category=extra.pop("category", "Food"),
        payment_method=extra.pop("payment_method", PaymentMethod.cash),
        **extra,
    )


def test_transaction_tag_inputs_are_deduplicated_case_insensitive() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session, user_id=1).create(
            _data(
                datetime(2025, 1, 5, 12, 0),
                tags=["Dining", "dining", " DINING ", ""],
            )
        )

        assert len(txn.tags) == 1
        assert txn.tags[0].name == "Dining"


def test_create_defaults_to_expense_and_keeps_optional_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session, user_id=1).create(
            _data(
                datetime(2025, 1, 5, 12, 0),
                category="  Freelance ",
                to_party="Acme Ltd",
                counterparty_type=CounterpartyType.business,
                recurring=True,
                frequency=Frequency.monthly,
                notes="retainer",
            )
        )

        assert txn.type == TransactionType.expense
        assert txn.category == "Freelance"
        assert txn.to_party == "Acme Ltd"
        assert txn.counterparty_type == CounterpartyType.business
        assert txn.recurring is True
        assert txn.frequency == Frequency.monthly


def test_pagination_sorts_newest_first_and_reports_pages() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session, user_id=1)
        for day in (3, 1, 2):
            service.create(_data(datetime(2025, 1, day, 12, 0), amount_cents=day))

        first, pagination = service.page(page=1, limit=2)
        assert [t.amount_cents for t in first] == [3, 2]
        assert pagination.total_items == 3
        assert pagination.total_pages == 2
        assert pagination.has_next is True
        assert pagination.has_prev is False

        second, pagination = service.page(page=2, limit=2)
        assert [t.amount_cents for t in second] == [1]
        assert pagination.has_next is False
        assert pagination.has_prev is True


def test_end_date_filter_includes_whole_day() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session, user_id=1)
        service.create(_data(datetime(2025, 1, 31, 23, 59), amount_cents=1))
        service.create(_data(datetime(2025, 2, 1, 0, 0), amount_cents=2))
        service.create(_data(datetime(2025, 1, 14, 8, 0), amount_cents=3))

        items, pagination = service.page(
            start=date(2025, 1, 15), end=date(2025, 1, 31), limit=10
        )
        assert [t.amount_cents for t in items] == [1]
        assert pagination.total_items == 1


def test_inverted_date_range_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(ValueError):
            TransactionService(session, user_id=1).page(
                start=date(2025, 2, 1), end=date(2025, 1, 1)
            )


def test_update_is_partial_and_owner_scoped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session, user_id=1).create(
            _data(datetime(2025, 1, 5, 12, 0), tags=["Trip"])
        )

        with pytest.raises(NotFoundError):
            TransactionService(session, user_id=2).update(
                txn.id, TransactionUpdate(amount_cents=1)
            )

        updated = TransactionService(session, user_id=1).update(
            txn.id,
            TransactionUpdate(type=TransactionType.income, tags=["Refund", "trip"]),
        )
        assert updated.type == TransactionType.income
        assert updated.amount_cents == 1_000
        assert sorted(t.name for t in updated.tags) == ["Refund", "Trip"]

        with pytest.raises(ValueError):
            TransactionService(session, user_id=1).update(
                txn.id, TransactionUpdate(category=None)
            )


def test_delete_requires_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session, user_id=1).create(
            _data(datetime(2025, 1, 5, 12, 0))
        )

        with pytest.raises(NotFoundError):
            TransactionService(session, user_id=2).delete(txn.id)

        TransactionService(session, user_id=1).delete(txn.id)
        assert TransactionService(session, user_id=1).recent() == []
