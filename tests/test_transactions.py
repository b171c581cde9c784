from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import Category, Transaction, TransactionType
from schemas import TransactionIn, TransactionUpdateIn
from services import (
    ConflictError,
    NotFoundError,
    TransactionFilters,
    TransactionService,
)


def _payload(**overrides) -> TransactionIn:
    data = {
        "userId": "user_1",
        "description": "Groceries",
        "category": "Food",
        "amount": "42.5",
        "type": "expense",
    }
    data.update(overrides)
    return TransactionIn.model_validate(data)


def test_create_returns_record_with_parsed_amount_and_generated_id() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        txn = TransactionService(session).create(_payload())

        assert txn.id
        assert txn.amount == 42.5
        assert txn.type == TransactionType.expense
        assert txn.description == "Groceries"
        assert txn.category_name == "Food"
        assert txn.version == 1


def test_create_reuses_category_only_on_exact_name_per_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        first = service.create(_payload(category="Food"))
        again = service.create(_payload(category="Food", amount=7))
        lower = service.create(_payload(category="food", amount=3))
        income = service.create(_payload(category="Food", type="INCOME", amount=9))

        assert first.category_id == again.category_id
        assert lower.category_id != first.category_id
        assert lower.category_name == "food"
        assert income.category_id != first.category_id

        names = session.scalars(select(Category.name)).all()
        assert sorted(names) == ["Food", "Food", "food"]


def test_category_name_is_stored_exactly_as_sent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        service.create(_payload(category="Food"))
        padded = service.create(_payload(category=" Food "))

        session.expire_all()
        assert service.get(padded.id).category_name == " Food "


def test_list_is_newest_first_and_filters_by_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        old = service.create(_payload(description="old"))
        new = service.create(_payload(description="new"))
        other = service.create(_payload(userId="user_2", description="other"))
        old.created_at = datetime(2025, 1, 1, 8, 0)
        new.created_at = datetime(2025, 2, 1, 8, 0)
        other.created_at = datetime(2025, 3, 1, 8, 0)
        session.commit()

        mine = service.list(TransactionFilters(user_id="user_1"))
        assert [t.description for t in mine] == ["new", "old"]

        everyone = service.list(TransactionFilters())
        assert [t.description for t in everyone] == ["other", "new", "old"]


def test_update_replaces_all_fields_and_bumps_version() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        txn = service.create(_payload())

        updated = service.update(
            txn.id,
            TransactionUpdateIn.model_validate(
                {
                    "description": "Salary",
                    "category": "Work",
                    "amount": 1500,
                    "type": "Income",
                }
            ),
        )

        assert updated.description == "Salary"
        assert updated.category_name == "Work"
        assert updated.amount == 1500.0
        assert updated.type == TransactionType.income
        assert updated.version == 2


def test_update_missing_transaction_raises_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(NotFoundError, match="Transaction not found"):
            TransactionService(session).update(
                "missing",
                TransactionUpdateIn.model_validate(
                    {
                        "description": "x",
                        "category": "y",
                        "amount": 1,
                        "type": "EXPENSE",
                    }
                ),
            )


def test_update_with_stale_expected_version_conflicts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        txn = service.create(_payload())
        data = TransactionUpdateIn.model_validate(
            {"description": "a", "category": "Food", "amount": 2, "type": "EXPENSE"}
        )
        service.update(txn.id, data)

        with pytest.raises(ConflictError):
            service.update(txn.id, data, expected_version=1)
        with pytest.raises(ConflictError):
            service.delete(txn.id, expected_version=1)


def test_delete_missing_transaction_leaves_rows_untouched() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        service.create(_payload())

        with pytest.raises(NotFoundError):
            service.delete("does-not-exist")

        count = session.scalar(select(func.count(Transaction.id)))
        assert count == 1


def test_delete_removes_row() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = TransactionService(session)
        txn = service.create(_payload())

        service.delete(txn.id)

        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_concurrent_edit_is_detected_by_row_version(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)

    with Session(engine) as setup:
        txn_id = TransactionService(setup).create(_payload()).id

    data = TransactionUpdateIn.model_validate(
        {"description": "edit", "category": "Food", "amount": 5, "type": "EXPENSE"}
    )
    other = TransactionUpdateIn.model_validate(
        {"description": "other", "category": "Food", "amount": 6, "type": "EXPENSE"}
    )
    with Session(engine) as first, Session(engine) as second:
        stale = TransactionService(first).get(txn_id)
        TransactionService(second).update(txn_id, other)

        assert stale.version == 1
        with pytest.raises(ConflictError):
            TransactionService(first).update(txn_id, data)


def test_edit_after_concurrent_delete_reports_not_found(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)

    with Session(engine) as setup:
        txn_id = TransactionService(setup).create(_payload()).id

    with Session(engine) as deleter:
        TransactionService(deleter).delete(txn_id)

    with Session(engine) as editor:
        with pytest.raises(NotFoundError):
            TransactionService(editor).update(
                txn_id,
                TransactionUpdateIn.model_validate(
                    {
                        "description": "late",
                        "category": "Food",
                        "amount": 1,
                        "type": "EXPENSE",
                    }
                ),
            )
