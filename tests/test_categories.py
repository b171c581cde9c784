import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import TransactionType
from schemas import CategoryFields, CategoryIn, TransactionIn
from services import (
    CategoryAmbiguous,
    CategoryService,
    ConflictError,
    ImportService,
    NotFoundError,
    TransactionService,
    transaction_to_dict,
)
from spreadsheets import parse_records


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _category(name, txn_type="EXPENSE", user_id="user_1", **extra) -> CategoryIn:
    return CategoryIn.model_validate(
        {"userId": user_id, "name": name, "type": txn_type, **extra}
    )


def test_create_rejects_duplicate_name_per_type() -> None:
    with _session() as session:
        service = CategoryService(session)
        service.create(_category("Food", color="#AABBCC"))
        service.create(_category("Food", "INCOME"))
        service.create(_category("Food", user_id="user_2"))

        with pytest.raises(ValueError, match="already exists"):
            service.create(_category(" food "))

        assert len(CategoryService(session, "user_1").list_all()) == 2
        expenses = CategoryService(session, "user_1").list_all(TransactionType.expense)
        assert [(c.name, c.color) for c in expenses] == [("Food", "#AABBCC")]


def test_rename_is_visible_on_existing_transactions() -> None:
    with _session() as session:
        txn = TransactionService(session).create(
            TransactionIn.model_validate(
                {
                    "userId": "user_1",
                    "description": "Lunch",
                    "category": "Food",
                    "amount": 9,
                    "type": "EXPENSE",
                }
            )
        )
        CategoryService(session).update(
            txn.category_id,
            CategoryFields.model_validate({"name": "Dining", "type": "EXPENSE"}),
        )

        session.expire_all()
        assert transaction_to_dict(TransactionService(session).get(txn.id))[
            "category"
        ] == "Dining"


def test_in_use_category_cannot_be_deleted_or_retyped() -> None:
    with _session() as session:
        txn = TransactionService(session).create(
            TransactionIn.model_validate(
                {
                    "userId": "user_1",
                    "description": "Bus",
                    "category": "Transport",
                    "amount": 2.5,
                    "type": "EXPENSE",
                }
            )
        )
        service = CategoryService(session)

        with pytest.raises(ConflictError):
            service.delete(txn.category_id)
        with pytest.raises(ConflictError):
            service.update(
                txn.category_id,
                CategoryFields.model_validate({"name": "Transport", "type": "INCOME"}),
            )

        TransactionService(session).delete(txn.id)
        service.delete(txn.category_id)
        with pytest.raises(NotFoundError):
            service.get(txn.category_id)


def test_match_is_exact_then_case_insensitive_then_fuzzy() -> None:
    with _session() as session:
        creator = CategoryService(session)
        groceries = creator.create(_category("Groceries"))
        creator.create(_category("Rent"))

        service = CategoryService(session, "user_1")
        assert service.match("Groceries", TransactionType.expense) is groceries
        assert service.match("GROCERIES", TransactionType.expense) is groceries
        assert service.match("Grocerie", TransactionType.expense) is None
        assert service.match("Grocerie", TransactionType.expense, fuzzy=True) is groceries
        assert service.match("Groceries", TransactionType.income, fuzzy=True) is None
        assert service.match("Utilities", TransactionType.expense, fuzzy=True) is None


def test_fuzzy_match_with_tie_is_ambiguous() -> None:
    with _session() as session:
        creator = CategoryService(session)
        creator.create(_category("Cats"))
        creator.create(_category("Bats"))

        with pytest.raises(CategoryAmbiguous, match="Bats, Cats"):
            CategoryService(session, "user_1").match(
                "Rats", TransactionType.expense, fuzzy=True
            )


def test_import_preview_flags_new_categories_and_commit_creates_them() -> None:
    with _session() as session:
        CategoryService(session).create(_category("Groceries"))
        rows, errors = parse_records(
            [
                {"Description": "Market", "Category": "grocerie", "Amount": "20"},
                {"Description": "Gym", "Category": "Fitness", "Amount": "30"},
            ]
        )
        assert errors == []

        importer = ImportService(session, "user_1")
        preview, preview_errors = importer.preview(rows)
        assert preview_errors == []
        assert [(p["category"], p["newCategory"]) for p in preview] == [
            ("Groceries", False),
            ("Fitness", True),
        ]

        created = importer.commit(rows)
        assert [t.category_name for t in created] == ["Groceries", "Fitness"]
        names = {c.name for c in CategoryService(session, "user_1").list_all()}
        assert names == {"Groceries", "Fitness"}
