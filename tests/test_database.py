import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import build_engine, init_db
from models import Transaction, TransactionType


def test_sqlite_engine_enforces_foreign_keys(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'fk.db'}")
    init_db(engine)

    with engine.connect() as conn:
        assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1

    with Session(engine) as session:
        session.add(
            Transaction(
                user_id="ghost",
                description="orphan",
                category_id="missing",
                amount=1.0,
                type=TransactionType.expense,
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()


def test_init_db_creates_every_table(tmp_path) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'tables.db'}")
    init_db(engine)

    tables = set(inspect(engine).get_table_names())
    assert {"users", "categories", "transactions", "user_settings"} <= tables
