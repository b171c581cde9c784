from typing import Any, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config import get_settings


def build_engine(database_url: str, **kwargs: Any) -> Engine:
    connect_args: dict[str, object] = dict(kwargs.pop("connect_args", {}))
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        connect_args.setdefault("check_same_thread", False)
    eng = create_engine(database_url, connect_args=connect_args, **kwargs)
    if is_sqlite:
        event.listen(eng, "connect", enable_sqlite_pragmas)
    return eng


def enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Optional[Engine] = None) -> None:
    """Create missing tables; migrations remain the source of truth."""
    import models  # noqa: F401

    Base.metadata.create_all(bind or engine)
