import os
import tempfile

os.environ.setdefault("FINANCE_DATA_DIR", tempfile.mkdtemp(prefix="finance-tests-"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from database import build_engine, init_db  # noqa: E402


@pytest.fixture()
def api_engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def client(api_engine):
    from main import app, get_db

    TestingSession = sessionmaker(
        bind=api_engine, autoflush=False, expire_on_commit=False
    )

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
