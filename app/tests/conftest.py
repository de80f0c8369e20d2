import os
import tempfile

_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import subprocess
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

# sqlite by default; point TEST_DATABASE_URL at Postgres to run against migrations.
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "email_automation_test.db"),
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from app import database  # noqa: E402
from app import models  # noqa: E402,F401
from app.services import engine as engine_wiring  # noqa: E402
from app.tests.support import Harness, build_harness  # noqa: E402

def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    database.configure_database()

    if make_url(TEST_DATABASE_URL).drivername.startswith("sqlite"):
        database.Base.metadata.drop_all(database.engine)
        database.Base.metadata.create_all(database.engine)
        return

    _ensure_database_exists(TEST_DATABASE_URL)

    env = os.environ.copy()
    env["DATABASE_URL"] = TEST_DATABASE_URL

    subprocess.run(
        ["alembic", "upgrade", "head"],
        check=True,
        cwd=Path(__file__).resolve().parents[2],
        env=env,
    )


def _clear_tables() -> None:
    with database.engine.begin() as conn:
        for table in reversed(database.Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    _clear_tables()
    yield
    _clear_tables()
    engine_wiring.set_coordinator(None)
    engine_wiring.set_analytics_sink(None)



@pytest.fixture
def harness() -> Harness:
    h = build_harness()
    engine_wiring.set_coordinator(h.coordinator)
    engine_wiring.set_analytics_sink(h.sink)
    return h
