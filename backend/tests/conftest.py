"""Test configuration and fixtures."""

import os
import tempfile

import pytest

# Point the app at a throwaway SQLite file BEFORE sealguard.config is imported.
_TEST_DB = os.path.join(tempfile.gettempdir(), f"sealguard_test_{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB}"
os.environ["LOG_LEVEL"] = "WARNING"

from sealguard.database import Base, SessionLocal, engine
import sealguard.models  # noqa: F401  (registers tables on Base.metadata)


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database tables before tests."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield

    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if os.path.exists(_TEST_DB):
        os.remove(_TEST_DB)


@pytest.fixture(autouse=True)
def clean_tables():
    """Delete every row after each test, children first."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function")
def db():
    """Database session fixture."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()
