import os

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("EVENTS_ENABLED", "false")


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite engine. StaticPool keeps one connection so
    every session in a test sees the same database.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield eng
    eng.dispose()
