"""Pytest configuration and fixtures for keyledger tests.

Test isolation strategy:
- Every test gets its own database, built from the ORM metadata through
  the production engine factory (SQLite file under tmp_path by default)
- TEST_DATABASE_URL points the suite at PostgreSQL instead; tables are
  dropped and recreated around each test
- Tests needing several independent connections (concurrency) open their
  own sessions from session_factory
- Environment is pinned to KEYLEDGER_ENV=test with a deterministic
  master key, no remote codec and no provider gateway URL
"""

import base64
import os
from collections.abc import Generator
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from keyledger.config import clear_settings_cache
from keyledger.db.engine import create_db_engine
from keyledger.db.models import Base
from keyledger.db.session import create_session_factory
from keyledger.services.crypto import MASTER_KEY_ENV, clear_master_key_cache
from keyledger.services.provider_gateway import FakeProviderGateway
from keyledger.services.secret_codec import LocalSecretCodec

TEST_MASTER_KEY = b"test_master_key_for_encryption!!"


def get_test_database_url(tmp_path: Path) -> str:
    """TEST_DATABASE_URL if set, otherwise a fresh SQLite file for this test."""
    return os.environ.get("TEST_DATABASE_URL") or f"sqlite+pysqlite:///{tmp_path / 'keyledger.db'}"


@pytest.fixture(autouse=True)
def test_environment(monkeypatch, tmp_path: Path) -> Generator[None, None, None]:
    """Pin settings and the master key for every test."""
    monkeypatch.setenv("KEYLEDGER_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", get_test_database_url(tmp_path))
    monkeypatch.setenv(MASTER_KEY_ENV, base64.b64encode(TEST_MASTER_KEY).decode("ascii"))
    monkeypatch.delenv("CODEC_SERVICE_URL", raising=False)
    monkeypatch.delenv("PROVIDER_GATEWAY_URL", raising=False)
    monkeypatch.delenv("MAX_MESSAGE_CHARS", raising=False)
    clear_settings_cache()
    clear_master_key_cache()

    yield

    clear_settings_cache()
    clear_master_key_cache()


@pytest.fixture
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    """Engine over a freshly created schema."""
    engine = create_db_engine(get_test_database_url(tmp_path))
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to the test engine."""
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a database session, closed after the test.

    Note: on SQLite an open transaction holds the write lock. Tests that
    start threads must commit (or close) this session before doing so.
    """
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def codec() -> LocalSecretCodec:
    """In-process codec under the deterministic test master key."""
    return LocalSecretCodec()


@pytest.fixture
def gateway() -> FakeProviderGateway:
    """Fake provider gateway that records calls."""
    return FakeProviderGateway()


@pytest.fixture
def owner_id() -> UUID:
    """Generate a random owner id."""
    return uuid4()
