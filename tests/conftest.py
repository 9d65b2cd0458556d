"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any msgbridge import, so
the cached settings and the engine pick them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key")
os.environ.setdefault("QUEUE_ENABLED", "false")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "global-verify-token")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from msgbridge.config import get_settings
get_settings.cache_clear()

from msgbridge.storage import Base, SessionLocal, engine, init_db


TEST_ENCRYPTION_KEY = os.environ["ENCRYPTION_KEY"]


@pytest.fixture(scope="function")
def db():
    """Session on a fresh schema for each test."""
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def encryption_key() -> str:
    return TEST_ENCRYPTION_KEY
