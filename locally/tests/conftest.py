from __future__ import annotations

import os

# Point the engine at SQLite before any application module builds it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./locally-test.db")
os.environ.setdefault("AUTH_SECRET_KEY", "test-secret-key-with-enough-entropy-for-hs256")
os.environ.setdefault("ENCRYPTION_MASTER_SECRET", "test-master-secret")
os.environ.setdefault("ENCRYPTION_GLOBAL_SECRET", "test-global-secret")
os.environ.setdefault("AUTH_BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENCRYPTION_PBKDF2_ITERATIONS", "1000")

import pytest

from locally.core.config import get_settings
from locally.persistence.db import create_all, drop_all, engine
from locally.services.auth.service import reset_auth_service
from locally.services.crypto.encryption import reset_encryption_service
from locally.services.events.service import reset_event_service
from locally.services.messages.service import reset_message_service


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Every test starts from empty tables and fresh service singletons.
    get_settings.cache_clear()
    reset_auth_service()
    reset_encryption_service()
    reset_event_service()
    reset_message_service()
    await drop_all()
    await create_all()
    yield
    # Stop message loops first so they cannot publish into a fresh event hub.
    reset_message_service()
    reset_event_service()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
