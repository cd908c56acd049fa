"""
Test configuration and fixtures for Koffers.

Provides shared fixtures for unit and integration tests.
"""

import copy
import os
import time
from datetime import datetime, timezone
from typing import Optional

# Settings are read at import time; configure before any app import.
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-for-koffers-entitlements")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("USAGE_RESET_TIMEZONE", "UTC")

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.infrastructure.db.repositories.user_preferences_repository import (
    PreferencesRecord,
    UserPreferencesRepository,
)
from app.infrastructure.exceptions import ConcurrencyConflictError


FIXED_NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)
USER_ID = "user_6650f1c2a9"


# =============================================================================
# Fakes
# =============================================================================

class InMemoryPreferencesRepository:
    """Dict-backed stand-in for UserPreferencesRepository with the same version rules."""

    def __init__(self):
        self.records: dict[str, PreferencesRecord] = {}
        self.saves = 0

    async def get(self, user_id: str) -> Optional[PreferencesRecord]:
        record = self.records.get(user_id)
        if record is None:
            return None
        return PreferencesRecord(record.user_id, copy.deepcopy(record.prefs), record.version)

    async def get_prefs(self, user_id: str) -> dict:
        record = await self.get(user_id)
        return record.prefs if record else {}

    async def save(self, user_id: str, prefs: dict, expected_version: Optional[int]) -> PreferencesRecord:
        current = self.records.get(user_id)
        if expected_version is None:
            if current is not None:
                raise ConcurrencyConflictError("created concurrently", operation="insert")
            version = 1
        else:
            if current is None or current.version != expected_version:
                raise ConcurrencyConflictError("stale version", operation="update")
            version = expected_version + 1

        self.saves += 1
        self.records[user_id] = PreferencesRecord(user_id, copy.deepcopy(prefs), version)
        return self.records[user_id]

    async def delete(self, user_id: str) -> bool:
        return self.records.pop(user_id, None) is not None


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def fake_repo():
    """Empty in-memory preference store."""
    return InMemoryPreferencesRepository()


@pytest.fixture
def service(fake_repo):
    """EntitlementService over the in-memory store with a frozen clock."""
    from app.domain.services import EntitlementService

    return EntitlementService(
        fake_repo,
        reset_zone=timezone.utc,
        max_retries=3,
        clock=lambda: FIXED_NOW,
    )


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def session_factory():
    """Async session factory over a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
def sql_repo(session_factory):
    """UserPreferencesRepository bound to the SQLite database."""
    return UserPreferencesRepository(session_factory)


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from app.main import app
    return app


@pytest.fixture
def client(app, service):
    """Synchronous test client with the entitlement service overridden."""
    from app.api.dependencies import get_entitlement_service

    app.dependency_overrides[get_entitlement_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_token(
    sub: Optional[str] = USER_ID,
    secret: Optional[str] = None,
    expires_in: int = 3600,
    audience: str = "authenticated",
) -> str:
    """Sign a session token the way the auth service does."""
    payload = {"aud": audience, "exp": int(time.time()) + expires_in}
    if sub is not None:
        payload["sub"] = sub
    return jwt.encode(
        payload,
        secret or os.environ["AUTH_JWT_SECRET"],
        algorithm="HS256",
    )


@pytest.fixture
def auth_headers():
    """Bearer headers for USER_ID."""
    return {"Authorization": f"Bearer {make_token()}"}
