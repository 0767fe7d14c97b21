"""
Pytest configuration and fixtures for the DNC compliance engine tests.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from dnc_engine.auth.middleware import JWTTokenValidator
from dnc_engine.config import Settings, get_settings
from dnc_engine.dnc.audit import AuditLog
from dnc_engine.dnc.filters import BloomMembershipFilter, SetMembershipFilter
from dnc_engine.dnc.service import ComplianceService
from dnc_engine.dnc.store import ComplianceStore
from dnc_engine.main import build_components, create_app
from dnc_engine.shared.database import DatabaseManager
from fakes import InMemoryDecisionCache, RecordingLeadLifecycle

TEST_JWT_SECRET = "test-secret-key-for-dnc-engine-tests"


@pytest.fixture
def test_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file.

    Values go through the environment so request-time ``get_settings()``
    calls see the same configuration.
    """
    env = {
        "APP_ENV": "dev",
        "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path}/dnc.db",
        "JWT_SECRET_KEY": TEST_JWT_SECRET,
        "JWT_ALGORITHM": "HS256",
        "LLM_API_KEY": "",
        "DNC_FILTER_BACKEND": "bloom",
        "DNC_FILTER_LOCATION": "memory",
        "DNC_FILTER_CAPACITY": "10000",
        "DNC_FILTER_REBUILD_INTERVAL_SECONDS": "0",
        "DNC_DECISION_CACHE_ENABLED": "false",
        "DNC_RATE_LIMIT_BACKEND": "memory",
        "DNC_RATE_LIMIT_REBUILD": "2",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return Settings()


@pytest_asyncio.fixture
async def db(test_settings: Settings) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(test_settings.database_url)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def store(db: DatabaseManager) -> ComplianceStore:
    return ComplianceStore(db, scrub_max_batch=10_000, scrub_chunk_size=500)


@pytest.fixture
def audit_log(db: DatabaseManager) -> AuditLog:
    return AuditLog(db)


@pytest.fixture
def lead_lifecycle() -> RecordingLeadLifecycle:
    return RecordingLeadLifecycle()


@pytest.fixture
def decision_cache() -> InMemoryDecisionCache:
    return InMemoryDecisionCache()


@pytest_asyncio.fixture
async def service(
    store: ComplianceStore,
    audit_log: AuditLog,
    decision_cache: InMemoryDecisionCache,
    lead_lifecycle: RecordingLeadLifecycle,
) -> AsyncGenerator[ComplianceService, None]:
    """Service over an in-process bloom filter, already built."""
    svc = ComplianceService(
        store,
        BloomMembershipFilter(capacity=10_000, error_rate=0.01),
        audit_log,
        decision_cache,
        lead_lifecycle,
        sync_rebuild_threshold=100_000,
        rebuild_delay_seconds=0.05,
    )
    await svc.rebuild_filter()
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def set_service(
    store: ComplianceStore,
    audit_log: AuditLog,
    lead_lifecycle: RecordingLeadLifecycle,
) -> AsyncGenerator[ComplianceService, None]:
    """Service over an exact in-process set, already built."""
    svc = ComplianceService(store, SetMembershipFilter(), audit_log, None, lead_lifecycle)
    await svc.rebuild_filter()
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def app(test_settings: Settings, db: DatabaseManager) -> AsyncGenerator[FastAPI, None]:
    """Application with its components built (ASGITransport skips the lifespan)."""
    application = create_app()
    build_components(application, test_settings, db)
    await application.state.compliance_service.rebuild_filter()
    application.dependency_overrides[get_settings] = lambda: test_settings
    yield application
    await application.state.compliance_service.close()
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_token(test_settings: Settings, organization_id: UUID) -> Callable[..., str]:
    """Issue bearer tokens for a role within the test organization."""
    validator = JWTTokenValidator(test_settings)

    def _make(
        role: str = "agent",
        *,
        user_id: UUID | None = None,
        org_id: UUID | None = None,
        expires_in_seconds: int = 3600,
    ) -> str:
        return validator.create_access_token(
            user_id or uuid4(),
            org_id or organization_id,
            role,
            email=f"{role}@example.com",
            expires_in_seconds=expires_in_seconds,
        )

    return _make


@pytest.fixture
def auth_headers(make_token: Callable[..., str]) -> Callable[..., dict[str, str]]:
    def _headers(role: str = "agent", **kwargs: Any) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(role, **kwargs)}"}

    return _headers
