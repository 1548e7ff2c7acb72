from __future__ import annotations

import pytest

from chatgate.core.config import get_settings
from chatgate.domain.models import Base
from chatgate.persistence.db import dispose_engine, get_engine
from chatgate.providers.llm.upstream import close_upstream_client
from chatgate.services.accounts import AccountStore, reset_account_store
from chatgate.services.auth.tokens import reset_token_verifier
from chatgate.services.notifications import reset_notifier
from chatgate.services.telemetry import reset_telemetry
from chatgate.tests.utils.auth import TEST_JWT_SECRET


@pytest.fixture(autouse=True)
async def isolated_environment(monkeypatch, tmp_path) -> None:
    # Point every test at its own SQLite file and deterministic credentials.
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'chatgate.db'}")
    monkeypatch.setenv("AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("FREE_UPSTREAM_API_KEY", "free-upstream-key")
    monkeypatch.setenv("PRO_UPSTREAM_API_KEY", "pro-upstream-key")
    monkeypatch.setenv("PUSH_PROVIDER", "noop")
    monkeypatch.delenv("SUBSCRIPTION_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("OPS_METRICS_TOKEN", raising=False)
    get_settings.cache_clear()
    reset_account_store()
    reset_notifier()
    reset_token_verifier()
    reset_telemetry()
    yield
    await close_upstream_client()
    await dispose_engine()
    reset_account_store()
    reset_notifier()
    reset_token_verifier()
    get_settings.cache_clear()


@pytest.fixture
async def account_store() -> AccountStore:
    # Create the schema on the per-test engine; the store shares the global session factory.
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return AccountStore()
