"""
tests/conftest.py -- Shared test fixtures for Pecal unit and integration tests.

This module provides:
  - memory_url(): named shared-memory SQLite URL for one test database
  - make_settings(): a Settings instance with a fixed secret and test providers
  - make_services(): every store/service the app keeps on app.state
  - _patch_lifespan(): wires those services into app.state, bypassing real startup
  - app_env: module-scoped TestClient + services for API integration tests
  - FakeOAuthRegistry / make_provider_client(): Authlib stand-ins (no network)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and the rate-limit env vars must be set before any application import:
get_settings() is cached on first call, and the slowapi limits read it.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

# CRITICAL: Set before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError, and so
# per-IP limits never trip while a whole test module shares one client IP.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OAUTH_START_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.guard import LoginGuard
from auth.models import AuthUser
from auth.oauth_state import OAuthStateService
from auth.store import AuthStore
from auth.tokens import TokenService
from billing.webhooks import WebhookEventStore
from core.config import Settings
from sharing.store import ExportStore
from workspace.models import Task, Team, Workspace
from workspace.store import WorkspaceStore

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


def memory_url(name: str) -> str:
    """Unique named shared-memory DB, so modules never see each other's rows."""
    return f"sqlite:///file:{name}_{uuid.uuid4().hex[:8]}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": memory_url("settings"),
        "google_client_id": "google-client",
        "google_client_secret": "google-secret",
        "kakao_client_id": "kakao-client",
        "kakao_client_secret": "kakao-secret",
        "app_deeplink_scheme_allowlist": "pecal-test://auth/callback",
        "paypal_webhook_id": "WH-TEST",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Authlib stand-ins
# ---------------------------------------------------------------------------


class FakeOAuthRegistry:
    """Mimics authlib's OAuth.create_client(): a client for known names, else None."""

    def __init__(self, clients: dict) -> None:
        self.clients = clients

    def create_client(self, name: str):
        return self.clients.get(name)


def make_provider_client(provider: str) -> MagicMock:
    """A provider client whose async calls are AsyncMocks with happy-path defaults."""
    client = MagicMock(name=f"{provider}_client")
    client.create_authorization_url = AsyncMock(
        side_effect=lambda redirect_uri, state: {
            "url": f"https://{provider}.example/authorize?redirect_uri={redirect_uri}&state={state}",
            "state": state,
        }
    )
    client.fetch_access_token = AsyncMock(return_value={"access_token": f"{provider}-provider-token"})
    if provider == "kakao":
        resp = MagicMock()
        resp.raise_for_status = MagicMock()
        resp.json = MagicMock(
            return_value={
                "id": 4242,
                "kakao_account": {"email": "kim@example.com", "profile": {"nickname": "kim"}},
            }
        )
        client.get = AsyncMock(return_value=resp)
    else:
        client.userinfo = AsyncMock(
            return_value={"sub": "g-1", "email": "lee@example.com", "email_verified": True, "name": "lee"}
        )
    return client


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@dataclass
class Services:
    settings: Settings
    tokens: TokenService
    oauth_states: OAuthStateService
    oauth: FakeOAuthRegistry
    auth_store: AuthStore
    workspaces: WorkspaceStore
    exports: ExportStore
    webhook_events: WebhookEventStore
    login_guard: LoginGuard
    paypal: MagicMock

    def close(self) -> None:
        self.auth_store.close()
        self.workspaces.close()
        self.exports.close()
        self.webhook_events.close()

    def bearer(self, user: AuthUser) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens.issue_access(user)}"}

    def new_member(self, provider_id: str, nickname: Optional[str] = None) -> AuthUser:
        member = self.auth_store.find_or_create_member("kakao", provider_id, nickname=nickname or provider_id)
        return AuthUser(member_id=member.member_id, nickname=member.nickname, provider="kakao")


def make_services(db_suffix: str) -> Services:
    settings = make_settings(database_url=memory_url(f"test_{db_suffix}"))
    auth_store = AuthStore(settings.database_url)
    paypal = MagicMock(name="paypal")
    paypal.verify_webhook_signature = MagicMock(return_value=True)
    return Services(
        settings=settings,
        tokens=TokenService.from_settings(settings),
        oauth_states=OAuthStateService.from_settings(settings),
        oauth=FakeOAuthRegistry({"kakao": make_provider_client("kakao"), "google": make_provider_client("google")}),
        auth_store=auth_store,
        workspaces=WorkspaceStore(settings.database_url),
        exports=ExportStore(settings.database_url),
        webhook_events=WebhookEventStore(settings.database_url),
        login_guard=LoginGuard.from_settings(auth_store, settings),
        paypal=paypal,
    )


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test services into app.state so TestClient routes see
    isolated test DBs and mocked providers rather than production ones.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name in (
            "settings",
            "tokens",
            "oauth_states",
            "oauth",
            "auth_store",
            "workspaces",
            "exports",
            "webhook_events",
            "login_guard",
            "paypal",
        ):
            setattr(app.state, name, getattr(services, name))
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def app_env(request) -> Generator[tuple[TestClient, Services], None, None]:
    """Yield (client, services) for API integration tests.

    One client per test module; follow_redirects=False so tests can assert on
    redirect Location headers (OAuth start/callback).
    """
    services = make_services(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(services)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, services
    services.close()


@pytest.fixture
def workspace_store() -> Generator[WorkspaceStore, None, None]:
    store = WorkspaceStore(memory_url("workspace"))
    yield store
    store.close()


@pytest.fixture
def export_store() -> Generator[ExportStore, None, None]:
    store = ExportStore(memory_url("exports"))
    yield store
    store.close()


@pytest.fixture
def auth_store() -> Generator[AuthStore, None, None]:
    store = AuthStore(memory_url("auth"))
    yield store
    store.close()


def seed_team_task(services: Services, owner: AuthUser, title: str = "Sprint review") -> tuple[int, int, int]:
    """Create a team owned by `owner`, its workspace and one task. Returns (team_id, workspace_id, task_id)."""
    team_id = services.workspaces.create_team(Team(name=f"team-{uuid.uuid4().hex[:6]}", created_by=owner.member_id))
    ws_id = services.workspaces.create_workspace(Workspace(name="Team space", type="team", owner_id=team_id))
    task_id = services.workspaces.create_task(Task(workspace_id=ws_id, title=title, created_by=owner.member_id))
    return team_id, ws_id, task_id
