"""Router test fixtures with mocked session and notification services."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from tests.helpers import ALICE, BOB, CAROL, SESSION_PREFIX, auth
from time_bank_service.app import create_app
from time_bank_service.config import clear_settings_cache
from time_bank_service.core.exceptions import ServiceError
from time_bank_service.core.lifespan import lifespan
from time_bank_service.core.state import get_app_state, reset_app_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


def _verify(token: str) -> dict[str, Any]:
    if not token.startswith(SESSION_PREFIX):
        raise ServiceError("UNAUTHORIZED", "Session token is invalid or expired", 401, {})
    return {"valid": True, "user_id": token[len(SESSION_PREFIX) :]}


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    db_path = tmp_path / "test.db"
    log_dir = tmp_path / "logs"
    config_content = f"""\
service:
  name: "time-bank"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{log_dir}"
database:
  path: "{db_path}"
  timeout_seconds: 2
session:
  base_url: "http://localhost:8001"
  verify_path: "/sessions/verify"
  timeout_seconds: 10
notifications:
  enabled: false
  base_url: "http://localhost:8005"
  notify_path: "/notifications"
  timeout_seconds: 5
ledger:
  initial_balance: 5
  settlement: "credit_only"
limits:
  max_title_length: 100
  max_text_length: 1000
  max_attachments_per_task: 3
request:
  max_body_size: 4096
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock session service: "session-<user_id>" tokens are valid
        mock_sessions = AsyncMock()
        mock_sessions.close = AsyncMock()
        mock_sessions.verify_token = AsyncMock(side_effect=_verify)
        state.session_client = mock_sessions

        # Mock notification dispatcher: deliveries succeed
        mock_notifications = AsyncMock()
        mock_notifications.close = AsyncMock()
        state.notification_client = mock_notifications

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def accounts(client: AsyncClient) -> None:
    """Open accounts for Alice, Bob and Carol with the configured starting balance."""
    for user_id in (ALICE, BOB, CAROL):
        response = await client.post("/accounts", headers=auth(user_id))
        assert response.status_code == 201


@pytest.fixture(name="_app")
def fixture_app_alias(app: Any) -> Any:
    """Alias for override fixtures that only need the app to be running."""
    return app


# ---------------------------------------------------------------------------
# Mock override fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_sessions_unavailable(_app: Any) -> None:
    """Configure the session mock to simulate service unavailability."""
    state = get_app_state()
    state.session_client.verify_token = AsyncMock(
        side_effect=ConnectionError("Session service unreachable")
    )
