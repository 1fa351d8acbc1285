"""
Shared pytest fixtures and fakes for unit tests.
"""

import json
import sys
from pathlib import Path

import pytest

# Make the root-level modules importable when running pytest from the repo root.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import A365Config, GraphConfig  # noqa: E402

A365_ENV_VARS = [
    "A365_APP_ID",
    "A365_APP_PASSWORD",
    "A365_TENANT_ID",
    "MicrosoftAppId",
    "MicrosoftAppPassword",
    "MicrosoftAppTenantId",
    "BLUEPRINT_CLIENT_APP_ID",
    "BLUEPRINT_CLIENT_SECRET",
    "AA_INSTANCE_ID",
    "A365_GRAPH_SCOPE",
    "TOKEN_CALLBACK_URL",
    "TOKEN_CALLBACK_TOKEN",
    "AGENT_IDENTITY",
    "A365_OWNER",
    "A365_CONFIG_FILE",
    "A365_CONVERSATION_STORE",
    "A365_SERVICE_REGION",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer environment variables out of the tests."""
    for name in A365_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeResponse:
    def __init__(self, status: int, body="") -> None:
        self.status = status
        self._body = body if isinstance(body, str) else json.dumps(body)

    async def text(self) -> str:
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; replays queued responses in order."""

    closed = False

    def __init__(self, responses=None) -> None:
        self.responses = list(responses or [])
        self.calls = []

    def post(self, url, data=None, json=None, headers=None):
        self.calls.append({"url": url, "data": data, "json": json, "headers": headers})
        if not self.responses:
            raise AssertionError(f"Unexpected request to {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


def token_body(access_token: str, expires_in: int = 3600) -> dict:
    return {"token_type": "Bearer", "access_token": access_token, "expires_in": expires_in}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def graph_config():
    return A365Config(
        tenant_id="tenant-1",
        agent_identity="agent@contoso.com",
        graph=GraphConfig(
            blueprint_client_app_id="blueprint-app",
            blueprint_client_secret="blueprint-secret",
            aa_instance_id="aa-instance",
        ),
    )


@pytest.fixture
def three_tier_responses():
    """Successful T1, T2 and Agent responses."""
    return [
        FakeResponse(200, token_body("t1-token")),
        FakeResponse(200, token_body("t2-token")),
        FakeResponse(200, token_body("agent-token", expires_in=3600)),
    ]
