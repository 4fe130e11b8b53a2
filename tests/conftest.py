import json
import time
from collections.abc import AsyncGenerator, Callable

import httpx
import jwt
import pytest
import pytest_asyncio

from webpushrelay.config import AuthMode, Settings, override_settings
from webpushrelay.keys import VapidKeyPair, generate_keypair
from webpushrelay.main import app, build_pipeline
from webpushrelay.relay.db import RelayDatabase
from webpushrelay.relay.keycodec import encode_wire_base64

FCM_OK = {
    "multicast_id": 1,
    "success": 1,
    "failure": 0,
    "canonical_ids": 0,
    "results": [{"message_id": "0:1"}],
}


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly selected."""
    markexpr = config.getoption("-m", default="")
    if "integration" in markexpr:
        return

    skip_integration = pytest.mark.skip(reason="use -m integration to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def _test_settings(tmp_path):
    """Override settings so tests use an isolated DB."""
    override_settings(
        Settings(
            state_dir=str(tmp_path),
            fcm_server_key="test-server-key",
        )
    )
    yield
    override_settings(None)


@pytest.fixture
def db(tmp_path):
    database = RelayDatabase(tmp_path / "relay.db")
    yield database
    database.close()


@pytest.fixture
def keypair() -> VapidKeyPair:
    return generate_keypair()


def sign_headers(
    pair: VapidKeyPair,
    claims: dict | None = None,
) -> dict[str, str]:
    """Authorization and Crypto-Key headers for a WebPush callback."""
    payload = {
        "aud": "https://relay.example.com",
        "exp": int(time.time()) + 3600,
        "sub": "mailto:admin@example.com",
    }
    if claims:
        payload.update(claims)
    token = jwt.encode(payload, pair.private_key, algorithm="ES256")
    return {
        "Authorization": f"WebPush {token}",
        "Crypto-Key": f"p256ecdsa={encode_wire_base64(pair.public_key_raw)}",
    }


class FakeFcm:
    """Records FCM requests and replies with a canned response."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.body: dict | str = FCM_OK
        self.error: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json=self.body)

    def sent(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def fcm() -> FakeFcm:
    return FakeFcm()


@pytest_asyncio.fixture
async def make_client(
    db, fcm
) -> AsyncGenerator[Callable[..., httpx.AsyncClient]]:
    """Factory for app clients wired to a fake FCM.

    Call with ``auth_mode=AuthMode.REQUIRE`` to switch modes.
    """
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(fcm.handler))
    clients: list[httpx.AsyncClient] = []

    def _make(
        auth_mode: AuthMode = AuthMode.OPTIONAL,
        **transport_kwargs,
    ) -> httpx.AsyncClient:
        settings = Settings(
            fcm_server_key="test-server-key",
            auth_mode=auth_mode,
            max_callback_body_bytes=1024,
        )
        app.state.pipeline = build_pipeline(settings, db, upstream)
        app.state.max_callback_body_bytes = settings.max_callback_body_bytes
        ac = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app, **transport_kwargs),
            base_url="http://test",
        )
        clients.append(ac)
        return ac

    yield _make

    for ac in clients:
        await ac.aclose()
    await upstream.aclose()


@pytest_asyncio.fixture
async def client(make_client) -> httpx.AsyncClient:
    return make_client()
