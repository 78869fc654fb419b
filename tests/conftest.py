"""Shared test fixtures"""
import asyncio
import uuid
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.testclient import TestClient

from keygate_server.config import Settings
from keygate_server.main_api import create_app
from keygate_server.models import APIKey, User
from keygate_server.store import RecordStore, hash_password

ADMIN_PASSWORD = "test-admin-password-123"


async def echo_route(request: Request):
    return {"key_id": request.state.api_key.id, "source": request.state.access.source.value}


async def upstream_error_route():
    return JSONResponse(status_code=502, content={"detail": "upstream failed"})


async def upstream_crash_route():
    raise RuntimeError("upstream crashed")


async def stream_route(request: Request):
    """Streams the key's in-flight count once per chunk"""
    store = request.app.state.store
    key_id = request.state.api_key.id

    async def chunks():
        for _ in range(3):
            await asyncio.sleep(0)
            yield f"{store.in_flight(key_id)}\n"

    return StreamingResponse(chunks(), media_type="text/plain")


@pytest.fixture
def data_path(tmp_path) -> Path:
    """Record file location inside a per-test directory"""
    return tmp_path / "data" / "keygate-data.json"


@pytest.fixture
def store(data_path) -> RecordStore:
    """Loaded store backed by a fresh (missing) file"""
    store = RecordStore(data_path)
    store.load()
    return store


@pytest.fixture
def test_credential() -> str:
    """Generate a test API key string"""
    return f"test_key_{uuid.uuid4().hex}"


@pytest.fixture
def make_key(store):
    """Factory inserting an API key into the store"""
    def _make_key(value: str = None, **fields) -> APIKey:
        fields.setdefault("enabled", True)
        return store.upsert_api_key(
            APIKey(key=value or f"test_key_{uuid.uuid4().hex}", **fields)
        )
    return _make_key


@pytest.fixture
def owner(store) -> User:
    """Owner account with password 'owner-pass-123'"""
    return store.upsert_user(
        User(username="alice", role="owner", password_hash=hash_password("owner-pass-123"))
    )


@pytest.fixture
def settings(data_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        admin_password=ADMIN_PASSWORD,
        data_path=str(data_path),
        log_level="WARNING",
        log_format="console",
    )


@pytest.fixture
def app(settings, store):
    """Application with a few stand-in upstream routes under /v1"""
    app = create_app(settings=settings, store=store)
    app.add_api_route("/v1/echo", echo_route, methods=["GET", "POST"])
    app.add_api_route("/v1/error", upstream_error_route, methods=["GET"])
    app.add_api_route("/v1/crash", upstream_crash_route, methods=["GET"])
    app.add_api_route("/v1/stream", stream_route, methods=["GET"])
    return app


@pytest.fixture
def client(app) -> TestClient:
    """Test client that turns server errors into 500 responses"""
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Management-Key": ADMIN_PASSWORD}
