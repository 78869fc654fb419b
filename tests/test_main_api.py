"""
Tests for the HTTP surface.

Integration tests for the FastAPI application: admission middleware,
admin API, portal API and health endpoints.
"""

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from keygate_server.main_api import create_app
from keygate_server.middleware import is_protected_path
from keygate_server.store import RecordStore


class TestRootEndpoint:
    """Test root endpoint."""

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "is running" in response.json()["message"]

    def test_request_id_header(self, client):
        response = client.get("/")
        assert "X-Request-ID" in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestAdmissionMiddleware:
    """Requests under /v1 go through the admission controller."""

    def test_missing_credentials(self, client):
        response = client.get("/v1/echo")
        assert response.status_code == 401
        assert response.json()["error"] == "no_credentials"

    def test_unknown_key(self, client):
        response = client.get("/v1/echo", headers={"X-Api-Key": "nope"})
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_credential"

    def test_admitted_request(self, client, make_key):
        key = make_key("live")
        response = client.get("/v1/echo", headers={"Authorization": "Bearer live"})

        assert response.status_code == 200
        assert response.json() == {"key_id": key.id, "source": "authorization"}

    def test_success_counts_usage_and_saves(self, client, store, make_key, data_path):
        make_key("counted", total_limit=10)
        client.get("/v1/echo", headers={"X-Api-Key": "counted"})

        assert store.find_api_key("counted").used_count == 1
        saved = json.loads(data_path.read_text())
        assert saved["api_keys"][0]["used_count"] == 1

    def test_error_response_not_counted(self, client, store, make_key):
        key = make_key("upstream", concurrency_limit=1)
        response = client.get("/v1/error", headers={"X-Api-Key": "upstream"})

        assert response.status_code == 502
        assert store.find_api_key("upstream").used_count == 0
        assert store.in_flight(key.id) == 0

    def test_crash_releases_slot(self, client, store, make_key):
        key = make_key("crashy", concurrency_limit=1)
        response = client.get("/v1/crash", headers={"X-Api-Key": "crashy"})

        assert response.status_code == 500
        assert store.in_flight(key.id) == 0
        assert store.find_api_key("crashy").used_count == 0

    def test_streamed_body_holds_slot(self, client, store, make_key):
        key = make_key("streamer", concurrency_limit=1)
        response = client.get("/v1/stream", headers={"X-Api-Key": "streamer"})

        assert response.status_code == 200
        assert response.text.splitlines() == ["1", "1", "1"]
        assert store.in_flight(key.id) == 0
        assert store.find_api_key("streamer").used_count == 1

    def test_quota_exceeded(self, client, make_key):
        make_key("spent", total_limit=1, used_count=1)
        response = client.get("/v1/echo", headers={"X-Api-Key": "spent"})

        assert response.status_code == 429
        assert response.json()["error"] == "quota_exceeded"

    def test_concurrency_exceeded(self, client, store, make_key):
        make_key("busy", concurrency_limit=1)
        store.begin_request("busy")

        response = client.get("/v1/echo", headers={"X-Api-Key": "busy"})
        assert response.status_code == 429
        assert response.json()["error"] == "concurrency_exceeded"

    def test_disabled_key(self, client, make_key):
        make_key("off", enabled=False)
        response = client.get("/v1/echo", headers={"X-Api-Key": "off"})
        assert response.status_code == 401

    def test_query_key_requires_compat(self, client, make_key):
        make_key("strict")
        response = client.get("/v1/echo", params={"key": "strict"})
        assert response.status_code == 401

    def test_query_key_with_compat(self, client, make_key):
        make_key("compat", compatibility_mode=True)
        response = client.get("/v1/echo", params={"key": "compat"})

        assert response.status_code == 200
        assert response.json()["source"] == "query-key"

    def test_last_quota_unit_then_exhausted(self, client, store, make_key):
        make_key("last", total_limit=1)
        assert client.get("/v1/echo", headers={"X-Api-Key": "last"}).status_code == 200
        assert client.get("/v1/echo", headers={"X-Api-Key": "last"}).status_code == 429

    def test_failed_save_still_serves_response(self, client, store, make_key):
        make_key("nosave")
        with patch.object(RecordStore, "save", side_effect=OSError("read-only")):
            response = client.get("/v1/echo", headers={"X-Api-Key": "nosave"})

        assert response.status_code == 200
        assert store.find_api_key("nosave").used_count == 1

    def test_unprotected_paths_skip_admission(self, client):
        assert client.get("/api/v1/health").status_code == 200

    def test_metrics_record_outcomes(self, client, app, make_key):
        make_key("metric")
        client.get("/v1/echo", headers={"X-Api-Key": "metric"})
        client.get("/v1/echo")

        metrics = app.state.metrics
        assert metrics.count("admitted") == 1
        assert metrics.count("no_credentials") == 1


class TestProtectedPaths:
    """Prefix matching for the admission gate"""

    @pytest.mark.parametrize("path", ["/v1", "/v1/models", "/v1beta/models/x"])
    def test_protected(self, path):
        assert is_protected_path(path, ["/v1", "/v1beta/"])

    @pytest.mark.parametrize("path", ["/v10", "/api/v1/health", "/"])
    def test_unprotected(self, path):
        assert not is_protected_path(path, ["/v1", "/v1beta/"])

    @pytest.mark.parametrize("prefixes", [[""], ["/"], ["//"]])
    def test_root_prefix_matches_nothing(self, prefixes):
        assert not is_protected_path("/api/v1/admin/users", prefixes)
        assert not is_protected_path("/v1/echo", prefixes)


class TestAdminAuth:
    """Management key guard"""

    def test_missing_management_key(self, client):
        assert client.get("/api/v1/admin/users").status_code == 401

    def test_wrong_management_key(self, client):
        response = client.get("/api/v1/admin/users", headers={"X-Management-Key": "wrong"})
        assert response.status_code == 401

    def test_disabled_when_unset(self, settings, store):
        settings = settings.model_copy(update={"admin_password": None})
        client = TestClient(create_app(settings=settings, store=store))

        response = client.get("/api/v1/admin/users", headers={"X-Management-Key": "anything"})
        assert response.status_code == 403


class TestAdminUsers:
    """User management endpoints"""

    def test_create_user(self, client, admin_headers, store):
        response = client.post(
            "/api/v1/admin/users",
            json={"username": "bob", "password": "bob-pass-1", "role": "user"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["id"].startswith("usr_")
        assert user["password_hash"] == ""
        assert store.authenticate_user("bob", "bob-pass-1").id == user["id"]

    def test_create_requires_password(self, client, admin_headers):
        response = client.post(
            "/api/v1/admin/users", json={"username": "bob"}, headers=admin_headers
        )
        assert response.status_code == 400

    def test_invalid_role(self, client, admin_headers):
        response = client.post(
            "/api/v1/admin/users",
            json={"username": "bob", "password": "pw-123", "role": "root"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_duplicate_username(self, client, admin_headers, owner):
        response = client.post(
            "/api/v1/admin/users",
            json={"username": "Alice", "password": "pw-123"},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert "already exists" in response.json()["detail"]

    def test_patch_keeps_password(self, client, admin_headers, store, owner):
        response = client.post(
            "/api/v1/admin/users",
            json={"id": owner.id, "disabled": True},
            headers=admin_headers,
        )

        assert response.status_code == 200
        stored = store.find_user_by_id(owner.id)
        assert stored.disabled is True
        assert stored.username == "alice"
        assert stored.password_hash == owner.password_hash

    def test_list_users_hides_hashes(self, client, admin_headers, owner):
        response = client.get("/api/v1/admin/users", headers=admin_headers)
        users = response.json()["users"]
        assert [u["username"] for u in users] == ["alice"]
        assert users[0]["password_hash"] == ""

    def test_delete_user(self, client, admin_headers, store, owner):
        response = client.delete(f"/api/v1/admin/users/{owner.id}", headers=admin_headers)
        assert response.status_code == 200
        assert store.find_user_by_id(owner.id) is None

    def test_delete_missing_user(self, client, admin_headers):
        response = client.delete("/api/v1/admin/users/usr_missing", headers=admin_headers)
        assert response.status_code == 404

    def test_failed_save_reports_500(self, client, admin_headers, store):
        with patch.object(RecordStore, "save", side_effect=OSError("disk full")):
            response = client.post(
                "/api/v1/admin/users",
                json={"username": "eve", "password": "pw-123"},
                headers=admin_headers,
            )

        assert response.status_code == 500
        assert response.json()["detail"] == "failed to persist store"
        # the mutation is kept in memory
        assert store.find_user_by_username("eve") is not None


class TestAdminKeys:
    """API key management endpoints"""

    def test_create_generates_key(self, client, admin_headers, data_path):
        response = client.post(
            "/api/v1/admin/keys", json={"label": "CI"}, headers=admin_headers
        )

        assert response.status_code == 200
        key = response.json()["api_key"]
        assert key["key"].startswith("kg_")
        assert key["enabled"] is True
        assert key["label"] == "CI"
        assert data_path.exists()

    def test_create_with_explicit_values(self, client, admin_headers):
        response = client.post(
            "/api/v1/admin/keys",
            json={
                "key": "custom-key",
                "total_limit": 100,
                "concurrency_limit": -5,
                "compatibility_mode": True,
                "enabled": False,
            },
            headers=admin_headers,
        )

        key = response.json()["api_key"]
        assert key["key"] == "custom-key"
        assert key["total_limit"] == 100
        assert key["concurrency_limit"] == 0
        assert key["compatibility_mode"] is True
        assert key["enabled"] is False

    def test_duplicate_key(self, client, admin_headers, make_key):
        make_key("taken")
        response = client.post(
            "/api/v1/admin/keys", json={"key": "taken"}, headers=admin_headers
        )
        assert response.status_code == 400

    def test_patch_keeps_usage(self, client, admin_headers, store, make_key):
        key = make_key("patch-me", used_count=7, total_limit=10)
        response = client.post(
            "/api/v1/admin/keys",
            json={"id": key.id, "label": "renamed"},
            headers=admin_headers,
        )

        updated = response.json()["api_key"]
        assert updated["label"] == "renamed"
        assert updated["used_count"] == 7
        assert updated["key"] == "patch-me"
        assert updated["enabled"] is True

    def test_patch_keeps_usage_counted_during_edit(self, client, admin_headers, make_key):
        key = make_key("busy-edit", used_count=2)
        read = RecordStore.find_api_key_by_id

        def read_then_count(self, key_id):
            found = read(self, key_id)
            self.end_request("busy-edit", True)
            return found

        with patch.object(RecordStore, "find_api_key_by_id", read_then_count):
            response = client.post(
                "/api/v1/admin/keys",
                json={"id": key.id, "label": "renamed"},
                headers=admin_headers,
            )

        updated = response.json()["api_key"]
        assert updated["label"] == "renamed"
        assert updated["used_count"] == 3

    def test_patch_reset_usage(self, client, admin_headers, make_key):
        key = make_key("reset-via-patch", used_count=7)
        response = client.post(
            "/api/v1/admin/keys",
            json={"id": key.id, "reset_usage": True},
            headers=admin_headers,
        )
        assert response.json()["api_key"]["used_count"] == 0

    def test_reset_endpoint(self, client, admin_headers, store, make_key):
        key = make_key("reset-me", used_count=3, total_limit=3)
        response = client.post(f"/api/v1/admin/keys/{key.id}/reset", headers=admin_headers)

        assert response.status_code == 200
        assert store.find_api_key("reset-me").used_count == 0

    def test_reset_missing_key(self, client, admin_headers):
        response = client.post("/api/v1/admin/keys/key_missing/reset", headers=admin_headers)
        assert response.status_code == 404

    def test_delete_key(self, client, admin_headers, store, make_key):
        key = make_key("delete-me")
        response = client.delete(f"/api/v1/admin/keys/{key.id}", headers=admin_headers)

        assert response.status_code == 200
        assert store.find_api_key("delete-me") is None

    def test_delete_missing_key(self, client, admin_headers):
        response = client.delete("/api/v1/admin/keys/key_missing", headers=admin_headers)
        assert response.status_code == 404

    def test_usage(self, client, admin_headers, store, make_key):
        make_key("usage", total_limit=10, used_count=4, concurrency_limit=2)
        store.begin_request("usage")

        response = client.get("/api/v1/admin/usage", headers=admin_headers)
        entry = response.json()["keys"][0]

        assert entry["remaining"] == 6
        assert entry["in_flight"] == 1
        assert entry["concurrency_limit"] == 2

    def test_state(self, client, admin_headers, owner, make_key):
        make_key("state-key")
        response = client.get("/api/v1/admin/state", headers=admin_headers)
        body = response.json()

        assert body["version"] == 1
        assert body["users"][0]["password_hash"] == ""
        assert body["api_keys"][0]["key"] == "state-key"


class TestPortal:
    """Portal endpoints"""

    def test_login(self, client, owner, make_key):
        make_key("mine", user_id=owner.id)
        make_key("theirs")

        response = client.post(
            "/api/v1/portal/login",
            json={"username": "alice", "password": "owner-pass-123"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["user"]["id"] == owner.id
        assert body["user"]["password_hash"] == ""
        assert [k["key"] for k in body["keys"]] == ["mine"]

    def test_login_wrong_password(self, client, owner):
        response = client.post(
            "/api/v1/portal/login",
            json={"username": "alice", "password": "nope"},
        )
        assert response.status_code == 401

    def test_me_requires_key(self, client):
        response = client.get("/api/v1/portal/me")
        assert response.status_code == 401
        assert response.json()["detail"] == "api key required"

    def test_me(self, client, owner, make_key):
        key = make_key("portal-key", user_id=owner.id)
        response = client.get("/api/v1/portal/me", headers={"X-Api-Key": "portal-key"})

        body = response.json()
        assert body["user"]["username"] == "alice"
        assert [k["id"] for k in body["keys"]] == [key.id]

    def test_me_unowned_key(self, client, make_key):
        make_key("orphan")
        response = client.get("/api/v1/portal/me", headers={"X-Api-Key": "orphan"})
        assert response.json()["user"] is None

    def test_usage(self, client, make_key):
        make_key("quota", total_limit=5, used_count=5)
        response = client.get("/api/v1/portal/usage", headers={"X-Api-Key": "quota"})

        entry = response.json()["keys"][0]
        assert entry["remaining"] == 0
        assert entry["used_count"] == 5

    def test_portal_does_not_consume_quota(self, client, store, make_key):
        make_key("viewer", total_limit=5)
        client.get("/api/v1/portal/usage", headers={"X-Api-Key": "viewer"})
        assert store.find_api_key("viewer").used_count == 0


class TestHealth:
    """Health and metrics endpoints"""

    def test_liveness(self, client):
        response = client.get("/api/v1/health")
        assert response.json()["status"] == "healthy"

    def test_readiness(self, client, make_key):
        make_key()
        response = client.get("/api/v1/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["store"]["api_keys"] == 1

    def test_readiness_without_path(self, settings):
        client = TestClient(create_app(settings=settings, store=RecordStore()))
        response = client.get("/api/v1/health/ready")
        assert response.status_code == 503

    def test_metrics(self, client):
        body = client.get("/api/v1/metrics").json()
        assert "uptime_seconds" in body
        assert body["records"] == {"users": 0, "api_keys": 0}


class TestLifespan:
    """Owned store is loaded on startup and saved on shutdown"""

    def test_owned_store_round_trip(self, settings, data_path):
        app = create_app(settings=settings)
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/admin/keys",
                json={"key": "from-lifespan"},
                headers={"X-Management-Key": settings.admin_password},
            )
            assert response.status_code == 200

        fresh = RecordStore(data_path)
        fresh.load()
        assert fresh.find_api_key("from-lifespan") is not None

    def test_startup_fails_on_corrupt_file(self, settings, data_path):
        data_path.parent.mkdir(parents=True, exist_ok=True)
        data_path.write_text("corrupt")

        with pytest.raises(Exception):
            with TestClient(create_app(settings=settings)):
                pass
