from __future__ import annotations

import json
from typing import Any, Dict, Optional

import pytest

from state.authority import ProgressStore
from state.backend import MemoryRecordBackend


def _event(method: str, path: str, *, principal: Optional[str] = "player-1", jwt: bool = False) -> Dict[str, Any]:
    authorizer: Dict[str, Any] = {}
    if principal is not None:
        if jwt:
            authorizer = {"jwt": {"claims": {"sub": principal}}}
        else:
            authorizer = {"lambda": {"principalId": principal}}
    return {
        "rawPath": path,
        "requestContext": {"http": {"method": method, "path": path}, "authorizer": authorizer},
    }


@pytest.fixture
def store() -> ProgressStore:
    return ProgressStore(MemoryRecordBackend(), total_locations=3)


def test_get_progress_creates_empty_record(store):
    from server import handler as server

    resp = server.handle(_event("GET", "/progress"), store)
    assert resp["statusCode"] == 200
    body = json.loads(resp["body"])
    assert body["completed_locations"] == []
    assert body["total_locations"] == "3"
    assert body["stage_flags"] == {"stage1": False, "stage2": False, "stage3": False}


def test_post_location_records_completion(store):
    from server import handler as server

    resp = server.handle(_event("POST", "/progress/locations/2", jwt=True), store)
    assert resp["statusCode"] == 200
    body = json.loads(resp["body"])
    assert body["completed_locations"] == ["2"]
    assert body["last_completed_location"] == "2"
    assert store.read("player-1").completed_locations == [2]


def test_missing_identity_is_401(store):
    from server import handler as server

    resp = server.handle(_event("GET", "/progress", principal=None), store)
    assert resp["statusCode"] == 401
    assert json.loads(resp["body"]) == {"error": "unauthorized"}


@pytest.mark.parametrize("seq", ["0", "4", "abc", "\u00b2", "9" * 5000, "-1"])
def test_invalid_location_is_400(store, seq):
    from server import handler as server

    resp = server.handle(_event("POST", f"/progress/locations/{seq}"), store)
    assert resp["statusCode"] == 400
    assert json.loads(resp["body"])["error"] == "invalid_location"


def test_zero_padded_location_is_accepted(store):
    from server import handler as server

    resp = server.handle(_event("POST", "/progress/locations/003"), store)
    assert resp["statusCode"] == 200
    assert store.read("player-1").completed_locations == [3]


def test_unknown_route_is_404(store):
    from server import handler as server

    assert server.handle(_event("DELETE", "/progress"), store)["statusCode"] == 404
    assert server.handle(_event("GET", "/elsewhere"), store)["statusCode"] == 404


def test_lambda_handler_uses_cached_store(monkeypatch, store):
    from server import handler as server

    monkeypatch.setattr(server, "_STORE", store)
    resp = server.lambda_handler(_event("POST", "/progress/locations/1"), None)
    assert resp["statusCode"] == 200
    assert store.read("player-1").completed_locations == [1]


def test_build_store_requires_bucket(monkeypatch):
    from server import handler as server

    monkeypatch.delenv("STATE_BUCKET", raising=False)
    monkeypatch.setenv("PARAM_PREFIX", "/quest/dev/")
    with pytest.raises(RuntimeError):
        server._build_store()


def test_build_store_requires_fernet_key(monkeypatch):
    from server import handler as server

    monkeypatch.setenv("STATE_BUCKET", "test-bucket")
    monkeypatch.setenv("PARAM_PREFIX", "/quest/dev/")
    monkeypatch.setattr(server, "_load_ssm_params", lambda prefix, names: {"fernet_key": None})
    with pytest.raises(RuntimeError) as ei:
        server._build_store()
    assert "fernet_key" in str(ei.value)


def test_build_store_rejects_bad_total(monkeypatch):
    from server import handler as server

    monkeypatch.setenv("STATE_BUCKET", "test-bucket")
    monkeypatch.setenv("PARAM_PREFIX", "/quest/dev/")
    monkeypatch.setenv("TOTAL_LOCATIONS", "three")
    with pytest.raises(RuntimeError):
        server._build_store()
