from __future__ import annotations

import inspect
import json
from pathlib import Path

import httpx
import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from ctxkeep.core.models import Conversation
from ctxkeep.server import app_from_env, create_app
from ctxkeep.storage.remote import RemoteContextClient

HASH = "0123456789abcdef"
AUTH = {"Authorization": "Bearer k1"}


@pytest.fixture
def client(tmp_path: Path) -> TestClient:
    return TestClient(create_app(tmp_path / "store", api_keys=["k1"]))


def test_health_is_public(client: TestClient) -> None:
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_requests_need_a_valid_key(client: TestClient) -> None:
    assert client.get(f"/api/contexts/{HASH}/exists").status_code == 401
    assert client.get(f"/api/contexts/{HASH}/exists", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get(f"/api/contexts/{HASH}/exists", headers=AUTH).status_code == 200


def test_put_get_delete_cycle(client: TestClient, make_record) -> None:
    record = make_record()

    assert client.get(f"/api/contexts/{HASH}", headers=AUTH).status_code == 404
    put = client.put(f"/api/contexts/{HASH}", json=record.to_wire(), headers=AUTH)
    assert put.status_code == 200
    assert put.json()["saved"] is True

    assert client.get(f"/api/contexts/{HASH}/exists", headers=AUTH).json() == {"exists": True}
    assert client.get(f"/api/contexts/{HASH}", headers=AUTH).json() == record.to_wire()
    assert client.get("/api/contexts", headers=AUTH).json()["projects"][0]["project_hash"] == HASH

    assert client.delete(f"/api/contexts/{HASH}", headers=AUTH).status_code == 200
    assert client.delete(f"/api/contexts/{HASH}", headers=AUTH).status_code == 404


def test_put_rejects_invalid_records(client: TestClient) -> None:
    resp = client.put(f"/api/contexts/{HASH}", json={"session_id": 1}, headers=AUTH)

    assert resp.status_code == 400


def test_invalid_hash_is_rejected(client: TestClient) -> None:
    assert client.get("/api/contexts/bad.hash!/exists", headers=AUTH).status_code == 400


def test_summary_and_segments(client: TestClient, make_record, entries) -> None:
    messages = [entries.user("first question"), entries.assistant("first answer"), entries.user("second")]
    record = make_record(
        key_files=["main.py"],
        conversation=Conversation(messages=messages, message_count=3),
    )
    client.put(f"/api/contexts/{HASH}", json=record.to_wire(), headers=AUTH)

    summary = client.get(f"/api/contexts/{HASH}/summary", headers=AUTH).json()
    assert summary["summary"] == record.summary
    assert summary["has_conversation"] is True
    assert summary["message_count"] == 3
    assert "conversation" not in summary

    page = client.get(
        f"/api/contexts/{HASH}/segments",
        params={"start_index": 1, "limit": 5, "message_type": "user"},
        headers=AUTH,
    ).json()
    assert [s["index"] for s in page["segments"]] == [2]
    assert page["total"] == 3

    bad = client.get(f"/api/contexts/{HASH}/segments", params={"message_type": "robot"}, headers=AUTH)
    assert bad.status_code == 400


def test_remote_client_against_server(client: TestClient, make_record) -> None:
    def forward(request: httpx.Request) -> httpx.Response:
        resp = client.request(
            request.method,
            request.url.raw_path.decode(),
            content=request.content,
            headers={k: v for k, v in request.headers.items() if k in ("authorization", "content-type")},
        )
        return httpx.Response(resp.status_code, content=resp.content, headers={"content-type": "application/json"})

    remote = RemoteContextClient("http://ctx.example", api_key="k1", transport=httpx.MockTransport(forward))
    record = make_record()

    assert remote.health_check()
    assert not remote.exists(HASH)
    remote.save(HASH, record)
    assert remote.load(HASH) == record
    assert remote.summary(HASH).session_id == record.session_id


def test_app_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CTXKEEP_SERVER_STORAGE", str(tmp_path / "srv"))
    monkeypatch.setenv("CTXKEEP_SERVER_API_KEYS", "a, b")

    client = TestClient(app_from_env())

    assert client.get(f"/api/contexts/{HASH}/exists", headers={"Authorization": "Bearer b"}).status_code == 200
    assert (tmp_path / "srv" / "contexts").is_dir()


def test_put_writes_both_files_atomically(tmp_path: Path, client: TestClient, make_record) -> None:
    record = make_record()

    client.put(f"/api/contexts/{HASH}", json=record.to_wire(), headers=AUTH)

    project_dir = tmp_path / "store" / "contexts" / HASH
    assert sorted(p.name for p in project_dir.iterdir()) == ["context.ctx", "metadata.json"]
    meta = json.loads((project_dir / "metadata.json").read_text())
    assert meta["session_id"] == record.session_id
    assert meta["updated_at"] == record.updated_at


def test_file_backed_routes_run_in_the_threadpool(tmp_path: Path) -> None:
    app = create_app(tmp_path / "store")
    endpoints = {
        route.path + ":" + ",".join(sorted(route.methods)): route.endpoint
        for route in app.routes
        if isinstance(route, APIRoute)
    }

    async_routes = sorted(k for k, fn in endpoints.items() if inspect.iscoroutinefunction(fn))
    assert async_routes == ["/api/contexts/{project_hash}:PUT"]
