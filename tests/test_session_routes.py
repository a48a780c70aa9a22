from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

import config
from main import create_app
from services.session_service import initial_files


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as c:
        yield c


def _create(client):
    resp = client.post("/api/sessions")
    assert resp.status_code == 200
    return resp.json()["session_id"]


def test_root(client):
    assert client.get("/").json() == {"message": "Cocode API is running"}


def test_create_and_get_session(client):
    sid = _create(client)
    body = client.get(f"/api/sessions/{sid}").json()
    assert body == {"files": initial_files(sid), "output": ""}


def test_get_unknown_session(client):
    assert client.get("/api/sessions/missing").status_code == 404


def test_update_file_with_dots_and_slashes(client):
    sid = _create(client)
    resp = client.put(f"/api/sessions/{sid}/files/src/app.v2.js", json={"content": "let a"})
    assert resp.status_code == 200
    files = client.get(f"/api/sessions/{sid}").json()["files"]
    assert files["src/app.v2.js"] == "let a"
    assert files["main.js"] == initial_files(sid)["main.js"]


def test_update_file_unknown_session(client):
    assert client.put("/api/sessions/missing/files/a.js", json={"content": ""}).status_code == 404


def test_add_file_conflict(client):
    sid = _create(client)
    resp = client.post(f"/api/sessions/{sid}/files", json={"filename": "util.js"})
    assert resp.status_code == 201
    assert resp.json() == {"filename": "util.js", "language": "javascript"}
    assert client.get(f"/api/sessions/{sid}").json()["files"]["util.js"] == "// New file"
    assert client.post(f"/api/sessions/{sid}/files", json={"filename": "util.js"}).status_code == 409
    assert client.post(f"/api/sessions/{sid}/files", json={"filename": "  "}).status_code == 400


def test_update_output(client):
    sid = _create(client)
    client.put(f"/api/sessions/{sid}/output", json={"output": "done"})
    assert client.get(f"/api/sessions/{sid}").json()["output"] == "done"


@patch("services.run_service.requests.post")
def test_run_file_shares_output(mock_post, client, monkeypatch):
    monkeypatch.setattr(config, "JUDGE0_API_KEY", "secret")
    resp = MagicMock(ok=True, status_code=200)
    resp.json.return_value = {"stdout": "Hello\n"}
    mock_post.return_value = resp

    sid = _create(client)
    out = client.post(f"/api/sessions/{sid}/run", json={"filename": "main.js"}).json()["output"]

    assert out == "Hello\n"
    assert client.get(f"/api/sessions/{sid}").json()["output"] == "Hello\n"
    assert mock_post.call_args.kwargs["json"]["source_code"] == initial_files(sid)["main.js"]


def test_run_file_without_credential_reports_inline(client):
    sid = _create(client)
    out = client.post(f"/api/sessions/{sid}/run", json={"filename": "main.js", "language_id": 71}).json()["output"]
    assert out.startswith("Code execution failed.")


def test_stream_pushes_snapshots_and_accepts_edits(client):
    sid = _create(client)
    with client.websocket_connect(f"/api/sessions/{sid}/stream?uid=u1&name=Ann") as ws:
        first = ws.receive_json()
        assert first["files"] == initial_files(sid)

        people = client.get(f"/api/sessions/{sid}/participants").json()
        assert people["count"] == 1
        assert people["participants"][0] == {"uid": "u1", "name": "Ann"}

        ws.send_json({"type": "update_file", "filename": "a.b.js", "content": "x"})
        second = ws.receive_json()
        assert second["files"]["a.b.js"] == "x"

        ws.send_json({"type": "bogus"})
        assert "error" in ws.receive_json()


def test_stream_requires_uid(client):
    sid = _create(client)
    with pytest.raises(Exception):
        with client.websocket_connect(f"/api/sessions/{sid}/stream") as ws:
            ws.receive_json()
