#!/usr/bin/env python3
"""
Tests for the SEEDRELAY HTTP surface
"""

import asyncio
import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from relay_server import AppConfig, create_app, load_config, parse_size, sweep_sessions
from session_store import InMemorySessionStore
from transmission_rpc import SESSION_ID_HEADER

TORRENT_BYTES = b"d8:announce35:http://tracker.example/announce4:infod4:name4:testee"
JELLYFIN_OK = {"User": {"Id": "user-1", "Name": "alice"}, "AccessToken": "jf-token"}


class Upstreams:
    """Fake Jellyfin and Transmission behind one httpx transport"""

    def __init__(self):
        self.jellyfin_requests = []
        self.daemon_requests = []
        self.jellyfin = lambda request: httpx.Response(200, json=JELLYFIN_OK)
        self.probe = lambda request: httpx.Response(409, headers={SESSION_ID_HEADER: "abc123"})
        self.add = lambda request: httpx.Response(
            200, json={"result": "success", "arguments": {"torrent-added": {"id": 7}}}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "jellyfin.test":
            self.jellyfin_requests.append(request)
            return self.jellyfin(request)
        self.daemon_requests.append(request)
        if not request.content:
            return self.probe(request)
        return self.add(request)


def refuse(request):
    raise httpx.ConnectError("Connection refused", request=request)


@pytest.fixture
def upload_dir(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def config(upload_dir):
    return AppConfig(**{
        "server": {"upload_dir": str(upload_dir), "max_file_size": 1024},
        "jellyfin": {"server_url": "http://jellyfin.test:8096"},
        "transmission": {
            "url": "http://daemon.test:9091",
            "username": "transmission",
            "password": "secret",
        },
        "security": {"secret_key": "test-secret"},
    })


@pytest.fixture
def upstreams():
    return Upstreams()


@pytest.fixture
def client(config, upstreams):
    app = create_app(config, transport=httpx.MockTransport(upstreams))
    return TestClient(app)


def login(client) -> dict:
    response = client.post("/api/login", json={"username": "alice", "password": "pw"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


def upload(client, headers=None, data=TORRENT_BYTES):
    return client.post(
        "/api/upload",
        files={"torrent": ("test.torrent", data, "application/x-bittorrent")},
        headers=headers or {},
    )


def test_frontend(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "SEEDRELAY" in response.text


@pytest.mark.parametrize("body", [
    {},
    {"username": "alice"},
    {"password": "pw"},
    {"username": "", "password": "pw"},
])
def test_malformed_login(client, upstreams, body):
    """Bad login bodies get 400 without contacting Jellyfin"""
    response = client.post("/api/login", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "bad_request"
    assert upstreams.jellyfin_requests == []


def test_non_json_login(client, upstreams):
    response = client.post("/api/login", content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert upstreams.jellyfin_requests == []


def test_login_and_status(client):
    assert client.get("/api/status").json() == {"loggedIn": False}

    headers = login(client)

    assert client.get("/api/status", headers=headers).json() == {"loggedIn": True, "username": "alice"}


def test_status_with_garbage_token(client):
    response = client.get("/api/status", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 200
    assert response.json() == {"loggedIn": False}


def test_second_login_issues_new_token(client):
    first = login(client)
    second = login(client)

    assert first != second
    assert client.get("/api/status", headers=second).json()["loggedIn"] is True


def test_wrong_credentials(client, upstreams):
    upstreams.jellyfin = lambda request: httpx.Response(401, text="Error processing request.")

    response = client.post("/api/login", json={"username": "alice", "password": "wrong"})

    assert response.status_code == 401
    assert response.json() == {
        "error": "Authentication failed",
        "code": "auth_failed",
        "details": "Error processing request.",
    }


def test_identity_provider_down(client, upstreams):
    upstreams.jellyfin = refuse

    response = client.post("/api/login", json={"username": "alice", "password": "pw"})

    assert response.status_code == 500
    assert response.json()["code"] == "identity_provider_unavailable"


def test_logout(client):
    headers = login(client)

    response = client.post("/api/logout", headers=headers)

    assert response.status_code == 200
    assert "message" in response.json()
    assert client.get("/api/status", headers=headers).json() == {"loggedIn": False}
    assert client.post("/api/logout").status_code == 200


def test_upload_success(client, upstreams, upload_dir):
    """A relayed torrent reaches Transmission with the handshake session id"""
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 200
    assert response.json() == {"result": "success", "details": {"torrent-added": {"id": 7}}}
    probe, add = upstreams.daemon_requests
    assert add.headers[SESSION_ID_HEADER] == "abc123"
    metainfo = json.loads(add.content)["arguments"]["metainfo"]
    assert base64.b64decode(metainfo) == TORRENT_BYTES
    assert list(upload_dir.iterdir()) == []


def test_upload_without_session(client, upstreams, upload_dir):
    """No session means no scratch file and no daemon call"""
    response = upload(client)

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"
    assert upstreams.daemon_requests == []
    assert list(upload_dir.iterdir()) == []


def test_upload_after_logout(client, upstreams):
    headers = login(client)
    client.post("/api/logout", headers=headers)

    assert upload(client, headers).status_code == 401
    assert upstreams.daemon_requests == []


def test_upload_missing_session_header(client, upstreams, upload_dir):
    """Handshake failure still removes the scratch file"""
    upstreams.probe = lambda request: httpx.Response(409)
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 502
    assert response.json()["code"] == "handshake_failed"
    assert len(upstreams.daemon_requests) == 1
    assert list(upload_dir.iterdir()) == []


def test_upload_daemon_down(client, upstreams, upload_dir):
    """Connection refused still removes the scratch file"""
    upstreams.probe = refuse
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 504
    assert response.json()["code"] == "daemon_unreachable"
    assert list(upload_dir.iterdir()) == []


def test_upload_daemon_rejects(client, upstreams, upload_dir):
    """Daemon declines the torrent"""
    upstreams.add = lambda request: httpx.Response(200, json={"result": "duplicate torrent", "arguments": {}})
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "daemon_rejected"
    assert body["details"]["result"] == "duplicate torrent"
    assert list(upload_dir.iterdir()) == []


def test_upload_daemon_error_status(client, upstreams, upload_dir):
    upstreams.add = lambda request: httpx.Response(500, json={"error": "boom"})
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 502
    assert response.json() == {
        "error": "Transmission returned HTTP 500",
        "code": "daemon_error",
        "details": {"error": "boom"},
    }
    assert list(upload_dir.iterdir()) == []


def test_upload_too_large(client, upstreams, upload_dir):
    headers = login(client)

    response = upload(client, headers, data=b"x" * 2048)

    assert response.status_code == 413
    assert response.json()["code"] == "payload_too_large"
    assert upstreams.daemon_requests == []
    assert list(upload_dir.iterdir()) == []


def test_upload_far_over_limit(client, upstreams, upload_dir):
    """A body declared far over the limit is refused before it is parsed"""
    headers = login(client)

    response = upload(client, headers, data=b"x" * (2 * 1024 * 1024))

    assert response.status_code == 413
    assert response.json()["details"] == {"limit": 1024}
    assert upstreams.daemon_requests == []
    assert list(upload_dir.iterdir()) == []


def test_upload_without_file(client, upstreams):
    headers = login(client)

    response = client.post("/api/upload", data={"other": "value"}, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "bad_request"
    assert upstreams.daemon_requests == []


def test_upload_without_transmission_config(config, upstreams, upload_dir):
    """Missing daemon settings fail fast before anything is written or sent"""
    config.transmission.password = None
    client = TestClient(create_app(config, transport=httpx.MockTransport(upstreams)))
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 500
    assert response.json()["code"] == "config_error"
    assert upstreams.daemon_requests == []
    assert list(upload_dir.iterdir()) == []


def test_strict_handshake_config(config, upstreams, upload_dir):
    config.transmission.strict_handshake = True
    upstreams.probe = lambda request: httpx.Response(200, json={"result": "success"})
    client = TestClient(create_app(config, transport=httpx.MockTransport(upstreams)))
    headers = login(client)

    response = upload(client, headers)

    assert response.status_code == 502
    assert response.json()["code"] == "protocol_violation"
    assert list(upload_dir.iterdir()) == []


def test_load_config_from_file_and_environment(tmp_path):
    config_file = tmp_path / "seedrelay.yaml"
    config_file.write_text(
        "server:\n"
        "  port: 8080\n"
        "transmission:\n"
        "  url: http://file.test:9091\n"
        "  timeout: 5\n"
    )
    environ = {
        "TRANSMISSION_URL": "http://env.test:9091",
        "TRANS_USER": "user",
        "TRANS_PASS": "pass",
        "TRANSMISSION_STRICT_HANDSHAKE": "true",
    }

    config = load_config(str(config_file), environ=environ)

    assert config.server.port == 8080
    assert config.transmission.url == "http://env.test:9091"
    assert config.transmission.timeout == 5
    assert config.transmission.strict_handshake is True
    assert config.transmission.is_configured()
    assert config.jellyfin.server_url == "http://localhost:8096"


def test_load_config_defaults():
    config = load_config(environ={})

    assert config.server.port == 3000
    assert config.server.max_file_size == 10 * 1024 * 1024
    assert not config.transmission.is_configured()


@pytest.mark.parametrize("value,expected", [
    ("10MB", 10 * 1024 * 1024),
    ("512KB", 512 * 1024),
    ("1.5GB", int(1.5 * 1024 ** 3)),
    ("2048", 2048),
])
def test_parse_size(value, expected):
    assert parse_size(value) == expected


def test_parse_size_invalid():
    with pytest.raises(ValueError):
        parse_size("lots")


@pytest.mark.anyio
async def test_sweep_sessions(fake_clock):
    """The background sweeper evicts expired sessions"""
    store = InMemorySessionStore(ttl=1, clock=fake_clock)
    store.create("user-1", "alice")
    fake_clock.advance(2)

    task = asyncio.create_task(sweep_sessions(store, 0.01))
    await asyncio.sleep(0.1)
    task.cancel()

    assert len(store) == 0


def test_lifespan_starts_and_stops(config, upstreams):
    app = create_app(config, transport=httpx.MockTransport(upstreams))
    with TestClient(app) as client:
        assert client.get("/api/status").json() == {"loggedIn": False}


class FlakyStore(InMemorySessionStore):
    """Session store whose first sweep blows up"""

    def __init__(self):
        super().__init__()
        self.sweeps = 0

    def sweep_expired(self):
        self.sweeps += 1
        if self.sweeps == 1:
            raise RuntimeError("store unavailable")
        return super().sweep_expired()


@pytest.mark.anyio
async def test_sweep_sessions_survives_errors(caplog):
    """A failing sweep is logged and the sweeper keeps running"""
    store = FlakyStore()

    task = asyncio.create_task(sweep_sessions(store, 0.01))
    await asyncio.sleep(0.1)
    assert not task.done()
    task.cancel()

    assert store.sweeps > 1
    assert "Session sweep failed" in caplog.text
