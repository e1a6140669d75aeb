import pytest
from fastapi.testclient import TestClient

from dangerprep_net.config import settings
from dangerprep_net.errors import (
    CommandError,
    InterfaceNotFoundError,
    LockTimeoutError,
    MissingPrerequisiteError,
    UsageError,
)
from dangerprep_net.main import app, http_status_for


@pytest.fixture
def client(env, monkeypatch):
    monkeypatch.setattr(settings, "admin_token", "test-admin-token")
    monkeypatch.setattr(settings, "secret_key", "test-secret")
    env.write_inventory('ETHERNET_eth0="type=ethernet,mac=aa:bb:cc:00:00:01,state=UP,speed=1000Mbps"')
    env.add_interface("eth0")
    # no context manager: the background evaluator stays off
    return TestClient(app)


@pytest.fixture
def authed(client):
    r = client.post("/api/auth/login", json={"token": "test-admin-token"})
    assert r.status_code == 200
    return client


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_root_redirects_to_docs(client):
    r = client.get("/", follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"] == "/docs"


def test_requires_session(client):
    assert client.get("/api/network/status").status_code == 401
    assert client.get("/api/auth/state").status_code == 401


def test_login_rejects_bad_token(client):
    assert client.post("/api/auth/login", json={"token": "nope"}).status_code == 401


def test_forged_cookie_rejected(client):
    client.cookies.set("dp_session", "forged.value.here")
    r = client.get("/api/network/status")
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid session"


def test_session_state_and_logout(authed):
    assert authed.get("/api/auth/state").json() == {"authenticated": True, "user": "admin"}
    authed.post("/api/auth/logout")
    assert authed.get("/api/auth/state").status_code == 401


def test_status(authed):
    body = authed.get("/api/network/status").json()
    assert body["state"]["mode"] == "LOCAL_ONLY"
    assert body["state"]["auto_mode"] is True
    assert body["services"] == {"hostapd": "Running", "dnsmasq": "Running"}


def test_interfaces(authed):
    body = authed.get("/api/network/interfaces").json()
    assert body["interfaces"][0]["name"] == "eth0"
    assert body["interfaces"][0]["role"] == "DISABLED"


def test_query(authed):
    assert authed.get("/api/network/query/mode").json() == {"field": "mode", "value": "LOCAL_ONLY"}
    assert authed.get("/api/network/query/bogus").status_code == 400


def test_assign_wan(authed):
    r = authed.post("/api/network/wan", json={"interface": "eth0", "priority": "secondary"})
    assert r.status_code == 200
    assert r.json()["priority"] == "secondary"
    assert authed.get("/api/network/wan").json()["secondary"] == "eth0"

    assert authed.post("/api/network/wan", json={"interface": "eth7"}).status_code == 404
    assert authed.post("/api/network/wan", json={"interface": "eth0", "priority": "x"}).status_code == 400


def test_wan_rejected_while_local_only_forced(authed):
    assert authed.post("/api/network/mode/local-only").status_code == 200
    r = authed.post("/api/network/wan", json={"interface": "eth0"})
    assert r.status_code == 400
    assert "normal" in r.json()["detail"]


def test_unknown_mode(authed):
    assert authed.post("/api/network/mode/bridge").status_code == 400


@pytest.mark.parametrize("exc,code", [
    (UsageError("x"), 400),
    (InterfaceNotFoundError("x"), 404),
    (MissingPrerequisiteError("x"), 409),
    (LockTimeoutError("x"), 423),
    (CommandError(["iptables"], 1, "boom"), 500),
])
def test_http_status_for(exc, code):
    assert http_status_for(exc) == code
