import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from starlette.testclient import TestClient

from app import create_app

from conftest import NOW


@pytest.fixture
def app(settings, fake_graph, clock):
    app = create_app(settings, transport=fake_graph.transport())
    app.state.store.clock = clock
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "service": "Meta Ads MCP"}
    assert resp.headers["X-Request-ID"]


def test_auth_start_redirects_to_meta_dialog(client, settings):
    resp = client.get("/auth/meta", params={"userId": "alice"}, follow_redirects=False)
    assert resp.status_code == 302
    url = urlparse(resp.headers["location"])
    assert url.netloc == "www.facebook.com"
    assert url.path == "/v21.0/dialog/oauth"
    qs = parse_qs(url.query)
    assert qs["state"] == ["alice"]
    assert qs["client_id"] == [settings.app_id]
    assert qs["redirect_uri"] == [settings.redirect_uri]
    assert qs["response_type"] == ["code"]


def test_auth_start_requires_user(client):
    assert client.get("/auth/meta", follow_redirects=False).status_code == 400
    assert client.get("/auth/meta", params={"userId": "a b"}, follow_redirects=False).status_code == 400


def test_callback_stores_fresh_credential(app, client, fake_graph):
    fake_graph.add("oauth/access_token", {"access_token": "tok-alice", "token_type": "bearer", "expires_in": 5183944})

    resp = client.get("/auth/meta/callback", params={"code": "abc", "state": "alice"})

    assert resp.status_code == 200
    assert "connected" in resp.text
    exchange = fake_graph.calls_to("oauth/access_token")[0]
    assert exchange.url.params["code"] == "abc"
    assert exchange.url.params["client_secret"] == "s3cret"

    store = app.state.store
    cred = asyncio.run(store.ensure_fresh("alice"))
    assert cred.access_token == "tok-alice"
    assert cred.expires_at == NOW + 5183944
    assert len(fake_graph.calls_to("oauth/access_token")) == 1


def test_callback_exchange_failure_is_500(app, client, fake_graph):
    fake_graph.add("oauth/access_token", {"error": {"message": "Invalid verification code format.", "code": 100}},
                   status=400)
    resp = client.get("/auth/meta/callback", params={"code": "bad", "state": "alice"})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Invalid verification code format."
    assert asyncio.run(app.state.store.get("alice")) is None


def test_callback_denied_or_incomplete_is_400(client):
    resp = client.get("/auth/meta/callback", params={"error": "access_denied", "state": "alice",
                                                     "error_description": "Permissions error"})
    assert resp.status_code == 400
    assert client.get("/auth/meta/callback", params={"state": "alice"}).status_code == 400


def test_auth_status_before_and_after_login(client, fake_graph):
    before = client.get("/auth/status/alice").json()
    assert before["userId"] == "alice"
    assert before["authenticated"] is False
    assert "state=alice" in before["authUrl"]

    fake_graph.add("oauth/access_token", {"access_token": "tok", "expires_in": 3600})
    client.get("/auth/meta/callback", params={"code": "abc", "state": "alice"})

    after = client.get("/auth/status/alice").json()
    assert after["authenticated"] is True
    assert after["authUrl"] is None


def test_mcp_endpoint_end_to_end(client, fake_graph):
    fake_graph.add("oauth/access_token", {"access_token": "tok", "expires_in": 3600})
    client.get("/auth/meta/callback", params={"code": "abc", "state": "alice"})
    fake_graph.add("act_1234567890/campaigns", {"data": [{"id": "1", "name": "A"}]})

    resp = client.post("/mcp", headers={"X-User-Id": "alice"}, json={
        "jsonrpc": "2.0", "id": 1, "method": "tools/call",
        "params": {"name": "meta_ads_query", "arguments": {"resource_type": "campaigns"}},
    })

    assert resp.status_code == 200
    assert '"count": 1' in resp.json()["result"]["content"][0]["text"]


def test_mcp_notification_is_accepted_without_body(client):
    resp = client.post("/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert resp.status_code == 202
    assert resp.content == b""


def test_mcp_parse_error(client):
    resp = client.post("/mcp", content=b"{not json", headers={"content-type": "application/json"})
    body = resp.json()
    assert body["error"]["code"] == -32700
    assert body["id"] is None


def test_mcp_empty_batch_is_invalid_request(client):
    resp = client.post("/mcp", json=[])
    body = resp.json()
    assert body["error"]["code"] == -32600
    assert body["id"] is None


def test_mcp_batch(client):
    resp = client.post("/mcp", json=[
        {"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "id": 2, "method": "bogus"},
    ])
    body = resp.json()
    assert [r["id"] for r in body] == [1, 2]
    assert body[1]["error"]["code"] == -32601


def test_discovery_lists_tools(client):
    body = client.get("/.well-known/mcp.json").json()
    assert [t["name"] for t in body["tools"]] == ["meta_ads_get", "meta_ads_query", "meta_ads_report"]
