import asyncio

import httpx
import pytest

from meta_ads_mcp.errors import NotAuthenticated, RefreshFailed
from meta_ads_mcp.token_store import Credential, REFRESH_MARGIN_SECONDS

from conftest import NOW


def _cred(expires_at, token="tok-old"):
    return Credential(access_token=token, refresh_basis=token, expires_at=expires_at)


def test_fresh_credential_is_returned_without_network(store, fake_graph):
    cred = _cred(NOW + 3600)
    asyncio.run(store.put("alice", cred))

    got = asyncio.run(store.ensure_fresh("alice"))

    assert got is cred
    assert fake_graph.calls == []


def test_credential_without_expiry_never_refreshes(store, fake_graph):
    cred = _cred(None)
    asyncio.run(store.put("alice", cred))
    assert asyncio.run(store.ensure_fresh("alice")) is cred
    assert fake_graph.calls == []


@pytest.mark.parametrize("expires_at", [NOW + REFRESH_MARGIN_SECONDS - 1, NOW + 10, NOW - 500])
def test_expiring_credential_triggers_one_refresh(store, fake_graph, expires_at):
    fake_graph.add("oauth/access_token", {"access_token": "tok-new", "token_type": "bearer", "expires_in": 5184000})
    old = _cred(expires_at)
    asyncio.run(store.put("alice", old))

    got = asyncio.run(store.ensure_fresh("alice"))

    calls = fake_graph.calls_to("oauth/access_token")
    assert len(calls) == 1
    assert calls[0].url.params["grant_type"] == "fb_exchange_token"
    assert calls[0].url.params["fb_exchange_token"] == "tok-old"
    assert got.access_token == "tok-new"
    assert got.expires_at == NOW + 5184000
    assert got.expires_at > old.expires_at
    assert asyncio.run(store.get("alice")) == got


def test_absent_user_is_not_authenticated(store, fake_graph):
    with pytest.raises(NotAuthenticated):
        asyncio.run(store.ensure_fresh("nobody"))
    with pytest.raises(NotAuthenticated):
        asyncio.run(store.ensure_fresh(None))
    assert fake_graph.calls == []


def test_failed_refresh_keeps_stale_credential(store, fake_graph):
    fake_graph.add("oauth/access_token", {"error": {"message": "Session has expired", "code": 190}}, status=400)
    old = _cred(NOW - 1)
    asyncio.run(store.put("alice", old))

    with pytest.raises(RefreshFailed) as exc:
        asyncio.run(store.ensure_fresh("alice"))

    assert "Session has expired" in str(exc.value)
    assert asyncio.run(store.get("alice")) is old


@pytest.mark.parametrize("exc_type", [httpx.ReadTimeout, httpx.ConnectError])
def test_refresh_transport_failure_keeps_stale_credential(store, fake_graph, exc_type):
    fake_graph.fail("oauth/access_token", exc_type)
    old = _cred(NOW - 1)
    asyncio.run(store.put("alice", old))

    with pytest.raises(RefreshFailed):
        asyncio.run(store.ensure_fresh("alice"))

    assert asyncio.run(store.get("alice")) is old


def test_refresh_only_touches_own_user(store, fake_graph):
    fake_graph.add("oauth/access_token", {"access_token": "tok-new", "expires_in": 3600})
    bob = _cred(NOW + 7200, token="bob-token")
    asyncio.run(store.put("alice", _cred(NOW)))
    asyncio.run(store.put("bob", bob))

    asyncio.run(store.ensure_fresh("alice"))

    assert asyncio.run(store.get("bob")) is bob


def test_concurrent_calls_share_one_refresh(store, fake_graph):
    fake_graph.add("oauth/access_token", {"access_token": "tok-new", "expires_in": 3600})
    asyncio.run(store.put("alice", _cred(NOW)))

    async def both():
        return await asyncio.gather(store.ensure_fresh("alice"), store.ensure_fresh("alice"))

    first, second = asyncio.run(both())

    assert len(fake_graph.calls_to("oauth/access_token")) == 1
    assert first.access_token == second.access_token == "tok-new"


def test_is_authenticated(store):
    assert not asyncio.run(store.is_authenticated("alice"))
    asyncio.run(store.put("alice", _cred(None)))
    assert asyncio.run(store.is_authenticated("alice"))
    assert not asyncio.run(store.is_authenticated(""))
