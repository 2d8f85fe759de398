# Ensure project root is importable
import pathlib, sys
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from meta_ads_mcp.config import Settings
from meta_ads_mcp.dispatcher import Dispatcher
from meta_ads_mcp.graph_client import GraphAPIClient
from meta_ads_mcp.meta_oauth import MetaOAuth
from meta_ads_mcp.token_store import InMemoryTokenStore
from meta_ads_mcp.tools import default_registry

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class FakeGraph:
    """Canned Graph API responses keyed by path (version prefix stripped); records every request."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, path, json=None, status=200):
        self.routes[path.strip("/")] = (status, json if json is not None else {})

    def fail(self, path, exc_type):
        """Make requests to path raise an httpx transport error such as ReadTimeout."""
        self.routes[path.strip("/")] = exc_type

    def calls_to(self, path):
        return [r for r in self.calls if self._path(r) == path.strip("/")]

    @staticmethod
    def _path(request):
        parts = request.url.path.strip("/").split("/", 1)
        return parts[1] if len(parts) > 1 else ""

    def handler(self, request):
        self.calls.append(request)
        route = self.routes.get(self._path(request))
        if route is None:
            return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 803}})
        if isinstance(route, type) and issubclass(route, httpx.TransportError):
            raise route("simulated transport failure", request=request)
        status, body = route
        return httpx.Response(status, json=body)

    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture
def settings():
    return Settings(
        app_id="app-123",
        app_secret="s3cret",
        redirect_uri="https://mcp.example.com/auth/meta/callback",
        ad_account_id="1234567890",
        http_timeout=5.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def graph(settings, fake_graph):
    http = httpx.AsyncClient(transport=fake_graph.transport())
    return GraphAPIClient(http, settings.graph_url, timeout=settings.http_timeout)


@pytest.fixture
def oauth(settings, graph):
    return MetaOAuth(settings, graph)


@pytest.fixture
def store(oauth, clock):
    return InMemoryTokenStore(oauth, clock=clock)


@pytest.fixture
def dispatcher(store, oauth, graph, settings):
    return Dispatcher(store, oauth, graph, default_registry(), ad_account_id=settings.ad_account_id)
