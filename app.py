from __future__ import annotations

import contextlib
import html
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import Message

from meta_ads_mcp import APP_NAME, APP_VER
from meta_ads_mcp.config import Settings
from meta_ads_mcp.dispatcher import (
    SERVER_NAME,
    SUPPORTED_MCP_VERSIONS,
    Dispatcher,
    clean_user_id,
    build_jsonrpc_error,
    latest_supported_protocol,
    parse_payload,
)
from meta_ads_mcp.errors import MalformedRequest, UpstreamError
from meta_ads_mcp.graph_client import GraphAPIClient
from meta_ads_mcp.meta_oauth import MetaOAuth
from meta_ads_mcp.token_store import Credential, InMemoryTokenStore, TokenStore
from meta_ads_mcp.tools import default_registry

RPC_PATHS = ("/", "/mcp")

log = logging.getLogger(APP_NAME)


# ---------- Middleware ----------
# Request ID (make a request-scoped id available to everything)
class RequestId(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        request.state.request_id = rid
        response = await call_next(request)
        # Echo so clients can correlate
        response.headers["X-Request-ID"] = rid
        return response


# RPC audit logging (reads body once, reinjects it; logs UA and auth headers presence)
class RPCAudit(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path in RPC_PATHS and request.method == "POST":
            body_bytes = await request.body()  # read once

            # Re-inject the body for downstream handlers (Starlette-safe)
            async def receive() -> Message:
                return {"type": "http.request", "body": body_bytes, "more_body": False}
            request._receive = receive  # type: ignore[attr-defined]

            method = "unknown"
            try:
                payload = json.loads(body_bytes.decode("utf-8") or "{}")
                method = "batch" if isinstance(payload, list) else str(payload.get("method") or "")
            except (ValueError, AttributeError):
                pass

            ua = request.headers.get("user-agent", "")
            has_uid = "X-User-Id" in request.headers
            has_bearer = request.headers.get("authorization", "").lower().startswith("bearer ")
            rid = getattr(request.state, "request_id", "-")

            log.info(
                "RPC method=%s ua=%s user:x=%s bearer=%s rid=%s",
                method, ua, has_uid, has_bearer, rid
            )

        return await call_next(request)


# MCP protocol header (innermost; finalizes header based on negotiation)
class MCPProtocolHeader(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        final_proto = getattr(request.state, "mcp_protocol_version", None) or latest_supported_protocol()
        response.headers["MCP-Protocol-Version"] = final_proto
        return response


# ---------- App factory ----------
def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[TokenStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Wire settings, the shared HTTP client, token store and dispatcher into a FastAPI app.

    `transport` replaces the network layer of the upstream HTTP client (tests use
    httpx.MockTransport).
    """
    settings = settings or Settings.from_env()
    http = httpx.AsyncClient(timeout=settings.http_timeout, transport=transport)
    graph = GraphAPIClient(http, settings.graph_url, timeout=settings.http_timeout)
    oauth = MetaOAuth(settings, graph)
    store = store if store is not None else InMemoryTokenStore(oauth)
    dispatcher = Dispatcher(store, oauth, graph, default_registry(), ad_account_id=settings.ad_account_id)

    if not settings.oauth_configured:
        log.warning("META_APP_ID / META_APP_SECRET not set; OAuth exchanges will fail")

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await http.aclose()

    app = FastAPI(title=SERVER_NAME, version=APP_VER, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.oauth = oauth
    app.state.dispatcher = dispatcher

    # Last added runs outermost: protocol header, audit, request id, then CORS.
    app.add_middleware(MCPProtocolHeader)
    app.add_middleware(RPCAudit)
    app.add_middleware(RequestId)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,  # must be False when allow_origins=["*"]
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["MCP-Protocol-Version", "Mcp-Session-Id", "X-Request-ID"],
    )

    app.add_api_route("/", root_get, methods=["GET"], include_in_schema=False)
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/.well-known/mcp.json", mcp_discovery, methods=["GET"])
    for path in RPC_PATHS:
        app.add_api_route(path, rpc, methods=["POST"])
    app.add_api_route("/auth/meta", auth_start, methods=["GET"])
    app.add_api_route("/auth/meta/callback", auth_callback, methods=["GET"])
    app.add_api_route("/auth/status/{user_id}", auth_status, methods=["GET"])
    return app


# ---------- Health & discovery ----------
async def root_get(request: Request):
    return JSONResponse({
        "ok": True,
        "message": "Meta Ads MCP server. POST /mcp for JSON-RPC; see /.well-known/mcp.json",
    })


async def health(request: Request):
    return JSONResponse({"ok": True, "service": SERVER_NAME})


async def mcp_discovery(request: Request):
    dispatcher: Dispatcher = request.app.state.dispatcher
    return JSONResponse({
        "mcpVersion": latest_supported_protocol(),
        "supportedVersions": SUPPORTED_MCP_VERSIONS,
        "name": APP_NAME,
        "version": APP_VER,
        "auth": {"type": "user-id", "headers": ["X-User-Id", "Authorization"], "oauth": "/auth/meta"},
        "capabilities": {"tools": {"listChanged": False}},
        "endpoints": {"rpc": "/mcp"},
        "tools": dispatcher.registry.definitions(),
    })


# ---------- JSON-RPC ----------
async def rpc(request: Request):
    """JSON-RPC endpoint that supports single objects and batches."""
    dispatcher: Dispatcher = request.app.state.dispatcher
    headers: Dict[str, str] = {}
    rid = getattr(request.state, "request_id", "-")

    def _sync_protocol_header() -> None:
        negotiated = headers.get("MCP-Protocol-Version")
        if negotiated:
            request.state.mcp_protocol_version = negotiated
        else:
            headers["MCP-Protocol-Version"] = (
                getattr(request.state, "mcp_protocol_version", None) or latest_supported_protocol()
            )

    try:
        payload = parse_payload(await request.body())
    except MalformedRequest as e:
        log.warning("RPC malformed body rid=%s code=%s", rid, e.jsonrpc_code)
        _sync_protocol_header()
        return JSONResponse(build_jsonrpc_error(None, e.jsonrpc_code, e.message), headers=headers)

    # Batch
    if isinstance(payload, list):
        responses: List[Dict[str, Any]] = []
        for entry in payload:
            resp = await dispatcher.handle(entry, request.headers, headers, rid)
            if resp is not None:
                responses.append(resp)
        _sync_protocol_header()
        if responses:
            return JSONResponse(responses, headers=headers)
        return Response(status_code=202, headers=headers)

    # Single
    resp = await dispatcher.handle(payload, request.headers, headers, rid)
    _sync_protocol_header()
    if resp is not None:
        return JSONResponse(resp, headers=headers)
    return Response(status_code=202, headers=headers)


# ---------- OAuth ----------
def _json_error(status: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse({"error": error, "detail": detail}, status_code=status)


async def auth_start(request: Request):
    user_id = clean_user_id(request.query_params.get("userId"))
    if not user_id:
        return _json_error(400, "invalid_user", "userId query parameter is missing or invalid")
    oauth: MetaOAuth = request.app.state.oauth
    log.info("oauth start user=%s", user_id)
    return RedirectResponse(oauth.authorization_url(user_id), status_code=302)


CONNECTED_HTML = """<!doctype html>
<html><head><title>Meta Ads connected</title></head>
<body>
<h1>Meta Ads account connected</h1>
<p>User <code>{user}</code> is now authenticated. You can close this window and retry your request.</p>
</body></html>
"""


async def auth_callback(request: Request):
    qp = request.query_params
    if qp.get("error"):
        reason = qp.get("error_description") or qp.get("error_reason") or qp["error"]
        log.warning("oauth callback denied state=%s reason=%s", qp.get("state"), reason)
        return _json_error(400, "authorization_denied", reason)

    code = qp.get("code")
    user_id = clean_user_id(qp.get("state"))
    if not code or not user_id:
        return _json_error(400, "invalid_callback", "code and a valid state are required")

    oauth: MetaOAuth = request.app.state.oauth
    store: TokenStore = request.app.state.store
    try:
        grant = await oauth.exchange_code(code)
    except UpstreamError as e:
        log.error("oauth exchange failed user=%s status=%s msg=%s", user_id, e.status_code, e.message)
        return _json_error(500, "token_exchange_failed", e.message)

    await store.put(user_id, Credential.from_grant(grant, store.clock()))
    log.info("oauth connected user=%s", user_id)
    return HTMLResponse(CONNECTED_HTML.format(user=html.escape(user_id)))


async def auth_status(request: Request, user_id: str):
    store: TokenStore = request.app.state.store
    oauth: MetaOAuth = request.app.state.oauth
    clean = clean_user_id(user_id)
    authenticated = await store.is_authenticated(clean)
    return JSONResponse({
        "userId": user_id,
        "authenticated": authenticated,
        "service": "Meta Ads",
        "authUrl": None if authenticated or not clean else oauth.authorization_url(clean),
    })


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO))


_settings = Settings.from_env()
_configure_logging(_settings.log_level)
app = create_app(_settings)

# ---------- Local dev ----------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=_settings.port)
