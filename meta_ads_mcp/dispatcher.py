from __future__ import annotations

import datetime
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from . import APP_NAME, APP_VER
from .errors import (
    INTERNAL_ERROR,
    PARSE_ERROR,
    InvalidParams,
    JSONRPCError,
    MalformedRequest,
    NotAuthenticated,
    RefreshFailed,
    UnknownMethod,
    UpstreamError,
)
from .graph_client import GraphAPIClient
from .meta_oauth import MetaOAuth
from .token_store import TokenStore
from .tools import ToolContext, ToolRegistry

log = logging.getLogger(__name__)

SERVER_NAME = "Meta Ads MCP"
SUPPORTED_MCP_VERSIONS: List[str] = ["2024-11-05", "2025-03-26", "2025-06-18"]

USER_ID_RE = re.compile(r"^[A-Za-z0-9_.@:-]{1,128}$")


# ---------- Protocol version negotiation ----------
def latest_supported_protocol() -> str:
    return SUPPORTED_MCP_VERSIONS[-1]


def _validate_protocol_version_string(version: str) -> str:
    """Ensure the protocol version is ISO formatted (YYYY-MM-DD)."""
    try:
        datetime.date.fromisoformat(version)
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid protocol version format") from exc
    return version


def negotiate_protocol_version(requested: Optional[str]) -> str:
    """Newest supported version not newer than the request; latest when the request is unusable."""
    if requested is None:
        return latest_supported_protocol()
    try:
        requested = _validate_protocol_version_string(requested)
    except ValueError:
        log.warning("unparseable protocolVersion=%r; answering with latest", requested)
        return latest_supported_protocol()
    for version in reversed(SUPPORTED_MCP_VERSIONS):
        if version <= requested:
            return version
    return latest_supported_protocol()


# ---------- Caller identity ----------
def clean_user_id(raw: Optional[str]) -> Optional[str]:
    raw = (raw or "").strip()
    return raw if USER_ID_RE.match(raw) else None


def resolve_user_id(headers: Mapping[str, str]) -> Optional[str]:
    """User id from X-User-Id, else from a Bearer Authorization header."""
    uid = clean_user_id(headers.get("x-user-id"))
    if uid:
        return uid
    auth = headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return clean_user_id(auth.split(" ", 1)[1])
    return None


# ---------- Envelope helpers ----------
def parse_payload(body: bytes) -> Any:
    """Decode a request body into one envelope or a non-empty batch."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except ValueError as e:
        raise MalformedRequest("Parse error", PARSE_ERROR) from e
    if payload == []:
        raise MalformedRequest()
    return payload


def validate_envelope(obj: Any) -> None:
    if not isinstance(obj, dict):
        raise MalformedRequest()
    if obj.get("jsonrpc") != "2.0" or not isinstance(obj.get("method"), str):
        raise MalformedRequest()


def build_jsonrpc_error(_id: Any, code: int, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"jsonrpc": "2.0", "id": _id, "error": {"code": code, "message": message}}
    if data is not None:
        body["error"]["data"] = data
    return body


def mcp_ok_text(data: Any) -> Dict[str, Any]:
    """Tool result as a single pretty-printed JSON text item."""
    return {"content": [{"type": "text", "text": json.dumps(data, indent=2, default=str)}]}


def mcp_upstream_error(err: UpstreamError) -> Dict[str, Any]:
    payload = {
        "error": True,
        "message": err.message,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }
    payload.update({k: v for k, v in err.to_dict().items() if k != "message"})
    res = mcp_ok_text(payload)
    res["isError"] = True
    return res


class Dispatcher:
    """Routes one JSON-RPC object to initialize / tools/list / tools/call.

    Holds no per-request state; the token store, OAuth client, Graph client and
    tool registry are passed in.
    """

    def __init__(
        self,
        store: TokenStore,
        oauth: MetaOAuth,
        graph: GraphAPIClient,
        registry: ToolRegistry,
        ad_account_id: str = "",
    ):
        self.store = store
        self.oauth = oauth
        self.graph = graph
        self.registry = registry
        self.ad_account_id = ad_account_id

    def initialize_result(self, protocol_version: str) -> Dict[str, Any]:
        return {
            "protocolVersion": protocol_version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": APP_NAME, "title": SERVER_NAME, "version": APP_VER},
        }

    def auth_prompt(self, user_id: Optional[str]) -> Dict[str, Any]:
        if user_id:
            text = (
                "Meta Ads authentication required!\n\n"
                f"Connect your Meta Ads account: {self.oauth.authorization_url(user_id)}\n\n"
                "After connecting, please try your request again."
            )
        else:
            text = (
                "Meta Ads authentication required!\n\n"
                "No user id was sent with this request. Send an X-User-Id header "
                "(or Authorization: Bearer <user id>) and try again to get a connect link."
            )
        return {"content": [{"type": "text", "text": text}]}

    async def handle(
        self,
        obj: Any,
        request_headers: Mapping[str, str],
        response_headers: Dict[str, str],
        rid: str = "-",
    ) -> Optional[Dict[str, Any]]:
        """Handle one JSON-RPC object; None for notifications."""
        try:
            validate_envelope(obj)
        except MalformedRequest as e:
            _id = obj.get("id") if isinstance(obj, dict) else None
            return build_jsonrpc_error(_id, e.jsonrpc_code, e.message)

        is_notification = "id" not in obj
        _id = obj.get("id")
        method = obj.get("method")

        def success(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if is_notification:
                return None
            return {"jsonrpc": "2.0", "id": _id, "result": result}

        def error(code: int, message: str, data: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
            if is_notification:
                return None
            return build_jsonrpc_error(_id, code, message, data)

        try:
            params = obj.get("params") or {}
            if not isinstance(params, dict):
                raise InvalidParams("params must be an object")

            # ---------------- initialize ----------------
            if method == "initialize":
                raw_proto = params.get("protocolVersion") or request_headers.get("mcp-protocol-version")
                negotiated = negotiate_protocol_version(raw_proto)
                response_headers["MCP-Protocol-Version"] = negotiated
                log.info("protocol negotiated requested=%s -> %s rid=%s", raw_proto, negotiated, rid)
                return success(self.initialize_result(negotiated))

            # ---------------- initialized ack ----------------
            if method == "notifications/initialized":
                return None

            # ---------------- tools/list ----------------
            if method == "tools/list":
                return success({"tools": self.registry.definitions()})

            # ---------------- tools/call ----------------
            if method == "tools/call":
                return success(await self.call_tool(params, request_headers, rid))

            raise UnknownMethod(method)

        except JSONRPCError as e:
            log.warning("rpc error method=%s rid=%s code=%s msg=%s", method, rid, e.jsonrpc_code, e.message)
            return error(e.jsonrpc_code, e.message, e.data)
        except Exception as e:
            log.exception("rpc internal error method=%s rid=%s", method, rid)
            return error(INTERNAL_ERROR, f"Internal error: {e}")

    async def call_tool(
        self,
        params: Dict[str, Any],
        request_headers: Mapping[str, str],
        rid: str = "-",
    ) -> Dict[str, Any]:
        name = params.get("name")
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            raise InvalidParams("arguments must be an object")

        executor = self.registry.executor(name)  # UnknownTool
        user_id = resolve_user_id(request_headers)

        try:
            cred = await self.store.ensure_fresh(user_id)
        except (NotAuthenticated, RefreshFailed) as e:
            log.info("tools/call auth required name=%s user=%s reason=%s rid=%s",
                     name, user_id, type(e).__name__, rid)
            return self.auth_prompt(user_id)

        ctx = ToolContext(graph=self.graph, access_token=cred.access_token, ad_account_id=self.ad_account_id)
        log.info("tools/call start name=%s user=%s rid=%s", name, user_id, rid)
        try:
            data = await executor(ctx, args)
        except UpstreamError as e:
            log.warning("tools/call upstream error name=%s rid=%s status=%s msg=%s",
                        name, rid, e.status_code, e.message)
            return mcp_upstream_error(e)

        log.info("tools/call ok name=%s rid=%s", name, rid)
        return mcp_ok_text(data)
