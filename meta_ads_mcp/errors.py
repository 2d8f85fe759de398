from __future__ import annotations

from typing import Any, Dict, Optional


class MetaMCPError(Exception):
    """Base class for errors raised by the Meta Ads MCP server."""


# ---------- Credentials ----------
class NotAuthenticated(MetaMCPError):
    def __init__(self, user_id: Optional[str]):
        self.user_id = user_id
        super().__init__(f"No Meta credential on file for user {user_id!r}")


class RefreshFailed(MetaMCPError):
    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Token refresh failed for user {user_id!r}: {reason}")


# ---------- Upstream (Graph API) ----------
class UpstreamError(MetaMCPError):
    """Graph API call failed: non-2xx status or transport error (status_code is None then)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.payload = payload or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"message": self.message}
        if self.status_code is not None:
            out["status_code"] = self.status_code
        if self.code is not None:
            out["code"] = self.code
        return out


class UpstreamTimeout(UpstreamError):
    pass


# ---------- JSON-RPC ----------
class JSONRPCError(MetaMCPError):
    jsonrpc_code = -32603

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.message = message
        self.data = data
        super().__init__(message)


class UnknownTool(JSONRPCError):
    jsonrpc_code = -32601

    def __init__(self, name: Any):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class UnknownMethod(JSONRPCError):
    jsonrpc_code = -32601

    def __init__(self, method: Any):
        self.method = method
        super().__init__("Method not found", {"method": method})


PARSE_ERROR = -32700
INVALID_REQUEST = -32600
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class MalformedRequest(JSONRPCError):
    """Body is not JSON (-32700) or not a valid JSON-RPC envelope (-32600)."""

    jsonrpc_code = INVALID_REQUEST

    def __init__(self, message: str = "Invalid Request", code: int = INVALID_REQUEST):
        super().__init__(message)
        self.jsonrpc_code = code


class InvalidParams(JSONRPCError):
    """Tool arguments failed validation."""

    jsonrpc_code = INVALID_PARAMS

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid params: {detail}")
