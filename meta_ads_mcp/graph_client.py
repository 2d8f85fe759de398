from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import UpstreamError, UpstreamTimeout

log = logging.getLogger(__name__)


def _error_from_response(resp: httpx.Response) -> UpstreamError:
    """Map a non-2xx Graph API response to UpstreamError.

    Graph errors look like {"error": {"message", "type", "code", "fbtrace_id"}};
    anything else falls back to the HTTP reason phrase.
    """
    payload: Dict[str, Any] = {}
    try:
        body = resp.json()
        if isinstance(body, dict):
            payload = body
    except ValueError:
        pass
    err = payload.get("error") if isinstance(payload.get("error"), dict) else {}
    message = err.get("message") or resp.reason_phrase or f"HTTP {resp.status_code}"
    return UpstreamError(
        message=message,
        status_code=resp.status_code,
        code=err.get("code"),
        payload=payload,
    )


class GraphAPIClient:
    """Thin async wrapper over the Meta Graph API.

    The caller owns the httpx.AsyncClient (one per process); the bearer token is
    passed per call since each MCP user has their own credential.
    """

    def __init__(self, http: httpx.AsyncClient, base_url: str, timeout: float = 30.0):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        url = self._url(path)
        log.debug("graph %s %s params=%s", method, path, sorted((params or {}).keys()))
        try:
            resp = await self.http.request(
                method, url, params=params, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            log.warning("graph timeout %s %s after %.1fs", method, path, self.timeout)
            raise UpstreamTimeout(f"Meta API request timed out: {method} {path}") from e
        except httpx.RequestError as e:
            log.warning("graph transport error %s %s: %s", method, path, e)
            raise UpstreamError(f"Meta API request failed: {e}") from e

        if resp.is_error:
            err = _error_from_response(resp)
            log.warning(
                "graph error %s %s status=%s code=%s msg=%s",
                method, path, err.status_code, err.code, err.message,
            )
            raise err

        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamError("Meta API returned a non-JSON body", status_code=resp.status_code) from e
        return body if isinstance(body, dict) else {"data": body}

    async def get(self, path: str, access_token: Optional[str] = None,
                  params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, access_token, params=params)
