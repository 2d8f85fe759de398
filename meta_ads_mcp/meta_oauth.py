from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from .config import Settings
from .errors import UpstreamError
from .graph_client import GraphAPIClient

log = logging.getLogger(__name__)

TOKEN_PATH = "oauth/access_token"


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: Optional[int] = None

    @classmethod
    def from_response(cls, body: Dict[str, Any]) -> "TokenGrant":
        token = body.get("access_token")
        if not token:
            raise UpstreamError("Meta token endpoint returned no access_token", payload=body)
        ttl = body.get("expires_in")
        try:
            ttl = int(ttl) if ttl is not None else None
        except (TypeError, ValueError):
            ttl = None
        return cls(access_token=str(token), expires_in=ttl)


class MetaOAuth:
    """Meta login dialog URL plus the two token-endpoint grants we use."""

    def __init__(self, settings: Settings, graph: GraphAPIClient):
        self.settings = settings
        self.graph = graph

    def authorization_url(self, user_id: str) -> str:
        query = urlencode({
            "client_id": self.settings.app_id,
            "redirect_uri": self.settings.redirect_uri,
            "state": user_id,
            "scope": self.settings.scopes,
            "response_type": "code",
        })
        return f"{self.settings.dialog_url}?{query}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Authorization-code grant: trade the callback code for an access token."""
        body = await self.graph.get(TOKEN_PATH, params={
            "client_id": self.settings.app_id,
            "client_secret": self.settings.app_secret,
            "redirect_uri": self.settings.redirect_uri,
            "code": code,
        })
        grant = TokenGrant.from_response(body)
        log.info("oauth code exchanged expires_in=%s", grant.expires_in)
        return grant

    async def refresh(self, refresh_basis: str) -> TokenGrant:
        """fb_exchange_token grant: trade a still-valid token for a fresh long-lived one."""
        body = await self.graph.get(TOKEN_PATH, params={
            "grant_type": "fb_exchange_token",
            "client_id": self.settings.app_id,
            "client_secret": self.settings.app_secret,
            "fb_exchange_token": refresh_basis,
        })
        grant = TokenGrant.from_response(body)
        log.info("oauth token refreshed expires_in=%s", grant.expires_in)
        return grant
