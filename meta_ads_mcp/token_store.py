"""Per-user Meta credentials and proactive refresh.

InMemoryTokenStore keeps credentials for the lifetime of the process only;
nothing survives a restart. A durable store subclasses TokenStore and
implements get/put, ensure_fresh works unchanged on top of it.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import NotAuthenticated, RefreshFailed, UpstreamError
from .meta_oauth import TokenGrant

log = logging.getLogger(__name__)

# Refresh this long before Meta's own expiry.
REFRESH_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_basis: str
    expires_at: Optional[float] = None  # epoch seconds; None means no known expiry

    @classmethod
    def from_grant(cls, grant: TokenGrant, now: float) -> "Credential":
        expires_at = now + grant.expires_in if grant.expires_in else None
        # Meta long-lived tokens are refreshed by exchanging the token itself.
        return cls(access_token=grant.access_token, refresh_basis=grant.access_token, expires_at=expires_at)

    def needs_refresh(self, now: float, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - now <= margin


class TokenStore(abc.ABC):
    def __init__(self, refresher, clock: Callable[[], float] = time.time):
        # refresher: anything with `async refresh(refresh_basis) -> TokenGrant` (MetaOAuth)
        self.refresher = refresher
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    @abc.abstractmethod
    async def get(self, user_id: str) -> Optional[Credential]:
        ...

    @abc.abstractmethod
    async def put(self, user_id: str, credential: Credential) -> None:
        ...

    async def is_authenticated(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        return await self.get(user_id) is not None

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def ensure_fresh(self, user_id: Optional[str]) -> Credential:
        """Return a usable credential for user_id, refreshing it first if it is about to expire.

        Raises NotAuthenticated when nothing is on file and RefreshFailed when the
        refresh exchange is rejected. A failed refresh leaves the stored
        credential in place.
        """
        if not user_id:
            raise NotAuthenticated(user_id)
        cred = await self.get(user_id)
        if cred is None:
            raise NotAuthenticated(user_id)
        if not cred.needs_refresh(self.clock()):
            return cred

        async with self._lock_for(user_id):
            # Another request may have refreshed while we waited.
            cred = await self.get(user_id)
            if cred is None:
                raise NotAuthenticated(user_id)
            if not cred.needs_refresh(self.clock()):
                return cred

            log.info("refreshing Meta token user=%s expires_at=%s", user_id, cred.expires_at)
            try:
                grant = await self.refresher.refresh(cred.refresh_basis)
            except UpstreamError as e:
                log.warning("token refresh failed user=%s: %s", user_id, e)
                raise RefreshFailed(user_id, str(e)) from e

            fresh = Credential.from_grant(grant, self.clock())
            await self.put(user_id, fresh)
            return fresh


class InMemoryTokenStore(TokenStore):
    """Process-local dict keyed by user id. Not durable."""

    def __init__(self, refresher, clock: Callable[[], float] = time.time):
        super().__init__(refresher, clock)
        self._creds: Dict[str, Credential] = {}

    async def get(self, user_id: str) -> Optional[Credential]:
        return self._creds.get(user_id)

    async def put(self, user_id: str, credential: Credential) -> None:
        self._creds[user_id] = credential
