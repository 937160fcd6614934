from __future__ import annotations

import logging

from pydantic import ValidationError

from sharegate.errors import TransientStoreError
from sharegate.kv import KeyValueStore
from sharegate.schemas.grants import GrantSnapshot

logger = logging.getLogger(__name__)


class AccessCache:
    """Advisory mirror of ledger rows keyed by token.

    Never the authority for a quota decision. Read and write failures are
    logged and reported as a miss so the caller falls back to the ledger.
    """

    prefix = "grant:"

    def __init__(self, kv: KeyValueStore, ttl_seconds: int) -> None:
        self.kv = kv
        self.ttl_seconds = int(ttl_seconds)

    def _key(self, token: str) -> str:
        return f"{self.prefix}{token}"

    async def get(self, token: str) -> GrantSnapshot | None:
        try:
            raw = await self.kv.get(self._key(token))
        except TransientStoreError:
            logger.warning("AccessCache.get failed for token=%s…", token[:8], exc_info=True)
            return None
        if not raw:
            return None
        try:
            return GrantSnapshot.model_validate_json(raw)
        except ValidationError:
            logger.debug("AccessCache.get dropping undecodable entry for token=%s…", token[:8], exc_info=True)
            await self.invalidate(token)
            return None

    async def put(self, grant: GrantSnapshot) -> None:
        try:
            await self.kv.set(self._key(grant.token), grant.model_dump_json(), self.ttl_seconds)
        except TransientStoreError:
            logger.warning("AccessCache.put failed for token=%s…", grant.token[:8], exc_info=True)

    async def invalidate(self, token: str) -> None:
        try:
            await self.kv.delete(self._key(token))
        except TransientStoreError:
            logger.warning("AccessCache.invalidate failed for token=%s…", token[:8], exc_info=True)

    async def evict(self, token: str) -> None:
        """Delete as a purge step; unlike ``invalidate`` a failure propagates."""
        await self.kv.delete(self._key(token))
