from __future__ import annotations

import logging
import mimetypes
import secrets
from collections.abc import Callable
from datetime import UTC, datetime

from sharegate.cache import AccessCache
from sharegate.errors import (
    GrantDeleted,
    GrantNotFound,
    InvalidUpload,
    PermissionDenied,
    TransientStoreError,
    UploadTooLarge,
)
from sharegate.models import GrantStatus, TerminationReason
from sharegate.repos.grant_ledger import GrantLedger
from sharegate.schemas.grants import GrantSnapshot
from sharegate.security import Identity
from sharegate.services.delivery import DeliveryEngine
from sharegate.services.events import EventPublisher
from sharegate.services.purger import GrantPurger
from sharegate.storage.blobs import BlobStore
from sharegate.telemetry.metrics import grants_created_total
from sharegate.utils.durations import parse_lifetime

logger = logging.getLogger(__name__)

_DELETABLE = (GrantStatus.ACTIVE, GrantStatus.EXPIRED, GrantStatus.EXHAUSTED)


def guess_mime(filename: str, declared: str | None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or "application/octet-stream"


class GrantService:
    """Owner-facing lifecycle: create, list, status, delete, restore."""

    def __init__(
        self,
        ledger: GrantLedger,
        cache: AccessCache,
        blobs: BlobStore,
        engine: DeliveryEngine,
        purger: GrantPurger,
        events: EventPublisher,
        *,
        default_download_cap: int = 5,
        max_upload_bytes: int = 200 * 1024 * 1024,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.blobs = blobs
        self.engine = engine
        self.purger = purger
        self.events = events
        self.default_download_cap = default_download_cap
        self.max_upload_bytes = max_upload_bytes
        self.clock = clock

    async def create(
        self,
        data: bytes,
        filename: str,
        *,
        mime: str | None = None,
        original_name: str | None = None,
        owner_id: str | None = None,
        lifetime: str | None = None,
        unlimited: bool = False,
        max_downloads: int | None = None,
    ) -> GrantSnapshot:
        if not data:
            raise InvalidUpload("empty file")
        if len(data) > self.max_upload_bytes:
            raise UploadTooLarge()
        filename = (filename or "").strip() or "file"
        now = self.clock()
        try:
            expires_at = parse_lifetime(lifetime, now)
        except ValueError as e:
            raise InvalidUpload(str(e)) from e

        if unlimited:
            cap = None
        else:
            cap = self.default_download_cap if max_downloads is None else max_downloads
            if cap < 1:
                raise InvalidUpload("max_downloads must be at least 1")

        # blob, then ledger, then cache
        blob_key = await self.blobs.put(filename, data, owner_id=owner_id)
        draft = GrantSnapshot(
            token=secrets.token_urlsafe(24),
            owner_id=owner_id,
            blob_key=blob_key,
            display_name=filename,
            original_name=(original_name or "").strip() or None,
            mime=guess_mime(original_name or filename, mime),
            size_bytes=len(data),
            created_at=now,
            expires_at=expires_at,
            download_cap=cap,
        )
        try:
            grant = await self.ledger.create(draft)
        except TransientStoreError:
            try:
                await self.blobs.delete(blob_key)
            except TransientStoreError:
                logger.warning("orphan blob left after failed create: %s", blob_key)
            raise
        await self.cache.put(grant)

        grants_created_total.labels(unlimited=str(cap is None).lower()).inc()
        await self.events.publish(
            "grant_created",
            subject={"token": grant.token, "owner_id": owner_id},
            payload={"size": grant.size_bytes, "cap": cap, "expires_at": expires_at},
        )
        return grant

    async def list_owned(self, owner_id: str, page: int = 1, limit: int = 20) -> list[GrantSnapshot]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        return await self.ledger.list_for_owner(owner_id, limit=limit, offset=(page - 1) * limit)

    async def public_status(self, token: str) -> GrantSnapshot:
        """Validity check without consuming quota; raises like a delivery would."""
        return await self.engine.check(await self.engine.resolve(token, authoritative=True), self.clock())

    async def _owned(self, token: str, actor: Identity) -> GrantSnapshot:
        grant = await self.engine.read_ledger(token)
        if grant is None or grant.status is GrantStatus.PURGED:
            raise GrantNotFound()
        if not actor.is_admin and grant.owner_id != actor.sub:
            raise PermissionDenied()
        return grant

    async def soft_delete(self, token: str, actor: Identity) -> GrantSnapshot:
        grant = await self._owned(token, actor)
        updated = await self.ledger.transition(
            token, from_statuses=_DELETABLE, to_status=GrantStatus.SOFT_DELETED, now=self.clock(), actor=actor.sub
        )
        if updated is None:
            raise GrantDeleted() if grant.status is GrantStatus.SOFT_DELETED else GrantNotFound()
        await self.cache.invalidate(token)
        await self.events.publish(
            "grant_soft_deleted", subject={"token": token, "owner_id": grant.owner_id}, payload={"by": actor.sub}
        )
        return updated

    async def restore(self, token: str, actor: Identity) -> GrantSnapshot:
        if not actor.is_admin:
            raise PermissionDenied()
        updated = await self.ledger.transition(
            token, from_statuses=(GrantStatus.SOFT_DELETED,), to_status=GrantStatus.ACTIVE, now=self.clock()
        )
        if updated is None:
            current = await self.engine.read_ledger(token)
            if current is None or current.status is GrantStatus.PURGED:
                raise GrantNotFound()
            return current
        if updated.quota_spent:
            # deleted after its last download: back to exhausted so the sweeper reclaims it
            updated = await self.ledger.transition(
                token, from_statuses=(GrantStatus.ACTIVE,), to_status=GrantStatus.EXHAUSTED, now=self.clock()
            ) or updated
        await self.cache.invalidate(token)
        await self.events.publish("grant_restored", subject={"token": token}, payload={"by": actor.sub})
        return updated

    async def purge(self, token: str, actor: Identity) -> GrantSnapshot:
        if not actor.is_admin:
            raise PermissionDenied()
        grant = await self.engine.read_ledger(token)
        if grant is None:
            raise GrantNotFound()
        await self.purger.purge(grant, TerminationReason.MANUAL_DELETION)
        return grant
