from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sharegate.cache import AccessCache
from sharegate.models import GrantStatus, TerminationReason
from sharegate.repos.grant_ledger import GrantLedger
from sharegate.schemas.grants import GrantSnapshot
from sharegate.services.events import EventPublisher
from sharegate.storage.blobs import BlobStore
from sharegate.telemetry.metrics import grants_purged_total

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (
    GrantStatus.ACTIVE,
    GrantStatus.EXPIRED,
    GrantStatus.EXHAUSTED,
    GrantStatus.SOFT_DELETED,
)


def termination_reason(grant: GrantSnapshot, now: datetime) -> TerminationReason:
    if grant.status is GrantStatus.SOFT_DELETED:
        return TerminationReason.MANUAL_DELETION
    if grant.status is GrantStatus.EXHAUSTED or grant.quota_spent:
        return TerminationReason.DOWNLOAD_LIMIT_REACHED
    if grant.status is GrantStatus.EXPIRED or grant.past_expiry(now):
        return TerminationReason.TIME_EXPIRED
    return TerminationReason.MANUAL_DELETION


class GrantPurger:
    """Three-way deletion in a fixed order: archive, cache, blob, ledger.

    Each step is idempotent, so a purge interrupted at any point is finished
    by the next attempt (usually the sweeper picking up the leftover row).
    """

    def __init__(
        self,
        ledger: GrantLedger,
        cache: AccessCache,
        blobs: BlobStore,
        events: EventPublisher,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.blobs = blobs
        self.events = events
        self.clock = clock

    async def purge(self, grant: GrantSnapshot, reason: TerminationReason | None = None) -> TerminationReason:
        now = self.clock()
        reason = reason or termination_reason(grant, now)

        await self.ledger.archive(grant, reason, now)
        await self.cache.evict(grant.token)
        await self.blobs.delete(grant.blob_key)
        if grant.status is not GrantStatus.PURGED:
            await self.ledger.transition(
                grant.token, from_statuses=_LIVE_STATUSES, to_status=GrantStatus.PURGED, now=now
            )
        await self.ledger.delete(grant.token)

        grants_purged_total.labels(reason=reason.value).inc()
        logger.info("purged grant token=%s… reason=%s", grant.token[:8], reason.value)
        await self.events.publish(
            "grant_purged",
            subject={"token": grant.token, "owner_id": grant.owner_id},
            payload={"reason": reason.value, "downloads": grant.download_count},
            event_id=f"grant_purged:{grant.token}",
        )
        return reason

    async def purge_quietly(self, grant: GrantSnapshot, reason: TerminationReason | None = None) -> None:
        """Background variant used after a response: failures are left to the sweeper."""
        try:
            await self.purge(grant, reason)
        except Exception:
            logger.warning("inline purge failed for token=%s…, sweeper will retry", grant.token[:8], exc_info=True)
