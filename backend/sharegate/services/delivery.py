"""Token resolution, quota enforcement and byte delivery.

The order inside ``DeliveryEngine.deliver`` is fixed: validate the grant,
open the blob handle, resolve the range against the blob size, and only
then charge quota at the ledger. Nothing is charged for a request that
cannot be served.
"""

from __future__ import annotations

import logging
import urllib.parse
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from sharegate.cache import AccessCache
from sharegate.errors import (
    GrantDeleted,
    GrantExpired,
    GrantNotFound,
    QuotaExhausted,
    ShareGateError,
    TransientStoreError,
)
from sharegate.models import GrantStatus, TerminationReason
from sharegate.repos.grant_ledger import GrantLedger
from sharegate.schemas.grants import GrantSnapshot
from sharegate.services.content_policy import ContentPolicy
from sharegate.services.events import EventPublisher
from sharegate.services.purger import GrantPurger
from sharegate.services.ranges import ByteRange, parse_range
from sharegate.storage.blobs import BlobHandle, BlobStore
from sharegate.telemetry.metrics import delivered_bytes_total, deliveries_total

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


class AccessVerdict(str, Enum):
    OK = "ok"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    DELETED = "deleted"
    NOT_FOUND = "not_found"


_VERDICT_ERRORS: dict[AccessVerdict, type[ShareGateError]] = {
    AccessVerdict.EXPIRED: GrantExpired,
    AccessVerdict.EXHAUSTED: QuotaExhausted,
    AccessVerdict.DELETED: GrantDeleted,
    AccessVerdict.NOT_FOUND: GrantNotFound,
}


def authorize(grant: GrantSnapshot | None, now: datetime) -> AccessVerdict:
    if grant is None or grant.status is GrantStatus.PURGED:
        return AccessVerdict.NOT_FOUND
    if grant.status is GrantStatus.SOFT_DELETED:
        return AccessVerdict.DELETED
    if grant.status is GrantStatus.EXPIRED or grant.past_expiry(now):
        return AccessVerdict.EXPIRED
    if grant.status is GrantStatus.EXHAUSTED or grant.quota_spent:
        return AccessVerdict.EXHAUSTED
    return AccessVerdict.OK


def verdict_error(verdict: AccessVerdict) -> ShareGateError:
    return _VERDICT_ERRORS[verdict]()


def expires_in_header(grant: GrantSnapshot, now: datetime) -> str:
    if grant.expires_at is None:
        return "never"
    return f"{max(0, int((grant.expires_at - now).total_seconds()))}s"


@dataclass
class Delivery:
    status_code: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]
    grant: GrantSnapshot
    byte_range: ByteRange | None = None
    # set when this response used the last unit of quota
    purge_after: GrantSnapshot | None = None


async def stream_handle(handle: BlobHandle, start: int, end: int) -> AsyncIterator[bytes]:
    """Yield ``start..end`` and always release the handle, also on client disconnect."""
    try:
        if end >= start:
            async for chunk in handle.iter_range(start, end):
                yield chunk
    finally:
        await handle.aclose()


class DeliveryEngine:
    def __init__(
        self,
        ledger: GrantLedger,
        cache: AccessCache,
        blobs: BlobStore,
        policy: ContentPolicy,
        purger: GrantPurger,
        events: EventPublisher,
        *,
        read_retries: int = 2,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.ledger = ledger
        self.cache = cache
        self.blobs = blobs
        self.policy = policy
        self.purger = purger
        self.events = events
        self.read_retries = max(0, int(read_retries))
        self.clock = clock

    async def read_ledger(self, token: str) -> GrantSnapshot | None:
        """Idempotent ledger read, retried on transient failures."""
        attempt = 0
        while True:
            try:
                return await self.ledger.get(token)
            except TransientStoreError:
                attempt += 1
                if attempt > self.read_retries:
                    raise
                logger.warning("ledger read failed for token=%s…, retry %d", token[:8], attempt)

    async def resolve(self, token: str, *, authoritative: bool = False) -> GrantSnapshot:
        """Cache first unless ``authoritative``; callers that charge no quota pass True."""
        if not authoritative:
            cached = await self.cache.get(token)
            if cached is not None and authorize(cached, self.clock()) is AccessVerdict.OK:
                return cached
        # miss, or a terminal verdict that may be stale: the ledger decides
        grant = await self.read_ledger(token)
        if grant is None:
            await self.cache.invalidate(token)
            raise await self.gone(token)
        await self.cache.put(grant)
        return grant

    async def gone(self, token: str) -> ShareGateError:
        """Error for a token with no ledger row: 410 if it was archived as expired or exhausted."""
        reason = await self.ledger.archived_reason(token)
        if reason is TerminationReason.TIME_EXPIRED:
            return GrantExpired()
        if reason is TerminationReason.DOWNLOAD_LIMIT_REACHED:
            return QuotaExhausted()
        return GrantNotFound()

    async def check(self, grant: GrantSnapshot, now: datetime) -> GrantSnapshot:
        """Raise the terminal error for a grant that may not be served.

        An active row found past its expiry is moved to ``expired`` here; the
        sweeper reclaims it later.
        """
        verdict = authorize(grant, now)
        if verdict is AccessVerdict.OK:
            return grant
        if verdict is AccessVerdict.EXPIRED and grant.status is GrantStatus.ACTIVE:
            updated = await self.ledger.transition(
                grant.token, from_statuses=(GrantStatus.ACTIVE,), to_status=GrantStatus.EXPIRED, now=now
            )
            if updated is not None:
                await self.cache.put(updated)
        raise verdict_error(verdict)

    async def consume(self, token: str, now: datetime) -> GrantSnapshot:
        """Charge one unit of quota. Never retried: a retry could charge twice."""
        updated = await self.ledger.consume(token, now)
        if updated is not None:
            await self.cache.put(updated)
            return updated
        current = await self.read_ledger(token)
        if current is None:
            await self.cache.invalidate(token)
            raise await self.gone(token)
        await self.cache.put(current)
        await self.check(current, now)
        # active and under cap yet the update matched nothing: lost the last unit to a concurrent request
        raise QuotaExhausted()

    async def deliver(self, token: str, range_header: str | None = None) -> Delivery:
        now = self.clock()
        handle: BlobHandle | None = None
        try:
            grant = await self.check(await self.resolve(token), now)
            handle = await self.blobs.open(grant.blob_key)
            byte_range = parse_range(range_header, handle.size)
            updated = await self.consume(token, now)
        except ShareGateError as err:
            if handle is not None:
                await handle.aclose()
            await self._denied(token, err)
            raise
        except BaseException:
            if handle is not None:
                await handle.aclose()
            raise

        size = handle.size
        headers = self.policy.headers_for(updated.display_name, updated.original_name, updated.mime)
        headers.update(NO_CACHE_HEADERS)
        headers.update(
            {
                "Accept-Ranges": "bytes",
                "X-File-Name": urllib.parse.quote(updated.display_name),
                "X-Original-Name": urllib.parse.quote(updated.original_name or updated.display_name),
                "X-File-Size": str(size),
                "X-Remaining-Downloads": updated.remaining_label(),
                "X-Expires-In": expires_in_header(updated, now),
            }
        )
        if byte_range is None:
            status_code, start, end = 200, 0, size - 1
        else:
            status_code, start, end = 206, byte_range.start, byte_range.end
            headers["Content-Range"] = byte_range.content_range(size)
        length = max(0, end - start + 1)
        headers["Content-Length"] = str(length)

        purge_after = updated if updated.status is GrantStatus.EXHAUSTED else None
        result = "partial" if status_code == 206 else "full"
        deliveries_total.labels(result=result).inc()
        delivered_bytes_total.labels(kind="download").inc(length)
        await self.events.publish(
            "delivery_succeeded",
            subject={"token": token, "owner_id": updated.owner_id},
            payload={
                "status": status_code,
                "bytes": length,
                "download_count": updated.download_count,
                "exhausted": purge_after is not None,
            },
        )
        return Delivery(
            status_code=status_code,
            headers=headers,
            body=stream_handle(handle, start, end),
            grant=updated,
            byte_range=byte_range,
            purge_after=purge_after,
        )

    async def purge_exhausted(self, grant: GrantSnapshot) -> None:
        await self.purger.purge_quietly(grant, TerminationReason.DOWNLOAD_LIMIT_REACHED)

    async def _denied(self, token: str, err: ShareGateError) -> None:
        deliveries_total.labels(result=err.code).inc()
        if isinstance(err, TransientStoreError):
            logger.error("delivery failed for token=%s…: %s unavailable", token[:8], err.store)
        await self.events.publish("delivery_denied", subject={"token": token}, payload={"reason": err.code})
