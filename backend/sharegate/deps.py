from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from sharegate.cache import AccessCache
from sharegate.config import Settings
from sharegate.db.session import build_engine, build_sessionmaker
from sharegate.kv import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from sharegate.repos.grant_ledger import GrantLedger
from sharegate.services.content_policy import ContentPolicy
from sharegate.services.delivery import DeliveryEngine
from sharegate.services.events import EventPublisher
from sharegate.services.grants import GrantService
from sharegate.services.previews import PreviewBroker
from sharegate.services.purger import GrantPurger
from sharegate.services.sweeper import ReconciliationSweeper
from sharegate.storage.blobs import BlobStore, IpfsBlobStore, LocalBlobStore


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class Services:
    """Everything a request handler or the sweeper task needs, wired once per process."""

    settings: Settings
    engine: AsyncEngine
    kv: KeyValueStore
    blobs: BlobStore
    ledger: GrantLedger
    cache: AccessCache
    events: EventPublisher
    purger: GrantPurger
    delivery: DeliveryEngine
    grants: GrantService
    previews: PreviewBroker
    sweeper: ReconciliationSweeper

    async def aclose(self) -> None:
        await self.blobs.close()
        await self.kv.close()
        await self.engine.dispose()


def build_kv(settings: Settings) -> KeyValueStore:
    if settings.cache_backend == "memory":
        return MemoryKeyValueStore()
    return RedisKeyValueStore.from_url(settings.redis_dsn)


def build_blobs(settings: Settings) -> BlobStore:
    if settings.blob_backend == "ipfs":
        return IpfsBlobStore(settings.ipfs_api_url)
    return LocalBlobStore(settings.blob_root, chunk_size=settings.blob_chunk_bytes)


def build_services(
    settings: Settings,
    *,
    kv: KeyValueStore | None = None,
    blobs: BlobStore | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    engine = build_engine(settings)
    kv = kv or build_kv(settings)
    blobs = blobs or build_blobs(settings)

    ledger = GrantLedger(build_sessionmaker(engine), engine)
    cache = AccessCache(kv, settings.cache_ttl_seconds)
    events = EventPublisher(kv)
    purger = GrantPurger(ledger, cache, blobs, events, clock=clock)
    delivery = DeliveryEngine(
        ledger,
        cache,
        blobs,
        ContentPolicy.from_extensions(settings.sensitive_extensions),
        purger,
        events,
        read_retries=settings.ledger_read_retries,
        clock=clock,
    )
    return Services(
        settings=settings,
        engine=engine,
        kv=kv,
        blobs=blobs,
        ledger=ledger,
        cache=cache,
        events=events,
        purger=purger,
        delivery=delivery,
        grants=GrantService(
            ledger,
            cache,
            blobs,
            delivery,
            purger,
            events,
            default_download_cap=settings.default_download_cap,
            max_upload_bytes=settings.max_upload_bytes,
            clock=clock,
        ),
        previews=PreviewBroker(
            delivery,
            kv,
            secret=settings.preview_secret,
            ttl_seconds=settings.preview_ttl_seconds,
            previewable_prefixes=settings.previewable_mime_prefixes,
            clock=clock,
        ),
        sweeper=ReconciliationSweeper(
            ledger,
            purger,
            events,
            batch_size=settings.sweep_batch_size,
            exhausted_retention=timedelta(seconds=settings.exhausted_retention_seconds),
            soft_delete_retention=timedelta(seconds=settings.soft_delete_retention_seconds),
            clock=clock,
        ),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
