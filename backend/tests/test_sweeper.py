from __future__ import annotations

from datetime import timedelta

import pytest

from sharegate.errors import BlobMissing, TransientStoreError
from sharegate.models import GrantStatus, TerminationReason
from sharegate.services.sweeper import SweepResult


async def _expired(make_grant, clock, **kw):
    return await make_grant(
        created_at=clock() - timedelta(hours=2), expires_at=clock() - timedelta(hours=1), **kw
    )


async def _absent_everywhere(services, grant) -> bool:
    if await services.ledger.get(grant.token) is not None:
        return False
    if await services.cache.get(grant.token) is not None:
        return False
    try:
        handle = await services.blobs.open(grant.blob_key)
    except BlobMissing:
        return True
    await handle.aclose()
    return False


@pytest.mark.asyncio
async def test_expired_grant_is_archived_and_removed(services, make_grant, clock):
    g = await _expired(make_grant, clock)
    live = await make_grant(b"still here")

    result = await services.sweeper.sweep()
    assert result == SweepResult(found=1, cleaned=1, failed=0)
    assert await _absent_everywhere(services, g)
    archived = await services.ledger.get_archive(g.token)
    assert archived.reason == TerminationReason.TIME_EXPIRED.value
    assert (await services.ledger.get(live.token)).status is GrantStatus.ACTIVE


@pytest.mark.asyncio
async def test_sweep_is_idempotent(services, make_grant, clock):
    await _expired(make_grant, clock)
    await services.sweeper.sweep()
    assert await services.sweeper.sweep() == SweepResult(found=0, cleaned=0)


@pytest.mark.asyncio
async def test_exhausted_grants_are_swept(services, make_grant, clock):
    g = await make_grant(b"once", cap=1)
    await services.ledger.consume(g.token, clock())
    result = await services.sweeper.sweep()
    assert result.cleaned == 1
    assert (await services.ledger.get_archive(g.token)).reason == TerminationReason.DOWNLOAD_LIMIT_REACHED.value


@pytest.mark.asyncio
async def test_soft_deleted_grants_wait_for_retention(services, make_grant, clock):
    g = await make_grant(b"hidden")
    await services.ledger.transition(
        g.token, from_statuses=(GrantStatus.ACTIVE,), to_status=GrantStatus.SOFT_DELETED, now=clock(), actor="alice"
    )
    assert (await services.sweeper.sweep()).found == 0

    clock.advance(days=8)
    assert (await services.sweeper.sweep()).cleaned == 1
    assert (await services.ledger.get_archive(g.token)).reason == TerminationReason.MANUAL_DELETION.value


@pytest.mark.asyncio
async def test_per_item_failure_does_not_abort_batch(services, make_grant, clock, monkeypatch):
    bad = await _expired(make_grant, clock, name="bad.bin")
    good = await _expired(make_grant, clock, name="good.bin")
    real_delete = services.blobs.delete

    async def failing_delete(key):
        if key == bad.blob_key:
            raise TransientStoreError("blob")
        await real_delete(key)

    monkeypatch.setattr(services.blobs, "delete", failing_delete)
    result = await services.sweeper.sweep()
    assert result == SweepResult(found=2, cleaned=1, failed=1)
    assert await _absent_everywhere(services, good)
    assert await services.ledger.get(bad.token) is not None

    # the next run finishes the interrupted purge without a second archive row
    monkeypatch.setattr(services.blobs, "delete", real_delete)
    assert await services.sweeper.sweep() == SweepResult(found=1, cleaned=1)
    assert await _absent_everywhere(services, bad)


@pytest.mark.asyncio
async def test_unexpected_purge_error_is_counted_not_raised(services, make_grant, clock, monkeypatch):
    bad = await _expired(make_grant, clock, name="bad.bin")
    good = await _expired(make_grant, clock, name="good.bin")
    real_delete = services.blobs.delete

    async def crashing_delete(key):
        if key == bad.blob_key:
            raise RuntimeError("driver blew up")
        await real_delete(key)

    monkeypatch.setattr(services.blobs, "delete", crashing_delete)
    assert await services.sweeper.sweep() == SweepResult(found=2, cleaned=1, failed=1)
    assert await _absent_everywhere(services, good)
    events = services.kv.items("events:queue")
    assert any('"sweep_completed"' in e and '"failed": 1' in e for e in events)


@pytest.mark.asyncio
async def test_scan_failure_reports_zero(services, monkeypatch):
    async def broken_scan(*args, **kwargs):
        raise TransientStoreError("ledger")

    monkeypatch.setattr(services.ledger, "find_terminal", broken_scan)
    assert await services.sweeper.sweep() == SweepResult(found=0, cleaned=0)


@pytest.mark.asyncio
async def test_sweep_publishes_summary_event(services, make_grant, clock):
    await _expired(make_grant, clock)
    await services.sweeper.sweep()
    events = services.kv.items("events:queue")
    assert any('"sweep_completed"' in e and '"cleaned": 1' in e for e in events)
