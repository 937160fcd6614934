from __future__ import annotations

import pytest

from conftest import drain
from sharegate.errors import (
    InvalidPreviewToken,
    PreviewExhausted,
    PreviewExpired,
    PreviewNotSupported,
    QuotaExhausted,
)


@pytest.mark.asyncio
async def test_preview_redeems_exactly_once(services, make_grant):
    g = await make_grant(b"%PDF-1.7 preview", cap=3)
    ticket = await services.previews.issue(g.token, "bob")
    assert ticket.record.max_uses == 1

    d = await services.previews.redeem(g.token, ticket.token)
    assert d.status_code == 200
    assert await drain(d) == b"%PDF-1.7 preview"
    assert d.headers["Content-Disposition"].startswith("inline;")

    with pytest.raises(PreviewExhausted):
        await services.previews.redeem(g.token, ticket.token)
    assert (await services.ledger.get(g.token)).download_count == 0


@pytest.mark.asyncio
async def test_tampered_and_malformed_tokens(services, make_grant):
    g = await make_grant(b"img", name="pic.png", mime="image/png")
    other = await make_grant(b"img2", name="pic2.png", mime="image/png")
    ticket = await services.previews.issue(g.token)
    stamp, sig = ticket.token.split(".", 1)

    malformed = (
        "garbage",
        f"{stamp}.",
        f"\u00b2.{sig}",  # a digit to str.isdigit, not to int()
        f"{stamp}.{sig[:-2]}xx",
        f"{int(stamp) + 1}.{sig}",
    )
    for bad in malformed:
        with pytest.raises(InvalidPreviewToken):
            await services.previews.redeem(g.token, bad)
    # signatures are bound to the parent grant
    with pytest.raises(InvalidPreviewToken):
        await services.previews.redeem(other.token, ticket.token)


@pytest.mark.asyncio
async def test_preview_expires_after_ttl(services, make_grant, clock):
    g = await make_grant(b"clip", name="clip.mp4", mime="video/mp4")
    ticket = await services.previews.issue(g.token)
    clock.advance(seconds=services.previews.ttl_seconds + 1)
    with pytest.raises(PreviewExpired):
        await services.previews.redeem(g.token, ticket.token)


@pytest.mark.asyncio
async def test_only_previewable_types(services, make_grant):
    g = await make_grant(b"PK..", name="bundle.zip", mime="application/zip")
    with pytest.raises(PreviewNotSupported):
        await services.previews.issue(g.token)


@pytest.mark.asyncio
async def test_parent_must_be_deliverable(services, make_grant, clock):
    g = await make_grant(b"text", name="a.txt", mime="text/plain", cap=1)
    ticket = await services.previews.issue(g.token)
    await services.ledger.consume(g.token, clock())
    with pytest.raises(QuotaExhausted):
        await services.previews.redeem(g.token, ticket.token)
    with pytest.raises(QuotaExhausted):
        await services.previews.issue(g.token)


@pytest.mark.asyncio
async def test_previews_are_independent(services, make_grant):
    g = await make_grant(b"text", name="a.txt", mime="text/plain")
    first = await services.previews.issue(g.token)
    second = await services.previews.issue(g.token)
    assert first.token != second.token
    await drain(await services.previews.redeem(g.token, first.token))
    await drain(await services.previews.redeem(g.token, second.token))
