from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from sharegate.deps import Services, get_services
from sharegate.schemas.grants import PublicStatusOut
from sharegate.security import Identity, get_identity
from sharegate.services.delivery import Delivery
from sharegate.utils.durations import expires_in

router = APIRouter(tags=["delivery"])


def delivery_response(delivery: Delivery, background: BackgroundTask | None = None) -> StreamingResponse:
    resp = StreamingResponse(delivery.body, status_code=delivery.status_code, background=background)
    # header values may carry UTF-8 (the unlimited marker), which Starlette would encode as latin-1
    resp.raw_headers.extend(
        (name.lower().encode("latin-1"), value.encode("utf-8")) for name, value in delivery.headers.items()
    )
    return resp


@router.get("/r/{token}", response_model=None)
async def download(
    token: str,
    services: Annotated[Services, Depends(get_services)],
    range_header: Annotated[str | None, Header(alias="Range")] = None,
) -> StreamingResponse:
    delivery = await services.delivery.deliver(token, range_header)
    background = None
    if delivery.purge_after is not None:
        background = BackgroundTask(services.delivery.purge_exhausted, delivery.purge_after)
    return delivery_response(delivery, background)


@router.get("/status/{token}", response_model=PublicStatusOut)
async def public_status(
    token: str,
    services: Annotated[Services, Depends(get_services)],
    identity: Annotated[Identity | None, Depends(get_identity)],
) -> PublicStatusOut:
    grant = await services.grants.public_status(token)
    out = PublicStatusOut(
        file_name=grant.display_name,
        file_size=grant.size_bytes,
        mime=grant.mime,
        download_count=grant.download_count,
        remaining_downloads=grant.remaining_label() if grant.unlimited else grant.remaining_downloads or 0,
        unlimited=grant.unlimited,
        expires_at=grant.expires_at,
        never_expires=grant.expires_at is None,
    )
    if identity is not None and (identity.is_admin or identity.sub == grant.owner_id):
        out.owner = grant.owner_id
        out.status = grant.status
        out.expires_in = expires_in(grant.expires_at, services.delivery.clock())
    return out
