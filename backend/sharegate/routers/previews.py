from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import StreamingResponse

from sharegate.deps import Services, get_services
from sharegate.routers.delivery import delivery_response
from sharegate.schemas.previews import PreviewOut
from sharegate.security import Identity, get_identity

router = APIRouter(prefix="/preview", tags=["previews"])


@router.post("/{token}", response_model=PreviewOut, status_code=201)
async def issue_preview(
    token: str,
    request: Request,
    services: Annotated[Services, Depends(get_services)],
    identity: Annotated[Identity | None, Depends(get_identity)],
) -> PreviewOut:
    ticket = await services.previews.issue(token, identity.sub if identity else None)
    return PreviewOut(
        preview_token=ticket.token,
        url=str(request.url_for("redeem_preview", token=token, preview_token=ticket.token)),
        expires_at=ticket.expires_at,
        max_uses=ticket.record.max_uses,
    )


@router.get("/{token}/{preview_token}", response_model=None)
async def redeem_preview(
    token: str,
    preview_token: str,
    services: Annotated[Services, Depends(get_services)],
    range_header: Annotated[str | None, Header(alias="Range")] = None,
) -> StreamingResponse:
    delivery = await services.previews.redeem(token, preview_token, range_header)
    return delivery_response(delivery)
