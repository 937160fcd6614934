from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile

from sharegate.deps import Services, get_services
from sharegate.errors import UploadTooLarge
from sharegate.schemas.grants import (
    UNLIMITED,
    DeleteOut,
    MyFilesOut,
    OwnedFileOut,
    RestoreOut,
    SweepOut,
    UploadOut,
)
from sharegate.security import Identity, get_identity, require_admin, require_identity
from sharegate.utils.durations import expires_in

log = logging.getLogger(__name__)

router = APIRouter(tags=["grants"])


@router.post("/upload", response_model=UploadOut, status_code=201)
async def upload(
    request: Request,
    services: Annotated[Services, Depends(get_services)],
    identity: Annotated[Identity | None, Depends(get_identity)],
    file: Annotated[UploadFile, File()],
    original_name: Annotated[str | None, Form()] = None,
    expiry: Annotated[str | None, Query(max_length=64)] = None,
    unlimited: Annotated[bool, Query()] = False,
    max_downloads: Annotated[int | None, Query(ge=1, le=1_000_000)] = None,
) -> UploadOut:
    limit = services.settings.max_upload_bytes
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise UploadTooLarge()

    grant = await services.grants.create(
        data,
        file.filename or "file",
        mime=file.content_type,
        original_name=original_name,
        owner_id=identity.sub if identity else None,
        lifetime=expiry,
        unlimited=unlimited,
        max_downloads=max_downloads,
    )
    log.info("grant created token=%s… unlimited=%s", grant.token[:8], grant.unlimited)
    return UploadOut(
        token=grant.token,
        link=str(request.url_for("download", token=grant.token)),
        expires_in=expires_in(grant.expires_at, services.delivery.clock()),
        expires_at=grant.expires_at,
        unlimited=grant.unlimited,
        max_downloads=UNLIMITED if grant.download_cap is None else grant.download_cap,
        remaining_downloads=grant.remaining_label() if grant.unlimited else grant.remaining_downloads or 0,
    )


@router.get("/myfiles", response_model=MyFilesOut)
async def my_files(
    services: Annotated[Services, Depends(get_services)],
    identity: Annotated[Identity, Depends(require_identity)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> MyFilesOut:
    grants = await services.grants.list_owned(identity.sub, page, limit)
    now = services.delivery.clock()
    return MyFilesOut(
        files=[
            OwnedFileOut(
                token=g.token,
                file=g.display_name,
                mime=g.mime,
                status=g.status,
                unlimited=g.unlimited,
                remaining_downloads=g.remaining_label() if g.unlimited else g.remaining_downloads or 0,
                expires_in=expires_in(g.expires_at, now),
                expires_at=g.expires_at,
            )
            for g in grants
        ],
        page=page,
        limit=limit,
    )


@router.delete("/files/{token}", response_model=DeleteOut)
async def delete_file(
    token: str,
    services: Annotated[Services, Depends(get_services)],
    identity: Annotated[Identity, Depends(require_identity)],
    permanent: Annotated[bool, Query()] = False,
) -> DeleteOut:
    if permanent:
        grant = await services.grants.purge(token, identity)
        return DeleteOut(message="File permanently deleted", file_name=grant.display_name, permanent=True)
    grant = await services.grants.soft_delete(token, identity)
    return DeleteOut(message="File deleted", file_name=grant.display_name)


@router.post("/admin/restore/{token}", response_model=RestoreOut)
async def restore_file(
    token: str,
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[Identity, Depends(require_admin)],
) -> RestoreOut:
    grant = await services.grants.restore(token, admin)
    return RestoreOut(message="File restored", file_name=grant.display_name)


@router.post("/admin/sweep", response_model=SweepOut)
async def run_sweep(
    services: Annotated[Services, Depends(get_services)],
    admin: Annotated[Identity, Depends(require_admin)],
) -> SweepOut:
    log.info("manual sweep requested by admin")
    result = await services.sweeper.sweep()
    return SweepOut(found=result.found, cleaned=result.cleaned, failed=result.failed)
