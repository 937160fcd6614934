from __future__ import annotations

import os
import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response, status

from sharegate.deps import Services, get_services

router = APIRouter(tags=["health"])
START_TIME = time.time()


def _parse_required(env_val: str | None) -> list[str]:
    if not env_val:
        return ["ledger", "cache", "blobs"]
    items = [x.strip() for x in env_val.split(",") if x.strip()]
    return items or ["ledger", "cache", "blobs"]


async def get_health_checks(services: Services) -> dict[str, Any]:
    checks: dict[str, Any] = {}
    checks["ledger"] = "ok" if await services.ledger.ping() else {"error": "unreachable"}
    checks["cache"] = "ok" if await services.kv.ping() else {"error": "unreachable"}
    checks["blobs"] = "ok" if await services.blobs.ping() else {"error": "unreachable"}
    return checks


@router.get("/health", status_code=status.HTTP_200_OK)
async def health(services: Annotated[Services, Depends(get_services)]) -> dict[str, Any]:
    checks = await get_health_checks(services)
    is_healthy = all(v == "ok" for v in checks.values())
    return {
        "status": "healthy" if is_healthy else "degraded",
        "version": os.getenv("GIT_SHA") or "dev",
        "uptime": time.time() - START_TIME,
        "checks": checks,
    }


@router.get("/live", status_code=status.HTTP_200_OK)
def live() -> dict[str, str]:
    return {"status": "alive"}


@router.get("/ready")
async def ready(services: Annotated[Services, Depends(get_services)], response: Response) -> dict[str, Any]:
    checks = await get_health_checks(services)
    required = _parse_required(os.getenv("READINESS_REQUIRED"))
    if all(checks.get(k) == "ok" for k in required):
        return {"status": "ready", "required": required}
    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {"status": "not_ready", "required": required, "checks": checks}
