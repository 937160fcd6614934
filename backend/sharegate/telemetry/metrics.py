from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import (  # type: ignore[reportMissingImports]
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from sharegate.errors import TransientStoreError

logger = logging.getLogger(__name__)

api_requests_total = Counter(
    "api_requests_total", "Total API requests", ["method", "endpoint", "status"]
)
api_request_duration_seconds = Histogram(
    "api_request_duration_seconds", "API request duration seconds", ["endpoint"]
)

deliveries_total = Counter("deliveries_total", "Delivery attempts by result", ["result"])
delivered_bytes_total = Counter("delivered_bytes_total", "Bytes scheduled for delivery", ["kind"])
preview_redemptions_total = Counter("preview_redemptions_total", "Preview redemptions by result", ["result"])
grants_created_total = Counter("grants_created_total", "Grants created", ["unlimited"])
grants_purged_total = Counter("grants_purged_total", "Grants purged by termination reason", ["reason"])
sweeps_total = Counter("sweeps_total", "Sweeper runs by outcome", ["outcome"])
sweep_duration_seconds = Histogram("sweep_duration_seconds", "Sweeper run duration seconds")

# set on scrape from the ledger
active_grants_total = Gauge("active_grants_total", "Active grants total")

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request) -> PlainTextResponse:
    """Prometheus metrics endpoint.

    Before rendering, pull the active-grants gauge from the ledger.
    """
    services = getattr(request.app.state, "services", None)
    if services is not None:
        try:
            active_grants_total.set(await services.ledger.count_active())
        except TransientStoreError as e:
            logger.warning("metrics: failed to fetch active grants count: %s", e)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
