from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sharegate.errors import TransientStoreError
from sharegate.kv import KeyValueStore

logger = logging.getLogger(__name__)


class EventPublisher:
    """
    Best-effort publisher of delivery and lifecycle events.

    Envelope appended to the ``events:queue`` list:

    {
        "event_id": "<uuid or caller supplied id>",
        "version": 1,
        "type": "delivery_succeeded" | "delivery_denied" | "grant_purged" | ...,
        "source": "api",
        "ts": "ISO8601 UTC",
        "subject": {...},
        "data": {...}
    }

    Idempotency: a caller-supplied ``event_id`` is recorded under
    ``events:seen:<id>`` and a repeated id is not queued again.
    Failures are logged and never reach the caller.
    """

    seen_ttl_seconds = 24 * 3600

    def __init__(self, kv: KeyValueStore, queue_key: str = "events:queue") -> None:
        self.kv = kv
        self.queue_key = queue_key

    async def publish(
        self,
        event_type: str,
        *,
        subject: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        source: str = "api",
        event_id: str | None = None,
        version: int = 1,
    ) -> str:
        eid = event_id or str(uuid.uuid4())

        if event_id is not None:
            try:
                if not await self.kv.add(f"events:seen:{eid}", "1", self.seen_ttl_seconds):
                    return eid
            except TransientStoreError as e:
                logger.warning("EventPublisher: failed to update idempotency key: %s", e)

        envelope = {
            "event_id": eid,
            "version": version,
            "type": event_type,
            "source": source,
            "ts": datetime.now(UTC).isoformat(),
            "subject": subject or {},
            "data": payload or {},
        }

        try:
            await self.kv.append(self.queue_key, json.dumps(envelope, default=str))
        except TransientStoreError as e:
            logger.warning("EventPublisher: failed to publish %s (%s): %s", event_type, eid, e)
        return eid
