"""Short-lived single-use preview tokens.

A preview token is ``{issued_at_us}.{signature}`` where the signature is an
HMAC-SHA256 over ``parent_token:issued_at_us``. Only the use counter is
stored, under ``preview:{parent_token}:{issued_at_us}``; the token itself is
recomputed on redemption. Redeeming a preview never touches the parent's
download count.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from sharegate.errors import (
    InvalidPreviewToken,
    PreviewExhausted,
    PreviewExpired,
    PreviewNotSupported,
    ShareGateError,
    TransientStoreError,
)
from sharegate.kv import KeyValueStore
from sharegate.schemas.previews import PreviewRecord
from sharegate.services.content_policy import INLINE
from sharegate.services.delivery import NO_CACHE_HEADERS, Delivery, DeliveryEngine, stream_handle
from sharegate.services.ranges import parse_range
from sharegate.telemetry.metrics import delivered_bytes_total, preview_redemptions_total

logger = logging.getLogger(__name__)

_MAX_ISSUE_ATTEMPTS = 5


@dataclass(frozen=True)
class PreviewTicket:
    token: str
    record: PreviewRecord
    expires_at: datetime


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class PreviewBroker:
    def __init__(
        self,
        engine: DeliveryEngine,
        kv: KeyValueStore,
        *,
        secret: str,
        ttl_seconds: int = 300,
        previewable_prefixes: Iterable[str] = ("image/", "video/", "audio/", "text/", "application/pdf"),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self.kv = kv
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = int(ttl_seconds)
        self.previewable_prefixes = tuple(p.lower() for p in previewable_prefixes)
        self.clock = clock or engine.clock

    @staticmethod
    def record_key(parent_token: str, issued_at_us: int) -> str:
        return f"preview:{parent_token}:{issued_at_us}"

    def sign(self, parent_token: str, issued_at_us: int) -> str:
        mac = hmac.new(self._secret, f"{parent_token}:{issued_at_us}".encode(), hashlib.sha256)
        return _b64url(mac.digest())

    def is_previewable(self, mime: str) -> bool:
        return (mime or "").lower().startswith(self.previewable_prefixes)

    async def issue(self, parent_token: str, issued_to: str | None = None) -> PreviewTicket:
        now = self.clock()
        grant = await self.engine.check(await self.engine.resolve(parent_token, authoritative=True), now)
        if not self.is_previewable(grant.mime):
            raise PreviewNotSupported()

        issued_at_us = int(now.timestamp() * 1_000_000)
        for _attempt in range(_MAX_ISSUE_ATTEMPTS):
            record = PreviewRecord(
                parent_token=parent_token,
                issued_at_us=issued_at_us,
                ttl_seconds=self.ttl_seconds,
                issued_to=issued_to,
            )
            if await self.kv.add(self.record_key(parent_token, issued_at_us), record.model_dump_json(), self.ttl_seconds):
                break
            # same microsecond as another preview of this grant
            issued_at_us += 1
        else:
            raise TransientStoreError("cache", "could not allocate a preview slot")

        token = f"{issued_at_us}.{self.sign(parent_token, issued_at_us)}"
        expires_at = datetime.fromtimestamp(issued_at_us / 1_000_000, UTC) + timedelta(seconds=self.ttl_seconds)
        return PreviewTicket(token=token, record=record, expires_at=expires_at)

    def _verify(self, parent_token: str, preview_token: str) -> int:
        stamp, sep, sig = preview_token.partition(".")
        if not sep or not (stamp.isascii() and stamp.isdigit()) or not sig:
            raise InvalidPreviewToken()
        issued_at_us = int(stamp)
        if not hmac.compare_digest(sig, self.sign(parent_token, issued_at_us)):
            raise InvalidPreviewToken()
        return issued_at_us

    async def redeem(self, parent_token: str, preview_token: str, range_header: str | None = None) -> Delivery:
        try:
            delivery = await self._redeem(parent_token, preview_token, range_header)
        except ShareGateError as err:
            preview_redemptions_total.labels(result=err.code).inc()
            raise
        preview_redemptions_total.labels(result="ok").inc()
        return delivery

    async def _redeem(self, parent_token: str, preview_token: str, range_header: str | None) -> Delivery:
        issued_at_us = self._verify(parent_token, preview_token)
        now = self.clock()
        deadline = datetime.fromtimestamp(issued_at_us / 1_000_000, UTC) + timedelta(seconds=self.ttl_seconds)
        if now > deadline:
            raise PreviewExpired()

        key = self.record_key(parent_token, issued_at_us)
        raw = await self.kv.get(key)
        if raw is None:
            raise PreviewExhausted()
        try:
            record = PreviewRecord.model_validate_json(raw)
        except ValidationError as err:
            raise PreviewExhausted() from err
        if record.used_count >= record.max_uses:
            raise PreviewExhausted()

        grant = await self.engine.check(await self.engine.resolve(parent_token, authoritative=True), now)
        handle = await self.engine.blobs.open(grant.blob_key)
        try:
            byte_range = parse_range(range_header, handle.size)
            used = record.model_copy(update={"used_count": record.used_count + 1})
            remaining_ttl = max(1, int((deadline - now).total_seconds()))
            claimed = await self.kv.compare_and_set(
                key,
                raw,
                None if used.used_count >= used.max_uses else used.model_dump_json(),
                remaining_ttl,
            )
            if not claimed:
                raise PreviewExhausted()
        except BaseException:
            await handle.aclose()
            raise

        size = handle.size
        headers = INLINE.headers(grant.mime, grant.display_name)
        headers.update(NO_CACHE_HEADERS)
        headers["Accept-Ranges"] = "bytes"
        if byte_range is None:
            status_code, start, end = 200, 0, size - 1
        else:
            status_code, start, end = 206, byte_range.start, byte_range.end
            headers["Content-Range"] = byte_range.content_range(size)
        length = max(0, end - start + 1)
        headers["Content-Length"] = str(length)
        delivered_bytes_total.labels(kind="preview").inc(length)
        logger.info("preview redeemed token=%s…", parent_token[:8])
        return Delivery(
            status_code=status_code,
            headers=headers,
            body=stream_handle(handle, start, end),
            grant=grant,
            byte_range=byte_range,
        )
