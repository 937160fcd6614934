from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class PreviewRecord(BaseModel):
    parent_token: str
    issued_at_us: int
    ttl_seconds: int
    max_uses: int = 1
    used_count: int = 0
    issued_to: str | None = None


class PreviewOut(BaseModel):
    preview_token: str
    url: str
    expires_at: datetime
    max_uses: int
