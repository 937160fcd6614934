# backend/tests/conftest.py
from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from jose import jwt

# minimal env so Settings() builds when sharegate.main is imported
os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite:///./test-import.db")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test_secret")
os.environ.setdefault("PREVIEW_SECRET", "test_preview_secret")
os.environ.setdefault("CORS_ORIGINS", "http://localhost")

from sharegate.config import Settings  # noqa: E402
from sharegate.deps import build_services  # noqa: E402
from sharegate.kv import MemoryKeyValueStore  # noqa: E402
from sharegate.schemas.grants import GrantSnapshot  # noqa: E402

JWT_SECRET = "test_secret"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_dsn=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        auto_create_schema=True,
        cache_backend="memory",
        blob_backend="local",
        blob_root=tmp_path / "blobs",
        jwt_secret=JWT_SECRET,
        preview_secret="test_preview_secret",
        cors_origins_raw="http://localhost",
    )


@pytest_asyncio.fixture
async def services(settings, clock):
    svc = build_services(settings, kv=MemoryKeyValueStore(), clock=clock)
    await svc.ledger.create_schema()
    try:
        yield svc
    finally:
        await svc.aclose()


@pytest.fixture
def make_grant(services, clock):
    """Insert a grant straight into blob store and ledger, bypassing upload validation."""

    async def _make(
        data: bytes = b"x" * 1000,
        *,
        name: str = "report.pdf",
        mime: str = "application/pdf",
        cap: int | None = 5,
        expires_at: datetime | None = None,
        created_at: datetime | None = None,
        owner_id: str | None = "alice",
        original_name: str | None = None,
        token: str | None = None,
    ) -> GrantSnapshot:
        key = await services.blobs.put(name, data, owner_id=owner_id)
        grant = GrantSnapshot(
            token=token or os.urandom(12).hex(),
            owner_id=owner_id,
            blob_key=key,
            display_name=name,
            original_name=original_name,
            mime=mime,
            size_bytes=len(data),
            created_at=created_at or clock(),
            expires_at=expires_at,
            download_cap=cap,
        )
        created = await services.ledger.create(grant)
        await services.cache.put(created)
        return created

    return _make


async def drain(delivery) -> bytes:
    return b"".join([chunk async for chunk in delivery.body])


def bearer(sub: str = "alice", role: str = "user") -> dict[str, str]:
    token = jwt.encode({"sub": sub, "role": role}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}
