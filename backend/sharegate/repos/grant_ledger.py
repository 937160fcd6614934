from __future__ import annotations

import logging
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sharegate.db.base import Base, UTCDateTime
from sharegate.errors import TransientStoreError
from sharegate.models import ArchivedGrant, Grant, GrantStatus, TerminationReason
from sharegate.schemas.grants import GrantSnapshot

logger = logging.getLogger(__name__)

_COLUMNS = tuple(Grant.__table__.columns)


def _snapshot(row: Grant | sa.RowMapping) -> GrantSnapshot:
    if isinstance(row, Grant):
        return GrantSnapshot.model_validate(row)
    return GrantSnapshot.model_validate(dict(row))


class GrantLedger:
    """Durable record of every grant; the only authority for quota and expiry."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession], engine: AsyncEngine | None = None) -> None:
        self._sessions = sessions
        self._engine = engine

    async def create_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("create_schema needs the engine")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self._sessions() as s:
                await s.execute(sa.text("SELECT 1"))
            return True
        except SQLAlchemyError:
            logger.debug("ledger ping failed", exc_info=True)
            return False

    # ------------------------------------------------------------------ reads

    async def get(self, token: str) -> GrantSnapshot | None:
        try:
            async with self._sessions() as s:
                row = await s.get(Grant, token)
                return _snapshot(row) if row is not None else None
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err

    async def list_for_owner(self, owner_id: str, *, limit: int, offset: int) -> list[GrantSnapshot]:
        stmt = (
            select(Grant)
            .where(Grant.owner_id == owner_id, Grant.status != GrantStatus.PURGED.value)
            .order_by(Grant.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        try:
            async with self._sessions() as s:
                rows = (await s.scalars(stmt)).all()
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return [_snapshot(r) for r in rows]

    async def count_active(self) -> int:
        try:
            async with self._sessions() as s:
                stmt = select(func.count()).select_from(Grant).where(Grant.status == GrantStatus.ACTIVE.value)
                return int((await s.execute(stmt)).scalar() or 0)
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err

    async def find_terminal(
        self,
        now: datetime,
        *,
        exhausted_retention: timedelta,
        soft_delete_retention: timedelta,
        limit: int,
    ) -> list[GrantSnapshot]:
        """Rows the sweeper must reclaim, oldest first."""
        stmt = (
            select(Grant)
            .where(
                or_(
                    and_(Grant.expires_at.is_not(None), Grant.expires_at < now),
                    and_(
                        Grant.status == GrantStatus.EXHAUSTED.value,
                        or_(Grant.terminated_at.is_(None), Grant.terminated_at <= now - exhausted_retention),
                    ),
                    and_(
                        Grant.status == GrantStatus.SOFT_DELETED.value,
                        or_(Grant.deleted_at.is_(None), Grant.deleted_at <= now - soft_delete_retention),
                    ),
                    Grant.status == GrantStatus.PURGED.value,
                )
            )
            .order_by(Grant.created_at)
            .limit(limit)
        )
        try:
            async with self._sessions() as s:
                rows = (await s.scalars(stmt)).all()
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return [_snapshot(r) for r in rows]

    # ------------------------------------------------------------------ writes

    async def create(self, grant: GrantSnapshot) -> GrantSnapshot:
        row = Grant(
            token=grant.token,
            owner_id=grant.owner_id,
            blob_key=grant.blob_key,
            display_name=grant.display_name,
            original_name=grant.original_name,
            mime=grant.mime,
            size_bytes=grant.size_bytes,
            created_at=grant.created_at,
            expires_at=grant.expires_at,
            download_cap=grant.download_cap,
            download_count=0,
            status=GrantStatus.ACTIVE.value,
        )
        try:
            async with self._sessions() as s, s.begin():
                s.add(row)
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return grant.model_copy(update={"download_count": 0, "status": GrantStatus.ACTIVE})

    async def consume(self, token: str, now: datetime) -> GrantSnapshot | None:
        """Charge one download in a single conditional UPDATE.

        Returns the updated row, or ``None`` when the grant is missing, not
        active, expired or already at its cap. The row flips to ``exhausted``
        in the same statement that uses the last unit.
        """
        reaches_cap = and_(Grant.download_cap.is_not(None), Grant.download_count + 1 >= Grant.download_cap)
        stmt = (
            update(Grant)
            .where(
                Grant.token == token,
                Grant.status == GrantStatus.ACTIVE.value,
                or_(Grant.download_cap.is_(None), Grant.download_count < Grant.download_cap),
                or_(Grant.expires_at.is_(None), Grant.expires_at >= now),
            )
            .values(
                download_count=Grant.download_count + 1,
                status=case((reaches_cap, GrantStatus.EXHAUSTED.value), else_=Grant.status),
                terminated_at=case((reaches_cap, sa.literal(now, UTCDateTime())), else_=Grant.terminated_at),
            )
            .returning(*_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._sessions() as s, s.begin():
                row = (await s.execute(stmt)).mappings().first()
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return _snapshot(row) if row is not None else None

    async def transition(
        self,
        token: str,
        *,
        from_statuses: tuple[GrantStatus, ...],
        to_status: GrantStatus,
        now: datetime,
        actor: str | None = None,
    ) -> GrantSnapshot | None:
        """Conditional status change; ``None`` if the row is not in ``from_statuses``."""
        values: dict[str, object] = {"status": to_status.value}
        if to_status in (GrantStatus.EXPIRED, GrantStatus.EXHAUSTED):
            values["terminated_at"] = now
        elif to_status is GrantStatus.SOFT_DELETED:
            values.update(terminated_at=now, deleted_at=now, deleted_by=actor)
        elif to_status is GrantStatus.ACTIVE:
            values.update(terminated_at=None, deleted_at=None, deleted_by=None)
        stmt = (
            update(Grant)
            .where(Grant.token == token, Grant.status.in_([s.value for s in from_statuses]))
            .values(**values)
            .returning(*_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._sessions() as s, s.begin():
                row = (await s.execute(stmt)).mappings().first()
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return _snapshot(row) if row is not None else None

    async def archive(self, grant: GrantSnapshot, reason: TerminationReason, now: datetime) -> bool:
        """Write the terminal snapshot once. Returns False if it was already archived."""
        try:
            async with self._sessions() as s:
                exists = await s.scalar(
                    select(ArchivedGrant.id).where(ArchivedGrant.original_token == grant.token)
                )
                if exists is not None:
                    return False
                s.add(
                    ArchivedGrant(
                        original_token=grant.token,
                        display_name=grant.display_name,
                        owner_id=grant.owner_id,
                        blob_key=grant.blob_key,
                        mime=grant.mime,
                        size_bytes=grant.size_bytes,
                        created_at=grant.created_at,
                        terminated_at=grant.terminated_at or now,
                        total_downloads=grant.download_count,
                        reason=reason.value,
                    )
                )
                try:
                    await s.commit()
                except IntegrityError:
                    # a concurrent purge archived it first
                    await s.rollback()
                    return False
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return True

    async def get_archive(self, token: str) -> ArchivedGrant | None:
        try:
            async with self._sessions() as s:
                return await s.scalar(select(ArchivedGrant).where(ArchivedGrant.original_token == token))
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err

    async def archived_reason(self, token: str) -> TerminationReason | None:
        try:
            async with self._sessions() as s:
                reason = await s.scalar(
                    select(ArchivedGrant.reason).where(ArchivedGrant.original_token == token)
                )
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return TerminationReason(reason) if reason is not None else None

    async def delete(self, token: str) -> bool:
        try:
            async with self._sessions() as s, s.begin():
                res = await s.execute(delete(Grant).where(Grant.token == token))
        except SQLAlchemyError as err:
            raise TransientStoreError("ledger") from err
        return bool(res.rowcount)
