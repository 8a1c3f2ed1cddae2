"""
Store layer over the async session.

Each store wraps one table and offers exactly the primitive the pipeline
relies on:
  - LinkDirectory       → identity + active flag lookups (read-only)
  - TargetResolver      → link → absolute redirect URL
  - ClickStore          → click insert/find + atomic counter upsert-increment
  - CorrelationIdStore  → (hash, platform) upsert of platform click IDs
  - ConversionStore     → all-or-nothing multi-row conversion insert

Stores never commit on their own except where the primitive is itself a
transaction (ConversionStore.insert_all).
"""

import datetime
from typing import Iterable
from urllib.parse import urljoin

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import TransactionError
from app.models.tables import (
    ClickCounter,
    ClickEvent,
    Conversion,
    LinkStatus,
    PlatformClickId,
    TrackingLink,
)

import structlog

logger = structlog.get_logger()

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def upsert_insert(session: AsyncSession, model):
    """Dialect-specific INSERT that supports ON CONFLICT DO UPDATE."""
    dialect = session.get_bind().dialect.name
    insert_fn = _UPSERT_DIALECTS.get(dialect)
    if insert_fn is None:
        raise NotImplementedError(f"No atomic upsert for dialect {dialect!r}")
    return insert_fn(model)


def mask(value: str, visible: int = 4) -> str:
    """Mask all but the last `visible` chars, for logging identifiers."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


class LinkDirectory:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, link_hash: str) -> TrackingLink | None:
        stmt = select(TrackingLink).where(TrackingLink.hash == link_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_many(self, hashes: Iterable[str]) -> dict[str, TrackingLink]:
        hashes = list(hashes)
        if not hashes:
            return {}
        stmt = select(TrackingLink).where(
            TrackingLink.hash.in_(hashes),
            TrackingLink.status == LinkStatus.ACTIVE.value,
        )
        result = await self.session.execute(stmt)
        return {link.hash: link for link in result.scalars().all()}

    async def list_active(self, hashes: Iterable[str]) -> set[str]:
        return set(await self.get_active_many(hashes))


class TargetResolver:
    """Resolves a link's target. Relative targets are joined onto base_url."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/") + "/"

    def resolve(self, link: TrackingLink) -> str | None:
        target = (link.target_url or "").strip()
        if not target:
            return None
        return urljoin(self.base_url, target)


class ClickStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(
        self,
        link_hash: str,
        clicked_at: datetime.datetime,
        overrides: dict[str, str | None] | None = None,
    ) -> int:
        event = ClickEvent(hash=link_hash, clicked_at=clicked_at, **(overrides or {}))
        self.session.add(event)
        await self.session.flush()
        return event.id

    async def find(self, link_hash: str, clicked_at: datetime.datetime) -> ClickEvent | None:
        """Exact-timestamp lookup, used to tie a token entry to its click row."""
        stmt = (
            select(ClickEvent)
            .where(ClickEvent.hash == link_hash, ClickEvent.clicked_at == clicked_at)
            .order_by(ClickEvent.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest(self, link_hash: str) -> ClickEvent | None:
        stmt = (
            select(ClickEvent)
            .where(ClickEvent.hash == link_hash)
            .order_by(ClickEvent.clicked_at.desc(), ClickEvent.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def increment_counter(self, link_hash: str, day: datetime.date) -> None:
        """INSERT .. ON CONFLICT DO UPDATE clicks = clicks + 1 — no read-modify-write."""
        stmt = upsert_insert(self.session, ClickCounter).values(hash=link_hash, day=day, clicks=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ClickCounter.hash, ClickCounter.day],
            set_={"clicks": ClickCounter.clicks + 1},
        )
        await self.session.execute(stmt)

    async def clicks_on(self, link_hash: str, day: datetime.date) -> int:
        stmt = select(ClickCounter.clicks).where(
            ClickCounter.hash == link_hash, ClickCounter.day == day
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or 0


class CorrelationIdStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def store(
        self,
        link_hash: str,
        platform: str,
        click_id: str,
        clicked_at: datetime.datetime,
    ) -> None:
        stmt = upsert_insert(self.session, PlatformClickId).values(
            hash=link_hash, platform=platform, click_id=click_id, clicked_at=clicked_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[PlatformClickId.hash, PlatformClickId.platform],
            set_={"click_id": stmt.excluded.click_id, "clicked_at": stmt.excluded.clicked_at},
        )
        await self.session.execute(stmt)
        logger.debug("click_id_stored", hash=link_hash[:12], platform=platform, click_id=mask(click_id))

    async def get_for_hashes(self, hashes: Iterable[str]) -> dict[str, dict[str, str]]:
        """hash → {platform → click_id}"""
        hashes = list(hashes)
        if not hashes:
            return {}
        stmt = select(PlatformClickId).where(PlatformClickId.hash.in_(hashes))
        result = await self.session.execute(stmt)

        found: dict[str, dict[str, str]] = {}
        for row in result.scalars().all():
            found.setdefault(row.hash, {})[row.platform] = row.click_id
        return found

    async def cleanup(self, cutoff: datetime.datetime) -> int:
        stmt = delete(PlatformClickId).where(PlatformClickId.clicked_at < cutoff).execution_options(
            synchronize_session=False
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0


class ConversionStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _insert(self, click_event_id: int, credit: float, converted_at: datetime.datetime) -> int:
        row = Conversion(
            click_event_id=click_event_id,
            converted_at=converted_at,
            fractional_conversion=credit,
        )
        self.session.add(row)
        await self.session.flush()
        return row.id

    async def insert_all(
        self,
        rows: list[tuple[int, float]],
        converted_at: datetime.datetime,
    ) -> list[int]:
        """Insert (click_event_id, credit) rows in one transaction.

        Any failure rolls back every row of this call and raises TransactionError.
        """
        try:
            ids = [await self._insert(click_event_id, credit, converted_at) for click_event_id, credit in rows]
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise TransactionError(str(exc)) from exc
        return ids
