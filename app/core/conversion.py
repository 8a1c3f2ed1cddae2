"""
Conversion trigger — turns the visitor's click token into weighted credit.

Flow:
  1. Decode durable token                         → no_token
  2. Per-link dedup window (optional)             → deduplicated
  3. Keep active links only                       → no_valid_links
  4. Weighting policy → {hash: credit}
  5. Match each credited link to its ClickEvent   → no_matching_clicks
  6. Insert all conversion rows in one txn        → rolled_back
  7. Dedup markers, conversion listeners
  8. Reporter fan-out into the delivery queue, then signal the scheduler
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core import attribution, click_token
from app.core.cookies import ClientArtifact, CookieDedupStore
from app.core.errors import TransactionError
from app.core.queue import JobQueue, ScheduleSignal
from app.core.registry import Registry
from app.core.reporters import JobSpec, reporters
from app.models.stores import ClickStore, ConversionStore, CorrelationIdStore, LinkDirectory
from app.models.tables import ClickEvent, TrackingLink, from_timestamp

import structlog

logger = structlog.get_logger()


@dataclass
class ConversionContext:
    timestamp: int
    ip: str | None = None
    user_agent: str | None = None
    origin: str | None = None
    page_url: str | None = None


# listener(credits, context), fired once per recorded conversion
ConversionListener = Callable[[dict[str, float], ConversionContext], Any]

conversion_listeners: Registry[ConversionListener] = Registry("conversion_listeners")


class ConversionStatus(str, Enum):
    NO_TOKEN = "no_token"
    DEDUPLICATED = "deduplicated"
    NO_VALID_LINKS = "no_valid_links"
    NO_MATCHING_CLICKS = "no_matching_clicks"
    ROLLED_BACK = "rolled_back"
    RECORDED = "recorded"


@dataclass
class ConversionOutcome:
    status: ConversionStatus
    credits: dict[str, float] = field(default_factory=dict)
    conversion_ids: list[int] = field(default_factory=list)
    jobs_enqueued: int = 0
    artifacts: list[ClientArtifact] = field(default_factory=list)

    @property
    def recorded(self) -> bool:
        return self.status == ConversionStatus.RECORDED


def campaign_fields(link: TrackingLink, click: ClickEvent) -> dict[str, str | None]:
    """Fixed link attributes, with per-click overrides filling the blank ones."""
    return {
        "source": link.source,
        "medium": link.medium,
        "campaign": link.campaign,
        "content": link.content or click.utm_content,
        "term": link.term or click.utm_term,
        "id": link.utm_id or click.utm_id,
        "group": link.source_platform or click.utm_source_platform,
    }


class ConversionEngine:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        schedule: ScheduleSignal | None = None,
    ):
        self.session = session
        self.settings = settings
        self.schedule = schedule
        self.links = LinkDirectory(session)
        self.clicks = ClickStore(session)
        self.conversions = ConversionStore(session)
        self.click_ids = CorrelationIdStore(session)
        self.queue = JobQueue(session, settings)

    async def trigger(
        self,
        raw_token: str | None,
        dedup: CookieDedupStore,
        context: ConversionContext,
    ) -> ConversionOutcome:
        now = context.timestamp

        # --- 1. Token ---
        entries = click_token.decode(raw_token)
        if not entries:
            return ConversionOutcome(ConversionStatus.NO_TOKEN)

        # --- 2. Dedup, each link on its own ---
        window = self.settings.dedup_seconds
        if window > 0:
            kept = {}
            for link_hash, ts in entries.items():
                last = dedup.get(link_hash)
                if last is not None and now - last < window:
                    logger.info("conversion_deduplicated", hash=link_hash, last_conversion=last)
                    continue
                kept[link_hash] = ts
            if not kept:
                return ConversionOutcome(ConversionStatus.DEDUPLICATED)
            entries = kept

        # --- 3. Directory ---
        active = await self.links.get_active_many(entries)
        entries = {h: ts for h, ts in entries.items() if h in active}
        if not entries:
            return ConversionOutcome(ConversionStatus.NO_VALID_LINKS)

        # --- 4. Weighting ---
        credits = attribution.weigh(entries, self.settings.attribution_model, now)
        credits = {h: c for h, c in credits.items() if c > 0}

        # --- 5. Click rows ---
        matched: dict[str, ClickEvent] = {}
        for link_hash in credits:
            click = await self.clicks.find(link_hash, from_timestamp(entries[link_hash]))
            if click is None:
                logger.warning("conversion_click_missing", hash=link_hash, clicked_at=entries[link_hash])
                continue
            matched[link_hash] = click

        if not matched:
            return ConversionOutcome(ConversionStatus.NO_MATCHING_CLICKS)

        if len(matched) < len(credits):
            # Spread the missing links' share over the ones we can record
            total = sum(credits[h] for h in matched)
            credits = {h: credits[h] / total for h in matched}

        # --- 6. Write, all or nothing ---
        rows = [(matched[h].id, credit) for h, credit in credits.items()]
        try:
            conversion_ids = await self.conversions.insert_all(rows, from_timestamp(now))
        except TransactionError as e:
            logger.error("conversion_rolled_back", links=len(rows), error=str(e))
            return ConversionOutcome(ConversionStatus.ROLLED_BACK)

        logger.info("conversion_recorded",
                    model=self.settings.attribution_model,
                    credits={h[:12]: round(c, 6) for h, c in credits.items()})

        # --- 7. Dedup markers + listeners ---
        artifacts = []
        if window > 0:
            for link_hash in credits:
                dedup.set(link_hash, now)
            artifacts.append(dedup.to_artifact(self.settings))

        for key, listener in conversion_listeners.items():
            try:
                listener(dict(credits), context)
            except Exception:
                logger.exception("conversion_listener_failed", listener=key)

        # --- 8. Fan-out ---
        jobs = await self._fan_out(credits, active, matched, context)

        return ConversionOutcome(
            status=ConversionStatus.RECORDED,
            credits=credits,
            conversion_ids=conversion_ids,
            jobs_enqueued=jobs,
            artifacts=artifacts,
        )

    async def _fan_out(
        self,
        credits: dict[str, float],
        links: dict[str, TrackingLink],
        clicks: dict[str, ClickEvent],
        context: ConversionContext,
    ) -> int:
        if len(reporters) == 0:
            return 0

        click_ids = await self.click_ids.get_for_hashes(credits)
        campaigns = {h: campaign_fields(links[h], clicks[h]) for h in credits}

        enqueued = 0
        for key, reporter in reporters.items():
            try:
                specs = [
                    spec if isinstance(spec, JobSpec) else JobSpec(payload=spec)
                    for spec in reporter.enqueue(dict(credits), click_ids, campaigns, context) or []
                ]
                # Payloads land in a JSON column; reject the batch before it reaches the session
                for spec in specs:
                    json.dumps(spec.payload)
            except Exception:
                logger.exception("reporter_enqueue_failed", reporter=key)
                continue

            for spec in specs:
                await self.queue.enqueue(key, spec.payload, spec.label, spec.retry)
                enqueued += 1

        if enqueued:
            await self.session.commit()
            logger.info("conversion_jobs_enqueued", jobs=enqueued)
            if self.schedule is not None:
                self.schedule(from_timestamp(context.timestamp))
        return enqueued
