"""
Click ingest — one inbound tracking-link visit.

Flow:
  1. Validate hash syntax                → NotFound
  2. Look up link (must be active)       → NotFound
  3. Resolve target URL                  → NotFound
  4. Redirect loop guard                 → NotFound
  5. Bot check                           → redirect, nothing recorded
  6. Count click + persist ClickEvent    (always, independent of consent)
  7. Per-click overrides, click-id capturers, click listeners
  8. Consent effect (durable token / nothing / transport artifact)
  9. Redirect to target with forwarded query params

Steps 1-4 all raise the same NotFoundError so responses never reveal whether
a link exists.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, assert_never

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core import bot_detection, click_token, consent
from app.core.consent import ConsentState, Transport
from app.core.cookies import (
    CLICKS_COOKIE,
    FRAGMENT_KEY,
    PENDING_COOKIE,
    ClientArtifact,
    clicks_cookie,
    expired_cookie,
    transport_cookie,
)
from app.core.errors import NotFoundError
from app.core.param_injection import (
    enters_namespace,
    extract_click_ids,
    extract_overrides,
    merge_redirect_params,
    with_fragment,
)
from app.core.registry import Registry
from app.models.stores import ClickStore, CorrelationIdStore, LinkDirectory, TargetResolver
from app.models.tables import TrackingLink, as_utc, from_timestamp

import structlog

logger = structlog.get_logger()

# listener(link_hash, target_url, link), fired for every recorded (non-bot) click
ClickListener = Callable[[str, str, TrackingLink], Any]

click_listeners: Registry[ClickListener] = Registry("click_listeners")


@dataclass
class ClickRequest:
    link_hash: str
    user_agent: str | None = None
    query_params: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)
    ip: str | None = None

    def consent_context(self) -> dict[str, Any]:
        return {
            "link_hash": self.link_hash,
            "user_agent": self.user_agent,
            "query_params": self.query_params,
            "cookies": self.cookies,
            "ip": self.ip,
        }


@dataclass
class ClickOutcome:
    location: str
    artifacts: list[ClientArtifact] = field(default_factory=list)
    recorded: bool = False
    is_bot: bool = False
    consent: ConsentState | None = None
    click_event_id: int | None = None


@dataclass
class PickupOutcome:
    consent: ConsentState
    merged: list[str] = field(default_factory=list)
    artifacts: list[ClientArtifact] = field(default_factory=list)

    @property
    def refused(self) -> bool:
        return self.consent != ConsentState.GRANTED


class ClickIngest:
    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.settings = settings
        self.clock = clock
        self.links = LinkDirectory(session)
        self.targets = TargetResolver(settings.base_url)
        self.clicks = ClickStore(session)
        self.click_ids = CorrelationIdStore(session)

    async def handle(self, request: ClickRequest) -> ClickOutcome:
        link_hash = request.link_hash

        # --- 1. Syntax ---
        if not click_token.validate_hash(link_hash):
            raise NotFoundError("malformed_hash")

        # --- 2. Directory lookup ---
        link = await self.links.get(link_hash)
        if link is None or not link.is_active:
            raise NotFoundError("unknown_or_inactive")

        # --- 3. Target ---
        target = self.targets.resolve(link)
        if not target:
            raise NotFoundError("unresolved_target")
        location = merge_redirect_params(target, request.query_params)

        # --- 4. Loop guard ---
        if enters_namespace(location, self.settings.url_prefix):
            logger.error("redirect_loop_detected", hash=link_hash, target=location)
            raise NotFoundError("redirect_loop")

        # --- 5. Bots: redirect only ---
        if bot_detection.is_bot(request.user_agent):
            logger.info("bot_click_skipped", hash=link_hash,
                        ua=(request.user_agent or "")[:200])
            return ClickOutcome(location=location, is_bot=True)

        # --- 6 + 7. Record ---
        now_ts = int(self.clock())
        clicked_at = from_timestamp(now_ts)

        overrides = extract_overrides(link, request.query_params)
        await self.clicks.increment_counter(link_hash, clicked_at.date())
        click_event_id = await self.clicks.insert(link_hash, clicked_at, overrides)

        captured = extract_click_ids(request.query_params)
        for platform, value in captured.items():
            await self.click_ids.store(link_hash, platform, value, clicked_at)

        await self.session.commit()

        for key, listener in click_listeners.items():
            try:
                listener(link_hash, location, link)
            except Exception:
                logger.exception("click_listener_failed", listener=key, hash=link_hash)

        # --- 8. Consent ---
        state = consent.resolve(self.settings, request.consent_context())
        artifacts: list[ClientArtifact] = []

        match state:
            case ConsentState.GRANTED:
                entries = click_token.decode(request.cookies.get(CLICKS_COOKIE))
                entries = click_token.merge(entries, link_hash, now_ts)
                artifacts.append(clicks_cookie(entries, self.settings))
            case ConsentState.DENIED:
                pass
            case ConsentState.UNDETERMINED:
                location = self._defer(link_hash, location, artifacts)
            case _:
                assert_never(state)

        logger.info("click_recorded",
                    hash=link_hash,
                    click_event_id=click_event_id,
                    consent=state.value,
                    overrides=[k for k, v in overrides.items() if v],
                    platforms=list(captured))

        # --- 9. Redirect ---
        return ClickOutcome(
            location=location,
            artifacts=artifacts,
            recorded=True,
            consent=state,
            click_event_id=click_event_id,
        )

    async def pick_up(
        self,
        hashes: list[str],
        cookies: dict[str, str],
        context: dict[str, Any] | None = None,
    ) -> PickupOutcome:
        """Move deferred clicks into the durable token once the visitor consents.

        Only a granted decision touches the durable token. Any other answer
        refuses the pickup but still clears the pending transport cookie.
        Each link is merged with the timestamp of its latest recorded click so
        a later conversion finds that ClickEvent by exact time.
        """
        cleared = expired_cookie(PENDING_COOKIE, httponly=False)
        state = consent.resolve(self.settings, context)
        match state:
            case ConsentState.GRANTED:
                pass
            case ConsentState.DENIED | ConsentState.UNDETERMINED:
                logger.info("pickup_refused", consent=state.value)
                return PickupOutcome(consent=state, artifacts=[cleared])
            case _:
                assert_never(state)

        candidates = [h for h in dict.fromkeys(hashes) if click_token.validate_hash(h)]
        active = await self.links.list_active(candidates)

        entries = click_token.decode(cookies.get(CLICKS_COOKIE))
        merged = []
        for link_hash in candidates:
            if link_hash not in active:
                continue
            click = await self.clicks.latest(link_hash)
            if click is None:
                continue
            entries = click_token.merge(entries, link_hash, int(as_utc(click.clicked_at).timestamp()))
            merged.append(link_hash)

        artifacts = [cleared]
        if merged:
            artifacts.append(clicks_cookie(entries, self.settings))

        logger.info("pickup_merged", requested=len(hashes), merged=len(merged))
        return PickupOutcome(consent=state, merged=merged, artifacts=artifacts)

    def _defer(self, link_hash: str, location: str, artifacts: list[ClientArtifact]) -> str:
        """Undetermined consent: hand the hash over without touching the durable token."""
        method = consent.transport(self.settings)
        match method:
            case Transport.COOKIE:
                artifacts.append(transport_cookie(link_hash, self.settings))
                return location
            case Transport.FRAGMENT:
                return with_fragment(location, FRAGMENT_KEY, link_hash)
            case _:
                assert_never(method)
