"""Tests for the click ingest state machine."""

import pytest
from sqlalchemy import func, select

from app.core import click_token, consent, ingest, param_injection
from app.core.cookies import CLICKS_COOKIE, PENDING_COOKIE
from app.core.errors import NotFoundError
from app.core.ingest import ClickIngest, ClickRequest
from app.models.tables import ClickEvent, PlatformClickId, from_timestamp

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _request(link_hash, **kwargs):
    kwargs.setdefault("user_agent", CHROME_UA)
    return ClickRequest(link_hash=link_hash, **kwargs)


async def _click_count(session):
    return (await session.execute(select(func.count()).select_from(ClickEvent))).scalar_one()


class TestNotFound:
    @pytest.mark.asyncio
    async def test_malformed_hash(self, session, settings):
        with pytest.raises(NotFoundError) as exc:
            await ClickIngest(session, settings).handle(_request("not-a-hash"))
        assert exc.value.reason == "malformed_hash"

    @pytest.mark.asyncio
    async def test_unknown_link(self, session, settings, link_hash):
        with pytest.raises(NotFoundError):
            await ClickIngest(session, settings).handle(_request(link_hash(1)))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["inactive", "deleted"])
    async def test_inactive_link(self, session, settings, make_link, link_hash, status):
        await make_link(1, status=status)
        with pytest.raises(NotFoundError):
            await ClickIngest(session, settings).handle(_request(link_hash(1)))

    @pytest.mark.asyncio
    async def test_no_target(self, session, settings, make_link, link_hash):
        await make_link(1, target_url="  ")
        with pytest.raises(NotFoundError) as exc:
            await ClickIngest(session, settings).handle(_request(link_hash(1)))
        assert exc.value.reason == "unresolved_target"

    @pytest.mark.asyncio
    async def test_redirect_loop(self, session, settings, make_link, link_hash):
        await make_link(1, target_url=f"/ad/{link_hash(2)}")
        with pytest.raises(NotFoundError) as exc:
            await ClickIngest(session, settings).handle(_request(link_hash(1)))
        assert exc.value.reason == "redirect_loop"
        assert await _click_count(session) == 0


class TestRecording:
    @pytest.mark.asyncio
    async def test_granted_click(self, session, settings, make_link, link_hash, clock):
        await make_link(1)
        outcome = await ClickIngest(session, settings, clock=clock).handle(
            _request(link_hash(1), query_params={"utm_medium": "x"})
        )

        assert outcome.recorded
        assert outcome.location == "https://shop.example.com/landing?utm_medium=x"
        [artifact] = outcome.artifacts
        assert artifact.name == CLICKS_COOKIE
        assert artifact.httponly is True
        assert artifact.max_age == 90 * 86400
        assert click_token.decode(artifact.value) == {link_hash(1): clock.now}

        event = await session.get(ClickEvent, outcome.click_event_id)
        assert event.hash == link_hash(1)

    @pytest.mark.asyncio
    async def test_relative_target_joined_to_base_url(self, session, settings, make_link, link_hash):
        await make_link(1, target_url="/sale?x=1")
        outcome = await ClickIngest(session, settings).handle(_request(link_hash(1)))
        assert outcome.location == "https://shop.example.com/sale?x=1"

    @pytest.mark.asyncio
    async def test_counter_increments(self, session, settings, make_link, link_hash, clock):
        await make_link(1)
        ingest_ = ClickIngest(session, settings, clock=clock)
        await ingest_.handle(_request(link_hash(1)))
        await ingest_.handle(_request(link_hash(1)))

        day = from_timestamp(clock.now).date()
        assert await ingest_.clicks.clicks_on(link_hash(1), day) == 2

    @pytest.mark.asyncio
    async def test_overrides_only_fill_blank_fields(self, session, settings, make_link, link_hash):
        await make_link(1, content="preset")
        outcome = await ClickIngest(session, settings).handle(
            _request(link_hash(1), query_params={"utm_content": "banner", "mtm_kwd": "shoes"})
        )
        event = await session.get(ClickEvent, outcome.click_event_id)
        assert event.utm_content is None
        assert event.utm_term == "shoes"

    @pytest.mark.asyncio
    async def test_click_ids_upserted(self, session, settings, make_link, link_hash, clock):
        param_injection.enable_known_capturers(["google_ads"])
        await make_link(1)
        ingest_ = ClickIngest(session, settings, clock=clock)

        await ingest_.handle(_request(link_hash(1), query_params={"gclid": "first"}))
        clock.tick(5)
        await ingest_.handle(_request(link_hash(1), query_params={"gclid": "second"}))

        rows = (await session.execute(select(PlatformClickId))).scalars().all()
        assert [(r.platform, r.click_id) for r in rows] == [("google_ads", "second")]

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_break_click(self, session, settings, make_link, link_hash):
        seen = []
        ingest.click_listeners.register("boom", lambda h, url, link: 1 / 0)
        ingest.click_listeners.register("spy", lambda h, url, link: seen.append((h, url)))
        await make_link(1)

        outcome = await ClickIngest(session, settings).handle(_request(link_hash(1)))
        assert outcome.recorded
        assert seen == [(link_hash(1), "https://shop.example.com/landing")]

    @pytest.mark.asyncio
    async def test_fifty_one_clicks_keep_fifty(self, session, settings, make_link, link_hash, clock):
        ingest_ = ClickIngest(session, settings, clock=clock)
        cookies = {}
        for n in range(1, 52):
            await make_link(n)
            clock.tick()
            outcome = await ingest_.handle(_request(link_hash(n), cookies=cookies))
            cookies = {CLICKS_COOKIE: outcome.artifacts[0].value}

        entries = click_token.decode(cookies[CLICKS_COOKIE])
        assert len(entries) == 50
        assert link_hash(1) not in entries
        assert link_hash(51) in entries

    @pytest.mark.asyncio
    async def test_malformed_cookie_starts_fresh(self, session, settings, make_link, link_hash, clock):
        await make_link(1)
        outcome = await ClickIngest(session, settings, clock=clock).handle(
            _request(link_hash(1), cookies={CLICKS_COOKIE: "tampered"})
        )
        assert click_token.decode(outcome.artifacts[0].value) == {link_hash(1): clock.now}


class TestBots:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("ua", ["Googlebot/2.1", None])
    async def test_bot_redirected_but_not_recorded(self, session, settings, make_link, link_hash, ua):
        await make_link(1)
        outcome = await ClickIngest(session, settings).handle(_request(link_hash(1), user_agent=ua))

        assert outcome.is_bot
        assert not outcome.recorded
        assert outcome.location == "https://shop.example.com/landing"
        assert outcome.artifacts == []
        assert await _click_count(session) == 0


class TestConsentEffects:
    @pytest.mark.asyncio
    async def test_denied_records_click_without_artifacts(self, session, settings, make_link, link_hash):
        consent.set_decision_source(lambda ctx: False)
        await make_link(1)

        outcome = await ClickIngest(session, settings).handle(_request(link_hash(1)))
        assert outcome.recorded
        assert outcome.artifacts == []
        assert await _click_count(session) == 1

    @pytest.mark.asyncio
    async def test_undetermined_sets_transport_cookie_only(self, session, settings, make_link, link_hash):
        settings = settings.model_copy(update={"default_consent": "undetermined"})
        await make_link(1)

        outcome = await ClickIngest(session, settings).handle(
            _request(link_hash(1), cookies={CLICKS_COOKIE: f"{link_hash(9)}:100"})
        )

        assert outcome.recorded
        assert outcome.location == "https://shop.example.com/landing"
        [artifact] = outcome.artifacts
        assert artifact.name == PENDING_COOKIE
        assert artifact.value == link_hash(1)
        assert artifact.max_age == 60
        assert artifact.httponly is False

    @pytest.mark.asyncio
    async def test_undetermined_fragment_transport(self, session, settings, make_link, link_hash):
        settings = settings.model_copy(update={
            "default_consent": "undetermined",
            "pending_transport": "fragment",
        })
        await make_link(1)

        outcome = await ClickIngest(session, settings).handle(_request(link_hash(1)))
        assert outcome.artifacts == []
        assert outcome.location == f"https://shop.example.com/landing#_aah={link_hash(1)}"


class TestPickup:
    @pytest.mark.asyncio
    async def test_merges_latest_click_timestamp(self, session, settings, make_link, link_hash, clock):
        settings = settings.model_copy(update={"default_consent": "undetermined"})
        await make_link(1)
        ingest_ = ClickIngest(session, settings, clock=clock)
        await ingest_.handle(_request(link_hash(1)))
        clicked = clock.now
        clock.tick(30)

        consent.set_decision_source(lambda ctx: True)
        outcome = await ingest_.pick_up([link_hash(1), link_hash(2), "junk"], {})
        assert outcome.consent == consent.ConsentState.GRANTED
        assert outcome.merged == [link_hash(1)]
        durable = [a for a in outcome.artifacts if a.name == CLICKS_COOKIE]
        assert click_token.decode(durable[0].value) == {link_hash(1): clicked}
        cleared = [a for a in outcome.artifacts if a.name == PENDING_COOKIE]
        assert cleared[0].max_age == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("decision", [False, None])
    async def test_refused_unless_granted(self, session, settings, make_link, link_hash, clock, decision):
        await make_link(1)
        ingest_ = ClickIngest(session, settings, clock=clock)
        await ingest_.handle(_request(link_hash(1)))

        consent.set_decision_source(lambda ctx: decision)
        outcome = await ingest_.pick_up([link_hash(1)], {})
        assert outcome.refused
        assert outcome.merged == []
        assert [a.name for a in outcome.artifacts] == [PENDING_COOKIE]
        assert outcome.artifacts[0].max_age == 0

    @pytest.mark.asyncio
    async def test_undetermined_default_does_not_write_token(self, session, settings, make_link, link_hash):
        settings = settings.model_copy(update={"default_consent": "undetermined"})
        await make_link(1)
        ingest_ = ClickIngest(session, settings)
        await ingest_.handle(_request(link_hash(1)))

        outcome = await ingest_.pick_up([link_hash(1)], {})
        assert outcome.consent == consent.ConsentState.UNDETERMINED
        assert outcome.refused
        assert not any(a.name == CLICKS_COOKIE for a in outcome.artifacts)
