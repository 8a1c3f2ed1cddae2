"""
Client artifacts.

The core never touches HTTP. It hands the router a list of ClientArtifact
values (name, value, attributes) which become Set-Cookie headers.

  _ad_clicks    → durable click token (HttpOnly, long-lived, consent granted only)
  _aah_pending  → transport cookie for undetermined consent (script-readable, 60 s)
  _ad_last_conv → per-link dedup markers (HttpOnly, lifetime capped by the dedup window)
"""

from dataclasses import dataclass

from app.config import Settings
from app.core import click_token

CLICKS_COOKIE = "_ad_clicks"
PENDING_COOKIE = "_aah_pending"
LAST_CONVERSION_COOKIE = "_ad_last_conv"
FRAGMENT_KEY = "_aah"


@dataclass(frozen=True)
class ClientArtifact:
    name: str
    value: str
    max_age: int
    httponly: bool = True
    secure: bool = True
    samesite: str = "lax"
    path: str = "/"


def clicks_cookie(entries: click_token.ClickMap, settings: Settings) -> ClientArtifact:
    return ClientArtifact(
        name=CLICKS_COOKIE,
        value=click_token.encode(entries),
        max_age=settings.cookie_lifetime_seconds,
    )


def transport_cookie(link_hash: str, settings: Settings) -> ClientArtifact:
    return ClientArtifact(
        name=PENDING_COOKIE,
        value=link_hash,
        max_age=settings.transport_cookie_seconds,
        httponly=False,  # picked up by client-side script once consent resolves
    )


def expired_cookie(name: str, httponly: bool = True) -> ClientArtifact:
    """Clears a cookie on the client."""
    return ClientArtifact(name=name, value="", max_age=0, httponly=httponly)


def dedup_lifetime(settings: Settings) -> int:
    """Dedup markers never outlive the click token they guard."""
    return min(settings.dedup_seconds, settings.cookie_lifetime_seconds)


class CookieDedupStore:
    """Per-link last-conversion timestamps carried in the _ad_last_conv cookie."""

    def __init__(self, raw: str | None):
        self._entries = click_token.decode(raw)
        self._dirty = False

    def get(self, link_hash: str) -> int | None:
        return self._entries.get(link_hash)

    def set(self, link_hash: str, ts: int) -> None:
        self._entries = click_token.merge(self._entries, link_hash, ts)
        self._dirty = True

    @property
    def changed(self) -> bool:
        return self._dirty

    def to_artifact(self, settings: Settings) -> ClientArtifact:
        return ClientArtifact(
            name=LAST_CONVERSION_COOKIE,
            value=click_token.encode(self._entries),
            max_age=dedup_lifetime(settings),
        )
