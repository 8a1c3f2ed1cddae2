"""
Click token codec.

The durable `_ad_clicks` cookie holds the visitor's recent tracking-link
clicks as an ordered map of link hash → last click (unix seconds):

    {hash}:{ts}[,{hash}:{ts}]*

- hash → 64 lowercase hex chars (SHA-256 of the tracking link)
- ts   → 1-10 digit unix timestamp

Capacity is fixed at 50 entries. Overflow evicts the globally oldest entry.
The same wire format is reused for the per-link `_ad_last_conv` dedup cookie.
"""

import re
import time

from app.core.errors import ValidationError

import structlog

logger = structlog.get_logger()

CAPACITY = 50

HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")
TOKEN_PATTERN = re.compile(r"^[a-f0-9]{64}:\d{1,10}(,[a-f0-9]{64}:\d{1,10})*$")

ClickMap = dict[str, int]


def validate_hash(value: str | None) -> bool:
    """True if value is a syntactically valid tracking link hash."""
    return bool(value) and HASH_PATTERN.match(value) is not None


def parse(raw: str) -> ClickMap:
    """Strict parse. Raises ValidationError on anything but the exact grammar."""
    if not TOKEN_PATTERN.match(raw):
        raise ValidationError("malformed click token")

    entries: ClickMap = {}
    for pair in raw.split(","):
        link_hash, ts = pair.split(":")
        entries[link_hash] = int(ts)
    return entries


def decode(raw: str | None) -> ClickMap:
    """Parse a raw token. Missing or malformed input yields an empty map."""
    if not raw:
        return {}
    try:
        return parse(raw)
    except ValidationError:
        logger.warning("click_token_discarded", length=len(raw))
        return {}


def merge(entries: ClickMap, link_hash: str, ts: int | None = None) -> ClickMap:
    """Upsert link_hash with ts (default now), evicting the oldest entries on overflow.

    Returns a new map; the input is left untouched.
    """
    merged = dict(entries)
    merged[link_hash] = int(time.time()) if ts is None else ts

    while len(merged) > CAPACITY:
        # Oldest first; key order breaks timestamp ties deterministically
        oldest = min(merged.items(), key=lambda item: (item[1], item[0]))[0]
        del merged[oldest]

    return merged


def encode(entries: ClickMap) -> str:
    return ",".join(f"{link_hash}:{ts}" for link_hash, ts in entries.items())
