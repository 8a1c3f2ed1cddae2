"""
Query parameter handling for the click intake.

Three jobs:
  1. Per-click campaign overrides. A link may leave content/term/id/group
     blank; those get filled from the inbound query, UTM names first,
     Matomo (mtm_*) names second.
  2. Platform click-id capture (gclid, fbclid, ...). Capturers map a
     platform key to the query parameter carrying its click ID.
  3. Redirect URL building. Inbound params are forwarded, merged with the
     target's own params (target wins), then passed through the registered
     redirect filters.
"""

from typing import Callable, Mapping
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from app.core.registry import Registry

MAX_PARAM_LENGTH = 255

# ClickEvent column → candidate query params, highest priority first
OVERRIDE_PARAMS: dict[str, tuple[str, ...]] = {
    "utm_content": ("utm_content", "mtm_content"),
    "utm_term": ("utm_term", "mtm_keyword", "mtm_kwd"),
    "utm_id": ("utm_id", "mtm_cid"),
    "utm_source_platform": ("utm_source_platform", "mtm_group"),
}

# ClickEvent column → TrackingLink field holding the preset value
LINK_FIELD_FOR_OVERRIDE: dict[str, str] = {
    "utm_content": "content",
    "utm_term": "term",
    "utm_id": "utm_id",
    "utm_source_platform": "source_platform",
}

# Platform key → query parameter it injects. Enable with AA_CLICK_ID_PLATFORMS.
KNOWN_CLICK_ID_PARAMS: dict[str, str] = {
    "google_ads": "gclid",
    "google_ads_web": "wbraid",
    "google_ads_app": "gbraid",
    "meta": "fbclid",
    "microsoft_ads": "msclkid",
    "tiktok": "ttclid",
    "linkedin": "li_fat_id",
    "snapchat": "ScCid",
    "pinterest": "epik",
    "twitter": "twclid",
    "reddit": "rdt_cid",
}

# Param keys consumed internally and never forwarded
CONSUMED_PARAMS: frozenset[str] = frozenset({"link_hash"})

RedirectFilter = Callable[[dict[str, str], dict[str, str], dict[str, str]], dict[str, str]]

click_id_capturers: Registry[str] = Registry("click_id_capturers")
redirect_filters: Registry[RedirectFilter] = Registry("redirect_filters")


def _clean(value: str | None) -> str:
    return (value or "").strip()


def extract_overrides(link, query_params: Mapping[str, str]) -> dict[str, str | None]:
    """Per-click values for the fields the link leaves blank."""
    overrides: dict[str, str | None] = {}
    for column, candidates in OVERRIDE_PARAMS.items():
        if _clean(getattr(link, LINK_FIELD_FOR_OVERRIDE[column], None)):
            overrides[column] = None
            continue

        value = None
        for param in candidates:
            candidate = _clean(query_params.get(param))
            if candidate:
                value = candidate[:MAX_PARAM_LENGTH]
                break
        overrides[column] = value
    return overrides


def extract_click_ids(query_params: Mapping[str, str]) -> dict[str, str]:
    """Run registered capturers in order; returns platform → click id."""
    captured: dict[str, str] = {}
    for platform, param in click_id_capturers.items():
        value = _clean(query_params.get(param))
        if value and len(value) <= MAX_PARAM_LENGTH:
            captured[platform] = value
    return captured


def enable_known_capturers(platforms: list[str]) -> list[str]:
    """Register capturers for the named known platforms; returns unknown names."""
    unknown = []
    for platform in platforms:
        param = KNOWN_CLICK_ID_PARAMS.get(platform)
        if param is None:
            unknown.append(platform)
            continue
        click_id_capturers.register(platform, param, replace=True)
    return unknown


def merge_redirect_params(target_url: str, incoming: Mapping[str, str]) -> str:
    """Forward inbound params onto the target. Target params win on collision."""
    parsed = urlparse(target_url)
    target_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    incoming_params = {
        k: _clean(v) for k, v in incoming.items() if k not in CONSUMED_PARAMS
    }

    merged = {**incoming_params, **target_params}
    for redirect_filter in redirect_filters:
        merged = redirect_filter(merged, target_params, incoming_params)

    if not merged:
        return urlunparse(parsed._replace(query=""))
    return urlunparse(parsed._replace(query=urlencode(merged)))


def with_fragment(url: str, key: str, value: str) -> str:
    parsed = urlparse(url)
    return urlunparse(parsed._replace(fragment=f"{key}={value}"))


def enters_namespace(url: str, url_prefix: str) -> bool:
    """True if the URL path points back into the tracking namespace."""
    path = urlparse(url).path or ""
    return path.lstrip("/").startswith(url_prefix.strip("/") + "/")
