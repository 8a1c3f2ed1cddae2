"""
Bot detection.

Bots are redirected like everyone else but never counted, never attributed
and never get a cookie. Detection is an OR over registered detectors:

  1. UA signature blocklist (always registered)
  2. user_agents parser bot flag (opt-in, AA_BOT_DETECT_UA_LIBRARY)
  3. Anything third-party code registers

A prior positive short-circuits the rest of the chain.
"""

from typing import Callable

from user_agents import parse as parse_ua

from app.core.registry import Registry

# Matched case-insensitively as plain substrings
BOT_SIGNATURES: tuple[str, ...] = (
    "bot",        # Googlebot, bingbot, LinkedInBot, AdsBot-Google, ...
    "crawl",
    "spider",
    "slurp",
    "facebookexternalhit",
    "Mediapartners-Google",
    "Yahoo",
    "curl",
    "wget",
    "python-requests",
    "HeadlessChrome",
    "Lighthouse",
    "GTmetrix",
)

_SIGNATURES_LOWER = tuple(s.lower() for s in BOT_SIGNATURES)

Detector = Callable[[str], bool]

detectors: Registry[Detector] = Registry("bot_detectors")


def classify(user_agent: str | None) -> bool:
    """Signature check. Missing/empty user agent counts as a bot."""
    if not user_agent:
        return True

    ua_lower = user_agent.lower()
    return any(signature in ua_lower for signature in _SIGNATURES_LOWER)


def ua_library_detector(user_agent: str) -> bool:
    """Second opinion from the user_agents parser."""
    return parse_ua(user_agent).is_bot


def is_bot(user_agent: str | None) -> bool:
    """Run the detector chain; first positive wins."""
    ua = user_agent or ""
    if not ua:
        return True

    for detector in detectors:
        if detector(ua):
            return True
    return False


def register_detector(key: str, detector: Detector, *, replace: bool = False) -> None:
    detectors.register(key, detector, replace=replace)


detectors.register("signatures", classify)
