"""
Attribution weighting.

A policy maps the visitor's valid clicks to fractional credit:

    policy(clicks, now) → {hash: credit}

Credits must be non-negative and sum to 1.0. Links credited 0 get no
conversion row. Policies are registered by name and selected with
AA_ATTRIBUTION_MODEL; `last_click` is the default.

Clicks are always handed to policies sorted by (clicked_at, hash), so
identical timestamps resolve the same way on every run.
"""

import math
from dataclasses import dataclass
from typing import Callable

from app.core.registry import Registry

import structlog

logger = structlog.get_logger()

SUM_TOLERANCE = 1e-6
TIME_DECAY_HALF_LIFE = 7 * 86400


@dataclass(frozen=True)
class Click:
    hash: str
    clicked_at: int


Policy = Callable[[list[Click], int], dict[str, float]]

policies: Registry[Policy] = Registry("attribution_policies")


def ordered(entries: dict[str, int]) -> list[Click]:
    return [Click(h, ts) for h, ts in sorted(entries.items(), key=lambda item: (item[1], item[0]))]


def last_click(clicks: list[Click], now: int) -> dict[str, float]:
    credits = {c.hash: 0.0 for c in clicks}
    credits[clicks[-1].hash] = 1.0
    return credits


def first_click(clicks: list[Click], now: int) -> dict[str, float]:
    credits = {c.hash: 0.0 for c in clicks}
    credits[clicks[0].hash] = 1.0
    return credits


def linear(clicks: list[Click], now: int) -> dict[str, float]:
    share = 1.0 / len(clicks)
    return {c.hash: share for c in clicks}


def position_based(clicks: list[Click], now: int) -> dict[str, float]:
    """40% first, 40% last, 20% spread over the middle."""
    if len(clicks) <= 2:
        return linear(clicks, now)

    credits = {c.hash: 0.2 / (len(clicks) - 2) for c in clicks[1:-1]}
    credits[clicks[0].hash] = 0.4
    credits[clicks[-1].hash] = 0.4
    return credits


def time_decay(clicks: list[Click], now: int) -> dict[str, float]:
    """Credit halves for every half-life between the click and the conversion.

    Ages are measured from the freshest click before exponentiating. The
    common factor cancels in the normalisation, and the freshest click keeps
    weight 1 however old the whole token is.
    """
    ages = {c.hash: max(now - c.clicked_at, 0) for c in clicks}
    youngest = min(ages.values())
    weights = {h: math.pow(0.5, (age - youngest) / TIME_DECAY_HALF_LIFE) for h, age in ages.items()}
    total = sum(weights.values())
    return {h: w / total for h, w in weights.items()}


def is_valid(credits: dict[str, float], clicks: list[Click]) -> bool:
    known = {c.hash for c in clicks}
    if not credits or not set(credits) <= known:
        return False
    if any(not isinstance(v, (int, float)) or math.isnan(v) or v < 0 for v in credits.values()):
        return False
    return abs(sum(credits.values()) - 1.0) <= SUM_TOLERANCE


def weigh(entries: dict[str, int], model: str, now: int) -> dict[str, float]:
    """Run the named policy; unknown, failing or invalid policies fall back to last click."""
    if not entries:
        return {}

    clicks = ordered(entries)
    policy = policies.get(model)
    if policy is None:
        logger.error("attribution_model_unknown", model=model)
        return last_click(clicks, now)

    try:
        credits = {h: float(v) for h, v in policy(clicks, now).items()}
    except Exception:
        logger.exception("attribution_policy_failed", model=model)
        return last_click(clicks, now)

    if not is_valid(credits, clicks):
        logger.error("attribution_weights_invalid", model=model, credits=credits)
        return last_click(clicks, now)
    return credits


policies.register("last_click", last_click)
policies.register("first_click", first_click)
policies.register("linear", linear)
policies.register("position_based", position_based)
policies.register("time_decay", time_decay)
