"""
Consent gate.

Three states, never a nullable boolean:

  GRANTED       → read/merge/write the durable _ad_clicks token
  DENIED        → no client artifact; attribution for this visit is lost
  UNDETERMINED  → short-lived transport artifact carrying only the new hash;
                  client-side script upgrades it once consent resolves

Click counting happens regardless of consent.
"""

from enum import Enum
from typing import Any, Callable, Mapping

from app.config import Settings


class ConsentState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class Transport(str, Enum):
    COOKIE = "cookie"
    FRAGMENT = "fragment"


# Receives the request context; returns True/False/None or a ConsentState
DecisionSource = Callable[[Mapping[str, Any]], "ConsentState | bool | None"]

_decision_source: DecisionSource | None = None


def set_decision_source(source: DecisionSource | None) -> None:
    """Install the consent tool integration. None removes it."""
    global _decision_source
    _decision_source = source


def get_decision_source() -> DecisionSource | None:
    return _decision_source


def _coerce(answer: "ConsentState | bool | None") -> ConsentState:
    if isinstance(answer, ConsentState):
        return answer
    if answer is True:
        return ConsentState.GRANTED
    if answer is False:
        return ConsentState.DENIED
    return ConsentState.UNDETERMINED


def resolve(settings: Settings, context: Mapping[str, Any] | None = None) -> ConsentState:
    """Ask the registered decision source, else fall back to the configured default."""
    if _decision_source is not None:
        return _coerce(_decision_source(context or {}))
    return ConsentState(settings.default_consent)


def transport(settings: Settings) -> Transport:
    return Transport(settings.pending_transport)
