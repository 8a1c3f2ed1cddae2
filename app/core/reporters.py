"""
Delivery reporters — adapters that forward recorded conversions to
external platforms.

A reporter is two callables under one key:

    enqueue(credits, click_ids, campaigns, context) → [payload | JobSpec, ...]
    process(payload) → bool          (may be async)

enqueue runs inside the conversion trigger and only decides what to send.
process runs later from a queue drain; True marks the job done, False or
a raised exception drives retry.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from app.core.registry import Registry

import structlog

logger = structlog.get_logger()


@dataclass
class JobSpec:
    """Payload plus optional label and per-job retry overrides
    (attempts_per_round, retry_delay, max_rounds, round_delay)."""
    payload: dict
    label: str | None = None
    retry: dict[str, int] = field(default_factory=dict)


EnqueueFn = Callable[
    [dict[str, float], dict[str, dict[str, str]], dict[str, dict[str, str | None]], Any],
    list[dict | JobSpec],
]
ProcessFn = Callable[[dict], bool | Awaitable[bool]]


@dataclass
class Reporter:
    key: str
    enqueue: EnqueueFn
    process: ProcessFn


reporters: Registry[Reporter] = Registry("reporters")


def register_reporter(reporter: Reporter, *, replace: bool = False) -> None:
    reporters.register(reporter.key, reporter, replace=replace)


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

class WebhookReporter:
    """POSTs one JSON document per credited link. Any 2xx counts as delivered."""

    key = "webhook"

    def __init__(self, url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def enqueue(self, credits, click_ids, campaigns, context) -> list[JobSpec]:
        jobs = []
        for link_hash, credit in credits.items():
            payload = {
                "hash": link_hash,
                "credit": credit,
                "campaign": campaigns.get(link_hash, {}),
                "click_ids": click_ids.get(link_hash, {}),
                "converted_at": context.timestamp,
                "ip": context.ip,
                "user_agent": context.user_agent,
                "page_url": context.page_url,
            }
            jobs.append(JobSpec(payload=payload, label=f"{self.key}:{link_hash[:12]}"))
        return jobs

    async def process(self, payload: dict) -> bool:
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                resp = await client.post(self.url, json=payload)
            except httpx.RequestError as e:
                logger.warning("webhook_delivery_error", url=self.url, error=str(e))
                return False

        if not resp.is_success:
            logger.warning("webhook_delivery_rejected", url=self.url,
                           status=resp.status_code, body=resp.text[:500])
        return resp.is_success

    def as_reporter(self) -> Reporter:
        return Reporter(key=self.key, enqueue=self.enqueue, process=self.process)
