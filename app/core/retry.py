"""
Round-based retry arithmetic for delivery jobs.

Attempts are grouped into rounds of A attempts. Inside a round, a failed
attempt is retried after D seconds; after the last attempt of a round the
job waits G seconds before the next round starts. After R full rounds
(A × R attempts in total) the job is failed for good.

Kept free of any storage so it can be tested on its own.
"""

from dataclasses import dataclass
from enum import Enum

from app.config import Settings


class RetryStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    attempts_per_round: int = 3
    retry_delay: int = 60
    max_rounds: int = 3
    round_delay: int = 21600

    @property
    def max_attempts(self) -> int:
        return self.attempts_per_round * self.max_rounds

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: int | None) -> "RetryPolicy":
        """Global defaults, with any non-None per-job override on top."""
        values = {
            "attempts_per_round": settings.attempts_per_round,
            "retry_delay": settings.retry_delay,
            "max_rounds": settings.max_rounds,
            "round_delay": settings.round_delay,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True)
class RetryDecision:
    status: RetryStatus
    delay: int = 0

    @property
    def failed(self) -> bool:
        return self.status == RetryStatus.FAILED


def plan_retry(attempts: int, policy: RetryPolicy) -> RetryDecision:
    """Decide what happens after the `attempts`-th failed attempt."""
    per_round = max(policy.attempts_per_round, 1)
    if attempts >= per_round * max(policy.max_rounds, 1):
        return RetryDecision(RetryStatus.FAILED)
    if attempts % per_round == 0:
        return RetryDecision(RetryStatus.PENDING, policy.round_delay)
    return RetryDecision(RetryStatus.PENDING, policy.retry_delay)
