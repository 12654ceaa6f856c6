import random
from dataclasses import dataclass
from typing import Optional

from jobctl.domain.states import FailureKind, RETRYABLE_FAILURES
from jobctl.settings import settings


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 10.0
    cap_seconds: float = 3600.0
    jitter: bool = False

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_seconds=settings.BACKOFF_BASE_SECONDS,
            cap_seconds=settings.BACKOFF_CAP_SECONDS,
            jitter=settings.BACKOFF_JITTER,
        )


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0
    reason: str = ""

    @classmethod
    def retry_after(cls, delay_seconds: float) -> "RetryDecision":
        return cls(retry=True, delay_seconds=delay_seconds, reason=f"retry in {delay_seconds:.2f}s")

    @classmethod
    def give_up(cls, reason: str) -> "RetryDecision":
        return cls(retry=False, reason=reason)


def backoff_delay(
    attempt: int,
    base_delay_seconds: float = 10.0,
    max_delay_seconds: float = 3600.0,
    jitter: bool = False
) -> float:
    """
    Exponential backoff for the given retry attempt.

    Formula:
        delay = min(base * (2 ^ attempt), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        attempt: The retry about to be scheduled (1 for the first retry).

    Returns:
        float: Seconds to wait before the retry may start.
    """
    if attempt < 0:
        attempt = 0

    # 2^20 base units is well past any sane cap
    safe_attempt = min(attempt, 20)

    delay = base_delay_seconds * (2 ** safe_attempt)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        delay += random.uniform(0, delay * 0.1)

    return delay


def decide_retry(
    retry_count: int,
    max_retries: int,
    failure_kind: Optional[FailureKind],
    policy: Optional[RetryPolicy] = None,
) -> RetryDecision:
    policy = policy or RetryPolicy.from_settings()

    if failure_kind not in RETRYABLE_FAILURES:
        return RetryDecision.give_up(f"non-retryable failure ({failure_kind or 'unknown'})")

    if retry_count >= max_retries:
        return RetryDecision.give_up(f"retries exhausted ({retry_count}/{max_retries})")

    delay = backoff_delay(
        retry_count + 1,
        base_delay_seconds=policy.base_seconds,
        max_delay_seconds=policy.cap_seconds,
        jitter=policy.jitter,
    )
    return RetryDecision.retry_after(delay)
