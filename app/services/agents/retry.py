import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from app.core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int
    delay_seconds: float
    backoff: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.delay_seconds * (self.backoff ** (attempt - 1))

    @classmethod
    def per_call(cls, settings: Settings) -> "RetryPolicy":
        return cls(settings.agent_call_max_attempts, settings.agent_call_retry_delay_seconds)

    @classmethod
    def per_unit(cls, settings: Settings) -> "RetryPolicy":
        return cls(settings.client_max_attempts, settings.client_retry_delay_seconds)

    @classmethod
    def ranking(cls, settings: Settings) -> "RetryPolicy":
        return cls(settings.ranking_max_retries, settings.ranking_retry_delay_ms / 1000)


def with_retry(
    operation: Callable[[int], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or ``policy.max_attempts`` is spent.

    Errors outside ``retry_on`` propagate immediately. Once attempts are
    exhausted the last error is re-raised unchanged.
    """
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, policy.max_attempts + 1):
        logger.info("retry_attempt", extra={"label": label, "attempt": attempt, "max_attempts": policy.max_attempts})
        try:
            return operation(attempt)
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                logger.error(
                    "retry_exhausted",
                    extra={"label": label, "attempts": attempt, "error": str(exc), "error_type": type(exc).__name__},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry_scheduled",
                extra={"label": label, "attempt": attempt, "delay_seconds": delay, "error": str(exc), "error_type": type(exc).__name__},
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleep(delay)
    raise AssertionError("unreachable")
