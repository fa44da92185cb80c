"""
Bounded retry with exponential backoff.

One policy object is shared by outbound sends and media downloads so both
retry the same way: base_delay * 2^attempt, capped, for a fixed number of
attempts, and only for errors the predicate marks as retryable.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from django.conf import settings

from trials.services.errors import TransientProviderError

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientProviderError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: Optional[float] = None
    retryable: Callable[[BaseException], bool] = is_transient
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, **overrides) -> 'RetryPolicy':
        """Build the policy configured by the GATEWAY_RETRY_* settings."""
        values = {
            'max_attempts': settings.GATEWAY_RETRY_MAX_ATTEMPTS,
            'base_delay': settings.GATEWAY_RETRY_BASE_DELAY,
            'max_delay': settings.GATEWAY_RETRY_MAX_DELAY,
        }
        values.update(overrides)
        return cls(**values)

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given zero-based attempt."""
        delay = self.base_delay * (2 ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Call fn until it succeeds, a non-retryable error is raised,
        or max_attempts is reached. The last error is re-raised.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                if not self.retryable(e) or attempt + 1 >= attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    f"Retry attempt {attempt + 1}/{attempts - 1} after {delay:.1f}s: {e}"
                )
                self.sleep(delay)
