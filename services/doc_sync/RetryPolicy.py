import random
from dataclasses import dataclass, field

from shared.errors import is_retryable
from shared.helper.HelperConfig import HelperConfig


@dataclass
class RetryStats:
    """Counters kept across every document the policy was applied to."""

    total_retries: int = 0
    recovered: int = 0
    exhausted: int = 0
    fatal: int = 0
    retries_by_error: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "total_retries": self.total_retries,
            "recovered": self.recovered,
            "exhausted": self.exhausted,
            "fatal": self.fatal,
            "retries_by_error": dict(self.retries_by_error),
        }


class RetryPolicy:
    """Exponential backoff with optional jitter.

    delay(n) = min(base * multiplier ** (n - 1), max_delay), then spread by
    +/- jitter * delay. Attempt numbers start at 1.
    """

    def __init__(self, helper_config: HelperConfig, rng: random.Random | None = None):
        self.max_retries = int(helper_config.get_number_val("SYNC_MAX_RETRIES", default=3))
        self.base_delay = float(helper_config.get_number_val("SYNC_RETRY_BASE_DELAY", default=1.0))
        self.max_delay = float(helper_config.get_number_val("SYNC_RETRY_MAX_DELAY", default=30.0))
        self.multiplier = float(helper_config.get_number_val("SYNC_RETRY_MULTIPLIER", default=2.0))
        self.jitter = float(helper_config.get_number_val("SYNC_RETRY_JITTER", default=0.1))
        self._rng = rng or random.Random()
        self.stats = RetryStats()

    def should_retry(self, exc: BaseException, retry_count: int) -> bool:
        """Whether another attempt is allowed after `retry_count` retries have been spent."""
        return is_retryable(exc) and retry_count < self.max_retries

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number `attempt`."""
        delay = min(self.base_delay * (self.multiplier ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter > 0:
            delay += delay * self._rng.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)

    ##########################################
    ################# STATS ##################
    ##########################################

    def record_retry(self, exc: BaseException) -> None:
        self.stats.total_retries += 1
        name = type(exc).__name__
        self.stats.retries_by_error[name] = self.stats.retries_by_error.get(name, 0) + 1

    def record_outcome(self, retried: bool, succeeded: bool, fatal: bool = False) -> None:
        if fatal:
            self.stats.fatal += 1
        elif succeeded and retried:
            self.stats.recovered += 1
        elif not succeeded:
            self.stats.exhausted += 1
