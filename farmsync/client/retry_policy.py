"""
Retry scheduling for queued mutations.

Deterministic exponential backoff with a ceiling, plus the policy that decides
whether a failed dispatch is retried, paused until connectivity returns, or
settled as a permanent failure.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from farmsync.shared.exceptions import (
    ConflictError, ErrorCode, TransportError, ValidationError
)


logger = logging.getLogger(__name__)

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 30000
MAX_RETRIES = 3


def retry_delay(attempt_index: int, base_delay_ms: int = BASE_DELAY_MS,
                max_delay_ms: int = MAX_DELAY_MS) -> int:
    """
    Milliseconds to wait before retrying after ``attempt_index`` failures.

    ``min(base * 2**attempt_index, max)``; attempt 0 waits exactly one second
    with the defaults and the result is always strictly positive.

    Raises:
        ValidationError: If attempt_index is negative or not an integer
    """
    if isinstance(attempt_index, bool) or not isinstance(attempt_index, int) or attempt_index < 0:
        raise ValidationError(
            f"Attempt index must be a non-negative integer, got {attempt_index!r}",
            field_name='attempt_index',
            error_code=ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE
        )

    # Past this point the doubled delay is far beyond any sane ceiling
    if attempt_index >= 64:
        return max_delay_ms
    return min(base_delay_ms * (2 ** attempt_index), max_delay_ms)


def retry_delay_seconds(attempt_index: int, base_delay_ms: int = BASE_DELAY_MS,
                        max_delay_ms: int = MAX_DELAY_MS) -> float:
    return retry_delay(attempt_index, base_delay_ms, max_delay_ms) / 1000.0


class RetryDecision(Enum):
    """What the coordinator should do with a failed dispatch."""
    RETRY = "retry"
    PAUSE = "pause"
    RESOLVE_CONFLICT = "resolve_conflict"
    FAIL = "fail"


@dataclass
class RetryPolicy:
    """Backoff and attempt-cap configuration."""
    max_retries: int = MAX_RETRIES
    base_delay_ms: int = BASE_DELAY_MS
    max_delay_ms: int = MAX_DELAY_MS

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be positive")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms cannot be below base_delay_ms")

    def delay_ms(self, attempt_index: int) -> int:
        return retry_delay(attempt_index, self.base_delay_ms, self.max_delay_ms)

    def delay_seconds(self, attempt_index: int) -> float:
        return retry_delay_seconds(attempt_index, self.base_delay_ms, self.max_delay_ms)

    def has_budget(self, attempts_consumed: int) -> bool:
        """True while fewer than ``max_retries`` attempts have been spent."""
        return attempts_consumed < self.max_retries

    def classify(self, error: Optional[BaseException], attempts_consumed: int,
                 online: bool = True) -> RetryDecision:
        """
        Map a dispatch failure to the next step.

        Args:
            error: Exception raised by the transport
            attempts_consumed: Attempts charged to the mutation if this
                failure is counted
            online: Connectivity signal at the time the dispatch settled

        Returns:
            RESOLVE_CONFLICT for version conflicts, PAUSE for transport
            failures while offline (never charged), RETRY for other
            transport failures with budget left, FAIL otherwise
        """
        if isinstance(error, ConflictError):
            return RetryDecision.RESOLVE_CONFLICT

        if isinstance(error, TransportError):
            if not online:
                return RetryDecision.PAUSE
            if self.has_budget(attempts_consumed):
                return RetryDecision.RETRY
            logger.debug(f"Retry budget spent after {attempts_consumed} attempt(s)")
            return RetryDecision.FAIL

        return RetryDecision.FAIL

    def should_retry(self, error: Optional[BaseException], attempts_consumed: int,
                     online: bool = True) -> bool:
        return self.classify(error, attempts_consumed, online) == RetryDecision.RETRY
