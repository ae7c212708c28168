"""
Scheduler error taxonomy

Every error carries a ``resolution`` hint so callers can tell apart
"retry this action", "resync your session" and "nothing to do".
"""
import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SchedulerError(Exception):
    """Base class for scheduling core errors"""
    retryable = False
    resolution = "fix_request"


class InvalidParameterError(SchedulerError, ValueError):
    """Memory model parameters have the wrong arity or out-of-domain values"""


class InvalidRatingError(SchedulerError, ValueError):
    """Rating outside {1, 2, 3, 4}"""


class NotFoundError(SchedulerError, LookupError):
    """Missing learner/card relationship, session or job"""


class InvalidStageError(SchedulerError):
    """Session action not legal in the current stage"""
    resolution = "resync"


class EmptyQueueError(SchedulerError):
    """Rating submitted against an exhausted queue"""
    resolution = "resync"


class ConcurrencyError(SchedulerError):
    """Concurrent modification of the same learner x card or session"""
    retryable = True
    resolution = "retry"


class InsufficientDataError(SchedulerError):
    """Not enough review history to fit parameters"""
    resolution = "noop"

    def __init__(self, message: str, sample_size: int = 0, required: int = 0):
        super().__init__(message)
        self.sample_size = sample_size
        self.required = required


class JobCancelledError(SchedulerError):
    """Raised at an iteration or batch boundary once a job must stop"""
    resolution = "noop"


def retry_on_conflict(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.05,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Run ``fn`` and retry it on ConcurrencyError with exponential backoff.

    Args:
        fn: Unit of work; must open and close its own transaction
        attempts: Total attempts, including the first
        base_delay: Delay before the first retry in seconds (doubles each time)
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``fn`` returns
    """
    sleep = sleep or time.sleep
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrencyError:
            if attempt >= attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.info(f"Concurrent update detected, retrying in {delay:.3f}s (attempt {attempt}/{attempts})")
            sleep(delay)
    raise ConcurrencyError("retry_on_conflict called with attempts < 1")
