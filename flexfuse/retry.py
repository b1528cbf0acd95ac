import time
from typing import Callable, Optional, TypeVar

from flexfuse.containerd.errors import RetriesExhaustedError, TransientResolutionError
from flexfuse.containerd.models import RetryPolicy
from flexfuse.logpkg.log_flex import LogFlex

logger = LogFlex()

T = TypeVar("T")


def run_with_retry(policy: RetryPolicy,
                   operation: Callable[[int], T],
                   sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Call operation(attempt) until it returns, at most policy.attempts times.

    A TransientResolutionError from the operation schedules another attempt
    after policy.delay seconds; any other exception propagates at once. Raises
    RetriesExhaustedError once the attempts run out.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return operation(attempt)
        except TransientResolutionError as err:
            last_error = err
            logger.debug(f"Attempt {attempt}/{policy.attempts} failed: {err}")

        if attempt < policy.attempts:
            sleep(policy.delay)

    raise RetriesExhaustedError(policy.attempts, last_error)
