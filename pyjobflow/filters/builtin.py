# pyjobflow/filters/builtin.py
import logging
from datetime import timedelta

from pyjobflow.filters.base import JobFilter
from pyjobflow.common.states import FailedState, RetryingState
from pyjobflow.server.context import ElectStateContext

logger = logging.getLogger(__name__)

BACKOFF_TYPES = ("linear", "fixed", "exponential")


def compute_backoff(attempts: int, backoff_type: str, delay_unit: int, max_delay: int) -> int:
    """Retry delay in milliseconds after ``attempts`` failed tries."""
    if backoff_type == "fixed":
        delay = delay_unit
    elif backoff_type == "exponential":
        delay = delay_unit * 2 ** max(attempts - 1, 0)
    elif backoff_type == "linear":
        delay = delay_unit * attempts
    else:
        raise ValueError(f"Unknown backoff type: {backoff_type}")
    return min(delay, max_delay)


class RetryFilter(JobFilter):
    def __init__(
        self,
        backoff_type: str = "linear",
        delay_unit: int = 5000,
        max_delay: int = 3_600_000,
    ):
        if backoff_type not in BACKOFF_TYPES:
            raise ValueError(f"Unknown backoff type: {backoff_type}")
        self.backoff_type = backoff_type
        self.delay_unit = delay_unit
        self.max_delay = max_delay

    @classmethod
    def from_settings(cls, settings) -> "RetryFilter":
        return cls(
            backoff_type=settings.backoff_type,
            delay_unit=settings.backoff_delay_unit,
            max_delay=settings.max_backoff_delay,
        )

    def on_state_election(self, elect_state_context: ElectStateContext):
        job = elect_state_context.job
        candidate_state = elect_state_context.candidate_state

        if not isinstance(candidate_state, FailedState):
            return

        logger.debug(
            f"RetryFilter: Job {job.id} failed. Attempts: {job.attempts}, Max attempts: {job.max_attempts}"
        )
        if job.attempts >= job.max_attempts:
            logger.debug(f"RetryFilter: Job {job.id} retries exhausted. Moving to Failed state.")
            return

        delay = compute_backoff(job.attempts, self.backoff_type, self.delay_unit, self.max_delay)
        retry_at = elect_state_context.now + timedelta(milliseconds=delay)
        elect_state_context.candidate_state = RetryingState(
            retry_at=retry_at,
            reason=f"Retrying job... Attempt {job.attempts} of {job.max_attempts} failed: "
            f"{candidate_state.exception_message}",
        )
        logger.debug(f"RetryFilter: Job {job.id} will retry in {delay}ms")
