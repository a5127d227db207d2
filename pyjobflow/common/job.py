# pyjobflow/common/job.py
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, UTC
from typing import Optional, Dict, Any, Mapping, Union

from .exceptions import JobValidationError
from .states import PendingState, TERMINAL_STATES


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_millis(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, UTC)


@dataclass
class Job:
    """
    A unit of work owned by the queue once it has been enqueued.

    Producers only choose ``queue``, ``type``, ``payload`` and the options;
    every other field is maintained by the processor.
    """

    id: str
    queue: str
    type: str
    payload: Any

    state_name: str = PendingState.NAME
    state_data: Dict[str, Any] = field(default_factory=dict)

    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    delay_until: Optional[datetime] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        return self.state_name

    @property
    def is_live(self) -> bool:
        return self.state_name not in TERMINAL_STATES

    @property
    def ready_score(self) -> float:
        # Lowest score pops first, so negate to serve higher priorities first.
        return float(-self.priority)

    @staticmethod
    def make_id(job_type: str, content_hash: Optional[str], created_at: datetime) -> str:
        if content_hash is None:
            return f"{job_type}:{uuid.uuid4().hex}"
        return f"{job_type}:{content_hash[:16]}:{to_millis(created_at)}"


@dataclass
class JobOptions:
    """Recognized per-job options; anything else is rejected by ``add_job``."""

    delay: int = 0  # milliseconds
    priority: int = 0
    max_attempts: Optional[int] = None
    idempotent: bool = True

    def validate(self) -> "JobOptions":
        if isinstance(self.delay, bool) or not isinstance(self.delay, (int, float)):
            raise JobValidationError(f"delay must be a number of milliseconds, got {self.delay!r}")
        if self.delay < 0:
            raise JobValidationError(f"delay must be non-negative, got {self.delay}")
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise JobValidationError(f"priority must be an integer, got {self.priority!r}")
        if self.max_attempts is not None:
            if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
                raise JobValidationError(
                    f"max_attempts must be an integer, got {self.max_attempts!r}"
                )
            if self.max_attempts < 1:
                raise JobValidationError(f"max_attempts must be at least 1, got {self.max_attempts}")
        return self

    @classmethod
    def coerce(cls, options: Union["JobOptions", Mapping[str, Any], None]) -> "JobOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options.validate()
        if not isinstance(options, Mapping):
            raise JobValidationError(f"options must be JobOptions or a mapping, got {type(options).__name__}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise JobValidationError(f"Unrecognized job options: {', '.join(unknown)}")
        return cls(**options).validate()


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> Dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }
