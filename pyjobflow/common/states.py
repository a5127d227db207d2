# pyjobflow/common/states.py

from datetime import datetime, UTC
from typing import Dict, Any, Optional


class BaseState:
    NAME = "base"

    def __init__(self, reason: Optional[str] = None, created_at: datetime = None):
        self.reason = reason
        self.created_at = created_at or datetime.now(UTC)

    @property
    def name(self) -> str:
        return self.NAME

    def serialize_data(self) -> Dict[str, Any]:
        data = {"created_at": self.created_at.isoformat()}
        if self.reason:
            data["reason"] = self.reason
        return data


class PendingState(BaseState):
    NAME = "pending"


class ActiveState(BaseState):
    NAME = "active"

    def __init__(self, worker_id: str, attempt: int, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.worker_id = worker_id
        self.attempt = attempt

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data.update({"worker_id": self.worker_id, "attempt": self.attempt})
        return data


class CompletedState(BaseState):
    NAME = "completed"

    def __init__(self, result: Any = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["result"] = self.result
        return data


class FailedState(BaseState):
    NAME = "failed"

    def __init__(self, exception_type: str, exception_message: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.exception_type = exception_type
        self.exception_message = exception_message

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data.update(
            {
                "exception_type": self.exception_type,
                "exception_message": self.exception_message,
            }
        )
        return data


class RetryingState(BaseState):
    NAME = "retrying"

    def __init__(self, retry_at: datetime, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.retry_at = retry_at

    def serialize_data(self) -> Dict[str, Any]:
        data = super().serialize_data()
        data["retry_at"] = self.retry_at.isoformat()
        return data


# Terminal states end a job's life; everything else is "live".
TERMINAL_STATES = (CompletedState.NAME, FailedState.NAME)

ALL_STATES = [
    PendingState.NAME,
    ActiveState.NAME,
    RetryingState.NAME,
    CompletedState.NAME,
    FailedState.NAME,
]
