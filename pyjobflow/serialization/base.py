# pyjobflow/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any

from pyjobflow.common.job import Job


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_job(self, job: Job) -> str: ...

    @abstractmethod
    def deserialize_job(self, data: str) -> Job: ...

    @abstractmethod
    def canonical_payload(self, payload: Any) -> str:
        """Encode ``payload`` so logically equal values always give equal text."""

    @abstractmethod
    def to_primitive(self, value: Any) -> Any:
        """Reduce a handler result to the value a stored record reads back as."""
