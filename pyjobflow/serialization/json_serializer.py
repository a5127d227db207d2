# pyjobflow/serialization/json_serializer.py
import json
from dataclasses import fields
from datetime import datetime
from typing import Any

from pyjobflow.common.exceptions import SerializationError
from pyjobflow.common.job import Job
from pyjobflow.serialization.base import BaseSerializer

_DATETIME_FIELDS = ("delay_until", "created_at", "last_attempt_at", "completed_at", "failed_at")


class JsonSerializer(BaseSerializer):
    """
    Stores job records as JSON objects.

    Payloads must already be plain JSON values; only the record's own
    timestamp fields are converted (to ISO 8601 strings).
    """

    def serialize_job(self, job: Job) -> str:
        job_dict = {}
        for f in fields(job):
            value = getattr(job, f.name)
            if f.name in _DATETIME_FIELDS and value is not None:
                value = value.isoformat()
            job_dict[f.name] = value
        try:
            return json.dumps(job_dict)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Could not serialize job {job.id}") from e

    def deserialize_job(self, data: str) -> Job:
        try:
            job_dict = json.loads(data)
            for name in _DATETIME_FIELDS:
                if job_dict.get(name):
                    job_dict[name] = datetime.fromisoformat(job_dict[name])
            return Job(**job_dict)
        except (TypeError, ValueError, KeyError) as e:
            raise SerializationError("Could not deserialize job record") from e

    def canonical_payload(self, payload: Any) -> str:
        # Sorted keys and fixed separators so map ordering never changes the hash.
        try:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Job payload is not JSON-serializable: {e}") from e

    def to_primitive(self, value: Any) -> Any:
        # Handler results are free-form; anything JSON cannot hold is kept as its str().
        try:
            return json.loads(json.dumps(value, default=str))
        except (TypeError, ValueError):
            return str(value)
