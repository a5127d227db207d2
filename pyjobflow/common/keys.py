# pyjobflow/common/keys.py
from urllib.parse import quote


class KeySpace:
    """Builds every store key under a single namespace prefix."""

    def __init__(self, prefix: str = "pyjobflow"):
        self.prefix = prefix

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def idempotency(self, content_hash: str) -> str:
        return f"{self.prefix}:idempotency:{content_hash}"

    def waiting(self, queue_name: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:waiting"

    def delayed(self, queue_name: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:delayed"

    def active(self, queue_name: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:active"

    def completed(self, queue_name: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:completed"

    def failed(self, queue_name: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:failed"

    def rate(self, limit_type: str, identifier: str, window_start: int) -> str:
        # Parts are percent-encoded so ":" inside an identifier (IPv6, "user:42") cannot shift fields.
        return f"{self.prefix}:rate:{quote(limit_type, safe='')}:{quote(identifier, safe='')}:{window_start}"
