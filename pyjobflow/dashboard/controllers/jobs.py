"""Queue and job inspection routes."""
import json
from typing import Any, Dict

from litestar import Controller, get
from litestar.exceptions import NotFoundException

from pyjobflow.client import JobQueue


class QueuesController(Controller):
    path = "/queues"

    @get("/{queue_name:str}/stats")
    async def queue_stats(self, queue: JobQueue, queue_name: str) -> Dict[str, Any]:
        stats = await queue.get_queue_stats(queue_name)
        return {"queue": queue_name, **stats.to_dict(), "processing": queue.is_processing(queue_name)}


class JobsController(Controller):
    path = "/jobs"

    @get("/{job_id:str}")
    async def job_details(self, queue: JobQueue, job_id: str) -> Dict[str, Any]:
        job = await queue.get_job_status(job_id)
        if job is None:
            raise NotFoundException(detail=f"Job {job_id} not found")
        return json.loads(queue.serializer.serialize_job(job))
