# pyjobflow/common/events.py
"""Observer registration for job lifecycle events."""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

JOB_ADDED = "job_added"
JOB_STARTED = "job_started"
JOB_COMPLETED = "job_completed"
JOB_RETRYING = "job_retrying"
JOB_FAILED = "job_failed"

ALL_EVENTS = [JOB_ADDED, JOB_STARTED, JOB_COMPLETED, JOB_RETRYING, JOB_FAILED]


@dataclass
class JobEvent:
    name: str
    queue: str
    job_id: str
    job_type: str
    data: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    def __init__(self, bus: "EventBus", event: str, callback: Callable):
        self._bus = bus
        self.event = event
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """
    Dispatches ``JobEvent`` objects to subscribed callbacks.

    Callbacks may be plain functions or coroutine functions. A failing
    callback is logged and never interrupts the caller that emitted the event.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}

    def subscribe(self, event: str, callback: Callable[[JobEvent], Any]) -> Subscription:
        if event not in ALL_EVENTS:
            raise ValueError(f"Unknown event: {event}")
        subscription = Subscription(self, event, callback)
        self._subscribers.setdefault(event, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.event, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._subscribers.get(event, []))
        return sum(len(subs) for subs in self._subscribers.values())

    async def emit(self, event: JobEvent) -> None:
        for subscription in list(self._subscribers.get(event.name, [])):
            try:
                result = subscription.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {event.name} failed on job {event.job_id}")
