from dataclasses import dataclass
from datetime import datetime

from pyjobflow.common.job import Job
from pyjobflow.common.states import BaseState


@dataclass
class ElectStateContext:
    """The job, the state its attempt produced, and the processor's clock reading."""

    job: Job
    candidate_state: BaseState
    now: datetime
