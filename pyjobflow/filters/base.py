# pyjobflow/filters/base.py
from abc import ABC


class JobFilter(ABC):
    """
    Hook consulted by the processor after a failed attempt.

    A filter may replace ``elect_state_context.candidate_state`` (for example
    with a retrying state); the last filter to run decides what is persisted.
    """

    def on_state_election(self, elect_state_context) -> None:
        return None
