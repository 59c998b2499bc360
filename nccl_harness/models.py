"""
Shared data types: run status, attempt outcome and ledger record.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class RunStatus(str, Enum):
    """Status of one attempt at a configuration."""
    PLANNED = 'planned'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    TIMED_OUT = 'timed_out'
    SKIPPED = 'skipped'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.TIMED_OUT)


@dataclass(frozen=True)
class Outcome:
    """Classified result of one external job.

    ``classification`` says why: success, dry_run, exit_nonzero,
    launch_error, liveness_timeout, max_runtime or interrupted.
    """
    status: RunStatus
    classification: str
    exit_code: Optional[int] = None
    duration_sec: float = 0.0
    message: str = ''

    @classmethod
    def success(cls, exit_code: int = 0, duration_sec: float = 0.0,
                classification: str = 'success') -> 'Outcome':
        return cls(RunStatus.COMPLETED, classification, exit_code, duration_sec)

    @classmethod
    def failure(cls, classification: str, exit_code: Optional[int] = None,
                duration_sec: float = 0.0, message: str = '') -> 'Outcome':
        return cls(RunStatus.FAILED, classification, exit_code, duration_sec, message)

    @classmethod
    def timed_out(cls, duration_sec: float, message: str = '',
                  classification: str = 'liveness_timeout',
                  exit_code: Optional[int] = None) -> 'Outcome':
        return cls(RunStatus.TIMED_OUT, classification, exit_code, duration_sec, message)


@dataclass
class RunRecord:
    """One attempt at one configuration, as stored in the ledger."""
    id: int
    identity: str
    status: RunStatus
    session: str
    mode: str
    start_time: str
    end_time: Optional[str] = None
    artifact_path: Optional[str] = None
    exit_code: Optional[int] = None
    classification: Optional[str] = None
    duration_sec: Optional[float] = None
    num_nodes: Optional[int] = None
    hosts: List[str] = field(default_factory=list)
    command: Optional[str] = None
