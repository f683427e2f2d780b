"""
Job and step execution models for the batch job engine

Defines data structures for tracking job executions, step executions,
per-chunk count contributions and the execution context used for restart.
"""

import json
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Iterator
from dataclasses import dataclass, field
from collections.abc import MutableMapping

from .job import BatchStatus, ExitStatus, JobInstance, JobParameters, utcnow


class ExecutionContext(MutableMapping):
    """
    Key-value state persisted with a job or step execution.

    Values must be JSON serialisable. The dirty flag records whether the
    context changed since it was last persisted.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(data or {})
        self.dirty = False

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any):
        if self._data.get(key, object()) != value:
            self.dirty = True
        self._data[key] = value

    def __delitem__(self, key: str):
        del self._data[key]
        self.dirty = True

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ExecutionContext({self._data!r})"

    def get_int(self, key: str, default: int = 0) -> int:
        return int(self._data.get(key, default))

    def clear_dirty_flag(self):
        self.dirty = False

    def copy(self) -> "ExecutionContext":
        return ExecutionContext(json.loads(self.serialize()))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def serialize(self) -> str:
        return json.dumps(self._data, sort_keys=True, default=str)

    @classmethod
    def deserialize(cls, payload: Optional[str]) -> "ExecutionContext":
        if not payload:
            return cls()
        return cls(json.loads(payload))


@dataclass
class ChunkContribution:
    """
    Count deltas produced by one chunk.

    Applied to the owning StepExecution in a single repository call at
    commit time, together with the execution context.
    """

    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0

    def incr_rollback(self):
        self.rollback_count += 1

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    def combine(self, other: "ChunkContribution") -> "ChunkContribution":
        return ChunkContribution(**{
            name: getattr(self, name) + getattr(other, name) for name in COUNT_FIELDS
        })

    def to_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNT_FIELDS}


COUNT_FIELDS = (
    "read_count",
    "write_count",
    "filter_count",
    "read_skip_count",
    "process_skip_count",
    "write_skip_count",
    "commit_count",
    "rollback_count",
)


@dataclass
class StepExecution:
    """One attempt to run a step within a job execution."""

    step_execution_id: int
    step_name: str
    job_execution_id: int

    status: BatchStatus = BatchStatus.STARTING
    exit_status: ExitStatus = field(default_factory=lambda: ExitStatus("EXECUTING"))

    # Record processing counts; only ever incremented
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0

    execution_context: ExecutionContext = field(default_factory=ExecutionContext)

    # Timing
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_updated: datetime = field(default_factory=utcnow)
    version: int = 0

    # Failures raised while the step ran; not persisted
    failure_exceptions: List[BaseException] = field(default_factory=list, repr=False)
    terminate_only: bool = False

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    def apply(self, contribution: ChunkContribution):
        """Add a chunk's count deltas."""
        for name in COUNT_FIELDS:
            delta = getattr(contribution, name)
            if delta < 0:
                raise ValueError(f"Negative delta for {name}: {delta}")
            setattr(self, name, getattr(self, name) + delta)
        self.last_updated = utcnow()

    def counts(self) -> ChunkContribution:
        return ChunkContribution(**{name: getattr(self, name) for name in COUNT_FIELDS})

    def add_failure_exception(self, exc: BaseException):
        self.failure_exceptions.append(exc)

    def set_terminate_only(self):
        """Ask the step runner to stop after the in-flight chunk(s) commit."""
        self.terminate_only = True

    def get_duration(self) -> Optional[timedelta]:
        if self.start_time:
            end_time = self.end_time or utcnow()
            return end_time - self.start_time
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert step execution to dictionary."""
        data = {
            "step_execution_id": self.step_execution_id,
            "step_name": self.step_name,
            "job_execution_id": self.job_execution_id,
            "status": self.status.value,
            "exit_status": self.exit_status.to_dict(),
            "skip_count": self.skip_count,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "execution_context": self.execution_context.to_dict(),
        }
        data.update({name: getattr(self, name) for name in COUNT_FIELDS})
        return data


@dataclass
class JobExecution:
    """One attempt to run a job instance."""

    job_execution_id: int
    job_instance: JobInstance
    job_parameters: JobParameters

    status: BatchStatus = BatchStatus.STARTING
    exit_status: ExitStatus = field(default_factory=lambda: ExitStatus("UNKNOWN"))

    step_executions: List[StepExecution] = field(default_factory=list)
    execution_context: ExecutionContext = field(default_factory=ExecutionContext)

    # Timing
    create_time: datetime = field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_updated: datetime = field(default_factory=utcnow)
    version: int = 0

    failure_exceptions: List[BaseException] = field(default_factory=list, repr=False)

    @property
    def job_name(self) -> str:
        return self.job_instance.job_name

    @property
    def job_instance_id(self) -> int:
        return self.job_instance.instance_id

    def is_running(self) -> bool:
        return self.status.is_running()

    def is_stopping(self) -> bool:
        return self.status == BatchStatus.STOPPING

    def add_failure_exception(self, exc: BaseException):
        self.failure_exceptions.append(exc)

    def all_failure_exceptions(self) -> List[BaseException]:
        failures = list(self.failure_exceptions)
        for step_execution in self.step_executions:
            failures.extend(step_execution.failure_exceptions)
        return failures

    def get_step_execution(self, step_name: str) -> Optional[StepExecution]:
        for step_execution in self.step_executions:
            if step_execution.step_name == step_name:
                return step_execution
        return None

    def get_duration(self) -> Optional[timedelta]:
        if self.start_time:
            end_time = self.end_time or utcnow()
            return end_time - self.start_time
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job execution to dictionary."""
        return {
            "job_execution_id": self.job_execution_id,
            "job_instance_id": self.job_instance_id,
            "job_name": self.job_name,
            "job_parameters": self.job_parameters.to_dict(),
            "status": self.status.value,
            "exit_status": self.exit_status.to_dict(),
            "create_time": self.create_time.isoformat() if self.create_time else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "execution_context": self.execution_context.to_dict(),
            "step_executions": [s.to_dict() for s in self.step_executions]
        }
