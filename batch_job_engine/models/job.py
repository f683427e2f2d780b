"""
Job-level data models for the batch job engine

Defines batch statuses, exit statuses, typed job parameters and job
instances, together with the status transition rules shared by job and
step executions.
"""

import hashlib
import re
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterator, Mapping
from dataclasses import dataclass, field


_IDENTITY_DELIMITERS = re.compile(r"([\\=;,])")


def _escape_identity(text: str) -> str:
    return _IDENTITY_DELIMITERS.sub(r"\\\1", text)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns of the metadata schema."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BatchStatus(Enum):
    """Status of a job or step execution."""
    STARTING = "STARTING"
    STARTED = "STARTED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"
    UNKNOWN = "UNKNOWN"

    def is_running(self) -> bool:
        """STARTING, STARTED and STOPPING executions still own their instance."""
        return self in (BatchStatus.STARTING, BatchStatus.STARTED, BatchStatus.STOPPING)

    def is_unsuccessful(self) -> bool:
        return self in (BatchStatus.FAILED, BatchStatus.STOPPED, BatchStatus.ABANDONED, BatchStatus.UNKNOWN)

    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPED, BatchStatus.ABANDONED)


# Status transition rules
BATCH_STATUS_TRANSITIONS = {
    BatchStatus.STARTING: [BatchStatus.STARTED, BatchStatus.FAILED, BatchStatus.STOPPED, BatchStatus.ABANDONED],
    BatchStatus.STARTED: [BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPING, BatchStatus.STOPPED, BatchStatus.UNKNOWN],
    BatchStatus.STOPPING: [BatchStatus.STOPPED, BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.UNKNOWN],
    BatchStatus.STOPPED: [BatchStatus.ABANDONED],
    BatchStatus.FAILED: [BatchStatus.ABANDONED],
    BatchStatus.UNKNOWN: [BatchStatus.ABANDONED],
    BatchStatus.COMPLETED: [],  # Terminal state
    BatchStatus.ABANDONED: []  # Terminal state
}


def can_transition_to(current_status: BatchStatus, target_status: BatchStatus) -> bool:
    """Check if an execution can transition from current status to target status."""
    return target_status in BATCH_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: BatchStatus) -> List[BatchStatus]:
    """Get list of valid status transitions from current status."""
    return BATCH_STATUS_TRANSITIONS.get(current_status, [])


@dataclass(frozen=True)
class ExitStatus:
    """Exit code plus a free-text description of how an execution ended."""

    exit_code: str = "UNKNOWN"
    exit_description: str = ""

    @classmethod
    def for_status(cls, status: BatchStatus, description: str = "") -> "ExitStatus":
        code = {
            BatchStatus.STARTING: "EXECUTING",
            BatchStatus.STARTED: "EXECUTING",
            BatchStatus.STOPPING: "EXECUTING",
        }.get(status, status.value)
        return cls(code, description)

    def with_description(self, description: str) -> "ExitStatus":
        return ExitStatus(self.exit_code, description)

    def to_dict(self) -> Dict[str, str]:
        return {"exit_code": self.exit_code, "exit_description": self.exit_description}


EXIT_EXECUTING = ExitStatus("EXECUTING")
EXIT_NOOP = ExitStatus("NOOP", "All steps already completed or no steps to execute")


class ParameterType(Enum):
    """Types a job parameter value may take."""
    STRING = "STRING"
    LONG = "LONG"
    DOUBLE = "DOUBLE"
    DATE = "DATE"


@dataclass(frozen=True)
class JobParameter:
    """A single typed job parameter."""

    value: Any
    type: ParameterType = ParameterType.STRING
    identifying: bool = True

    def __post_init__(self):
        expected = {
            ParameterType.STRING: (str,),
            ParameterType.LONG: (int,),
            ParameterType.DOUBLE: (float, int),
            ParameterType.DATE: (datetime,),
        }[self.type]
        if isinstance(self.value, bool) or not isinstance(self.value, expected):
            raise TypeError(
                f"Parameter value {self.value!r} does not match type {self.type.value}"
            )

    def serialize_value(self) -> str:
        if self.type == ParameterType.DATE:
            return self.value.isoformat()
        if self.type == ParameterType.DOUBLE:
            return repr(float(self.value))
        return str(self.value)

    @classmethod
    def deserialize(cls, raw: str, type_name: str, identifying: bool = True) -> "JobParameter":
        param_type = ParameterType(type_name)
        if param_type == ParameterType.LONG:
            value = int(raw)
        elif param_type == ParameterType.DOUBLE:
            value = float(raw)
        elif param_type == ParameterType.DATE:
            value = datetime.fromisoformat(raw)
        else:
            value = raw
        return cls(value, param_type, identifying)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.serialize_value(),
            "type": self.type.value,
            "identifying": self.identifying
        }


class JobParameters(Mapping):
    """
    Immutable mapping from parameter name to JobParameter.

    The identifying parameters, together with the job name, determine
    which JobInstance a launch belongs to.
    """

    def __init__(self, parameters: Optional[Dict[str, JobParameter]] = None):
        self._parameters: Dict[str, JobParameter] = dict(parameters or {})

    def __getitem__(self, key: str) -> JobParameter:
        return self._parameters[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._parameters)

    def __len__(self) -> int:
        return len(self._parameters)

    def __eq__(self, other) -> bool:
        if not isinstance(other, JobParameters):
            return NotImplemented
        return self._parameters == other._parameters

    def __hash__(self):
        return hash(self.to_identity_string())

    def __repr__(self) -> str:
        return f"JobParameters({self.to_values()!r})"

    def get_value(self, key: str, default: Any = None) -> Any:
        parameter = self._parameters.get(key)
        return parameter.value if parameter is not None else default

    def get_string(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.get_value(key, default)

    def get_long(self, key: str, default: Optional[int] = None) -> Optional[int]:
        return self.get_value(key, default)

    def get_double(self, key: str, default: Optional[float] = None) -> Optional[float]:
        value = self.get_value(key, default)
        return float(value) if value is not None else None

    def get_date(self, key: str, default: Optional[datetime] = None) -> Optional[datetime]:
        return self.get_value(key, default)

    def identifying_parameters(self) -> Dict[str, JobParameter]:
        return {k: v for k, v in self._parameters.items() if v.identifying}

    def to_identity_string(self) -> str:
        """Canonical, order-independent rendering of the identifying parameters."""
        parts = []
        for name in sorted(self.identifying_parameters()):
            parameter = self._parameters[name]
            value = _escape_identity(parameter.serialize_value())
            parts.append(f"{_escape_identity(name)}={value};{parameter.type.value}")
        return ",".join(parts)

    def job_key(self) -> str:
        """MD5 digest of the identity string, stored as the instance's job key."""
        return hashlib.md5(self.to_identity_string().encode("utf-8")).hexdigest()

    def to_values(self) -> Dict[str, Any]:
        return {k: v.value for k, v in self._parameters.items()}

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {k: v.to_dict() for k, v in self._parameters.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> "JobParameters":
        return cls({
            name: JobParameter.deserialize(raw["value"], raw["type"], raw.get("identifying", True))
            for name, raw in data.items()
        })


class JobParametersBuilder:
    """Fluent builder for JobParameters."""

    def __init__(self, parameters: Optional[JobParameters] = None):
        self._parameters: Dict[str, JobParameter] = dict(parameters.items()) if parameters else {}

    def add_string(self, key: str, value: str, identifying: bool = True) -> "JobParametersBuilder":
        self._parameters[key] = JobParameter(value, ParameterType.STRING, identifying)
        return self

    def add_long(self, key: str, value: int, identifying: bool = True) -> "JobParametersBuilder":
        self._parameters[key] = JobParameter(value, ParameterType.LONG, identifying)
        return self

    def add_double(self, key: str, value: float, identifying: bool = True) -> "JobParametersBuilder":
        self._parameters[key] = JobParameter(float(value), ParameterType.DOUBLE, identifying)
        return self

    def add_date(self, key: str, value: datetime, identifying: bool = True) -> "JobParametersBuilder":
        self._parameters[key] = JobParameter(value, ParameterType.DATE, identifying)
        return self

    def add_parameter(self, key: str, parameter: JobParameter) -> "JobParametersBuilder":
        self._parameters[key] = parameter
        return self

    def to_job_parameters(self) -> JobParameters:
        return JobParameters(self._parameters)


@dataclass
class JobInstance:
    """One (job name, identifying parameters) combination."""

    instance_id: int
    job_name: str
    job_key: str
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job instance to dictionary for serialization."""
        return {
            "instance_id": self.instance_id,
            "job_name": self.job_name,
            "job_key": self.job_key,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }
