"""
Job and step definitions for the batch job engine

Definitions are immutable once built. Readers and writers are supplied as
factories so every step execution gets fresh, unshared instances.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, FrozenSet, Iterator, Optional, Tuple, Union

from .job import JobParameters
from .execution import StepExecution
from ..items.base import ItemProcessor, ItemReader, ItemWriter
from ..services.fault_tolerance import NEVER_SKIP, NO_RETRY, RetryPolicy, SkipPolicy
from ..core.exceptions import ConfigurationError, JobParametersInvalidError


ReaderFactory = Callable[[JobParameters], ItemReader]
WriterFactory = Callable[[JobParameters], ItemWriter]
Tasklet = Callable[[StepExecution, JobParameters], Awaitable[Any]]

DEFAULT_CHUNK_SIZE = 1000


@dataclass(frozen=True)
class StepDefinition:
    """Chunk-oriented step: read, process and write items in fixed-size chunks."""

    name: str
    reader_factory: ReaderFactory
    writer_factory: WriterFactory
    processor: Optional[ItemProcessor] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE

    # Fault tolerance
    retry_policy: RetryPolicy = NO_RETRY
    skip_policy: SkipPolicy = NEVER_SKIP

    # Concurrency: parallel steps hand chunks to the engine's task executor
    parallel: bool = False
    throttle_limit: Optional[int] = None

    # Restart behaviour
    allow_start_if_complete: bool = False
    start_limit: Optional[int] = None
    save_state: bool = True
    continue_on_failure: bool = False

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("step.name", "step name must not be empty")
        if self.chunk_size < 1:
            raise ConfigurationError(f"{self.name}.chunk_size", "must be at least 1")
        if self.throttle_limit is not None and self.throttle_limit < 1:
            raise ConfigurationError(f"{self.name}.throttle_limit", "must be at least 1")
        if self.start_limit is not None and self.start_limit < 1:
            raise ConfigurationError(f"{self.name}.start_limit", "must be at least 1")


@dataclass(frozen=True)
class TaskletStepDefinition:
    """Step that runs a single coroutine once, e.g. to create a table or archive a file."""

    name: str
    tasklet: Tasklet
    allow_start_if_complete: bool = False
    start_limit: Optional[int] = None
    continue_on_failure: bool = False

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("step.name", "step name must not be empty")
        if self.start_limit is not None and self.start_limit < 1:
            raise ConfigurationError(f"{self.name}.start_limit", "must be at least 1")


AnyStep = Union[StepDefinition, TaskletStepDefinition]


@dataclass(frozen=True)
class Split:
    """Independent flows run concurrently; each flow is a sequence of steps."""

    name: str
    flows: Tuple[Tuple[AnyStep, ...], ...]
    max_concurrency: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "flows", tuple(tuple(flow) for flow in self.flows))
        if not self.flows or any(not flow for flow in self.flows):
            raise ConfigurationError(f"{self.name}.flows", "a split needs at least one non-empty flow")
        for flow in self.flows:
            for step in flow:
                if isinstance(step, Split):
                    raise ConfigurationError(f"{self.name}.flows", "nested splits are not supported")


JobElement = Union[StepDefinition, TaskletStepDefinition, Split]


@dataclass(frozen=True)
class JobParametersValidator:
    """
    Checks required and optional parameter names.

    When optional_keys is non-empty, any key outside required_keys and
    optional_keys is rejected.
    """

    required_keys: FrozenSet[str] = frozenset()
    optional_keys: FrozenSet[str] = frozenset()

    def validate(self, job_name: str, parameters: JobParameters):
        missing = sorted(k for k in self.required_keys if k not in parameters)
        if missing:
            raise JobParametersInvalidError(job_name, f"missing required keys {missing}", missing)

        if self.optional_keys:
            allowed = set(self.required_keys) | set(self.optional_keys)
            unknown = sorted(k for k in parameters if k not in allowed)
            if unknown:
                raise JobParametersInvalidError(job_name, f"unexpected keys {unknown}")


@dataclass(frozen=True)
class JobDefinition:
    """A named, ordered sequence of steps and splits."""

    name: str
    steps: Tuple[JobElement, ...]
    restartable: bool = True
    allow_completed_rerun: bool = True
    validator: Optional[JobParametersValidator] = None
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.name:
            raise ConfigurationError("job.name", "job name must not be empty")

        seen = set()
        for step in self.iter_steps():
            if step.name in seen:
                raise ConfigurationError(f"{self.name}.steps", f"duplicate step name '{step.name}'")
            seen.add(step.name)

    def iter_steps(self) -> Iterator[AnyStep]:
        """All step definitions, with splits flattened."""
        for element in self.steps:
            if isinstance(element, Split):
                for flow in element.flows:
                    yield from flow
            else:
                yield element

    @property
    def step_names(self) -> Tuple[str, ...]:
        return tuple(step.name for step in self.iter_steps())

    def get_step(self, step_name: str) -> Optional[AnyStep]:
        for step in self.iter_steps():
            if step.name == step_name:
                return step
        return None

    def validate_parameters(self, parameters: JobParameters):
        if self.validator is not None:
            self.validator.validate(self.name, parameters)
