"""
Job registry: named, immutable job definitions available for launch.
"""

from typing import Dict, Iterable, List

from ..models.definitions import JobDefinition
from ..utils.logger import get_logger
from .exceptions import ConfigurationError, NoSuchJobError


class JobRegistry:
    """Maps job names to their definitions."""

    def __init__(self, jobs: Iterable[JobDefinition] = ()):
        self._jobs: Dict[str, JobDefinition] = {}
        self.logger = get_logger(__name__)
        for job in jobs:
            self.register(job)

    def register(self, job: JobDefinition, replace: bool = False) -> None:
        """
        Register a job definition.

        Args:
            job: Definition to register
            replace: Allow replacing a definition with the same name

        Raises:
            ConfigurationError: If the name is taken and replace is False
        """
        if job.name in self._jobs and not replace:
            raise ConfigurationError(f"jobs.{job.name}", "a job with this name is already registered")
        self._jobs[job.name] = job
        self.logger.info(f"Registered job {job.name}", extra={"job_name": job.name, "steps": list(job.step_names)})

    def unregister(self, job_name: str) -> None:
        if self._jobs.pop(job_name, None) is None:
            raise NoSuchJobError(job_name)

    def get_job(self, job_name: str) -> JobDefinition:
        try:
            return self._jobs[job_name]
        except KeyError:
            raise NoSuchJobError(job_name)

    def get_job_names(self) -> List[str]:
        return sorted(self._jobs)

    def __contains__(self, job_name: str) -> bool:
        return job_name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
