"""
In-memory execution metadata store.

Keeps private copies of every instance and execution so callers observe
the same persist/load semantics as the PostgreSQL store. All mutations
are serialised by one asyncio lock. State lives only as long as the
process does.
"""

import asyncio
import itertools
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from .base import JobRepository
from ..models.job import BatchStatus, JobInstance, JobParameters, utcnow
from ..models.execution import (
    COUNT_FIELDS,
    ChunkContribution,
    ExecutionContext,
    JobExecution,
    StepExecution,
)
from ..core.exceptions import NoSuchJobExecutionError, ExecutionStoreError


class InMemoryJobRepository(JobRepository):
    """JobRepository backed by dictionaries."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._instance_ids = itertools.count(1)
        self._job_execution_ids = itertools.count(1)
        self._step_execution_ids = itertools.count(1)

        self._instances: Dict[int, JobInstance] = {}
        self._instance_index: Dict[Tuple[str, str], int] = {}
        self._job_executions: Dict[int, JobExecution] = {}
        self._step_executions: Dict[int, StepExecution] = {}

    # Copy helpers

    @staticmethod
    def _copy_step(step_execution: StepExecution) -> StepExecution:
        return replace(
            step_execution,
            execution_context=step_execution.execution_context.copy(),
            failure_exceptions=[]
        )

    def _copy_job(self, job_execution: JobExecution) -> JobExecution:
        steps = sorted(
            (s for s in self._step_executions.values() if s.job_execution_id == job_execution.job_execution_id),
            key=lambda s: s.step_execution_id
        )
        return replace(
            job_execution,
            execution_context=job_execution.execution_context.copy(),
            step_executions=[self._copy_step(s) for s in steps],
            failure_exceptions=[]
        )

    # Job instances

    async def get_or_create_job_instance(self, job_name: str, parameters: JobParameters) -> Tuple[JobInstance, bool]:
        key = (job_name, parameters.job_key())
        async with self._lock:
            instance_id = self._instance_index.get(key)
            if instance_id is not None:
                return replace(self._instances[instance_id]), False

            instance = JobInstance(
                instance_id=next(self._instance_ids),
                job_name=job_name,
                job_key=key[1]
            )
            self._instances[instance.instance_id] = instance
            self._instance_index[key] = instance.instance_id
            return replace(instance), True

    async def get_job_instance(self, job_name: str, parameters: JobParameters) -> Optional[JobInstance]:
        instance_id = self._instance_index.get((job_name, parameters.job_key()))
        if instance_id is None:
            return None
        return replace(self._instances[instance_id])

    async def get_job_names(self) -> List[str]:
        return sorted({instance.job_name for instance in self._instances.values()})

    # Job executions

    async def create_job_execution(self, job_instance: JobInstance, parameters: JobParameters) -> JobExecution:
        async with self._lock:
            if job_instance.instance_id not in self._instances:
                raise ExecutionStoreError("create_job_execution", f"unknown job instance {job_instance.instance_id}")
            job_execution = JobExecution(
                job_execution_id=next(self._job_execution_ids),
                job_instance=replace(self._instances[job_instance.instance_id]),
                job_parameters=parameters,
                status=BatchStatus.STARTING
            )
            self._job_executions[job_execution.job_execution_id] = replace(
                job_execution,
                execution_context=job_execution.execution_context.copy(),
                step_executions=[],
                failure_exceptions=[]
            )
            return job_execution

    async def update_job_execution(self, job_execution: JobExecution) -> None:
        async with self._lock:
            stored = self._job_executions.get(job_execution.job_execution_id)
            if stored is None:
                raise NoSuchJobExecutionError(job_execution.job_execution_id)
            stored.status = job_execution.status
            stored.exit_status = job_execution.exit_status
            stored.start_time = job_execution.start_time
            stored.end_time = job_execution.end_time
            stored.execution_context = job_execution.execution_context.copy()
            stored.last_updated = utcnow()
            stored.version += 1
            job_execution.last_updated = stored.last_updated
            job_execution.version = stored.version
            job_execution.execution_context.clear_dirty_flag()

    async def get_job_execution(self, job_execution_id: int) -> Optional[JobExecution]:
        async with self._lock:
            stored = self._job_executions.get(job_execution_id)
            return self._copy_job(stored) if stored is not None else None

    async def get_job_execution_status(self, job_execution_id: int) -> Optional[BatchStatus]:
        stored = self._job_executions.get(job_execution_id)
        return stored.status if stored is not None else None

    async def find_job_executions(self, job_instance: JobInstance) -> List[JobExecution]:
        async with self._lock:
            executions = [
                e for e in self._job_executions.values()
                if e.job_instance.instance_id == job_instance.instance_id
            ]
            executions.sort(key=lambda e: e.job_execution_id, reverse=True)
            return [self._copy_job(e) for e in executions]

    async def find_running_job_executions(self, job_name: Optional[str] = None) -> List[JobExecution]:
        async with self._lock:
            return [
                self._copy_job(e) for e in self._job_executions.values()
                if e.status.is_running() and (job_name is None or e.job_name == job_name)
            ]

    async def list_job_executions(self, job_name: Optional[str] = None, limit: int = 20) -> List[JobExecution]:
        async with self._lock:
            executions = [
                e for e in self._job_executions.values()
                if job_name is None or e.job_name == job_name
            ]
            executions.sort(key=lambda e: e.job_execution_id, reverse=True)
            return [self._copy_job(e) for e in executions[:limit]]

    # Step executions

    async def create_step_execution(
        self,
        job_execution: JobExecution,
        step_name: str,
        execution_context: Optional[ExecutionContext] = None,
        initial_counts: Optional[ChunkContribution] = None
    ) -> StepExecution:
        async with self._lock:
            if job_execution.job_execution_id not in self._job_executions:
                raise NoSuchJobExecutionError(job_execution.job_execution_id)
            step_execution = StepExecution(
                step_execution_id=next(self._step_execution_ids),
                step_name=step_name,
                job_execution_id=job_execution.job_execution_id,
                execution_context=execution_context.copy() if execution_context is not None else ExecutionContext()
            )
            if initial_counts is not None:
                step_execution.apply(initial_counts)
            self._step_executions[step_execution.step_execution_id] = self._copy_step(step_execution)
            job_execution.step_executions.append(step_execution)
            return step_execution

    async def update_step_execution(self, step_execution: StepExecution) -> None:
        async with self._lock:
            stored = self._step_executions.get(step_execution.step_execution_id)
            if stored is None:
                raise ExecutionStoreError("update_step_execution", f"unknown step execution {step_execution.step_execution_id}")
            stored.status = step_execution.status
            stored.exit_status = step_execution.exit_status
            stored.start_time = step_execution.start_time
            stored.end_time = step_execution.end_time
            stored.execution_context = step_execution.execution_context.copy()
            stored.last_updated = utcnow()
            stored.version += 1
            step_execution.version = stored.version
            step_execution.execution_context.clear_dirty_flag()

    async def apply_chunk_contribution(
        self,
        step_execution: StepExecution,
        contribution: ChunkContribution,
        execution_context: ExecutionContext
    ) -> None:
        async with self._lock:
            stored = self._step_executions.get(step_execution.step_execution_id)
            if stored is None:
                raise ExecutionStoreError("apply_chunk_contribution", f"unknown step execution {step_execution.step_execution_id}")
            stored.apply(contribution)
            stored.execution_context = execution_context.copy()
            stored.version += 1

            for name in COUNT_FIELDS:
                setattr(step_execution, name, getattr(stored, name))
            step_execution.last_updated = stored.last_updated
            step_execution.version = stored.version

    async def get_last_step_execution(self, job_instance: JobInstance, step_name: str) -> Optional[StepExecution]:
        async with self._lock:
            candidates = [
                s for s in self._step_executions.values()
                if s.step_name == step_name
                and self._job_executions[s.job_execution_id].job_instance.instance_id == job_instance.instance_id
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda s: s.step_execution_id)
            return self._copy_step(latest)

    async def get_step_execution_count(self, job_instance: JobInstance, step_name: str) -> int:
        async with self._lock:
            return sum(
                1 for s in self._step_executions.values()
                if s.step_name == step_name
                and self._job_executions[s.job_execution_id].job_instance.instance_id == job_instance.instance_id
            )
