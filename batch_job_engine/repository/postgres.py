"""
PostgreSQL execution metadata store.

Persists job instances, executions, parameters, contexts and step
executions in the tables created by sql/schema.sql, through the shared
DatabaseManager connection pool.
"""

from typing import Any, List, Optional, Tuple

import asyncpg

from .base import JobRepository
from ..models.job import BatchStatus, ExitStatus, JobInstance, JobParameter, JobParameters, utcnow
from ..models.execution import (
    COUNT_FIELDS,
    ChunkContribution,
    ExecutionContext,
    JobExecution,
    StepExecution,
)
from ..utils.database import DatabaseManager
from ..utils.logger import get_logger
from ..core.exceptions import ExecutionStoreError


MAX_EXIT_MESSAGE_LENGTH = 2500

STORE_ERRORS = (asyncpg.PostgresError, OSError)

_STEP_COLUMNS = """
    s.step_execution_id, s.version, s.step_name, s.job_execution_id, s.start_time, s.end_time,
    s.status, s.commit_count, s.read_count, s.filter_count, s.write_count, s.read_skip_count,
    s.write_skip_count, s.process_skip_count, s.rollback_count, s.exit_code, s.exit_message,
    s.last_updated, c.serialized_context
"""

_JOB_COLUMNS = """
    e.job_execution_id, e.version, e.create_time, e.start_time, e.end_time, e.status,
    e.exit_code, e.exit_message, e.last_updated,
    i.job_instance_id, i.version AS instance_version, i.job_name, i.job_key,
    i.create_time AS instance_create_time, c.serialized_context
"""


def _truncate(message: str) -> str:
    return message[:MAX_EXIT_MESSAGE_LENGTH]


class PostgresJobRepository(JobRepository):
    """JobRepository backed by PostgreSQL via asyncpg."""

    def __init__(self, database_manager: DatabaseManager, apply_schema: bool = False):
        """
        Initialize the repository.

        Args:
            database_manager: Shared connection pool
            apply_schema: Create missing metadata tables on initialize()
        """
        self.db = database_manager
        self.apply_schema = apply_schema
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        await self.db.initialize()
        if self.apply_schema:
            await self.db.apply_schema()

    async def close(self) -> None:
        await self.db.close()

    async def is_healthy(self) -> bool:
        return await self.db.is_healthy()

    # Row mapping

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> StepExecution:
        step_execution = StepExecution(
            step_execution_id=row["step_execution_id"],
            step_name=row["step_name"],
            job_execution_id=row["job_execution_id"],
            status=BatchStatus(row["status"]),
            exit_status=ExitStatus(row["exit_code"] or "UNKNOWN", row["exit_message"] or ""),
            execution_context=ExecutionContext.deserialize(row["serialized_context"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            last_updated=row["last_updated"],
            version=row["version"]
        )
        for name in COUNT_FIELDS:
            setattr(step_execution, name, row[name])
        return step_execution

    async def _load_job_execution(self, conn: asyncpg.Connection, row: asyncpg.Record) -> JobExecution:
        job_execution_id = row["job_execution_id"]

        param_rows = await conn.fetch(
            """
            SELECT parameter_name, parameter_type, parameter_value, identifying
            FROM batch_job_execution_params WHERE job_execution_id = $1
            """,
            job_execution_id
        )
        parameters = JobParameters({
            p["parameter_name"]: JobParameter.deserialize(
                p["parameter_value"], p["parameter_type"], p["identifying"] == "Y"
            )
            for p in param_rows
        })

        step_rows = await conn.fetch(
            f"""
            SELECT {_STEP_COLUMNS}
            FROM batch_step_execution s
            LEFT JOIN batch_step_execution_context c ON c.step_execution_id = s.step_execution_id
            WHERE s.job_execution_id = $1
            ORDER BY s.step_execution_id
            """,
            job_execution_id
        )

        instance = JobInstance(
            instance_id=row["job_instance_id"],
            job_name=row["job_name"],
            job_key=row["job_key"],
            version=row["instance_version"],
            created_at=row["instance_create_time"]
        )
        return JobExecution(
            job_execution_id=job_execution_id,
            job_instance=instance,
            job_parameters=parameters,
            status=BatchStatus(row["status"]),
            exit_status=ExitStatus(row["exit_code"] or "UNKNOWN", row["exit_message"] or ""),
            step_executions=[self._step_from_row(r) for r in step_rows],
            execution_context=ExecutionContext.deserialize(row["serialized_context"]),
            create_time=row["create_time"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            last_updated=row["last_updated"],
            version=row["version"]
        )

    async def _fetch_job_executions(self, where: str, *args: Any, limit: Optional[int] = None) -> List[JobExecution]:
        query = f"""
            SELECT {_JOB_COLUMNS}
            FROM batch_job_execution e
            JOIN batch_job_instance i ON i.job_instance_id = e.job_instance_id
            LEFT JOIN batch_job_execution_context c ON c.job_execution_id = e.job_execution_id
            WHERE {where}
            ORDER BY e.job_execution_id DESC
        """
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        async with self.db.get_connection() as conn:
            rows = await conn.fetch(query, *args)
            return [await self._load_job_execution(conn, row) for row in rows]

    # Job instances

    async def get_or_create_job_instance(self, job_name: str, parameters: JobParameters) -> Tuple[JobInstance, bool]:
        job_key = parameters.job_key()
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO batch_job_instance (job_instance_id, version, job_name, job_key, create_time)
                    VALUES (nextval('batch_job_instance_seq'), 0, $1, $2, $3)
                    ON CONFLICT (job_name, job_key) DO NOTHING
                    RETURNING job_instance_id, version, create_time
                    """,
                    job_name, job_key, utcnow()
                )
                created = row is not None
                if not created:
                    row = await conn.fetchrow(
                        """
                        SELECT job_instance_id, version, create_time FROM batch_job_instance
                        WHERE job_name = $1 AND job_key = $2
                        """,
                        job_name, job_key
                    )
            return JobInstance(
                instance_id=row["job_instance_id"],
                job_name=job_name,
                job_key=job_key,
                version=row["version"],
                created_at=row["create_time"]
            ), created
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_or_create_job_instance", str(e), table="batch_job_instance")

    async def get_job_instance(self, job_name: str, parameters: JobParameters) -> Optional[JobInstance]:
        job_key = parameters.job_key()
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT job_instance_id, version, create_time FROM batch_job_instance
                    WHERE job_name = $1 AND job_key = $2
                    """,
                    job_name, job_key
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_job_instance", str(e), table="batch_job_instance")
        if row is None:
            return None
        return JobInstance(row["job_instance_id"], job_name, job_key, row["version"], row["create_time"])

    async def get_job_names(self) -> List[str]:
        try:
            rows = await self.db.fetch("SELECT DISTINCT job_name FROM batch_job_instance ORDER BY job_name")
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_job_names", str(e), table="batch_job_instance")
        return [row["job_name"] for row in rows]

    # Job executions

    async def create_job_execution(self, job_instance: JobInstance, parameters: JobParameters) -> JobExecution:
        now = utcnow()
        try:
            async with self.db.transaction() as conn:
                job_execution_id = await conn.fetchval("SELECT nextval('batch_job_execution_seq')")
                await conn.execute(
                    """
                    INSERT INTO batch_job_execution
                        (job_execution_id, version, job_instance_id, create_time, status, exit_code, exit_message, last_updated)
                    VALUES ($1, 0, $2, $3, $4, 'UNKNOWN', '', $3)
                    """,
                    job_execution_id, job_instance.instance_id, now, BatchStatus.STARTING.value
                )
                await conn.executemany(
                    """
                    INSERT INTO batch_job_execution_params
                        (job_execution_id, parameter_name, parameter_type, parameter_value, identifying)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    [
                        (job_execution_id, name, p.type.value, p.serialize_value(), "Y" if p.identifying else "N")
                        for name, p in parameters.items()
                    ]
                )
                await conn.execute(
                    "INSERT INTO batch_job_execution_context (job_execution_id, serialized_context) VALUES ($1, $2)",
                    job_execution_id, ExecutionContext().serialize()
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("create_job_execution", str(e), table="batch_job_execution")

        return JobExecution(
            job_execution_id=job_execution_id,
            job_instance=job_instance,
            job_parameters=parameters,
            status=BatchStatus.STARTING,
            create_time=now,
            last_updated=now
        )

    async def update_job_execution(self, job_execution: JobExecution) -> None:
        now = utcnow()
        try:
            async with self.db.transaction() as conn:
                version = await conn.fetchval(
                    """
                    UPDATE batch_job_execution
                    SET status = $2, exit_code = $3, exit_message = $4, start_time = $5,
                        end_time = $6, last_updated = $7, version = version + 1
                    WHERE job_execution_id = $1
                    RETURNING version
                    """,
                    job_execution.job_execution_id,
                    job_execution.status.value,
                    job_execution.exit_status.exit_code,
                    _truncate(job_execution.exit_status.exit_description),
                    job_execution.start_time,
                    job_execution.end_time,
                    now
                )
                if version is None:
                    raise ExecutionStoreError(
                        "update_job_execution", f"job execution {job_execution.job_execution_id} does not exist",
                        table="batch_job_execution"
                    )
                await conn.execute(
                    """
                    INSERT INTO batch_job_execution_context (job_execution_id, serialized_context)
                    VALUES ($1, $2)
                    ON CONFLICT (job_execution_id) DO UPDATE SET serialized_context = EXCLUDED.serialized_context
                    """,
                    job_execution.job_execution_id, job_execution.execution_context.serialize()
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("update_job_execution", str(e), table="batch_job_execution")

        job_execution.version = version
        job_execution.last_updated = now
        job_execution.execution_context.clear_dirty_flag()

    async def get_job_execution(self, job_execution_id: int) -> Optional[JobExecution]:
        try:
            executions = await self._fetch_job_executions("e.job_execution_id = $1", job_execution_id)
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_job_execution", str(e), table="batch_job_execution")
        return executions[0] if executions else None

    async def get_job_execution_status(self, job_execution_id: int) -> Optional[BatchStatus]:
        try:
            async with self.db.get_connection() as conn:
                status = await conn.fetchval(
                    "SELECT status FROM batch_job_execution WHERE job_execution_id = $1", job_execution_id
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_job_execution_status", str(e), table="batch_job_execution")
        return BatchStatus(status) if status is not None else None

    async def find_job_executions(self, job_instance: JobInstance) -> List[JobExecution]:
        try:
            return await self._fetch_job_executions("e.job_instance_id = $1", job_instance.instance_id)
        except STORE_ERRORS as e:
            raise ExecutionStoreError("find_job_executions", str(e), table="batch_job_execution")

    async def find_running_job_executions(self, job_name: Optional[str] = None) -> List[JobExecution]:
        running = [s.value for s in BatchStatus if s.is_running()]
        try:
            if job_name is None:
                return await self._fetch_job_executions("e.status = ANY($1::varchar[])", running)
            return await self._fetch_job_executions(
                "e.status = ANY($1::varchar[]) AND i.job_name = $2", running, job_name
            )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("find_running_job_executions", str(e), table="batch_job_execution")

    async def list_job_executions(self, job_name: Optional[str] = None, limit: int = 20) -> List[JobExecution]:
        try:
            if job_name is None:
                return await self._fetch_job_executions("TRUE", limit=limit)
            return await self._fetch_job_executions("i.job_name = $1", job_name, limit=limit)
        except STORE_ERRORS as e:
            raise ExecutionStoreError("list_job_executions", str(e), table="batch_job_execution")

    # Step executions

    async def create_step_execution(
        self,
        job_execution: JobExecution,
        step_name: str,
        execution_context: Optional[ExecutionContext] = None,
        initial_counts: Optional[ChunkContribution] = None
    ) -> StepExecution:
        now = utcnow()
        context = execution_context.copy() if execution_context is not None else ExecutionContext()
        counts = initial_counts or ChunkContribution()
        try:
            async with self.db.transaction() as conn:
                step_execution_id = await conn.fetchval("SELECT nextval('batch_step_execution_seq')")
                await conn.execute(
                    """
                    INSERT INTO batch_step_execution
                        (step_execution_id, version, step_name, job_execution_id, create_time, status,
                         commit_count, read_count, filter_count, write_count, read_skip_count,
                         write_skip_count, process_skip_count, rollback_count, exit_code, exit_message, last_updated)
                    VALUES ($1, 0, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, 'EXECUTING', '', $4)
                    """,
                    step_execution_id, step_name, job_execution.job_execution_id, now, BatchStatus.STARTING.value,
                    counts.commit_count, counts.read_count, counts.filter_count, counts.write_count,
                    counts.read_skip_count, counts.write_skip_count, counts.process_skip_count, counts.rollback_count
                )
                await conn.execute(
                    "INSERT INTO batch_step_execution_context (step_execution_id, serialized_context) VALUES ($1, $2)",
                    step_execution_id, context.serialize()
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("create_step_execution", str(e), table="batch_step_execution")

        step_execution = StepExecution(
            step_execution_id=step_execution_id,
            step_name=step_name,
            job_execution_id=job_execution.job_execution_id,
            execution_context=context,
            last_updated=now
        )
        step_execution.apply(counts)
        job_execution.step_executions.append(step_execution)
        return step_execution

    async def update_step_execution(self, step_execution: StepExecution) -> None:
        try:
            async with self.db.transaction() as conn:
                version = await conn.fetchval(
                    """
                    UPDATE batch_step_execution
                    SET status = $2, exit_code = $3, exit_message = $4, start_time = $5, end_time = $6,
                        last_updated = $7, version = version + 1
                    WHERE step_execution_id = $1
                    RETURNING version
                    """,
                    step_execution.step_execution_id,
                    step_execution.status.value,
                    step_execution.exit_status.exit_code,
                    _truncate(step_execution.exit_status.exit_description),
                    step_execution.start_time,
                    step_execution.end_time,
                    utcnow()
                )
                if version is None:
                    raise ExecutionStoreError(
                        "update_step_execution", f"step execution {step_execution.step_execution_id} does not exist",
                        table="batch_step_execution"
                    )
                await self._save_step_context(conn, step_execution.step_execution_id, step_execution.execution_context)
        except STORE_ERRORS as e:
            raise ExecutionStoreError("update_step_execution", str(e), table="batch_step_execution")

        step_execution.version = version
        step_execution.execution_context.clear_dirty_flag()

    @staticmethod
    async def _save_step_context(conn: asyncpg.Connection, step_execution_id: int, context: ExecutionContext):
        await conn.execute(
            """
            INSERT INTO batch_step_execution_context (step_execution_id, serialized_context)
            VALUES ($1, $2)
            ON CONFLICT (step_execution_id) DO UPDATE SET serialized_context = EXCLUDED.serialized_context
            """,
            step_execution_id, context.serialize()
        )

    async def apply_chunk_contribution(
        self,
        step_execution: StepExecution,
        contribution: ChunkContribution,
        execution_context: ExecutionContext
    ) -> None:
        now = utcnow()
        try:
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE batch_step_execution
                    SET read_count = read_count + $2,
                        write_count = write_count + $3,
                        filter_count = filter_count + $4,
                        read_skip_count = read_skip_count + $5,
                        process_skip_count = process_skip_count + $6,
                        write_skip_count = write_skip_count + $7,
                        commit_count = commit_count + $8,
                        rollback_count = rollback_count + $9,
                        last_updated = $10,
                        version = version + 1
                    WHERE step_execution_id = $1
                    RETURNING read_count, write_count, filter_count, read_skip_count, process_skip_count,
                              write_skip_count, commit_count, rollback_count, version
                    """,
                    step_execution.step_execution_id,
                    contribution.read_count,
                    contribution.write_count,
                    contribution.filter_count,
                    contribution.read_skip_count,
                    contribution.process_skip_count,
                    contribution.write_skip_count,
                    contribution.commit_count,
                    contribution.rollback_count,
                    now
                )
                if row is None:
                    raise ExecutionStoreError(
                        "apply_chunk_contribution", f"step execution {step_execution.step_execution_id} does not exist",
                        table="batch_step_execution"
                    )
                await self._save_step_context(conn, step_execution.step_execution_id, execution_context)
        except STORE_ERRORS as e:
            raise ExecutionStoreError("apply_chunk_contribution", str(e), table="batch_step_execution")

        for name in COUNT_FIELDS:
            setattr(step_execution, name, row[name])
        step_execution.version = row["version"]
        step_execution.last_updated = now

    async def get_last_step_execution(self, job_instance: JobInstance, step_name: str) -> Optional[StepExecution]:
        try:
            async with self.db.get_connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {_STEP_COLUMNS}
                    FROM batch_step_execution s
                    JOIN batch_job_execution e ON e.job_execution_id = s.job_execution_id
                    LEFT JOIN batch_step_execution_context c ON c.step_execution_id = s.step_execution_id
                    WHERE e.job_instance_id = $1 AND s.step_name = $2
                    ORDER BY s.step_execution_id DESC
                    LIMIT 1
                    """,
                    job_instance.instance_id, step_name
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_last_step_execution", str(e), table="batch_step_execution")
        return self._step_from_row(row) if row is not None else None

    async def get_step_execution_count(self, job_instance: JobInstance, step_name: str) -> int:
        try:
            async with self.db.get_connection() as conn:
                count = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM batch_step_execution s
                    JOIN batch_job_execution e ON e.job_execution_id = s.job_execution_id
                    WHERE e.job_instance_id = $1 AND s.step_name = $2
                    """,
                    job_instance.instance_id, step_name
                )
        except STORE_ERRORS as e:
            raise ExecutionStoreError("get_step_execution_count", str(e), table="batch_step_execution")
        return count or 0
