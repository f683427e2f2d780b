"""
FastAPI application exposing the job trigger and execution status.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from ..application import BatchApplication
from ..models.job import JobParametersBuilder
from ..utils.logger import get_logger
from ..core.exceptions import JobExecutionNotRunningError, NoSuchJobExecutionError


JOB_INVOKED = "Batch job has been invoked"
JOB_FAILED = "Batch job failed"
EXECUTION_ID_HEADER = "X-Job-Execution-Id"

logger = get_logger(__name__)


class StopResponse(BaseModel):
    job_execution_id: int
    status: str
    message: str


def create_app(application: BatchApplication, job_name: Optional[str] = None, manage_lifecycle: bool = True) -> FastAPI:
    """
    Create the HTTP app.

    Args:
        application: Engine and jobs to serve
        job_name: Job launched by POST /job/start (defaults to settings.job_name)
        manage_lifecycle: Start and stop the application with the server
    """
    trigger_job = job_name or application.settings.job_name
    orchestrator = application.orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await application.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await application.stop()

    app = FastAPI(title="Batch Job Engine", version="1.0.0", lifespan=lifespan)

    @app.post("/job/start")
    async def start_job():
        """Launch the configured job with a fresh 'time' parameter."""
        parameters = JobParametersBuilder().add_long("time", int(time.time() * 1000)).to_job_parameters()
        try:
            execution = await orchestrator.launch(trigger_job, parameters)
        except Exception:
            logger.error(f"Failed to launch job {trigger_job}", exc_info=True)
            return PlainTextResponse(JOB_FAILED, status_code=500)

        return PlainTextResponse(
            JOB_INVOKED,
            status_code=202,
            headers={EXECUTION_ID_HEADER: str(execution.job_execution_id)}
        )

    @app.get("/job/executions/{job_execution_id}")
    async def get_execution(job_execution_id: int) -> Dict[str, Any]:
        """Execution status with step summaries."""
        status = await orchestrator.get_execution_status(job_execution_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job execution not found")
        return status

    @app.post("/job/executions/{job_execution_id}/stop", response_model=StopResponse)
    async def stop_execution(job_execution_id: int):
        """Request a graceful stop."""
        try:
            execution = await orchestrator.stop_execution(job_execution_id)
        except NoSuchJobExecutionError:
            raise HTTPException(status_code=404, detail="Job execution not found")
        except JobExecutionNotRunningError as e:
            raise HTTPException(status_code=409, detail=e.message)

        return StopResponse(
            job_execution_id=job_execution_id,
            status=execution.status.value,
            message="Stop requested"
        )

    @app.get("/health")
    async def health_check():
        """Orchestrator and store health."""
        health = await orchestrator.get_system_health()
        status_code = 200 if health["overall_status"] == "healthy" else 503
        return JSONResponse(health, status_code=status_code)

    return app
