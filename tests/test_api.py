"""
HTTP trigger and execution endpoints, served in-process through httpx.
"""

import httpx
import pytest

from batch_job_engine.api.app import EXECUTION_ID_HEADER, JOB_FAILED, JOB_INVOKED, create_app
from batch_job_engine.application import BatchApplication
from batch_job_engine.core.orchestrator import BatchOrchestrator
from batch_job_engine.core.registry import JobRegistry
from batch_job_engine.items.writers import ListItemWriter
from batch_job_engine.jobs import CUSTOMER_IMPORT, build_csv_import_job
from batch_job_engine.models.definitions import JobDefinition
from batch_job_engine.models.job import BatchStatus
from batch_job_engine.repository.memory import InMemoryJobRepository
from batch_job_engine.utils.config import EngineSettings

from conftest import GateProcessor, list_step, write_customers


def make_application(tmp_path, *extra_jobs):
    path = write_customers(tmp_path / "customers.csv", 25)
    settings = EngineSettings(store="memory", chunk_size=10, input_files={"importCustomers": str(path)})
    writer = ListItemWriter(key=lambda record: record.id)
    job = build_csv_import_job(CUSTOMER_IMPORT, settings, writer_factory=lambda parameters: writer)
    orchestrator = BatchOrchestrator(InMemoryJobRepository(), registry=JobRegistry((job,) + extra_jobs))
    return BatchApplication(settings, orchestrator), writer


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_start_job_launches_configured_import(tmp_path):
    application, writer = make_application(tmp_path)
    await application.start()

    async with client_for(create_app(application, manage_lifecycle=False)) as client:
        response = await client.post("/job/start")

        assert response.status_code == 202
        assert response.text == JOB_INVOKED
        execution_id = int(response.headers[EXECUTION_ID_HEADER])

        await application.orchestrator.wait_for(execution_id)
        status = await client.get(f"/job/executions/{execution_id}")

    assert status.status_code == 200
    body = status.json()
    assert body["status"] == "COMPLETED"
    assert body["job_name"] == "importCustomers"
    assert body["job_parameters"]["time"]["type"] == "LONG"
    assert body["step_executions"][0]["write_count"] == 25
    assert len(writer.items) == 25
    await application.stop()


@pytest.mark.asyncio
async def test_launch_failure_returns_500(tmp_path):
    application, _ = make_application(tmp_path)
    await application.start()

    async with client_for(create_app(application, job_name="importCourses", manage_lifecycle=False)) as client:
        response = await client.post("/job/start")

    assert response.status_code == 500
    assert response.text == JOB_FAILED
    await application.stop()


@pytest.mark.asyncio
async def test_unknown_execution_returns_404(tmp_path):
    application, _ = make_application(tmp_path)
    await application.start()

    async with client_for(create_app(application, manage_lifecycle=False)) as client:
        assert (await client.get("/job/executions/404")).status_code == 404
        assert (await client.post("/job/executions/404/stop")).status_code == 404

    await application.stop()


@pytest.mark.asyncio
async def test_stop_endpoint_stops_running_execution(tmp_path):
    gate = GateProcessor(item=3)
    slow = JobDefinition("slowJob", (list_step("load", list(range(20)), ListItemWriter(), chunk_size=5, processor=gate),))
    application, _ = make_application(tmp_path, slow)
    await application.start()

    async with client_for(create_app(application, job_name="slowJob", manage_lifecycle=False)) as client:
        response = await client.post("/job/start")
        execution_id = int(response.headers[EXECUTION_ID_HEADER])
        await gate.reached.wait()

        stop = await client.post(f"/job/executions/{execution_id}/stop")
        assert stop.status_code == 200
        assert stop.json() == {"job_execution_id": execution_id, "status": "STOPPING", "message": "Stop requested"}

        gate.release.set()
        finished = await application.orchestrator.wait_for(execution_id)
        assert finished.status == BatchStatus.STOPPED

        again = await client.post(f"/job/executions/{execution_id}/stop")
        assert again.status_code == 409

    await application.stop()


@pytest.mark.asyncio
async def test_health_reflects_orchestrator_state(tmp_path):
    application, _ = make_application(tmp_path)
    app = create_app(application, manage_lifecycle=False)
    await application.start()

    async with client_for(app) as client:
        healthy = await client.get("/health")
        assert healthy.status_code == 200
        assert healthy.json()["jobs"] == ["importCustomers"]

        await application.stop()
        unhealthy = await client.get("/health")
        assert unhealthy.status_code == 503
        assert unhealthy.json()["orchestrator_running"] is False
