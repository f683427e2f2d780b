"""
Main CLI entry point for the batch job engine

Provides commands to create the metadata schema, run and inspect jobs,
stop, restart or abandon executions, and serve the HTTP trigger.
"""

import asyncio
import json
import re
import sys
from typing import Any, Callable, Dict, Tuple

import click

from ..application import BatchApplication
from ..models.job import BatchStatus, JobParameter, JobParameters
from ..utils.config import EngineSettings, load_settings
from ..utils.database import DatabaseManager
from ..utils.logger import ROOT_LOGGER_NAME, setup_logger
from ..core.exceptions import BatchEngineError


_PARAMETER = re.compile(r"^(?P<flag>-?)(?P<name>[^=()]+)(\((?P<type>[A-Za-z]+)\))?=(?P<value>.*)$")


def parse_job_parameter(text: str) -> Tuple[str, JobParameter]:
    """
    Parse 'name(type)=value'.

    The type is one of string, long, double or date (default string). A
    leading '-' marks the parameter as non-identifying.
    """
    match = _PARAMETER.match(text)
    if not match:
        raise click.BadParameter(f"expected name(type)=value, got {text!r}")

    name = match.group("name").strip()
    type_name = (match.group("type") or "string").upper()
    raw = match.group("value")
    identifying = match.group("flag") != "-"

    try:
        return name, JobParameter.deserialize(raw, type_name, identifying)
    except ValueError:
        raise click.BadParameter(f"cannot read {raw!r} as {type_name.lower()} in {text!r}")


def _build_parameters(values) -> JobParameters:
    return JobParameters(dict(parse_job_parameter(v) for v in values))


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--store', type=click.Choice(['postgres', 'memory']), help='Execution metadata store')
@click.option('--log-level', '-l', help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, store, log_level, verbose):
    """Batch Job Engine CLI"""

    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
    except BatchEngineError as e:
        click.echo(f"Error loading configuration: {e.message}", err=True)
        sys.exit(1)

    overrides: Dict[str, Any] = {}
    if database_url:
        overrides['database_url'] = database_url
    if store:
        overrides['store'] = store
    if log_level:
        overrides['log_level'] = log_level.upper()
    if overrides:
        settings = settings.model_copy(update=overrides)

    setup_logger(
        ROOT_LOGGER_NAME,
        level=settings.log_level,
        structured=settings.log_format == "json" and not verbose,
        log_file=settings.log_file
    )

    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose
    ctx.obj.setdefault('application_factory', BatchApplication.from_settings)


def _application(ctx) -> BatchApplication:
    factory: Callable[[EngineSettings], BatchApplication] = ctx.obj['application_factory']
    return factory(ctx.obj['settings'])


async def _with_application(ctx, action, error_label: str):
    """Start the application, run action(orchestrator), always stop it."""
    application = _application(ctx)
    try:
        await application.start()
        return await action(application.orchestrator)
    except BatchEngineError as e:
        click.echo(f"Error {error_label}: {e.message}", err=True)
        sys.exit(1)
    finally:
        await application.stop()


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the execution metadata tables and sequences"""
    settings: EngineSettings = ctx.obj['settings']

    async def _init():
        db_manager = DatabaseManager(settings.database_url, pool_size=1, max_overflow=0)
        try:
            await db_manager.initialize()
            await db_manager.apply_schema()
            click.echo("Execution metadata schema is ready")
        except BatchEngineError as e:
            click.echo(f"Error initializing database: {e.message}", err=True)
            sys.exit(1)
        finally:
            await db_manager.close()

    asyncio.run(_init())


@cli.command('run')
@click.argument('job_name')
@click.option('--param', '-p', 'params', multiple=True, help="Job parameter as name(type)=value")
@click.option('--wait/--no-wait', default=True, help='Wait for the execution to finish')
@click.pass_context
def run_job(ctx, job_name, params, wait):
    """Launch a job"""
    parameters = _build_parameters(params)

    async def _run(orchestrator):
        execution = await orchestrator.launch(job_name, parameters)
        click.echo(f"Job execution {execution.job_execution_id} started for {job_name}")
        if not wait:
            return execution.to_dict()
        finished = await orchestrator.wait_for(execution.job_execution_id)
        return finished.to_dict()

    info = asyncio.run(_with_application(ctx, _run, "running job"))
    _display_execution_details(info, ctx.obj['verbose'])
    if wait and info['status'] != BatchStatus.COMPLETED.value:
        sys.exit(1)


@cli.command('status')
@click.argument('execution_id', type=int, required=False)
@click.option('--job', 'job_name', help='Only executions of this job')
@click.option('--limit', type=int, default=10, help='Limit number of executions to show')
@click.pass_context
def status(ctx, execution_id, job_name, limit):
    """Show one execution, or the most recent ones"""

    async def _status(orchestrator):
        if execution_id is not None:
            return await orchestrator.get_execution_status(execution_id)
        return await orchestrator.list_executions(job_name, limit)

    result = asyncio.run(_with_application(ctx, _status, "getting status"))

    if execution_id is None:
        _display_executions_table(result)
    elif result is None:
        click.echo(f"Job execution {execution_id} not found", err=True)
        sys.exit(1)
    else:
        _display_execution_details(result, ctx.obj['verbose'])


@cli.command('stop')
@click.argument('execution_id', type=int)
@click.pass_context
def stop(ctx, execution_id):
    """Request a graceful stop of a running execution"""

    async def _stop(orchestrator):
        return await orchestrator.stop_execution(execution_id)

    execution = asyncio.run(_with_application(ctx, _stop, "stopping execution"))
    click.echo(f"Job execution {execution_id} is {execution.status.value}")


@cli.command('restart')
@click.argument('execution_id', type=int)
@click.option('--wait/--no-wait', default=True, help='Wait for the execution to finish')
@click.pass_context
def restart(ctx, execution_id, wait):
    """Restart the job instance of a failed or stopped execution"""

    async def _restart(orchestrator):
        execution = await orchestrator.restart(execution_id)
        click.echo(f"Job execution {execution.job_execution_id} restarts execution {execution_id}")
        if not wait:
            return execution.to_dict()
        finished = await orchestrator.wait_for(execution.job_execution_id)
        return finished.to_dict()

    info = asyncio.run(_with_application(ctx, _restart, "restarting execution"))
    _display_execution_details(info, ctx.obj['verbose'])
    if wait and info['status'] != BatchStatus.COMPLETED.value:
        sys.exit(1)


@cli.command('abandon')
@click.argument('execution_id', type=int)
@click.pass_context
def abandon(ctx, execution_id):
    """Mark an execution ABANDONED so it is never restarted"""

    async def _abandon(orchestrator):
        return await orchestrator.abandon(execution_id)

    execution = asyncio.run(_with_application(ctx, _abandon, "abandoning execution"))
    click.echo(f"Job execution {execution_id} is {execution.status.value}")


@cli.command('serve')
@click.option('--host', help='Bind address')
@click.option('--port', type=int, help='Bind port')
@click.option('--job', 'job_name', help='Job launched by POST /job/start')
@click.pass_context
def serve(ctx, host, port, job_name):
    """Serve the HTTP trigger"""
    import uvicorn
    from ..api.app import create_app

    settings: EngineSettings = ctx.obj['settings']
    app = create_app(_application(ctx), job_name=job_name)
    click.echo(f"Serving {job_name or settings.job_name} trigger on {host or settings.http_host}:{port or settings.http_port}")
    uvicorn.run(
        app,
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_level=settings.log_level.lower()
    )


# Helper Functions
def _display_execution_details(info: Dict[str, Any], verbose: bool):
    """Display one execution with its steps"""
    exit_status = info['exit_status']
    click.echo(f"Execution ID: {info['job_execution_id']}")
    click.echo(f"Job: {info['job_name']} (instance {info['job_instance_id']})")
    click.echo(f"Status: {info['status']}")
    click.echo(f"Exit Code: {exit_status['exit_code']}")
    if exit_status.get('exit_description'):
        click.echo(f"Exit Description: {exit_status['exit_description']}")
    click.echo(f"Created: {info['create_time']}")

    if info.get('start_time'):
        click.echo(f"Started: {info['start_time']}")
    if info.get('end_time'):
        click.echo(f"Ended: {info['end_time']}")

    if verbose and info.get('job_parameters'):
        click.echo("Parameters:")
        click.echo(json.dumps(info['job_parameters'], indent=2))

    steps = info.get('step_executions') or []
    if steps:
        click.echo()
        click.echo(f"{'Step':<30} {'Status':<10} {'Read':>8} {'Written':>8} {'Commits':>8} {'Skips':>6}")
        click.echo("-" * 75)
        for step in steps:
            click.echo(f"{step['step_name']:<30} {step['status']:<10} {step['read_count']:>8} "
                       f"{step['write_count']:>8} {step['commit_count']:>8} {step['skip_count']:>6}")


def _display_executions_table(executions: list):
    """Display executions in table format"""
    if not executions:
        click.echo("No job executions found")
        return

    click.echo(f"{'ID':<8} {'Job':<30} {'Status':<10} {'Exit Code':<10} {'Started':<20}")
    click.echo("-" * 80)

    for execution in executions:
        started = execution['start_time'][:19] if execution.get('start_time') else 'N/A'
        click.echo(f"{execution['job_execution_id']:<8} {execution['job_name']:<30} {execution['status']:<10} "
                   f"{execution['exit_status']['exit_code']:<10} {started:<20}")


def main():
    """Main CLI entry point"""
    cli(obj={})


if __name__ == '__main__':
    main()
