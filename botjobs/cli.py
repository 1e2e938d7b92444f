"""CLI command definitions for botjobs."""
import json
import multiprocessing
import signal
import threading

import click
from loguru import logger

from botjobs import __version__
from botjobs.config import DEFAULTS, EngineConfig, validate_value
from botjobs.coordinator import RunCoordinator
from botjobs.exceptions import BotJobsError
from botjobs.models import STATUSES
from botjobs.registry import load_registry
from botjobs.storage import Storage
from botjobs.utils import now_iso

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {message}"


def _echo_sink(message):
    click.echo(message, err=True, nl=False)


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(_echo_sink, level=level.upper(), format=LOG_FORMAT)


def _storage(ctx) -> Storage:
    return Storage(ctx.obj['db_path'])


def _fail(message: str, error: Exception):
    click.echo(f"Error: {message}", err=True)
    click.echo(f"  {error}", err=True)
    raise click.Abort()


@click.group()
@click.version_option(version=__version__)
@click.option('--db', 'db_path', envvar='BOTJOBS_DB', default=None,
              help='Path to the SQLite job store (default: $BOTJOBS_DB or botjobs.db)')
@click.option('--log-level', default='INFO', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def main(ctx, db_path, log_level):
    """botjobs - process queued bot jobs exactly once per claim."""
    ctx.ensure_object(dict)
    ctx.obj['db_path'] = db_path
    configure_logging(log_level)


@main.command()
@click.argument('kind')
@click.option('--payload', default='{}', show_default=True, help='Job payload as a JSON object')
@click.option('--id', 'job_id', default=None, help='Job id (generated when omitted)')
@click.option('--dedupe-key', default=None, help='Skip the enqueue if a job with this key exists')
@click.pass_context
def enqueue(ctx, kind, payload, job_id, dedupe_key):
    """Add a pending job of KIND to the queue.

    Example:
      botjobs enqueue bot_move --payload '{"room_code":"ABCD","player_id":1,"expected_turn":4}'
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        click.echo(f"Error: Invalid JSON payload - {e.msg}", err=True)
        raise click.Abort()

    if not isinstance(data, dict):
        click.echo("Error: Payload must be a JSON object", err=True)
        raise click.Abort()

    try:
        job = _storage(ctx).enqueue_job(kind, data, job_id=job_id, dedupe_key=dedupe_key)
    except (BotJobsError, ValueError) as e:
        _fail("Failed to enqueue job", e)

    click.echo(f"✓ Job {job.id} queued")
    click.echo(f"  Kind: {job.kind}")
    click.echo(f"  Status: {job.status}")


@main.command()
@click.option('--registry', 'registry_spec', envvar='BOTJOBS_REGISTRY', default=None,
              help="Action registry as 'package.module:attribute'")
@click.pass_context
def run(ctx, registry_spec):
    """Process one batch of pending jobs and print a JSON summary.

    This is the entry point for an external scheduler (cron, systemd timer...).
    Exits with status 1 when the run itself fails.
    """
    logger.info("Processing bot jobs...")
    try:
        storage = _storage(ctx)
        coordinator = RunCoordinator(storage, load_registry(registry_spec))
        result = coordinator.run_once()
    except BotJobsError as e:
        logger.error(f"Error processing jobs: {e}")
        click.echo(json.dumps({'success': False, 'error': str(e)}), err=True)
        ctx.exit(1)

    click.echo(json.dumps({
        'success': True,
        'processed': result.processed,
        'failed': result.failed,
        'timestamp': now_iso(),
    }))


@main.group()
def worker():
    """Run the polling loop in-process."""
    pass


def worker_process_runner(db_path, registry_spec, interval, max_runs, log_level):
    """
    Run one polling loop; used directly and as a multiprocessing target.

    SIGTERM and SIGINT stop the loop after the current run.
    """
    configure_logging(log_level)
    stop_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Signal {signum} received, stopping after the current run")
        stop_event.set()

    previous = {sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        storage = Storage(db_path)
        coordinator = RunCoordinator(storage, load_registry(registry_spec))
        coordinator.run_forever(interval=interval, stop_event=stop_event, max_runs=max_runs)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@worker.command()
@click.option('--interval', default=1.0, show_default=True, type=float, help='Seconds between runs')
@click.option('--count', default=1, show_default=True, type=int, help='Number of worker processes')
@click.option('--max-runs', default=None, type=int, help='Stop each worker after this many runs')
@click.option('--registry', 'registry_spec', envvar='BOTJOBS_REGISTRY', default=None,
              help="Action registry as 'package.module:attribute'")
@click.pass_context
def start(ctx, interval, count, max_runs, registry_spec):
    """Start one or more polling workers."""
    if count < 1:
        click.echo("Error: Count must be at least 1", err=True)
        raise click.Abort()
    if interval <= 0:
        click.echo("Error: Interval must be positive", err=True)
        raise click.Abort()

    db_path = ctx.obj['db_path']
    log_level = ctx.find_root().params['log_level']

    try:
        # Fail fast on a bad registry or config before spawning anything
        load_registry(registry_spec)
        EngineConfig.from_storage(Storage(db_path))
    except BotJobsError as e:
        _fail("Cannot start workers", e)

    args = (db_path, registry_spec, interval, max_runs, log_level)
    if count == 1:
        worker_process_runner(*args)
        return

    processes = []
    for i in range(count):
        process = multiprocessing.Process(target=worker_process_runner, args=args, name=f"worker-{i + 1}")
        process.start()
        processes.append(process)
        click.echo(f"✓ Started {process.name} (PID: {process.pid})")

    click.echo(f"\n{count} worker(s) running. Press Ctrl+C to stop all workers.\n")
    try:
        for process in processes:
            process.join()
    except KeyboardInterrupt:
        click.echo("\nShutting down all workers...")
        for process in processes:
            if process.is_alive():
                process.terminate()
        for process in processes:
            process.join(timeout=5)
        click.echo("All workers stopped.")


@main.command()
@click.pass_context
def status(ctx):
    """Show job counts by status."""
    try:
        counts = _storage(ctx).get_job_counts()
    except BotJobsError as e:
        _fail("Failed to get status", e)

    total = sum(counts.values())
    click.echo("Bot Job Status")
    click.echo("=" * 40)
    click.echo(f"  Pending:     {counts['pending']:>6}")
    click.echo(f"  In flight:   {counts['in_flight']:>6}")
    click.echo(f"  Completed:   {counts['completed']:>6}")
    click.echo(f"  Failed:      {counts['failed']:>6}")
    click.echo("-" * 40)
    click.echo(f"  Total:       {total:>6}")


@main.command(name='list')
@click.option('--status', 'status_filter', type=click.Choice(STATUSES), help='Filter jobs by status')
@click.option('--limit', default=None, type=int, help='Show at most this many jobs')
@click.pass_context
def list_jobs(ctx, status_filter, limit):
    """List jobs in enqueue order."""
    try:
        jobs = _storage(ctx).list_jobs(status=status_filter, limit=limit)
    except (BotJobsError, ValueError) as e:
        _fail("Failed to list jobs", e)

    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        line = f"{job.id:>36} | {job.status:<9} | {job.kind:<12} | attempts={job.attempts}"
        if job.error:
            line += f" | error={job.error}"
        click.echo(line)
    click.echo(f"Total: {len(jobs)} job(s)")


@main.command()
@click.argument('job_id')
@click.pass_context
def show(ctx, job_id):
    """Show one job as JSON."""
    try:
        job = _storage(ctx).get_job(job_id)
    except BotJobsError as e:
        _fail("Failed to read job", e)

    if job is None:
        click.echo(f"Error: Job '{job_id}' not found", err=True)
        raise click.Abort()
    click.echo(json.dumps(job.to_dict(), indent=2))


@main.group()
def config():
    """Manage engine configuration."""
    pass


@config.command(name='set')
@click.argument('key', type=click.Choice(sorted(DEFAULTS)))
@click.argument('value')
@click.pass_context
def config_set(ctx, key, value):
    """Set a configuration value.

    Examples:
      botjobs config set batch-size 20
      botjobs config set stale-after 120
    """
    try:
        storage = _storage(ctx)
        validate_value(key, value, storage.list_config())
        storage.set_config(key, value)
    except BotJobsError as e:
        _fail("Failed to set configuration", e)

    click.echo(f"✓ {key} = {value}")


@config.command(name='get')
@click.argument('key', type=click.Choice(sorted(DEFAULTS)))
@click.pass_context
def config_get(ctx, key):
    """Get a configuration value."""
    try:
        value = _storage(ctx).get_config(key)
    except BotJobsError as e:
        _fail("Failed to get configuration", e)

    if value is None:
        click.echo(f"{key} = {DEFAULTS[key]}  (default)")
    else:
        click.echo(f"{key} = {value}")


@config.command(name='list')
@click.pass_context
def config_list(ctx):
    """List every configuration value, defaults included."""
    try:
        stored = _storage(ctx).list_config()
    except BotJobsError as e:
        _fail("Failed to list configuration", e)

    for key in sorted(DEFAULTS):
        if key in stored:
            click.echo(f"  {key} = {stored[key]}")
        else:
            click.echo(f"  {key} = {DEFAULTS[key]}  (default)")


if __name__ == '__main__':
    main()
