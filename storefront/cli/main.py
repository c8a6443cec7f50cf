"""Storefront CLI - Main Entry Point"""

import asyncio
import signal
from typing import Optional
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from sqlalchemy import text

from storefront import __version__
from storefront.config.logging import get_logger, setup_logging
from storefront.config.settings import Settings, get_settings
from storefront.infra.database import Database
from storefront.v1.infra.jobs.schemas import JobResponse
from storefront.v1.infra.jobs.service import JobQueue
from storefront.v1.infra.jobs.worker import WorkerRuntime
from storefront.v1.notifications import registry_init  # noqa: F401
from storefront.v1.notifications.handlers import build_order_confirmation_handler

from .utils.formatting import (
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
logger = get_logger(__name__)

# Create main Typer app
app = typer.Typer(
    name="storefront",
    help="🛒 Storefront - API server, email worker and job queue tools",
    rich_markup_mode="rich",
)


def _queue_database(settings: Settings) -> Database:
    return Database(settings, settings.effective_queue_database_url)


async def _wait_for_db(
    database: Database, max_retries: int = 10, delay: float = 2.0
) -> None:
    """Wait until the jobs table is accessible."""
    for attempt in range(1, max_retries + 1):
        try:
            async with database.SessionLocal() as session:
                await session.execute(text("SELECT 1 FROM jobs LIMIT 1"))
            logger.info("Database ready", attempt=attempt)
            return
        except Exception as e:
            logger.warning(
                "Database not ready",
                attempt=attempt,
                max_retries=max_retries,
                error=str(e),
            )
            if attempt < max_retries:
                await asyncio.sleep(delay)

    raise RuntimeError(
        f"Database not accessible after {max_retries} attempts. "
        "Run `alembic upgrade head` or `storefront init-db` before starting the worker."
    )


async def _run_worker(
    settings: Settings, concurrency: int | None, once: bool, wait: bool
) -> int:
    database = _queue_database(settings)
    try:
        if wait:
            await _wait_for_db(database)

        runtime = WorkerRuntime(database, settings)
        runtime.register_worker(
            settings.order_email_channel,
            build_order_confirmation_handler(settings),
            concurrency_limit=concurrency,
        )

        if once:
            return await runtime.run_once()

        loop = asyncio.get_running_loop()
        stop_requested = asyncio.Event()

        def _handle_stop(*_):
            logger.info("Received shutdown signal, stopping worker")
            stop_requested.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _handle_stop)
            except (NotImplementedError, AttributeError):
                # Windows doesn't support add_signal_handler
                pass

        worker_task = asyncio.create_task(runtime.start())
        stop_task = asyncio.create_task(stop_requested.wait())
        await asyncio.wait(
            {worker_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )

        if not worker_task.done():
            await runtime.stop()
        stop_task.cancel()
        await worker_task
        logger.info("Worker stopped cleanly", worker_id=runtime.worker_id)
        return 0
    finally:
        await database.close()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """🚀 Run the HTTP API server"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "storefront.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        workers=1 if reload else settings.workers,
    )


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, help="Jobs processed at once"
    ),
    once: bool = typer.Option(
        False, "--once", help="Run a single claim cycle and exit"
    ),
    wait_for_db: bool = typer.Option(
        True, "--wait-for-db/--no-wait-for-db", help="Block until the jobs table exists"
    ),
):
    """📬 Run the order confirmation email worker"""
    settings = get_settings()

    print_info(
        f"Starting worker on channel '{settings.order_email_channel}' "
        f"(concurrency: {concurrency or settings.job_concurrency})"
    )

    try:
        processed = asyncio.run(_run_worker(settings, concurrency, once, wait_for_db))
    except RuntimeError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if once:
        print_success(f"Processed {processed} job(s)")


@app.command()
def stats(
    channel: Optional[str] = typer.Option(None, "--channel", help="Scope to a channel"),
):
    """📊 Show job queue statistics"""

    async def _stats():
        database = _queue_database(get_settings())
        try:
            return await JobQueue(database, get_settings()).get_stats(channel)
        finally:
            await database.close()

    result = asyncio.run(_stats())
    console.print(create_stats_panel(result.model_dump()))


@app.command("dead-letters")
def dead_letters(
    channel: Optional[str] = typer.Option(None, "--channel", help="Scope to a channel"),
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Number of jobs to show"),
):
    """☠️ List jobs that exhausted their attempts"""

    async def _list():
        database = _queue_database(get_settings())
        try:
            queue = JobQueue(database, get_settings())
            return await queue.list_dead_letters(channel, limit=limit)
        finally:
            await database.close()

    jobs, total = asyncio.run(_list())
    if not jobs:
        console.print(Panel(
            "🎉 [green]No dead-lettered jobs![/green]",
            title="Dead Letters",
            border_style="green",
        ))
        return

    rows = [JobResponse.model_validate(job).model_dump(mode="json") for job in jobs]
    console.print(create_jobs_table(rows, title=f"Dead Letters ({total})"))


@app.command()
def requeue(
    job_id: str = typer.Argument(..., help="Dead-lettered job ID"),
):
    """🔁 Send a dead-lettered job back to its channel"""
    try:
        parsed_id = UUID(job_id)
    except ValueError:
        print_error(f"Invalid job ID: {job_id}")
        raise typer.Exit(1)

    async def _requeue():
        database = _queue_database(get_settings())
        try:
            return await JobQueue(database, get_settings()).requeue(parsed_id)
        finally:
            await database.close()

    if asyncio.run(_requeue()):
        print_success(f"Job {job_id} requeued")
    else:
        print_warning(f"Job {job_id} is not dead-lettered or does not exist")
        raise typer.Exit(1)


@app.command()
def cleanup():
    """🧹 Delete completed and dead-lettered jobs past retention"""

    async def _cleanup():
        database = _queue_database(get_settings())
        try:
            return await JobQueue(database, get_settings()).cleanup_old_jobs()
        finally:
            await database.close()

    deleted = asyncio.run(_cleanup())
    print_success(f"Deleted {deleted} old job(s)")


@app.command("init-db")
def init_db():
    """🗄️ Create tables directly (development; use Alembic in production)"""
    settings = get_settings()

    async def _init():
        urls = {settings.database_url, settings.effective_queue_database_url}
        for url in urls:
            database = Database(settings, url)
            try:
                await database.create_all()
            finally:
                await database.close()

    # Model modules must be imported so their tables are in the metadata
    from storefront.v1.catalog import models as catalog_models  # noqa: F401
    from storefront.v1.infra.jobs import models as job_models  # noqa: F401
    from storefront.v1.orders import models as order_models  # noqa: F401

    asyncio.run(_init())
    print_success("Database tables created")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", help="Show version and exit"
    ),
):
    """
    🛒 Storefront CLI

    Run the API server and the order confirmation worker, and inspect or
    repair the job queue.
    """
    if version:
        console.print(f"Storefront v{__version__}")
        raise typer.Exit()

    setup_logging(get_settings())


if __name__ == "__main__":
    app()
