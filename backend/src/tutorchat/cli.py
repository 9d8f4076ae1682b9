"""
TutorChat CLI - Command-line interface for TutorChat.

Server and worker processes plus one-shot maintenance commands. Chat itself
happens over the HTTP API.
"""

import logging
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from tutorchat.exceptions import ChatEngineError
from tutorchat.logging_config import setup_logging

app = typer.Typer(
    name="tutorchat",
    help="TutorChat - Streaming tutoring chat engine",
    no_args_is_help=True,
)

console = Console()


def _init_logging(context: str = "cli") -> None:
    # Fall back to console logging if the log directory is not writable
    try:
        setup_logging(context=context)
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        console.print(f"[red]✗ Invalid {label}: {value}[/red]")
        raise typer.Exit(2)


def _print_result(title: str, result: dict) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in result.items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind to (default: settings.api_host)"),
    port: int = typer.Option(None, help="Port to bind to (default: settings.api_port)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """
    Start the FastAPI server.

    The job worker runs inside the server process unless WORKER_ENABLED=false.
    """
    import uvicorn

    from tutorchat.config import settings

    host = host or settings.api_host
    port = port or settings.api_port

    console.print("[bold green]Starting TutorChat API server...[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Reload: {reload}")
    console.print(f"  In-process worker: {settings.worker_enabled}")
    console.print(f"\n  API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "tutorchat.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Drain due jobs and exit"),
    max_jobs: int = typer.Option(100, help="Job limit for --once"),
) -> None:
    """
    Run a standalone job worker.

    Set REDIS_URL so streamed replies travel over the SSE bus to the API
    processes. Without it events stay in this process and no client sees them.
    """
    from tutorchat.config import settings
    from tutorchat.jobs.worker import JobWorker
    from tutorchat.sse.hub import ChatNotifier
    from tutorchat.startup import StartupCheckError, run_all_startup_checks

    _init_logging("worker")
    try:
        run_all_startup_checks()
    except StartupCheckError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    notifier = None
    if settings.redis_url:
        from tutorchat.sse.bus import RedisEventBus

        notifier = ChatNotifier(RedisEventBus(settings.redis_url))
        console.print(f"[dim]Publishing chat events on {settings.sse_bus_channel}[/dim]")
    else:
        console.print("[yellow]REDIS_URL not set: chat events reach no API subscribers[/yellow]")

    job_worker = JobWorker(notifier=notifier)
    if once:
        processed = job_worker.drain(max_jobs=max_jobs)
        console.print(f"[green]✓ Processed {processed} jobs[/green]")
        return

    console.print(f"[bold green]Job worker running[/bold green] ({', '.join(job_worker.job_types)})")
    try:
        job_worker.run()
    except KeyboardInterrupt:
        job_worker.stop()
        console.print("\n[yellow]Worker stopped[/yellow]")


@app.command("init-db")
def init_db_command() -> None:
    """Create any missing tables."""
    from tutorchat.db.connection import init_db

    _init_logging()
    init_db()
    console.print("[green]✓ Database tables created[/green]")


@app.command()
def maintain(
    thread: str = typer.Argument(..., help="Thread ID"),
    user: str = typer.Option(..., "--user", help="Owning user ID"),
) -> None:
    """Run every maintenance phase of a thread now."""
    from tutorchat.chat.maintainer import maintain_thread
    from tutorchat.db.connection import db_session
    from tutorchat.llm import create_llm_client
    from tutorchat.vector import create_vector_store

    _init_logging()
    thread_id = _parse_uuid(thread, "thread ID")
    user_id = _parse_uuid(user, "user ID")

    try:
        llm = create_llm_client()
        with db_session() as session:
            result = maintain_thread(
                session, llm, create_vector_store(), user_id, thread_id,
                on_stage=lambda stage: console.print(f"  [dim]{stage}[/dim]"),
            )
    except (ChatEngineError, ValueError) as e:
        console.print(f"[red]✗ Maintenance failed: {e}[/red]")
        raise typer.Exit(1)

    _print_result(f"Maintained thread {thread_id}", result.to_dict())


@app.command("index-path")
def index_path(
    path: str = typer.Argument(..., help="Path ID"),
    user: str = typer.Option(..., "--user", help="Owning user ID"),
    node: str = typer.Option(None, "--node", help="Only rebuild this node's block docs"),
    no_llm: bool = typer.Option(False, "--no-llm", help="Skip contextual descriptions"),
) -> None:
    """Rebuild the chat projection of a learning path."""
    from tutorchat.chat.path_index import index_path_for_chat, index_path_node_blocks
    from tutorchat.db.connection import db_session
    from tutorchat.llm import create_llm_client
    from tutorchat.vector import create_vector_store

    _init_logging()
    path_id = _parse_uuid(path, "path ID")
    user_id = _parse_uuid(user, "user ID")

    try:
        llm = None if no_llm else create_llm_client()
        with db_session() as session:
            if node:
                node_id = _parse_uuid(node, "node ID")
                result = index_path_node_blocks(
                    session, llm, create_vector_store(), user_id, path_id, node_id
                )
            else:
                result = index_path_for_chat(session, llm, create_vector_store(), user_id, path_id)
    except (ChatEngineError, ValueError) as e:
        console.print(f"[red]✗ Path index failed: {e}[/red]")
        raise typer.Exit(1)

    _print_result(f"Indexed path {path_id}", result.to_dict())


@app.command()
def rebuild(
    thread: str = typer.Argument(..., help="Thread ID"),
    user: str = typer.Option(..., "--user", help="Owning user ID"),
    maintain_after: bool = typer.Option(
        True, "--maintain/--no-maintain", help="Enqueue a chat_maintain job afterwards"
    ),
) -> None:
    """Drop a thread's derived artifacts and reset its cursors."""
    from tutorchat.chat.rebuild import rebuild_thread
    from tutorchat.db.connection import db_session
    from tutorchat.vector import create_vector_store

    _init_logging()
    thread_id = _parse_uuid(thread, "thread ID")
    user_id = _parse_uuid(user, "user ID")

    try:
        with db_session() as session:
            result = rebuild_thread(
                session, create_vector_store(), user_id, thread_id,
                enqueue_maintain=maintain_after,
            )
    except ChatEngineError as e:
        console.print(f"[red]✗ Rebuild failed: {e}[/red]")
        raise typer.Exit(1)

    _print_result(f"Rebuilt thread {thread_id}", result.to_dict())


@app.command()
def jobs(
    recover: bool = typer.Option(
        False, "--recover", help="Re-queue running jobs whose lease expired"
    ),
    purge_days: int = typer.Option(
        0, "--purge-days", help="Delete finished jobs older than this many days"
    ),
) -> None:
    """Show job queue statistics."""
    from tutorchat.db.connection import db_session
    from tutorchat.jobs.queue import JobQueue

    _init_logging()
    with db_session() as session:
        queue = JobQueue(session)
        if recover:
            reset = queue.cleanup_stale_jobs()
            console.print(f"[yellow]Re-queued {reset} stale jobs[/yellow]")
        if purge_days > 0:
            purged = queue.purge_completed(days=purge_days)
            console.print(f"[yellow]Purged {purged} finished jobs[/yellow]")
        stats = queue.get_stats().to_dict()

    table = Table(title="Job queue")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    for status, count in stats.items():
        table.add_row(status, str(count))
    console.print(table)


if __name__ == "__main__":
    app()
