"""Command line interface for running nexusflow workers and inspecting executions."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from nexusflow import __version__
from nexusflow.config import load_config
from nexusflow.errors import ValidationError
from nexusflow.graph import WorkflowGraph
from nexusflow.persistence import get_store
from nexusflow.queue.manager import QueueManager
from nexusflow.status import StatusPublisher
from nexusflow.tools import default_registry
from nexusflow.workers import WorkerPool

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)

app = typer.Typer(help="CLI for nexusflow workflow execution")

# Command groups
worker_app = typer.Typer(help="Commands for running queue workers")
execution_app = typer.Typer(help="Commands for inspecting executions")
queue_app = typer.Typer(help="Commands for inspecting queues")
template_app = typer.Typer(help="Commands for workflow templates")

app.add_typer(worker_app, name="worker")
app.add_typer(execution_app, name="execution")
app.add_typer(queue_app, name="queue")
app.add_typer(template_app, name="template")


@app.callback()
def main() -> None:
    """nexusflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("version")
def version() -> None:
    typer.echo(__version__)


@worker_app.command("start")
def worker_start(
    queue: Optional[List[str]] = typer.Option(None, help="Queue to consume; repeatable"),
    concurrency: Optional[int] = typer.Option(None, help="Jobs processed in parallel"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run workers for the workflow queue and any registered queue families.

    Example:
        nexusflow worker start
        nexusflow worker start --queue workflows --concurrency 2 --lifespan 300
    """
    typer.echo(f"Starting workers: {', '.join(queue or ['workflows'])}")
    asyncio.run(run_workers(WorkerPool(), queue or None, concurrency, lifespan))
    typer.echo("Workers stopped")


async def run_workers(
    pool: WorkerPool,
    queues: Optional[List[str]] = None,
    concurrency: Optional[int] = None,
    lifespan: Optional[float] = None,
) -> None:
    """Run ``pool`` until its lifespan ends or SIGINT/SIGTERM asks it to drain."""
    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()
    for sig in STOP_SIGNALS:
        loop.add_signal_handler(sig, stopping.set)

    await pool.start(queues, concurrency=concurrency, lifespan=lifespan)
    finished = asyncio.create_task(pool.wait())
    signalled = asyncio.create_task(stopping.wait())
    try:
        done, _ = await asyncio.wait(
            {finished, signalled}, return_when=asyncio.FIRST_COMPLETED
        )
        if signalled in done:
            logger.info("Shutdown signal received; draining workers")
    finally:
        signalled.cancel()
        for sig in STOP_SIGNALS:
            loop.remove_signal_handler(sig)
        await pool.stop()
    await finished


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Interface to bind"),
    port: int = typer.Option(8000, help="Port to listen on"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    """
    Serve the HTTP API.

    Example:
        nexusflow serve --port 8080
    """
    import uvicorn

    uvicorn.run(
        "nexusflow.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=load_config().log_level.lower(),
    )


@execution_app.command("list")
def execution_list(
    template: Optional[str] = typer.Option(None, help="Filter by workflow template id"),
    organization: Optional[str] = typer.Option(None, help="Filter by organization id"),
    user: Optional[str] = typer.Option(None, help="Filter by user id"),
    limit: int = typer.Option(50, help="Maximum number of executions"),
) -> None:
    """
    List executions, newest first.

    Example:
        nexusflow execution list --organization org-1
        # Output: 0b6c...    completed    100%
    """
    store = get_store()
    executions = asyncio.run(
        store.list_executions(
            template_id=template, organization_id=organization, user_id=user, limit=limit
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        progress = f"{execution.progress}%" if execution.progress is not None else "-"
        typer.echo(f"{execution.id}\t{execution.status.value}\t{progress}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its step history."""
    store = get_store()

    async def _load():
        execution = await store.get_execution_by_id(execution_id)
        steps = await store.list_execution_steps(execution_id) if execution else []
        return execution, steps

    execution, steps = asyncio.run(_load())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Template: {execution.workflow_template_id}")
    if execution.input:
        typer.echo(f"Input: {json.dumps(execution.input)}")
    if execution.error:
        typer.secho(f"Error: {execution.error}", fg=typer.colors.RED)
    if execution.output is not None:
        typer.echo(f"Output: {json.dumps(execution.output, default=str)}")
    for step in steps:
        line = f"- [{step.step_index}] {step.step_name}: {step.status.value}"
        if step.duration_ms is not None:
            line += f" ({step.duration_ms} ms)"
        if step.error:
            line += f" error={step.error}"
        typer.echo(line)


@execution_app.command("watch")
def execution_watch(
    execution_id: str,
    interval: Optional[float] = typer.Option(None, help="Poll interval in seconds"),
) -> None:
    """Print status snapshots until the execution finishes."""
    config = load_config()
    publisher = StatusPublisher(
        get_store(),
        poll_interval=interval or config.stream.poll_interval,
        close_grace=0,
    )

    async def _watch() -> int:
        frames = 0
        async for frame in publisher.stream(execution_id):
            typer.echo(frame.strip())
            frames += 1
        return frames

    if asyncio.run(_watch()) == 0:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)


@queue_app.command("stats")
def queue_stats(name: str) -> None:
    """Show job counts for a queue."""
    manager = QueueManager()

    async def _stats():
        try:
            return await manager.get_queue_stats(name)
        finally:
            await manager.backend.close()

    stats = asyncio.run(_stats())
    for field, value in stats.model_dump().items():
        typer.echo(f"{field}: {value}")


@template_app.command("validate")
def template_validate(
    path: Path,
    check_tools: bool = typer.Option(
        False, help="Reject tool nodes naming tools outside the built-in registry"
    ),
) -> None:
    """
    Validate a workflow graph file (JSON or YAML) and print its step order.

    Example:
        nexusflow template validate ./graphs/summarize.yaml
        # Output: Graph is valid (4 steps)
        #         0. input
        #         1. validate (tool)
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        graph = WorkflowGraph.parse(data.get("graph", data))
        graph.validate_structure(default_registry().names() if check_tools else None)
        order = graph.execution_order()
    except ValidationError as exc:
        typer.secho(f"Invalid graph: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Graph is valid ({len(order)} steps)")
    for index, node in enumerate(order):
        typer.echo(f"{index}. {node.name or node.id} ({node.type})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
