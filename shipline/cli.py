# shipline/cli.py
"""
CLI interface for shipline.

Thin presentation layer over the tools/ service layer.
All commands delegate to the same functions that MCP wraps.
"""

import asyncio
import json
import time
from collections import deque

import typer

app = typer.Typer(
    name="shipline",
    help="Release pipeline orchestrator: staged builds, quality gates, deploys and rollbacks.",
    no_args_is_help=True,
)


def _fmt_duration(seconds: float) -> str:
    """Format seconds as human-readable duration (e.g. '5m17s', '42s')."""
    s = int(seconds)
    if s < 60:
        return f"{s}s"
    m, s = divmod(s, 60)
    return f"{m}m{s:02d}s"


def _run(coro):
    """Run async function from sync CLI context."""
    return asyncio.run(coro)


def _load_config():
    from shipline.config.loader import load_config

    return load_config()


def _setup_logging(config) -> None:
    """Human-readable logging to stderr for CLI mode."""
    from shipline.logging_config import configure_logging

    configure_logging(config.output.verbosity, json_format=False)


async def _get_store(config, recover: bool = False):
    """Open SQLiteRunStore directly (no lifecycle needed for one-shot commands)."""
    from shipline.config.loader import resolve_db_path
    from shipline.models.sqlite_store import SQLiteRunStore

    store = SQLiteRunStore(resolve_db_path(config))
    await store.initialize(recover=recover)
    return store


def _state_color(state: str) -> str:
    """Return ANSI color for a run or stage state."""
    colors = {
        "succeeded": typer.colors.GREEN,
        "cached": typer.colors.GREEN,
        "running": typer.colors.YELLOW,
        "queued": typer.colors.CYAN,
        "pending": typer.colors.WHITE,
        "skipped": typer.colors.BRIGHT_BLACK,
        "rolled_back": typer.colors.MAGENTA,
        "failed": typer.colors.RED,
        "rollback_failed": typer.colors.RED,
        "interrupted": typer.colors.RED,
    }
    return colors.get(state, typer.colors.WHITE)


# Live display: stage state -> (icon, style)
_STAGE_ICONS = {
    "pending": ("○", "dim"),
    "running": ("⟳", "yellow"),
    "succeeded": ("✓", "green"),
    "cached": ("✓", "dim green"),
    "failed": ("✗", "red"),
    "allowed_failure": ("!", "yellow"),
    "skipped": ("↷", "dim"),
    "rolling_back": ("↺", "yellow"),
    "rolled_back": ("↺", "magenta"),
    "rollback_failed": ("✗", "bold red"),
}

_PHASE_SUFFIXES = (
    ("_complete", "succeeded"),
    ("_failed", "failed"),
    ("_skipped", "skipped"),
)


class _StageTracker:
    """Turns orchestrator progress phases into per-stage display state."""

    def __init__(self, order: list[str]) -> None:
        self.order = order
        self.states = {name: "pending" for name in order}
        self.started: dict[str, float] = {}
        self.durations: dict[str, float] = {}
        self.log_lines: deque[str] = deque(maxlen=5)

    def _log(self, text: str) -> None:
        self.log_lines.append(f"{time.strftime('%H:%M:%S')} {text}")

    def _finish(self, name: str, state: str) -> None:
        self.states[name] = state
        if name in self.started:
            self.durations[name] = time.monotonic() - self.started.pop(name)

    def on_progress(self, progress: float, phase: str) -> None:
        if phase == "rollback":
            self._log("Release failed, rolling back...")
            return
        if phase.startswith("rollback:"):
            name = phase.split(":", 1)[1]
            if name in self.states:
                self.states[name] = "rolling_back"
                self._log(f"Rolling back {name}")
            return
        if self.states.get(phase) == "pending":
            self.states[phase] = "running"
            self.started[phase] = time.monotonic()
            self._log(f"Running {phase}")
            return
        for suffix, state in _PHASE_SUFFIXES:
            name = phase[: -len(suffix)]
            if phase.endswith(suffix) and name in self.states:
                self._finish(name, state)
                self._log(f"{name}: {state}")
                return

    def apply_result(self, result) -> None:
        """Overwrite display state with the final PipelineResult."""
        for stage_result in result.stage_results:
            state = stage_result.status.value
            if state == "failed" and stage_result.allowed_failure:
                state = "allowed_failure"
            self.states[stage_result.stage_name] = state
            if stage_result.duration:
                self.durations[stage_result.stage_name] = stage_result.duration
        for rollback in result.rollback_results:
            self.states[rollback.stage_name] = rollback.status.value


def _make_live_display(title: str, tracker: _StageTracker, elapsed: float):
    """Build a rich renderable for the live stage table."""
    from rich.console import Group
    from rich.panel import Panel
    from rich.table import Table
    from rich.text import Text

    table = Table.grid(padding=(0, 2))
    table.add_column(width=3)
    table.add_column()
    table.add_column(style="dim")
    table.add_column(justify="right", style="dim", width=7)

    for name in tracker.order:
        state = tracker.states[name]
        icon, style = _STAGE_ICONS.get(state, ("?", "dim"))
        if name in tracker.durations:
            duration = _fmt_duration(tracker.durations[name])
        elif name in tracker.started:
            duration = _fmt_duration(time.monotonic() - tracker.started[name])
        else:
            duration = ""
        row_style = "bold" if state in ("running", "rolling_back") else ""
        table.add_row(
            Text(icon, style=style),
            Text(name, style=row_style),
            Text(state.replace("_", " ")),
            Text(duration),
        )

    done = sum(1 for name in tracker.order if tracker.states[name] not in ("pending", "running"))
    total = len(tracker.order) or 1
    bar_width = 36
    filled = int(done / total * bar_width)
    bar = "█" * filled + "░" * (bar_width - filled)

    parts: list = [
        table,
        Text(f"\n  {bar}  {done}/{total}  {_fmt_duration(elapsed)}", style="cyan"),
    ]
    if tracker.log_lines:
        parts.append(Text(""))
        for line in tracker.log_lines:
            parts.append(Text(f"  {line}", style="dim"))
    parts.append(Text(""))

    return Panel(
        Group(*parts),
        title=Text(f" {title} ", style="bold"),
        border_style="bright_black",
    )


async def _run_inline(run_id: str, store, config, resume: bool | None = None) -> bool:
    """
    Run a queued run inline with a live stage table. Returns True on success.

    resume=None follows the run's own resume flag (set by retry_run).
    """
    from rich.console import Console
    from rich.live import Live

    from shipline.background.worker import BackgroundWorker, final_state
    from shipline.pipeline.definition import parse_definition
    from shipline.pipeline.graph import StageGraph

    record = await store.get(run_id)
    if record is None:
        raise ValueError(f"Run {run_id} not found")
    order = StageGraph(parse_definition(record.definition).stages).order()

    tracker = _StageTracker(order)
    worker = BackgroundWorker(store, config=config)
    console = Console(stderr=True)
    title = f"{record.pipeline} · {run_id}"
    start = time.monotonic()

    run_task = asyncio.create_task(
        worker.process_run_direct(run_id, resume=resume, progress_callback=tracker.on_progress)
    )

    try:
        with Live(
            _make_live_display(title, tracker, 0.0),
            console=console,
            refresh_per_second=4,
        ) as live:
            while not run_task.done():
                live.update(_make_live_display(title, tracker, time.monotonic() - start))
                await asyncio.sleep(0.25)

            if not run_task.cancelled() and run_task.exception() is None:
                tracker.apply_result(run_task.result())
            live.update(_make_live_display(title, tracker, time.monotonic() - start))

    except (KeyboardInterrupt, asyncio.CancelledError):
        run_task.cancel()
        try:
            await run_task
        except asyncio.CancelledError:
            pass
        raise KeyboardInterrupt

    exc = run_task.exception()
    if exc:
        raise exc

    result = run_task.result()
    elapsed = _fmt_duration(time.monotonic() - start)
    state = final_state(result).value

    console.print()
    if result.success:
        console.print(f"[green]✓ Released[/green]  run: {run_id}  time: {elapsed}")
        # Stage outputs to stdout (pipeable)
        typer.echo(json.dumps(result.outputs, indent=2, sort_keys=True))
        return True

    console.print(f"[red]✗ Failed[/red] at stage '{result.failed_stage}': {result.error}")
    if state == "rolled_back":
        console.print("[magenta]↺ Rolled back to last-known-good[/magenta]")
    elif state == "rollback_failed":
        console.print(
            f"[bold red]Rollback failed[/bold red]; inspect with 'shipline show {run_id}'"
        )
    console.print(f"[dim]Logs:[/dim] shipline logs {run_id} {result.failed_stage}")
    return False


@app.command()
def validate(definition: str = typer.Argument(..., help="Path to the pipeline definition")):
    """Validate a pipeline definition and print its execution order."""
    from shipline.tools.validate_pipeline import validate_pipeline

    try:
        result = _run(validate_pipeline(definition))
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(typer.style(f"✓ {result['pipeline']}", fg=typer.colors.GREEN) + f"  ({result['stages']} stages)")
    for depth, layer in enumerate(result["layers"]):
        typer.echo(f"  {depth}: {', '.join(layer)}")
    if result["rollback_stages"]:
        typer.echo(f"Rollback: {', '.join(result['rollback_stages'])}")


@app.command()
def plan(definition: str = typer.Argument(..., help="Path to the pipeline definition")):
    """Show what a run would execute, stage by stage, without running anything."""
    from rich.console import Console
    from rich.table import Table

    from shipline.tools.validate_pipeline import load_validated

    try:
        pipeline_def, graph = load_validated(definition)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    depth = {name: i for i, layer in enumerate(graph.layers()) for name in layer}

    table = Table(title=f"{pipeline_def.name}", title_justify="left")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="bold")
    table.add_column("Needs")
    table.add_column("Inputs")
    table.add_column("Outputs")
    table.add_column("Secrets")
    table.add_column("Retry", justify="right")
    table.add_column("Rollback")

    for spec in graph:
        retry = f"{spec.retry.attempts}x" if spec.retry else "-"
        flags = " (allow failure)" if spec.allow_failure else ""
        table.add_row(
            str(depth[spec.name]),
            spec.name + flags,
            ", ".join(spec.needs) or "-",
            ", ".join(f"{k}={v}" for k, v in spec.inputs.items()) or "-",
            ", ".join(f"{k}:{v.value}" for k, v in spec.outputs.items()) or "-",
            ", ".join(spec.secrets) or "-",
            retry,
            "yes" if spec.rollback else "-",
        )

    Console().print(table)
    if pipeline_def.trigger.branches:
        typer.echo(f"Branches: {', '.join(pipeline_def.trigger.branches)}")
    typer.echo(
        f"fail_fast={pipeline_def.fail_fast}  rollback_on_failure={pipeline_def.rollback_on_failure}"
    )


@app.command("run")
def run_pipeline(
    definition: str = typer.Argument(..., help="Path to the pipeline definition"),
    branch: str = typer.Option(None, "--branch", "-b", help="Branch the release is triggered from"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Queue only, don't run inline"),
):
    """Queue and run a release with a live stage table. Use --detach to queue only."""
    from shipline.tools.create_run import create_run

    config = _load_config()
    _setup_logging(config)

    async def _release() -> bool:
        store = await _get_store(config)
        try:
            result = await create_run(definition, branch, store=store, config=config)
            run_id = result["run_id"]

            if detach:
                typer.echo(f"Queued run {run_id}. Run 'shipline worker' to start processing.")
                return True

            return await _run_inline(run_id, store, config)
        finally:
            await store.close()

    try:
        ok = _run(_release())
    except KeyboardInterrupt:
        typer.echo("\nCancelled.", err=True)
        raise typer.Exit(130)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not ok:
        raise typer.Exit(1)


@app.command("worker")
def run_worker():
    """Start the worker to process queued runs. Ctrl+C to stop."""
    from shipline.background.lifecycle import ServerLifecycle
    from shipline.config.loader import resolve_db_path

    config = _load_config()
    _setup_logging(config)
    db_path = resolve_db_path(config)

    async def _run_worker():
        lifecycle = ServerLifecycle(db_path, config=config)
        await lifecycle.startup()
        typer.echo("Worker started. Processing queued runs... (Ctrl+C to stop)\n", err=True)
        try:
            await lifecycle.wait_stopped()
        except (KeyboardInterrupt, asyncio.CancelledError):
            typer.echo("\nShutting down...", err=True)
            await lifecycle.shutdown()

    try:
        _run(_run_worker())
    except KeyboardInterrupt:
        pass


@app.command("list")
def list_cmd(
    pipeline: str = typer.Option(None, "--pipeline", "-p", help="Only runs of this pipeline"),
):
    """List release runs."""
    from shipline.tools.list_runs import list_runs

    config = _load_config()

    async def _list():
        store = await _get_store(config)
        try:
            return await list_runs(store=store, pipeline=pipeline)
        finally:
            await store.close()

    result = _run(_list())
    runs = result["runs"]

    if not runs:
        typer.echo("No runs found.")
        return

    typer.echo(f"{'RUN ID':<14} {'STATE':<16} {'PIPELINE':<24} {'BRANCH':<16} CREATED")
    typer.echo("-" * 90)

    for r in runs:
        state = r["state"]
        typer.echo(
            typer.style(f"{r['run_id']:<14} ", fg=_state_color(state))
            + typer.style(f"{state:<16} ", fg=_state_color(state))
            + f"{r['pipeline']:<24} {r['branch'] or '-':<16} {r['created_at'][:19]}"
        )
        if r.get("failed_stage"):
            typer.echo(
                f"{'':14} {'':16} "
                + typer.style(f"↳ failed at {r['failed_stage']}", fg=typer.colors.BRIGHT_BLACK)
            )


@app.command()
def status(run_id: str = typer.Argument(..., help="Run ID to check")):
    """Check the status of a release run."""
    from shipline.tools.check_status import check_status

    config = _load_config()

    async def _status():
        store = await _get_store(config)
        try:
            return await check_status(run_id, store=store)
        finally:
            await store.close()

    try:
        result = _run(_status())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    state = result["state"]
    typer.echo(f"Run:      {result['run_id']}")
    typer.echo(f"Pipeline: {result['pipeline']}")
    typer.echo(typer.style(f"State:    {state}", fg=_state_color(state)))
    typer.echo(f"Progress: {result['progress'] * 100:.0f}%")
    if result.get("current_stage"):
        typer.echo(f"Stage:    {result['current_stage']}")
    if result.get("message"):
        typer.echo(f"Message:  {result['message']}")
    if result.get("error"):
        typer.echo(typer.style(f"Error:    {result['error']}", fg=typer.colors.RED))


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run ID to show"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Show per-stage results (and rollbacks) of a run."""
    from rich.console import Console
    from rich.table import Table

    from shipline.tools.get_run import get_run

    config = _load_config()

    async def _show():
        store = await _get_store(config)
        try:
            return await get_run(run_id, store=store)
        finally:
            await store.close()

    try:
        result = _run(_show())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(result, indent=2))
        return

    table = Table(
        title=f"{result['pipeline']} · {result['run_id']} · {result['state']}",
        title_justify="left",
    )
    table.add_column("Stage", style="bold")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Exit", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Outputs / error")

    for stage in result["stages"]:
        icon, style = _STAGE_ICONS.get(stage["status"], ("?", "dim"))
        detail = stage["error"] or ", ".join(f"{k}={v}" for k, v in stage["outputs"].items())
        table.add_row(
            stage["name"],
            f"[{style}]{icon} {stage['status']}[/{style}]",
            str(stage["attempts"] or "-"),
            "-" if stage["exit_code"] is None else str(stage["exit_code"]),
            _fmt_duration(stage["duration"]) if stage["duration"] else "-",
            detail or "",
        )

    console = Console()
    console.print(table)

    if result["rollbacks"]:
        rollback_table = Table(title="Rollbacks", title_justify="left")
        rollback_table.add_column("Stage", style="bold")
        rollback_table.add_column("Status")
        rollback_table.add_column("Error")
        for rollback in result["rollbacks"]:
            icon, style = _STAGE_ICONS.get(rollback["status"], ("?", "dim"))
            rollback_table.add_row(
                rollback["name"],
                f"[{style}]{icon} {rollback['status']}[/{style}]",
                rollback["error"] or "",
            )
        console.print(rollback_table)


@app.command()
def logs(
    run_id: str = typer.Argument(..., help="Run ID"),
    stage: str = typer.Argument(..., help="Stage name"),
    attempt: str = typer.Option(None, "--attempt", "-a", help="Attempt number or 'rollback'"),
):
    """Print the (redacted) log of a stage attempt."""
    from shipline.tools.get_stage_log import get_stage_log

    config = _load_config()

    async def _logs():
        store = await _get_store(config)
        try:
            return await get_stage_log(run_id, stage, store=store, config=config, attempt=attempt)
        finally:
            await store.close()

    try:
        result = _run(_logs())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"# {result['log_path']}", err=True)
    typer.echo(result["content"], nl=False)


@app.command()
def resume(run_id: str = typer.Argument(..., help="Run ID to resume")):
    """Resume a failed, interrupted or rolled-back run inline, skipping completed stages."""
    from shipline.models.runs import RETRYABLE_STATES, RunState
    from shipline.tools.retry_run import retry_run

    config = _load_config()
    _setup_logging(config)

    async def _resume() -> bool:
        store = await _get_store(config)
        try:
            run = await store.get(run_id)
            if not run:
                typer.echo(f"Run '{run_id}' not found.", err=True)
                raise typer.Exit(1)

            if run.state in RETRYABLE_STATES:
                await retry_run(run_id, store=store, resume=True)
            elif run.state == RunState.SUCCEEDED:
                typer.echo(
                    f"Run '{run_id}' already succeeded. Use 'shipline show {run_id}' to view.",
                    err=True,
                )
                raise typer.Exit(1)
            elif run.state == RunState.RUNNING:
                typer.echo(f"Run '{run_id}' is running in a worker.", err=True)
                raise typer.Exit(1)
            # queued: run it as queued (retry --fresh leaves resume off)

            return await _run_inline(run_id, store, config)
        finally:
            await store.close()

    try:
        ok = _run(_resume())
    except KeyboardInterrupt:
        typer.echo("\nCancelled.", err=True)
        raise typer.Exit(130)
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if not ok:
        raise typer.Exit(1)


@app.command()
def retry(
    run_id: str = typer.Argument(..., help="Run ID to retry"),
    fresh: bool = typer.Option(False, "--fresh", help="Run every stage again (ignore checkpoint)"),
):
    """Re-queue a run (queue only, use 'resume' for the live view)."""
    from shipline.tools.retry_run import retry_run

    config = _load_config()

    async def _retry():
        store = await _get_store(config)
        try:
            return await retry_run(run_id, store=store, resume=not fresh)
        finally:
            await store.close()

    try:
        result = _run(_retry())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(
        f"Run {result['run_id']} re-queued. Run 'shipline resume {result['run_id']}' "
        "or 'shipline worker' to process."
    )


@app.command()
def rollback(run_id: str = typer.Argument(..., help="Run ID to roll back")):
    """Roll back the completed stages of a failed run to last-known-good."""
    from shipline.tools.rollback_run import rollback_run

    config = _load_config()
    _setup_logging(config)

    async def _rollback():
        store = await _get_store(config)
        try:
            return await rollback_run(run_id, store=store, config=config)
        finally:
            await store.close()

    try:
        result = _run(_rollback())
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    for r in result["rollbacks"]:
        typer.echo(typer.style(f"{r['status']:<16} ", fg=_state_color(r["status"])) + r["name"])
    typer.echo(result["message"])
    if result["state"] != "rolled_back":
        raise typer.Exit(1)


@app.command()
def serve():
    """Start the MCP server (stdio transport)."""
    from shipline.server import main

    asyncio.run(main())


if __name__ == "__main__":
    app()
