"""Command line entry point: ``stackgate run-all | graph | drift``."""

from __future__ import annotations

import asyncio
import json
import signal

import typer

from stackgate import __version__
from stackgate.app import AppContext, build_app_context
from stackgate.config import load_settings
from stackgate.drift.detector import DriftDetector
from stackgate.drift.models import DriftReport
from stackgate.domain.units import Unit
from stackgate.errors import ConfigurationError, GraphError, StackgateError
from stackgate.graph.builder import UnitGraph
from stackgate.graph.loader import load_graph
from stackgate.logging_utils import configure_logging, get_logger
from stackgate.orchestrator.models import (
    EXIT_BLOCKED,
    EXIT_FAILED,
    EXIT_SUCCESS,
    RunResult,
)
from stackgate.orchestrator.run_all import RunAllOrchestrator
from stackgate.orchestrator.summary import render_drift, render_summary
from stackgate.utils.serialization import json_default

app = typer.Typer(
    name="stackgate",
    help="Dependency-ordered, policy-gated infrastructure runs with drift detection.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"stackgate {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Override LOG_LEVEL."),
) -> None:
    """stackgate CLI."""
    configure_logging(log_level)


def _load_graph(root: str, targets: list[str] | None) -> UnitGraph:
    try:
        graph = load_graph(root)
        if targets:
            graph = graph.subgraph(targets)
    except (GraphError, ConfigurationError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED) from exc
    return graph


def _build_context(policy: str | None) -> AppContext:
    try:
        return build_app_context(load_settings(), policy_path=policy)
    except (FileNotFoundError, ConfigurationError, RuntimeError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_FAILED) from exc


async def _run_with_signals(
    orchestrator: RunAllOrchestrator, targets: list[str] | None
) -> RunResult:
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        get_logger(__name__).debug("SIGINT handler not available; Ctrl-C will abort the run")
    try:
        return await orchestrator.run(targets)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.command("run-all")
def run_all(
    root: str = typer.Argument(..., help="Directory containing the unit tree."),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", min=1, help="Units processed at once."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan and gate only, never apply."),
    target: list[str] | None = typer.Option(
        None, "--target", "-t", help="Restrict the run to these units and their dependencies."
    ),
    policy: str | None = typer.Option(None, "--policy", help="Policy file (overrides config)."),
    as_json: bool = typer.Option(False, "--json", help="Print the run result as JSON."),
) -> None:
    """Plan, gate and apply every unit in dependency order."""
    graph = _load_graph(root, target)
    ctx = _build_context(policy)
    settings = ctx.settings
    try:
        orchestrator = RunAllOrchestrator(
            graph,
            ctx.executor,
            ctx.backends,
            ctx.gate,
            ctx.policy_set,
            concurrency=concurrency or settings.orchestrator.concurrency,
            dry_run=dry_run,
            lock_wait=settings.lock.wait,
            lock_retries=settings.lock.retries,
            conflict_retries=settings.orchestrator.conflict_retries,
            backoff_base_seconds=settings.execution.backoff_base_seconds,
            audit=ctx.audit,
        )
        result = asyncio.run(_run_with_signals(orchestrator, target))
    finally:
        ctx.close()

    if as_json:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=json_default))
    else:
        typer.echo(render_summary(result))
    raise typer.Exit(code=result.exit_code)


@app.command("graph")
def show_graph(
    root: str = typer.Argument(..., help="Directory containing the unit tree."),
) -> None:
    """Print units in execution order with their dependencies."""
    graph = _load_graph(root, None)
    for name in graph.order:
        deps = graph.dependencies_of(name)
        suffix = f"  <- {', '.join(deps)}" if deps else ""
        typer.echo(f"{name}{suffix}")


@app.command("drift")
def drift(
    root: str = typer.Argument(..., help="Directory containing the unit tree."),
    target: list[str] | None = typer.Option(None, "--target", "-t", help="Units to check."),
    policy: str | None = typer.Option(None, "--policy", help="Policy file (overrides config)."),
    interval: float | None = typer.Option(
        None, "--interval", min=0, help="Seconds between detection cycles."
    ),
    cycles: int | None = typer.Option(
        None, "--cycles", min=1, help="Stop after this many cycles (with --interval)."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print reports as JSON."),
) -> None:
    """Compare last-applied state with live resources. Never writes state."""
    graph = _load_graph(root, target)
    ctx = _build_context(policy)
    detector = DriftDetector(
        ctx.gate,
        ctx.policy_set,
        backends=ctx.backends,
        provider=ctx.provider,
        audit=ctx.audit,
    )
    denied = False
    failed = False

    def on_error(unit: Unit, exc: StackgateError) -> None:
        nonlocal failed
        failed = True
        typer.echo(f"Error: drift check of {unit.name} failed: {exc}", err=True)

    def on_report(report: DriftReport) -> None:
        nonlocal denied
        if report.drifted and report.decision is not None and not report.decision.allowed:
            denied = True
        if as_json:
            typer.echo(json.dumps(report.to_dict(), default=json_default))
        else:
            typer.echo(render_drift(report))

    units = [graph.unit(name) for name in graph.order]
    try:
        detector.watch(
            units,
            interval or 0,
            cycles=1 if interval is None else cycles,
            on_report=on_report,
            on_error=on_error,
        )
    except KeyboardInterrupt:
        typer.echo("Drift watch interrupted.", err=True)
    finally:
        ctx.close()

    if failed:
        raise typer.Exit(code=EXIT_FAILED)
    raise typer.Exit(code=EXIT_BLOCKED if denied else EXIT_SUCCESS)


if __name__ == "__main__":
    app()
