# cli.py
from __future__ import annotations

import json
import signal
import sys
from pathlib import Path

import click

from runnerci import settings
from runnerci.coordinator import Coordinator, PipelineRun
from runnerci.errors import DefinitionError
from runnerci.events import ConsoleSink, EventDispatcher
from runnerci.loader import load_definition
from runnerci.pool import WorkerPool, parse_worker, parse_workers
from runnerci.runtime import ContainerRuntime, make_runtime
from runnerci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_CANCELLED = 130


def _load_run(path: Path, debug: bool) -> PipelineRun:
    """
    Load and resolve a definition, exiting with EXIT_DEFINITION on any
    definition error. Nothing has run at this point.
    """
    console = get_console()
    try:
        definition = load_definition(path)
        return PipelineRun(definition, name=path.name)
    except DefinitionError as e:
        details = [f"job: {e.job}"] if e.job else []
        details += [f"{k}: {v}" for k, v in e.details.items() if k != "known"]
        console.print_error(
            "Invalid pipeline definition",
            e.message,
            details=details or None,
            suggestion=f"Fix {path} and run again:\n  runnerci validate {path}",
        )
    except FileNotFoundError as e:
        console.print_error("Pipeline definition not found", str(e))
    except Exception as e:
        console.print_error("Failed to load pipeline definition", f"Could not load {path}", details=[str(e)])
        if debug:
            import traceback
            traceback.print_exc()
    sys.exit(EXIT_DEFINITION)


def _build_pool(worker_specs: tuple[str, ...], runtime: ContainerRuntime) -> WorkerPool:
    """
    Workers share the local runtime, so a worker taken offline by an
    infrastructure failure comes back as soon as the runtime is healthy again.
    """
    if worker_specs:
        workers = [parse_worker(s) for s in worker_specs]
    else:
        workers = parse_workers(settings.WORKERS)
    return WorkerPool(
        workers,
        health_check=lambda worker: runtime.healthy(),
        recheck_interval=settings.HEALTH_INTERVAL,
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full command output)",
)
@click.pass_context
def cli(ctx, debug):
    """runnerci: run a tag-matched CI job set locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--worker",
    "workers",
    multiple=True,
    help="Worker as ID=TAG,TAG (repeatable). Defaults to RUNNERCI_WORKERS.",
)
@click.option(
    "--runtime",
    type=click.Choice(["shell", "docker"]),
    default=settings.RUNTIME,
    show_default=True,
    help="How commands are executed",
)
@click.option("--workspace", default=settings.WORKSPACE, show_default=True, help="Directory commands run in")
@click.option("--max-parallel", default=None, type=int, help="Maximum number of jobs running at once")
@click.option(
    "--acquire-timeout",
    default=settings.ACQUIRE_TIMEOUT,
    type=float,
    show_default=True,
    help="Seconds a ready job may wait for a matching worker",
)
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print dependency levels first")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result as JSON instead of a summary")
@click.pass_context
def run(ctx, path, workers, runtime, workspace, max_parallel, acquire_timeout, print_plan, as_json):
    """Run the pipeline defined in PATH (.yml, .yaml or .py)."""
    console = get_console()
    debug = ctx.obj.get("debug", False)

    pipeline_run = _load_run(path, debug)

    container_runtime = make_runtime(runtime, workspace)
    try:
        pool = _build_pool(workers, container_runtime)
    except ValueError as e:
        console.print_error("Invalid worker", str(e), suggestion="Use --worker ID=TAG,TAG")
        sys.exit(EXIT_DEFINITION)

    if print_plan and not as_json:
        console.print_plan(pipeline_run.graph.levels())

    sinks = [] if as_json else [ConsoleSink()]
    events = EventDispatcher(sinks)
    coordinator = Coordinator(
        pool,
        container_runtime,
        events=events,
        max_parallel=max_parallel,
        acquire_timeout=acquire_timeout,
    )

    def _signal_handler(signum, frame):
        console.print_info(f"\nReceived signal {signum}, cancelling pipeline...")
        pipeline_run.cancel()

    previous = {sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = coordinator.run(pipeline_run)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        events.close()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        console.print_results(result)

    if result.cancelled:
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_OK if result.succeeded else EXIT_FAILED)


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def validate(ctx, path):
    """Check a pipeline definition and print its dependency levels."""
    console = get_console()
    pipeline_run = _load_run(path, ctx.obj.get("debug", False))

    console.print_info(f"{path}: {len(pipeline_run.definition)} job(s), definition OK")
    console.print_plan(pipeline_run.graph.levels())
    for name in pipeline_run.definition.names:
        job = pipeline_run.definition[name]
        console.print_debug(f"{name}: image={job.image} tags={sorted(job.tags)} needs={pipeline_run.graph.preds[name]}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
