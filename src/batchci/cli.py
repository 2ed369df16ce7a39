# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from batchci.context import build_context, parse_assignment
from batchci.errors import BatchCIError, ConfigurationError, SchedulingStarvation
from batchci.executor import LocalProcessBackend
from batchci.model import Verdict
from batchci.pool import WorkerPool
from batchci.predicate import PredicateEvaluator
from batchci.reporting import ReportClient, ReportClientError, report_to_dict
from batchci.runner import Orchestrator, load_workflow, prepare_run, required_tags, workers_from_spec
from batchci.scheduler import BarrierPolicy
from batchci.settings import load_settings
from batchci.ui.console import Console, set_console, get_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "batchci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    default_json = current_dir / "batchci.json"
    if default_json.exists():
        workflow_files.append(default_json)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".json"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  batchci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  batchci_workflow.py",
                "  *_workflow.py",
                "  batchci.json",
            ],
            suggestion="Create a workflow file:\n  batchci_workflow.py\n\nOr specify a workflow explicitly:\n  batchci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  batchci run --workflow batchci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _context_from_options(branch, commit, pull_request, fork, assignments):
    try:
        overrides = [parse_assignment(a) for a in assignments]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--context")
    return build_context(
        branch=branch,
        commit=commit,
        pull_request=pull_request,
        fork=fork,
        overrides=overrides,
    )


def context_options(fn):
    """Options that shape the run context predicates see."""
    fn = click.option("--context", "assignments", multiple=True, metavar="PATH=VALUE",
                      help="Set any context value, e.g. build.source=schedule")(fn)
    fn = click.option("--fork/--no-fork", default=None,
                      help="Whether the pull request comes from a forked repository")(fn)
    fn = click.option("--pull-request", default=None, help="Pull request id that triggered the run")(fn)
    fn = click.option("--commit", default=None, help="Commit (defaults to git HEAD)")(fn)
    fn = click.option("--branch", default=None, help="Branch (defaults to the current git branch)")(fn)
    fn = click.option("--workflow", default=None,
                      help="Workflow file path (defaults to batchci_workflow.py if present)")(fn)
    return fn


def _load_or_exit(ctx, workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except (ConfigurationError, TypeError, ValueError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=str(e).splitlines(),
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """BatchCI: batch-and-barrier pipeline orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@context_options
@click.pass_context
def plan(ctx, workflow, branch, commit, pull_request, fork, assignments):
    """Show batches and which stages would be skipped, without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(ctx, workflow_path)

    try:
        context = _context_from_options(branch, commit, pull_request, fork, assignments)
        run = prepare_run(pipeline, context=context)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e).splitlines()[0], details=str(e).splitlines()[1:])
        sys.exit(1)

    evaluator = PredicateEvaluator()
    decisions = {s.label: evaluator.evaluate(s.predicate, run.context) for s in run.stages}
    console.print_plan(run, decisions)


@cli.command()
@context_options
@click.option("--workers", default=None,
              help='Worker count ("2") or tagged workers ("a:production=true;b:platform=linux")')
@click.option("--workspace", default=None, help="Directory commands run in and artifacts are collected from")
@click.option("--timeout", "stage_timeout", default=None, type=click.FloatRange(min=0, min_open=True),
              help="Default per-stage timeout in seconds")
@click.option("--max-parallel", default=None, type=click.IntRange(min=1), help="Cap on concurrently running stages")
@click.option("--fail-fast/--no-fail-fast", default=None,
              help="Cancel stages behind a wait once anything before it failed")
@click.option("--show-output", is_flag=True, default=False, help="Print the output tail of failed stages")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write the run report as JSON")
@click.option("--report-api", default=None, help="Archive API base URL to submit the report to")
@click.pass_context
def run(ctx, workflow, branch, commit, pull_request, fork, assignments, workers, workspace,
        stage_timeout, max_parallel, fail_fast, show_output, report_json, report_api):
    """Run a BatchCI pipeline."""
    console = get_console()
    console.show_output = show_output

    workflow_path = discover_workflow(workflow)
    pipeline = _load_or_exit(ctx, workflow_path)
    context = _context_from_options(branch, commit, pull_request, fork, assignments)

    try:
        settings = load_settings()
        run_ = prepare_run(pipeline, context=context, listeners=[console.on_transition])

        pool = WorkerPool(workers_from_spec(workers or settings.workers, required_tags(run_)))
        for w in pool.workers:
            console.print_debug(f"worker {w.name}: {','.join(sorted(w.tags)) or '(no tags)'}")
        console.print_debug(f"context build={run_.context.get('build')}")
        fail_fast = settings.fail_fast if fail_fast is None else fail_fast
        orchestrator = Orchestrator(
            pool,
            LocalProcessBackend(workspace or settings.workspace),
            policy=BarrierPolicy.FAIL_FAST if fail_fast else BarrierPolicy.CONTINUE,
            max_parallel=settings.max_parallel if max_parallel is None else max_parallel,
            default_timeout=settings.stage_timeout if stage_timeout is None else stage_timeout,
        )

        console.print_run_started(
            run_id=run_.run_id,
            workflow=workflow_path.name,
            stage_count=len(run_.stages),
            batch_count=len(run_.graph),
            worker_count=len(pool),
        )

        report = orchestrator.execute(run_)
        console.print_results(report)

    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e).splitlines()[0], details=str(e).splitlines()[1:])
        sys.exit(1)
    except SchedulingStarvation as e:
        console.print_error(
            "No matching worker",
            str(e).splitlines()[0],
            details=str(e).splitlines()[1:],
            suggestion='Add a worker carrying the tags, e.g.:\n  batchci run --workers "w1:production=true"',
        )
        sys.exit(1)
    except BatchCIError as e:
        console.print_error("Run failed", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if report_json:
        Path(report_json).write_text(
            json.dumps(report_to_dict(report, pipeline=workflow_path.name), indent=2),
            encoding="utf-8",
        )
        console.print_info(f"Report written to {report_json}")

    api = report_api or settings.report_api
    if api:
        try:
            run_id = ReportClient(api).submit(report, pipeline=workflow_path.name)
            console.print_info(f"Report archived at {api.rstrip('/')}/runs/{run_id}")
        except ReportClientError as e:
            console.print_error(
                "Could not archive report",
                str(e),
                suggestion="Verify the API URL is correct and the archive is running.",
            )

    if run_.cancelled:
        sys.exit(130)
    if report.verdict != Verdict.SUCCEEDED:
        sys.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
