"""Console output formatting utilities for BatchCI."""

from __future__ import annotations

import sys
from typing import Optional, TYPE_CHECKING

from batchci.model import StageState

if TYPE_CHECKING:
    from batchci.model import RunReport
    from batchci.run import Run


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_output: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, print the output tail of failed stages
        """
        self.debug = debug
        self.show_output = show_output

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        stage_count: int,
        batch_count: int,
        worker_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run: {run_id}")
        print(f"Workflow: {workflow}")
        print(f"Stages: {stage_count} in {batch_count} batch(es)")
        print(f"Workers: {worker_count}")
        print()

    def print_plan(self, run: "Run", decisions: dict[str, bool]) -> None:
        """Print batches and the predicate decision for every stage."""
        for batch in run.graph:
            barrier = ""
            if batch.barrier is not None:
                barrier = " (after wait, continue on failure)" if batch.barrier.continue_on_failure else " (after wait)"
            print(f"BATCH {batch.index + 1}{barrier}")
            if batch.barrier is not None:
                print(f"  waits for: {', '.join(run.graph.predecessors(batch.stages[0].label))}")
            for stage in batch.stages:
                tags = ",".join(sorted(stage.selector)) or "any worker"
                if decisions.get(stage.label, True):
                    print(f"  {stage.label} [{tags}]")
                else:
                    print(f"  {stage.label} (skipped: {stage.condition})")

    def on_transition(self, run: "Run", label: str, state: StageState) -> None:
        """Run listener: one line per interesting transition."""
        if state == StageState.RUNNING:
            print(f"STAGE STARTED: {label} (worker {run.worker_of(label)})")
        elif state == StageState.SUCCEEDED:
            print(f"STAGE SUCCEEDED: {label}")
        elif state == StageState.SKIPPED:
            print(f"STAGE SKIPPED: {label}")
        elif state == StageState.CANCELLED:
            print(f"STAGE CANCELLED: {label}")
        elif state == StageState.FAILED:
            outcome = run.outcome(label)
            self.print_failure(
                label,
                reason=(outcome.reason if outcome else None) or "unknown error",
                exit_code=outcome.exit_code if outcome else None,
                command=outcome.command if outcome else None,
                output=outcome.output if outcome else "",
            )

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        command: Optional[str] = None,
        output: str = "",
    ) -> None:
        """
        Print failure message.

        Args:
            name: Stage label
            reason: Failure reason/error message
            exit_code: Optional exit code of the failing command
            command: Optional failing command
            output: Output tail of the failing command
        """
        print(f"STAGE FAILED: {name}")
        if command:
            print(f"Command: {command}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        print(f"Reason: {reason}")
        if (self.debug or self.show_output) and output:
            print(output.rstrip())

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for outcome in report.outcomes:
            line = f"  {outcome.label}: {outcome.state.value.upper()}"
            if outcome.duration:
                line += f" ({outcome.duration:.1f}s)"
            print(line)
        if report.artifacts:
            print(f"Artifacts: {len(report.artifacts)}")
            for key, artifact in sorted(report.artifacts.items()):
                print(f"  {key} ({artifact.size} bytes)")
        print(f"VERDICT: {report.verdict.value.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
