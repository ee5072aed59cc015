"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
from typing import Iterable, Optional

from ..gates import Gate
from ..model import StageInstance, State


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        ref: str,
        stage_count: int,
        run_id: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        if run_id:
            print(f"Run ID: {run_id}")
        print(f"Repository: {repository}")
        print(f"Workflow: {workflow}")
        print(f"Ref: {ref}")
        print(f"Stages: {stage_count}")
        print()

    def print_stage(self, instance: StageInstance) -> None:
        """Print one stage transition worth showing (running or terminal)."""
        state = instance.state
        if state == State.RUNNING:
            print(f"STAGE STARTED: {instance.id}")
        elif state == State.SUCCEEDED:
            duration = instance.duration
            took = f" in {duration:.1f}s" if duration is not None else ""
            print(f"STAGE SUCCEEDED: {instance.id}{took}")
        elif state == State.FAILED:
            print(f"STAGE FAILED: {instance.id}")
            self._print_reason(instance.error)
        elif state in (State.SKIPPED, State.CANCELLED):
            reason = f" ({instance.error})" if instance.error else ""
            print(f"STAGE {state.value.upper()}: {instance.id}{reason}")

    def _print_reason(self, reason: Optional[str]) -> None:
        if not reason:
            return
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            print(f"Error: {reason.splitlines()[0]}")

    def print_plan(self, levels: list[list[str]]) -> None:
        """Print the execution plan, one dependency level per block."""
        self.print_header("PLAN")
        for n, level in enumerate(levels):
            print(f"level {n}:")
            for iid in level:
                print(f"  {iid}")

    def print_results(self, results: dict[str, str], status: str | None = None) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for stage, state in results.items():
            print(f"  {stage}: {state.upper()}")
        if status:
            print(f"\nRUN: {status.upper()}")

    def print_pending_gates(self, gates: Iterable[Gate]) -> None:
        gates = list(gates)
        if not gates:
            print("No pending gates.")
            return
        self.print_header("PENDING GATES")
        for g in gates:
            print(f"  {g.id}")

    def print_runs(self, runs: list[dict]) -> None:
        if not runs:
            print("No runs recorded.")
            return
        for r in runs:
            print(f"  {r['run_id']}  {r['status']:<10} {r['workflow']}  {r['ref']}")

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

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (initialized by the CLI)
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
