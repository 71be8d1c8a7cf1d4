"""Console output formatting utilities for gridci."""

from __future__ import annotations

import sys
import threading
from typing import Mapping, Optional


class Console:
    """
    Centralized console output formatting.

    Job instances run on worker threads, so every write goes through one lock
    to keep lines from different instances from interleaving.
    """

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream (defaults to sys.stdout at write time)
            err_stream: Error stream (defaults to sys.stderr at write time)
        """
        self.debug = debug
        self._stream = stream
        self._err_stream = err_stream
        self._lock = threading.Lock()

    def _out(self, text: str, *, err: bool = False) -> None:
        stream = (self._err_stream or sys.stderr) if err else (self._stream or sys.stdout)
        with self._lock:
            print(text, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(
        self,
        workflow: str,
        pipelines: list[str],
        instance_count: int,
        workers: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED\n"
            f"Workflow: {workflow}\n"
            f"Pipelines: {', '.join(pipelines)}\n"
            f"Job instances: {instance_count}\n"
            f"Workers: {workers}\n"
        )

    def print_job_start(self, name: str) -> None:
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} (condition false)")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        line = f"JOB {status.upper()}: {name}"
        if duration is not None:
            line += f" ({duration:.1f}s)"
        self._out(line)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Report a failed step (default) or a failed job instance (is_job=True).

        Outside debug mode only the first line of `reason` is shown; StepFailed
        and CIError strings carry their key=value context on later lines.
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            if error_line:
                lines.append(f"Error: {error_line}")
        self._out("\n".join(lines))

    def print_cache_restore(self, job: str, kind: str, key: str, matched: Optional[str] = None) -> None:
        if kind == "exact":
            self._out(f"[{job}] CACHE: hit ({key})")
        elif kind == "prefix":
            self._out(f"[{job}] CACHE: partial hit ({matched}) for {key}")
        else:
            self._out(f"[{job}] CACHE: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: saved ({key})")

    def print_artifact(self, job: str, name: str, file_count: int) -> None:
        self._out(f"[{job}] ARTIFACT: {name} ({file_count} file(s))")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print one line of the expansion plan."""
        self._out(f"  {name} ({reason})")

    def print_results(self, results: Mapping[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for name, status in results.items():
            lines.append(f"  {name}: {status.upper()}")
        self._out("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print a definition or usage error to stderr.

        `details` are indented under the message; `suggestion` is a trailing
        hint block (usually an example command line).
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._out(text.rstrip(), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# process-wide instance; the CLI replaces it once flags are parsed
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
