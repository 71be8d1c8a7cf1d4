# executor.py
from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .cache import EXACT, CacheStore, MemoryCacheStore, ResolvedCache, resolve_cache_keys
from .conditions import evaluate_condition, render_mapping, render_template
from .errors import CIError, StepFailed, ToolMissing
from .model import CacheOutcome, CacheSpec, JobInstance, Status, Step, StepResult
from .ui.console import get_console

OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Command execution boundary
# ----------------------------------------------------------------------

@dataclass
class CommandResult:
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


class CommandRunner(ABC):
    """Runs one step body. Implementations must not raise on non-zero exits."""

    @abstractmethod
    def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        cwd: Path,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


class SubprocessRunner(CommandRunner):
    def __init__(self, shell: Optional[str] = None):
        self.shell = shell

    def run(self, command, *, env, cwd, timeout=None) -> CommandResult:
        try:
            proc = subprocess.run(
                command,
                shell=True,
                executable=self.shell,
                cwd=str(cwd),
                env=dict(env),
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                exit_code=None,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        return CommandResult(exit_code=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)


def _decode(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ----------------------------------------------------------------------
# Job executor
# ----------------------------------------------------------------------

@dataclass
class _PendingSave:
    step: str
    spec: CacheSpec
    resolved: ResolvedCache
    outcome: CacheOutcome


def read_exported_env(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines a step appended to $GRIDCI_ENV."""
    out: Dict[str, str] = {}
    if not path.exists():
        return out
    for line in path.read_text(encoding="utf-8").splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            out[key] = value
    return out


def read_exported_path(path: Path) -> List[str]:
    if not path.exists():
        return []
    return [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


class JobExecutor:
    """
    Runs a single JobInstance:

        pending -> running -> succeeded | failed | cancelled
        pending -> skipped      (job condition false)

    Steps run strictly in order. The first failing step without
    continue_on_error ends the instance; later steps never run.
    """

    def __init__(
        self,
        *,
        workspace: str | Path = ".",
        runner: Optional[CommandRunner] = None,
        cache: Optional[CacheStore] = None,
        publisher=None,
        run_context: Optional[Mapping[str, Any]] = None,
        base_env: Optional[Mapping[str, str]] = None,
        inherit_os_env: bool = True,
        cache_keep: int = 3,
    ):
        self.workspace = Path(workspace).resolve()
        self.runner = runner or SubprocessRunner()
        self.cache = cache if cache is not None else MemoryCacheStore()
        self.publisher = publisher
        self.run_context = dict(run_context or {})
        self.base_env = dict(base_env or {})
        self.inherit_os_env = inherit_os_env
        self.cache_keep = cache_keep

    # ---- context ----

    def context_for(self, instance: JobInstance, env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {
            "matrix": dict(instance.matrix),
            "env": dict(env or {}),
            "run": dict(self.run_context),
            "job": {
                "name": instance.job.name,
                "instance": instance.name,
                "index": instance.index,
                "pipeline": instance.pipeline,
            },
            "workspace": str(self.workspace),
        }
        if instance.runs_on is not None:
            ctx["job"]["runs_on"] = instance.runs_on
        return ctx

    def prepare(self, instance: JobInstance) -> Dict[str, str]:
        """
        Render the instance's runs_on label and its pipeline and job env.

        Returns the job-level env. Raises ConditionEvalError on a bad template.
        """
        if instance.job.runs_on:
            instance.runs_on = render_template(instance.job.runs_on, self.context_for(instance))
        env: Dict[str, str] = {}
        env.update(render_mapping(instance.pipeline_env, self.context_for(instance, env)))
        env.update(render_mapping(instance.job.env, self.context_for(instance, env)))
        return env

    # ---- main entry ----

    def run(self, instance: JobInstance, cancel: Optional[threading.Event] = None) -> JobInstance:
        console = get_console()
        job = instance.job

        if cancel is not None and cancel.is_set():
            instance.status = Status.CANCELLED
            instance.error = "cancelled before start"
            console.print_job_finished(instance.name, instance.status)
            return instance

        instance.started_at = time.monotonic()
        job_env: Dict[str, str] = {}
        exported: Dict[str, str] = {}
        pending_saves: List[_PendingSave] = []

        try:
            job_env = self.prepare(instance)
            if not evaluate_condition(job.if_, self.context_for(instance, job_env), where=f"{instance.name}: if"):
                instance.status = Status.SKIPPED
                console.print_job_finished(instance.name, instance.status)
                return instance

            instance.status = Status.RUNNING
            console.print_job_start(instance.name)
            self._run_steps(instance, cancel, job_env, exported, pending_saves)
        except CIError as e:
            instance.status = Status.FAILED
            instance.error = str(e)
            console.print_failure(
                f"{instance.name} / {e.step}" if e.step else instance.name,
                getattr(e, "stderr", "") or str(e),
                exit_code=getattr(e, "exit_code", None),
                hint=e.details.get("hint"),
            )

        ctx = self.context_for(instance, {**job_env, **exported})
        self._save_caches(instance, pending_saves)
        if self.publisher is not None:
            self.publisher.publish_all(instance, ctx, workspace=self.workspace)

        instance.finished_at = time.monotonic()
        console.print_job_finished(instance.name, instance.status, instance.duration)
        return instance

    def _run_steps(
        self,
        instance: JobInstance,
        cancel: Optional[threading.Event],
        job_env: Dict[str, str],
        exported: Dict[str, str],
        pending_saves: List[_PendingSave],
    ) -> None:
        job = instance.job
        deadline = instance.started_at + job.timeout if job.timeout else None
        extra_path: List[str] = []

        with tempfile.TemporaryDirectory(prefix="gridci-") as scratch:
            for idx, step in enumerate(job.steps):
                if cancel is not None and cancel.is_set():
                    instance.status = Status.CANCELLED
                    instance.error = "cancelled by fail-fast"
                    return
                step_env = {**job_env, **exported}
                self._run_step(
                    instance,
                    step,
                    self.context_for(instance, step_env),
                    step_env=step_env,
                    extra_path=extra_path,
                    exported=exported,
                    pending_saves=pending_saves,
                    scratch=Path(scratch) / f"step-{idx}",
                    deadline=deadline,
                )
        instance.status = Status.SUCCEEDED

    # ---- steps ----

    def _run_step(
        self,
        instance: JobInstance,
        step: Step,
        ctx: Dict[str, Any],
        *,
        step_env: Dict[str, str],
        extra_path: List[str],
        exported: Dict[str, str],
        pending_saves: List[_PendingSave],
        scratch: Path,
        deadline: Optional[float],
    ) -> None:
        console = get_console()
        where = f"{instance.name} / {step.name}"

        if not evaluate_condition(step.if_, ctx, where=f"{where}: if"):
            instance.steps.append(StepResult(name=step.name, status=Status.SKIPPED, reason="condition"))
            console.print_step_skipped(instance.name, step.name)
            return

        console.print_step(instance.name, step.name)

        if step.cache is not None:
            pending = self._restore_cache(instance, step, ctx)
            if pending is not None:
                pending_saves.append(pending)
            instance.steps.append(StepResult(name=step.name, status=Status.SUCCEEDED))
            return

        env = self._step_env(instance, step, ctx, step_env, extra_path)

        for tool in step.requires:
            if shutil.which(tool, path=env.get("PATH")) is None:
                instance.steps.append(
                    StepResult(name=step.name, status=Status.FAILED, reason="tool_missing")
                )
                raise ToolMissing(job=instance.name, step=step.name, tool=tool)

        cwd = self._step_cwd(instance, step, ctx)

        timeout = step.timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                instance.steps.append(StepResult(name=step.name, status=Status.FAILED, reason="timeout"))
                raise StepFailed(job=instance.name, step=step.name, cmd=step.run, exit_code=None, reason="timeout")
            timeout = remaining if timeout is None else min(timeout, remaining)

        scratch.mkdir(parents=True, exist_ok=True)
        env_file = scratch / "env"
        path_file = scratch / "path"
        env_file.touch()
        path_file.touch()
        env["GRIDCI_ENV"] = str(env_file)
        env["GRIDCI_PATH"] = str(path_file)

        console.print_debug(f"{where}: {step.run!r} cwd={cwd} timeout={timeout}")
        started = time.monotonic()
        result = self.runner.run(step.run, env=env, cwd=cwd, timeout=timeout)
        duration = time.monotonic() - started
        output = (result.stdout + result.stderr)[-OUTPUT_TAIL:]

        # exports are visible to later steps of this instance only
        exported.update(read_exported_env(env_file))
        for p in read_exported_path(path_file):
            if p not in extra_path:
                extra_path.insert(0, p)

        if not result.timed_out and result.exit_code == 0:
            instance.steps.append(
                StepResult(name=step.name, status=Status.SUCCEEDED, exit_code=0, duration=duration, output=output)
            )
            return

        reason = "timeout" if result.timed_out else "exit_code"
        record = StepResult(
            name=step.name,
            status=Status.FAILED,
            exit_code=result.exit_code,
            reason=reason,
            duration=duration,
            output=output,
        )
        instance.steps.append(record)

        if step.continue_on_error:
            record.continued = True
            console.print_warning(f"{where} failed ({reason}), continuing (continue_on_error)")
            return

        raise StepFailed(
            job=instance.name,
            step=step.name,
            cmd=step.run,
            exit_code=result.exit_code,
            reason=reason,
            stdout=result.stdout[-OUTPUT_TAIL:],
            stderr=result.stderr[-OUTPUT_TAIL:],
        )

    def _step_env(
        self,
        instance: JobInstance,
        step: Step,
        ctx: Dict[str, Any],
        step_env: Dict[str, str],
        extra_path: List[str],
    ) -> Dict[str, str]:
        env: Dict[str, str] = dict(os.environ) if self.inherit_os_env else {}
        env.update(self.base_env)
        env.update(step_env)
        env.update(render_mapping(step.env, ctx))
        env.update(
            {
                "CI": "true",
                "GRIDCI": "true",
                "GRIDCI_JOB": instance.job.name,
                "GRIDCI_INSTANCE": instance.name,
                "GRIDCI_PIPELINE": instance.pipeline,
                "GRIDCI_WORKSPACE": str(self.workspace),
            }
        )
        for key, value in self.run_context.items():
            env[f"GRIDCI_{key.upper()}"] = str(value)
        if extra_path:
            env["PATH"] = os.pathsep.join(extra_path + [env.get("PATH", "")])
        return env

    def _step_cwd(self, instance: JobInstance, step: Step, ctx: Dict[str, Any]) -> Path:
        rel = step.cwd or instance.job.working_directory or "."
        cwd = (self.workspace / render_template(rel, ctx)).resolve()
        if not cwd.exists():
            raise CIError(
                kind="cwd_missing",
                message=f"working directory not found: {cwd}",
                job=instance.name,
                step=step.name,
            )
        return cwd

    # ---- cache ----

    def _restore_cache(self, instance: JobInstance, step: Step, ctx: Dict[str, Any]) -> Optional[_PendingSave]:
        console = get_console()
        spec = step.cache
        resolved = resolve_cache_keys(spec, ctx, workspace=self.workspace)
        outcome = CacheOutcome(
            step=step.name,
            key=resolved.primary,
            restore_keys=list(resolved.restore_keys),
            match_kind="miss",
        )
        instance.caches.append(outcome)
        console.print_debug(
            f"{instance.name} / {step.name}: cache key {resolved.primary!r}, restore keys {list(resolved.restore_keys)!r}"
        )

        try:
            restored = self.cache.restore(resolved.primary, resolved.restore_keys, workspace=self.workspace)
        except (OSError, ValueError) as e:
            # a broken cache entry is a miss, never a job failure
            console.print_warning(f"{instance.name} / {step.name}: cache restore failed: {e}")
        else:
            outcome.match_kind = restored.match_kind
            outcome.matched_key = restored.matched_key

        console.print_cache_restore(instance.name, outcome.match_kind, resolved.primary, outcome.matched_key)
        if outcome.match_kind == EXACT:
            return None
        return _PendingSave(step=step.name, spec=spec, resolved=resolved, outcome=outcome)

    def _save_caches(self, instance: JobInstance, pending: List[_PendingSave]) -> None:
        console = get_console()
        for p in pending:
            wanted = instance.status == Status.SUCCEEDED or (
                instance.status == Status.FAILED and p.spec.save_on_failure
            )
            if not wanted:
                continue
            try:
                self.cache.save(p.resolved.primary, p.resolved.paths, workspace=self.workspace)
                prefixes = list(p.resolved.restore_keys) or [p.resolved.primary]
                self.cache.prune(min(prefixes, key=len), keep=self.cache_keep)
            except OSError as e:
                console.print_warning(f"{instance.name}: cache save failed for {p.resolved.primary}: {e}")
                continue
            p.outcome.saved = True
            console.print_cache_saved(instance.name, p.resolved.primary)
