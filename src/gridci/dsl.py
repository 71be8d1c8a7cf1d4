# src/gridci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import WorkflowError
from .model import ArtifactSpec, CacheSpec, Job, MatrixSpec, PipelineDefinition, Step

ON_MISSING = ("error", "warn", "ignore")
PUBLISH_WHEN = ("success", "always")


def _lines(value: Union[str, Iterable[str], None]) -> tuple:
    """Accept "a\\nb", ["a", "b"] or None."""
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(line.strip() for line in value.splitlines() if line.strip())
    return tuple(str(v) for v in value)


def _env(env: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    # force values to str for env compatibility
    return {str(k): str(v) for k, v in (env or {}).items()}


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    if_: Any = None,
    env: Optional[Mapping[str, Any]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    cwd: str | None = None,
    requires: Optional[Sequence[str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        if_=if_,
        env=_env(env),
        continue_on_error=continue_on_error,
        timeout=timeout,
        cwd=cwd,
        requires=tuple(requires or ()),
    )


def cache(
    name: str,
    key: str,
    paths: Union[str, Sequence[str]],
    *,
    restore_keys: Union[str, Sequence[str], None] = None,
    hash_files: Union[str, Sequence[str], None] = None,
    save_on_failure: bool = False,
    if_: Any = None,
) -> Step:
    """
    Create a cache step.

        cache("Cargo cache",
              key="cargo-{matrix.id}-{hash_files}",
              restore_keys=["cargo-{matrix.id}-"],
              hash_files=["**/Cargo.lock"],
              paths=["~/.cargo/registry/cache/", "~/.cargo/git/db/"])
    """
    spec = CacheSpec(
        key=key,
        paths=_lines(paths),
        restore_keys=_lines(restore_keys),
        hash_files=_lines(hash_files),
        save_on_failure=save_on_failure,
    )
    if not spec.key:
        raise WorkflowError(f"cache step {name!r} needs a key")
    if not spec.paths:
        raise WorkflowError(f"cache step {name!r} needs at least one path")
    return Step(name=name, cache=spec, if_=if_)


def upload(
    name: str,
    *paths: str,
    if_: Any = None,
    if_no_files_found: str = "error",
    retention_days: Optional[int] = None,
    when: str = "success",
) -> ArtifactSpec:
    """Declare an artifact published after the job (name and paths are templates)."""
    if if_no_files_found not in ON_MISSING:
        raise WorkflowError(f"artifact {name!r}: if_no_files_found must be one of {ON_MISSING}")
    if when not in PUBLISH_WHEN:
        raise WorkflowError(f"artifact {name!r}: when must be one of {PUBLISH_WHEN}")
    flat = tuple(p for entry in paths for p in _lines(entry))
    if not flat:
        raise WorkflowError(f"artifact {name!r} needs at least one path")
    return ArtifactSpec(
        name=name,
        paths=flat,
        if_=if_,
        if_no_files_found=if_no_files_found,
        retention_days=retention_days,
        when=when,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Mapping[str, Iterable[Any]]] = None,
    *,
    include: Optional[Sequence[Mapping[str, Any]]] = None,
    exclude: Optional[Sequence[Mapping[str, Any]]] = None,
    **more_axes: Iterable[Any],
) -> MatrixSpec:
    """
    matrix(os=["windows-latest", "ubuntu-latest"], rust=["stable", "beta"],
           include=[{"os": "windows-latest", "id": "windows"}])
    """
    merged: Dict[str, tuple] = {}
    for name, values in list((axes or {}).items()) + list(more_axes.items()):
        if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
            values = [values]
        merged[name] = tuple(values)
    return MatrixSpec(
        axes=merged,
        include=tuple(dict(e) if isinstance(e, Mapping) else e for e in (include or ())),
        exclude=tuple(dict(e) if isinstance(e, Mapping) else e for e in (exclude or ())),
    )


# ---------------------------------------------------------------------
# Jobs & pipelines
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    matrix: Optional[MatrixSpec] = None,
    env: Optional[Mapping[str, Any]] = None,
    if_: Any = None,
    fail_fast: bool = True,
    timeout: Optional[float] = None,
    artifacts: Optional[Sequence[ArtifactSpec]] = None,
    runs_on: Optional[str] = None,
    cwd: str | None = None,  # default working directory for steps
) -> Job:
    steps_final: List[Step] = list(steps_list or []) + list(steps)
    if not steps_final:
        raise WorkflowError(f"job({name!r}) must have at least one step")

    step_names = [s.name for s in steps_final]
    dupes = sorted({n for n in step_names if step_names.count(n) > 1})
    if dupes:
        raise WorkflowError(f"job({name!r}) has duplicate step names: {dupes}")

    return Job(
        name=name,
        steps=tuple(steps_final),
        matrix=matrix,
        env=_env(env),
        if_=if_,
        fail_fast=fail_fast,
        timeout=timeout,
        artifacts=tuple(artifacts or ()),
        runs_on=runs_on,
        working_directory=cwd,
    )


class JobBuilder:
    """
    Fluent alternative to job():

        build("Lint").with_env(CC="clang").define_step("Lint", "just lint").build()
    """

    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: Optional[MatrixSpec] = None
        self._artifacts: list[ArtifactSpec] = []
        self._if: Any = None
        self._fail_fast = True
        self._timeout: Optional[float] = None
        self._runs_on: Optional[str] = None

    def define_step(self, name: str, run: str, **options: Any):
        self._steps.append(sh(name, run, **options))
        return self

    def add_step(self, step: Step):
        self._steps.append(step)
        return self

    def with_env(self, **env):
        self._env.update(_env(env))
        return self

    def with_matrix(self, spec: MatrixSpec, *, fail_fast: bool = True):
        self._matrix = spec
        self._fail_fast = fail_fast
        return self

    def when(self, condition: Any):
        self._if = condition
        return self

    def publish(self, artifact: ArtifactSpec):
        self._artifacts.append(artifact)
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def on(self, runs_on: str):
        self._runs_on = runs_on
        return self

    def build(self) -> Job:
        return job(
            self.name,
            *self._steps,
            matrix=self._matrix,
            env=self._env,
            if_=self._if,
            fail_fast=self._fail_fast,
            timeout=self._timeout,
            artifacts=self._artifacts,
            runs_on=self._runs_on,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('lint').define_step(...).build()"""
    return JobBuilder(name)


def pipeline(name: str, *jobs: Job, env: Optional[Mapping[str, Any]] = None) -> PipelineDefinition:
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise WorkflowError(f"pipeline {name!r} has duplicate job names: {dupes}")
    return PipelineDefinition(name=name, jobs=tuple(jobs), env=_env(env))


def wf(*pipelines: PipelineDefinition) -> List[PipelineDefinition]:
    """
    Workflow definition helper.

        from gridci import wf, pipeline, job, sh

        def workflow():
            return wf(
                pipeline("Rust", job(...), job(...)),
            )

    Or define PIPELINES = wf(...) directly.
    """
    return list(pipelines)


# ---------------------------------------------------------------------
# Already-parsed documents (dict / JSON)
# ---------------------------------------------------------------------

def _norm(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(k).replace("-", "_"): v for k, v in data.items()}


_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0", "")


def _flag(value: Any, field: str) -> bool:
    """Coerce a loaded flag. Strings are read by meaning, so "false" is False."""
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE:
            return True
        if word in _FALSE:
            return False
        raise WorkflowError(f"{field} must be true or false, got {value!r}")
    return bool(value)


def _timeout(d: Mapping[str, Any]) -> Optional[float]:
    if d.get("timeout") is not None:
        return float(d["timeout"])
    if d.get("timeout_minutes") is not None:
        return float(d["timeout_minutes"]) * 60
    return None


def _step_from_dict(raw: Mapping[str, Any], position: int) -> Step:
    d = _norm(raw)
    name = d.get("name") or f"step-{position + 1}"
    if "cache" in d:
        c = _norm(d["cache"])
        return cache(
            name,
            key=c.get("key", ""),
            paths=c.get("paths", c.get("path")),
            restore_keys=c.get("restore_keys"),
            hash_files=c.get("hash_files"),
            save_on_failure=_flag(c.get("save_on_failure", False), "save-on-failure"),
            if_=d.get("if"),
        )
    if "run" not in d:
        raise WorkflowError(f"step {name!r} needs either 'run' or 'cache'")
    return sh(
        name,
        d["run"],
        if_=d.get("if"),
        env=d.get("env"),
        continue_on_error=_flag(d.get("continue_on_error", False), "continue-on-error"),
        timeout=_timeout(d),
        cwd=d.get("cwd", d.get("working_directory")),
        requires=d.get("requires"),
    )


def _artifact_from_dict(raw: Mapping[str, Any]) -> ArtifactSpec:
    d = _norm(raw)
    if "name" not in d:
        raise WorkflowError("artifact needs a name")
    return upload(
        d["name"],
        *_lines(d.get("paths", d.get("path"))),
        if_=d.get("if"),
        if_no_files_found=d.get("if_no_files_found", "error"),
        retention_days=d.get("retention_days"),
        when=d.get("when", "success"),
    )


def _matrix_from_dict(raw: Mapping[str, Any]) -> MatrixSpec:
    axes = {k: v for k, v in raw.items() if k not in ("include", "exclude")}
    return matrix(axes, include=raw.get("include"), exclude=raw.get("exclude"))


def job_from_dict(name: str, raw: Mapping[str, Any]) -> Job:
    d = _norm(raw)
    steps = [_step_from_dict(s, i) for i, s in enumerate(d.get("steps") or [])]
    strategy = _norm(d.get("strategy") or {})
    matrix_raw = d.get("matrix", strategy.get("matrix"))
    fail_fast = d.get("fail_fast", strategy.get("fail_fast", True))
    return job(
        d.get("name", name),
        *steps,
        matrix=_matrix_from_dict(matrix_raw) if matrix_raw else None,
        env=d.get("env"),
        if_=d.get("if"),
        fail_fast=_flag(fail_fast, "fail-fast"),
        timeout=_timeout(d),
        artifacts=[_artifact_from_dict(a) for a in d.get("artifacts") or []],
        runs_on=d.get("runs_on"),
        cwd=d.get("working_directory"),
    )


def pipeline_from_dict(data: Mapping[str, Any], *, default_name: str = "pipeline") -> PipelineDefinition:
    """
    Build a pipeline from an already-parsed document:

        {"name": "Rust", "env": {...},
         "jobs": {"Build": {"matrix": {...}, "fail-fast": false, "steps": [...]}}}

    `jobs` may also be a list of job mappings with a "name" key.
    """
    if not isinstance(data, Mapping):
        raise WorkflowError(f"pipeline document must be a mapping, got {type(data).__name__}")
    jobs_raw = data.get("jobs") or {}
    if isinstance(jobs_raw, Mapping):
        items = list(jobs_raw.items())
    else:
        items = []
        for entry in jobs_raw:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise WorkflowError("list-style jobs need a 'name' key")
            items.append((entry["name"], entry))
    jobs = [job_from_dict(name, raw) for name, raw in items]
    return pipeline(data.get("name", default_name), *jobs, env=data.get("env"))


def pipelines_from_document(doc: Any) -> List[PipelineDefinition]:
    """A single pipeline mapping, {"pipelines": [...]}, or a plain list."""
    if isinstance(doc, Mapping) and "pipelines" in doc:
        doc = doc["pipelines"]
    if isinstance(doc, Mapping):
        return [pipeline_from_dict(doc)]
    if isinstance(doc, list):
        return [pipeline_from_dict(p, default_name=f"pipeline-{i + 1}") for i, p in enumerate(doc)]
    raise WorkflowError(f"unsupported workflow document: {type(doc).__name__}")
