# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Status:
    """Run status of a job instance (and of individual steps)."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    FINAL = (SUCCEEDED, FAILED, CANCELLED, SKIPPED)


# ---------------------------------------------------------------------
# Definition side (immutable once loaded)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheSpec:
    """
    Cache declaration for a cache step.

    key / restore_keys are templates, e.g. "cargo-{matrix.id}-{hash_files}".
    hash_files are globs whose *contents* feed the {hash_files} variable.
    """
    key: str
    paths: Tuple[str, ...]
    restore_keys: Tuple[str, ...] = ()
    hash_files: Tuple[str, ...] = ()
    save_on_failure: bool = False


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a job: a shell command or a cache step."""
    name: str
    run: str = ""
    if_: Optional[Any] = None          # str expression or a parsed conditions.Expr
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: Optional[float] = None    # seconds
    cwd: Optional[str] = None
    requires: Tuple[str, ...] = ()     # host tools that must be on PATH
    cache: Optional[CacheSpec] = None

    @property
    def kind(self) -> str:
        return "cache" if self.cache is not None else "run"


@dataclass(frozen=True)
class ArtifactSpec:
    name: str
    paths: Tuple[str, ...]
    if_: Optional[Any] = None
    if_no_files_found: str = "error"   # error | warn | ignore
    retention_days: Optional[int] = None
    when: str = "success"              # success | always


@dataclass(frozen=True)
class MatrixSpec:
    axes: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class Job:
    """A job template; the matrix turns it into one or more JobInstances."""
    name: str
    steps: Tuple[Step, ...]
    matrix: Optional[MatrixSpec] = None
    env: Mapping[str, str] = field(default_factory=dict)
    if_: Optional[Any] = None
    fail_fast: bool = True
    timeout: Optional[float] = None
    artifacts: Tuple[ArtifactSpec, ...] = ()
    runs_on: Optional[str] = None      # template, e.g. "{matrix.os}"
    working_directory: Optional[str] = None


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Tuple[Job, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ---------------------------------------------------------------------
# Run side (mutable records, archived in RunReport)
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: str                        # succeeded | failed | skipped
    exit_code: Optional[int] = None
    reason: Optional[str] = None       # exit_code | timeout | condition | tool_missing
    continued: bool = False            # failure tolerated by continue_on_error
    duration: float = 0.0
    output: str = ""


@dataclass
class CacheOutcome:
    step: str
    key: str
    restore_keys: List[str]
    match_kind: str                    # exact | prefix | miss
    matched_key: Optional[str] = None
    saved: bool = False


@dataclass
class ArtifactResult:
    name: str
    files: List[str]
    status: str                        # published | missing | skipped
    retention_days: Optional[int] = None


@dataclass
class JobInstance:
    job: Job
    pipeline: str
    index: int
    matrix: Dict[str, Any]
    pipeline_env: Mapping[str, str] = field(default_factory=dict)
    status: str = Status.PENDING
    steps: List[StepResult] = field(default_factory=list)
    caches: List[CacheOutcome] = field(default_factory=list)
    artifacts: List[ArtifactResult] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    runs_on: Optional[str] = None       # job.runs_on rendered for this instance

    @property
    def name(self) -> str:
        if not self.matrix:
            return self.job.name
        values = ", ".join(str(v) for v in self.matrix.values())
        return f"{self.job.name} ({values})"

    @property
    def group(self) -> Tuple[str, str]:
        """Matrix group identity: siblings share (pipeline, job)."""
        return self.pipeline, self.job.name

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def step(self, name: str) -> Optional[StepResult]:
        for r in self.steps:
            if r.name == name:
                return r
        return None


@dataclass
class RunReport:
    instances: List[JobInstance] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(i.status in (Status.FAILED, Status.CANCELLED) for i in self.instances)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for i in self.instances:
            out[i.status] = out.get(i.status, 0) + 1
        return out

    def for_job(self, job: str, pipeline: Optional[str] = None) -> List[JobInstance]:
        return [
            i for i in self.instances
            if i.job.name == job and (pipeline is None or i.pipeline == pipeline)
        ]

    def statuses(self) -> Dict[str, str]:
        return {f"{i.pipeline}/{i.name}": i.status for i in self.instances}
