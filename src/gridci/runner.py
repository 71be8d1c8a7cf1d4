# runner.py
from __future__ import annotations

import json
import runpy
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from . import git
from .artifacts import ArtifactPublisher, ArtifactStore, FileArtifactStore
from .cache import CacheStore, FileCacheStore
from .config import Settings
from .dsl import pipeline, pipelines_from_document
from .errors import WorkflowError
from .executor import CommandRunner, JobExecutor
from .model import Job, PipelineDefinition, RunReport
from .scheduler import Scheduler, plan_instances
from .ui.console import get_console


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def _coerce_pipelines(value: Any, default_name: str) -> List[PipelineDefinition]:
    if isinstance(value, PipelineDefinition):
        return [value]
    if isinstance(value, list) and value and all(isinstance(p, PipelineDefinition) for p in value):
        return value
    if isinstance(value, list) and value and all(isinstance(j, Job) for j in value):
        # bare job list -> one pipeline named after the file
        return [pipeline(default_name, *value)]
    raise WorkflowError(
        "Workflow must return/define PipelineDefinition(s). "
        "Define workflow() -> wf(pipeline(...), ...) or PIPELINES = [...]."
    )


def load_workflow(path: str | Path) -> List[PipelineDefinition]:
    """
    Load pipelines from a workflow file.

    .py files must define either:
      - workflow() -> List[PipelineDefinition]
      - PIPELINES = [PipelineDefinition, ...]  (or JOBS = [Job, ...])
    .json files hold an already-parsed pipeline document (see dsl.pipeline_from_dict).
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        try:
            doc = json.loads(wf_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise WorkflowError(f"Invalid JSON in {wf_path.name}: {e}")
        return pipelines_from_document(doc)

    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"gridci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        value = globals_dict["workflow"]()
    elif "PIPELINES" in globals_dict:
        value = globals_dict["PIPELINES"]
    elif "JOBS" in globals_dict:
        value = globals_dict["JOBS"]
    else:
        value = None
    return _coerce_pipelines(value, wf_path.stem)


# ----------------------------------------------------------------------
# Running
# ----------------------------------------------------------------------

def build_run_context(settings: Settings) -> Dict[str, str]:
    """The `run.*` namespace visible to conditions and templates."""
    facts = git.describe(settings.workspace)
    return {
        "event": settings.event,
        "channel": settings.channel,
        "sha": facts["sha"],
        "ref": facts["ref"],
    }


def new_run_id() -> str:
    return time.strftime("%Y%m%dT%H%M%S") + "-" + uuid.uuid4().hex[:8]


def run_workflow(
    pipelines: List[PipelineDefinition],
    settings: Settings,
    *,
    runner: Optional[CommandRunner] = None,
    cache: Optional[CacheStore] = None,
    artifacts: Optional[ArtifactStore] = None,
    run_context: Optional[Dict[str, str]] = None,
    only_pipelines: Optional[Iterable[str]] = None,
    only_jobs: Optional[Iterable[str]] = None,
    workflow_name: str = "",
    run_id: Optional[str] = None,
) -> RunReport:
    """
    Plan and run every selected instance, then print the results.

    Each call is one run with its own id (`run.id` in templates). The default
    file artifact store is scoped to `<artifact_dir>/<run id>`, so re-running
    the same commit never collides with artifacts from an earlier run.
    """
    console = get_console()
    workspace = Path(settings.workspace).resolve()
    run_id = run_id or new_run_id()

    # expansion errors surface before anything runs
    instances = plan_instances(pipelines, only_pipelines=only_pipelines, only_jobs=only_jobs)

    cache_store = cache if cache is not None else FileCacheStore(workspace / settings.cache_dir)
    artifact_store = artifacts if artifacts is not None else FileArtifactStore(workspace / settings.artifact_dir / run_id)

    context = dict(run_context if run_context is not None else build_run_context(settings))
    context.setdefault("id", run_id)

    executor = JobExecutor(
        workspace=workspace,
        runner=runner,
        cache=cache_store,
        publisher=ArtifactPublisher(artifact_store),
        run_context=context,
        cache_keep=settings.cache_keep,
    )
    scheduler = Scheduler(executor, max_workers=settings.workers)

    console.print_run_started(
        workflow=workflow_name or ", ".join(p.name for p in pipelines),
        pipelines=sorted({i.pipeline for i in instances}),
        instance_count=len(instances),
        workers=scheduler.max_workers,
    )
    report = scheduler.run_instances(instances)
    console.print_results(report.statuses())
    return report
