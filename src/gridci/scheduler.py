# scheduler.py
from __future__ import annotations

import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import WorkflowError
from .executor import JobExecutor
from .matrix import expand_matrix
from .model import JobInstance, PipelineDefinition, RunReport, Status
from .ui.console import get_console


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def plan_instances(
    pipelines: Sequence[PipelineDefinition],
    *,
    only_pipelines: Optional[Iterable[str]] = None,
    only_jobs: Optional[Iterable[str]] = None,
) -> List[JobInstance]:
    """
    Expand every selected job into its instances, in pipeline -> job -> matrix order.

    Any malformed matrix aborts here, before a single instance runs.
    """
    pipeline_filter = set(only_pipelines or [])
    job_filter = set(only_jobs or [])

    seen_pipelines = set()
    instances: List[JobInstance] = []
    for p in pipelines:
        if p.name in seen_pipelines:
            raise WorkflowError(f"duplicate pipeline name: {p.name}")
        seen_pipelines.add(p.name)

        names = [j.name for j in p.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise WorkflowError(f"duplicate job names in pipeline '{p.name}': {dupes}")

        if pipeline_filter and p.name not in pipeline_filter:
            continue

        for job in p.jobs:
            if job_filter and job.name not in job_filter:
                continue
            for idx, variables in enumerate(expand_matrix(job.matrix, job=job.name)):
                instances.append(
                    JobInstance(
                        job=job,
                        pipeline=p.name,
                        index=idx,
                        matrix=variables,
                        pipeline_env=dict(p.env),
                    )
                )
    return instances


class Scheduler:
    """
    Runs job instances in parallel, bounded by max_workers.

    Every job's instances form a matrix group sharing one cancel event. With
    fail_fast on, the first failed instance sets it: pending siblings end
    cancelled without running, running siblings stop after their current step.
    Groups never affect each other.
    """

    def __init__(self, executor: JobExecutor, *, max_workers: Optional[int] = None):
        self.executor = executor
        self.max_workers = max_workers or default_workers()

    def _run_one(self, instance: JobInstance, cancel: threading.Event) -> JobInstance:
        try:
            self.executor.run(instance, cancel)
        except Exception as e:
            instance.status = Status.FAILED
            instance.error = str(e)
            get_console().print_failure(instance.name, str(e), is_job=True)
        # set before the worker picks up the next instance
        if instance.status == Status.FAILED and instance.job.fail_fast:
            cancel.set()
        return instance

    def run_instances(self, instances: List[JobInstance]) -> RunReport:
        groups: Dict[Tuple[str, str], threading.Event] = {}
        for inst in instances:
            groups.setdefault(inst.group, threading.Event())

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self._run_one, inst, groups[inst.group]): inst for inst in instances}
            for fut in as_completed(futures):
                # _run_one never raises; this surfaces interpreter-level errors only
                fut.result()

        return RunReport(instances=list(instances))

    def run(
        self,
        pipelines: Sequence[PipelineDefinition],
        *,
        only_pipelines: Optional[Iterable[str]] = None,
        only_jobs: Optional[Iterable[str]] = None,
    ) -> RunReport:
        instances = plan_instances(pipelines, only_pipelines=only_pipelines, only_jobs=only_jobs)
        return self.run_instances(instances)
