"""Tests for instance planning and per-group fail-fast scheduling."""

import pytest

from gridci.dsl import job, matrix, pipeline, sh
from gridci.errors import MalformedMatrix, WorkflowError
from gridci.model import Status
from gridci.scheduler import Scheduler, default_workers, plan_instances

from conftest import FakeRunner


def _fail_on(os_name):
    """Runner callable: exit 1 only for the instance whose matrix.os matches."""
    def outcome(command, env, cwd):
        return 1 if env.get("TARGET_OS") == os_name else 0
    return outcome


def _build(fail_fast):
    return job(
        "Build",
        sh("compile", "compile", env={"TARGET_OS": "${{ matrix.os }}"}),
        sh("test", "test"),
        matrix=matrix(os=["a", "b", "c"]),
        fail_fast=fail_fast,
    )


class TestPlanInstances:
    """Tests for expansion into JobInstances."""

    def test_order_and_names(self):
        p = pipeline("Build", _build(True), job("Docs", sh("d", "mkdocs build")))
        instances = plan_instances([p])
        assert [i.name for i in instances] == ["Build (a)", "Build (b)", "Build (c)", "Docs"]
        assert [i.index for i in instances] == [0, 1, 2, 0]

    def test_filters(self):
        pipelines = [pipeline("Build", _build(True)), pipeline("Lint", job("Lint", sh("l", "lint")))]
        assert [i.pipeline for i in plan_instances(pipelines, only_pipelines=["Lint"])] == ["Lint"]
        assert len(plan_instances(pipelines, only_jobs=["Build"])) == 3

    def test_duplicate_pipeline_names(self):
        with pytest.raises(WorkflowError):
            plan_instances([pipeline("Build", _build(True)), pipeline("Build", _build(False))])

    def test_malformed_matrix_aborts_planning(self):
        bad = job("Bad", sh("s", "echo"), matrix=matrix(os=[]))
        with pytest.raises(MalformedMatrix):
            plan_instances([pipeline("Build", _build(True), bad)])

    def test_default_workers_is_positive(self):
        assert default_workers() >= 1


class TestFailFast:
    """Tests for group cancellation."""

    def test_fail_fast_cancels_pending_siblings(self, make_executor):
        runner = FakeRunner({"compile": _fail_on("a")})
        report = Scheduler(make_executor(runner=runner), max_workers=1).run([pipeline("Build", _build(True))])

        statuses = [i.status for i in report.for_job("Build")]
        assert statuses == [Status.FAILED, Status.CANCELLED, Status.CANCELLED]
        assert runner.commands == ["compile"]
        assert not report.ok
        assert report.exit_code == 1

    def test_fail_fast_off_lets_siblings_finish(self, make_executor):
        runner = FakeRunner({"compile": _fail_on("a")})
        report = Scheduler(make_executor(runner=runner), max_workers=1).run([pipeline("Build", _build(False))])

        statuses = [i.status for i in report.for_job("Build")]
        assert statuses == [Status.FAILED, Status.SUCCEEDED, Status.SUCCEEDED]
        assert runner.commands.count("test") == 2

    def test_groups_are_independent(self, make_executor):
        runner = FakeRunner({"compile": _fail_on("a")})
        pipelines = [
            pipeline("Build", _build(True)),
            pipeline("Lint", job("Lint", sh("lint", "just lint"))),
        ]
        report = Scheduler(make_executor(runner=runner), max_workers=1).run(pipelines)

        assert report.for_job("Lint")[0].status == Status.SUCCEEDED
        assert report.counts() == {Status.FAILED: 1, Status.CANCELLED: 2, Status.SUCCEEDED: 1}

    def test_same_job_name_in_two_pipelines_are_separate_groups(self, make_executor):
        runner = FakeRunner({"compile": _fail_on("a")})
        other = job("Build", sh("compile", "compile", env={"TARGET_OS": "z"}), matrix=matrix(os=["x", "y"]))
        report = Scheduler(make_executor(runner=runner), max_workers=1).run(
            [pipeline("Build", _build(True)), pipeline("Nightly", other)]
        )
        assert [i.status for i in report.for_job("Build", pipeline="Nightly")] == [Status.SUCCEEDED, Status.SUCCEEDED]

    def test_parallel_run_all_succeed(self, make_executor):
        report = Scheduler(make_executor(), max_workers=4).run([pipeline("Build", _build(True))])
        assert report.ok
        assert set(report.statuses().values()) == {Status.SUCCEEDED}
        assert list(report.statuses()) == ["Build/Build (a)", "Build/Build (b)", "Build/Build (c)"]

    def test_unexpected_executor_error_fails_instance(self, make_executor):
        def boom(command, env, cwd):
            raise RuntimeError("runner crashed")

        report = Scheduler(make_executor(runner=FakeRunner({"compile": boom})), max_workers=1).run(
            [pipeline("Build", _build(False))]
        )
        assert all(i.status == Status.FAILED for i in report.instances)
        assert "runner crashed" in report.instances[0].error
