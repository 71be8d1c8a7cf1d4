"""Tests for the definition DSL and dict/JSON loaders."""

import pytest

from gridci.dsl import build, cache, job, matrix, pipeline, pipeline_from_dict, pipelines_from_document, sh
from gridci.errors import WorkflowError
from gridci.matrix import expand_matrix


RUST_DOC = {
    "name": "Rust",
    "env": {"CARGO_TERM_COLOR": "never"},
    "jobs": {
        "Build": {
            "runs-on": "{matrix.os}",
            "strategy": {
                "fail-fast": False,
                "matrix": {
                    "os": ["windows-latest", "ubuntu-latest"],
                    "rust": ["stable", "beta"],
                    "include": [{"os": "windows-latest", "id": "windows"}],
                },
            },
            "timeout-minutes": 30,
            "steps": [
                {"name": "Install on Windows", "if": "matrix.id == 'windows'", "run": "choco install llvm"},
                {
                    "name": "Cargo cache",
                    "cache": {
                        "key": "cargo-{matrix.id}-{hash_files}",
                        "restore-keys": "cargo-{matrix.id}-",
                        "hash-files": ["**/Cargo.lock"],
                        "path": "~/.cargo/registry/cache/\n~/.cargo/git/db/",
                    },
                },
                {"name": "Build", "run": "just build-release", "continue-on-error": True, "requires": ["just"]},
            ],
            "artifacts": [
                {
                    "name": "spiderfire-{run.sha}-{matrix.id}",
                    "path": "target/release/spiderfire",
                    "if": "matrix.rust == 'stable'",
                    "if-no-files-found": "error",
                }
            ],
        },
        "Lint": {"steps": [{"run": "just lint"}]},
    },
}


class TestPipelineFromDict:
    """Tests for already-parsed documents."""

    def test_shape(self):
        p = pipeline_from_dict(RUST_DOC)
        assert p.name == "Rust"
        assert p.env == {"CARGO_TERM_COLOR": "never"}
        assert [j.name for j in p.jobs] == ["Build", "Lint"]

    def test_job_fields(self):
        build_job = pipeline_from_dict(RUST_DOC).job("Build")
        assert build_job.fail_fast is False
        assert build_job.timeout == 1800
        assert build_job.runs_on == "{matrix.os}"
        assert len(expand_matrix(build_job.matrix)) == 4
        assert build_job.steps[0].if_ == "matrix.id == 'windows'"
        assert build_job.steps[2].continue_on_error is True
        assert build_job.steps[2].requires == ("just",)

    def test_cache_step(self):
        step = pipeline_from_dict(RUST_DOC).job("Build").steps[1]
        assert step.kind == "cache"
        assert step.cache.restore_keys == ("cargo-{matrix.id}-",)
        assert step.cache.paths == ("~/.cargo/registry/cache/", "~/.cargo/git/db/")
        assert step.cache.hash_files == ("**/Cargo.lock",)

    def test_artifact(self):
        art = pipeline_from_dict(RUST_DOC).job("Build").artifacts[0]
        assert art.paths == ("target/release/spiderfire",)
        assert art.if_ == "matrix.rust == 'stable'"
        assert art.if_no_files_found == "error"

    def test_unnamed_step_gets_position_name(self):
        lint = pipeline_from_dict(RUST_DOC).job("Lint")
        assert lint.steps[0].name == "step-1"
        assert lint.fail_fast is True

    def test_list_style_jobs(self):
        p = pipeline_from_dict({"name": "CI", "jobs": [{"name": "Test", "steps": [{"run": "pytest"}]}]})
        assert p.job("Test").steps[0].run == "pytest"

    @pytest.mark.parametrize("raw, expected", [("false", False), ("False", False), ("0", False), ("true", True), ("yes", True)])
    def test_string_flags_are_read_by_meaning(self, raw, expected):
        doc = {
            "jobs": {
                "Build": {
                    "strategy": {"fail-fast": raw, "matrix": {"os": ["a", "b"]}},
                    "steps": [
                        {"name": "flaky", "run": "make", "continue-on-error": raw},
                        {"name": "deps", "cache": {"key": "k", "path": "deps", "save-on-failure": raw}},
                    ],
                }
            }
        }
        j = pipeline_from_dict(doc).job("Build")
        assert j.fail_fast is expected
        assert j.steps[0].continue_on_error is expected
        assert j.steps[1].cache.save_on_failure is expected

    def test_unreadable_flag(self):
        doc = {"jobs": {"Build": {"fail-fast": "sometimes", "steps": [{"run": "make"}]}}}
        with pytest.raises(WorkflowError):
            pipeline_from_dict(doc)

    def test_step_without_body(self):
        with pytest.raises(WorkflowError):
            pipeline_from_dict({"jobs": {"Build": {"steps": [{"name": "nothing"}]}}})

    def test_not_a_mapping(self):
        with pytest.raises(WorkflowError):
            pipeline_from_dict(["jobs"])

    def test_document_variants(self):
        assert len(pipelines_from_document(RUST_DOC)) == 1
        assert len(pipelines_from_document({"pipelines": [RUST_DOC, {"name": "Lint", "jobs": {}}]})) == 2
        with pytest.raises(WorkflowError):
            pipelines_from_document("Rust")


class TestBuilders:
    """Tests for the Python DSL helpers."""

    def test_job_requires_steps(self):
        with pytest.raises(WorkflowError):
            job("Empty")

    def test_duplicate_step_names(self):
        with pytest.raises(WorkflowError):
            job("Build", sh("a", "x"), sh("a", "y"))

    def test_duplicate_job_names(self):
        with pytest.raises(WorkflowError):
            pipeline("Build", job("J", sh("a", "x")), job("J", sh("b", "y")))

    def test_cache_needs_paths(self):
        with pytest.raises(WorkflowError):
            cache("c", key="k", paths=[])

    def test_env_values_are_strings(self):
        j = job("Build", sh("s", "echo", env={"JOBS": 4}), env={"DEBUG": True})
        assert j.steps[0].env == {"JOBS": "4"}
        assert j.env == {"DEBUG": "True"}

    def test_builder(self):
        j = (
            build("Build")
            .with_matrix(matrix(os=["a", "b"]), fail_fast=False)
            .with_env(CC="clang")
            .define_step("compile", "just build", requires=["just"])
            .when("run.event == 'push'")
            .with_timeout(60)
            .on("{matrix.os}")
            .build()
        )
        assert j.fail_fast is False
        assert j.env == {"CC": "clang"}
        assert j.steps[0].requires == ("just",)
        assert j.if_ == "run.event == 'push'"
        assert j.timeout == 60
        assert j.runs_on == "{matrix.os}"
