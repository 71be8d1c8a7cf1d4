"""Tests for artifact publishing and its effect on instance status."""

import json
import zipfile

import pytest

from gridci.artifacts import ArtifactPublisher, FileArtifactStore, MemoryArtifactStore
from gridci.dsl import job, sh, upload
from gridci.errors import CIError, WorkflowError
from gridci.model import JobInstance, Status

from conftest import FakeRunner


def _instance(j, matrix):
    return JobInstance(job=j, pipeline="Build", index=0, matrix=dict(matrix))


def _produce(path, data=b"\x7fELF"):
    """Runner callable that writes a build output into the step's cwd."""
    def outcome(command, env, cwd):
        target = cwd / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return 0
    return outcome


def _build_job(**upload_kwargs):
    return job(
        "Build",
        sh("build", "build"),
        artifacts=[
            upload(
                "spiderfire-{run.sha}-{matrix.id}",
                "target/release/spiderfire{matrix.id == 'windows' && '.exe' || ''}",
                **upload_kwargs,
            )
        ],
    )


class TestPublish:
    """Tests for the publisher inside a job run."""

    def test_published_with_rendered_name(self, make_executor, artifact_store):
        runner = FakeRunner({"build": _produce("target/release/spiderfire")})
        inst = make_executor(runner=runner, artifacts=artifact_store).run(_instance(_build_job(), {"id": "linux"}))

        assert inst.status == Status.SUCCEEDED
        assert inst.artifacts[0].status == "published"
        assert artifact_store.artifacts["spiderfire-abc123-linux"] == {"target/release/spiderfire": b"\x7fELF"}

    def test_windows_suffix(self, make_executor, artifact_store):
        runner = FakeRunner({"build": _produce("target/release/spiderfire.exe")})
        inst = make_executor(runner=runner, artifacts=artifact_store).run(_instance(_build_job(), {"id": "windows"}))
        assert inst.artifacts[0].files == ["target/release/spiderfire.exe"]

    def test_missing_files_fail_a_successful_instance(self, make_executor, artifact_store):
        inst = make_executor(artifacts=artifact_store).run(_instance(_build_job(), {"id": "linux"}))

        assert all(s.status == Status.SUCCEEDED for s in inst.steps)
        assert inst.status == Status.FAILED
        assert "artifact_missing" in inst.error
        assert inst.artifacts[0].status == "missing"
        assert artifact_store.artifacts == {}

    def test_missing_files_warn(self, make_executor, artifact_store, console_text):
        inst = make_executor(artifacts=artifact_store).run(
            _instance(_build_job(if_no_files_found="warn"), {"id": "linux"})
        )
        assert inst.status == Status.SUCCEEDED
        assert "no files found" in console_text()

    def test_missing_files_ignore(self, make_executor, artifact_store, console_text):
        inst = make_executor(artifacts=artifact_store).run(
            _instance(_build_job(if_no_files_found="ignore"), {"id": "linux"})
        )
        assert inst.status == Status.SUCCEEDED
        assert "no files found" not in console_text()

    def test_condition_false_skips_publish(self, make_executor, artifact_store):
        inst = make_executor(artifacts=artifact_store).run(
            _instance(_build_job(if_="matrix.rust == 'stable'"), {"id": "linux", "rust": "beta"})
        )
        assert inst.status == Status.SUCCEEDED
        assert inst.artifacts[0].status == "skipped"

    def test_not_published_when_job_failed(self, make_executor, artifact_store):
        runner = FakeRunner({"build": 2})
        inst = make_executor(runner=runner, artifacts=artifact_store).run(_instance(_build_job(), {"id": "linux"}))
        assert inst.status == Status.FAILED
        assert inst.artifacts == []

    def test_when_always_publishes_after_failure(self, make_executor, artifact_store, workspace):
        (workspace / "logs").mkdir()
        (workspace / "logs" / "build.log").write_text("error[E0308]", encoding="utf-8")
        j = job(
            "Build",
            sh("build", "build"),
            artifacts=[upload("logs-{matrix.id}", "logs/*.log", when="always")],
        )
        inst = make_executor(runner=FakeRunner({"build": 1}), artifacts=artifact_store).run(_instance(j, {"id": "linux"}))
        assert inst.status == Status.FAILED
        assert "logs-linux" in artifact_store.artifacts


class TestStores:
    """Tests for the artifact stores."""

    def test_duplicate_name_conflicts(self, tmp_path):
        f = tmp_path / "bin"
        f.write_bytes(b"x")
        store = MemoryArtifactStore()
        store.publish("spiderfire-abc-linux", [("bin", f)])
        with pytest.raises(CIError) as exc:
            store.publish("spiderfire-abc-linux", [("bin", f)])
        assert exc.value.kind == "artifact_conflict"

    def test_empty_publish_rejected(self):
        with pytest.raises(CIError) as exc:
            MemoryArtifactStore().publish("empty", [])
        assert exc.value.kind == "artifact_missing"

    def test_file_store_writes_zip_and_manifest(self, tmp_path):
        f = tmp_path / "spiderfire"
        f.write_bytes(b"binary")
        store = FileArtifactStore(tmp_path / "artifacts")
        store.publish("spiderfire-abc/linux", [("target/release/spiderfire", f)], retention_days=7)

        assert store.names() == ["spiderfire-abc/linux"]
        with zipfile.ZipFile(store.archive_path("spiderfire-abc/linux")) as zf:
            assert zf.read("target/release/spiderfire") == b"binary"
        manifest = json.loads(store.manifest_path("spiderfire-abc/linux").read_text(encoding="utf-8"))
        assert manifest["retention_days"] == 7
        assert manifest["files"] == ["target/release/spiderfire"]

    def test_file_store_keeps_names_that_sanitize_alike_apart(self, tmp_path):
        slash = tmp_path / "slash"
        under = tmp_path / "under"
        slash.write_bytes(b"from a/b")
        under.write_bytes(b"from a_b")
        store = FileArtifactStore(tmp_path / "artifacts")
        store.publish("a/b", [("out", slash)])
        store.publish("a_b", [("out", under)])

        assert sorted(store.names()) == ["a/b", "a_b"]
        assert store.archive_path("a/b") != store.archive_path("a_b")
        with zipfile.ZipFile(store.archive_path("a/b")) as zf:
            assert zf.read("out") == b"from a/b"
        with zipfile.ZipFile(store.archive_path("a_b")) as zf:
            assert zf.read("out") == b"from a_b"

    def test_file_store_same_name_conflicts(self, tmp_path):
        f = tmp_path / "bin"
        f.write_bytes(b"x")
        store = FileArtifactStore(tmp_path / "artifacts")
        store.publish("a/b", [("bin", f)])
        with pytest.raises(CIError) as exc:
            FileArtifactStore(tmp_path / "artifacts").publish("a/b", [("bin", f)])
        assert exc.value.kind == "artifact_conflict"

    def test_publisher_conflict_demotes_second_instance(self, workspace):
        (workspace / "out.txt").write_text("x", encoding="utf-8")
        publisher = ArtifactPublisher(MemoryArtifactStore())
        j = job("Build", sh("s", "echo"), artifacts=[upload("same-name", "out.txt")])
        first = _instance(j, {"id": "a"})
        second = _instance(j, {"id": "b"})
        for inst in (first, second):
            inst.status = Status.SUCCEEDED
            publisher.publish_all(inst, {"matrix": inst.matrix}, workspace=workspace)

        assert first.status == Status.SUCCEEDED
        assert second.status == Status.FAILED
        assert "artifact_conflict" in second.error


class TestUploadValidation:
    """Tests for upload() declaration checks."""

    def test_bad_policy(self):
        with pytest.raises(WorkflowError):
            upload("x", "a", if_no_files_found="explode")

    def test_no_paths(self):
        with pytest.raises(WorkflowError):
            upload("x")
