# artifacts.py
from __future__ import annotations

import hashlib
import json
import re
import threading
import time
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import resolve_files
from .conditions import evaluate_condition, render_template
from .errors import ArtifactMissing, CIError
from .model import ArtifactResult, ArtifactSpec, JobInstance, Status
from .ui.console import get_console

DEFAULT_ARTIFACT_DIR = ".gridci/artifacts"


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class ArtifactStore(ABC):
    """Blob store for published artifacts. Names are unique within a store."""

    def __init__(self):
        self._lock = threading.Lock()

    @abstractmethod
    def names(self) -> List[str]:
        ...

    @abstractmethod
    def _put(self, name: str, files: List[Tuple[str, bytes]], retention_days: Optional[int]) -> None:
        ...

    def publish(self, name: str, files: Sequence[Tuple[str, Path]], *, retention_days: Optional[int] = None) -> None:
        if not files:
            raise CIError(kind="artifact_missing", message=f"no files to publish for '{name}'")
        payload = [(arc, path.read_bytes()) for arc, path in files]
        with self._lock:
            if name in self.names():
                raise CIError(
                    kind="artifact_conflict",
                    message=f"artifact '{name}' already published in this store",
                    details={"hint": "include matrix values in the artifact name template"},
                )
            self._put(name, payload, retention_days)


class MemoryArtifactStore(ArtifactStore):
    def __init__(self):
        super().__init__()
        self.artifacts: Dict[str, Dict[str, bytes]] = {}
        self.retention: Dict[str, Optional[int]] = {}

    def names(self) -> List[str]:
        return list(self.artifacts)

    def _put(self, name, files, retention_days) -> None:
        self.artifacts[name] = dict(files)
        self.retention[name] = retention_days


def _file_stem(name: str) -> str:
    # "a/b" and "a_b" sanitize alike; the digest keeps their files apart
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:12]
    return f"{safe}-{digest}"


class FileArtifactStore(ArtifactStore):
    """
    root/
      <safe name>-<digest>.zip
      <safe name>-<digest>.manifest.json   {"name", "files", "published_at", "retention_days"}
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        super().__init__()
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def archive_path(self, name: str) -> Path:
        return self.root / f"{_file_stem(name)}.zip"

    def manifest_path(self, name: str) -> Path:
        return self.root / f"{_file_stem(name)}.manifest.json"

    def names(self) -> List[str]:
        out = []
        for man in sorted(self.root.glob("*.manifest.json")):
            try:
                out.append(json.loads(man.read_text(encoding="utf-8"))["name"])
            except (json.JSONDecodeError, KeyError):
                continue
        return out

    def _put(self, name, files, retention_days) -> None:
        art = self.archive_path(name)
        tmp = art.with_suffix(".zip.tmp")
        try:
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for arc, data in files:
                    zf.writestr(arc, data)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        manifest = {
            "name": name,
            "files": [arc for arc, _ in files],
            "published_at": int(time.time()),
            "retention_days": retention_days,
        }
        self.manifest_path(name).write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

def _arcname(f: Path, workspace: Path) -> str:
    try:
        return f.resolve().relative_to(workspace.resolve()).as_posix()
    except ValueError:
        return f.name


class ArtifactPublisher:
    """
    Publishes a job instance's declared artifacts after its steps ran.

    Build success is necessary but not sufficient: a declared artifact that
    resolves to no files under the "error" policy turns a succeeded instance
    into a failed one.
    """

    def __init__(self, store: ArtifactStore):
        self.store = store

    def should_publish(self, instance: JobInstance, spec: ArtifactSpec) -> bool:
        if instance.status == Status.SUCCEEDED:
            return True
        return instance.status == Status.FAILED and spec.when == "always"

    def publish_all(self, instance: JobInstance, context: Mapping[str, Any], *, workspace: str | Path = ".") -> None:
        for spec in instance.job.artifacts:
            if not self.should_publish(instance, spec):
                continue
            try:
                self.publish_one(instance, spec, context, workspace=Path(workspace))
            except CIError as e:
                self._demote(instance, e)

    def publish_one(
        self,
        instance: JobInstance,
        spec: ArtifactSpec,
        context: Mapping[str, Any],
        *,
        workspace: Path,
    ) -> ArtifactResult:
        console = get_console()
        name = render_template(spec.name, context)

        if not evaluate_condition(spec.if_, context, where=f"{instance.name}: artifact {name}"):
            result = ArtifactResult(name=name, files=[], status="skipped")
            instance.artifacts.append(result)
            return result

        patterns = [render_template(p, context) for p in spec.paths]
        files = resolve_files(workspace, patterns)

        if not files:
            result = ArtifactResult(name=name, files=[], status="missing", retention_days=spec.retention_days)
            instance.artifacts.append(result)
            if spec.if_no_files_found == "error":
                raise ArtifactMissing(job=instance.name, artifact=name, paths=patterns)
            if spec.if_no_files_found == "warn":
                console.print_warning(f"{instance.name}: no files found for artifact '{name}' ({', '.join(patterns)})")
            return result

        entries = [(_arcname(f, workspace), f) for f in files]
        try:
            self.store.publish(name, entries, retention_days=spec.retention_days)
        except OSError as e:
            raise CIError(kind="artifact_publish_failed", message=str(e), job=instance.name, details={"artifact": name})

        result = ArtifactResult(
            name=name,
            files=[arc for arc, _ in entries],
            status="published",
            retention_days=spec.retention_days,
        )
        instance.artifacts.append(result)
        console.print_artifact(instance.name, name, len(entries))
        return result

    def _demote(self, instance: JobInstance, error: CIError) -> None:
        console = get_console()
        if instance.status == Status.SUCCEEDED:
            instance.status = Status.FAILED
        instance.error = str(error) if not instance.error else f"{instance.error}\n{error}"
        console.print_failure(instance.name, str(error), is_job=True)
