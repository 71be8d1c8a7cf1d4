# cache.py
from __future__ import annotations

import glob
import hashlib
import io
import itertools
import json
import os
import tarfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .conditions import render_template
from .model import CacheSpec

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A cache step declares
#   key:          "cargo-{matrix.id}-{hash_files}"
#   restore_keys: ["cargo-{matrix.id}-"]
#   hash_files:   ["**/Cargo.lock"]
#   paths:        ["~/.cargo/registry/cache/", "~/.cargo/git/db/"]
#
# {hash_files} is a digest of file *contents* only, so the key is the same on
# every checkout. Restore tries the exact key first, then each restore key as a
# prefix over stored keys. Saving always happens under the primary key.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".gridci/cache"

EXACT = "exact"
PREFIX = "prefix"
MISS = "miss"


@dataclass(frozen=True)
class ResolvedCache:
    primary: str
    restore_keys: Tuple[str, ...]
    paths: Tuple[str, ...]


@dataclass(frozen=True)
class CacheRestore:
    match_kind: str                          # exact | prefix | miss
    matched_key: Optional[str] = None
    paths: Tuple[str, ...] = ()              # files written into place

    @property
    def hit(self) -> bool:
        return self.match_kind != MISS


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _is_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


def _expand(workspace: Path, pattern: str) -> List[Path]:
    """Resolve one path pattern (file, dir, glob, ~ or absolute) to existing paths."""
    pattern = pattern.strip()
    if not pattern:
        return []
    expanded = os.path.expanduser(pattern)
    base = expanded if os.path.isabs(expanded) else str(workspace / expanded)
    if _is_glob(expanded):
        return [Path(p) for p in sorted(glob.glob(base, recursive=True))]
    p = Path(base)
    return [p] if p.exists() else []


def _iter_files(paths: Iterable[Path]) -> Iterable[Path]:
    seen = set()
    for p in paths:
        candidates = sorted(f for f in p.rglob("*") if f.is_file()) if p.is_dir() else [p]
        for f in candidates:
            rp = str(f.resolve())
            if f.is_file() and rp not in seen:
                seen.add(rp)
                yield f


def resolve_files(workspace: str | Path, patterns: Sequence[str]) -> List[Path]:
    """Every file matched by `patterns` (files, dirs, globs), de-duplicated, in stable order."""
    root = Path(workspace)
    return list(_iter_files(p for pat in patterns for p in _expand(root, pat)))


def hash_files(workspace: str | Path, patterns: Sequence[str]) -> str:
    """
    Digest of the byte contents of every file matched by `patterns`.

    Per-file digests are sorted before combining, so neither file paths nor
    traversal order nor mtimes influence the result. No files -> "".
    """
    files = resolve_files(workspace, patterns)
    if not files:
        return ""
    digests = sorted(_hash_file_contents(f) for f in files)
    return _sha256_bytes("\n".join(digests).encode("utf-8"))


def resolve_cache_keys(
    spec: CacheSpec,
    context: Mapping[str, Any],
    *,
    workspace: str | Path = ".",
) -> ResolvedCache:
    """Render the primary key and restore-key prefixes for one job instance."""
    ctx = dict(context)
    ctx["hash_files"] = hash_files(workspace, spec.hash_files)
    primary = render_template(spec.key, ctx)
    restore = tuple(render_template(k, ctx) for k in spec.restore_keys)
    paths = tuple(render_template(p, ctx) for p in spec.paths)
    return ResolvedCache(primary=primary, restore_keys=restore, paths=paths)


def select_restore_key(
    primary: str,
    restore_keys: Sequence[str],
    stored: Mapping[str, float],
) -> Tuple[str, Optional[str]]:
    """
    Pick the stored key to restore from.

    stored maps key -> recency (bigger is newer).
    Exact primary match first. Otherwise the longest restore prefix that
    matches anything wins (declared order breaks ties) and the newest stored
    key under that prefix is taken.
    """
    if primary in stored:
        return EXACT, primary

    ordered = sorted(enumerate(restore_keys), key=lambda t: (-len(t[1]), t[0]))
    for _, prefix in ordered:
        matches = [k for k in stored if k.startswith(prefix)]
        if matches:
            return PREFIX, max(matches, key=lambda k: (stored[k], k))
    return MISS, None


# ---------------------------------------------------------------------
# Snapshot helpers (shared by both stores)
# ---------------------------------------------------------------------

def _arcname(f: Path, workspace: Path) -> str:
    resolved = f.resolve()
    try:
        return "ws/" + resolved.relative_to(workspace.resolve()).as_posix()
    except ValueError:
        return "abs/" + resolved.as_posix().lstrip("/")


def _target(arcname: str, workspace: Path) -> Path:
    if arcname.startswith("ws/"):
        root = workspace.resolve()
        target = (root / arcname[3:]).resolve()
        if root != target and root not in target.parents:
            raise ValueError(f"cache entry escapes workspace: {arcname}")
        return target
    if arcname.startswith("abs/"):
        return Path("/" + arcname[4:])
    raise ValueError(f"unknown cache entry: {arcname}")


def collect_files(workspace: str | Path, paths: Sequence[str]) -> List[Tuple[str, Path]]:
    root = Path(workspace)
    files = resolve_files(root, paths)
    return [(_arcname(f, root), f) for f in files]


def _write(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore(ABC):
    """
    Keyed cache store shared by concurrent job instances.

    Writes are keyed by the resolved primary key; instances whose templates
    include the matrix identity never write the same key.
    """

    @abstractmethod
    def keys(self) -> Dict[str, float]:
        """Stored key -> recency."""

    @abstractmethod
    def _load(self, key: str) -> List[Tuple[str, bytes]]:
        """Return (arcname, bytes) entries saved under key."""

    @abstractmethod
    def _store(self, key: str, entries: List[Tuple[str, bytes]], paths: Sequence[str]) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def restore(
        self,
        primary: str,
        restore_keys: Sequence[str] = (),
        *,
        workspace: str | Path = ".",
    ) -> CacheRestore:
        kind, matched = select_restore_key(primary, restore_keys, self.keys())
        if matched is None:
            return CacheRestore(match_kind=MISS)

        root = Path(workspace)
        written: List[str] = []
        for arcname, data in self._load(matched):
            target = _target(arcname, root)
            _write(target, data)
            written.append(str(target))
        return CacheRestore(match_kind=kind, matched_key=matched, paths=tuple(written))

    def save(self, key: str, paths: Sequence[str], *, workspace: str | Path = ".") -> int:
        """Snapshot `paths` under `key`. Returns the number of files stored."""
        entries = [(arc, f.read_bytes()) for arc, f in collect_files(workspace, paths)]
        self._store(key, entries, paths)
        return len(entries)

    def prune(self, prefix: str = "", keep: int = 3) -> List[str]:
        """Keep only the newest `keep` keys starting with `prefix`."""
        stored = self.keys()
        ordered = sorted((k for k in stored if k.startswith(prefix)), key=lambda k: stored[k], reverse=True)
        removed = ordered[keep:]
        for k in removed:
            self.delete(k)
        return removed


class MemoryCacheStore(CacheStore):
    """In-process store, used by tests and single-process runs that don't persist."""

    def __init__(self):
        self._entries: Dict[str, Tuple[float, List[Tuple[str, bytes]]]] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def keys(self) -> Dict[str, float]:
        with self._lock:
            return {k: v[0] for k, v in self._entries.items()}

    def _load(self, key: str) -> List[Tuple[str, bytes]]:
        with self._lock:
            return list(self._entries[key][1])

    def _store(self, key: str, entries: List[Tuple[str, bytes]], paths: Sequence[str]) -> None:
        with self._lock:
            self._entries[key] = (float(next(self._seq)), entries)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)


class FileCacheStore(CacheStore):
    """
    File-based cache store:
      root/
        index.json            {key: {"archive": ..., "saved_at": ..., "seq": ..., "paths": [...]}}
        <sha[:2]>/<sha>.tar.gz
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def index_path(self) -> Path:
        return self.root / "index.json"

    def archive_path(self, key: str) -> Path:
        digest = _sha256_bytes(key.encode("utf-8"))
        return self.root / digest[:2] / f"{digest}.tar.gz"

    def _read_index(self) -> Dict[str, Dict[str, Any]]:
        if not self.index_path.exists():
            return {}
        try:
            return json.loads(self.index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def _write_index(self, index: Dict[str, Dict[str, Any]]) -> None:
        tmp = self.index_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(index, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(self.index_path)

    def keys(self) -> Dict[str, float]:
        with self._lock:
            index = self._read_index()
        return {k: float(v.get("seq", 0)) for k, v in index.items() if self.archive_path(k).exists()}

    def _load(self, key: str) -> List[Tuple[str, bytes]]:
        out: List[Tuple[str, bytes]] = []
        with tarfile.open(str(self.archive_path(key)), mode="r:gz") as tar:
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                fobj = tar.extractfile(member)
                if fobj is not None:
                    out.append((member.name, fobj.read()))
        return out

    def _store(self, key: str, entries: List[Tuple[str, bytes]], paths: Sequence[str]) -> None:
        art = self.archive_path(key)
        art.parent.mkdir(parents=True, exist_ok=True)
        tmp = art.with_suffix(".tmp")
        try:
            # build in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for arcname, data in entries:
                    info = tarfile.TarInfo(name=arcname)
                    info.size = len(data)
                    info.mtime = int(time.time())
                    tar.addfile(info, fileobj=io.BytesIO(data))
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        with self._lock:
            index = self._read_index()
            seq = max((int(v.get("seq", 0)) for v in index.values()), default=0) + 1
            index[key] = {
                "archive": str(art.relative_to(self.root)),
                "saved_at": int(time.time()),
                "seq": seq,
                "paths": list(paths),
                "files": len(entries),
            }
            self._write_index(index)

    def delete(self, key: str) -> None:
        with self._lock:
            index = self._read_index()
            index.pop(key, None)
            self._write_index(index)
        self.archive_path(key).unlink(missing_ok=True)
