# artifacts.py
from __future__ import annotations

import gzip
import hashlib
import io
import json
import re
import shutil
import tarfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Set

from .errors import ArtifactNotFound, CIError
from .model import Artifact, JobState, now_utc

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Run-scoped, name-addressed blob store:
#
#   root/
#     <run_id>/
#       <name>.blob
#       <name>.manifest.json     (producer, sha256, size, created_at)
#
# An artifact is only visible once the ledger says its producer SUCCEEDED,
# and (when a consumer is named) only if the producer is upstream of it.
# Nothing is ever visible across run ids.
# ---------------------------------------------------------------------


DEFAULT_ARTIFACT_DIR = ".stageci/artifacts"
DEFAULT_PACK_EXCLUDES = [
    ".git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class RunView(Protocol):
    """The slice of the run ledger the store needs for visibility checks."""

    def job_state(self, run_id: int, job: str) -> Optional[JobState]: ...

    def upstream(self, run_id: int, job: str) -> Set[str]: ...


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class ArtifactStore:
    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, *, ledger: RunView):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.ledger = ledger
        self._lock = threading.Lock()

    def _run_dir(self, run_id: int) -> Path:
        return self.root / str(int(run_id))

    def blob_path(self, run_id: int, name: str) -> Path:
        return self._run_dir(run_id) / f"{name}.blob"

    def manifest_path(self, run_id: int, name: str) -> Path:
        return self._run_dir(run_id) / f"{name}.manifest.json"

    # -----------------------------------------------------------------
    # put / get
    # -----------------------------------------------------------------

    def put(self, name: str, run_id: int, producer: str, blob: bytes) -> Artifact:
        """
        Publish `blob` under (run_id, name). Called by the producing job's
        execution once all its steps succeeded. Re-publishing a name within the
        same run replaces the previous blob.
        """
        if not _NAME_RE.match(name or ""):
            raise CIError(f"invalid artifact name: {name!r}", job=producer)

        art = Artifact(
            name=name,
            run_id=int(run_id),
            producer=producer,
            blob=bytes(blob),
            sha256=_sha256_bytes(blob),
            created_at=now_utc(),
        )
        manifest = {
            "name": name,
            "run_id": art.run_id,
            "producer": producer,
            "sha256": art.sha256,
            "size": art.size,
            "created_at": art.created_at.isoformat(),
        }

        with self._lock:
            self._run_dir(run_id).mkdir(parents=True, exist_ok=True)
            dst = self.blob_path(run_id, name)
            tmp = dst.with_suffix(".blob.tmp")
            try:
                # write tmp then atomic rename
                tmp.write_bytes(art.blob)
                tmp.replace(dst)
                self.manifest_path(run_id, name).write_text(
                    json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
                )
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
        return art

    def _load(self, run_id: int, name: str) -> Optional[Artifact]:
        man = self.manifest_path(run_id, name)
        blob_p = self.blob_path(run_id, name)
        if not man.exists() or not blob_p.exists():
            return None
        meta = json.loads(man.read_text(encoding="utf-8"))
        return Artifact(
            name=meta["name"],
            run_id=int(meta["run_id"]),
            producer=meta["producer"],
            blob=blob_p.read_bytes(),
            sha256=meta["sha256"],
            created_at=datetime.fromisoformat(meta["created_at"]),
        )

    def get(self, name: str, run_id: int, *, consumer: str | None = None) -> Artifact:
        """
        Fetch an artifact. Raises ArtifactNotFound unless it exists in this run,
        its producer SUCCEEDED, and (if given) `consumer` transitively needs the producer.
        """
        if not _NAME_RE.match(name or ""):
            raise ArtifactNotFound(f"artifact '{name}' not found in run {run_id}", job=consumer)

        with self._lock:
            art = self._load(run_id, name)

        if art is None:
            raise ArtifactNotFound(f"artifact '{name}' not found in run {run_id}", job=consumer)

        if self.ledger.job_state(run_id, art.producer) is not JobState.SUCCEEDED:
            raise ArtifactNotFound(
                f"artifact '{name}' in run {run_id} is not published "
                f"(producer '{art.producer}' has not succeeded)",
                job=consumer,
            )

        if consumer is not None and art.producer not in self.ledger.upstream(run_id, consumer):
            raise ArtifactNotFound(
                f"artifact '{name}' is not visible to '{consumer}' "
                f"(it does not need '{art.producer}')",
                job=consumer,
            )

        if _sha256_bytes(art.blob) != art.sha256:
            raise CIError(f"artifact '{name}' in run {run_id} is corrupt (sha256 mismatch)")

        return art

    def list(self, run_id: int) -> List[str]:
        d = self._run_dir(run_id)
        if not d.exists():
            return []
        return sorted(p.name[: -len(".manifest.json")] for p in d.glob("*.manifest.json"))

    def purge(self, run_id: int) -> None:
        """Drop every artifact of a run (end of the run's retention)."""
        with self._lock:
            shutil.rmtree(self._run_dir(run_id), ignore_errors=True)


# ---------------------------------------------------------------------
# Packing helpers used by the upload/download actions
# ---------------------------------------------------------------------

def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def pack_path(
    src: Path,
    *,
    base: Path,
    secrets: Iterable[str] = (),
    excludes: Optional[List[str]] = None,
) -> bytes:
    """
    Pack a file or directory (paths stored relative to `base`) into a
    deterministic tar.gz blob. Refuses to pack content that contains a secret value.
    """
    src = src.resolve()
    base = base.resolve()
    if not src.exists():
        raise FileNotFoundError(f"artifact path not found: {src}")

    exclude_globs = list(DEFAULT_PACK_EXCLUDES) + list(excludes or [])
    files = [src] if src.is_file() else list(_iter_files_under(src))

    raw = io.BytesIO()
    with tarfile.open(fileobj=raw, mode="w") as tar:
        for f in files:
            rel = str(f.relative_to(base)).replace("\\", "/")
            if _matches_any_glob(rel, exclude_globs):
                continue
            data = f.read_bytes()
            info = tarfile.TarInfo(name=rel)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, fileobj=io.BytesIO(data))

    payload = raw.getvalue()
    for value in secrets:
        if value and value.encode("utf-8") in payload:
            raise CIError("refusing to publish artifact containing secret material")

    return gzip.compress(payload, mtime=0)


def unpack(blob: bytes, dest: Path) -> List[str]:
    """Extract a blob produced by pack_path into dest; returns extracted names."""
    dest = dest.resolve()
    dest.mkdir(parents=True, exist_ok=True)
    names: List[str] = []
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        for m in members:
            target = (dest / m.name).resolve()
            if not m.isfile() or (target != dest and dest not in target.parents):
                raise CIError(f"unsafe artifact member: {m.name}")
        for m in members:
            target = dest / m.name
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(m)
            target.write_bytes(src.read() if src is not None else b"")
            names.append(m.name)
    return names
