# cache.py
from __future__ import annotations

import hashlib
import io
import json
import subprocess
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .model import Job

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching keyed by the project's dependency manifest:
#   cache_key = hash(
#       job.name,
#       step commands + cwd,
#       job.env,
#       tool versions (job.requires),
#       contents of the manifest files (job.cache.manifests globs),
#   )
#
# Cache artifact:
#   a tar.gz containing job.cache.paths plus a manifest.json for explainability.
#   Paths under the repo are stored as "repo/<rel>", paths under the home
#   directory as "home/<rel>".
#
# Usage in runner:
#   store = CacheStore(".prgate/cache")
#   key, manifest = manifest_fingerprint(job, repo_root)
#   hit = store.restore(job, key, repo_root=repo_root)
#   ... run stages ...
#   store.save(job, key, manifest, repo_root=repo_root)
# ---------------------------------------------------------------------


DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".prgate/**",
    "**/.DS_Store",
]

MANIFEST_ARCNAME = ".prgate_cache_manifest.json"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


class CacheBackend(Protocol):
    """What the runner needs from a cache: restore before the stages, save after."""

    def restore(self, job: Job, key: str, *, repo_root: str | Path = ".") -> CacheHit: ...

    def save(self, job: Job, key: str, manifest: Dict, *, repo_root: str | Path = ".") -> None: ...

    def prune(self, job_name: str, keep: int = 3) -> None: ...


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand manifest patterns into concrete files.
    Supports plain paths ("Cargo.lock") and globs ("**/Cargo.toml").
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.is_file():
            out.append(p)
            continue
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.is_file())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _tool_version(tool: str) -> Optional[str]:
    """Best-effort version discovery (`tool --version`)."""
    try:
        completed = subprocess.run(
            [tool, "--version"],
            text=True,
            capture_output=True,
            check=False,
        )
    except OSError:
        return None
    text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
    if completed.returncode != 0 or not text:
        return None
    # Normalize whitespace to make hashing stable
    return " ".join(text.split())


def manifest_fingerprint(job: Job, repo_root: str | Path = ".") -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where manifest explains what went into the key.
    """
    root = Path(repo_root).resolve()
    spec = job.cache
    patterns = list(spec.manifests) if spec else []

    files: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        rel = _relpath(p, root)
        if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
            continue
        files.append((rel, _hash_file_contents(p)))
    files.sort(key=lambda t: t[0])

    payload = {
        "v": 1,  # bump this if the hashing format changes
        "job": job.name,
        "steps": [{"name": s.name, "run": s.run, "cwd": s.cwd or "."} for s in job.steps],
        "env": dict(job.env),
        "tool_versions": {t: _tool_version(t) for t in job.requires},
        "manifests": files,
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _cache_roots(repo_root: Path) -> Dict[str, Path]:
    return {"repo": repo_root.resolve(), "home": Path.home().resolve()}


def _arc_prefix(path: Path, roots: Dict[str, Path]) -> Optional[Tuple[str, Path]]:
    """Pick the archive prefix for an absolute path (the most specific root wins)."""
    best: Optional[Tuple[str, Path]] = None
    for prefix, root in roots.items():
        try:
            path.relative_to(root)
        except ValueError:
            continue
        if best is None or len(root.parts) > len(best[1].parts):
            best = (prefix, root)
    return best


def _tar_add_path(tar: tarfile.TarFile, src: Path, roots: Dict[str, Path]) -> None:
    """Add src (file/dir) to the archive under its root prefix, skipping excluded paths."""
    if not src.exists():
        return
    found = _arc_prefix(src, roots)
    if found is None:
        return
    prefix, root = found

    files = [src] if src.is_file() else list(_iter_files_under(src))
    for f in files:
        rel = _relpath(f, root)
        if prefix == "repo" and _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
            continue
        tar.add(str(f), arcname=f"{prefix}/{rel}", recursive=False)


class CacheStore:
    """
    File-based cache store:
      root/
        <job_name>/
          <key>.tar.gz
          <key>.manifest.json
    """

    def __init__(self, root: str | Path = ".prgate/cache"):
        self.root = Path(root).resolve()

    def _job_dir(self, job_name: str) -> Path:
        d = self.root / job_name
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.tar.gz"

    def manifest_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.manifest.json"

    def restore(self, job: Job, key: str, *, repo_root: str | Path = ".") -> CacheHit:
        """
        Restore cached paths. Overwrites existing files by extraction.
        Never raises: a missing or unreadable artifact is reported as a miss.
        """
        spec = job.cache
        if spec is None or not spec.enabled:
            return CacheHit(hit=False, key=key, reason="cache disabled for job", manifest={})
        if not spec.paths:
            return CacheHit(hit=False, key=key, reason="no cache paths specified", manifest={})

        art = self.artifact_path(job.name, key)
        man = self.manifest_path(job.name, key)
        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        roots = _cache_roots(Path(repo_root))
        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                for member in tar.getmembers():
                    prefix, _, rest = member.name.partition("/")
                    dest = roots.get(prefix)
                    if dest is None or not rest:
                        continue
                    member.name = rest
                    tar.extract(member, path=str(dest), filter="data")
        except (OSError, tarfile.TarError) as e:
            return CacheHit(hit=False, key=key, reason=f"cache exists but restore failed: {e}", manifest={})

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=key, reason="restored artifact", manifest=stored)

    def save(self, job: Job, key: str, manifest: Dict, *, repo_root: str | Path = ".") -> None:
        """
        Archive job.cache.paths under `key`. Last writer wins.
        No-op when the cache is disabled or has no paths.
        """
        spec = job.cache
        if spec is None or not spec.enabled or not spec.paths:
            return

        roots = _cache_roots(Path(repo_root))
        art = self.artifact_path(job.name, key)
        man = self.manifest_path(job.name, key)
        body = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False)

        tmp = art.with_suffix(".tmp")
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in spec.paths:
                    src = (roots["repo"] / Path(entry).expanduser()).resolve()
                    _tar_add_path(tar, src, roots)

                data = body.encode("utf-8")
                info = tarfile.TarInfo(name=f"meta/{MANIFEST_ARCNAME}")
                info.size = len(data)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(data))

            tmp.replace(art)
            man.write_text(body, encoding="utf-8")
        finally:
            tmp.unlink(missing_ok=True)

    def prune(self, job_name: str, keep: int = 3) -> None:
        """
        Keep only the newest N artifacts for a job (by mtime).
        """
        d = self._job_dir(job_name)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
