from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from prgate.cache import CacheHit
from prgate.model import Job
from prgate.ui.console import Console, set_console


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeCheck:
    """Stage double: returns a fixed exit code and records that it ran."""
    name: str
    exit_code: int = 0
    calls: List[str] = field(default_factory=list)
    on_run: Optional[Callable] = None
    seen_env: Optional[Dict[str, str]] = None

    def run(self, ctx) -> int:
        self.calls.append(self.name)
        self.seen_env = dict(ctx.env)
        if self.on_run is not None:
            self.on_run(ctx)
        return self.exit_code


class FakeCache:
    def __init__(self, hit: bool = False, restore_error: Optional[Exception] = None,
                 save_error: Optional[Exception] = None):
        self.hit = hit
        self.restore_error = restore_error
        self.save_error = save_error
        self.restored: List[str] = []
        self.saved: List[str] = []
        self.pruned: List[tuple] = []

    def restore(self, job: Job, key: str, *, repo_root=".") -> CacheHit:
        if self.restore_error is not None:
            raise self.restore_error
        self.restored.append(key)
        if self.hit:
            return CacheHit(hit=True, key=key, reason="restored artifact", manifest={})
        return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

    def save(self, job: Job, key: str, manifest, *, repo_root=".") -> None:
        if self.save_error is not None:
            raise self.save_error
        self.saved.append(key)

    def prune(self, job_name: str, keep: int = 3) -> None:
        self.pruned.append((job_name, keep))


@pytest.fixture(autouse=True)
def console():
    c = Console(debug=False)
    set_console(c)
    return c


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cargo_repo(tmp_path: Path) -> Path:
    """A repo root with a Cargo manifest and lockfile."""
    (tmp_path / "Cargo.toml").write_text('[package]\nname = "demo"\nversion = "0.1.0"\n')
    (tmp_path / "Cargo.lock").write_text("version = 3\n")
    return tmp_path
