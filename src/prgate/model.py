# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

PULL_REQUEST = "pull_request"
PUSH = "push"
EVENT_KINDS = (PULL_REQUEST, PUSH)


@dataclass(frozen=True)
class Step:
    """A single command (stage) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass
class CacheSpec:
    """
    Dependency cache settings for a job.

    manifests: globs (relative to repo root) whose contents form the cache key
    paths:     files/dirs archived after a successful run ("~" is allowed)
    """
    manifests: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    enabled: bool = True
    keep: int = 3


@dataclass
class Job:
    """
    A CI job: ordered fail-fast steps + fixed env + timeout + cache settings.
    """
    name: str
    steps: list[Step]

    env: Dict[str, str] = field(default_factory=dict)
    timeout_minutes: float = 60
    requires: list[str] = field(default_factory=list)
    cache: Optional[CacheSpec] = None

    def __post_init__(self) -> None:
        if not self.steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        if self.timeout_minutes <= 0:
            raise ValueError(f"Job '{self.name}' timeout must be positive, got {self.timeout_minutes}")

    @property
    def timeout_seconds(self) -> float:
        return float(self.timeout_minutes) * 60.0


@dataclass(frozen=True)
class BranchFilter:
    """Branch filter for a trigger kind. branches=None means any branch."""
    branches: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class Trigger:
    """Which repository events schedule the workflow (None = kind not enabled)."""
    pull_request: Optional[BranchFilter] = None
    push: Optional[BranchFilter] = None


@dataclass(frozen=True)
class Event:
    """A repository event: kind + target branch (pushed branch, or the base branch of a PR)."""
    kind: str
    branch: str = ""


@dataclass
class Workflow:
    name: str
    on: Trigger
    jobs: List[Job]

    def __post_init__(self) -> None:
        names = [j.name for j in self.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate job names found: {dupes}")
