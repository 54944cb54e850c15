# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional

from .model import BranchFilter, CacheSpec, Job, Step, Trigger, Workflow


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


# ---------------------------------------------------------------------
# Trigger helpers
# ---------------------------------------------------------------------

def pull_request(*branches: str) -> Dict[str, BranchFilter]:
    """pull_request() -> any branch; pull_request("main") -> PRs targeting main."""
    return {"pull_request": BranchFilter(branches=tuple(branches) if branches else None)}


def push(*branches: str) -> Dict[str, BranchFilter]:
    """push() -> any branch; push("main") -> pushes to main only."""
    return {"push": BranchFilter(branches=tuple(branches) if branches else None)}


def on(*kinds: Dict[str, BranchFilter]) -> Trigger:
    """
    Combine trigger kinds:
        on(pull_request(), push("main"))
    """
    merged: Dict[str, BranchFilter] = {}
    for k in kinds:
        merged.update(k)
    return Trigger(**merged)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    env: Optional[Dict[str, str]] = None,
    timeout_minutes: float = 60,
    requires: Optional[List[str]] = None,
    cache: Optional[CacheSpec] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        # force values to str: they end up in a process env
        env={k: str(v) for k, v in (env or {}).items()},
        timeout_minutes=timeout_minutes,
        requires=requires or [],
        cache=cache,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._timeout_minutes: float = 60
        self._cache: Optional[CacheSpec] = None

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_timeout(self, minutes: float):
        self._timeout_minutes = minutes
        return self

    def with_cache(self, *, manifests: List[str], paths: List[str], enabled: bool = True, keep: int = 3):
        self._cache = CacheSpec(manifests=list(manifests), paths=list(paths), enabled=enabled, keep=keep)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=list(self._steps),
            env=dict(self._env),
            timeout_minutes=self._timeout_minutes,
            requires=list(self._requires),
            cache=self._cache,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(name: str, trigger: Trigger, *jobs: Job) -> Workflow:
    """
    Workflow definition helper:

        from prgate import wf, on, pull_request, push, job, sh

        def workflow():
            return wf("pull request", on(pull_request(), push("main")), job(...))
    """
    return Workflow(name=name, on=trigger, jobs=list(jobs))
