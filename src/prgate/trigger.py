# trigger.py
# Trigger evaluation: decides whether a repository event schedules a workflow.
# Everything here is pure; nothing touches the filesystem or the process env.

from __future__ import annotations

import os
from fnmatch import fnmatchcase
from typing import Mapping, Optional

from .model import PULL_REQUEST, PUSH, BranchFilter, Event, Trigger


def _branch_matches(branch: str, flt: BranchFilter) -> bool:
    if flt.branches is None:
        return True
    return any(fnmatchcase(branch, pattern) for pattern in flt.branches)


def should_run(trigger: Trigger, event: Event) -> bool:
    """
    Return True if `event` schedules a workflow with `trigger`.

    - pull_request: scheduled if the trigger listens to pull requests and the
      branch passes its filter (no filter = any branch)
    - push: scheduled if the trigger listens to pushes and the branch passes
      its filter
    - any other kind: never scheduled
    """
    if event.kind == PULL_REQUEST:
        flt = trigger.pull_request
    elif event.kind == PUSH:
        flt = trigger.push
    else:
        return False

    if flt is None:
        return False
    return _branch_matches(event.branch, flt)


def describe(trigger: Trigger) -> list[str]:
    """Human readable description lines, e.g. ['pull_request: any branch', 'push: main']."""
    lines = []
    for kind, flt in ((PULL_REQUEST, trigger.pull_request), (PUSH, trigger.push)):
        if flt is None:
            continue
        if flt.branches is None:
            lines.append(f"{kind}: any branch")
        else:
            lines.append(f"{kind}: {', '.join(flt.branches)}")
    return lines


def _strip_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


def event_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[Event]:
    """
    Build an Event from GitHub Actions style variables.

    Returns None if GITHUB_EVENT_NAME is not set (not running on a hosted runner).
    """
    env = os.environ if environ is None else environ
    kind = env.get("GITHUB_EVENT_NAME")
    if not kind:
        return None

    if kind == PULL_REQUEST:
        branch = env.get("GITHUB_BASE_REF") or ""
    else:
        branch = env.get("GITHUB_REF_NAME") or _strip_ref(env.get("GITHUB_REF", ""))

    return Event(kind=kind, branch=branch)
