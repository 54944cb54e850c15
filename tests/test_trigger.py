from __future__ import annotations

import pytest

from prgate.dsl import on, pull_request, push
from prgate.model import Event, Trigger
from prgate.trigger import describe, event_from_env, should_run

GATE = on(pull_request(), push("main"))


@pytest.mark.parametrize("branch", ["feature/x", "main", "dev", ""])
def test_pull_request_any_branch_is_scheduled(branch):
    assert should_run(GATE, Event(kind="pull_request", branch=branch))


def test_push_to_main_is_scheduled():
    assert should_run(GATE, Event(kind="push", branch="main"))


@pytest.mark.parametrize("branch", ["dev", "feature/x", "main2", "Main"])
def test_push_to_other_branch_is_not_scheduled(branch):
    assert not should_run(GATE, Event(kind="push", branch=branch))


@pytest.mark.parametrize("kind", ["workflow_dispatch", "schedule", "release", ""])
def test_other_event_kinds_never_scheduled(kind):
    assert not should_run(GATE, Event(kind=kind, branch="main"))


def test_disabled_kind_is_not_scheduled():
    trigger = on(push("main"))
    assert not should_run(trigger, Event(kind="pull_request", branch="main"))


def test_branch_globs():
    trigger = on(push("main", "release/*"))
    assert should_run(trigger, Event(kind="push", branch="release/1.2"))
    assert not should_run(trigger, Event(kind="push", branch="hotfix/1.2"))


def test_empty_trigger_schedules_nothing():
    assert not should_run(Trigger(), Event(kind="pull_request", branch="x"))


def test_describe():
    assert describe(GATE) == ["pull_request: any branch", "push: main"]


def test_event_from_env_push():
    env = {"GITHUB_EVENT_NAME": "push", "GITHUB_REF": "refs/heads/main"}
    assert event_from_env(env) == Event(kind="push", branch="main")


def test_event_from_env_prefers_ref_name():
    env = {"GITHUB_EVENT_NAME": "push", "GITHUB_REF_NAME": "dev", "GITHUB_REF": "refs/heads/main"}
    assert event_from_env(env) == Event(kind="push", branch="dev")


def test_event_from_env_pull_request_uses_base_branch():
    env = {
        "GITHUB_EVENT_NAME": "pull_request",
        "GITHUB_BASE_REF": "main",
        "GITHUB_HEAD_REF": "feature/x",
        "GITHUB_REF": "refs/pull/7/merge",
    }
    assert event_from_env(env) == Event(kind="pull_request", branch="main")


def test_event_from_env_outside_hosted_runner():
    assert event_from_env({}) is None
