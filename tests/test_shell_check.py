from __future__ import annotations

import os
import subprocess
import threading
import time

import pytest

from prgate.dsl import sh
from prgate.runner import Cancelled, Deadline, ShellCheck, StageContext, TimeoutFailure

pytestmark = pytest.mark.skipif(os.name != "posix", reason="uses POSIX shell")


def ctx_for(tmp_path, *, seconds=30.0, env=None, cancel=None):
    return StageContext(
        job="rust",
        repo_root=tmp_path,
        env=env if env is not None else {"PATH": os.environ.get("PATH", "/usr/bin:/bin")},
        deadline=Deadline(seconds),
        cancel=cancel or threading.Event(),
    )


def test_exit_code_is_reported(tmp_path):
    assert ShellCheck(sh("ok", "true")).run(ctx_for(tmp_path)) == 0
    assert ShellCheck(sh("bad", "exit 7")).run(ctx_for(tmp_path)) == 7


def test_runs_in_step_cwd(tmp_path):
    (tmp_path / "crate").mkdir()
    code = ShellCheck(sh("pwd", "test -f marker || touch marker", cwd="crate")).run(ctx_for(tmp_path))
    assert code == 0
    assert (tmp_path / "crate" / "marker").exists()


def test_missing_cwd_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        ShellCheck(sh("x", "true", cwd="nope")).run(ctx_for(tmp_path))


def test_undecodable_output_does_not_stall_stage(tmp_path, capsys):
    # More than a pipe buffer after an invalid UTF-8 byte: the reader must keep draining.
    step = sh("noisy", r"printf '\377\n'; head -c 300000 /dev/zero | tr '\0' a; echo; echo done; exit 0")
    assert ShellCheck(step).run(ctx_for(tmp_path, seconds=5.0)) == 0
    out = capsys.readouterr().out
    assert "\ufffd" in out
    assert "  | done" in out


def test_output_pipe_is_closed_after_run(tmp_path, monkeypatch):
    started = []
    real_popen = subprocess.Popen

    def recording_popen(*args, **kwargs):
        proc = real_popen(*args, **kwargs)
        started.append(proc)
        return proc

    monkeypatch.setattr(subprocess, "Popen", recording_popen)
    assert ShellCheck(sh("ok", "echo hi")).run(ctx_for(tmp_path)) == 0
    (proc,) = started
    assert proc.stdout.closed


def test_uses_only_the_given_env(tmp_path, monkeypatch):
    monkeypatch.setenv("PRGATE_LEAK_CHECK", "leaked")
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "CARGO_PROFILE_TEST_DEBUG": "0"}
    step = sh("env", 'test "$CARGO_PROFILE_TEST_DEBUG" = 0 && test -z "$PRGATE_LEAK_CHECK"')
    assert ShellCheck(step).run(ctx_for(tmp_path, env=env)) == 0


def test_output_is_streamed_to_console(tmp_path, capsys):
    ShellCheck(sh("echo", "echo hello-from-stage")).run(ctx_for(tmp_path))
    assert "hello-from-stage" in capsys.readouterr().out


def test_deadline_kills_running_stage(tmp_path):
    check = ShellCheck(sh("sleep", "sleep 30"), poll_seconds=0.05)
    started = time.monotonic()
    with pytest.raises(TimeoutFailure) as exc:
        check.run(ctx_for(tmp_path, seconds=0.3))
    assert time.monotonic() - started < 10
    assert exc.value.stage == "sleep"


def test_cancel_kills_running_stage(tmp_path):
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        with pytest.raises(Cancelled):
            ShellCheck(sh("sleep", "sleep 30"), poll_seconds=0.05).run(ctx_for(tmp_path, cancel=cancel))
    finally:
        timer.cancel()
