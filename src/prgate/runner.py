# runner.py
from __future__ import annotations

import os
import runpy
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from . import settings
from .cache import CacheBackend, CacheHit, manifest_fingerprint
from .model import Event, Job, Step, Workflow
from .trigger import should_run
from .ui.console import get_console

# Stage statuses
PASSED = "passed"
FAILED = "failed"
TIMED_OUT = "timed_out"
CANCELLED = "cancelled"
NOT_RUN = "not_run"

# Job statuses
SUCCESS = "success"
FAILURE = "failure"
TIMEOUT = "timeout"

# Exit code recorded for a stage whose process could not be started (shell convention)
EXIT_NOT_STARTED = 127


# ----------------------------------------------------------------------
# Errors
# ----------------------------------------------------------------------

@dataclass
class CIError(Exception):
    """
    Structured CI error (bad workflow file, missing tool, ...) with enough
    context for clean CLI output without a traceback.
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StageFailure(Exception):
    job: str
    stage: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.job}] stage '{self.stage}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class TimeoutFailure(Exception):
    job: str
    stage: str | None
    timeout_seconds: float

    def __str__(self) -> str:
        where = f" during stage '{self.stage}'" if self.stage else ""
        return f"[{self.job}] timed out after {self.timeout_seconds / 60:g} minutes{where}"


@dataclass
class Cancelled(Exception):
    job: str
    stage: str | None

    def __str__(self) -> str:
        where = f" during stage '{self.stage}'" if self.stage else ""
        return f"[{self.job}] cancelled{where}"


TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (https://rustup.rs) or fix PATH.",
    "rustc": "Install the Rust toolchain (https://rustup.rs) or fix PATH.",
    "rustfmt": "Install rustfmt: rustup component add rustfmt",
    "cargo-clippy": "Install clippy: rustup component add clippy",
}


# ----------------------------------------------------------------------
# Execution context
# ----------------------------------------------------------------------

@dataclass
class Deadline:
    """Wall-clock budget for a job. `clock` is injectable for tests."""
    seconds: float
    clock: Callable[[], float] = time.monotonic
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    def expired(self) -> bool:
        return self.elapsed() >= self.seconds


@dataclass
class StageContext:
    """
    Everything a check needs to run. The environment is an explicit mapping,
    so concurrent jobs in one process never share mutable env state.
    """
    job: str
    repo_root: Path
    env: Mapping[str, str]
    deadline: Deadline
    cancel: threading.Event = field(default_factory=threading.Event)


class Check(Protocol):
    """A stage: run once and report an exit code (0 = pass)."""
    name: str

    def run(self, ctx: StageContext) -> int: ...


def _terminate(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    proc.wait()


class ShellCheck:
    """Runs a Step through the shell, streaming output, bounded by the job deadline."""

    def __init__(self, step: Step, poll_seconds: float | None = None):
        self.step = step
        self.name = step.name
        self.poll_seconds = settings.POLL_SECONDS if poll_seconds is None else poll_seconds

    def run(self, ctx: StageContext) -> int:
        cwd = (ctx.repo_root / (self.step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{ctx.job}] step '{self.step.name}' cwd not found: {cwd}")

        console = get_console()
        proc = subprocess.Popen(
            self.step.run,
            shell=True,
            cwd=str(cwd),
            env=dict(ctx.env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",  # stray bytes in tool output must not stop the reader
            start_new_session=(os.name == "posix"),  # own process group so a kill takes the children too
        )

        def _pump() -> None:
            assert proc.stdout is not None
            for line in proc.stdout:
                console.print_output(line.rstrip("\n"))

        reader = threading.Thread(target=_pump, daemon=True)
        reader.start()

        try:
            while True:
                wait_for = min(self.poll_seconds, max(ctx.deadline.remaining(), 0.01))
                try:
                    code = proc.wait(timeout=wait_for)
                    break
                except subprocess.TimeoutExpired:
                    if ctx.cancel.is_set():
                        _terminate(proc)
                        raise Cancelled(job=ctx.job, stage=self.name)
                    if ctx.deadline.expired():
                        _terminate(proc)
                        raise TimeoutFailure(job=ctx.job, stage=self.name, timeout_seconds=ctx.deadline.seconds)
        finally:
            reader.join(timeout=5)
            # close() blocks on the reader's buffer lock, so a pipe still held open
            # by a grandchild is left to the daemon reader.
            if proc.stdout is not None and not reader.is_alive():
                proc.stdout.close()

        return code

    def __repr__(self) -> str:
        return f"ShellCheck({self.step.run!r})"


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StageResult:
    name: str
    status: str
    exit_code: Optional[int] = None
    duration: float = 0.0


@dataclass
class JobResult:
    job: str
    status: str
    stages: List[StageResult]
    failed_stage: Optional[str] = None
    cache: Optional[CacheHit] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error


@dataclass
class WorkflowResult:
    workflow: str
    event: Event
    scheduled: bool
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        # Not scheduled is a no-op, not a failure.
        return all(r.ok for r in self.jobs.values())

    def summary(self) -> Dict[str, str]:
        return {name: r.status for name, r in self.jobs.items()}


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def build_env(job: Job, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Job environment: a copy of `base` (default os.environ) overlaid with job.env."""
    env = dict(os.environ if base is None else base)
    env.update({k: str(v) for k, v in job.env.items()})
    return env


def check_requirements(job: Job) -> None:
    """Raise CIError if a tool listed in job.requires is not on PATH."""
    for tool in job.requires:
        if shutil.which(tool) is None:
            hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
            raise CIError(
                kind="tool_unavailable",
                job=job.name,
                step=None,
                message=f"{tool} is not available",
                details={"hint": hint, "tool": tool},
            )


def _not_run(checks: Sequence[Check]) -> List[StageResult]:
    return [StageResult(name=c.name, status=NOT_RUN) for c in checks]


def run_stages(checks: Sequence[Check], ctx: StageContext) -> List[StageResult]:
    """
    Run checks strictly in order and stop at the first one that does not pass.

    Returns one StageResult per check; everything after the stopping point is
    NOT_RUN. A check that finishes after the deadline is TIMED_OUT even if it
    exited 0.
    """
    console = get_console()
    results: List[StageResult] = []

    for i, check in enumerate(checks):
        if ctx.cancel.is_set():
            return results + _not_run(checks[i:])
        if ctx.deadline.expired():
            # Budget was used up before this stage could start (e.g. by cache restore).
            return results + _not_run(checks[i:])

        console.print_step(check.name)
        started = ctx.deadline.clock()
        start_error: Optional[OSError] = None
        try:
            code = check.run(ctx)
        except TimeoutFailure:
            status, code = TIMED_OUT, None
        except Cancelled:
            status, code = CANCELLED, None
        except OSError as e:
            # Missing cwd, unusable shell, fork failure: the stage never ran.
            status, code, start_error = FAILED, EXIT_NOT_STARTED, e
        else:
            if ctx.deadline.expired():
                status = TIMED_OUT
            elif code == 0:
                status = PASSED
            else:
                status = FAILED
        duration = ctx.deadline.clock() - started

        results.append(StageResult(name=check.name, status=status, exit_code=code, duration=duration))
        if status == PASSED:
            console.print_step_done(check.name, duration)
            continue

        if start_error is not None:
            console.print_failure(check.name, f"could not start: {start_error}", exit_code=code)
        elif status == FAILED:
            console.print_failure(check.name, f"exit code {code}", exit_code=code)
        elif status == TIMED_OUT:
            console.print_failure(check.name, f"job timeout of {ctx.deadline.seconds / 60:g} minutes exceeded")
        else:
            console.print_failure(check.name, "cancelled")
        for rest in checks[i + 1:]:
            console.print_step_not_run(rest.name)
        return results + _not_run(checks[i + 1:])

    return results


def _restore_cache(
    job: Job,
    cache: CacheBackend,
    repo_root: Path,
    deadline: Deadline,
    cancel: threading.Event,
    poll_seconds: Optional[float] = None,
) -> tuple[CacheHit, Dict]:
    """
    Fingerprint + restore, bounded by the job deadline. Any error is treated
    as a miss.

    The restore runs on a daemon thread. If the deadline passes or the job is
    cancelled first, the restore is abandoned and reported as a miss; the
    stage loop then sees the expired deadline (or cancel flag) and stops.
    """
    try:
        key, manifest = manifest_fingerprint(job, repo_root)
    except OSError as e:
        return CacheHit(hit=False, key="", reason=f"fingerprint failed: {e}", manifest={}), {}

    outcome: Dict[str, CacheHit] = {}

    def _restore() -> None:
        try:
            outcome["hit"] = cache.restore(job, key, repo_root=repo_root)
        except Exception as e:  # restore errors degrade to a miss
            outcome["hit"] = CacheHit(hit=False, key=key, reason=f"restore failed: {e}", manifest={})

    poll = settings.POLL_SECONDS if poll_seconds is None else poll_seconds
    worker = threading.Thread(target=_restore, name=f"restore-{job.name}", daemon=True)
    worker.start()
    while True:
        worker.join(timeout=min(poll, max(deadline.remaining(), 0.01)))
        if not worker.is_alive():
            return outcome["hit"], manifest
        if cancel.is_set():
            return CacheHit(hit=False, key="", reason="restore abandoned: cancelled", manifest={}), manifest
        if deadline.expired():
            return CacheHit(hit=False, key="", reason="restore abandoned: job timeout reached", manifest={}), manifest


def run_job(
    job: Job,
    repo_root: str | Path = ".",
    cache: Optional[CacheBackend] = None,
    *,
    checks: Optional[Sequence[Check]] = None,
    base_env: Optional[Mapping[str, str]] = None,
    clock: Callable[[], float] = time.monotonic,
    cancel: Optional[threading.Event] = None,
) -> JobResult:
    """
    Run one job: env -> cache restore -> fail-fast stages -> cache save.

    `checks` replaces the job's shell steps (tests pass fakes here).
    Raises CIError if a required tool is missing; every other outcome is
    reported in the returned JobResult.
    """
    console = get_console()
    root = Path(repo_root).resolve()
    if checks is None:
        check_requirements(job)
        checks = [ShellCheck(s) for s in job.steps]

    ctx = StageContext(
        job=job.name,
        repo_root=root,
        env=build_env(job, base_env),
        deadline=Deadline(job.timeout_seconds, clock),
        cancel=cancel or threading.Event(),
    )

    console.print_job_start(job.name, job.timeout_minutes)
    for k, v in sorted(job.env.items()):
        console.print_debug(f"env {k}={v}")

    # ---- restore ----
    hit: Optional[CacheHit] = None
    manifest: Dict = {}
    if cache is not None and job.cache is not None:
        hit, manifest = _restore_cache(job, cache, root, ctx.deadline, ctx.cancel)
        if hit.hit:
            console.print_cache_hit(job.name, hit.reason)
        else:
            console.print_cache_miss(job.name, hit.reason)

    # ---- run stages ----
    stages = run_stages(checks, ctx)
    stopped = next((s for s in stages if s.status != PASSED), None)

    error: Optional[Exception] = None
    if stopped is None and len(stages) == len(checks):
        status = SUCCESS
    elif stopped is None or stopped.status == NOT_RUN:
        # Stopped before a stage could start.
        if ctx.cancel.is_set():
            status, error = CANCELLED, Cancelled(job=job.name, stage=None)
        else:
            status, error = TIMEOUT, TimeoutFailure(job=job.name, stage=None, timeout_seconds=ctx.deadline.seconds)
    elif stopped.status == TIMED_OUT:
        status, error = TIMEOUT, TimeoutFailure(job=job.name, stage=stopped.name, timeout_seconds=ctx.deadline.seconds)
    elif stopped.status == CANCELLED:
        status, error = CANCELLED, Cancelled(job=job.name, stage=stopped.name)
    else:
        step = job.steps[stages.index(stopped)] if len(job.steps) == len(checks) else None
        status = FAILURE
        error = StageFailure(
            job=job.name,
            stage=stopped.name,
            cmd=step.run if step else stopped.name,
            exit_code=stopped.exit_code if stopped.exit_code is not None else -1,
        )

    failed_stage = stopped.name if stopped is not None and stopped.status != NOT_RUN else None
    if error is not None:
        console.print_failure(job.name, str(error), is_job=True)

    # ---- save ----
    if status == SUCCESS and cache is not None and job.cache is not None and hit is not None and hit.key:
        try:
            cache.save(job, hit.key, manifest, repo_root=root)
            cache.prune(job.name, keep=job.cache.keep)
        except Exception as e:  # a cache failure never fails a passing job
            console.print_cache_warning(job.name, f"save failed: {e}")
        else:
            if job.cache.enabled and job.cache.paths:
                console.print_cache_saved(job.name, hit.key)

    return JobResult(
        job=job.name,
        status=status,
        stages=stages,
        failed_stage=failed_stage,
        cache=hit,
        error=error,
    )


def run_workflow(
    workflow: Workflow,
    event: Event,
    *,
    repo_root: str | Path = ".",
    cache: Optional[CacheBackend] = None,
    timeout_minutes: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
) -> WorkflowResult:
    """
    Evaluate the trigger and, if scheduled, run every job in declaration order.
    An event that does not match the trigger is a no-op (scheduled=False).
    """
    result = WorkflowResult(workflow=workflow.name, event=event, scheduled=should_run(workflow.on, event))
    if not result.scheduled:
        return result

    for job in workflow.jobs:
        if timeout_minutes is not None:
            job = replace(job, timeout_minutes=timeout_minutes)
        result.jobs[job.name] = run_job(job, repo_root, cache, clock=clock, cancel=cancel)

    return result


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"prgate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    wf = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        wf = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]

    if not isinstance(wf, Workflow):
        raise CIError(
            kind="invalid_workflow",
            job="<loader>",
            step=None,
            message=f"{wf_path.name} must define workflow() -> Workflow or WORKFLOW = Workflow(...)",
            details={"got": type(wf).__name__},
        )

    return wf
