from .dsl import job, sh, on, pull_request, push, wf, JobBuilder, build
from .runner import run_job, run_workflow, load_workflow
from .model import CacheSpec, Event, Job, Step, Trigger, Workflow
from .trigger import should_run

__all__ = [
    "job", "sh", "on", "pull_request", "push", "wf", "JobBuilder", "build",
    "run_job", "run_workflow", "load_workflow",
    "CacheSpec", "Event", "Job", "Step", "Trigger", "Workflow",
    "should_run",
]
