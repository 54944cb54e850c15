# export.py
from __future__ import annotations

from .model import Job, Workflow
from .trigger import describe


def job_to_dict(job: Job) -> dict:
    """
    Convert a Job to a plain dict (for `prgate plan --json`).
    """
    steps = []
    for step in job.steps:
        step_dict = {
            "name": step.name,
            "run": step.run,
        }
        if step.cwd is not None:
            step_dict["cwd"] = step.cwd
        steps.append(step_dict)

    job_dict = {
        "name": job.name,
        "steps": steps,
        "env": dict(job.env),
        "timeout_minutes": job.timeout_minutes,
        "requires": list(job.requires),
    }

    if job.cache is not None:
        job_dict["cache"] = {
            "manifests": list(job.cache.manifests),
            "paths": list(job.cache.paths),
            "enabled": job.cache.enabled,
            "keep": job.cache.keep,
        }

    return job_dict


def workflow_to_dict(workflow: Workflow) -> dict:
    on = {}
    for kind in ("pull_request", "push"):
        flt = getattr(workflow.on, kind)
        if flt is not None:
            on[kind] = {"branches": list(flt.branches) if flt.branches is not None else None}

    return {
        "name": workflow.name,
        "on": on,
        "jobs": [job_to_dict(j) for j in workflow.jobs],
    }


def workflow_to_lines(workflow: Workflow) -> list[str]:
    """Plain-text plan, one line per fact."""
    lines = [f"Workflow: {workflow.name}", "On:"]
    lines.extend(f"  {line}" for line in describe(workflow.on))
    for j in workflow.jobs:
        lines.append(f"Job: {j.name} (timeout {j.timeout_minutes:g}m)")
        for k, v in sorted(j.env.items()):
            lines.append(f"  env {k}={v}")
        if j.cache is not None:
            state = "enabled" if j.cache.enabled else "disabled"
            lines.append(f"  cache ({state}): key from {', '.join(j.cache.manifests)}")
        for i, s in enumerate(j.steps, start=1):
            lines.append(f"  {i}. {s.name}: {s.run}")
    return lines
