# prgate_workflow.py
# Pull-request gate: formatting, lint, test build, tests. Stops at the first failure.
from __future__ import annotations

from prgate.dsl import wf, on, pull_request, push
from prgate.step_workflows.cargo import rust_job


def workflow():
    return wf(
        "pull request",
        on(pull_request(), push("main")),
        rust_job("rust", timeout_minutes=60),
    )
