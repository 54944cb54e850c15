from __future__ import annotations
import os

CACHE_DIR = os.environ.get("PRGATE_CACHE_DIR", ".prgate/cache")
WORKFLOW_FILE = os.environ.get("PRGATE_WORKFLOW", "prgate_workflow.py")
POLL_SECONDS = float(os.environ.get("PRGATE_POLL_SECONDS", "0.2"))
