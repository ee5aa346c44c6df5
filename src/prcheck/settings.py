from __future__ import annotations
import os

CACHE_DIR = os.environ.get("PRCHECK_CACHE_DIR", ".prcheck/cache")
WORK_DIR = os.environ.get("PRCHECK_WORK_DIR", ".prcheck/work")
WORKERS = int(os.environ["PRCHECK_WORKERS"]) if os.environ.get("PRCHECK_WORKERS") else None
OUTPUT_TAIL = int(os.environ.get("PRCHECK_OUTPUT_TAIL", "4000"))
DEFAULT_EVENT = os.environ.get("PRCHECK_EVENT", "pull_request")
