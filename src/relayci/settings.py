from __future__ import annotations
import os

# Operator defaults; every one can be overridden on the command line.
WORKFLOW_FILE = os.environ.get("RELAYCI_WORKFLOW", "relayci_workflow.py")
MAX_WORKERS = int(os.environ.get("RELAYCI_WORKERS", "0")) or None
JOB_TIMEOUT = float(os.environ.get("RELAYCI_JOB_TIMEOUT", "3600"))
LOG_TAIL_LINES = int(os.environ.get("RELAYCI_LOG_TAIL_LINES", "30"))
TAG_PREFIX = os.environ.get("RELAYCI_TAG_PREFIX", "v")
COMPARE_REF = os.environ.get("RELAYCI_COMPARE_REF", "origin/main")
