from __future__ import annotations
import os

RUNTIME = os.environ.get("RUNNERCI_RUNTIME", "shell")
MAX_PARALLEL = int(os.environ.get("RUNNERCI_MAX_PARALLEL", "0")) or max(1, (os.cpu_count() or 2) - 1)
ACQUIRE_TIMEOUT = float(os.environ.get("RUNNERCI_ACQUIRE_TIMEOUT", "300"))
OUTPUT_TAIL = int(os.environ.get("RUNNERCI_OUTPUT_TAIL", "4000"))
WORKERS = os.environ.get("RUNNERCI_WORKERS", "local=x86_64,docker")
WORKSPACE = os.environ.get("RUNNERCI_WORKSPACE", ".")
HEALTH_INTERVAL = float(os.environ.get("RUNNERCI_HEALTH_INTERVAL", "1"))
