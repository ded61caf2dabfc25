"""Configuration constants and helpers for the FlowForge server and engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

SUBPROTOCOL = "flowforge"
HOST = "0.0.0.0"
PORT = int(os.environ.get("FLOWFORGE_PORT", "8765"))
API_PORT = 8000

BASE_DIR = Path(__file__).resolve().parent.parent
OUTPUTS_DIR = Path(os.environ.get("FLOWFORGE_OUTPUTS_DIR", BASE_DIR / "outputs"))

# Seconds allowed for a single request made by the http-input node.
HTTP_TIMEOUT = 30.0

LOG_FORMAT = "%(asctime)s | pid=%(process)d | %(levelname)s | %(name)s | %(message)s"


def default_engine_settings() -> Dict[str, Any]:
    return {
        "error_policy": "halt-on-any-error",
        "concurrent": False,
        "max_concurrency": None,
        "node_timeout": None,
    }
