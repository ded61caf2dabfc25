"""Connection-scoped context helpers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from .dag import CancellationToken, FlowEngine


class StatusCallback(Protocol):
    """Protocol for asynchronous status update emitters."""

    def __call__(self, type_code: int, payload: Dict[str, Any], request_id: int) -> None:
        ...


@dataclass
class RequestContext:
    """Carries the connected client's engine and the run it may have in flight.

    Each connection owns one :class:`FlowEngine`, so runs from different
    clients never share result state.
    """

    connection_id: str
    client_ip: str | None = None
    log_label: str = ""
    status_callback: StatusCallback | None = None
    engine: FlowEngine = field(default_factory=FlowEngine.from_settings)
    cancel_token: Optional[CancellationToken] = None
    run_task: Optional["asyncio.Task[Any]"] = None
