"""Plain data types describing flows and the outcome of running them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

NodeStatus = Literal["pending", "running", "success", "error"]

STATUS_PENDING: NodeStatus = "pending"
STATUS_RUNNING: NodeStatus = "running"
STATUS_SUCCESS: NodeStatus = "success"
STATUS_ERROR: NodeStatus = "error"

# Output port whose value is collected into the run's display list.
DISPLAY_PORT = "_display"

PortValues = Dict[str, Any]
FieldValues = Dict[str, str]


@dataclass
class Node:
    """A placed node instance. Position is carried for the editor only."""
    id: str
    type: str
    x: float = 0.0
    y: float = 0.0
    fields: FieldValues = field(default_factory=dict)


@dataclass(frozen=True)
class Connection:
    """``target_node_id.target_port`` receives ``source_node_id.source_port``."""
    id: str
    source_node_id: str
    source_port: str
    target_node_id: str
    target_port: str


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Flow:
    id: str
    name: str
    nodes: List[Node] = field(default_factory=list)
    connections: List[Connection] = field(default_factory=list)
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)


@dataclass(frozen=True)
class ExecutionResult:
    node_id: str
    status: NodeStatus
    outputs: Optional[PortValues] = None
    error: Optional[str] = None
    duration: Optional[float] = None  # seconds; None when nothing was invoked

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


@dataclass(frozen=True)
class DisplayPayload:
    node_id: str
    data: Any


@dataclass(frozen=True)
class RunReport:
    """Immutable outcome of one run.

    ``results`` preserves execution order and only holds nodes that reached a
    terminal state. ``error`` is set for whole-run failures detected before any
    node executed (cycles, duplicate ids).
    """
    results: Mapping[str, ExecutionResult] = field(default_factory=lambda: MappingProxyType({}))
    displays: Tuple[DisplayPayload, ...] = ()
    error: Optional[str] = None
    cancelled: bool = False

    @classmethod
    def build(
        cls,
        results: Mapping[str, ExecutionResult],
        displays: List[DisplayPayload],
        *,
        error: Optional[str] = None,
        cancelled: bool = False,
    ) -> "RunReport":
        return cls(
            results=MappingProxyType(dict(results)),
            displays=tuple(displays),
            error=error,
            cancelled=cancelled,
        )

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.results

    def __len__(self) -> int:
        return len(self.results)

    def get(self, node_id: str) -> Optional[ExecutionResult]:
        return self.results.get(node_id)

    @property
    def failed(self) -> List[ExecutionResult]:
        return [r for r in self.results.values() if r.status == STATUS_ERROR]

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.cancelled and not self.failed
