"""Exception hierarchy for flow validation and execution."""

from __future__ import annotations

from typing import List, Sequence, Tuple


class FlowError(Exception):
    """Base class for every error raised by the flow engine."""


class CycleDetectedError(FlowError):
    """Raised by the sorter when the connections form a cycle."""

    def __init__(self, unresolved: Sequence[str], cycle: Sequence[Tuple[str, str]] = ()) -> None:
        self.unresolved: List[str] = list(unresolved)
        self.cycle: List[Tuple[str, str]] = list(cycle)
        detail = " -> ".join(src for src, _ in self.cycle)
        if self.cycle:
            detail = f"{detail} -> {self.cycle[0][0]}"
        super().__init__(
            f"Cycle detected in flow graph ({len(self.unresolved)} unresolved node(s))"
            + (f": {detail}" if detail else "")
        )


class DuplicateNodeError(FlowError):
    """Raised when two nodes of a run share the same id."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Duplicate node id '{node_id}'")


class UnknownNodeTypeError(FlowError):
    def __init__(self, type_id: str) -> None:
        self.type_id = type_id
        super().__init__(f"Unknown node type: {type_id}")


class CapabilityError(FlowError):
    """Raised by node capabilities for expected, user-facing failures."""


class NodeTimeoutError(FlowError):
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Node timed out after {timeout:g}s")


class RunCancelledError(FlowError):
    def __init__(self) -> None:
        super().__init__("Run cancelled")


class RunInProgressError(FlowError):
    """Raised when ``run_flow`` is called while the engine is already running."""


class RegistryError(FlowError):
    """Raised for duplicate registrations or writes to a frozen registry."""


class PayloadError(FlowError):
    """Raised when a flow payload received from a client is malformed."""
