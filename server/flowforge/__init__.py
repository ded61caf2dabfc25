"""FlowForge: dataflow graph execution engine and its server helpers."""

from .config import (
    SUBPROTOCOL,
    HOST,
    PORT,
    OUTPUTS_DIR,
    default_engine_settings,
)
from .context import RequestContext
from .dag import (
    CancellationToken,
    Connection,
    ExecutionResult,
    Flow,
    FlowEngine,
    FlowError,
    Node,
    NodeTypeRegistry,
    REGISTRY,
    RunReport,
)
from .protocol import (
    FlowMessage,
    ProtocolError,
    build_status_response,
)

__all__ = [
    "SUBPROTOCOL",
    "HOST",
    "PORT",
    "OUTPUTS_DIR",
    "default_engine_settings",
    "RequestContext",
    "CancellationToken",
    "Connection",
    "ExecutionResult",
    "Flow",
    "FlowEngine",
    "FlowError",
    "Node",
    "NodeTypeRegistry",
    "REGISTRY",
    "RunReport",
    "FlowMessage",
    "ProtocolError",
    "build_status_response",
]
