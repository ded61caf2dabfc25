"""Flow graph model, sorting and execution utilities exposed to the rest of the app."""

from .engine import (
    ERROR_POLICIES,
    HALT_ON_ANY_ERROR,
    SKIP_DEPENDENTS,
    CancellationToken,
    ErrorPolicy,
    FlowEngine,
    ObserverFn,
    gather_inputs,
)
from .errors import (
    CapabilityError,
    CycleDetectedError,
    DuplicateNodeError,
    FlowError,
    NodeTimeoutError,
    PayloadError,
    RegistryError,
    RunCancelledError,
    RunInProgressError,
    UnknownNodeTypeError,
)
from .expressions import Expression, ExpressionError, compile_expression
from .model import (
    DISPLAY_PORT,
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    Connection,
    DisplayPayload,
    ExecutionResult,
    Flow,
    Node,
    NodeStatus,
    RunReport,
)
from .nodes import BUILTIN_NODE_TYPES, REGISTRY, build_default_registry
from .registry import (
    CATEGORIES,
    FieldSpec,
    FunctionCapability,
    NodeCapability,
    NodeTypeDescriptor,
    NodeTypeRegistry,
    PortSpec,
    node_type,
)
from .sorter import build_dependency_graph, order_graph, topological_sort

__all__ = [
    "BUILTIN_NODE_TYPES",
    "CATEGORIES",
    "CancellationToken",
    "CapabilityError",
    "Connection",
    "CycleDetectedError",
    "DISPLAY_PORT",
    "DisplayPayload",
    "DuplicateNodeError",
    "ERROR_POLICIES",
    "ErrorPolicy",
    "ExecutionResult",
    "Expression",
    "ExpressionError",
    "FieldSpec",
    "Flow",
    "FlowEngine",
    "FlowError",
    "FunctionCapability",
    "HALT_ON_ANY_ERROR",
    "Node",
    "NodeCapability",
    "NodeStatus",
    "NodeTimeoutError",
    "NodeTypeDescriptor",
    "NodeTypeRegistry",
    "ObserverFn",
    "PayloadError",
    "PortSpec",
    "REGISTRY",
    "RegistryError",
    "RunCancelledError",
    "RunInProgressError",
    "RunReport",
    "SKIP_DEPENDENTS",
    "STATUS_ERROR",
    "STATUS_PENDING",
    "STATUS_RUNNING",
    "STATUS_SUCCESS",
    "UnknownNodeTypeError",
    "build_default_registry",
    "build_dependency_graph",
    "compile_expression",
    "gather_inputs",
    "node_type",
    "order_graph",
    "topological_sort",
]
