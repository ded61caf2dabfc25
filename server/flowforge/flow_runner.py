"""Bindings between client flow payloads and the flow engine."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .dag import (
    CancellationToken,
    Connection,
    ExecutionResult,
    Flow,
    FlowEngine,
    Node,
    ObserverFn,
    PayloadError,
    RunReport,
)


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _parse_node(raw: Any) -> Node:
    if not isinstance(raw, dict):
        raise PayloadError("Each node must be an object.")
    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
    nid = raw.get("id")
    if nid is None or str(nid) == "":
        raise PayloadError("Each node must have a non-empty 'id'.")
    type_id = _first(raw, "type", "kind") or _first(data, "type", "kind")
    if not type_id:
        raise PayloadError(f"Node '{nid}' is missing 'type'.")

    position = raw.get("position") if isinstance(raw.get("position"), dict) else {}
    try:
        x = float(_first(raw, "x") or position.get("x") or 0)
        y = float(_first(raw, "y") or position.get("y") or 0)
    except (TypeError, ValueError):
        raise PayloadError(f"Node '{nid}' has a non-numeric position.") from None

    fields = raw.get("fields", data.get("fields", {}))
    if fields is None:
        fields = {}
    if not isinstance(fields, dict):
        raise PayloadError(f"Node '{nid}' fields must be an object.")
    return Node(
        id=str(nid),
        type=str(type_id),
        x=x,
        y=y,
        fields={str(k): "" if v is None else str(v) for k, v in fields.items()},
    )


def _parse_connection(raw: Any, index: int) -> Connection:
    if not isinstance(raw, dict):
        raise PayloadError("Each connection must be an object.")
    source = _first(raw, "sourceNodeId", "source_node_id", "source")
    target = _first(raw, "targetNodeId", "target_node_id", "target")
    if source is None or target is None:
        raise PayloadError("Each connection must include a source and target node.")
    source_port = _first(raw, "sourcePort", "source_port", "sourceHandle")
    target_port = _first(raw, "targetPort", "target_port", "targetHandle")
    if source_port is None or target_port is None:
        raise PayloadError(f"Connection {source} -> {target} must name both ports.")
    return Connection(
        id=str(raw.get("id") or f"conn-{index}"),
        source_node_id=str(source),
        source_port=str(source_port),
        target_node_id=str(target),
        target_port=str(target_port),
    )


def parse_flow_payload(payload: Dict[str, Any]) -> Flow:
    """Convert an editor payload into a :class:`Flow`.

    Supported layouts:
    - Top-level: { "nodes": [...], "connections": [...] }
    - Nested: { "flow": { "nodes": [...], "connections": [...] } }
    """
    if not isinstance(payload, dict):
        raise PayloadError("Flow payload must be an object.")
    container = payload.get("flow", payload)
    if not isinstance(container, dict):
        raise PayloadError("'flow' must be an object.")

    raw_nodes = container.get("nodes") or []
    raw_connections = container.get("connections", container.get("edges")) or []
    if not isinstance(raw_nodes, list) or not isinstance(raw_connections, list):
        raise PayloadError("'nodes' and 'connections' must be lists.")

    flow = Flow(
        id=str(container.get("id") or "adhoc"),
        name=str(container.get("name") or "Untitled flow"),
        nodes=[_parse_node(n) for n in raw_nodes],
        connections=[_parse_connection(c, i) for i, c in enumerate(raw_connections)],
    )
    if container.get("createdAt"):
        flow.created_at = str(container["createdAt"])
    if container.get("updatedAt"):
        flow.updated_at = str(container["updatedAt"])
    return flow


async def run_flow_payload(
    engine: FlowEngine,
    payload: Dict[str, Any],
    *,
    cancel_token: Optional[CancellationToken] = None,
    observer: Optional[ObserverFn] = None,
) -> Tuple[RunReport, Dict[str, Any]]:
    """Execute a flow payload and return both the raw report and a summary."""
    flow = parse_flow_payload(payload)
    report = await engine.run(flow, cancel_token=cancel_token, observer=observer)
    return report, summarize_report(report)


def to_jsonable(value: Any) -> Any:
    """Best-effort conversion of node outputs into JSON-compatible values."""
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, np.generic):
        return to_jsonable(value.item())
    if isinstance(value, np.ndarray):
        return to_jsonable(value.tolist())
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return {"type": "bytes", "length": len(value)}
    return describe_value(value)


def describe_value(value: Any) -> Dict[str, Any]:
    if value is None:
        return {"type": "none"}
    if isinstance(value, (str, int, float, bool)):
        return {"type": type(value).__name__, "value": value}
    if isinstance(value, dict):
        return {"type": "dict", "keys": list(value.keys()), "size": len(value)}
    if isinstance(value, list):
        return {"type": "list", "length": len(value)}
    if isinstance(value, np.ndarray):
        return {
            "type": "ndarray",
            "shape": list(value.shape),
            "dtype": str(value.dtype),
            "min": float(np.min(value)) if value.size else None,
            "max": float(np.max(value)) if value.size else None,
            "mean": float(np.mean(value)) if value.size else None,
        }
    return {"type": type(value).__name__, "repr": repr(value)[:200]}


def describe_result(result: ExecutionResult) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "nodeId": result.node_id,
        "status": result.status,
        "durationMs": None if result.duration is None else round(result.duration * 1000, 3),
    }
    if result.outputs is not None:
        entry["outputs"] = to_jsonable(result.outputs)
    if result.error is not None:
        entry["error"] = result.error
    return entry


def summarize_report(report: RunReport) -> Dict[str, Any]:
    """Produce a JSON-friendly snapshot of a run report."""
    results: List[Dict[str, Any]] = [describe_result(r) for r in report.results.values()]
    return {
        "status": "success" if report.succeeded else ("cancelled" if report.cancelled else "error"),
        "error": report.error,
        "cancelled": report.cancelled,
        "order": list(report.results.keys()),
        "results": results,
        "displays": [
            {"nodeId": d.node_id, "data": to_jsonable(d.data)} for d in report.displays
        ],
    }
