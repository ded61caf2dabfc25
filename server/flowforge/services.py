"""Message handlers and routing for the FlowForge WebSocket server."""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Callable, Coroutine, Dict, Optional, Tuple
from uuid import uuid4

from .codes import (
    CODE_CLEAR_RESULTS_ERROR,
    CODE_NODE_CREATE_ERROR,
    CODE_NODE_CREATED,
    CODE_NODE_STATUS,
    CODE_NODE_TYPES,
    CODE_RESULTS_CLEARED,
    CODE_RUN_ERROR,
    CODE_RUN_FINISHED_ERROR,
    CODE_RUN_FINISHED_OK,
    CODE_RUN_IN_PROGRESS,
    CODE_RUN_STARTED,
    CODE_RUN_STOPPED,
    CODE_STOP_RUN_ERROR,
    CODE_UNKNOWN_TYPE,
    REQUEST_CLEAR_RESULTS,
    REQUEST_CREATE_NODE,
    REQUEST_NODE_TYPES,
    REQUEST_RUN_FLOW,
    REQUEST_STOP_RUN,
    REQUEST_TYPES,
)
from .context import RequestContext
from .dag import (
    ERROR_POLICIES,
    CancellationToken,
    ExecutionResult,
    Flow,
    FlowEngine,
    Node,
    PayloadError,
    RunInProgressError,
)
from .flow_runner import describe_result, parse_flow_payload, summarize_report
from .protocol import ProtocolError

LOGGER = logging.getLogger("flowforge")

HandlerResult = Tuple[int, Dict[str, Any], Optional[Coroutine[Any, Any, None]]]


def _log(level: int, context: RequestContext, message: str, *args: Any) -> None:
    if context and context.log_label:
        LOGGER.log(level, "%s " + message, context.log_label, *args)
    else:
        LOGGER.log(level, message, *args)


def _result(code: int, content: Dict[str, Any], post: Optional[Coroutine[Any, Any, None]] = None) -> HandlerResult:
    return code, content, post


def _node_to_dict(node: Node) -> Dict[str, Any]:
    return {"id": node.id, "type": node.type, "x": node.x, "y": node.y, "fields": dict(node.fields)}


def handle_node_types(message, context):
    engine = context.engine
    return _result(
        CODE_NODE_TYPES,
        {
            "nodeTypes": [descriptor.describe() for descriptor in engine.node_types],
            "categories": {
                category: [descriptor.type_id for descriptor in descriptors]
                for category, descriptors in engine.node_types_by_category.items()
            },
        },
    )


def handle_create_node(message, context):
    type_id = message.content.get("typeId")
    if not type_id:
        return _result(CODE_NODE_CREATE_ERROR, {"error": "typeId is required"})
    try:
        x = float(message.content.get("x", 0))
        y = float(message.content.get("y", 0))
    except (TypeError, ValueError):
        return _result(CODE_NODE_CREATE_ERROR, {"error": "x and y must be numbers"})
    node = context.engine.create_node(str(type_id), x, y)
    if node is None:
        return _result(CODE_NODE_CREATE_ERROR, {"error": f"Unknown node type: {type_id}"})
    return _result(CODE_NODE_CREATED, {"node": _node_to_dict(node)})


def _apply_run_options(engine: FlowEngine, content: Dict[str, Any]) -> None:
    """Reconfigure an idle engine from the run request's options."""
    policy = content.get("policy", engine.error_policy)
    if policy not in ERROR_POLICIES:
        raise ProtocolError(f"Unknown error policy: {policy}", CODE_RUN_ERROR)
    timeout = content.get("timeoutSeconds")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ProtocolError("timeoutSeconds must be a number", CODE_RUN_ERROR) from None
        if timeout <= 0:
            raise ProtocolError("timeoutSeconds must be positive", CODE_RUN_ERROR)
    concurrent = content.get("concurrent", False)
    if not isinstance(concurrent, bool):
        raise ProtocolError("concurrent must be a boolean", CODE_RUN_ERROR)
    max_concurrency = content.get("maxConcurrency")
    if max_concurrency is not None and (
        isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int) or max_concurrency < 1
    ):
        raise ProtocolError("maxConcurrency must be a positive integer", CODE_RUN_ERROR)
    engine.error_policy = policy
    engine.concurrent = concurrent
    engine.max_concurrency = max_concurrency
    engine.node_timeout = timeout


def handle_run_flow(message, context):
    if context.cancel_token is not None or context.engine.is_running:
        return _result(CODE_RUN_IN_PROGRESS, {"error": "A flow run is already in progress."})
    try:
        flow = parse_flow_payload(message.content)
    except PayloadError as exc:
        return _result(CODE_RUN_ERROR, {"error": str(exc)})
    _apply_run_options(context.engine, message.content)

    run_id = str(uuid4())
    context.cancel_token = CancellationToken()
    _log(
        logging.INFO,
        context,
        "Run %s requested: nodes=%d connections=%d",
        run_id,
        len(flow.nodes),
        len(flow.connections),
    )
    return _result(
        CODE_RUN_STARTED,
        {"runId": run_id, "status": "flow-run-started"},
        _run_and_report(message=message, context=context, run_id=run_id, flow=flow),
    )


async def _run_and_report(*, message, context: RequestContext, run_id: str, flow: Flow) -> None:
    status_callback = context.status_callback
    request_id = message.message_id
    started_at = perf_counter()
    position = {"value": 0}

    def observer(node: Node, result: ExecutionResult) -> None:
        if not status_callback:
            return
        position["value"] += 1
        payload = {"runId": run_id, "nodeType": node.type, "order": position["value"], **describe_result(result)}
        try:
            status_callback(CODE_NODE_STATUS, payload, request_id)
        except Exception:
            LOGGER.exception("Failed to emit status update for run %s", run_id)

    token = context.cancel_token
    try:
        report = await context.engine.run(flow, cancel_token=token, observer=observer)
    except RunInProgressError as exc:
        _log(logging.WARNING, context, "Run %s rejected: %s", run_id, exc)
        if status_callback:
            status_callback(CODE_RUN_FINISHED_ERROR, {"runId": run_id, "status": "error", "error": str(exc)}, request_id)
        return
    finally:
        if context.cancel_token is token:
            context.cancel_token = None

    summary = summarize_report(report)
    duration_ms = round((perf_counter() - started_at) * 1000, 3)
    _log(logging.INFO, context, "Run %s finished with status %s", run_id, summary["status"])
    if status_callback:
        status_callback(
            CODE_RUN_FINISHED_OK if report.succeeded else CODE_RUN_FINISHED_ERROR,
            {"runId": run_id, "durationMs": duration_ms, **summary},
            request_id,
        )


def handle_stop_run(message, context):
    token = context.cancel_token
    if token is None:
        return _result(CODE_STOP_RUN_ERROR, {"error": "No flow run is in progress."})
    token.cancel()
    _log(logging.WARNING, context, "Run stopped by client")
    return _result(CODE_RUN_STOPPED, {"status": "stopping"})


def handle_clear_results(message, context):
    if context.cancel_token is not None or context.engine.is_running:
        return _result(CODE_CLEAR_RESULTS_ERROR, {"error": "Cannot clear results while a run is in progress."})
    context.engine.clear_results()
    return _result(CODE_RESULTS_CLEARED, {"status": "cleared"})


Handler = Callable[[Any, RequestContext], HandlerResult]

MESSAGE_HANDLERS: Dict[int, Handler] = {
    REQUEST_NODE_TYPES: handle_node_types,
    REQUEST_CREATE_NODE: handle_create_node,
    REQUEST_RUN_FLOW: handle_run_flow,
    REQUEST_STOP_RUN: handle_stop_run,
    REQUEST_CLEAR_RESULTS: handle_clear_results,
}


def route_message(message, context) -> HandlerResult:
    if message.type_code not in REQUEST_TYPES:
        raise ProtocolError(
            f"Unsupported message type: {message.type_code}",
            error_code=CODE_UNKNOWN_TYPE,
        )
    handler = MESSAGE_HANDLERS[message.type_code]
    return handler(message, context)
