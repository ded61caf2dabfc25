"""Flow execution engine: order the graph, then drive each node's capability."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Set

import networkx as nx

from .. import config
from .errors import (
    CycleDetectedError,
    DuplicateNodeError,
    FlowError,
    NodeTimeoutError,
    RunCancelledError,
    RunInProgressError,
    UnknownNodeTypeError,
)
from .model import (
    DISPLAY_PORT,
    STATUS_ERROR,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    Connection,
    DisplayPayload,
    ExecutionResult,
    Flow,
    Node,
    PortValues,
    RunReport,
)
from .nodes import REGISTRY
from .registry import NodeCapability, NodeTypeDescriptor, NodeTypeRegistry
from .sorter import build_dependency_graph, order_graph

LOGGER = logging.getLogger("flowforge")

ErrorPolicy = Literal["halt-on-any-error", "skip-dependents-only"]
HALT_ON_ANY_ERROR: ErrorPolicy = "halt-on-any-error"
SKIP_DEPENDENTS: ErrorPolicy = "skip-dependents-only"
ERROR_POLICIES = (HALT_ON_ANY_ERROR, SKIP_DEPENDENTS)

ObserverFn = Callable[[Node, ExecutionResult], None]


class CancellationToken:
    """Cooperative cancellation handle passed to :meth:`FlowEngine.run_flow`."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def gather_inputs(incoming: Iterable[Connection], outputs: Mapping[str, PortValues]) -> PortValues:
    """Collect a node's inputs from the outputs of already completed sources.

    A source without a successful result, or without the requested port,
    leaves the target port absent; no default is substituted.
    """
    inputs: PortValues = {}
    for conn in incoming:
        produced = outputs.get(conn.source_node_id)
        if produced is None or conn.source_port not in produced:
            continue
        inputs[conn.target_port] = produced[conn.source_port]
    return inputs


@dataclass
class _RunState:
    order: List[str]
    results: Dict[str, ExecutionResult] = field(default_factory=dict)
    outputs: Dict[str, PortValues] = field(default_factory=dict)
    displays: List[DisplayPayload] = field(default_factory=list)
    blocked: Set[str] = field(default_factory=set)
    cancelled: bool = False

    def report(self) -> RunReport:
        # Concurrent waves may finish out of order; entries follow the sort order.
        position = {nid: i for i, nid in enumerate(self.order)}
        results = {nid: self.results[nid] for nid in self.order if nid in self.results}
        displays = sorted(self.displays, key=lambda d: position[d.node_id])
        return RunReport.build(results, displays, cancelled=self.cancelled)


class FlowEngine:
    """Runs flows against a node type registry.

    Execution is sequential in topological order unless ``concurrent`` is set,
    in which case nodes at the same dependency depth run together. Under the
    default ``halt-on-any-error`` policy the first failing node ends the run;
    ``skip-dependents-only`` only withholds nodes downstream of a failure.
    """

    def __init__(
        self,
        registry: Optional[NodeTypeRegistry] = None,
        *,
        error_policy: ErrorPolicy = HALT_ON_ANY_ERROR,
        concurrent: bool = False,
        max_concurrency: Optional[int] = None,
        node_timeout: Optional[float] = None,
    ) -> None:
        if error_policy not in ERROR_POLICIES:
            raise ValueError(f"Unknown error policy: {error_policy}")
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if node_timeout is not None and node_timeout <= 0:
            raise ValueError("node_timeout must be positive")
        self.registry = registry if registry is not None else REGISTRY
        self.error_policy = error_policy
        self.concurrent = concurrent
        self.max_concurrency = max_concurrency
        self.node_timeout = node_timeout
        self._running = False
        self._report = RunReport()

    @classmethod
    def from_settings(cls, registry: Optional[NodeTypeRegistry] = None, **overrides: Any) -> "FlowEngine":
        """Build an engine from :func:`default_engine_settings`, ignoring ``None`` overrides."""
        settings = config.default_engine_settings()
        settings.update({key: value for key, value in overrides.items() if value is not None})
        return cls(registry, **settings)

    # ------------------------------------------------------------------
    # Registry passthroughs used by editors and palettes
    # ------------------------------------------------------------------
    @property
    def node_types(self) -> List[NodeTypeDescriptor]:
        return self.registry.types()

    @property
    def node_types_by_category(self) -> Dict[str, List[NodeTypeDescriptor]]:
        return self.registry.by_category()

    def get_node_type(self, type_id: str) -> Optional[NodeTypeDescriptor]:
        return self.registry.lookup(type_id)

    def create_node(self, type_id: str, x: float, y: float) -> Optional[Node]:
        return self.registry.create_node(type_id, x, y)

    # ------------------------------------------------------------------
    # Run state
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> RunReport:
        return self._report

    @property
    def results(self) -> Mapping[str, ExecutionResult]:
        return self._report.results

    @property
    def displays(self) -> Sequence[DisplayPayload]:
        return self._report.displays

    def clear_results(self) -> None:
        self._report = RunReport()

    async def run(self, flow: Flow, **kwargs: Any) -> RunReport:
        return await self.run_flow(flow.nodes, flow.connections, **kwargs)

    async def run_flow(
        self,
        nodes: Sequence[Node],
        connections: Sequence[Connection],
        *,
        cancel_token: Optional[CancellationToken] = None,
        observer: Optional[ObserverFn] = None,
    ) -> RunReport:
        """Execute one run and return its report.

        Raises :class:`RunInProgressError` if this engine is already running.
        """
        if self._running:
            raise RunInProgressError("A run is already in progress on this engine")
        self._running = True
        self._report = RunReport()
        try:
            report = await self._run(list(nodes), list(connections), cancel_token, observer)
        finally:
            self._running = False
        self._report = report
        return report

    async def _run(
        self,
        nodes: List[Node],
        connections: List[Connection],
        cancel_token: Optional[CancellationToken],
        observer: Optional[ObserverFn],
    ) -> RunReport:
        started = perf_counter()
        LOGGER.info(
            "Run started: nodes=%d connections=%d policy=%s mode=%s",
            len(nodes),
            len(connections),
            self.error_policy,
            "concurrent" if self.concurrent else "sequential",
        )
        try:
            G = build_dependency_graph(nodes, connections)
            order = order_graph(G)
        except (CycleDetectedError, DuplicateNodeError) as exc:
            LOGGER.warning("Run aborted before execution: %s", exc)
            return RunReport.build({}, [], error=str(exc))

        incoming: Dict[str, List[Connection]] = defaultdict(list)
        for conn in connections:
            incoming[conn.target_node_id].append(conn)

        state = _RunState(order=order)
        if self.concurrent:
            await self._run_waves(G, state, incoming, cancel_token, observer)
        else:
            await self._run_sequential(G, state, incoming, cancel_token, observer)

        report = state.report()
        LOGGER.info(
            "Run finished: results=%d errors=%d displays=%d cancelled=%s duration=%.3fms",
            len(report.results),
            len(report.failed),
            len(report.displays),
            report.cancelled,
            (perf_counter() - started) * 1000,
        )
        return report

    async def _run_sequential(
        self,
        G: nx.DiGraph,
        state: _RunState,
        incoming: Mapping[str, List[Connection]],
        cancel_token: Optional[CancellationToken],
        observer: Optional[ObserverFn],
    ) -> None:
        for nid in state.order:
            if nid in state.blocked:
                continue
            if cancel_token is not None and cancel_token.cancelled:
                state.cancelled = True
                return
            node = G.nodes[nid]["node"]
            result = await self._execute_node(node, incoming.get(nid, []), state.outputs, cancel_token, observer)
            self._record(state, node, result, observer)
            if result.status == STATUS_ERROR and self._halt_after_failure(G, state, [nid], cancel_token):
                return

    async def _run_waves(
        self,
        G: nx.DiGraph,
        state: _RunState,
        incoming: Mapping[str, List[Connection]],
        cancel_token: Optional[CancellationToken],
        observer: Optional[ObserverFn],
    ) -> None:
        depth: Dict[str, int] = {}
        for nid in state.order:
            depth[nid] = max((depth[p] + 1 for p in G.predecessors(nid)), default=0)
        waves: Dict[int, List[str]] = defaultdict(list)
        for nid in state.order:
            waves[depth[nid]].append(nid)

        limiter = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        for level in sorted(waves):
            if cancel_token is not None and cancel_token.cancelled:
                state.cancelled = True
                return
            wave = [G.nodes[nid]["node"] for nid in waves[level] if nid not in state.blocked]
            if not wave:
                continue
            # Set by the first failure; nodes still queued on the limiter never start.
            halted = asyncio.Event()

            async def _bounded(node: Node) -> Optional[ExecutionResult]:
                if limiter is None:
                    return await self._execute_in_wave(node, incoming, state, cancel_token, observer, halted)
                async with limiter:
                    return await self._execute_in_wave(node, incoming, state, cancel_token, observer, halted)

            results = await asyncio.gather(*(_bounded(node) for node in wave))
            failed: List[str] = []
            for node, result in zip(wave, results):
                if result is None:
                    continue
                self._record(state, node, result, observer)
                if result.status == STATUS_ERROR:
                    failed.append(node.id)
            if failed and self._halt_after_failure(G, state, failed, cancel_token):
                return
            if cancel_token is not None and cancel_token.cancelled:
                state.cancelled = True
                return

    async def _execute_in_wave(
        self,
        node: Node,
        incoming: Mapping[str, List[Connection]],
        state: _RunState,
        cancel_token: Optional[CancellationToken],
        observer: Optional[ObserverFn],
        halted: asyncio.Event,
    ) -> Optional[ExecutionResult]:
        if halted.is_set() or (cancel_token is not None and cancel_token.cancelled):
            return None
        result = await self._execute_node(node, incoming.get(node.id, []), state.outputs, cancel_token, observer)
        if result.status == STATUS_ERROR and self.error_policy == HALT_ON_ANY_ERROR:
            halted.set()
        return result

    def _halt_after_failure(
        self,
        G: nx.DiGraph,
        state: _RunState,
        failed: Sequence[str],
        cancel_token: Optional[CancellationToken],
    ) -> bool:
        if cancel_token is not None and cancel_token.cancelled:
            state.cancelled = True
            return True
        if self.error_policy == HALT_ON_ANY_ERROR:
            LOGGER.debug("Execution halted on error at %s", list(failed))
            return True
        for nid in failed:
            state.blocked |= nx.descendants(G, nid)
        return False

    def _record(self, state: _RunState, node: Node, result: ExecutionResult, observer: Optional[ObserverFn]) -> None:
        state.results[node.id] = result
        if result.status == STATUS_SUCCESS:
            outputs = result.outputs or {}
            state.outputs[node.id] = outputs
            if DISPLAY_PORT in outputs:
                state.displays.append(DisplayPayload(node.id, outputs[DISPLAY_PORT]))
        self._notify(observer, node, result)

    @staticmethod
    def _notify(observer: Optional[ObserverFn], node: Node, result: ExecutionResult) -> None:
        if observer is None:
            return
        try:
            observer(node, result)
        except Exception:
            LOGGER.exception("Observer failed for node %s", node.id)

    async def _execute_node(
        self,
        node: Node,
        incoming: Sequence[Connection],
        outputs: Mapping[str, PortValues],
        cancel_token: Optional[CancellationToken],
        observer: Optional[ObserverFn],
    ) -> ExecutionResult:
        descriptor = self.registry.lookup(node.type)
        if descriptor is None:
            error = UnknownNodeTypeError(node.type)
            LOGGER.warning("Node %s failed: %s", node.id, error)
            return ExecutionResult(node.id, STATUS_ERROR, error=str(error))

        inputs = gather_inputs(incoming, outputs)
        self._notify(observer, node, ExecutionResult(node.id, STATUS_RUNNING))
        LOGGER.debug("Node %s (%s) inputs=%r fields=%r", node.id, node.type, inputs, node.fields)

        start = perf_counter()
        try:
            produced = await self._invoke(descriptor.capability, inputs, dict(node.fields), cancel_token)
            if produced is None:
                produced = {}
            if not isinstance(produced, Mapping):
                raise FlowError(
                    f"Node type '{node.type}' returned {type(produced).__name__}; expected a mapping of output ports"
                )
        except Exception as exc:
            duration = perf_counter() - start
            message = str(exc) or exc.__class__.__name__
            LOGGER.warning("Node %s (%s) failed after %.3fms: %s", node.id, node.type, duration * 1000, message)
            return ExecutionResult(node.id, STATUS_ERROR, error=message, duration=duration)

        duration = perf_counter() - start
        LOGGER.debug(
            "Node %s (%s) outputs=%r duration=%.3fms", node.id, node.type, produced, duration * 1000
        )
        return ExecutionResult(node.id, STATUS_SUCCESS, outputs=dict(produced), duration=duration)

    async def _invoke(
        self,
        capability: NodeCapability,
        inputs: PortValues,
        fields: Dict[str, str],
        cancel_token: Optional[CancellationToken],
    ) -> Any:
        task = asyncio.ensure_future(_call_capability(capability, inputs, fields))
        if cancel_token is None and self.node_timeout is None:
            return await task

        waiters: Set[asyncio.Future] = {task}
        cancel_wait: Optional[asyncio.Future] = None
        if cancel_token is not None:
            cancel_wait = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_wait)
        try:
            done, _ = await asyncio.wait(waiters, timeout=self.node_timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()
        if cancel_wait is not None and cancel_wait in done:
            raise RunCancelledError()
        raise NodeTimeoutError(self.node_timeout or 0.0)


async def _call_capability(capability: NodeCapability, inputs: PortValues, fields: Dict[str, str]) -> Any:
    # Plain capabilities run in a worker thread so timeouts and cancellation
    # still apply while they block.
    if capability.is_async:
        return await capability.execute(inputs, fields)
    produced = await asyncio.to_thread(capability.execute, inputs, fields)
    if inspect.isawaitable(produced):
        produced = await produced
    return produced
