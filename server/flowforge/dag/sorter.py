"""Dependency graph construction and deterministic topological ordering."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, List, Sequence

import networkx as nx

from .errors import CycleDetectedError, DuplicateNodeError
from .model import Connection, Node

LOGGER = logging.getLogger("flowforge")


def build_dependency_graph(nodes: Sequence[Node], connections: Sequence[Connection]) -> nx.DiGraph:
    """Build a DiGraph with one edge per distinct (source, target) pair.

    Nodes are inserted in input order and carry their input position as the
    ``index`` attribute. Connections referencing unknown node ids are skipped.
    """
    G = nx.DiGraph()
    for index, node in enumerate(nodes):
        if node.id in G:
            raise DuplicateNodeError(node.id)
        G.add_node(node.id, index=index, node=node)

    for conn in connections:
        src, tgt = conn.source_node_id, conn.target_node_id
        if src not in G or tgt not in G:
            LOGGER.warning(
                "Ignoring connection %s: dangling endpoint %s -> %s", conn.id, src, tgt
            )
            continue
        if G.has_edge(src, tgt):
            G[src][tgt]["connections"].append(conn.id)
        else:
            G.add_edge(src, tgt, connections=[conn.id])
    return G


def _dependents_in_input_order(G: nx.DiGraph, node_id: str) -> List[str]:
    return sorted(G.successors(node_id), key=lambda n: G.nodes[n]["index"])


def order_graph(G: nx.DiGraph) -> List[str]:
    """Kahn's algorithm over a graph built by :func:`build_dependency_graph`.

    Zero in-degree nodes are seeded in input order and dependents are released
    in input order, so ties always resolve the same way. Raises
    :class:`CycleDetectedError` instead of returning a partial order.
    """
    in_degree: Dict[str, int] = {n: G.in_degree(n) for n in G.nodes}
    seeds = sorted((n for n, d in in_degree.items() if d == 0), key=lambda n: G.nodes[n]["index"])
    queue: Deque[str] = deque(seeds)
    order: List[str] = []

    while queue:
        nid = queue.popleft()
        order.append(nid)
        for dependent in _dependents_in_input_order(G, nid):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(order) != G.number_of_nodes():
        resolved = set(order)
        unresolved = [n for n in G.nodes if n not in resolved]
        try:
            cycle = [(edge[0], edge[1]) for edge in nx.find_cycle(G.subgraph(unresolved))]
        except nx.NetworkXNoCycle:
            cycle = []
        LOGGER.error("Cycle detected in flow graph among %s", unresolved)
        raise CycleDetectedError(unresolved, cycle)

    return order


def topological_sort(nodes: Sequence[Node], connections: Sequence[Connection]) -> List[Node]:
    """Return ``nodes`` ordered so every connection's source precedes its target."""
    G = build_dependency_graph(nodes, connections)
    return [G.nodes[nid]["node"] for nid in order_graph(G)]
