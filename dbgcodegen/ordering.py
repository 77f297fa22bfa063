"""
dbgcodegen/ordering.py
======================

Emission order for the declarations of one module.

The declarations form a directed graph whose edges are either *by value*
(a base class, an embedded field, an array element, an enum used as a
field type) or *by reference* (a pointer target, a function signature,
a template argument).  Reference edges may form cycles; by-value edges
never do once illegal cycles have been excluded.

Order = Tarjan's strongly connected components over all edges, emitted
dependencies-first, with nodes visited in canonical-key order and edges
in declaration order.  Inside a component a Kahn topological sort over
the by-value edges places every embedded type before its embedder; ties
are broken by key.  Pointer edges inside a component are where the cycle
is broken; writers render them as references.
"""

from __future__ import annotations

import heapq
import logging
from typing import Callable, Dict, Iterable, List, Set, Tuple

from .instances import TypeInstance
from .naming import NAMED_KINDS

logger = logging.getLogger(__name__)

__all__ = ["declaration_edges", "strongly_connected_components", "emission_order"]

Edge = Tuple[TypeInstance, bool]


def declaration_edges(inst: TypeInstance, nodes: Set[TypeInstance]) -> List[Edge]:
    """
    Edges from *inst* to the declarations in *nodes* it depends on.

    Structural instances (pointers, arrays, primitives) are looked through;
    an edge is by value only if every step on the way is by value.  Named
    instances outside *nodes* end the walk.
    """
    found: Dict[TypeInstance, bool] = {}
    order: List[TypeInstance] = []
    seen: Set[Tuple[int, bool]] = set()
    stack: List[Edge] = list(reversed(list(inst.dependencies())))
    while stack:
        target, by_value = stack.pop()
        if (id(target), by_value) in seen:
            continue
        seen.add((id(target), by_value))
        if target.kind in NAMED_KINDS:
            if target in nodes and target is not inst:
                if target not in found:
                    order.append(target)
                    found[target] = by_value
                else:
                    found[target] = found[target] or by_value
            continue
        for dep, dep_by_value in reversed(list(target.dependencies())):
            stack.append((dep, by_value and dep_by_value))
    return [(target, found[target]) for target in order]


def strongly_connected_components(
    nodes: List[TypeInstance],
    edges: Dict[TypeInstance, List[Edge]],
) -> List[List[TypeInstance]]:
    """
    Tarjan's algorithm; components come out dependencies-first.

    Iterative so that long pointer chains do not hit the recursion limit.
    """
    index: Dict[TypeInstance, int] = {}
    lowlink: Dict[TypeInstance, int] = {}
    on_stack: Set[TypeInstance] = set()
    stack: List[TypeInstance] = []
    result: List[List[TypeInstance]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        work: List[Tuple[TypeInstance, int]] = [(root, 0)]
        while work:
            v, edge_pos = work.pop()
            if edge_pos == 0:
                index[v] = lowlink[v] = counter
                counter += 1
                stack.append(v)
                on_stack.add(v)
            out = edges.get(v, [])
            descended = False
            while edge_pos < len(out):
                w = out[edge_pos][0]
                edge_pos += 1
                if w not in index:
                    work.append((v, edge_pos))
                    work.append((w, 0))
                    descended = True
                    break
                if w in on_stack:
                    lowlink[v] = min(lowlink[v], index[w])
            if descended:
                continue
            if lowlink[v] == index[v]:
                component: List[TypeInstance] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    component.append(w)
                    if w is v:
                        break
                result.append(component)
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[v])
    return result


def _order_component(
    component: List[TypeInstance],
    edges: Dict[TypeInstance, List[Edge]],
    sort_key: Callable[[TypeInstance], str],
) -> List[TypeInstance]:
    if len(component) == 1:
        return component
    members = set(component)
    hard: Dict[TypeInstance, Set[TypeInstance]] = {
        v: {w for w, by_value in edges.get(v, []) if by_value and w in members and w is not v}
        for v in component
    }
    dependents: Dict[TypeInstance, List[TypeInstance]] = {v: [] for v in component}
    for v, deps in hard.items():
        for w in deps:
            dependents[w].append(v)
    remaining = {v: len(deps) for v, deps in hard.items()}
    ready = [(sort_key(v), id(v), v) for v, n in remaining.items() if n == 0]
    heapq.heapify(ready)
    ordered: List[TypeInstance] = []
    while ready:
        _, _, v = heapq.heappop(ready)
        ordered.append(v)
        for dependent in dependents[v]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (sort_key(dependent), id(dependent), dependent))
    if len(ordered) < len(component):
        leftover = sorted((v for v in component if v not in set(ordered)), key=sort_key)
        logger.warning("by-value cycle among %s", ", ".join(sort_key(v) for v in leftover))
        ordered.extend(leftover)
    return ordered


def emission_order(
    instances: Iterable[TypeInstance],
    sort_key: Callable[[TypeInstance], str],
) -> List[TypeInstance]:
    """Order *instances* so every declaration follows what it embeds by value."""
    nodes = sorted(instances, key=sort_key)
    node_set = set(nodes)
    edges = {v: declaration_edges(v, node_set) for v in nodes}
    order: List[TypeInstance] = []
    for component in strongly_connected_components(nodes, edges):
        order.extend(_order_component(component, edges, sort_key))
    return order
