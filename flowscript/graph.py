"""Graph algorithms shared by the IR invariants summary and the linter."""

from __future__ import annotations

from typing import Iterable, Sequence

from .ir import (
    REQUIRED_FIELDS,
    Invariants,
    Node,
    NodeType,
    Relationship,
    RelationType,
    State,
)

_ACTIVE = 1
_DONE = 2

# Task-like nodes may stand alone without being orphans.
STANDALONE_TYPES = frozenset({NodeType.ACTION, NodeType.COMPLETION})


def causal_edges(
    relationships: Iterable[Relationship], *, include_feedback: bool = False
) -> list[tuple[str, str, Relationship]]:
    """Causal edges oriented cause -> effect.

    `A -> B` is causes(A, B); `A <- B` is derives_from(A, B), i.e. B -> A.
    """
    out: list[tuple[str, str, Relationship]] = []
    for r in relationships:
        if r.feedback and not include_feedback:
            continue
        if r.type is RelationType.CAUSES:
            out.append((r.source, r.target, r))
        elif r.type is RelationType.DERIVES_FROM:
            out.append((r.target, r.source, r))
    return out


def adjacency(edges: Iterable[tuple[str, str, Relationship]]) -> dict[str, list[str]]:
    adj: dict[str, list[str]] = {}
    for src, dst, _ in edges:
        adj.setdefault(src, []).append(dst)
    return adj


def find_cycles(adj: dict[str, list[str]]) -> list[list[str]]:
    """Iterative DFS with an active stack; one cycle per distinct node set.

    Each returned cycle starts and ends with the same id.
    """
    color: dict[str, int] = {}
    seen: set[frozenset[str]] = set()
    cycles: list[list[str]] = []

    for start in adj:
        if start in color:
            continue
        color[start] = _ACTIVE
        path = [start]
        pos = {start: 0}
        stack = [iter(adj.get(start, ()))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                done = path.pop()
                del pos[done]
                color[done] = _DONE
                continue
            state = color.get(nxt)
            if state is None:
                color[nxt] = _ACTIVE
                pos[nxt] = len(path)
                path.append(nxt)
                stack.append(iter(adj.get(nxt, ())))
            elif state == _ACTIVE:
                cycle = path[pos[nxt]:] + [nxt]
                key = frozenset(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)
    return cycles


def longest_paths(adj: dict[str, list[str]]) -> dict[str, list[str]]:
    """Longest simple causal path starting at every node.

    Back edges (into the active DFS stack) are ignored, so on cyclic graphs
    the result is a lower bound; cycles are reported separately.
    """
    best: dict[str, list[str]] = {}
    color: dict[str, int] = {}

    for start in adj:
        if start in color:
            continue
        color[start] = _ACTIVE
        order = [start]
        stack = [iter(adj.get(start, ()))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                done = order.pop()
                color[done] = _DONE
                tail: list[str] = []
                for child in adj.get(done, ()):
                    cand = best.get(child)
                    if cand is not None and done not in cand and len(cand) > len(tail):
                        tail = cand
                best[done] = [done, *tail]
                continue
            if nxt not in color:
                color[nxt] = _ACTIVE
                order.append(nxt)
                stack.append(iter(adj.get(nxt, ())))
    return best


def connected_ids(nodes: Sequence[Node], relationships: Iterable[Relationship]) -> set[str]:
    """Ids touched by an edge, contained in a children list, or containing children."""
    ids: set[str] = set()
    for r in relationships:
        ids.add(r.source)
        ids.add(r.target)
    for n in nodes:
        if n.children:
            ids.add(n.id)
            ids.update(n.children)
    return ids


def orphans(nodes: Sequence[Node], relationships: Iterable[Relationship]) -> list[Node]:
    connected = connected_ids(nodes, relationships)
    return [n for n in nodes if n.id not in connected and n.type not in STANDALONE_TYPES]


def summarize_invariants(
    nodes: Sequence[Node], relationships: Sequence[Relationship], states: Sequence[State]
) -> Invariants:
    acyclic = not find_cycles(adjacency(causal_edges(relationships)))
    labeled = all(r.axis_label for r in relationships if r.type is RelationType.TENSION)
    fields_ok = all(
        all(s.field(f) for f in REQUIRED_FIELDS.get(s.type, ())) for s in states
    )
    reachable = not orphans(nodes, relationships)
    return Invariants(
        causal_acyclic=acyclic,
        tension_axes_labeled=labeled,
        state_fields_present=fields_ok,
        all_nodes_reachable=reachable,
    )
