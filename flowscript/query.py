"""Query engine: five read-only traversals over one IR.

    why(node)            what caused this?          backward causal walk
    what_if(node)        what does this affect?     forward causal / temporal walk
    tensions()           which tradeoffs exist?     tension edges grouped by axis
    blocked()            what is stuck, how badly?  blocked states scored by impact
    alternatives(q)      how was q decided?         alternatives of a question

Causal direction is normalised on load: `A -> B` and `B <- A` both mean
A caused B. Every traversal keeps a visited set, so cyclic graphs are safe.
"""

from __future__ import annotations

import inspect
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .errors import InvalidIR, InvalidNodeType, NotFound, QueryError
from .ir import IR, Node, NodeType, Relationship, RelationType, State, StateType, canon

logger = logging.getLogger(__name__)

UNLABELED = "unlabeled"

_Index = dict[str, dict[RelationType, list[Relationship]]]


def _ref(node: Node) -> dict[str, str]:
    return {"id": node.id, "content": node.content}


def parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def priority_for(score: int) -> str:
    if score > 10:
        return "high"
    if score >= 5:
        return "medium"
    return "low"


class QueryEngine:
    def __init__(
        self,
        ir: IR,
        nodes: dict[str, Node],
        states: dict[str, list[State]],
        parents: dict[str, list[str]],
        outgoing: _Index,
        incoming: _Index,
    ):
        self.ir = ir
        self.nodes = nodes
        self.states = states
        self.parents = parents
        self.outgoing = outgoing
        self.incoming = incoming

    @classmethod
    def load(cls, ir: IR) -> "QueryEngine":
        """Build every index in one pass over nodes, edges and states."""
        nodes = {n.id: n for n in ir.nodes}

        parents: dict[str, list[str]] = {}
        for n in ir.nodes:
            for child in n.children:
                if child not in nodes:
                    raise InvalidIR(f"node {n.id} has unknown child {child}")
                parents.setdefault(child, []).append(n.id)

        outgoing: _Index = {}
        incoming: _Index = {}
        for r in ir.relationships:
            for end in (r.source, r.target):
                if end not in nodes:
                    raise InvalidIR(f"relationship {r.id} references unknown node {end}")
            outgoing.setdefault(r.source, {}).setdefault(r.type, []).append(r)
            incoming.setdefault(r.target, {}).setdefault(r.type, []).append(r)

        states: dict[str, list[State]] = {}
        for s in ir.states:
            if s.node_id not in nodes:
                raise InvalidIR(f"state {s.id} references unknown node {s.node_id}")
            states.setdefault(s.node_id, []).append(s)

        logger.debug(
            "query engine loaded: %d nodes, %d relationships", len(nodes), len(ir.relationships)
        )
        return cls(ir, nodes, states, parents, outgoing, incoming)

    # ---- index helpers ----

    def _node(self, nid: str) -> Node:
        node = self.nodes.get(nid)
        if node is None:
            raise NotFound(nid)
        return node

    def _out(self, nid: str, rel_type: RelationType) -> list[Relationship]:
        return self.outgoing.get(nid, {}).get(rel_type, [])

    def _in(self, nid: str, rel_type: RelationType) -> list[Relationship]:
        return self.incoming.get(nid, {}).get(rel_type, [])

    def causes_of(self, nid: str) -> list[tuple[str, RelationType]]:
        out = [(r.source, r.type) for r in self._in(nid, RelationType.CAUSES)]
        out += [(r.target, r.type) for r in self._out(nid, RelationType.DERIVES_FROM)]
        return out

    def effects_of(self, nid: str, *, temporal: bool = True) -> list[tuple[str, RelationType]]:
        out = [(r.target, r.type) for r in self._out(nid, RelationType.CAUSES)]
        if temporal:
            out += [(r.target, r.type) for r in self._out(nid, RelationType.TEMPORAL)]
        out += [(r.source, r.type) for r in self._in(nid, RelationType.DERIVES_FROM)]
        return out

    def _walk(
        self,
        start: str,
        step: Callable[[str], Iterable[tuple[str, RelationType]]],
        max_depth: int | None = None,
        discovered_by: dict[str, str] | None = None,
    ) -> list[tuple[str, int, RelationType]]:
        """Breadth-first walk; returns (id, depth, via) for every node reached."""
        if discovered_by is None:
            discovered_by = {}
        seen = {start}
        found: list[tuple[str, int, RelationType]] = []
        frontier = deque([(start, 0)])
        while frontier:
            nid, depth = frontier.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for nxt, via in step(nid):
                if nxt in seen:
                    continue
                seen.add(nxt)
                discovered_by[nxt] = nid
                found.append((nxt, depth + 1, via))
                frontier.append((nxt, depth + 1))
        return found

    def _tensions_touching(self, ids: set[str], *, both: bool) -> list[Relationship]:
        out = []
        for r in self.ir.relationships:
            if r.type is not RelationType.TENSION:
                continue
            hit = (r.source in ids and r.target in ids) if both else (r.source in ids or r.target in ids)
            if hit:
                out.append(r)
        return out

    def _tension_info(self, r: Relationship) -> dict[str, Any]:
        return {
            "axis": r.axis_label or UNLABELED,
            "source": _ref(self.nodes[r.source]),
            "target": _ref(self.nodes[r.target]),
        }

    def _decided_by_content(self) -> dict[str, State]:
        out: dict[str, State] = {}
        for s in self.ir.states:
            if s.type is StateType.DECIDED:
                out.setdefault(canon(self.nodes[s.node_id].content), s)
        return out

    # ---- why ----

    def why(self, node_id: str, *, max_depth: int | None = None, format: str = "chain") -> dict[str, Any]:
        target = self._node(node_id)
        if format not in ("chain", "tree", "minimal"):
            raise QueryError(f"unknown why format: {format}")

        discovered_by: dict[str, str] = {}
        ancestors = self._walk(node_id, self.causes_of, max_depth, discovered_by)
        found = {a for a, _, _ in ancestors} | {node_id}

        # A root has no cause of its own, or sits where max_depth cut the walk.
        # A pure loop has neither, so fall back to the ancestors that led nowhere new.
        chain = sorted(ancestors, key=lambda a: -a[1])
        roots = [
            nid
            for nid, depth, _ in chain
            if not self.causes_of(nid) or (max_depth is not None and depth >= max_depth)
        ]
        if not roots:
            expanded = set(discovered_by.values())
            roots = [nid for nid, _, _ in chain if nid not in expanded] or [node_id]
        if format == "minimal":
            return {
                "root_cause": roots[0],
                "root_causes": roots,
                "chain": [nid for nid, _, _ in chain],
            }

        metadata = {
            "total_ancestors": len(ancestors),
            "max_depth": max((d for _, d, _ in ancestors), default=0),
            "has_multiple_paths": any(
                len(self.causes_of(nid)) > 1 for nid in found
            ),
        }
        root = self.nodes[roots[0]]

        if format == "tree":
            return {
                "target": _ref(target),
                "tree": self._cause_tree(node_id, {node_id}, 0, max_depth),
                "paths": self._cause_paths(node_id, max_depth),
                "root_causes": [_ref(self.nodes[r]) for r in roots],
                "metadata": metadata,
            }

        return {
            "target": _ref(target),
            "causal_chain": [
                {"depth": depth, "id": nid, "content": self.nodes[nid].content, "relationship_type": via.value}
                for nid, depth, via in chain
            ],
            "root_cause": {**_ref(root), "is_root": True},
            "root_causes": [_ref(self.nodes[r]) for r in roots],
            "metadata": metadata,
        }

    def _cause_tree(self, nid: str, path: set[str], depth: int, max_depth: int | None) -> dict[str, Any]:
        node = self.nodes[nid]
        causes = []
        if max_depth is None or depth < max_depth:
            for parent, via in self.causes_of(nid):
                if parent in path:
                    continue
                sub = self._cause_tree(parent, path | {parent}, depth + 1, max_depth)
                sub["relationship_type"] = via.value
                causes.append(sub)
        return {**_ref(node), "causes": causes}

    def _cause_paths(self, nid: str, max_depth: int | None) -> list[list[str]]:
        """Every simple causal path ending at `nid`, root first."""
        paths: list[list[str]] = []
        stack: list[list[str]] = [[nid]]
        while stack:
            path = stack.pop()
            head = path[0]
            parents = [p for p, _ in self.causes_of(head) if p not in path]
            if not parents or (max_depth is not None and len(path) - 1 >= max_depth):
                if len(path) > 1:
                    paths.append(path)
                continue
            for p in parents:
                stack.append([p, *path])
        paths.sort()
        return paths

    # ---- what if ----

    def what_if(self, node_id: str, *, max_depth: int | None = None, format: str = "tree") -> dict[str, Any]:
        source = self._node(node_id)
        if format not in ("tree", "list", "summary"):
            raise QueryError(f"unknown what_if format: {format}")

        descendants = self._walk(node_id, self.effects_of, max_depth)
        zone = {d for d, _, _ in descendants} | {node_id}
        tensions = self._tensions_touching(zone, both=True)
        tension_axis: dict[str, str] = {}
        for r in self._tensions_touching(zone, both=False):
            for end in (r.source, r.target):
                tension_axis.setdefault(end, r.axis_label or UNLABELED)

        if format == "summary":
            benefits: list[str] = []
            risks: list[str] = []
            for nid, depth, _ in descendants:
                if depth != 1:
                    continue
                (risks if nid in tension_axis else benefits).append(self.nodes[nid].content)
            n = len(descendants)
            key = None
            if tensions:
                t = self._tension_info(tensions[0])
                key = f"{t['axis']} ({t['source']['content']} vs {t['target']['content']})"
            return {
                "impact_summary": f"{source.content} affects {n} downstream consideration{'' if n == 1 else 's'}",
                "benefits": benefits,
                "risks": risks,
                "key_tradeoff": key,
            }

        def consequence(nid: str, depth: int, via: RelationType) -> dict[str, Any]:
            item = {**_ref(self.nodes[nid]), "relationship": via.value, "depth": depth}
            item["has_tension"] = nid in tension_axis
            if nid in tension_axis:
                item["tension_axis"] = tension_axis[nid]
            return item

        out: dict[str, Any] = {"source": _ref(source)}
        if format == "list":
            out["consequences"] = [consequence(*d) for d in sorted(descendants, key=lambda d: d[1])]
        else:
            out["impact_tree"] = {
                "direct_consequences": [consequence(*d) for d in descendants if d[1] == 1],
                "indirect_consequences": [consequence(*d) for d in descendants if d[1] > 1],
            }
        out["tensions_in_impact_zone"] = [self._tension_info(r) for r in tensions]
        out["metadata"] = {
            "total_descendants": len(descendants),
            "max_depth": max((d for _, d, _ in descendants), default=0),
            "tension_count": len(tensions),
            "has_temporal_consequences": any(v is RelationType.TEMPORAL for _, _, v in descendants),
        }
        return out

    # ---- tensions ----

    def tensions(
        self,
        *,
        group_by: str = "axis",
        filter_by_axis: str | Iterable[str] | None = None,
        include_context: bool = False,
        scope: str | None = None,
    ) -> dict[str, Any]:
        if group_by not in ("axis", "node", "none"):
            raise QueryError(f"unknown tensions grouping: {group_by}")

        rels = [r for r in self.ir.relationships if r.type is RelationType.TENSION]
        if scope is not None:
            self._node(scope)

            def step(nid: str) -> list[tuple[str, RelationType]]:
                nxt = self.effects_of(nid)
                nxt += [(r.target, r.type) for r in self._out(nid, RelationType.DERIVES_FROM)]
                nxt += [(c, RelationType.CAUSES) for c in self.nodes[nid].children]
                return nxt

            in_scope = {d for d, _, _ in self._walk(scope, step)} | {scope}
            rels = [r for r in rels if r.source in in_scope or r.target in in_scope]

        if filter_by_axis:
            wanted = {canon(filter_by_axis)} if isinstance(filter_by_axis, str) else {canon(a) for a in filter_by_axis}
            rels = [r for r in rels if (r.axis_label or UNLABELED) in wanted]

        details: list[dict[str, Any]] = []
        for r in rels:
            d = self._tension_info(r)
            if include_context:
                ctx = [p for p, _ in self.causes_of(r.source)] + self.parents.get(r.source, [])
                if ctx:
                    d["context"] = [_ref(self.nodes[c]) for c in dict.fromkeys(ctx)]
            details.append(d)

        counts = Counter(d["axis"] for d in details)
        most_common = None
        for axis in counts:
            if most_common is None or counts[axis] > counts[most_common]:
                most_common = axis
        metadata = {
            "total_tensions": len(details),
            "unique_axes": list(counts),
            "most_common_axis": most_common,
        }

        if group_by == "none":
            return {"tensions": details, "metadata": metadata}
        key = "axis" if group_by == "axis" else "source"
        grouped: dict[str, list[dict[str, Any]]] = {}
        for d in details:
            k = d["axis"] if key == "axis" else d["source"]["id"]
            grouped.setdefault(k, []).append({k2: v for k2, v in d.items() if k2 != "axis"})
        name = "tensions_by_axis" if group_by == "axis" else "tensions_by_node"
        return {name: grouped, "metadata": metadata}

    # ---- blocked ----

    def blocked(
        self,
        *,
        since: str | None = None,
        format: str = "detailed",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if format not in ("detailed", "summary", "list"):
            raise QueryError(f"unknown blocked format: {format}")
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        cutoff = None
        if since:
            cutoff = parse_date(since)
            if cutoff is None:
                raise QueryError(f"invalid since date: {since}")

        blockers: list[dict[str, Any]] = []
        for s in self.ir.states:
            if s.type is not StateType.BLOCKED:
                continue
            raw_since = s.field("since") or ""
            started = parse_date(raw_since)
            if cutoff is not None and (started is None or started < cutoff):
                continue
            if started is None:
                if raw_since:
                    logger.warning("unparseable since date %r on state %s", raw_since, s.id)
                days = 0
            else:
                days = max((now - started).days, 0)

            node = self.nodes[s.node_id]
            causes = self._walk(node.id, self.causes_of)
            effects = self._walk(node.id, self.effects_of)
            score = days + len(causes) + 2 * len(effects)
            blockers.append(
                {
                    "node": _ref(node),
                    "blocked_state": {
                        "reason": s.field("reason") or "unknown",
                        "since": raw_since,
                        "days_blocked": days,
                    },
                    "transitive_causes": [_ref(self.nodes[c]) for c, _, _ in causes],
                    "transitive_effects": [_ref(self.nodes[e]) for e, _, _ in effects],
                    "impact_score": score,
                    "priority": priority_for(score),
                }
            )

        blockers.sort(key=lambda b: (-b["impact_score"], -b["blocked_state"]["days_blocked"]))

        total = len(blockers)
        oldest = max(blockers, key=lambda b: b["blocked_state"]["days_blocked"], default=None)
        metadata = {
            "total_blockers": total,
            "high_priority_count": sum(1 for b in blockers if b["priority"] == "high"),
            "average_days_blocked": round(
                sum(b["blocked_state"]["days_blocked"] for b in blockers) / total, 1
            ) if total else 0,
            "oldest_blocker": {
                "id": oldest["node"]["id"],
                "days": oldest["blocked_state"]["days_blocked"],
            } if oldest else None,
        }

        if format == "list":
            return {"blockers": [b["node"]["content"] for b in blockers], "metadata": metadata}
        if format == "summary":
            return {
                "blockers": [
                    {
                        **b["node"],
                        "days_blocked": b["blocked_state"]["days_blocked"],
                        "impact_score": b["impact_score"],
                        "priority": b["priority"],
                    }
                    for b in blockers
                ],
                "metadata": metadata,
            }
        return {"blockers": blockers, "metadata": metadata}

    # ---- alternatives ----

    def alternatives(
        self,
        question_id: str,
        *,
        format: str = "comparison",
        show_rejected_reasons: bool = False,
    ) -> dict[str, Any]:
        question = self._node(question_id)
        if question.type is not NodeType.QUESTION:
            raise InvalidNodeType(question_id, NodeType.QUESTION.value, question.type.value)
        if format not in ("comparison", "simple", "tree"):
            raise QueryError(f"unknown alternatives format: {format}")

        alt_ids = [r.target for r in self._out(question_id, RelationType.ALTERNATIVE)]
        alt_ids += [
            c for c in question.children
            if self.nodes[c].type is NodeType.ALTERNATIVE and c not in alt_ids
        ]
        decided = self._decided_by_content()

        if format == "tree":
            return {
                "format": "tree",
                "question": _ref(question),
                "alternatives": [
                    self._alternative_tree(a, {a}, decided, show_rejected_reasons) for a in alt_ids
                ],
            }

        details: list[dict[str, Any]] = []
        chosen: dict[str, Any] | None = None
        for aid in alt_ids:
            alt = self.nodes[aid]
            state = decided.get(canon(alt.content))
            detail: dict[str, Any] = {**_ref(alt), "chosen": state is not None}
            if state is not None:
                detail["rationale"] = state.field("rationale")
                detail["decided_on"] = state.field("on")
            elif show_rejected_reasons:
                reasons = self._rejection_reasons(aid)
                if reasons:
                    detail["rejection_reasons"] = reasons
            detail["consequences"] = [_ref(self.nodes[e]) for e, _ in self.effects_of(aid)]
            zone = {e for e, _, _ in self._walk(aid, self.effects_of)} | {aid}
            detail["tensions"] = [self._tension_info(r) for r in self._tensions_touching(zone, both=False)]
            details.append(detail)
            if state is not None and chosen is None:
                chosen = detail

        if format == "simple":
            return {
                "format": "simple",
                "question": question.content,
                "options_considered": [d["content"] for d in details],
                "chosen": chosen["content"] if chosen else None,
                "reason": chosen.get("rationale") if chosen else None,
            }

        key_factors = list(dict.fromkeys(t["axis"] for t in chosen["tensions"])) if chosen else []
        return {
            "format": "comparison",
            "question": _ref(question),
            "alternatives": details,
            "decision_summary": {
                "chosen": chosen["content"] if chosen else None,
                "rationale": chosen.get("rationale") if chosen else None,
                "rejected": [d["content"] for d in details if not d["chosen"]],
                "key_factors": key_factors,
            },
        }

    def _rejection_reasons(self, alt_id: str) -> list[str]:
        """Thought nodes nested under, or caused by, a rejected alternative."""
        candidates = list(self.nodes[alt_id].children)
        candidates += [e for e, _ in self.effects_of(alt_id, temporal=False)]
        return [
            self.nodes[c].content
            for c in dict.fromkeys(candidates)
            if self.nodes[c].type is NodeType.THOUGHT
        ]

    def _alternative_tree(
        self,
        nid: str,
        path: set[str],
        decided: dict[str, State],
        show_rejected_reasons: bool,
    ) -> dict[str, Any]:
        node = self.nodes[nid]
        chosen = canon(node.content) in decided
        item: dict[str, Any] = {**_ref(node), "chosen": chosen}
        if show_rejected_reasons and not chosen:
            reasons = self._rejection_reasons(nid)
            if reasons:
                item["rejection_reasons"] = reasons

        children = []
        for child, _ in self.effects_of(nid):
            if child in path:
                c = self.nodes[child]
                children.append({**_ref(c), "content": c.content + " [cycle detected]", "chosen": False, "children": []})
                continue
            children.append(self._alternative_tree(child, path | {child}, decided, show_rejected_reasons))
        item["children"] = children
        return item


# ---- collaborator boundary ----

OPERATIONS = ("why", "what_if", "tensions", "blocked", "alternatives")

_ALIASES = {"whatif": "what_if", "what-if": "what_if", "whatIf": "what_if"}


def run_query(ir: IR | QueryEngine, operation: str, **args: Any) -> dict[str, Any]:
    """Dispatch one named query; raises QueryError subclasses on failure."""
    op = _ALIASES.get(operation, operation)
    if op not in OPERATIONS:
        raise QueryError(f"unknown query operation: {operation}")
    engine = ir if isinstance(ir, QueryEngine) else QueryEngine.load(ir)
    fn = getattr(engine, op)
    try:
        inspect.signature(fn).bind(**args)
    except TypeError as e:
        raise QueryError(f"bad arguments for {op}: {e}") from e
    return fn(**args)
