from __future__ import annotations

from collections import deque

from .graph import adjacency, causal_edges, find_cycles, longest_paths, orphans
from .ir import (
    IR,
    RECOMMENDED_FIELDS,
    REQUIRED_FIELDS,
    Node,
    NodeType,
    RelationType,
    StateType,
    canon,
)
from .linter import Finding, LintConfig, Rule, Severity


def _label(node: Node | None) -> str:
    if node is None:
        return "?"
    if node.type is NodeType.BLOCK:
        return f"{{block {node.id[:8]}}}"
    return node.content


def _fields_hint(names: list[str]) -> str:
    return ", ".join(f'{n}: "..."' for n in names)


# ---- ERROR rules ----


class UnlabeledTension(Rule):
    code = "E001"
    name = "unlabeled-tension"

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        out: list[Finding] = []
        for r in ir.relationships:
            if r.type is not RelationType.TENSION or (r.axis_label or "").strip():
                continue
            src, dst = _label(ir.node(r.source)), _label(ir.node(r.target))
            out.append(
                self.finding(
                    f'Tension between "{src}" and "{dst}" has no axis label',
                    r.provenance,
                    f"Name the tradeoff: {src} ><[axis] {dst}",
                )
            )
        return out


class MissingRequiredFields(Rule):
    code = "E002"
    name = "missing-required-fields"

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        out: list[Finding] = []
        for s in ir.states:
            missing = [f for f in REQUIRED_FIELDS.get(s.type, ()) if not s.field(f)]
            if not missing:
                continue
            plural = "s" if len(missing) > 1 else ""
            out.append(
                self.finding(
                    f"[{s.type.value}] state missing required field{plural}: {', '.join(missing)}",
                    s.provenance,
                    f"Add required fields: {_fields_hint(missing)}",
                )
            )
        return out


class MultipleStates(Rule):
    code = "E003"
    name = "multiple-states"

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        by_node: dict[str, list[StateType]] = {}
        for s in ir.states:
            by_node.setdefault(s.node_id, []).append(s.type)

        out: list[Finding] = []
        for nid, types in by_node.items():
            if len(types) < 2:
                continue
            node = ir.node(nid)
            out.append(
                self.finding(
                    f'Node "{_label(node)}" has {len(types)} states: '
                    + ", ".join(t.value for t in types),
                    node.provenance if node else None,
                    "Keep a single state per node",
                )
            )
        return out


class OrphanedNode(Rule):
    code = "E004"
    name = "orphaned-node"

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        return [
            self.finding(
                f'Orphaned node detected (no relationships): "{_label(n)}"',
                n.provenance,
                f"Connect with relationship: {_label(n)} -> {{target}} OR {{source}} -> {_label(n)}",
            )
            for n in orphans(ir.nodes, ir.relationships)
        ]


class CausalCycle(Rule):
    code = "E005"
    name = "causal-cycle"

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        out: list[Finding] = []
        for cycle in find_cycles(adjacency(causal_edges(ir.relationships))):
            first = ir.node(cycle[0])
            out.append(
                self.finding(
                    "Causal cycle detected: " + " -> ".join(_label(ir.node(i)) for i in cycle),
                    first.provenance if first else None,
                    "Fix: mark the loop as feedback with ~>, use => for temporal sequence, "
                    "or break the cycle",
                )
            )
        return out


class UnresolvedAlternatives(Rule):
    code = "E006"
    name = "unresolved-alternatives"

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        alternatives: dict[str, list[str]] = {}
        for r in ir.relationships:
            if r.type is RelationType.ALTERNATIVE:
                alternatives.setdefault(r.source, []).append(r.target)

        decided_content: set[str] = set()
        parked: set[str] = set()
        for s in ir.states:
            node = ir.node(s.node_id)
            if s.type is StateType.DECIDED and node is not None:
                decided_content.add(canon(node.content))
            elif s.type is StateType.PARKING:
                parked.add(s.node_id)

        out: list[Finding] = []
        for q in ir.nodes_of(NodeType.QUESTION):
            if q.id not in alternatives or q.id in parked:
                continue
            if self._resolved(ir, q, alternatives, decided_content):
                continue
            out.append(
                self.finding(
                    f'Question has alternatives but no decision: "{q.content}"',
                    q.provenance,
                    'Either: (1) Mark chosen alternative with [decided(rationale: "...", on: "...")] '
                    'OR (2) Park question with [parking(why: "...", until: "...")]',
                )
            )
        return out

    @staticmethod
    def _resolved(
        ir: IR, question: Node, alternatives: dict[str, list[str]], decided: set[str]
    ) -> bool:
        # Content match, not identity: a hybrid decision still resolves.
        seen = {question.id}
        queue = deque([question.id])
        while queue:
            nid = queue.popleft()
            node = ir.node(nid)
            if node is None:
                continue
            for nxt in (*node.children, *alternatives.get(nid, ())):
                if nxt in seen:
                    continue
                seen.add(nxt)
                child = ir.node(nxt)
                if child is not None and canon(child.content) in decided:
                    return True
                queue.append(nxt)
        return False


# ---- WARNING rules ----


class MissingRecommendedFields(Rule):
    code = "W001"
    name = "missing-recommended-fields"
    severity = Severity.WARNING

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        out: list[Finding] = []
        for s in ir.states:
            missing = [f for f in RECOMMENDED_FIELDS.get(s.type, ()) if not s.field(f)]
            if not missing:
                continue
            plural = "s" if len(missing) > 1 else ""
            out.append(
                self.finding(
                    f"[{s.type.value}] missing recommended field{plural}: {', '.join(missing)}",
                    s.provenance,
                    f"Add recommended fields: {_fields_hint(missing)}",
                )
            )
        return out


class DeepNesting(Rule):
    code = "W002"
    name = "deep-nesting"
    severity = Severity.WARNING

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        limit = config.max_nesting_depth
        contained = {c for n in ir.nodes for c in n.children}
        by_id = {n.id: n for n in ir.nodes}

        out: list[Finding] = []
        seen: set[str] = set()
        queue = deque((n.id, 0) for n in ir.nodes if n.id not in contained)
        while queue:
            nid, depth = queue.popleft()
            if nid in seen or nid not in by_id:
                continue
            seen.add(nid)
            node = by_id[nid]
            if depth > limit:
                # Report the subtree once, at the first level past the limit.
                out.append(
                    self.finding(
                        f"Content nested {depth} levels deep (max recommended: {limit})",
                        node.provenance,
                        "Consider: (1) Breaking into multiple blocks OR "
                        "(2) Using flat relationships instead of nesting",
                    )
                )
                continue
            queue.extend((c, depth + 1) for c in node.children)
        return out


class LongCausalChain(Rule):
    code = "W003"
    name = "long-causal-chain"
    severity = Severity.WARNING

    def check(self, ir: IR, config: LintConfig) -> list[Finding]:
        limit = config.max_chain_length
        adj = adjacency(causal_edges(ir.relationships))
        has_parent = {dst for targets in adj.values() for dst in targets}
        paths = longest_paths(adj)

        out: list[Finding] = []
        for root in adj:
            if root in has_parent:
                continue
            steps = len(paths.get(root, [root])) - 1
            if steps <= limit:
                continue
            node = ir.node(root)
            out.append(
                self.finding(
                    f"Long causal chain detected ({steps} steps, max recommended: {limit})",
                    node.provenance if node else None,
                    "Consider: (1) Adding branching to show parallel effects OR "
                    "(2) Breaking into multiple related chains",
                )
            )
        return out


def default_rules() -> list[Rule]:
    return [
        UnlabeledTension(),
        MissingRequiredFields(),
        MultipleStates(),
        OrphanedNode(),
        CausalCycle(),
        UnresolvedAlternatives(),
        MissingRecommendedFields(),
        DeepNesting(),
        LongCausalChain(),
    ]
