"""Graph IR: the immutable, content-addressed output of the parser.

Nodes, relationships and states live in flat id-keyed collections; nesting is
expressed through `Node.children` id lists, never through object references.
"""

from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Iterable, Mapping

IR_VERSION = "1.0.0"
PRODUCER = "flowscript 0.1.0"


class NodeType(str, Enum):
    STATEMENT = "statement"
    QUESTION = "question"
    THOUGHT = "thought"
    DECISION = "decision"
    BLOCKER = "blocker"
    ACTION = "action"
    COMPLETION = "completion"
    ALTERNATIVE = "alternative"
    EXPLORING = "exploring"
    PARKING = "parking"
    BLOCK = "block"


class RelationType(str, Enum):
    CAUSES = "causes"
    TEMPORAL = "temporal"
    DERIVES_FROM = "derives_from"
    BIDIRECTIONAL = "bidirectional"
    TENSION = "tension"
    EQUIVALENT = "equivalent"
    DIFFERENT = "different"
    ALTERNATIVE = "alternative"


class StateType(str, Enum):
    DECIDED = "decided"
    EXPLORING = "exploring"
    BLOCKED = "blocked"
    PARKING = "parking"


class Modifier(str, Enum):
    URGENT = "urgent"
    STRONG_POSITIVE = "strong_positive"
    HIGH_CONFIDENCE = "high_confidence"
    LOW_CONFIDENCE = "low_confidence"


# decided / blocked are forcing functions; parking fields are only recommended.
REQUIRED_FIELDS: dict[StateType, tuple[str, ...]] = {
    StateType.DECIDED: ("rationale", "on"),
    StateType.BLOCKED: ("reason", "since"),
}
RECOMMENDED_FIELDS: dict[StateType, tuple[str, ...]] = {
    StateType.PARKING: ("why", "until"),
}


# ---- identity ----


def canon(s: str) -> str:
    s = unicodedata.normalize("NFC", s or "").strip()
    s = re.sub(r"\s+", " ", s)
    return s


def hash_content(data: Mapping[str, Any]) -> str:
    """SHA-256 over canonical JSON (sorted keys, no insignificant whitespace)."""
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def node_id(node_type: NodeType, content: str, children: Iterable[str] = ()) -> str:
    # Blocks carry no text; their identity is their ordered child list.
    if node_type is NodeType.BLOCK:
        return hash_content({"type": node_type.value, "children": list(children)})
    return hash_content({"type": node_type.value, "content": canon(content)})


def relationship_id(rel_type: RelationType, source: str, target: str, axis_label: str | None) -> str:
    return hash_content(
        {"type": rel_type.value, "source": source, "target": target, "axis": axis_label}
    )


def state_id(state_type: StateType, node: str, fields: Iterable[tuple[str, str]]) -> str:
    return hash_content(
        {"type": state_type.value, "node_id": node, "fields": [list(f) for f in fields]}
    )


# ---- entities ----


@dataclass(frozen=True)
class Author:
    agent: str
    role: str = "human"  # "human" | "ai"


@dataclass(frozen=True)
class Provenance:
    source_file: str
    line_number: int
    timestamp: str  # ISO-8601
    author: Author | None = None
    producer: str = PRODUCER


@dataclass(frozen=True)
class Node:
    id: str
    type: NodeType
    content: str
    provenance: Provenance
    children: tuple[str, ...] = ()
    modifiers: frozenset[Modifier] = frozenset()


@dataclass(frozen=True)
class Relationship:
    id: str
    type: RelationType
    source: str
    target: str
    provenance: Provenance
    axis_label: str | None = None  # tension only
    feedback: bool = False


@dataclass(frozen=True)
class State:
    id: str
    type: StateType
    node_id: str
    provenance: Provenance
    fields: tuple[tuple[str, str], ...] = ()

    def field(self, name: str) -> str | None:
        for k, v in self.fields:
            if k == name:
                return v
        return None

    @property
    def field_map(self) -> dict[str, str]:
        return dict(self.fields)


@dataclass(frozen=True)
class Metadata:
    source_files: tuple[str, ...]
    parsed_at: str
    producer: str = PRODUCER


@dataclass(frozen=True)
class Invariants:
    causal_acyclic: bool = True
    tension_axes_labeled: bool = True
    state_fields_present: bool = True
    all_nodes_reachable: bool = True


@dataclass(frozen=True)
class IR:
    nodes: tuple[Node, ...]
    relationships: tuple[Relationship, ...]
    states: tuple[State, ...]
    metadata: Metadata
    invariants: Invariants = field(default_factory=Invariants)
    version: str = IR_VERSION

    # id-keyed indexes, built on first lookup
    @cached_property
    def _node_index(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    @cached_property
    def _state_index(self) -> dict[str, list[State]]:
        index: dict[str, list[State]] = {}
        for s in self.states:
            index.setdefault(s.node_id, []).append(s)
        return index

    def node(self, nid: str) -> Node | None:
        return self._node_index.get(nid)

    def nodes_of(self, node_type: NodeType) -> list[Node]:
        return [n for n in self.nodes if n.type is node_type]

    def states_for(self, nid: str) -> list[State]:
        return list(self._state_index.get(nid, ()))
