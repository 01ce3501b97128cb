"""Closed marker tables.

Every marker maps to exactly one IR type. Node types are never inferred from
the text that follows a marker.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..ir import Modifier, NodeType, RelationType, StateType


@dataclass(frozen=True)
class RelOp:
    token: str
    type: RelationType
    feedback: bool = False


# Ordered choice: longer tokens that share a prefix come first.
REL_OPS: tuple[RelOp, ...] = (
    RelOp("<->", RelationType.BIDIRECTIONAL),
    RelOp("<-", RelationType.DERIVES_FROM),
    RelOp("->", RelationType.CAUSES),
    RelOp("~>", RelationType.CAUSES, feedback=True),
    RelOp("=>", RelationType.TEMPORAL),
    RelOp("><", RelationType.TENSION),
    RelOp("!=", RelationType.DIFFERENT),
    RelOp("=", RelationType.EQUIVALENT),
)

NODE_MARKERS: tuple[tuple[str, NodeType], ...] = (
    ("thought:", NodeType.THOUGHT),
    ("action:", NodeType.ACTION),
    ("||", NodeType.ALTERNATIVE),
    ("?", NodeType.QUESTION),
    ("✓", NodeType.COMPLETION),
    ("⊙", NodeType.DECISION),
    ("×", NodeType.BLOCKER),
    ("⧗", NodeType.EXPLORING),
    ("⊞", NodeType.PARKING),
)

MODIFIERS: tuple[tuple[str, Modifier], ...] = (
    ("++", Modifier.STRONG_POSITIVE),
    ("!", Modifier.URGENT),
    ("*", Modifier.HIGH_CONFIDENCE),
    ("~", Modifier.LOW_CONFIDENCE),
)

STATES: dict[str, StateType] = {s.value: s for s in StateType}

