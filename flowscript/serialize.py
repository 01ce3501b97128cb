"""Versioned JSON form of the IR and its structural schema.

    dump_ir(ir) -> dict           load_ir(payload) -> IR
    dumps_ir(ir) -> str           validate(payload) -> [problem, ...]
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import SchemaError
from .graph import summarize_invariants
from .ir import (
    IR,
    IR_VERSION,
    PRODUCER,
    Author,
    Invariants,
    Metadata,
    Modifier,
    Node,
    NodeType,
    Provenance,
    Relationship,
    RelationType,
    State,
    StateType,
    node_id,
    relationship_id,
    state_id,
)

logger = logging.getLogger(__name__)


# ---- schema ----


class AuthorModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent: str
    role: str = "human"


class ProvenanceModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_file: str
    line_number: int = Field(ge=1)
    timestamp: str
    author: AuthorModel | None = None
    producer: str = PRODUCER


class NodeModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    type: NodeType
    content: str
    children: list[str] = Field(default_factory=list)
    modifiers: list[Modifier] = Field(default_factory=list)
    provenance: ProvenanceModel


class RelationshipModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    type: RelationType
    source: str
    target: str
    axis_label: str | None = None
    feedback: bool = False
    provenance: ProvenanceModel


class StateModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    type: StateType
    node_id: str
    fields: dict[str, str] = Field(default_factory=dict)
    provenance: ProvenanceModel


class InvariantsModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    causal_acyclic: bool
    tension_axes_labeled: bool
    state_fields_present: bool
    all_nodes_reachable: bool


class MetadataModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_files: list[str]
    parsed_at: str
    producer: str = PRODUCER


class IRDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: str
    nodes: list[NodeModel]
    relationships: list[RelationshipModel]
    states: list[StateModel]
    invariants: InvariantsModel
    metadata: MetadataModel


# ---- dump ----


def _prov(p: Provenance) -> dict[str, Any]:
    return {
        "source_file": p.source_file,
        "line_number": p.line_number,
        "timestamp": p.timestamp,
        "author": {"agent": p.author.agent, "role": p.author.role} if p.author else None,
        "producer": p.producer,
    }


def dump_ir(ir: IR) -> dict[str, Any]:
    return {
        "version": ir.version,
        "nodes": [
            {
                "id": n.id,
                "type": n.type.value,
                "content": n.content,
                "children": list(n.children),
                "modifiers": sorted(m.value for m in n.modifiers),
                "provenance": _prov(n.provenance),
            }
            for n in ir.nodes
        ],
        "relationships": [
            {
                "id": r.id,
                "type": r.type.value,
                "source": r.source,
                "target": r.target,
                "axis_label": r.axis_label,
                "feedback": r.feedback,
                "provenance": _prov(r.provenance),
            }
            for r in ir.relationships
        ],
        "states": [
            {
                "id": s.id,
                "type": s.type.value,
                "node_id": s.node_id,
                "fields": dict(s.fields),
                "provenance": _prov(s.provenance),
            }
            for s in ir.states
        ],
        "invariants": {
            "causal_acyclic": ir.invariants.causal_acyclic,
            "tension_axes_labeled": ir.invariants.tension_axes_labeled,
            "state_fields_present": ir.invariants.state_fields_present,
            "all_nodes_reachable": ir.invariants.all_nodes_reachable,
        },
        "metadata": {
            "source_files": list(ir.metadata.source_files),
            "parsed_at": ir.metadata.parsed_at,
            "producer": ir.metadata.producer,
        },
    }


def dumps_ir(ir: IR, *, indent: int | None = 2) -> str:
    return json.dumps(dump_ir(ir), indent=indent, ensure_ascii=False)


# ---- load ----


def _provenance(m: ProvenanceModel) -> Provenance:
    author = Author(m.author.agent, m.author.role) if m.author else None
    return Provenance(
        source_file=m.source_file,
        line_number=m.line_number,
        timestamp=m.timestamp,
        author=author,
        producer=m.producer,
    )


def _to_ir(doc: IRDocument) -> IR:
    nodes = tuple(
        Node(
            id=n.id,
            type=n.type,
            content=n.content,
            provenance=_provenance(n.provenance),
            children=tuple(n.children),
            modifiers=frozenset(n.modifiers),
        )
        for n in doc.nodes
    )
    rels = tuple(
        Relationship(
            id=r.id,
            type=r.type,
            source=r.source,
            target=r.target,
            provenance=_provenance(r.provenance),
            axis_label=r.axis_label,
            feedback=r.feedback,
        )
        for r in doc.relationships
    )
    states = tuple(
        State(
            id=s.id,
            type=s.type,
            node_id=s.node_id,
            provenance=_provenance(s.provenance),
            fields=tuple(s.fields.items()),
        )
        for s in doc.states
    )
    return IR(
        nodes=nodes,
        relationships=rels,
        states=states,
        metadata=Metadata(
            source_files=tuple(doc.metadata.source_files),
            parsed_at=doc.metadata.parsed_at,
            producer=doc.metadata.producer,
        ),
        invariants=Invariants(**doc.invariants.model_dump()),
        version=doc.version,
    )


def _structural_errors(ir: IR) -> list[str]:
    errors: list[str] = []
    if ir.version != IR_VERSION:
        errors.append(f"version: unsupported IR version {ir.version!r} (expected {IR_VERSION})")

    seen: set[str] = set()
    for kind, items in (("node", ir.nodes), ("relationship", ir.relationships), ("state", ir.states)):
        for item in items:
            if item.id in seen:
                errors.append(f"{kind} {item.id}: duplicate id")
            seen.add(item.id)

    node_ids = {n.id for n in ir.nodes}
    for n in ir.nodes:
        if node_id(n.type, n.content, n.children) != n.id:
            errors.append(f"node {n.id}: id does not match its type and content")
        for child in n.children:
            if child not in node_ids:
                errors.append(f"node {n.id}: unknown child {child}")

    for r in ir.relationships:
        if relationship_id(r.type, r.source, r.target, r.axis_label) != r.id:
            errors.append(f"relationship {r.id}: id does not match its endpoints")
        for end in (r.source, r.target):
            if end not in node_ids:
                errors.append(f"relationship {r.id}: unknown endpoint {end}")
        if r.type is RelationType.TENSION and r.axis_label is None:
            errors.append(f"relationship {r.id}: tension edge without axis_label")
        if r.type is not RelationType.TENSION and r.axis_label is not None:
            errors.append(f"relationship {r.id}: axis_label on a {r.type.value} edge")

    for s in ir.states:
        if state_id(s.type, s.node_id, s.fields) != s.id:
            errors.append(f"state {s.id}: id does not match its fields")
        if s.node_id not in node_ids:
            errors.append(f"state {s.id}: unknown node {s.node_id}")

    if not errors:
        recomputed = summarize_invariants(ir.nodes, ir.relationships, ir.states)
        if recomputed != ir.invariants:
            errors.append("invariants: summary does not match the graph")
    return errors


def _check(payload: dict[str, Any]) -> tuple[IR | None, list[str]]:
    try:
        doc = IRDocument.model_validate(payload)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        return None, problems
    ir = _to_ir(doc)
    return ir, _structural_errors(ir)


def validate(payload: dict[str, Any]) -> list[str]:
    """Every schema problem in `payload`; empty when it is a valid IR document."""
    _, errors = _check(payload)
    return errors


def load_ir(payload: dict[str, Any] | str) -> IR:
    if isinstance(payload, str):
        payload = json.loads(payload)
    ir, errors = _check(payload)
    if errors or ir is None:
        logger.debug("rejected IR document: %d problems", len(errors))
        raise SchemaError(errors)
    return ir
