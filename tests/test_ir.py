from __future__ import annotations

import dataclasses

from flowscript.compile.pipeline import compile_source
from flowscript.ir import IR, StateType

TS = "2025-01-01T00:00:00+00:00"


def _ir(text: str) -> IR:
    return compile_source(text, source_file="t.fs", timestamp=TS)


def test_node_lookup_by_id() -> None:
    ir = _ir("A -> B")
    for n in ir.nodes:
        assert ir.node(n.id) is n
    assert ir.node("missing") is None


def test_states_for_groups_by_node() -> None:
    ir = _ir('[decided(rationale: "r", on: "2025-01-01")] [parking] A -> B')
    a = next(n for n in ir.nodes if n.content == "A")
    b = next(n for n in ir.nodes if n.content == "B")
    assert [s.type for s in ir.states_for(a.id)] == [StateType.DECIDED, StateType.PARKING]
    assert ir.states_for(b.id) == []


def test_indexes_are_built_once_and_not_shared() -> None:
    ir = _ir("A -> B")
    assert ir._node_index is ir._node_index
    ir.states_for(ir.nodes[0].id).append("junk")
    assert ir.states_for(ir.nodes[0].id) == []

    trimmed = dataclasses.replace(ir, nodes=ir.nodes[:1])
    assert trimmed.node(ir.nodes[1].id) is None
    assert ir.node(ir.nodes[1].id) is ir.nodes[1]


def test_indexes_do_not_affect_equality() -> None:
    a = _ir("A -> B")
    b = _ir("A -> B")
    a.node(a.nodes[0].id)
    assert a == b
