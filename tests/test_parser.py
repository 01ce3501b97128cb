from __future__ import annotations

import pytest

from flowscript.compile.parser import ParserConfig, parse
from flowscript.compile.pipeline import compile_source
from flowscript.errors import ParseError
from flowscript.ir import IR, Modifier, NodeType, RelationType, StateType, node_id
from flowscript.settings import Settings

TS = "2025-01-01T00:00:00+00:00"


def _ir(text: str, **settings) -> IR:
    return compile_source(text, source_file="t.fs", settings=Settings(**settings), timestamp=TS)


def _by_content(ir: IR, content: str):
    matches = [n for n in ir.nodes if n.content == content]
    assert len(matches) == 1, content
    return matches[0]


def _rels(ir: IR, rel_type: RelationType) -> list[tuple[str, str]]:
    names = {n.id: n.content for n in ir.nodes}
    return [(names[r.source], names[r.target]) for r in ir.relationships if r.type is rel_type]


def test_ids_are_deterministic_across_parses() -> None:
    a = compile_source("A -> B\n? why", timestamp="2020-01-01T00:00:00+00:00")
    b = compile_source("A -> B\n? why", timestamp="2030-06-01T00:00:00+00:00")
    assert [n.id for n in a.nodes] == [n.id for n in b.nodes]
    assert [r.id for r in a.relationships] == [r.id for r in b.relationships]


def test_node_id_is_hash_of_type_and_normalised_content() -> None:
    ir = _ir("A   thing -> B")
    node = _by_content(ir, "A thing")
    assert node.id == node_id(NodeType.STATEMENT, "A thing")
    assert len(node.id) == 64


def test_identical_content_collapses_to_one_node() -> None:
    ir = _ir("A -> B\nA -> C")
    assert sorted(n.content for n in ir.nodes) == ["A", "B", "C"]
    assert _rels(ir, RelationType.CAUSES) == [("A", "B"), ("A", "C")]


def test_markers_set_node_types() -> None:
    ir = _ir("? q -> thought: t\naction: a -> ✓ done\nx -> ⊙ d -> × b -> ⧗ e -> ⊞ p")
    types = {n.content: n.type for n in ir.nodes}
    assert types == {
        "q": NodeType.QUESTION,
        "t": NodeType.THOUGHT,
        "a": NodeType.ACTION,
        "done": NodeType.COMPLETION,
        "x": NodeType.STATEMENT,
        "d": NodeType.DECISION,
        "b": NodeType.BLOCKER,
        "e": NodeType.EXPLORING,
        "p": NodeType.PARKING,
    }


def test_relation_operators() -> None:
    ir = _ir("a ~> b\nc <- d\ne <-> f\ng => h\ni = j\nk != l")
    by_type = {r.type: r for r in ir.relationships}
    assert by_type[RelationType.CAUSES].feedback is True
    assert _rels(ir, RelationType.DERIVES_FROM) == [("c", "d")]
    assert _rels(ir, RelationType.BIDIRECTIONAL) == [("e", "f")]
    assert _rels(ir, RelationType.TEMPORAL) == [("g", "h")]
    assert _rels(ir, RelationType.EQUIVALENT) == [("i", "j")]
    assert _rels(ir, RelationType.DIFFERENT) == [("k", "l")]
    assert all(r.axis_label is None for r in ir.relationships)


@pytest.mark.parametrize("text", ["A -> B\nA ~> B", "A ~> B\nA -> B"])
def test_plain_declaration_wins_over_feedback(text: str) -> None:
    ir = _ir(text)
    (rel,) = ir.relationships
    assert rel.feedback is False
    assert rel.provenance.line_number == 1


def test_repeated_feedback_stays_feedback() -> None:
    ir = _ir("A ~> B\nA ~> B")
    (rel,) = ir.relationships
    assert rel.feedback is True


def test_operators_need_surrounding_whitespace() -> None:
    ir = _ir("a->b -> c")
    assert _rels(ir, RelationType.CAUSES) == [("a->b", "c")]


def test_tension_axis_label() -> None:
    ir = _ir("speed ><[latency vs throughput] quality")
    (rel,) = ir.relationships
    assert rel.type is RelationType.TENSION
    assert rel.axis_label == "latency vs throughput"
    assert ir.invariants.tension_axes_labeled


def test_bare_tension_has_empty_axis() -> None:
    ir = _ir("speed >< quality")
    (rel,) = ir.relationships
    assert rel.axis_label == ""
    assert not ir.invariants.tension_axes_labeled


def test_required_tension_axis_setting() -> None:
    with pytest.raises(ParseError, match="axis label"):
        _ir("speed >< quality", require_tension_axis=True)


def test_modifiers_attach_to_following_node() -> None:
    ir = _ir("! ++ ship it -> * sure thing\n~ maybe -> x")
    assert _by_content(ir, "ship it").modifiers == frozenset({Modifier.URGENT, Modifier.STRONG_POSITIVE})
    assert _by_content(ir, "sure thing").modifiers == frozenset({Modifier.HIGH_CONFIDENCE})
    assert _by_content(ir, "maybe").modifiers == frozenset({Modifier.LOW_CONFIDENCE})


def test_state_prefix_with_fields() -> None:
    ir = _ir('[decided(rationale: "fast, simple", on: "2025-10-15")] use sqlite -> done')
    (state,) = ir.states
    node = _by_content(ir, "use sqlite")
    assert state.type is StateType.DECIDED
    assert state.node_id == node.id
    assert state.fields == (("rationale", "fast, simple"), ("on", "2025-10-15"))


def test_state_only_line_annotates_next_node() -> None:
    ir = _ir('[blocked(reason: "waiting", since: "2025-01-01")]\naction: deploy')
    (state,) = ir.states
    assert state.node_id == _by_content(ir, "deploy").id
    assert state.provenance.line_number == 1


def test_indented_content_populates_children() -> None:
    ir = _ir("A\n  B\n  C")
    a, b, c = (_by_content(ir, x) for x in "ABC")
    assert a.children == (b.id, c.id)
    assert ir.relationships == ()


def test_indented_continuations_relate_to_parent() -> None:
    ir = _ir("A\n  -> B\n    -> C\n  -> D")
    assert _rels(ir, RelationType.CAUSES) == [("A", "B"), ("B", "C"), ("A", "D")]
    a = _by_content(ir, "A")
    assert a.children == (_by_content(ir, "B").id, _by_content(ir, "D").id)


def test_nested_content_attaches_to_tail_node() -> None:
    ir = _ir("A -> B\n  -> C")
    assert _rels(ir, RelationType.CAUSES) == [("A", "B"), ("B", "C")]
    assert _by_content(ir, "B").children == (_by_content(ir, "C").id,)


def test_block_operand() -> None:
    ir = _ir("main -> {d1; d2}")
    block = next(n for n in ir.nodes if n.type is NodeType.BLOCK)
    assert block.content == ""
    assert block.children == (_by_content(ir, "d1").id, _by_content(ir, "d2").id)
    (rel,) = ir.relationships
    assert rel.target == block.id


def test_block_with_leading_node() -> None:
    ir = _ir("{a; -> b}")
    assert _rels(ir, RelationType.CAUSES) == [("a", "b")]


def test_tension_between_blocks() -> None:
    ir = _ir("{fast} ><[speed vs cost] {cheap}")
    (rel,) = ir.relationships
    assert rel.axis_label == "speed vs cost"
    assert ir.node(rel.source).type is NodeType.BLOCK
    assert ir.node(rel.target).type is NodeType.BLOCK


def test_document_level_continuation_uses_last_expression() -> None:
    ir = _ir("thought: plan\n=> build\n=> ship")
    assert _rels(ir, RelationType.TEMPORAL) == [("plan", "build"), ("plan", "ship")]


def test_alternatives_link_to_preceding_question() -> None:
    ir = _ir("? which db\n|| postgres\n  -> relational\n|| mongo\n? next\n|| other")
    assert _rels(ir, RelationType.ALTERNATIVE) == [
        ("which db", "postgres"),
        ("which db", "mongo"),
        ("next", "other"),
    ]
    q = _by_content(ir, "which db")
    assert q.children == (_by_content(ir, "postgres").id, _by_content(ir, "mongo").id)


def test_alternatives_nested_under_question() -> None:
    ir = _ir("? q\n  || a\n  || b")
    assert _rels(ir, RelationType.ALTERNATIVE) == [("q", "a"), ("q", "b")]


def test_provenance_uses_original_lines() -> None:
    text = "A\n\n  B\n  C\nD -> E"
    ir = _ir(text)
    lines = {n.content: n.provenance.line_number for n in ir.nodes}
    assert lines == {"A": 1, "B": 3, "C": 4, "D": 5, "E": 5}
    total = len(text.split("\n"))
    assert all(1 <= n.provenance.line_number <= total for n in ir.nodes)
    assert all(n.provenance.source_file == "t.fs" for n in ir.nodes)


def test_provenance_author_from_settings() -> None:
    ir = _ir("A -> B", author="ana", author_role="ai")
    assert ir.nodes[0].provenance.author.agent == "ana"
    assert ir.nodes[0].provenance.author.role == "ai"
    assert ir.nodes[0].provenance.timestamp == TS


def test_metadata_and_invariants() -> None:
    ir = _ir("A -> B\nB -> A")
    assert ir.metadata.source_files == ("t.fs",)
    assert ir.metadata.parsed_at == TS
    assert not ir.invariants.causal_acyclic


def test_parse_without_line_map() -> None:
    ir = parse("A -> B", config=ParserConfig(timestamp=TS))
    assert ir.nodes[0].provenance.source_file == "<input>"
    assert ir.nodes[0].provenance.line_number == 1


@pytest.mark.parametrize(
    "text,line,fragment",
    [
        ("{a; b", 1, "unterminated group"),
        ("a }", 1, "without a matching"),
        ("-> x", 1, "no source node"),
        ("a ><[] b", 1, "axis label"),
        ("a ><[oops b", 1, "unterminated axis"),
        ("ok\n[done] x", 2, "unknown state"),
        ('ok\n[decided(rationale "x")] y', 2, "expected ':'"),
        ("[decided(rationale: x)] y", 1, "double-quoted"),
        ('[decided(on: "a", on: "b")] y', 1, "duplicate field"),
        ('[decided(on: "a"] y', 1, "expected ',' or ')'"),
        ("a -> thought:", 1, "requires content"),
        ("x\n  y\n!", 3, "modifier"),
        ('x\n[blocked(reason: "r", since: "s")]', 2, "does not annotate"),
        ("a ->", 1, "missing its target"),
    ],
)
def test_parse_errors_are_located(text: str, line: int, fragment: str) -> None:
    with pytest.raises(ParseError) as exc:
        _ir(text)
    assert exc.value.line == line
    assert exc.value.file == "t.fs"
    assert fragment in exc.value.message
