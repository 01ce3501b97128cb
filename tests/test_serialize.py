from __future__ import annotations

import copy
import json

import pytest

from flowscript.compile.pipeline import compile_source
from flowscript.errors import SchemaError
from flowscript.ir import IR_VERSION
from flowscript.serialize import dump_ir, dumps_ir, load_ir, validate
from flowscript.settings import Settings

TS = "2025-01-01T00:00:00+00:00"

SOURCE = """\
? which db
|| postgres
  -> relational ><[flexibility vs integrity] schema changes
|| mongo
  ~> fast prototyping
[decided(rationale: "joins", on: "2025-01-02")] postgres
  action: migrate {users; orders}
"""


def _doc() -> dict:
    ir = compile_source(SOURCE, source_file="db.fs", settings=Settings(author="ana"), timestamp=TS)
    return dump_ir(ir)


def test_document_shape() -> None:
    doc = _doc()
    assert doc["version"] == IR_VERSION
    assert set(doc) == {"version", "nodes", "relationships", "states", "invariants", "metadata"}
    assert doc["metadata"]["source_files"] == ["db.fs"]
    assert doc["metadata"]["parsed_at"] == TS
    assert doc["nodes"][0]["provenance"]["author"] == {"agent": "ana", "role": "human"}
    (state,) = doc["states"]
    assert state["fields"] == {"rationale": "joins", "on": "2025-01-02"}


def test_round_trip_is_lossless() -> None:
    doc = _doc()
    assert validate(doc) == []
    again = dump_ir(load_ir(doc))
    assert again == doc


def test_round_trip_through_text() -> None:
    ir = compile_source(SOURCE, timestamp=TS)
    text = dumps_ir(ir)
    assert load_ir(text) == ir
    assert json.loads(dumps_ir(ir, indent=None)) == json.loads(text)


def test_tampered_content_breaks_id() -> None:
    doc = _doc()
    doc["nodes"][0]["content"] = "something else"
    problems = validate(doc)
    assert any("id does not match" in p for p in problems)


def test_unknown_endpoint() -> None:
    doc = _doc()
    doc["relationships"][0]["target"] = "0" * 64
    problems = validate(doc)
    assert any("unknown endpoint" in p for p in problems)


def test_axis_label_only_on_tension() -> None:
    doc = _doc()
    causes = next(r for r in doc["relationships"] if r["type"] == "causes")
    causes["axis_label"] = "nope"
    assert any("axis_label on a causes edge" in p for p in validate(doc))


def test_extra_fields_are_rejected() -> None:
    doc = _doc()
    doc["nodes"][0]["colour"] = "red"
    problems = validate(doc)
    assert any(p.startswith("nodes.0.colour") for p in problems)


def test_wrong_version() -> None:
    doc = _doc()
    doc["version"] = "0.9"
    assert any("unsupported IR version" in p for p in validate(doc))


def test_duplicate_ids() -> None:
    doc = _doc()
    doc["nodes"].append(copy.deepcopy(doc["nodes"][0]))
    assert any("duplicate id" in p for p in validate(doc))


def test_invariants_summary_must_match() -> None:
    doc = _doc()
    doc["invariants"]["causal_acyclic"] = False
    assert validate(doc) == ["invariants: summary does not match the graph"]


def test_load_raises_schema_error() -> None:
    doc = _doc()
    del doc["metadata"]
    with pytest.raises(SchemaError) as exc:
        load_ir(doc)
    assert exc.value.errors
    assert "metadata" in exc.value.errors[0]
