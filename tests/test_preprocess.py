from __future__ import annotations

import pytest

from flowscript.compile.preprocess import original_line, process
from flowscript.errors import IndentError


def test_indented_block_becomes_explicit_group() -> None:
    pre = process("A\n  B\n  C")
    assert pre.text.split("\n") == ["A", "  {B", "  C", "  }"]
    # closing brace maps back to the last content line
    assert pre.line_map == (1, 2, 3, 3)


def test_nested_levels_close_in_order() -> None:
    pre = process("A\n  B\n    C\nD")
    assert pre.text.split("\n") == ["A", "  {B", "    {C", "    }", "  }", "D"]
    assert pre.line_map == (1, 2, 3, 3, 3, 4)


def test_blank_lines_pass_through_and_keep_the_stack() -> None:
    pre = process("A\n\n  B\n\n  C")
    assert pre.text.split("\n") == ["A", "", "  {B", "", "  C", "  }"]
    assert pre.original_line(5) == 5


def test_line_map_points_at_original_lines() -> None:
    pre = process("A\n  B\nC")
    lines = pre.text.split("\n")
    c_index = lines.index("C")
    assert pre.line_map[c_index] == 3


def test_empty_input() -> None:
    pre = process("")
    assert pre.text == ""
    assert pre.line_map == ()


def test_explicit_braces_are_left_alone() -> None:
    text = "A {\n    x\n}\nB"
    pre = process(text)
    assert pre.text == text
    assert pre.line_map == (1, 2, 3, 4)


def test_crlf_is_accepted() -> None:
    pre = process("A\r\n  B\r\n")
    assert pre.text.split("\n")[:2] == ["A", "  {B"]


@pytest.mark.parametrize(
    "text,line,fragment",
    [
        ("A\n\tB", 2, "Tabs not allowed"),
        ("A\n  B\tC", 2, "Tabs not allowed"),
        ("  A", 1, "First line cannot be indented"),
        ("A\n   B", 2, "not a multiple of 2"),
        ("A\n    B\n  C", 3, "Invalid dedent"),
    ],
)
def test_indentation_errors_are_located(text: str, line: int, fragment: str) -> None:
    with pytest.raises(IndentError) as exc:
        process(text, source_file="doc.fs")
    assert exc.value.line == line
    assert fragment in exc.value.message
    assert "doc.fs" in str(exc.value)


def test_custom_indent_size() -> None:
    pre = process("A\n    B", indent_size=4)
    assert pre.text.split("\n") == ["A", "    {B", "    }"]
    with pytest.raises(IndentError):
        process("A\n  B", indent_size=4)


def test_original_line_is_identity_without_a_map() -> None:
    assert original_line(None, 7) == 7
    assert original_line((3, 5), 9) == 5
