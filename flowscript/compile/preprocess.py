"""Indentation preprocessor.

Turns Python-style indentation into explicit `{ }` groups so the grammar
never has to reason about whitespace:

    INPUT:          TRANSFORMED:
    A               A
      B               {B
      C               C
                      }

`line_map` keeps every transformed line pointing at its original line so that
provenance is always reported in source coordinates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import IndentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Preprocessed:
    text: str
    line_map: tuple[int, ...]  # line_map[i] = original line of transformed line i + 1

    def original_line(self, transformed_line: int) -> int:
        return original_line(self.line_map, transformed_line)


def original_line(line_map: tuple[int, ...] | None, transformed_line: int) -> int:
    if not line_map:
        return transformed_line
    idx = min(max(transformed_line, 1), len(line_map)) - 1
    return line_map[idx]


def _brace_delta(line: str) -> int:
    """Net `{` minus `}` outside double-quoted strings."""
    delta = 0
    quoted = False
    escaped = False
    for ch in line:
        if quoted:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                quoted = False
            continue
        if ch == '"':
            quoted = True
        elif ch == "{":
            delta += 1
        elif ch == "}":
            delta -= 1
    return delta


def process(text: str, *, indent_size: int = 2, source_file: str | None = None) -> Preprocessed:
    if indent_size < 1:
        raise ValueError("indent_size must be positive")
    if text == "":
        return Preprocessed("", ())

    out: list[str] = []
    line_map: list[int] = []
    stack = [0]
    explicit_depth = 0
    seen_content = False
    last_content_line = 0

    def emit(line: str, original: int) -> None:
        out.append(line)
        line_map.append(original)

    for lineno, line in enumerate(text.split("\n"), start=1):
        if line.endswith("\r"):
            line = line[:-1]
        if line.strip() == "":
            emit(line, lineno)
            continue

        stripped = line.lstrip(" ")
        lead = line[: len(line) - len(stripped)]
        if "\t" in line:
            raise IndentError(
                f"Tabs not allowed. Use {indent_size} spaces for indentation.",
                lineno,
                source_file=source_file,
            )

        # Inside an explicit multi-line group indentation is layout only.
        if explicit_depth > 0:
            explicit_depth = max(explicit_depth + _brace_delta(line), 0)
            emit(line, lineno)
            last_content_line = lineno
            continue

        indent = len(lead)
        if not seen_content and indent > 0:
            raise IndentError("First line cannot be indented.", lineno, source_file=source_file)
        seen_content = True

        if indent % indent_size:
            raise IndentError(
                f"Indentation of {indent} spaces is not a multiple of {indent_size}.",
                lineno,
                source_file=source_file,
            )

        top = stack[-1]
        if indent > top:
            stack.append(indent)
            emit(" " * indent + "{" + stripped, lineno)
        elif indent < top:
            while len(stack) > 1 and stack[-1] > indent:
                closed = stack.pop()
                emit(" " * closed + "}", last_content_line)
            if stack[-1] != indent:
                levels = ", ".join(str(x) for x in stack)
                raise IndentError(
                    f"Invalid dedent to level {indent}. Expected one of: [{levels}].",
                    lineno,
                    source_file=source_file,
                )
            emit(line, lineno)
        else:
            emit(line, lineno)

        explicit_depth = max(_brace_delta(line), 0)
        last_content_line = lineno

    while len(stack) > 1:
        closed = stack.pop()
        emit(" " * closed + "}", last_content_line)

    logger.debug("preprocessed %d lines into %d", len(text.split("\n")), len(out))
    return Preprocessed("\n".join(out), tuple(line_map))
