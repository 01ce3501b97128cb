from __future__ import annotations


class FlowScriptError(Exception):
    """Base class for every error raised by the compiler."""


class IndentError(FlowScriptError):
    """Indentation violation found by the preprocessor (fatal to the parse)."""

    def __init__(self, message: str, line: int, *, source_file: str | None = None) -> None:
        self.message = message
        self.line = line
        self.source_file = source_file
        where = f"{source_file}:{line}" if source_file else f"line {line}"
        super().__init__(f"{message} ({where})")


class ParseError(FlowScriptError):
    """Grammar mismatch; always located in original source coordinates."""

    def __init__(self, message: str, *, file: str, line: int) -> None:
        self.message = message
        self.file = file
        self.line = line
        super().__init__(f"{file}:{line}: {message}")


class SchemaError(FlowScriptError):
    """A serialized IR violates the structural schema."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        head = self.errors[0] if self.errors else "invalid IR"
        more = f" (+{len(self.errors) - 1} more)" if len(self.errors) > 1 else ""
        super().__init__(f"{head}{more}")


class QueryError(FlowScriptError):
    pass


class NotFound(QueryError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class InvalidNodeType(QueryError):
    def __init__(self, node_id: str, expected: str, actual: str) -> None:
        self.node_id = node_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Node {node_id} is not a {expected} (type: {actual})")


class InvalidIR(QueryError):
    pass
