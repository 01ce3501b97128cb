from __future__ import annotations

from ..ir import IR, Author
from ..settings import Settings
from .parser import ParserConfig, parse
from .preprocess import process


def compile_source(
    text: str,
    *,
    source_file: str = "<input>",
    settings: Settings | None = None,
    timestamp: str | None = None,
) -> IR:
    st = settings or Settings()
    author = Author(st.author, st.author_role) if st.author else None
    # P
    pre = process(text, indent_size=st.indent_size, source_file=source_file)
    # G
    config = ParserConfig(
        require_tension_axis=st.require_tension_axis,
        author=author,
        timestamp=timestamp,
    )
    return parse(pre.text, pre.line_map, source_file=source_file, config=config)
