"""FlowScript grammar parser.

Consumes preprocessed text (indentation already turned into `{ }` groups)
and builds the IR. Ordered choice, one derivation per construct:

    document     <- items EOF
    items        <- sep* (item (sep+ item)*)? sep*
    sep          <- ';' / NEWLINE
    item         <- nested_group / continuation / expression
    nested_group <- &(group !rel_op) group     (only after an item with a tail node)
    continuation <- rel_op operand (rel_op operand)*
    expression   <- element (rel_op operand)*
    element      <- prefix* (group / marker? text group?)
    operand      <- element
    prefix       <- state / modifier
    state        <- '[' name ('(' field (',' field)* ')')? ']'
    field        <- name ':' '"' chars '"'
"""

from __future__ import annotations

import bisect
import dataclasses
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..errors import ParseError
from ..graph import summarize_invariants
from ..ir import (
    IR,
    Author,
    Metadata,
    Modifier,
    Node,
    NodeType,
    Provenance,
    Relationship,
    RelationType,
    State,
    StateType,
    canon,
    node_id,
    relationship_id,
    state_id,
)
from .markers import MODIFIERS, NODE_MARKERS, REL_OPS, STATES, RelOp
from .preprocess import original_line

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_WS = " \t\r"
_ITEM_END = ";\n}"


@dataclass
class ParserConfig:
    require_tension_axis: bool = False
    author: Author | None = None
    timestamp: str | None = None  # defaults to the parse time


# ---- builder ----


@dataclass
class _NodeDraft:
    id: str
    type: NodeType
    content: str
    provenance: Provenance
    children: list[str] = field(default_factory=list)
    modifiers: set[Modifier] = field(default_factory=set)


@dataclass
class _PendingState:
    type: StateType
    fields: tuple[tuple[str, str], ...]
    provenance: Provenance


class _Builder:
    """Mutable staging area; `freeze()` produces the immutable IR."""

    def __init__(self) -> None:
        self.nodes: dict[str, _NodeDraft] = {}
        self.relationships: dict[str, Relationship] = {}
        self.states: dict[str, State] = {}
        self.pending: list[_PendingState] = []

    def add_node(
        self,
        node_type: NodeType,
        content: str,
        provenance: Provenance,
        *,
        modifiers: set[Modifier] | frozenset[Modifier] = frozenset(),
        children: list[str] | None = None,
    ) -> str:
        content = canon(content)
        nid = node_id(node_type, content, children or ())
        draft = self.nodes.get(nid)
        if draft is None:
            draft = _NodeDraft(nid, node_type, content, provenance)
            self.nodes[nid] = draft
        draft.modifiers.update(modifiers)
        for child in children or ():
            self.add_child(nid, child)

        # A line holding only state markers annotates the next node created.
        pending, self.pending = self.pending, []
        for p in pending:
            self.add_state(p.type, nid, p.fields, p.provenance)
        return nid

    def add_child(self, parent: str, child: str) -> None:
        draft = self.nodes[parent]
        if child != parent and child not in draft.children:
            draft.children.append(child)

    def add_relationship(
        self,
        rel_type: RelationType,
        source: str,
        target: str,
        provenance: Provenance,
        *,
        axis_label: str | None = None,
        feedback: bool = False,
    ) -> str:
        # `feedback` is not part of the id, so `A -> B` and `A ~> B` are one
        # edge. It stays a feedback edge only if every declaration is `~>`.
        rid = relationship_id(rel_type, source, target, axis_label)
        existing = self.relationships.get(rid)
        if existing is None:
            self.relationships[rid] = Relationship(
                id=rid,
                type=rel_type,
                source=source,
                target=target,
                provenance=provenance,
                axis_label=axis_label,
                feedback=feedback,
            )
        elif existing.feedback and not feedback:
            logger.debug("edge %s declared both plain and feedback; keeping it plain", rid)
            self.relationships[rid] = dataclasses.replace(existing, feedback=False)
        return rid

    def add_state(
        self,
        state_type: StateType,
        nid: str,
        fields: tuple[tuple[str, str], ...],
        provenance: Provenance,
    ) -> str:
        sid = state_id(state_type, nid, fields)
        if sid not in self.states:
            self.states[sid] = State(
                id=sid, type=state_type, node_id=nid, provenance=provenance, fields=fields
            )
        return sid

    def type_of(self, nid: str) -> NodeType:
        return self.nodes[nid].type

    def freeze(self, *, source_file: str, parsed_at: str) -> IR:
        nodes = tuple(
            Node(
                id=d.id,
                type=d.type,
                content=d.content,
                provenance=d.provenance,
                children=tuple(d.children),
                modifiers=frozenset(d.modifiers),
            )
            for d in self.nodes.values()
        )
        rels = tuple(self.relationships.values())
        states = tuple(self.states.values())
        return IR(
            nodes=nodes,
            relationships=rels,
            states=states,
            metadata=Metadata(source_files=(source_file,), parsed_at=parsed_at),
            invariants=summarize_invariants(nodes, rels, states),
        )


# ---- parser ----


@dataclass
class _Scope:
    owner: str | None = None      # node whose nested content this group is
    leading: str | None = None    # implicit source of relation-only lines
    is_group: bool = False
    question: str | None = None   # question currently collecting alternatives
    heads: list[str] = field(default_factory=list)


class _Parser:
    def __init__(
        self,
        text: str,
        line_map: tuple[int, ...] | None,
        *,
        source_file: str,
        config: ParserConfig,
    ) -> None:
        self.text = text
        self.pos = 0
        self.line_map = line_map
        self.source_file = source_file
        self.config = config
        self.timestamp = config.timestamp or datetime.now(timezone.utc).isoformat()
        self.builder = _Builder()
        self._line_starts = [0] + [m.end() for m in re.finditer("\n", text)]

    # -- positions / errors --

    def _line(self, pos: int) -> int:
        transformed = bisect.bisect_right(self._line_starts, pos)
        return original_line(self.line_map, transformed)

    def _prov(self, pos: int) -> Provenance:
        return Provenance(
            source_file=self.source_file,
            line_number=self._line(pos),
            timestamp=self.timestamp,
            author=self.config.author,
        )

    def _error(self, message: str, pos: int | None = None) -> ParseError:
        return ParseError(message, file=self.source_file, line=self._line(self.pos if pos is None else pos))

    def _ch(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos] in _WS:
            self.pos += 1

    def _match_rel_op(self, pos: int) -> RelOp | None:
        for op in REL_OPS:
            if self.text.startswith(op.token, pos):
                return op
        return None

    # -- document / groups --

    def parse(self) -> IR:
        self._parse_items(_Scope())
        if self.builder.pending:
            p = self.builder.pending[0]
            raise ParseError(
                f"[{p.type.value}] state marker does not annotate any node",
                file=self.source_file,
                line=p.provenance.line_number,
            )
        ir = self.builder.freeze(source_file=self.source_file, parsed_at=self.timestamp)
        logger.debug(
            "parsed %s: %d nodes, %d relationships, %d states",
            self.source_file,
            len(ir.nodes),
            len(ir.relationships),
            len(ir.states),
        )
        return ir

    def _parse_items(self, scope: _Scope, open_pos: int | None = None) -> None:
        tail: str | None = None
        while True:
            while self.pos < len(self.text) and self.text[self.pos] in _WS + ";\n":
                self.pos += 1
            ch = self._ch()
            if ch == "":
                if open_pos is not None:
                    raise self._error("unterminated group: missing '}'", open_pos)
                return
            if ch == "}":
                if open_pos is None:
                    raise self._error("unexpected '}' without a matching '{'")
                return

            if ch == "{" and tail is not None and not self._group_starts_relation(self.pos):
                self._parse_group(owner=tail)
                self._expect_item_end()
                continue

            head, tail = self._parse_item(scope)
            if head is not None:
                self._register_head(scope, head)
            self._expect_item_end()

    def _register_head(self, scope: _Scope, head: str) -> None:
        if head not in scope.heads:
            scope.heads.append(head)
        if scope.is_group and scope.leading is None:
            scope.leading = head

        node_type = self.builder.type_of(head)
        if node_type is NodeType.QUESTION:
            scope.question = head
        elif node_type is NodeType.ALTERNATIVE and scope.question and scope.question != head:
            draft = self.builder.nodes[head]
            self.builder.add_relationship(
                RelationType.ALTERNATIVE, scope.question, head, draft.provenance
            )
            self.builder.add_child(scope.question, head)

    def _expect_item_end(self) -> None:
        self._skip_ws()
        ch = self._ch()
        if ch and ch not in _ITEM_END:
            raise self._error(f"unexpected {ch!r}; expected ';' or end of line")

    def _group_starts_relation(self, pos: int) -> bool:
        """Lookahead: is the group at `pos` followed by a relation operator?"""
        depth = 0
        quoted = False
        i = pos
        while i < len(self.text):
            ch = self.text[i]
            if quoted:
                if ch == "\\":
                    i += 1
                elif ch == '"':
                    quoted = False
            elif ch == '"':
                quoted = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    j = i + 1
                    while j < len(self.text) and self.text[j] in _WS:
                        j += 1
                    return self._match_rel_op(j) is not None
            i += 1
        return False

    def _parse_group(
        self,
        *,
        owner: str | None,
        modifiers: set[Modifier] | None = None,
    ) -> str:
        open_pos = self.pos
        self.pos += 1  # '{'
        scope = _Scope(owner=owner, leading=owner, is_group=True)
        if owner is not None and self.builder.type_of(owner) is NodeType.QUESTION:
            scope.question = owner
        self._parse_items(scope, open_pos)
        self.pos += 1  # '}'

        if owner is not None:
            for head in scope.heads:
                self.builder.add_child(owner, head)
            return owner
        return self.builder.add_node(
            NodeType.BLOCK,
            "",
            self._prov(open_pos),
            modifiers=modifiers or set(),
            children=scope.heads,
        )

    # -- items --

    def _parse_item(self, scope: _Scope) -> tuple[str | None, str | None]:
        op_pos = self.pos
        if self._match_rel_op(self.pos) is not None:
            if scope.leading is None:
                raise self._error("relation has no source node in this scope", op_pos)
            head, tail = self._parse_relations(scope.leading)
            return head, tail

        element = self._parse_element()
        if element is None:
            return None, None
        if not scope.is_group:
            # At document level relation-only lines hang off the last expression.
            scope.leading = element
        _, tail = self._parse_relations(element)
        return element, tail or element

    def _parse_relations(self, source: str) -> tuple[str | None, str | None]:
        head: str | None = None
        current = source
        while True:
            save = self.pos
            self._skip_ws()
            op_pos = self.pos
            op = self._match_rel_op(op_pos)
            if op is None:
                self.pos = save
                return head, (current if head is not None else None)
            self.pos += len(op.token)
            axis = self._parse_axis(op_pos) if op.type is RelationType.TENSION else None
            self._skip_ws()
            target = self._parse_element()
            if target is None:
                raise self._error(f"relation '{op.token}' is missing its target", op_pos)
            self.builder.add_relationship(
                op.type,
                current,
                target,
                self._prov(op_pos),
                axis_label=axis,
                feedback=op.feedback,
            )
            if head is None:
                head = target
            current = target

    def _parse_axis(self, op_pos: int) -> str:
        if self._ch() != "[":
            if self.config.require_tension_axis:
                raise self._error("tension operator missing its axis label", op_pos)
            return ""
        end = self.text.find("]", self.pos)
        eol = self.text.find("\n", self.pos)
        if end == -1 or (eol != -1 and eol < end):
            raise self._error("unterminated axis label: missing ']'", op_pos)
        label = canon(self.text[self.pos + 1 : end])
        if not label:
            raise self._error("tension operator missing its axis label", op_pos)
        self.pos = end + 1
        return label

    # -- elements --

    def _parse_element(self) -> str | None:
        start = self.pos
        modifiers: set[Modifier] = set()
        states: list[_PendingState] = []
        while True:
            self._skip_ws()
            if self._ch() == "[":
                states.append(self._parse_state())
                continue
            mod = self._match_modifier()
            if mod is None:
                break
            modifiers.add(mod)

        self._skip_ws()
        if self._ch() == "{":
            nid = self._parse_group(owner=None, modifiers=modifiers)
        else:
            node_pos = self.pos
            node_type, marker = self._match_marker()
            text = self._scan_text()
            if not text:
                if marker:
                    raise self._error(f"marker '{marker}' requires content", node_pos)
                if modifiers:
                    raise self._error("modifier must precede a node", start)
                self.builder.pending.extend(states)
                return None
            nid = self.builder.add_node(node_type, text, self._prov(node_pos), modifiers=modifiers)
            self._skip_ws()
            if self._ch() == "{":
                self._parse_group(owner=nid)

        for s in states:
            self.builder.add_state(s.type, nid, s.fields, s.provenance)
        return nid

    def _match_modifier(self) -> Modifier | None:
        for token, mod in MODIFIERS:
            if self.text.startswith(token, self.pos):
                self.pos += len(token)
                return mod
        return None

    def _match_marker(self) -> tuple[NodeType, str]:
        for token, node_type in NODE_MARKERS:
            if self.text.startswith(token, self.pos):
                self.pos += len(token)
                return node_type, token
        return NodeType.STATEMENT, ""

    def _scan_text(self) -> str:
        start = self.pos
        i = start
        while i < len(self.text):
            ch = self.text[i]
            if ch in ";\n{}":
                break
            if i > start and self.text[i - 1] in _WS and self._match_rel_op(i) is not None:
                break
            i += 1
        self.pos = i
        return canon(self.text[start:i])

    def _parse_state(self) -> _PendingState:
        open_pos = self.pos
        self.pos += 1  # '['
        m = _NAME_RE.match(self.text, self.pos)
        if m is None:
            raise self._error("malformed state marker: expected a state name", open_pos)
        name = m.group(0)
        state_type = STATES.get(name)
        if state_type is None:
            raise self._error(f"unknown state marker [{name}]", open_pos)
        self.pos = m.end()

        fields: list[tuple[str, str]] = []
        if self._ch() == "(":
            self.pos += 1
            self._skip_ws()
            if self._ch() == ")":
                self.pos += 1
            else:
                while True:
                    self._skip_ws()
                    fm = _NAME_RE.match(self.text, self.pos)
                    if fm is None:
                        raise self._error(f"malformed field in [{name}]: expected a field name")
                    fname = fm.group(0)
                    self.pos = fm.end()
                    self._skip_ws()
                    if self._ch() != ":":
                        raise self._error(f"malformed field in [{name}]: expected ':' after '{fname}'")
                    self.pos += 1
                    self._skip_ws()
                    value = self._parse_string(name)
                    if any(k == fname for k, _ in fields):
                        raise self._error(f"duplicate field '{fname}' in [{name}]")
                    fields.append((fname, value))
                    self._skip_ws()
                    ch = self._ch()
                    if ch == ",":
                        self.pos += 1
                        continue
                    if ch == ")":
                        self.pos += 1
                        break
                    raise self._error(f"malformed field list in [{name}]: expected ',' or ')'")
        if self._ch() != "]":
            raise self._error(f"unterminated state marker [{name}: missing ']'", open_pos)
        self.pos += 1
        return _PendingState(state_type, tuple(fields), self._prov(open_pos))

    def _parse_string(self, state_name: str) -> str:
        if self._ch() != '"':
            raise self._error(f"malformed field in [{state_name}]: values must be double-quoted")
        start = self.pos
        self.pos += 1
        out: list[str] = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\n":
                break
            if ch == "\\" and self.pos + 1 < len(self.text):
                out.append(self.text[self.pos + 1])
                self.pos += 2
                continue
            if ch == '"':
                self.pos += 1
                return "".join(out)
            out.append(ch)
            self.pos += 1
        raise self._error("unterminated string in state field", start)


def parse(
    text: str,
    line_map: tuple[int, ...] | None = None,
    *,
    source_file: str = "<input>",
    config: ParserConfig | None = None,
) -> IR:
    """Parse preprocessed text into an IR; raises ParseError on mismatch."""
    return _Parser(text, line_map, source_file=source_file, config=config or ParserConfig()).parse()
