import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .compile.pipeline import compile_source
from .errors import IndentError, ParseError, QueryError, SchemaError
from .ir import IR, canon
from .linter import LintConfig, format_findings, has_errors, lint as run_lint
from .query import run_query
from .serialize import dumps_ir, load_ir, validate as validate_payload
from .settings import Settings

app = typer.Typer(add_completion=False, help="FlowScript compiler: parse, lint, validate and query.")
query_app = typer.Typer(add_completion=False, help="Structural queries over a FlowScript graph.")
app.add_typer(query_app, name="query")

EXIT_FINDINGS = 1
EXIT_SYNTAX = 2

console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)


def _settings() -> Settings:
    load_dotenv()
    st = Settings()
    logging.basicConfig(
        level=st.log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    return st


def _fail(message: str, code: int) -> typer.Exit:
    err_console.print(f"[red]error[/red] {escape(message)}")
    return typer.Exit(code=code)


def _load(path: Path, st: Settings) -> IR:
    """Compile a .fs source, or load an already serialized .json IR."""
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return load_ir(text)
        return compile_source(text, source_file=str(path), settings=st)
    except (IndentError, ParseError) as e:
        raise _fail(str(e), EXIT_SYNTAX)
    except SchemaError as e:
        for err in e.errors:
            err_console.print(f"[red]schema[/red] {escape(err)}")
        raise typer.Exit(code=EXIT_FINDINGS)


def _resolve(ir: IR, ref: str) -> str:
    # Accept a node id, or the exact (normalised) content of a single node.
    if ir.node(ref) is not None:
        return ref
    matches = [n.id for n in ir.nodes if n.content and n.content == canon(ref)]
    return matches[0] if len(matches) == 1 else ref


def _emit(data: Any, output: Optional[Path] = None, indent: Optional[int] = 2) -> None:
    text = data if isinstance(data, str) else json.dumps(data, indent=indent, ensure_ascii=False)
    if output is None:
        typer.echo(text)
    else:
        output.write_text(text + "\n", encoding="utf-8")
        console.print(f"[green]OK[/green] wrote {escape(str(output))}")


@app.command()
def parse(
    file: Path,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the IR here instead of stdout."),
    compact: bool = typer.Option(False, "--compact", help="Single-line JSON."),
):
    """Compile a .fs file into its JSON graph IR."""
    st = _settings()
    ir = _load(file, st)
    _emit(dumps_ir(ir, indent=None if compact else 2), output)


@app.command()
def lint(
    file: Path,
    as_json: bool = typer.Option(False, "--json", help="Print findings as JSON."),
):
    """Run every semantic rule; exits 1 when any ERROR is found."""
    st = _settings()
    ir = _load(file, st)
    findings = run_lint(
        ir,
        LintConfig(max_nesting_depth=st.max_nesting_depth, max_chain_length=st.max_chain_length),
    )
    if as_json:
        _emit([f.to_dict() for f in findings])
    else:
        typer.echo(format_findings(findings))
    if has_errors(findings):
        raise typer.Exit(code=EXIT_FINDINGS)


@app.command()
def validate(ir_json: Path):
    """Check a serialized IR against the structural schema."""
    _settings()
    try:
        payload = json.loads(ir_json.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise _fail(f"{ir_json}: not JSON ({e})", EXIT_FINDINGS)
    problems = validate_payload(payload)
    if problems:
        for p in problems:
            err_console.print(f"[red]schema[/red] {escape(p)}")
        raise typer.Exit(code=EXIT_FINDINGS)
    console.print(f"[green]OK[/green] {escape(str(ir_json))} is a valid IR")


def _query(file: Path, operation: str, **args: Any) -> None:
    st = _settings()
    ir = _load(file, st)
    for key in ("node_id", "question_id", "scope"):
        if args.get(key):
            args[key] = _resolve(ir, args[key])
    try:
        result = run_query(ir, operation, **args)
    except QueryError as e:
        raise _fail(str(e), EXIT_FINDINGS)
    _emit(result)


@query_app.command("why")
def query_why(
    file: Path,
    node: str = typer.Argument(..., help="Node id or exact content."),
    max_depth: Optional[int] = typer.Option(None, "--max-depth"),
    fmt: str = typer.Option("chain", "--format", help="chain | tree | minimal"),
):
    """Trace the causal ancestry of a node."""
    _query(file, "why", node_id=node, max_depth=max_depth, format=fmt)


@query_app.command("what-if")
def query_what_if(
    file: Path,
    node: str = typer.Argument(..., help="Node id or exact content."),
    max_depth: Optional[int] = typer.Option(None, "--max-depth"),
    fmt: str = typer.Option("tree", "--format", help="tree | list | summary"),
):
    """Show everything downstream of a node."""
    _query(file, "what_if", node_id=node, max_depth=max_depth, format=fmt)


@query_app.command("tensions")
def query_tensions(
    file: Path,
    group_by: str = typer.Option("axis", "--group-by", help="axis | node | none"),
    axis: Optional[List[str]] = typer.Option(None, "--axis", help="Only these axes (repeatable)."),
    context: bool = typer.Option(False, "--context", help="Include the causes of each tension's source."),
    scope: Optional[str] = typer.Option(None, "--scope", help="Restrict to what is reachable from this node."),
):
    """List tradeoffs, grouped by axis by default."""
    _query(
        file,
        "tensions",
        group_by=group_by,
        filter_by_axis=axis or None,
        include_context=context,
        scope=scope,
    )


@query_app.command("blocked")
def query_blocked(
    file: Path,
    since: Optional[str] = typer.Option(None, "--since", help="Only blockers since this ISO date."),
    fmt: str = typer.Option("detailed", "--format", help="detailed | summary | list"),
):
    """Rank blocked work by impact."""
    _query(file, "blocked", since=since, format=fmt)


@query_app.command("alternatives")
def query_alternatives(
    file: Path,
    question: str = typer.Argument(..., help="Question node id or exact content."),
    fmt: str = typer.Option("comparison", "--format", help="comparison | simple | tree"),
    show_rejected: bool = typer.Option(False, "--show-rejected", help="Include rejection reasoning."),
):
    """Reconstruct how a question was decided."""
    _query(file, "alternatives", question_id=question, format=fmt, show_rejected_reasons=show_rejected)


if __name__ == "__main__":
    app()
