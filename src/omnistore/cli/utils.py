"""
CLI utility helpers — credential building, output formatting and error reporting.
"""

from __future__ import annotations

import json
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from omnistore.core.adapters.registry import Engine, create_default_engine
from omnistore.core.errors import OmnistoreError
from omnistore.core.models import Credential, MutationResult, QueryResult
from omnistore.core.settings import load_settings

console = Console()
err_console = Console(stderr=True)


# ── Connection helpers ───────────────────────────────────────────────────


def parse_options(pairs: list[str] | None) -> dict[str, str]:
    """``["sslmode=require", ...]`` -> ``{"sslmode": "require"}``."""
    options: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--option")
        options[key.strip()] = value
    return options


def parse_filters(pairs: list[str] | None) -> dict[str, object]:
    """``--where`` pairs; values that parse as JSON literals (``1``,
    ``true``, ``null``) keep that type, anything else is a string."""
    filters: dict[str, object] = {}
    for key, raw in parse_options(pairs).items():
        try:
            filters[key] = json.loads(raw)
        except ValueError:
            filters[key] = raw
    return filters


def build_credential(
    engine_type: str,
    *,
    host: str = "",
    port: int | None = None,
    user: str = "",
    password: str | None = None,
    database: str = "",
    schema: str = "",
    options: list[str] | None = None,
) -> Credential:
    """Credential from command-line options; prompts for a password when a
    user is given without one on an interactive terminal."""
    if user and password is None and sys.stdin.isatty():
        password = typer.prompt("Password", hide_input=True, default="", show_default=False)
    with reporting_errors():
        return Credential(
            engine_type,
            host=host,
            port=port,
            username=user,
            password=password or "",
            database=database,
            schema=schema,
            advanced=parse_options(options),
        )


def make_engine() -> Engine:
    return create_default_engine(load_settings())


@contextmanager
def reporting_errors() -> Iterator[None]:
    """Print an OmnistoreError with its normalized kind and exit 1."""
    try:
        yield
    except OmnistoreError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.kind.value}): {e.message}")
        if e.engine_message and e.engine_message != e.message:
            err_console.print(f"[dim]{e.engine_message}[/dim]")
        raise typer.Exit(code=1) from None


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / dict to plain dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def output_items(items: list[Any], *, as_json: bool = False, title: str = "") -> None:
    """Render a list of dataclasses/dicts."""
    if as_json:
        console.print_json(json.dumps([_to_dict(i) for i in items], default=str))
        return
    if not items:
        console.print("[dim]No items.[/dim]")
        return
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*(str(v) for v in _to_dict(item).values()))
    console.print(table)


def output_query(result: QueryResult, *, as_json: bool = False, title: str = "") -> None:
    """Render a ``QueryResult`` with paging info."""
    if as_json:
        payload = {
            "columns": [asdict(c) for c in result.columns],
            "rows": [row.to_jsonable() for row in result.rows],
            "total": result.total_count,
            "offset": result.offset,
            "limit": result.limit,
            "ordered": result.ordered,
            "warnings": [w.message for w in result.warnings],
        }
        console.print_json(json.dumps(payload, default=str))
        return

    for warning in result.warnings:
        err_console.print(f"[yellow]Warning[/yellow] ({warning.kind.value}): {warning.message}")
    if not result.rows:
        console.print("[dim]No rows.[/dim]")
        return

    table = Table(title=title or None, show_lines=False, pad_edge=False)
    names = [c.name for c in result.columns] or result.rows[0].attributes
    for name in names:
        table.add_column(name, overflow="fold")
    for row in result.rows:
        table.add_row(*(_cell(row.get(name)) for name in names))
    console.print(table)

    if result.total_count is not None:
        console.print(
            f"\n[dim]Showing {len(result.rows)} of {result.total_count}"
            f" (offset {result.offset})[/dim]"
        )


def output_mutation(result: MutationResult, *, as_json: bool = False) -> None:
    if as_json:
        payload = {"affected": result.affected, "warnings": [w.message for w in result.warnings]}
        console.print_json(json.dumps(payload))
        return
    for warning in result.warnings:
        err_console.print(f"[yellow]Warning[/yellow] ({warning.kind.value}): {warning.message}")
    console.print(f"[green]{result.affected} row(s) affected[/green]")


def _cell(value: Any) -> str:
    return "" if value is None else value.display()
