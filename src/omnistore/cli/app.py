"""
Root Typer application for the omnistore CLI.

Every command takes the same connection options and talks to the engine
through the registry, exactly as a library caller would.
"""

from __future__ import annotations

import typer
from typer import Typer

from omnistore.cli.utils import (
    build_credential,
    console,
    make_engine,
    output_items,
    output_mutation,
    output_query,
    parse_filters,
    reporting_errors,
)
from omnistore.core.conditions import SortKey, from_mapping
from omnistore.core.logging import configure_logging
from omnistore.core.models import MutationResult
from omnistore.core.settings import load_settings

app = Typer(
    name="omnistore",
    help="omnistore — browse and query any supported database from one command line.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from omnistore import __version__

        typer.echo(f"omnistore {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level for stderr logs (default from OMNISTORE_LOG_LEVEL)."),
    log_json: bool | None = typer.Option(None, "--log-json/--no-log-json", help="Emit logs as JSON."),
) -> None:
    """omnistore CLI — list, browse and query databases."""
    settings = load_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_json if log_json is None else log_json,
    )


# ── Shared options ───────────────────────────────────────────────────────

ENGINE_TYPE = typer.Option(..., "--type", "-t", help="Engine: postgresql, mysql, mariadb, sqlite, mongodb, redis, elasticsearch.")
HOST = typer.Option("", "--host", help="Server host.")
PORT = typer.Option(None, "--port", "-p", help="Server port (engine default if omitted).")
USER = typer.Option("", "--user", "-u", help="User name.")
PASSWORD = typer.Option(
    None, "--password", envvar="OMNISTORE_PASSWORD", hide_input=True,
    help="Password; prompted when --user is given without one.",
)
DATABASE = typer.Option("", "--database", "-d", help="Database name (file path for SQLite, index for Redis).")
SCHEMA = typer.Option("", "--schema", "-s", help="Schema inside the database.")
OPTION = typer.Option(None, "--option", "-o", help="Engine option as KEY=VALUE; repeatable.")
JSON_OUT = typer.Option(False, "--json", help="JSON output.")


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def engines(json_out: bool = JSON_OUT) -> None:
    """List registered engines and their capabilities."""
    with make_engine() as engine:
        rows = [
            {**d, "capabilities": ", ".join(d["capabilities"])} if not json_out else d
            for d in engine.describe()
        ]
    output_items(rows, as_json=json_out, title="Engines")


@app.command()
def ping(
    engine_type: str = ENGINE_TYPE,
    host: str = HOST,
    port: int | None = PORT,
    user: str = USER,
    password: str | None = PASSWORD,
    database: str = DATABASE,
    schema: str = SCHEMA,
    option: list[str] | None = OPTION,
) -> None:
    """Check that the engine is reachable with these credentials."""
    credential = build_credential(
        engine_type, host=host, port=port, user=user, password=password,
        database=database, schema=schema, options=option,
    )
    with reporting_errors(), make_engine() as engine:
        engine.check_connection(credential)
    console.print(f"[green]OK[/green] {credential.engine_label} is reachable")


@app.command()
def databases(
    engine_type: str = ENGINE_TYPE,
    host: str = HOST,
    port: int | None = PORT,
    user: str = USER,
    password: str | None = PASSWORD,
    database: str = DATABASE,
    schema: str = SCHEMA,
    option: list[str] | None = OPTION,
    json_out: bool = JSON_OUT,
) -> None:
    """List databases or schemas."""
    credential = build_credential(
        engine_type, host=host, port=port, user=user, password=password,
        database=database, schema=schema, options=option,
    )
    with reporting_errors(), make_engine() as engine:
        names = engine.list_databases(credential)
    output_items([{"name": n} for n in names], as_json=json_out, title="Databases")


@app.command()
def units(
    engine_type: str = ENGINE_TYPE,
    host: str = HOST,
    port: int | None = PORT,
    user: str = USER,
    password: str | None = PASSWORD,
    database: str = DATABASE,
    schema: str = SCHEMA,
    option: list[str] | None = OPTION,
    json_out: bool = JSON_OUT,
) -> None:
    """List tables, collections, key namespaces or indices."""
    credential = build_credential(
        engine_type, host=host, port=port, user=user, password=password,
        database=database, schema=schema, options=option,
    )
    with reporting_errors(), make_engine() as engine:
        label = engine.plugin_for(credential.engine_type).storage_unit_label
        found = engine.list_storage_units(credential)
    rows = [
        {
            "name": u.name,
            "kind": u.kind,
            "rows": u.row_count,
            "attributes": [f"{a.name}:{a.type}" for a in u.attributes]
            if json_out else ", ".join(a.name for a in u.attributes),
        }
        for u in found
    ]
    output_items(rows, as_json=json_out, title=label)


@app.command()
def browse(
    unit: str = typer.Argument(..., help="Table, collection, key pattern or index."),
    engine_type: str = ENGINE_TYPE,
    host: str = HOST,
    port: int | None = PORT,
    user: str = USER,
    password: str | None = PASSWORD,
    database: str = DATABASE,
    schema: str = SCHEMA,
    option: list[str] | None = OPTION,
    where: list[str] | None = typer.Option(None, "--where", "-w", help="Equality filter ATTR=VALUE; repeatable."),
    order: list[str] | None = typer.Option(None, "--order", help="Sort attribute; prefix with - for descending."),
    offset: int = typer.Option(0, "--offset", min=0),
    limit: int = typer.Option(50, "--limit", min=1),
    json_out: bool = JSON_OUT,
) -> None:
    """Browse rows of a storage unit."""
    credential = build_credential(
        engine_type, host=host, port=port, user=user, password=password,
        database=database, schema=schema, options=option,
    )
    filters = parse_filters(where)
    condition = from_mapping(filters) if filters else None
    order_by = [SortKey(o.lstrip("-"), descending=o.startswith("-")) for o in order or []]
    with reporting_errors(), make_engine() as engine:
        result = engine.browse_rows(
            credential, unit, condition=condition, order_by=order_by, offset=offset, limit=limit
        )
    output_query(result, as_json=json_out, title=unit)


@app.command("exec")
def exec_(
    statement: str = typer.Argument(..., help="Native statement: SQL, a MongoDB command, a Redis command or an Elasticsearch request."),
    engine_type: str = ENGINE_TYPE,
    host: str = HOST,
    port: int | None = PORT,
    user: str = USER,
    password: str | None = PASSWORD,
    database: str = DATABASE,
    schema: str = SCHEMA,
    option: list[str] | None = OPTION,
    json_out: bool = JSON_OUT,
) -> None:
    """Run a raw statement in the engine's own language."""
    credential = build_credential(
        engine_type, host=host, port=port, user=user, password=password,
        database=database, schema=schema, options=option,
    )
    with reporting_errors(), make_engine() as engine:
        result = engine.raw_execute(credential, statement)
    if isinstance(result, MutationResult):
        output_mutation(result, as_json=json_out)
    else:
        output_query(result, as_json=json_out)


@app.command()
def graph(
    engine_type: str = ENGINE_TYPE,
    host: str = HOST,
    port: int | None = PORT,
    user: str = USER,
    password: str | None = PASSWORD,
    database: str = DATABASE,
    schema: str = SCHEMA,
    option: list[str] | None = OPTION,
    json_out: bool = JSON_OUT,
) -> None:
    """Show relationships between storage units."""
    credential = build_credential(
        engine_type, host=host, port=port, user=user, password=password,
        database=database, schema=schema, options=option,
    )
    with reporting_errors(), make_engine() as engine:
        edges = engine.get_graph(credential)
    rows = [
        {
            "source": e.source,
            "target": e.target,
            "relation": e.relation,
            "columns": ", ".join(f"{a}->{b}" for a, b in e.columns),
        }
        for e in edges
    ]
    output_items(rows, as_json=json_out, title="Relationships")
