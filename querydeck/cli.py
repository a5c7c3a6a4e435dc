"""Command-line entry point: manage connections and run a single query."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Sequence

from .config import STATE_FILE, AppConfig, load_config
from .connections import ConnectionRegistry
from .drivers import asyncpg_driver_factory
from .errors import QueryExecutionError, QuerydeckError
from .history import QueryHistory
from .models import ConnectionSpec, QueryResult
from .query import QueryExecutor
from .stores import CredentialStore, InMemoryCredentialStore, JsonFileMetadataStore, KeyringCredentialStore

LOG = logging.getLogger(__name__)


def build_registry(config: AppConfig) -> ConnectionRegistry:
    """Wire the registry with the configured stores and the asyncpg driver."""

    credentials: CredentialStore
    if config.credential_backend == "memory":
        credentials = InMemoryCredentialStore()
    else:
        credentials = KeyringCredentialStore()
    return ConnectionRegistry(
        credentials,
        JsonFileMetadataStore(STATE_FILE),
        asyncpg_driver_factory(connect_timeout=config.connect_timeout),
        config=config,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="querydeck", description=__doc__)
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("connections", help="List stored connections.")

    add = commands.add_parser("add", help="Test and store a new connection.")
    add.add_argument("--name", required=True)
    add.add_argument("--host", required=True, help="Host name, optionally host:port.")
    add.add_argument("--port", type=int)
    add.add_argument("--user", required=True)
    add.add_argument("--database")
    add.add_argument("--schema")

    remove = commands.add_parser("remove", help="Delete a stored connection.")
    remove.add_argument("connection_id")

    run = commands.add_parser("run", help="Execute one SQL statement.")
    run.add_argument("sql")
    run.add_argument("--connection", help="Connection id (defaults to the first stored connection).")
    run.add_argument("--max-rows", type=int, help="Override max_result_rows for this run.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    if getattr(args, "max_rows", None):
        config = config.with_updates(max_result_rows=args.max_rows)
    try:
        return asyncio.run(_dispatch(args, config))
    except QuerydeckError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


async def _dispatch(args: argparse.Namespace, config: AppConfig) -> int:
    registry = build_registry(config)
    try:
        if args.command == "connections":
            for record in registry.get_connections():
                print(f"{record.id}\t{record.name}\t{record.user}@{record.host}:{record.port}")
        elif args.command == "add":
            spec = ConnectionSpec(
                name=args.name,
                host=args.host,
                port=args.port,
                user=args.user,
                password=getpass.getpass(f"Password for {args.user}: "),
                database=args.database,
                schema=args.schema,
            )
            print(await registry.add_connection(spec))
        elif args.command == "remove":
            await registry.remove_connection(args.connection_id)
        elif args.command == "run":
            await _run_query(registry, config, args.sql, args.connection)
        return 0
    finally:
        await registry.close_all()


async def _run_query(registry: ConnectionRegistry, config: AppConfig, sql: str, connection_id: str | None) -> None:
    if connection_id is None:
        connections = registry.get_connections()
        connection_id = connections[0].id if connections else None
    if connection_id is not None:
        registry.set_active_connection(connection_id)
    history = QueryHistory(registry.metadata, max_size=config.max_query_history_size)
    executor = QueryExecutor(registry)
    try:
        result = await asyncio.wait_for(executor.execute(sql), timeout=executor.query_timeout)
    except asyncio.TimeoutError:
        history.add(sql, 0, error="timeout")
        raise QueryExecutionError(f"Query exceeded {executor.query_timeout:g}s") from None
    except QuerydeckError as exc:
        history.add(sql, 0, error=str(exc))
        raise
    history.add(sql, result.row_count)
    _print_result(result)


def _print_result(result: QueryResult) -> None:
    if result.columns:
        print("\t".join(result.columns))
        for row in result.rows:
            print("\t".join("" if row.get(column) is None else str(row.get(column)) for column in result.columns))
    print(f"({result.row_count} row(s), {result.execution_time_ms} ms)", file=sys.stderr)


__all__ = ["build_parser", "build_registry", "main"]
