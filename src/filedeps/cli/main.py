#!/usr/bin/env python3
"""Main CLI entry point for filedeps."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from .. import __version__
from ..config.parser import CONFIG_DIR, CONFIG_FILE, default_config_yaml, load_config_simple
from ..engine import ClosureEngine, EdgeExtractor, GraphAssembler
from ..engine.params import parse_role_filter
from ..exceptions import FileDepsError
from ..logging import RequestContext, configure_logging
from ..models.occurrence import IndexFile
from ..storage.base import get_storage


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="File-level dependency graphs from symbol occurrence indexes")
    parser.add_argument("--version", action="version", version=f"filedeps {__version__}")

    # Options shared by every command that touches the store
    store_options = argparse.ArgumentParser(add_help=False)
    store_options.add_argument("--db", help="SQLite database path (overrides storage.sqlite_path)")
    store_options.add_argument(
        "--backend", choices=["sqlite", "postgres"], help="Storage backend (overrides storage.backend)"
    )
    store_options.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Set logging level (default: WARNING)",
    )
    store_options.add_argument(
        "-o",
        "--output",
        type=str,
        help="Output file path for the JSON result (default: print to stdout)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Init command
    init_parser = subparsers.add_parser("init", help="Create .filedeps/config.yaml in the current directory")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing configuration")

    # Load-index command
    load_parser = subparsers.add_parser(
        "load-index", parents=[store_options], help="Load an occurrence index file (YAML or JSON)"
    )
    load_parser.add_argument("owner_id")
    load_parser.add_argument("repo_url")
    load_parser.add_argument("index_file", help="Path to the index file")

    # Extract command
    extract_parser = subparsers.add_parser(
        "extract", parents=[store_options], help="Rebuild the dependency edges of a repository"
    )
    extract_parser.add_argument("owner_id")
    extract_parser.add_argument("repo_url")
    extract_parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Fail instead of waiting when an extraction of the same repository is running",
    )

    # Closure command
    closure_parser = subparsers.add_parser(
        "closure", parents=[store_options], help="Transitive dependencies of one file"
    )
    closure_parser.add_argument("owner_id")
    closure_parser.add_argument("repo_url")
    closure_parser.add_argument("root_file")
    closure_parser.add_argument(
        "--max-depth", type=int, help="Maximum hop count (default: query.default_max_depth)"
    )

    # Graph command
    graph_parser = subparsers.add_parser(
        "graph", parents=[store_options], help="Full repository graph with cycle edges flagged"
    )
    graph_parser.add_argument("owner_id")
    graph_parser.add_argument("repo_url")

    # References command
    references_parser = subparsers.add_parser(
        "references", parents=[store_options], help="Every occurrence of a symbol"
    )
    references_parser.add_argument("owner_id")
    references_parser.add_argument("repo_url")
    references_parser.add_argument("symbol")
    references_parser.add_argument("--role", choices=["definition", "reference"], help="Filter by role")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start API server")
    server_parser.add_argument("--host", help="Host to bind server to (default: server.host)")
    server_parser.add_argument("--port", type=int, help="Port to bind server to (default: server.port)")

    return parser


def main(argv=None):
    """Main CLI function."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command == "init":
        init_project(args)
        return

    cli_overrides = _cli_overrides(args)
    try:
        config = load_config_simple(Path.cwd(), cli_overrides)
    except FileDepsError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "server":
        start_server(args, config)
        return

    configure_logging(args.log_level)
    commands = {
        "load-index": load_index,
        "extract": extract,
        "closure": closure,
        "graph": graph,
        "references": references,
    }

    try:
        with RequestContext(command=args.command, owner_id=args.owner_id, repo_url=args.repo_url):
            result = asyncio.run(commands[args.command](args, config))
    except FileDepsError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    _write_output(result, args.output)


def _cli_overrides(args) -> dict:
    overrides = {}
    if getattr(args, "db", None):
        overrides.setdefault("storage", {})["sqlite_path"] = args.db
    if getattr(args, "backend", None):
        overrides.setdefault("storage", {})["backend"] = args.backend
    if getattr(args, "host", None):
        overrides.setdefault("server", {})["host"] = args.host
    if getattr(args, "port", None):
        overrides.setdefault("server", {})["port"] = args.port
    return overrides


def _write_output(content: str, output):
    if output:
        Path(output).write_text(content + "\n", encoding="utf-8")
        print(f"Result saved to: {output}", file=sys.stderr)
    else:
        print(content)


async def _open_store(config):
    store = get_storage(config)
    await store.initialize()
    return store


async def load_index(args, config) -> str:
    """Load an occurrence index file for one repository."""
    index_path = Path(args.index_file)
    try:
        with open(index_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        index = IndexFile.model_validate(data)
    except (OSError, yaml.YAMLError) as e:
        raise FileDepsError(f"Cannot read index file {index_path}: {e}") from e
    except ValidationError as e:
        raise FileDepsError(f"Invalid index file {index_path}: {e}") from e

    store = await _open_store(config)
    try:
        occurrence_count = await store.load_index(args.owner_id, args.repo_url, index.documents)
    finally:
        await store.close()

    return json.dumps({
        "ownerId": args.owner_id,
        "repoUrl": args.repo_url,
        "documentCount": len(index.documents),
        "occurrenceCount": occurrence_count,
    }, indent=2)


async def extract(args, config) -> str:
    """Rebuild the edge set of a repository."""
    store = await _open_store(config)
    try:
        extractor = EdgeExtractor(store, wait_for_lock=config.extraction.wait_for_lock)
        edge_count = await extractor.extract_edges(
            args.owner_id, args.repo_url, wait=False if args.no_wait else None
        )
    finally:
        await store.close()

    return json.dumps({
        "ownerId": args.owner_id,
        "repoUrl": args.repo_url,
        "edgeCount": edge_count,
    }, indent=2)


async def closure(args, config) -> str:
    """Compute the transitive dependencies of one file."""
    max_depth = args.max_depth if args.max_depth is not None else config.query.default_max_depth
    store = await _open_store(config)
    try:
        engine = ClosureEngine(store, max_depth_limit=config.query.max_depth_limit)
        result = await engine.compute_closure(args.owner_id, args.repo_url, args.root_file, max_depth)
    finally:
        await store.close()
    return result.model_dump_json(by_alias=True, indent=2)


async def graph(args, config) -> str:
    """Assemble the full repository graph."""
    store = await _open_store(config)
    try:
        view = await GraphAssembler(store).assemble_graph(args.owner_id, args.repo_url)
    finally:
        await store.close()
    return view.model_dump_json(by_alias=True, indent=2)


async def references(args, config) -> str:
    """List every occurrence of a symbol."""
    role = parse_role_filter(args.role)
    store = await _open_store(config)
    try:
        results = await store.find_references(args.owner_id, args.repo_url, args.symbol, role=role)
    finally:
        await store.close()
    return json.dumps([r.model_dump(mode="json", by_alias=True) for r in results], indent=2)


def start_server(args, config):
    """Start the API server."""
    import uvicorn

    from ..api.server import create_app

    host = config.server.host
    port = config.server.port
    print(f"Starting filedeps API server on {host}:{port}")
    print(f"Health check: http://{host}:{port}/health")
    print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(
        create_app(config),
        host=host,
        port=port,
        log_level=config.server.log_level.lower(),
    )


def init_project(args):
    """Initialize a new filedeps project."""
    config_dir = Path.cwd() / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE
    if config_path.exists() and not args.force:
        print(f"Error: {CONFIG_DIR}/{CONFIG_FILE} already exists. Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    config_dir.mkdir(exist_ok=True)
    config_path.write_text(default_config_yaml(), encoding="utf-8")

    gitignore_path = config_dir / ".gitignore"
    gitignore_path.write_text("# filedeps databases and logs\n*.db\n*.db-wal\n*.db-shm\n*.log\n", encoding="utf-8")

    print(f"✓ Created {CONFIG_DIR}/{CONFIG_FILE}")
    print(f"✓ Created {CONFIG_DIR}/.gitignore")


if __name__ == "__main__":
    main()
