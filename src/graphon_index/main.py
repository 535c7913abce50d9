#!/usr/bin/env python
"""Main entry point for the Graphon index: MCP server and command line."""
import argparse
import json
import logging
import os
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from graphon_index import __version__
from graphon_index.config import IndexConfig
from graphon_index.exceptions import GraphonIndexError
from graphon_index.observability import configure_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Graphon vault index")
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--vault",
        help="Vault folder to index",
        type=str,
        default=os.environ.get("GRAPHON_VAULT_PATH")
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("GRAPHON_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("GRAPHON_LOG_LEVEL", "INFO")
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("GRAPHON_LOG_DIR")
    )
    parser.add_argument(
        "--embeddings",
        help="Enable note embeddings and semantic search",
        action="store_true",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the MCP server (default)")
    subparsers.add_parser("sync", help="Run one sync pass and print its report")
    search = subparsers.add_parser("search", help="Full-text search")
    search.add_argument("query")
    subparsers.add_parser("graph", help="Print the link graph")
    tasks = subparsers.add_parser("tasks", help="Print all tasks")
    tasks.add_argument("--open", action="store_true", help="Only unchecked tasks")
    related = subparsers.add_parser("related", help="Notes similar to a note")
    related.add_argument("path")
    semantic = subparsers.add_parser("semantic", help="Semantic search")
    semantic.add_argument("query")
    subparsers.add_parser("status", help="Print index status")
    return parser.parse_args(argv)


def build_config(args) -> IndexConfig:
    """Build the index config from environment plus command line overrides."""
    overrides = {}
    if args.vault:
        overrides["vault_path"] = Path(args.vault)
    if args.database_path:
        overrides["database_path"] = Path(args.database_path)
    if args.embeddings:
        overrides["embeddings_enabled"] = True
    if args.command not in (None, "serve"):
        # One-shot commands must not leave a watcher running
        overrides["watch_enabled"] = False
    return IndexConfig(**overrides)


def run_command(command: str, args, config: IndexConfig) -> int:
    """Run a one-shot command against a freshly synced index."""
    from graphon_index.services.vault_service import VaultService

    with VaultService(config) as service:
        report = service.start(blocking=True)
        if command == "sync":
            payload = report.to_json_dict()
        elif command == "search":
            payload = [hit.to_json_dict() for hit in service.search_notes(args.query)]
        elif command == "graph":
            payload = service.get_graph_data().to_json_dict()
        elif command == "tasks":
            tasks = service.get_all_tasks()
            if args.open:
                tasks = [task for task in tasks if not task.completed]
            payload = [task.to_json_dict() for task in tasks]
        elif command == "related":
            payload = [note.to_json_dict() for note in service.get_related_notes(args.path)]
        elif command == "semantic":
            payload = [note.to_json_dict() for note in service.semantic_search(args.query)]
        else:
            payload = service.status()
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))
    return 0


def main(argv=None):
    """Run the Graphon index MCP server or a one-shot command."""
    args = parse_args(argv)
    command = args.command or "serve"

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        # The MCP stdio transport owns stdout; logs go to stderr and the log file
        log_dir = configure_logging(log_dir=args.log_dir, level=log_level, console=True)
    except Exception as e:
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    try:
        config = build_config(args)
    except PydanticValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    if command != "serve":
        try:
            sys.exit(run_command(command, args, config))
        except GraphonIndexError as e:
            logger.error(f"[{e.code.name}] {e.message}")
            sys.exit(1)

    from graphon_index.server.mcp_server import GraphonIndexMcpServer

    try:
        logger.info(f"Starting Graphon index MCP server for {config.get_vault_path()}")
        server = GraphonIndexMcpServer(config)
        server.run()
    except GraphonIndexError as e:
        logger.error(f"[{e.code.name}] {e.message}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
