"""MCP server exposing the vault index to assistants and tooling."""

import atexit
import json
import logging
import uuid
from typing import Any, Optional

import anyio.to_thread
from mcp.server.fastmcp import FastMCP

from graphon_index.config import IndexConfig
from graphon_index.exceptions import GraphonIndexError
from graphon_index.observability import timed_operation
from graphon_index.services.vault_service import VaultService

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2_000


def _check_query_length(query: str) -> str:
    """Reject overlong free-text queries; blank ones are left to the query engine."""
    if len(query) > MAX_QUERY_LENGTH:
        raise ValueError(f"Query exceeds maximum length of {MAX_QUERY_LENGTH} characters")
    return query.strip()


def _dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, default=str)


class GraphonIndexMcpServer:
    """MCP server for one vault's index.

    Args:
        config: Index configuration. Ignored when ``service`` is given.
        service: Pre-built vault service, mainly for tests.
    """

    def __init__(
        self,
        config: Optional[IndexConfig] = None,
        service: Optional[VaultService] = None,
    ):
        self.config = config or (service.config if service is not None else IndexConfig())
        self.mcp = FastMCP(self.config.server_name, version=self.config.server_version)
        self.service = service or VaultService(self.config)
        self._closed = False

        atexit.register(self._shutdown)
        self._register_tools()

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.service.shutdown()
        except Exception as e:
            logger.warning(f"Error during shutdown: {e}")

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, GraphonIndexError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error [{error.code.name}]: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input: {error} (ref: {error_id})"
        elif isinstance(error, (IOError, OSError)):
            # Don't expose paths
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="graphon_list_files")
        def graphon_list_files() -> str:
            """List the vault's folders and notes as a nested tree."""
            with timed_operation("graphon_list_files"):
                try:
                    tree = self.service.list_files()
                    return _dumps([node.model_dump() for node in tree])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_read_file")
        def graphon_read_file(path: str) -> str:
            """Read a note's raw text.

            Args:
                path: Vault-relative path, e.g. "projects/plan.md"
            """
            with timed_operation("graphon_read_file"):
                try:
                    content = self.service.read_file(path)
                    if content is None:
                        return f"Note not found: {path}"
                    return content
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_search")
        def graphon_search(query: str) -> str:
            """Full-text search over note titles, paths and content.

            Args:
                query: Words to search for; each word matches as a prefix
            """
            with timed_operation("graphon_search", query=query[:30] if query else None) as op:
                try:
                    hits = self.service.search_notes(_check_query_length(query or ""))
                    op["result_count"] = len(hits)
                    return _dumps([hit.to_json_dict() for hit in hits])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_graph")
        def graphon_graph() -> str:
            """Get the link graph: notes, ghost notes and the links between them."""
            with timed_operation("graphon_graph") as op:
                try:
                    graph = self.service.get_graph_data()
                    op["node_count"] = len(graph.nodes)
                    op["edge_count"] = len(graph.edges)
                    return _dumps(graph.to_json_dict())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_tasks")
        def graphon_tasks(include_completed: bool = True) -> str:
            """List the checkbox tasks of every note.

            Args:
                include_completed: Include tasks that are already checked
            """
            with timed_operation("graphon_tasks") as op:
                try:
                    tasks = self.service.get_all_tasks()
                    if not include_completed:
                        tasks = [task for task in tasks if not task.completed]
                    op["result_count"] = len(tasks)
                    return _dumps([task.to_json_dict() for task in tasks])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_related")
        def graphon_related(path: str) -> str:
            """Find the notes most similar to a note.

            Args:
                path: Vault-relative path of the note
            """
            with timed_operation("graphon_related") as op:
                try:
                    notes = self.service.get_related_notes(path)
                    op["result_count"] = len(notes)
                    return _dumps([note.to_json_dict() for note in notes])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_semantic_search")
        def graphon_semantic_search(query: str) -> str:
            """Rank notes by meaning rather than exact words.

            Args:
                query: Free-text description of what to find
            """
            with timed_operation("graphon_semantic_search") as op:
                try:
                    notes = self.service.semantic_search(_check_query_length(query or ""))
                    op["result_count"] = len(notes)
                    return _dumps([note.to_json_dict() for note in notes])
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_sync")
        async def graphon_sync(wait: bool = True) -> str:
            """Re-index the vault.

            Args:
                wait: Run the pass now and return its report; otherwise
                    schedule a background pass and return immediately
            """
            with timed_operation("graphon_sync"):
                try:
                    if not wait:
                        self.service.notify_changed()
                        return "Sync scheduled."
                    # The pass may take a while; keep the event loop free
                    report = await anyio.to_thread.run_sync(self.service.sync_now)
                    return _dumps(report.to_json_dict())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="graphon_status")
        def graphon_status() -> str:
            """Get index statistics, sync state and operation metrics."""
            with timed_operation("graphon_status"):
                try:
                    return _dumps(self.service.status())
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Load the vault and run the MCP server."""
        self.service.start()
        self.mcp.run()
