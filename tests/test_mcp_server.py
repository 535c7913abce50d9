# tests/test_mcp_server.py
"""Tests for the MCP server implementation."""
import functools
import json
import threading
from unittest.mock import MagicMock, patch

import anyio
import pytest

from graphon_index.exceptions import ErrorCode, QueryError
from graphon_index.server.mcp_server import MAX_QUERY_LENGTH, GraphonIndexMcpServer
from tests.conftest import write_note


class TestMcpServer:
    """Tests for the GraphonIndexMcpServer class, backed by a real vault service."""

    @pytest.fixture(autouse=True)
    def server(self, vault, vault_service):
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        # Capture the tool functions when they are registered
        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        self.mock_mcp.tool = mock_tool_decorator

        with patch("graphon_index.server.mcp_server.FastMCP", return_value=self.mock_mcp), \
                patch("graphon_index.server.mcp_server.atexit"):
            self.server = GraphonIndexMcpServer(service=vault_service)

        write_note(vault, "A.md", "# Alpha\n- [ ] buy milk\n- [x] call mom\n[[B]]")
        vault_service.sync_now()
        self.service = vault_service
        yield self.server

    def call(self, name, **kwargs):
        return self.registered_tools[name](**kwargs)

    def test_all_tools_registered(self):
        assert set(self.registered_tools) == {
            "graphon_list_files",
            "graphon_read_file",
            "graphon_search",
            "graphon_graph",
            "graphon_tasks",
            "graphon_related",
            "graphon_semantic_search",
            "graphon_sync",
            "graphon_status",
        }

    def test_search_tool(self):
        hits = json.loads(self.call("graphon_search", query="milk"))
        assert hits[0]["path"] == "A.md"
        assert hits[0]["title"] == "Alpha"
        assert "milk" in hits[0]["highlight"]

    def test_search_tool_blank_query_returns_nothing(self):
        assert json.loads(self.call("graphon_search", query="")) == []
        assert json.loads(self.call("graphon_search", query="  ")) == []

    def test_search_tool_rejects_overlong_query(self):
        result = self.call("graphon_search", query="x" * (MAX_QUERY_LENGTH + 1))
        assert result.startswith("Error: Invalid input")

    def test_graph_tool(self):
        graph = json.loads(self.call("graphon_graph"))
        assert {node["id"] for node in graph["nodes"]} == {"A", "B"}
        assert graph["edges"] == [{"source": "A", "target": "B"}]

    def test_tasks_tool(self):
        tasks = json.loads(self.call("graphon_tasks"))
        assert [t["content"] for t in tasks] == ["buy milk", "call mom"]
        open_tasks = json.loads(self.call("graphon_tasks", include_completed=False))
        assert [t["content"] for t in open_tasks] == ["buy milk"]
        assert open_tasks[0]["filePath"] == "A.md"

    def test_related_tool_without_embeddings(self):
        assert json.loads(self.call("graphon_related", path="A.md")) == []

    def test_semantic_search_unavailable(self):
        result = self.call("graphon_semantic_search", query="anything")
        assert result.startswith("Error [SEMANTIC_UNAVAILABLE]")
        assert json.loads(self.call("graphon_semantic_search", query=" ")) == []

    def test_read_and_list_tools(self):
        assert self.call("graphon_read_file", path="A.md").startswith("# Alpha")
        assert self.call("graphon_read_file", path="missing.md") == "Note not found: missing.md"
        assert "PATH_TRAVERSAL_DETECTED" in self.call("graphon_read_file", path="../x.md")
        tree = json.loads(self.call("graphon_list_files"))
        assert tree[0]["name"] == "A.md"

    def call_async(self, name, **kwargs):
        return anyio.run(functools.partial(self.registered_tools[name], **kwargs))

    def test_sync_tool(self, vault):
        write_note(vault, "C.md", "new")
        report = json.loads(self.call_async("graphon_sync"))
        assert report["added"] == 1
        assert report["unchanged"] == 1
        assert self.call_async("graphon_sync", wait=False) == "Sync scheduled."
        assert self.service.wait_until_idle(timeout=10)

    def test_sync_tool_runs_pass_off_the_event_loop(self):
        real_sync_now = self.service.sync_now
        threads = []

        def recording_sync_now():
            threads.append(threading.get_ident())
            return real_sync_now()

        self.service.sync_now = recording_sync_now
        report = json.loads(self.call_async("graphon_sync"))
        assert report["unchanged"] == 1
        assert threads and threads[0] != threading.get_ident()

    def test_status_tool(self):
        status = json.loads(self.call("graphon_status"))
        assert status["files"] == 1
        assert status["search_records"] == 1
        assert status["embedding"]["enabled"] is False

    def test_error_handling(self):
        domain_error = QueryError("bad query", code=ErrorCode.QUERY_FAILED)
        assert self.server.format_error_response(domain_error) == "Error [QUERY_FAILED]: bad query"

        result = self.server.format_error_response(ValueError("Invalid input"))
        assert "Error: Invalid input" in result

        io_error = IOError("/home/user/vault/secret.md not found")
        result = self.server.format_error_response(io_error)
        assert "file system error" in result.lower()
        assert "/home/user" not in result

        result = self.server.format_error_response(Exception("DatabaseError: xyz"))
        assert "unexpected error" in result.lower()
        assert "DatabaseError" not in result
