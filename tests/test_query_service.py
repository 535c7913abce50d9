# tests/test_query_service.py
"""Tests for the query engine: search, graph, tasks, related and semantic search."""
import time

import numpy as np
import pytest

from graphon_index.exceptions import ErrorCode, QueryError
from graphon_index.models.schema import GraphNode
from graphon_index.services.query_service import (cosine_similarity, folder_classifier,
                                                  rank_by_similarity)
from graphon_index.services.vault_service import VaultService
from tests.conftest import write_note
from tests.fakes import BagOfWordsEmbeddingProvider, FailingEmbeddingProvider


def edges_of(graph):
    return sorted((edge.source, edge.target) for edge in graph.edges)


def nodes_of(graph):
    return {node.id: node for node in graph.nodes}


class TestSearch:
    """Full-text search."""

    def test_search_finds_word_with_highlight(self, vault, vault_service):
        write_note(vault, "A.md", "- [ ] buy milk")
        vault_service.sync_now()
        hits = vault_service.search_notes("milk")
        assert [hit.path for hit in hits] == ["A.md"]
        assert "milk" in hits[0].highlight
        assert "<b>" in hits[0].highlight

    def test_prefix_matching(self, vault, vault_service):
        write_note(vault, "A.md", "programming in python")
        vault_service.sync_now()
        assert [hit.path for hit in vault_service.search_notes("progr")] == ["A.md"]

    def test_title_match(self, vault, vault_service):
        write_note(vault, "plans.md", "# Roadmap\nnothing else")
        vault_service.sync_now()
        hits = vault_service.search_notes("roadmap")
        assert hits[0].title == "Roadmap"

    def test_best_match_first(self, vault, vault_service):
        write_note(vault, "one.md", "apple banana cherry date elderberry fig grape")
        write_note(vault, "many.md", "apple apple apple apple")
        vault_service.sync_now()
        hits = vault_service.search_notes("apple")
        assert hits[0].path == "many.md"
        assert hits[0].score >= hits[1].score

    @pytest.mark.parametrize("query", ["", "   ", '"*()', "AND OR NOT"])
    def test_odd_queries_do_not_raise(self, vault, vault_service, query):
        write_note(vault, "A.md", "text")
        vault_service.sync_now()
        assert isinstance(vault_service.search_notes(query), list)

    def test_removed_note_not_found(self, vault, vault_service):
        write_note(vault, "A.md", "unique zebra")
        vault_service.sync_now()
        (vault / "A.md").unlink()
        vault_service.sync_now()
        assert vault_service.search_notes("zebra") == []

    def test_fallback_search(self, vault, vault_service):
        write_note(vault, "A.md", "# Shopping\nbuy some milk today")
        vault_service.sync_now()
        vault_service.fts_index.available = False
        hits = vault_service.search_notes("milk")
        assert [hit.path for hit in hits] == ["A.md"]
        assert "<b>milk</b>" in hits[0].highlight


class TestGraph:
    """The link graph."""

    def test_ghost_node(self, vault, vault_service):
        write_note(vault, "A.md", "links to [[B]]")
        vault_service.sync_now()
        graph = vault_service.get_graph_data()
        nodes = nodes_of(graph)
        assert set(nodes) == {"A", "B"}
        assert nodes["A"].exists is True
        assert nodes["B"].exists is False
        assert nodes["B"].group == "ghost"
        assert edges_of(graph) == [("A", "B")]

    def test_link_removal_drops_ghost(self, vault, vault_service):
        write_note(vault, "A.md", "links to [[B]]")
        vault_service.sync_now()
        write_note(vault, "A.md", "no links any more")
        vault_service.sync_now()
        graph = vault_service.get_graph_data()
        assert set(nodes_of(graph)) == {"A"}
        assert graph.edges == []

    def test_resolution_rules(self, vault, vault_service):
        write_note(vault, "A.md", "[[projects/plan]] [[Plan]] [[readme.txt]] [[a]]")
        write_note(vault, "projects/plan.md", "# The Plan\n[[A]]")
        write_note(vault, "readme.txt", "text")
        vault_service.sync_now()
        graph = vault_service.get_graph_data()
        nodes = nodes_of(graph)

        assert all(node.exists for node in graph.nodes)
        assert nodes["projects/plan"].title == "The Plan"
        assert nodes["projects/plan"].group == "projects"
        assert nodes["A"].group == "root"
        # [[projects/plan]] and [[Plan]] collapse into one edge; [[a]] is a self-link
        assert edges_of(graph) == [
            ("A", "projects/plan"),
            ("A", "readme"),
            ("projects/plan", "A"),
        ]
        assert nodes["A"].link_count == 3

    def test_same_name_different_extensions(self, vault, vault_service):
        write_note(vault, "A.md", "# Markdown A")
        write_note(vault, "A.txt", "plain A")
        write_note(vault, "B.md", "[[A]] [[A.txt]]")
        vault_service.sync_now()
        graph = vault_service.get_graph_data()
        nodes = nodes_of(graph)

        assert set(nodes) == {"A.md", "A.txt", "B"}
        assert all(node.exists for node in graph.nodes)
        assert nodes["A.md"].title == "Markdown A"
        assert nodes["A.txt"].path == "A.txt"
        assert edges_of(graph) == [("B", "A.md"), ("B", "A.txt")]

    def test_ghost_case_variants_collapse(self, vault, vault_service):
        write_note(vault, "A.md", "[[Missing]]")
        write_note(vault, "B.md", "[[missing]]")
        vault_service.sync_now()
        graph = vault_service.get_graph_data()
        ghosts = [node for node in graph.nodes if not node.exists]
        assert len(ghosts) == 1
        assert ghosts[0].link_count == 2

    def test_custom_classifier(self, vault, make_config):
        write_note(vault, "A.md", "[[B]]")

        def by_existence(node: GraphNode) -> str:
            return "real" if node.exists else "missing"

        service = VaultService(make_config(), classifier=by_existence)
        try:
            service.sync_now()
            groups = {node.id: node.group for node in service.get_graph_data().nodes}
            assert groups == {"A": "real", "B": "missing"}
        finally:
            service.shutdown()

    def test_camel_case_output(self, vault, vault_service):
        write_note(vault, "A.md", "[[B]]")
        vault_service.sync_now()
        data = vault_service.get_graph_data().to_json_dict()
        assert set(data) == {"nodes", "edges"}
        assert "linkCount" in data["nodes"][0]


class TestConcurrentReads:
    """Queries read the last committed state while a write is open."""

    def test_open_write_transaction_does_not_block_queries(self, vault, vault_service):
        write_note(vault, "A.md", "- [ ] buy milk\n[[B]]")
        vault_service.sync_now()

        with vault_service.engine.connect() as writer:
            writer.exec_driver_sql("BEGIN IMMEDIATE")
            writer.exec_driver_sql("DELETE FROM notes_fts")
            writer.exec_driver_sql("DELETE FROM links")
            writer.exec_driver_sql("DELETE FROM todos")
            started = time.monotonic()
            hits = vault_service.search_notes("milk")
            graph = vault_service.get_graph_data()
            tasks = vault_service.get_all_tasks()
            elapsed = time.monotonic() - started
            writer.rollback()

        # A blocked reader would wait out the 5 s busy timeout
        assert elapsed < 2
        assert [hit.path for hit in hits] == ["A.md"]
        assert edges_of(graph) == [("A", "B")]
        assert [task.content for task in tasks] == ["buy milk"]


class TestTasks:
    """Task aggregation."""

    def test_single_task(self, vault, vault_service):
        write_note(vault, "A.md", "- [ ] buy milk")
        vault_service.sync_now()
        tasks = [task.to_json_dict() for task in vault_service.get_all_tasks()]
        assert len(tasks) == 1
        task = tasks[0]
        assert task["content"] == "buy milk"
        assert task["completed"] is False
        assert task["filePath"] == "A.md"
        assert task["fileTitle"] == "A"

    def test_tasks_follow_edits(self, vault, vault_service):
        write_note(vault, "A.md", "- [ ] one\n- [ ] two")
        vault_service.sync_now()
        write_note(vault, "A.md", "- [x] one")
        vault_service.sync_now()
        tasks = vault_service.get_all_tasks()
        assert [(t.content, t.completed) for t in tasks] == [("one", True)]


class TestSimilarity:
    """Cosine similarity ranking helpers."""

    def test_cosine_similarity(self):
        a = np.array([1.0, 0.0], dtype=np.float32)
        assert cosine_similarity(a, a) == pytest.approx(1.0)
        assert cosine_similarity(a, np.array([0.0, 1.0])) == pytest.approx(0.0)
        assert cosine_similarity(a, np.zeros(2)) is None

    def test_ties_break_by_path(self):
        query = np.array([1.0, 0.0], dtype=np.float32)
        same = np.array([2.0, 0.0], dtype=np.float32)
        ranked = rank_by_similarity(
            query,
            [("3", "c.md", same), ("1", "a.md", same), ("2", "b.md", np.array([0.0, 1.0]))],
            limit=5,
        )
        assert [path for _, path, _ in ranked] == ["a.md", "c.md", "b.md"]

    def test_excludes_self_and_other_dimensions(self):
        query = np.array([1.0, 0.0], dtype=np.float32)
        ranked = rank_by_similarity(
            query,
            [("self", "a.md", query), ("x", "b.md", np.ones(3, dtype=np.float32))],
            limit=5,
            exclude_id="self",
        )
        assert ranked == []

    def test_folder_classifier(self):
        assert folder_classifier(GraphNode(id="x", title="x", exists=False)) == "ghost"
        assert folder_classifier(GraphNode(id="d/x", title="x", path="d/x.md")) == "d"
        assert folder_classifier(GraphNode(id="x", title="x", path="x.md")) == "root"


class TestRelatedNotes:
    """Related notes and semantic search over stored embeddings."""

    @pytest.fixture
    def bow_service(self, vault, make_config):
        provider = BagOfWordsEmbeddingProvider(["cat", "dog", "car", "engine"])
        service = VaultService(make_config(embeddings_enabled=True), embedding_provider=provider)
        yield service
        service.shutdown()

    def test_related_ranks_by_similarity(self, vault, bow_service):
        write_note(vault, "cats.md", "cat cat dog")
        write_note(vault, "dogs.md", "dog dog cat")
        write_note(vault, "cars.md", "car engine")
        bow_service.sync_now()

        related = bow_service.get_related_notes("cats.md")
        assert [note.path for note in related][:1] == ["dogs.md"]
        assert "cats.md" not in [note.path for note in related]
        assert related[0].score > related[-1].score or len(related) == 1

    def test_related_without_embedding_is_empty(self, vault, vault_service):
        write_note(vault, "A.md", "fresh note")
        vault_service.sync_now()
        assert vault_service.get_related_notes("A.md") == []

    def test_related_unknown_path_is_empty(self, vault_service):
        assert vault_service.get_related_notes("nope.md") == []

    def test_related_limit(self, vault, make_config):
        provider = BagOfWordsEmbeddingProvider(["cat", "dog"])
        service = VaultService(
            make_config(embeddings_enabled=True, related_limit=2), embedding_provider=provider
        )
        try:
            for i in range(5):
                write_note(vault, f"n{i}.md", "cat " * (i + 1) + "dog")
            service.sync_now()
            assert len(service.get_related_notes("n0.md")) == 2
        finally:
            service.shutdown()

    def test_semantic_search(self, vault, bow_service):
        write_note(vault, "cats.md", "cat cat")
        write_note(vault, "cars.md", "car engine")
        bow_service.sync_now()
        results = bow_service.semantic_search("engine car")
        assert results[0].path == "cars.md"
        assert results[0].to_json_dict()["score"] == pytest.approx(results[0].score)

    def test_semantic_search_disabled(self, vault_service):
        with pytest.raises(QueryError) as exc_info:
            vault_service.semantic_search("anything")
        assert exc_info.value.code == ErrorCode.SEMANTIC_UNAVAILABLE

    def test_semantic_search_provider_failure(self, vault, make_config):
        service = VaultService(
            make_config(embeddings_enabled=True, embedding_policy="deferred"),
            embedding_provider=FailingEmbeddingProvider(),
        )
        try:
            with pytest.raises(QueryError) as exc_info:
                service.semantic_search("anything")
            assert exc_info.value.code == ErrorCode.QUERY_FAILED
        finally:
            service.shutdown()
