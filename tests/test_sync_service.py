# tests/test_sync_service.py
"""Tests for the sync coordinator."""
import os
import shutil
import threading

import pytest
from sqlalchemy import event

from graphon_index.exceptions import ScanError
from graphon_index.services.vault_service import VaultService
from tests.conftest import write_note
from tests.fakes import FailingEmbeddingProvider, FakeEmbeddingProvider, SlowEmbeddingProvider


@pytest.fixture
def write_counter(vault_service):
    """Counts INSERT/UPDATE/DELETE statements sent to the index database."""
    counter = {"writes": 0}

    def before_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().split(" ", 1)[0].upper() in ("INSERT", "UPDATE", "DELETE"):
            counter["writes"] += 1

    event.listen(vault_service.engine, "before_cursor_execute", before_execute)
    yield counter
    event.remove(vault_service.engine, "before_cursor_execute", before_execute)


def indexed_paths(service):
    return sorted(service.store.get_checksums())


class TestSyncPass:
    """A pass reconciles the index with the vault on disk."""

    def test_initial_pass_adds_notes(self, vault, vault_service):
        write_note(vault, "A.md", "# A\n[[B]]")
        write_note(vault, "dir/C.txt", "plain")
        report = vault_service.sync_now()
        assert (report.added, report.updated, report.removed) == (2, 0, 0)
        assert indexed_paths(vault_service) == ["A.md", "dir/C.txt"]

    def test_second_pass_writes_nothing(self, vault, vault_service, write_counter):
        write_note(vault, "A.md", "# A\n- [ ] task\n[[B]]")
        write_note(vault, "B.md", "# B")
        vault_service.sync_now()

        write_counter["writes"] = 0
        report = vault_service.sync_now()
        assert report.unchanged == 2
        assert not report.changed
        assert write_counter["writes"] == 0

    def test_edit_delete_and_rename(self, vault, vault_service):
        write_note(vault, "A.md", "one")
        write_note(vault, "B.md", "two")
        vault_service.sync_now()

        write_note(vault, "A.md", "one, edited")
        (vault / "B.md").rename(vault / "Renamed.md")
        report = vault_service.sync_now()

        assert (report.added, report.updated, report.removed) == (1, 1, 1)
        assert indexed_paths(vault_service) == ["A.md", "Renamed.md"]

    def test_deleted_folder_removes_its_notes(self, vault, vault_service):
        write_note(vault, "keep.md", "x")
        write_note(vault, "gone/a.md", "x")
        write_note(vault, "gone/b.md", "x")
        vault_service.sync_now()

        shutil.rmtree(vault / "gone")
        report = vault_service.sync_now()
        assert report.removed == 2
        assert indexed_paths(vault_service) == ["keep.md"]

    def test_index_matches_scan(self, vault, vault_service):
        write_note(vault, "a.md", "x")
        write_note(vault, ".hidden/b.md", "x")
        write_note(vault, "c.png", "x")
        write_note(vault, "sub/d.md", "x")
        vault_service.sync_now()
        assert indexed_paths(vault_service) == [c.path for c in vault_service.scanner.scan().candidates]


class TestErrorIsolation:
    """One bad file never aborts the pass."""

    def test_undecodable_file_is_skipped(self, vault, vault_service):
        write_note(vault, "good.md", "fine")
        (vault / "bad.md").write_bytes(b"\xff\xfe\xfa")
        report = vault_service.sync_now()
        assert report.failed == 1
        assert report.added == 1
        assert indexed_paths(vault_service) == ["good.md"]

    def test_previously_indexed_file_is_kept(self, vault, vault_service):
        write_note(vault, "note.md", "fine")
        vault_service.sync_now()
        (vault / "note.md").write_bytes(b"\xff\xfe\xfa")
        report = vault_service.sync_now()
        assert report.failed == 1
        assert report.removed == 0
        assert indexed_paths(vault_service) == ["note.md"]

    def test_unreadable_directory_aborts_without_deleting(self, vault, vault_service, monkeypatch):
        write_note(vault, "a.md", "x")
        write_note(vault, "sub/b.md", "y")
        vault_service.sync_now()
        real_scandir = os.scandir

        def failing_scandir(path):
            if os.path.basename(path) == "sub":
                raise PermissionError(13, "Permission denied", str(path))
            return real_scandir(path)

        monkeypatch.setattr("graphon_index.storage.scanner.os.scandir", failing_scandir)
        with pytest.raises(ScanError):
            vault_service.sync_now()
        assert indexed_paths(vault_service) == ["a.md", "sub/b.md"]
        assert "sub" in vault_service.coordinator.last_error

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlink_outside_vault_is_not_a_failure(self, tmp_path, vault, vault_service):
        write_note(tmp_path / "outside", "n.md", "x")
        write_note(vault, "inside.md", "x")
        try:
            os.symlink(tmp_path / "outside", vault / "linked", target_is_directory=True)
        except OSError:
            pytest.skip("cannot create symlinks here")
        report = vault_service.sync_now()
        assert report.failed == 0
        assert indexed_paths(vault_service) == ["inside.md"]

    def test_missing_vault_aborts_without_deleting(self, vault, vault_service):
        write_note(vault, "note.md", "x")
        vault_service.sync_now()
        shutil.rmtree(vault)

        with pytest.raises(ScanError):
            vault_service.sync_now()
        assert indexed_paths(vault_service) == ["note.md"]
        assert vault_service.coordinator.last_error is not None


class TestChangeDetection:
    """Content checksums decide what is re-indexed."""

    def test_line_ending_change_is_an_update(self, vault, vault_service):
        (vault / "a.md").write_bytes(b"one\ntwo\n")
        vault_service.sync_now()
        (vault / "a.md").write_bytes(b"one\r\ntwo\r\n")
        report = vault_service.sync_now()
        assert (report.updated, report.unchanged) == (1, 0)


class TestScheduling:
    """Debouncing, single-flight and follow-up coalescing."""

    def test_debounced_triggers_run_once(self, vault, make_config):
        write_note(vault, "a.md", "x")
        service = VaultService(make_config(sync_debounce_seconds=0.2))
        try:
            for _ in range(10):
                service.notify_changed("a.md")
            assert service.wait_until_idle(timeout=10)
            assert service.coordinator.pass_count == 1
            assert indexed_paths(service) == ["a.md"]
        finally:
            service.shutdown()

    def test_triggers_during_pass_coalesce(self, vault, vault_service):
        write_note(vault, "a.md", "x")
        entered = threading.Event()
        release = threading.Event()

        def block_first_pass(report):
            if not entered.is_set():
                entered.set()
                release.wait(timeout=10)

        vault_service.on_index_updated(block_first_pass)
        vault_service.notify_changed()
        assert entered.wait(timeout=10)

        for _ in range(5):
            vault_service.notify_changed()
        release.set()

        assert vault_service.wait_until_idle(timeout=10)
        assert vault_service.coordinator.pass_count == 2

    def test_sync_now_waits_for_running_pass(self, vault, vault_service):
        write_note(vault, "a.md", "x")
        entered = threading.Event()
        release = threading.Event()

        def block_first_pass(report):
            if not entered.is_set():
                entered.set()
                release.wait(timeout=10)

        vault_service.on_index_updated(block_first_pass)
        vault_service.notify_changed()
        assert entered.wait(timeout=10)

        results = []
        worker = threading.Thread(target=lambda: results.append(vault_service.sync_now()))
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()

        release.set()
        worker.join(timeout=10)
        assert results[0].unchanged == 1

    def test_close_cancels_pending_trigger(self, vault, make_config):
        write_note(vault, "a.md", "x")
        service = VaultService(make_config(sync_debounce_seconds=5))
        service.notify_changed()
        service.shutdown()
        assert service.coordinator.pass_count == 0


class TestNotifications:
    """Subscribers hear about completed passes."""

    def test_subscribe_and_unsubscribe(self, vault, vault_service):
        reports = []
        unsubscribe = vault_service.on_index_updated(reports.append)
        write_note(vault, "a.md", "x")
        vault_service.sync_now()
        unsubscribe()
        vault_service.sync_now()
        assert len(reports) == 1
        assert reports[0].added == 1

    def test_failing_listener_does_not_break_pass(self, vault, vault_service):
        def broken(report):
            raise RuntimeError("listener bug")

        seen = []
        vault_service.on_index_updated(broken)
        vault_service.on_index_updated(seen.append)
        write_note(vault, "a.md", "x")
        report = vault_service.sync_now()
        assert report.added == 1
        assert seen == [report]


class TestEmbeddingPolicies:
    """Eager and deferred embedding."""

    def test_eager_embeds_changed_notes(self, vault, embedding_vault_service, fake_embedder):
        write_note(vault, "a.md", "# A\nalpha")
        write_note(vault, "b.md", "# B\nbeta")
        report = embedding_vault_service.sync_now()
        assert report.embedded == 2
        assert embedding_vault_service.query.embeddings.count() == 2

        embedded_before = fake_embedder.embed_count
        embedding_vault_service.sync_now()
        assert fake_embedder.embed_count == embedded_before

    def test_deferred_embeds_after_pass(self, vault, make_config):
        write_note(vault, "a.md", "# A\nalpha")
        provider = FakeEmbeddingProvider(dim=4)
        service = VaultService(
            make_config(embeddings_enabled=True, embedding_policy="deferred"),
            embedding_provider=provider,
        )
        try:
            report = service.sync_now()
            assert report.added == 1
            assert report.embedded == 1
            assert service.query.embeddings.count() == 1
        finally:
            service.shutdown()

    def test_disabled_policy_never_embeds(self, vault, make_config):
        write_note(vault, "a.md", "x")
        provider = FakeEmbeddingProvider(dim=4)
        service = VaultService(
            make_config(embeddings_enabled=True, embedding_policy="disabled"),
            embedding_provider=provider,
        )
        try:
            service.sync_now()
            assert provider.embed_count == 0
            assert service.embedding_service is None
        finally:
            service.shutdown()

    def test_eager_failure_skips_file(self, vault, make_config):
        write_note(vault, "a.md", "x")
        service = VaultService(
            make_config(embeddings_enabled=True),
            embedding_provider=FailingEmbeddingProvider(),
        )
        try:
            report = service.sync_now()
            assert report.failed == 1
            assert service.store.count_files() == 0
        finally:
            service.shutdown()

    def test_content_change_replaces_embedding(self, vault, embedding_vault_service):
        write_note(vault, "a.md", "first")
        embedding_vault_service.sync_now()
        file_id = embedding_vault_service.query.files.get_by_path("a.md").id
        before = embedding_vault_service.query.embeddings.get_vector(file_id)

        write_note(vault, "a.md", "second")
        embedding_vault_service.sync_now()
        after = embedding_vault_service.query.embeddings.get_vector(file_id)
        assert not (before == after).all()

    def test_embedding_timeout_fails_only_that_note(self, vault, make_config):
        write_note(vault, "a.md", "# A\nglacial")
        write_note(vault, "b.md", "# B\nquick")
        provider = SlowEmbeddingProvider(dim=4, slow_marker="glacial")
        service = VaultService(
            make_config(embeddings_enabled=True, embedding_timeout_seconds=0.2),
            embedding_provider=provider,
        )
        try:
            report = service.sync_now()
            assert report.failed == 1
            assert report.added == 1
            assert indexed_paths(service) == ["b.md"]
            assert service.query.embeddings.count() == 1
        finally:
            provider.release.set()
            service.shutdown()
