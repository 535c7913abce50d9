"""Common test fixtures for the Graphon index."""

from pathlib import Path

import pytest

from graphon_index.config import IndexConfig
from graphon_index.models.db_models import get_session_factory, init_db
from graphon_index.services.vault_service import VaultService
from graphon_index.storage.fts_index import FtsIndex
from graphon_index.storage.index_store import IndexStore
from tests.fakes import FakeEmbeddingProvider


def write_note(vault: Path, relative: str, text: str) -> Path:
    """Create or overwrite a note, creating parent folders."""
    path = vault / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def vault(tmp_path):
    """An empty vault folder."""
    path = tmp_path / "vault"
    path.mkdir()
    return path


@pytest.fixture
def make_config(vault, tmp_path):
    """Factory for an IndexConfig bound to the test vault.

    Sync passes start immediately and nothing is watched by default.
    """
    def _make(**overrides) -> IndexConfig:
        values = dict(
            vault_path=vault,
            database_path=tmp_path / "db" / "index.db",
            sync_debounce_seconds=0.0,
            watch_enabled=False,
            embeddings_enabled=False,
            embedding_policy="eager",
        )
        values.update(overrides)
        return IndexConfig(**values)

    return _make


@pytest.fixture
def test_config(make_config):
    return make_config()


@pytest.fixture
def engine(tmp_path):
    """A migrated index database."""
    engine = init_db(f"sqlite:///{tmp_path / 'store.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def index_store(engine, session_factory):
    return IndexStore(engine, session_factory, FtsIndex(engine, session_factory))


@pytest.fixture
def vault_service(test_config):
    """A vault service without embeddings."""
    service = VaultService(test_config)
    yield service
    service.shutdown()


@pytest.fixture
def fake_embedder():
    return FakeEmbeddingProvider(dim=8)


@pytest.fixture
def embedding_vault_service(make_config, fake_embedder):
    """A vault service with eager embeddings from the fake provider."""
    service = VaultService(
        make_config(embeddings_enabled=True), embedding_provider=fake_embedder
    )
    yield service
    service.shutdown()
