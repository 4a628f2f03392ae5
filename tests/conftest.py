"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest

from recallkit.config import get_config, load_config, reset_config
from recallkit.core.protocols import FileMetadata
from recallkit.database import create_db_engine, create_session_factory, init_db
from recallkit.services.embedding_service import HashingEmbeddingProvider
from recallkit.services.storage_service import StorageService


@pytest.fixture(autouse=True)
def isolated_db(tmp_path):
    """Point the config at a throwaway SQLite file for each test."""
    reset_config()

    db_path = str(tmp_path / "test.db")
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"llm:\n  enabled: false\n  base_url: http://localhost:0\n  api_key: test-key\n  model: test\n"
        f"database:\n  path: {db_path}\n"
        f"ingest:\n  priority_delay: 0\n  background_delay: 0\n"
        f"log:\n  dir: {tmp_path / 'logs'}\n"
    )

    os.chdir(tmp_path)
    load_config(config_file)
    yield tmp_path

    reset_config()


@pytest.fixture
def config(isolated_db):
    return get_config()


@pytest.fixture
def engine(config):
    engine = create_db_engine(config.database.path)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory, config):
    return StorageService(session_factory, HashingEmbeddingProvider(config.embedding.dimensions))


@pytest.fixture
def no_sleep():
    """Async sleep stand-in that records requested delays."""
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def make_file(isolated_db):
    """Write a file under the tmp dir and return its FileMetadata."""

    def _make(name: str, body: str, modified: str = "2026-01-01T00:00:00+00:00") -> FileMetadata:
        path = isolated_db / "docs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding="utf-8")
        return FileMetadata(path=str(path), name=name, modified=modified, size=path.stat().st_size)

    return _make
