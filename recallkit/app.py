"""Composition root: builds every service once and wires collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from recallkit.config import AppConfig, get_config
from recallkit.core.tasks import TaskTracker
from recallkit.database import create_db_engine, create_session_factory, init_db
from recallkit.services.command_processor import CommandProcessor
from recallkit.services.consolidation_service import ConsolidationService
from recallkit.services.embedding_service import EmbeddingProvider, build_embedder
from recallkit.services.file_indexer import FileIndexer
from recallkit.services.ingest_service import ExtractionProvider, FileContentIngestor
from recallkit.services.llm_coordinator import LLMCoordinator
from recallkit.services.llm_service import LLMService
from recallkit.services.memory_extractor import MemoryExtractor
from recallkit.services.memory_service import MemoryService
from recallkit.services.storage_service import StorageService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    engine: Engine
    session_factory: sessionmaker[Session]
    tasks: TaskTracker
    store: StorageService
    llm: LLMService
    ingestor: FileContentIngestor
    indexer: FileIndexer
    memory: MemoryService
    coordinator: LLMCoordinator
    processor: CommandProcessor
    consolidation: ConsolidationService

    async def aclose(self) -> None:
        """Wait for detached work, then release the HTTP client and engine."""
        errors = await self.tasks.wait_all()
        if errors:
            logger.warning("%d background tasks failed", len(errors))
        await self.llm.close()
        self.engine.dispose()


def build_services(
    config: Optional[AppConfig] = None,
    *,
    embedder: Optional[EmbeddingProvider] = None,
    extractor: Optional[ExtractionProvider] = None,
) -> Services:
    cfg = config or get_config()
    embedder = embedder or build_embedder(cfg.embedding)

    engine = create_db_engine(cfg.database.path)
    init_db(engine)
    session_factory = create_session_factory(engine)

    tasks = TaskTracker()
    store = StorageService(session_factory, embedder)
    store.backfill_file_fingerprints()

    llm = LLMService(cfg.llm)
    if extractor is None and cfg.llm.enabled:
        extractor = MemoryExtractor(llm)

    ingestor = FileContentIngestor(store, extractor, cfg.ingest, tasks=tasks)
    indexer = FileIndexer(store, ingestor, tasks=tasks)
    memory = MemoryService(store, cfg.retrieval, llm=llm)
    coordinator = LLMCoordinator(
        llm,
        conversational_mode=cfg.llm.conversational_mode,
        timeout=cfg.llm.timeout,
    )
    processor = CommandProcessor(store, memory, coordinator, retrieval=cfg.retrieval, tasks=tasks)

    logger.info(
        "Services ready (db=%s, embeddings=%s, llm=%s)",
        cfg.database.path, cfg.embedding.provider, cfg.llm.model if cfg.llm.enabled else "disabled",
    )
    return Services(
        config=cfg,
        engine=engine,
        session_factory=session_factory,
        tasks=tasks,
        store=store,
        llm=llm,
        ingestor=ingestor,
        indexer=indexer,
        memory=memory,
        coordinator=coordinator,
        processor=processor,
        consolidation=ConsolidationService(session_factory),
    )
