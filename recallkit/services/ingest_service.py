"""File content ingestor — turns documents into chunked memory batches.

Each ``ingest`` call runs filter → prioritize → priority phase (awaited) →
background phase (detached). Within a phase files and provider sub-batches
are processed strictly one at a time.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from recallkit.config import IngestConfig
from recallkit.core.enums import MemoryType
from recallkit.core.errors import StorageError
from recallkit.core.metadata import ChunkMeta, FactMeta
from recallkit.core.protocols import FileMetadata, MemoryReference
from recallkit.core.retry import RetryPolicy
from recallkit.core.tasks import BackgroundTask, TaskTracker
from recallkit.services.extractors import extract_text
from recallkit.services.memory_extractor import ExtractedMemory
from recallkit.services.storage_service import StorageService
from recallkit.utils.fingerprint import file_memory_id, path_hash

logger = logging.getLogger(__name__)

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


class ExtractionProvider(Protocol):
    async def extract(self, sections: Sequence[str]) -> List[ExtractedMemory]:
        ...


def _split_long(paragraph: str, max_chars: int) -> List[str]:
    """Accumulate sentences up to ``max_chars``; hard-cut any single longer sentence."""
    pieces: List[str] = []
    current = ""
    for sentence in _SENTENCE_RE.split(paragraph):
        sentence = sentence.strip()
        if not sentence:
            continue
        while len(sentence) > max_chars:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(sentence[:max_chars])
            sentence = sentence[max_chars:].strip()
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) > max_chars:
            pieces.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        pieces.append(current)
    return pieces


def split_sections(text: str, max_chars: int = 2000) -> List[str]:
    """Split text into sections of at most ``max_chars``.

    Paragraph boundaries come first and short neighbouring paragraphs are
    packed together; oversized paragraphs are re-split on sentences.
    """
    units: List[str] = []
    for paragraph in _PARAGRAPH_RE.split(text or ""):
        paragraph = re.sub(r"[ \t]+", " ", paragraph).strip()
        if not paragraph:
            continue
        if len(paragraph) > max_chars:
            units.extend(_split_long(paragraph, max_chars))
        else:
            units.append(paragraph)

    sections: List[str] = []
    current = ""
    for unit in units:
        candidate = f"{current}\n\n{unit}" if current else unit
        if len(candidate) > max_chars:
            sections.append(current)
            current = unit
        else:
            current = candidate
    if current:
        sections.append(current)
    return sections


def scrub_file_refs(text: str, file: FileMetadata) -> str:
    """Remove the file's own path and name from ``text``."""
    for ref in (file.path, file.name):
        if ref:
            text = re.sub(re.escape(ref), "", text, flags=re.IGNORECASE)
    return re.sub(r"[ \t]{2,}", " ", text).strip()


def _modified_key(file: FileMetadata) -> float:
    value = file.modified or ""
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


class FileContentIngestor:
    def __init__(
        self,
        store: StorageService,
        extractor: Optional[ExtractionProvider],
        cfg: IngestConfig,
        *,
        tasks: Optional[TaskTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        read_text: Callable[[str], str] = extract_text,
    ):
        self._store = store
        self._extractor = extractor
        self._cfg = cfg
        self._tasks = tasks or TaskTracker()
        self._sleep = sleep
        self._read_text = read_text
        self._retry = RetryPolicy(max_attempts=cfg.max_attempts, base_delay=1.0, max_delay=60.0, sleep=sleep)

    # ── Filter / prioritize ──

    def _size_of(self, file: FileMetadata) -> int:
        if file.size:
            return file.size
        try:
            return os.path.getsize(file.path)
        except OSError:
            return 0

    def is_eligible(self, file: FileMetadata) -> bool:
        path = Path(file.path)
        ext = path.suffix.lstrip(".").lower()
        if ext not in {e.lower().lstrip(".") for e in self._cfg.extensions}:
            return False
        parts = set(path.parts)
        if any(pattern in parts for pattern in self._cfg.exclude_patterns):
            return False
        return self._size_of(file) >= self._cfg.min_size_bytes

    def filter_files(self, files: Sequence[FileMetadata]) -> List[FileMetadata]:
        return [f for f in files if self.is_eligible(f)]

    @staticmethod
    def prioritize(files: Sequence[FileMetadata]) -> List[FileMetadata]:
        return sorted(files, key=_modified_key, reverse=True)

    # ── Entry point ──

    async def ingest(
        self,
        files: Sequence[FileMetadata],
        workspace_id: str,
        *,
        skip_unchanged: bool = True,
    ) -> Optional[BackgroundTask]:
        """Ingest ``files``; returns the handle of the detached background phase, if any."""
        eligible = self.filter_files(files)
        if not eligible:
            logger.info("No eligible files to ingest for %s (%d offered)", workspace_id, len(files))
            return None

        ordered = self.prioritize(eligible)
        priority = ordered[:self._cfg.priority_count]
        background = ordered[self._cfg.priority_count:]
        logger.info(
            "Ingesting %d files for %s (%d priority, %d background)",
            len(ordered), workspace_id, len(priority), len(background),
        )

        await self._process(
            priority, workspace_id,
            batch_size=self._cfg.priority_batch_size,
            delay=self._cfg.priority_delay,
            tier="priority",
            skip_unchanged=skip_unchanged,
        )
        if not background:
            return None

        return self._tasks.spawn(
            f"ingest-background-{workspace_id}",
            self._process(
                background, workspace_id,
                batch_size=self._cfg.background_batch_size,
                delay=self._cfg.background_delay,
                tier="background",
                skip_unchanged=skip_unchanged,
            ),
        )

    async def _process(
        self,
        files: Sequence[FileMetadata],
        workspace_id: str,
        *,
        batch_size: int,
        delay: float,
        tier: str,
        skip_unchanged: bool,
    ) -> int:
        stored = 0
        batch_size = max(1, batch_size)
        for start in range(0, len(files), batch_size):
            batch = files[start:start + batch_size]
            memories: List[MemoryReference] = []
            produced: Dict[str, List[str]] = {}
            for file in batch:
                if skip_unchanged and self._store.is_file_unchanged(file, workspace_id):
                    logger.debug("Skipping unchanged file %s", file.path)
                    continue
                try:
                    extracted = await self.extract_file(file, workspace_id)
                except Exception as e:
                    logger.warning("Failed to ingest %s: %s", file.path, e)
                    continue
                # The file memory carries the fingerprint, so it is only written once content is in
                memories.append(self._store.build_file_memory(file, workspace_id))
                memories.extend(extracted)
                produced[file.path] = [m.id for m in extracted]

            if memories:
                try:
                    self._store.add_memories(memories, workspace_id)
                    stored += len(memories)
                    logger.info("[%s] stored %d memories from %d files", tier, len(memories), len(batch))
                except StorageError as e:
                    logger.warning("[%s] failed to store batch of %d memories: %s", tier, len(memories), e)
                else:
                    self._retire_stale(produced, workspace_id)

            if start + batch_size < len(files):
                await self._sleep(delay)
        return stored

    def _retire_stale(self, produced: Dict[str, List[str]], workspace_id: str) -> None:
        for path, ids in produced.items():
            try:
                self._store.retire_stale_file_memories(path, ids, workspace_id)
            except StorageError as e:
                logger.warning("Failed to retire stale memories for %s: %s", path, e)

    # ── Per file ──

    async def extract_file(self, file: FileMetadata, workspace_id: str) -> List[MemoryReference]:
        """Content memories for one file: provider output, or fallback chunks."""
        size = self._size_of(file)
        if size > self._cfg.parse_size_limit_bytes:
            logger.warning("Large file %s (%d bytes); attempting anyway", file.path, size)

        text = await asyncio.to_thread(self._read_text, file.path)
        sections = split_sections(text, self._cfg.section_max_chars)
        if not sections:
            logger.debug("No text extracted from %s", file.path)
            return []

        extracted = await self._extract_sections(sections, file)
        memories = [
            self._to_memory(m, i, len(extracted), file, workspace_id) for i, m in enumerate(extracted)
        ]

        if not memories:
            logger.info("No provider memories for %s; using %d fallback chunks", file.name,
                        min(len(sections), self._cfg.fallback_max_chunks))
            return self.fallback_chunks(sections, file, workspace_id)
        return memories

    async def _extract_sections(self, sections: List[str], file: FileMetadata) -> List[ExtractedMemory]:
        if self._extractor is None:
            return []
        results: List[ExtractedMemory] = []
        step = max(1, self._cfg.sub_batch_size)
        for start in range(0, len(sections), step):
            sub_batch = sections[start:start + step]
            label = f"extraction {file.name} [{start}:{start + len(sub_batch)}]"
            try:
                results.extend(await self._retry.run(lambda: self._extractor.extract(sub_batch), label=label))
            except Exception as e:
                logger.warning("Skipping sub-batch %s: %s", label, e)
        return results

    def _to_memory(
        self,
        extracted: ExtractedMemory,
        index: int,
        total: int,
        file: FileMetadata,
        workspace_id: str,
    ) -> MemoryReference:
        if extracted.type == MemoryType.FACT.value:
            meta = FactMeta(path=file.path, name=file.name, source_file_id=file_memory_id(file.path))
        else:
            meta = ChunkMeta(
                path=file.path,
                name=file.name,
                source_file_id=file_memory_id(file.path),
                chunk_index=index,
                total_chunks=total,
                extraction_method="llm",
            )
        return MemoryReference(
            id=f"doc-{path_hash(file.path)}-{index}",
            type=extracted.type,
            score=max(extracted.confidence, self._cfg.extraction_floor),
            summary=extracted.content,
            metadata=meta.dump(),
            workspace_id=workspace_id,
        )

    def fallback_chunks(
        self,
        sections: Sequence[str],
        file: FileMetadata,
        workspace_id: str,
    ) -> List[MemoryReference]:
        """Deterministic ``doc.chunk`` memories straight from the sections, minus the file's own name."""
        scrubbed = (scrub_file_refs(s, file) for s in sections)
        chosen = [s for s in scrubbed if s][:self._cfg.fallback_max_chunks]
        total = len(chosen)
        chunks = []
        for i, section in enumerate(chosen):
            meta = ChunkMeta(
                path=file.path,
                name=file.name,
                source_file_id=file_memory_id(file.path),
                chunk_index=i,
                total_chunks=total,
            )
            chunks.append(MemoryReference(
                id=f"chunk-{path_hash(file.path)}-{i}",
                type=MemoryType.DOC_CHUNK.value,
                score=self._cfg.fallback_confidence,
                summary=section[:self._cfg.section_max_chars],
                metadata=meta.dump(),
                workspace_id=workspace_id,
            ))
        return chunks
