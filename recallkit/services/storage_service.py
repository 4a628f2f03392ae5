"""Storage service — the embedded store for memories, edges and the command log."""

from __future__ import annotations

import logging
import os
import re
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from recallkit.core.enums import ActionStatus, MemoryType, RelationshipType
from recallkit.core.errors import StorageError
from recallkit.core.metadata import CollectionMeta, FileMeta, ScreenMeta, parse_metadata
from recallkit.core.protocols import (
    CommandRequest,
    CommandResponse,
    FileMetadata,
    IndexResult,
    MemoryReference,
)
from recallkit.models import Action, Command, CommandMemory, Memory, Relationship, User, Workspace
from recallkit.services.embedding_service import EmbeddingProvider, cosine_scores
from recallkit.utils.fingerprint import compute_file_fingerprint, file_memory_id, path_hash

logger = logging.getLogger(__name__)

FILE_SCORE = 0.3           # metadata-only; content-derived memories rank above
SCREEN_SCORE = 1.0
MIN_VECTOR_SIMILARITY = 0.2

_FILE_QUERY_STOPWORDS = frozenset({
    "open", "the", "file", "show", "view", "please", "can", "you", "and", "for",
    "launch", "display", "look", "at", "my", "that", "this", "scroll", "down",
    "summarize", "summary", "find", "search", "doc", "document",
})


def _tokens(text: str, min_len: int = 3) -> List[str]:
    return [t for t in re.split(r"\s+", (text or "").lower()) if len(t) >= min_len]


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_reference(row: Memory, score: Optional[float] = None) -> MemoryReference:
    return MemoryReference(
        id=row.id,
        type=row.type,
        score=row.confidence if score is None else score,
        summary=row.content,
        metadata=dict(row.meta or {}),
        workspace_id=row.workspace_id,
        created_at=row.created_at.isoformat() if row.created_at else None,
    )


class StorageService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        embedder: EmbeddingProvider,
    ):
        self._session_factory = session_factory
        self._embedder = embedder
        self._last_indexed: Dict[str, List[MemoryReference]] = {}

    # ── Helpers ──

    @staticmethod
    def _ensure_user_and_workspace(session: Session, workspace_id: str) -> None:
        """Upsert the user/workspace pair lazily; user and workspace ids coincide."""
        if session.get(User, workspace_id) is None:
            session.add(User(id=workspace_id, email=f"{workspace_id}@local", name=f"User {workspace_id}"))
            session.flush()
        if session.get(Workspace, workspace_id) is None:
            session.add(Workspace(
                id=workspace_id, name=f"Workspace {workspace_id}", type="personal", owner_id=workspace_id,
            ))
            session.flush()

    @staticmethod
    def collection_id(workspace_id: str) -> str:
        return f"collection-files-{workspace_id}"

    def _ensure_collection(self, session: Session, workspace_id: str) -> str:
        collection_id = self.collection_id(workspace_id)
        if session.get(Memory, collection_id) is None:
            session.add(Memory(
                id=collection_id,
                workspace_id=workspace_id,
                type=MemoryType.COLLECTION.value,
                content=f"Files for workspace {workspace_id}",
                confidence=1.0,
                meta=CollectionMeta(workspace=workspace_id).dump(),
            ))
            session.flush()
        return collection_id

    # ── Writes ──

    def add_memories(
        self,
        memories: Sequence[MemoryReference],
        workspace_id: Optional[str] = None,
    ) -> int:
        """Upsert a batch of memories in one transaction.

        Each memory is linked from the workspace collection root with a
        ``contains`` edge. Edge failures are logged and skipped; upsert
        failures roll the whole batch back and raise StorageError.
        """
        if not memories:
            return 0

        workspace = workspace_id or memories[0].workspace_id or os.environ.get("RECALLKIT_WORKSPACE_ID", "local")
        try:
            with self._session_factory() as session, session.begin():
                self._ensure_user_and_workspace(session, workspace)
                collection_id = self._ensure_collection(session, workspace)

                written: List[MemoryReference] = []
                for mem in memories:
                    embedding = self._embedder.embed(mem.summary)
                    row = session.get(Memory, mem.id)
                    if row is None:
                        session.add(Memory(
                            id=mem.id,
                            workspace_id=workspace,
                            type=mem.type,
                            content=mem.summary,
                            confidence=mem.score,
                            meta=dict(mem.metadata or {}),
                            embedding=embedding,
                        ))
                    else:
                        row.content = mem.summary
                        row.confidence = mem.score
                        row.meta = dict(mem.metadata or {})
                        row.embedding = embedding
                        row.is_active = True
                        row.parent_memory_id = None
                        row.consolidated_at = None
                        row.updated_at = _now()
                    written.append(mem)
                session.flush()

                for mem in written:
                    if mem.id == collection_id:
                        continue
                    self._link(session, collection_id, mem.id, mem.score)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to store memories: {e}") from e

        logger.info("Stored %d memories in workspace %s", len(memories), workspace)
        return len(memories)

    def _link(self, session: Session, from_id: str, to_id: str, score: Optional[float]) -> None:
        confidence = max(0.0, min(1.0, 0.8 if score is None else score))
        try:
            with session.begin_nested():
                exists = session.execute(
                    select(Relationship.id).where(
                        Relationship.from_memory_id == from_id,
                        Relationship.to_memory_id == to_id,
                        Relationship.relationship_type == RelationshipType.CONTAINS.value,
                    )
                ).first()
                if exists is None:
                    session.add(Relationship(
                        from_memory_id=from_id,
                        to_memory_id=to_id,
                        relationship_type=RelationshipType.CONTAINS.value,
                        confidence=confidence,
                    ))
        except SQLAlchemyError as e:
            logger.warning("Failed to create relationship %s -> %s (skipping): %s", from_id, to_id, e)

    def add_relationship(
        self,
        from_id: str,
        to_id: str,
        relationship_type: str = RelationshipType.CONTAINS.value,
        confidence: float = 0.5,
    ) -> None:
        try:
            with self._session_factory() as session, session.begin():
                session.add(Relationship(
                    from_memory_id=from_id,
                    to_memory_id=to_id,
                    relationship_type=relationship_type,
                    confidence=confidence,
                ))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to add relationship: {e}") from e

    @staticmethod
    def build_file_memory(file: FileMetadata, workspace_id: str) -> MemoryReference:
        """Low-confidence ``entity.file`` memory for a file's metadata."""
        meta = FileMeta(
            path=file.path,
            name=file.name,
            modified=file.modified,
            size=file.size,
            fingerprint=compute_file_fingerprint(file.path, file.size, file.modified),
        )
        return MemoryReference(
            id=file_memory_id(file.path),
            type=MemoryType.FILE.value,
            score=FILE_SCORE,
            summary=f"{file.name} (modified {file.modified}) @ {file.path}",
            metadata=meta.dump(),
            workspace_id=workspace_id,
        )

    def index_files(self, files: Iterable[FileMetadata], workspace_id: str) -> IndexResult:
        """Index file metadata as ``entity.file`` memories.

        Unchanged files (fingerprint match) are not rewritten.
        """
        memories: List[MemoryReference] = []
        to_write: List[MemoryReference] = []
        for file in files:
            mem = self.build_file_memory(file, workspace_id)
            memories.append(mem)
            if not self.is_file_unchanged(file, workspace_id):
                to_write.append(mem)

        if to_write:
            self.add_memories(to_write, workspace_id)
        logger.info(
            "Indexed %d files (%d new or changed) for %s", len(memories), len(to_write), workspace_id,
        )
        self._last_indexed[workspace_id] = memories
        return IndexResult(indexed=len(memories), memories=memories)

    def save_command(
        self,
        request: CommandRequest,
        response: CommandResponse,
        memories_used: Sequence[MemoryReference],
    ) -> CommandResponse:
        """Persist command, actions, memory links and screen context atomically."""
        workspace = request.workspace_id
        try:
            with self._session_factory() as session, session.begin():
                self._ensure_user_and_workspace(session, workspace)

                session.add(Command(
                    id=request.command_id,
                    text=request.text,
                    assistant_text=response.assistant_text,
                    timestamp=request.timestamp or _now().isoformat(),
                    user_id=request.user_id,
                    workspace_id=workspace,
                ))
                session.flush()

                for action in response.actions:
                    session.add(Action(
                        command_id=request.command_id,
                        type=action.type,
                        params=action.params,
                        status=ActionStatus.SUCCESS.value,
                        executed_at=_now(),
                    ))
                    session.flush()

                scores: Dict[str, float] = {}
                for mem in memories_used:
                    scores.setdefault(mem.id, mem.score)
                if scores:
                    existing = set(session.scalars(
                        select(Memory.id).where(Memory.id.in_(list(scores)))
                    ))
                    for memory_id, score in scores.items():
                        if memory_id in existing:
                            session.add(CommandMemory(
                                command_id=request.command_id, memory_id=memory_id, score=score,
                            ))

                if request.screenshot_path:
                    screen_id = f"screen-{request.command_id}"
                    if session.get(Memory, screen_id) is None:
                        session.add(Memory(
                            id=screen_id,
                            workspace_id=workspace,
                            type=MemoryType.SCREEN.value,
                            content=f"Screen context for command: {request.text}",
                            confidence=SCREEN_SCORE,
                            meta=ScreenMeta(
                                path=request.screenshot_path,
                                command_id=request.command_id,
                                text=request.screen_context,
                            ).dump(),
                        ))
                        session.flush()
                    if screen_id not in scores:
                        session.add(CommandMemory(
                            command_id=request.command_id, memory_id=screen_id, score=SCREEN_SCORE,
                        ))
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to save command {request.command_id}: {e}") from e

        return response

    def backfill_file_fingerprints(self) -> int:
        """Add fingerprints to file memories indexed before fingerprints existed."""
        updated = 0
        with self._session_factory() as session, session.begin():
            rows = session.scalars(select(Memory).where(Memory.type == MemoryType.FILE.value)).all()
            for row in rows:
                meta = parse_metadata(MemoryType.FILE.value, row.meta)
                if meta is None or meta.fingerprint:
                    continue
                meta.fingerprint = compute_file_fingerprint(meta.path, meta.size, meta.modified)
                row.meta = meta.dump()
                updated += 1
        if updated:
            logger.info("Backfilled fingerprints for %d file memories", updated)
        return updated

    def retire_stale_file_memories(self, file_path: str, keep_ids: Iterable[str], workspace_id: str) -> int:
        """Deactivate content memories of ``file_path`` not produced by its latest ingest.

        Content ids are positional, so a re-ingest into fewer memories leaves
        higher-index rows behind. They are kept, flagged ``superseded_at``.
        """
        prefix = path_hash(file_path)
        keep = set(keep_ids)
        retired = 0
        try:
            with self._session_factory() as session, session.begin():
                rows = session.scalars(
                    select(Memory).where(
                        Memory.workspace_id == workspace_id,
                        Memory.is_active.is_(True),
                        or_(Memory.id.like(f"doc-{prefix}-%"), Memory.id.like(f"chunk-{prefix}-%")),
                    )
                ).all()
                stamp = _now().isoformat()
                for row in rows:
                    if row.id in keep:
                        continue
                    row.is_active = False
                    row.meta = {**(row.meta or {}), "superseded_at": stamp}
                    retired += 1
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retire stale memories for {file_path}: {e}") from e

        if retired:
            logger.info("Retired %d stale memories for %s", retired, file_path)
        return retired

    # ── Reads ──

    def get_memory(self, memory_id: str) -> Optional[MemoryReference]:
        with self._session_factory() as session:
            row = session.get(Memory, memory_id)
            return to_reference(row) if row else None

    def is_file_unchanged(self, file: FileMetadata, workspace_id: str) -> bool:
        """Compare the stored fingerprint; backfill it if size and mtime still match."""
        fingerprint = compute_file_fingerprint(file.path, file.size, file.modified)
        with self._session_factory() as session, session.begin():
            row = session.get(Memory, file_memory_id(file.path))
            if row is None or row.workspace_id != workspace_id or row.type != MemoryType.FILE.value:
                return False
            meta = parse_metadata(MemoryType.FILE.value, row.meta)
            if meta is None:
                return False
            if meta.fingerprint == fingerprint:
                return True
            if meta.size == file.size and meta.modified == file.modified:
                meta.fingerprint = fingerprint
                row.meta = meta.dump()
                return True
        return False

    def _vector_search(self, session: Session, query: str, workspace_id: str, limit: int) -> List[MemoryReference]:
        query_vec = self._embedder.embed(query)
        rows = session.scalars(
            select(Memory).where(
                Memory.workspace_id == workspace_id,
                Memory.type != MemoryType.COLLECTION.value,
                Memory.is_active.is_(True),
                Memory.embedding.is_not(None),
            )
        ).all()
        # Only vectors of the query's size are comparable
        rows = [row for row in rows if row.embedding and len(row.embedding) == len(query_vec)]
        similarities = cosine_scores(query_vec, [row.embedding for row in rows])
        scored = [
            (float(sim), row) for sim, row in zip(similarities, rows) if sim >= MIN_VECTOR_SIMILARITY
        ]
        scored.sort(key=lambda x: x[0], reverse=True)
        return [to_reference(row, score=sim) for sim, row in scored[:limit]]

    def _text_search(
        self,
        session: Session,
        terms: List[str],
        workspace_id: str,
        limit: int,
        exclude_files: bool = False,
    ) -> List[Memory]:
        if not terms:
            return []
        stmt = select(Memory).where(
            Memory.workspace_id == workspace_id,
            Memory.type != MemoryType.COLLECTION.value,
            Memory.is_active.is_(True),
            or_(*[func.lower(Memory.content).like(_like_pattern(t), escape="\\") for t in terms]),
        )
        if exclude_files:
            stmt = stmt.where(Memory.type.not_like(f"{MemoryType.FILE.value}%"))
        stmt = stmt.order_by(Memory.confidence.desc(), Memory.created_at.desc()).limit(limit)
        return list(session.scalars(stmt).all())

    def search_memories(self, query: str, workspace_id: str, limit: int = 8) -> List[MemoryReference]:
        """Vector search first, topped up with substring matches, best score first."""
        try:
            with self._session_factory() as session:
                results = self._vector_search(session, query, workspace_id, limit)
                if len(results) < limit:
                    seen = {m.id for m in results}
                    for row in self._text_search(session, _tokens(query), workspace_id, limit):
                        if row.id not in seen:
                            seen.add(row.id)
                            results.append(to_reference(row))
        except SQLAlchemyError as e:
            raise StorageError(f"Memory search failed: {e}") from e

        results.sort(key=lambda m: m.score, reverse=True)
        return results[:limit]

    def search_memories_text(self, query: str, workspace_id: str, limit: int = 5) -> List[MemoryReference]:
        """Substring search over non-file memories."""
        with self._session_factory() as session:
            rows = self._text_search(session, _tokens(query), workspace_id, limit, exclude_files=True)
            return [to_reference(row) for row in rows]

    def get_recent_files(self, workspace_id: str, limit: int = 6) -> List[MemoryReference]:
        cached = self._last_indexed.get(workspace_id)
        if cached:
            return cached[:limit]
        with self._session_factory() as session:
            rows = session.scalars(
                select(Memory)
                .where(
                    Memory.workspace_id == workspace_id,
                    Memory.type == MemoryType.FILE.value,
                    Memory.is_active.is_(True),
                )
                .order_by(Memory.created_at.desc())
                .limit(limit)
            ).all()
            return [to_reference(row) for row in rows]

    def get_recent_non_screen_memories(self, workspace_id: str, limit: int = 3) -> List[MemoryReference]:
        """Most recent memories that are neither files, screens nor collection roots."""
        with self._session_factory() as session:
            rows = session.scalars(
                select(Memory)
                .where(
                    Memory.workspace_id == workspace_id,
                    Memory.type.not_like(f"{MemoryType.FILE.value}%"),
                    Memory.type.not_like(f"{MemoryType.SCREEN.value}%"),
                    Memory.type != MemoryType.COLLECTION.value,
                    Memory.is_active.is_(True),
                )
                .order_by(Memory.created_at.desc())
                .limit(limit)
            ).all()
            return [to_reference(row) for row in rows]

    def find_file_by_name_or_path(self, query: str, workspace_id: str, limit: int = 3) -> List[MemoryReference]:
        """File memories whose name, path or summary mention the query's terms.

        Score is the stored confidence plus 0.1 per matched term, capped at 1.
        """
        terms = [t.strip("?.!,\"'") for t in _tokens(query)]
        terms = [t.replace("%", "").replace("_", "") for t in terms if t and t not in _FILE_QUERY_STOPWORDS]
        terms = [t for t in terms if t]
        if not terms:
            return []

        haystack_meta = func.lower(cast(Memory.meta, String))
        with self._session_factory() as session:
            rows = session.scalars(
                select(Memory).where(
                    Memory.workspace_id == workspace_id,
                    Memory.type == MemoryType.FILE.value,
                    Memory.is_active.is_(True),
                    or_(*[
                        or_(func.lower(Memory.content).like(f"%{t}%"), haystack_meta.like(f"%{t}%"))
                        for t in terms
                    ]),
                ).order_by(Memory.created_at.desc())
            ).all()

            scored = []
            for row in rows:
                haystack = f"{row.content} {row.meta}".lower()
                hits = sum(1 for t in terms if t in haystack)
                scored.append((min(1.0, row.confidence + 0.1 * hits), row))
            scored.sort(key=lambda x: x[0], reverse=True)
            return [to_reference(row, score=score) for score, row in scored[:limit]]

    def get_related_memories(
        self,
        memory_id: str,
        depth: int = 1,
        relationship_types: Optional[Sequence[str]] = None,
    ) -> List[MemoryReference]:
        """Breadth-first walk over edges in both directions, up to ``depth`` hops."""
        if depth < 1:
            return []

        visited = {memory_id}
        results: List[MemoryReference] = []
        frontier = deque([(memory_id, 0)])

        with self._session_factory() as session:
            while frontier:
                current, level = frontier.popleft()
                if level >= depth:
                    continue
                stmt = select(Relationship).where(
                    or_(Relationship.from_memory_id == current, Relationship.to_memory_id == current)
                )
                if relationship_types:
                    stmt = stmt.where(Relationship.relationship_type.in_(list(relationship_types)))
                for edge in session.scalars(stmt).all():
                    neighbor = edge.to_memory_id if edge.from_memory_id == current else edge.from_memory_id
                    if neighbor in visited:
                        continue
                    visited.add(neighbor)
                    row = session.get(Memory, neighbor)
                    if row is None or not row.is_active:
                        continue
                    results.append(to_reference(row, score=1.0))
                    frontier.append((neighbor, level + 1))
        return results

    def get_recent_commands(self, limit: int = 50) -> List[dict]:
        """Recent commands with their actions and memories, newest first."""
        with self._session_factory() as session:
            commands = session.scalars(
                select(Command).order_by(Command.timestamp.desc()).limit(limit)
            ).all()
            entries = []
            for cmd in commands:
                memory_rows = session.scalars(
                    select(Memory)
                    .join(CommandMemory, CommandMemory.memory_id == Memory.id)
                    .where(CommandMemory.command_id == cmd.id)
                ).all()
                entries.append({
                    "id": cmd.id,
                    "text": cmd.text,
                    "assistant_text": cmd.assistant_text,
                    "timestamp": cmd.timestamp,
                    "actions": [
                        {
                            "action": {"type": a.type, "params": a.params},
                            "status": a.status,
                            "executed_at": a.executed_at.isoformat() if a.executed_at else None,
                        }
                        for a in cmd.actions
                    ],
                    "memories_used": [to_reference(m).model_dump() for m in memory_rows],
                })
            return entries

    def get_stats(self) -> dict:
        with self._session_factory() as session:
            total_commands = session.scalar(select(func.count()).select_from(Command)) or 0
            total_memories = session.scalar(
                select(func.count()).select_from(Memory).where(Memory.is_active.is_(True))
            ) or 0
            total_actions = session.scalar(select(func.count()).select_from(Action)) or 0
            success_actions = session.scalar(
                select(func.count()).select_from(Action).where(Action.status == ActionStatus.SUCCESS.value)
            ) or 0
        success_rate = 1.0 if total_actions == 0 else success_actions / total_actions
        return {
            "total_commands": total_commands,
            "total_memories": total_memories,
            "success_rate": round(success_rate, 2),
        }

    def count_memories(
        self,
        workspace_id: str,
        memory_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> int:
        with self._session_factory() as session:
            stmt = select(func.count()).select_from(Memory).where(Memory.workspace_id == workspace_id)
            if not include_inactive:
                stmt = stmt.where(Memory.is_active.is_(True))
            if memory_type:
                stmt = stmt.where(Memory.type == memory_type)
            return session.scalar(stmt) or 0

    def command_exists(self, command_id: str) -> bool:
        with self._session_factory() as session:
            return session.get(Command, command_id) is not None
