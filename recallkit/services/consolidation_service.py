"""Memory consolidation — folds near-duplicate memories into one versioned parent.

Older copies are deactivated and point at the parent through
``parent_memory_id``, so recall sees one memory while the history stays
queryable.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from recallkit.core.enums import MemoryType
from recallkit.core.errors import StorageError, ValidationError
from recallkit.core.protocols import MemoryReference
from recallkit.models import Memory
from recallkit.services.embedding_service import cosine_matrix
from recallkit.services.storage_service import to_reference

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.85

# File identities and collection roots are structural, never merged
_EXCLUDED_TYPES = (MemoryType.FILE.value, MemoryType.COLLECTION.value)


class MemoryCluster(BaseModel):
    memories: List[MemoryReference]
    avg_similarity: float


class ConsolidatedMemory(BaseModel):
    parent: MemoryReference
    versions: List[MemoryReference] = Field(default_factory=list)
    version: int = 1

    @property
    def consolidated_count(self) -> int:
        return len(self.versions)


def _merged_sources(rows: List[Memory]) -> List[str]:
    sources: List[str] = []
    for row in rows:
        meta = row.meta or {}
        for source in [*(meta.get("sources") or []), meta.get("path")]:
            if isinstance(source, str) and source and source not in sources:
                sources.append(source)
    return sources


class ConsolidationService:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def find_similar_memories(
        self,
        workspace_id: str,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> List[MemoryCluster]:
        """Greedy clusters of active memories whose embeddings are at least ``threshold`` similar.

        Memories are visited newest first; each seeds a cluster with every
        not-yet-clustered memory close enough to it. Singletons are dropped.
        """
        try:
            with self._session_factory() as session:
                rows = session.scalars(
                    select(Memory)
                    .where(
                        Memory.workspace_id == workspace_id,
                        Memory.is_active.is_(True),
                        Memory.embedding.is_not(None),
                        Memory.type.not_in(_EXCLUDED_TYPES),
                    )
                    .order_by(Memory.created_at.desc())
                ).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load memories for consolidation: {e}") from e

        # Only vectors of the same size are comparable
        by_size: Dict[int, List[Memory]] = {}
        for row in rows:
            if row.embedding:
                by_size.setdefault(len(row.embedding), []).append(row)

        clusters: List[MemoryCluster] = []
        for group in by_size.values():
            clusters.extend(self._cluster(group, threshold))
        logger.info(
            "Found %d clusters among %d memories in %s (threshold %.2f)",
            len(clusters), len(rows), workspace_id, threshold,
        )
        return clusters

    @staticmethod
    def _cluster(rows: List[Memory], threshold: float) -> List[MemoryCluster]:
        similarities = cosine_matrix([row.embedding for row in rows])
        clustered = set()
        clusters: List[MemoryCluster] = []
        for i in range(len(rows)):
            if i in clustered:
                continue
            clustered.add(i)
            members = [i]
            scores: List[float] = []
            for j in range(i + 1, len(rows)):
                if j in clustered:
                    continue
                similarity = float(similarities[i, j])
                if similarity >= threshold:
                    members.append(j)
                    scores.append(similarity)
                    clustered.add(j)
            if len(members) > 1:
                clusters.append(MemoryCluster(
                    memories=[to_reference(rows[k]) for k in members],
                    avg_similarity=sum(scores) / len(scores),
                ))
        return clusters

    def consolidate_cluster(self, cluster: MemoryCluster) -> ConsolidatedMemory:
        """Keep the newest memory as parent and fold the rest into it.

        The parent takes the highest confidence of the cluster and the union
        of its sources; the others are deactivated as its versions.
        """
        ids = list(dict.fromkeys(m.id for m in cluster.memories))
        if len(ids) < 2:
            raise ValidationError("A cluster needs at least two memories")

        now = datetime.now(timezone.utc)
        try:
            with self._session_factory() as session, session.begin():
                rows = session.scalars(
                    select(Memory).where(Memory.id.in_(ids), Memory.is_active.is_(True))
                ).all()
                if len(rows) < 2:
                    raise ValidationError("Fewer than two active memories left in the cluster")
                order = {memory_id: i for i, memory_id in enumerate(ids)}
                rows = sorted(rows, key=lambda r: order[r.id])
                rows.sort(key=lambda r: r.created_at, reverse=True)
                parent, versions = rows[0], rows[1:]

                for row in versions:
                    row.is_active = False
                    row.parent_memory_id = parent.id
                    row.consolidated_at = now

                meta = dict(parent.meta or {})
                sources = _merged_sources(rows)
                if sources:
                    meta["sources"] = sources
                meta["consolidated_count"] = int(meta.get("consolidated_count") or 0) + len(versions)
                meta["consolidated_at"] = now.isoformat()
                parent.meta = meta
                parent.confidence = max(row.confidence for row in rows)
                parent.version = (parent.version or 1) + len(versions)
                session.flush()

                result = ConsolidatedMemory(
                    parent=to_reference(parent),
                    versions=[to_reference(row) for row in versions],
                    version=parent.version,
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to consolidate {ids}: {e}") from e

        logger.info("Consolidated %d memories into %s", len(result.versions), result.parent.id)
        return result

    def consolidate_workspace(
        self,
        workspace_id: str,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> List[ConsolidatedMemory]:
        return [self.consolidate_cluster(c) for c in self.find_similar_memories(workspace_id, threshold)]

    def get_version_history(self, memory_id: str) -> Optional[ConsolidatedMemory]:
        """An active memory with the versions folded into it, newest first."""
        with self._session_factory() as session:
            parent = session.get(Memory, memory_id)
            if parent is None or not parent.is_active:
                return None
            versions = session.scalars(
                select(Memory)
                .where(Memory.parent_memory_id == memory_id)
                .order_by(Memory.created_at.desc())
            ).all()
            return ConsolidatedMemory(
                parent=to_reference(parent),
                versions=[to_reference(row) for row in versions],
                version=parent.version or 1,
            )
