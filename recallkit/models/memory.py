"""Memory and Relationship ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from recallkit.database import Base


class Memory(Base):
    __tablename__ = "memories"

    id: Mapped[str] = mapped_column(
        String(128), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    workspace_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("workspaces.id", ondelete="CASCADE"), index=True
    )
    conversation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    type: Mapped[str] = mapped_column(
        String(50), index=True  # entity.file / doc.chunk / fact / reminder / context.screen / ...
    )
    content: Mapped[str] = mapped_column(Text)
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    embedding: Mapped[Optional[List[float]]] = mapped_column(JSON, nullable=True)
    # Superseded or consolidated memories stay in the table but drop out of recall
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    parent_memory_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    consolidated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Memory [{self.type}] {self.content[:30]}...>"


class Relationship(Base):
    """Directed typed edge; recall treats it as bidirectional."""

    __tablename__ = "relationships"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: f"rel-{uuid.uuid4()}"
    )
    from_memory_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("memories.id", ondelete="CASCADE"), index=True
    )
    to_memory_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("memories.id", ondelete="CASCADE"), index=True
    )
    relationship_type: Mapped[str] = mapped_column(String(50))
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<Relationship {self.from_memory_id} -{self.relationship_type}-> {self.to_memory_id}>"
