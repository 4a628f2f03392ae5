"""Command, Action and CommandMemory ORM models — append-only command log."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from recallkit.core.enums import ActionStatus
from recallkit.database import Base


class Command(Base):
    __tablename__ = "commands"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    text: Mapped[str] = mapped_column(Text)
    assistant_text: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    workspace_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("workspaces.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc)
    )

    actions: Mapped[List["Action"]] = relationship(
        "Action", back_populates="command", order_by="Action.id",
        cascade="all, delete-orphan",
    )
    memory_links: Mapped[List["CommandMemory"]] = relationship(
        "CommandMemory", cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Command {self.id} '{self.text[:30]}'>"


class Action(Base):
    __tablename__ = "actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    command_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("commands.id", ondelete="CASCADE"), index=True
    )
    type: Mapped[str] = mapped_column(String(50))
    params: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20), default=ActionStatus.SUCCESS.value)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    command: Mapped["Command"] = relationship("Command", back_populates="actions")

    def __repr__(self) -> str:
        return f"<Action {self.type} [{self.status}]>"


class CommandMemory(Base):
    """Which memories were used as context for a command, with the score at use."""

    __tablename__ = "command_memories"

    command_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("commands.id", ondelete="CASCADE"), primary_key=True
    )
    memory_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("memories.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    score: Mapped[float] = mapped_column(Float)
