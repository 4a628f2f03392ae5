"""Request/response protocol shared with the shell and web layers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from recallkit.core.enums import MemoryType
from recallkit.core.metadata import MemoryMeta, parse_metadata


class FileMetadata(BaseModel):
    """A file as reported by the shell's scanner."""
    path: str
    name: str
    modified: str = ""
    size: int = 0


class MemoryReference(BaseModel):
    """A memory as handed to ranking, prompting and the caller."""
    id: str
    type: str
    score: float = 0.0
    summary: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    workspace_id: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def meta(self) -> Optional[MemoryMeta]:
        return parse_metadata(self.type, self.metadata)

    def meta_value(self, key: str) -> Any:
        """Read ``key`` through the typed payload; payloads that don't fit their type are read raw."""
        typed = self.meta
        if typed is not None:
            return getattr(typed, key, None)
        return self.metadata.get(key)

    @property
    def path(self) -> Optional[str]:
        value = self.meta_value("path")
        return value if isinstance(value, str) and value else None

    @property
    def name(self) -> Optional[str]:
        value = self.meta_value("name")
        return value if isinstance(value, str) and value else None

    @property
    def modified(self) -> Optional[str]:
        return self.meta_value("modified") or None

    @property
    def display_name(self) -> str:
        return self.name or self.path or self.summary

    def is_file(self) -> bool:
        return self.type.startswith(MemoryType.FILE.value)


class Action(BaseModel):
    type: str
    params: Dict[str, Any] = Field(default_factory=dict)


class CommandRequest(BaseModel):
    user_id: str = ""
    command_id: str = ""
    text: str = ""
    timestamp: str = ""
    screen_context: Optional[str] = None
    screenshot_path: Optional[str] = None
    active_path: Optional[str] = None
    scroll_direction: Optional[str] = None
    scroll_progress: Optional[float] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def workspace_id(self) -> str:
        # Single-tenant: workspace and user coincide
        return self.user_id


class CommandResponse(BaseModel):
    command_id: str
    assistant_text: str
    actions: List[Action] = Field(default_factory=list)
    memories_used: List[MemoryReference] = Field(default_factory=list)


class LLMResponse(BaseModel):
    assistant_text: str = ""
    actions: List[Action] = Field(default_factory=list)


class ContextResult(BaseModel):
    context: str = ""
    memories: List[MemoryReference] = Field(default_factory=list)


class IndexResult(BaseModel):
    indexed: int
    memories: List[MemoryReference] = Field(default_factory=list)
