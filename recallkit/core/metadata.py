"""Typed metadata payloads, one per memory type.

The store keeps metadata as a JSON column; these models are what the
pipeline builds and reads so each memory type has a fixed shape.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from recallkit.core.enums import MemoryType


class _Meta(BaseModel):
    model_config = ConfigDict(extra="allow")

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class FileMeta(_Meta):
    kind: Literal["file"] = "file"
    path: str
    name: str
    modified: str = ""
    size: int = 0
    fingerprint: Optional[str] = None


class ChunkMeta(_Meta):
    kind: Literal["chunk"] = "chunk"
    path: str
    name: str
    source_file_id: str
    chunk_index: int
    total_chunks: int
    extraction_method: str = "fallback"


class FactMeta(_Meta):
    kind: Literal["fact"] = "fact"
    path: Optional[str] = None
    name: Optional[str] = None
    source_file_id: Optional[str] = None
    extraction_method: str = "llm"


class ReminderMeta(_Meta):
    kind: Literal["reminder"] = "reminder"
    title: str
    notes: Optional[str] = None
    due_date: Optional[str] = None


class ScreenMeta(_Meta):
    kind: Literal["screen"] = "screen"
    path: str
    command_id: str
    text: Optional[str] = None


class CommandMeta(_Meta):
    kind: Literal["command"] = "command"
    command_id: str


class CollectionMeta(_Meta):
    kind: Literal["collection"] = "collection"
    scope: str = "files"
    workspace: str


MemoryMeta = Union[FileMeta, ChunkMeta, FactMeta, ReminderMeta, ScreenMeta, CommandMeta, CollectionMeta]

_BY_TYPE = {
    MemoryType.FILE.value: FileMeta,
    MemoryType.DOC_CHUNK.value: ChunkMeta,
    MemoryType.FACT.value: FactMeta,
    MemoryType.SESSION.value: FactMeta,
    MemoryType.REMINDER.value: ReminderMeta,
    MemoryType.SCREEN.value: ScreenMeta,
    MemoryType.COMMAND.value: CommandMeta,
    MemoryType.RESPONSE.value: CommandMeta,
    MemoryType.COLLECTION.value: CollectionMeta,
}


def parse_metadata(memory_type: str, raw: Optional[Dict[str, Any]]) -> Optional[MemoryMeta]:
    """Return the typed payload for ``memory_type``, or None if it doesn't fit."""
    model = _BY_TYPE.get(memory_type)
    if model is None or raw is None:
        return None
    data = {k: v for k, v in raw.items() if k != "kind"}
    try:
        return model(**data)
    except ValidationError:
        return None
