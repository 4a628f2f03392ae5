"""Enumerations for memory types, action types and statuses."""

from enum import Enum


class MemoryType(str, Enum):
    FILE = "entity.file"
    COLLECTION = "entity.collection"
    FACT = "fact"
    DOC_CHUNK = "doc.chunk"
    REMINDER = "reminder"
    SCREEN = "context.screen"
    COMMAND = "fact.command"
    RESPONSE = "fact.response"
    SESSION = "fact.session"


class ActionType(str, Enum):
    FILE_OPEN = "file.open"
    FILE_SCROLL = "file.scroll"
    FILE_INDEX = "file.index"
    INFO_RECALL = "info.recall"
    INFO_SUMMARIZE = "info.summarize"
    REMINDER_CREATE = "reminder.create"
    SEARCH_QUERY = "search.query"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RelationshipType(str, Enum):
    CONTAINS = "contains"


# Conversation echoes and screen captures carry no recallable content
NOISE_TYPE_PREFIXES = (
    MemoryType.SCREEN.value,
    MemoryType.COMMAND.value,
    MemoryType.RESPONSE.value,
)
