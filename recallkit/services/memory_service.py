"""Memory service — context retrieval for commands and memories from exchanges."""

from __future__ import annotations

import logging
import os
import re
from typing import List, Optional

from recallkit.config import RetrievalConfig
from recallkit.core.enums import ActionType, MemoryType
from recallkit.core.errors import ExtractionError, RecallError
from recallkit.core.metadata import CommandMeta, FactMeta, FileMeta, ReminderMeta
from recallkit.core.protocols import (
    CommandRequest,
    CommandResponse,
    ContextResult,
    MemoryReference,
)
from recallkit.services.llm_service import LLMService
from recallkit.services.storage_service import StorageService

logger = logging.getLogger(__name__)

COMMAND_SCORE = 0.9
RESPONSE_SCORE = 0.85
OPENED_FILE_SCORE = 0.82
SESSION_SCORE = 0.95
REMINDER_SCORE = 0.9

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
_PATH_RE = re.compile(r"/[^\s]+")

SESSION_PROMPT = """\
Summarize this exchange as one durable memory: what the user is working on,
any decision made and any follow-up task. One or two sentences, plain
statements, no mention of "the user" or "the assistant".

{exchange}

Respond with ONLY the summary."""


def redact(text: str) -> str:
    """Mask e-mail addresses and absolute paths."""
    return _PATH_RE.sub("[path]", _EMAIL_RE.sub("[redacted-email]", text or ""))


def recall_summary(response: CommandResponse) -> Optional[str]:
    for action in response.actions:
        if action.type == ActionType.INFO_RECALL.value:
            summary = action.params.get("summary")
            if isinstance(summary, str) and summary.strip():
                return summary.strip()
    return None


class MemoryService:
    def __init__(
        self,
        store: StorageService,
        cfg: RetrievalConfig,
        llm: Optional[LLMService] = None,
    ):
        self._store = store
        self._cfg = cfg
        self._llm = llm

    def get_context_memories(self, text: str, workspace_id: str) -> List[MemoryReference]:
        return self._store.search_memories(text, workspace_id, self._cfg.search_limit)

    def build_context(self, text: str, workspace_id: str) -> ContextResult:
        """Ranked memories for ``text`` plus a compact context block.

        Conversation echoes are removed, plain ``fact`` scores boosted, and
        screen captures dropped whenever anything else is left.
        """
        try:
            found = self._store.search_memories(text, workspace_id, self._cfg.context_limit)
        except RecallError as e:
            logger.warning("Context search failed, using fallback: %s", e)
            return self.fallback_context(text)

        memories = [
            m for m in found
            if not m.type.startswith((MemoryType.COMMAND.value, MemoryType.RESPONSE.value))
        ]
        memories = [
            m.model_copy(update={"score": m.score * self._cfg.fact_boost}) if m.type == MemoryType.FACT.value else m
            for m in memories
        ]
        memories.sort(key=lambda m: m.score, reverse=True)

        without_screens = [m for m in memories if not m.type.startswith(MemoryType.SCREEN.value)]
        if without_screens:
            memories = without_screens

        context = "\n".join(f"- {m.summary}" for m in memories)
        logger.debug("Built context with %d memories for %r", len(memories), text[:60])
        return ContextResult(context=context, memories=memories)

    @staticmethod
    def fallback_context(text: str) -> ContextResult:
        context = "\n".join([
            "No context memories available.",
            "",
            f"User: {redact(text)}",
        ])
        return ContextResult(context=context, memories=[])

    async def extract_from_conversation(
        self,
        request: CommandRequest,
        response: CommandResponse,
    ) -> List[MemoryReference]:
        """Store what was asked, what was answered, opened files and reminders.

        Failures are raised as ExtractionError; callers run this detached.
        """
        workspace = request.workspace_id
        assistant_summary = recall_summary(response) or response.assistant_text
        cmd_meta = CommandMeta(command_id=request.command_id).dump()

        memories = [
            MemoryReference(
                id=f"mem-{request.command_id}-user",
                type=MemoryType.COMMAND.value,
                score=COMMAND_SCORE,
                summary=f"User asked: {request.text}",
                metadata=cmd_meta,
                workspace_id=workspace,
            ),
            MemoryReference(
                id=f"mem-{request.command_id}-assistant",
                type=MemoryType.RESPONSE.value,
                score=RESPONSE_SCORE,
                summary=f"Assistant: {assistant_summary}",
                metadata=cmd_meta,
                workspace_id=workspace,
            ),
        ]

        if self._llm is not None and self._llm.enabled:
            session = await self._summarize_session(request, assistant_summary)
            if session:
                memories.append(MemoryReference(
                    id=f"mem-{request.command_id}-session",
                    type=MemoryType.SESSION.value,
                    score=SESSION_SCORE,
                    summary=session,
                    metadata=FactMeta(extraction_method="llm", command_id=request.command_id).dump(),
                    workspace_id=workspace,
                ))

        for index, action in enumerate(response.actions):
            params = action.params
            path = params.get("path")
            if action.type == ActionType.FILE_OPEN.value and isinstance(path, str) and path:
                memories.append(MemoryReference(
                    id=f"mem-{request.command_id}-action-{index}",
                    type=MemoryType.FILE.value,
                    score=OPENED_FILE_SCORE,
                    summary=f"Opened file at {path}",
                    metadata=FileMeta(path=path, name=os.path.basename(path) or path).dump(),
                    workspace_id=workspace,
                ))
            elif action.type == ActionType.REMINDER_CREATE.value and params.get("title"):
                meta = ReminderMeta(
                    title=str(params["title"]),
                    notes=str(params["notes"]) if params.get("notes") else None,
                    due_date=str(params["due_date"]) if params.get("due_date") else None,
                )
                memories.append(MemoryReference(
                    id=f"mem-{request.command_id}-action-{index}",
                    type=MemoryType.REMINDER.value,
                    score=REMINDER_SCORE,
                    summary=f"Reminder: {meta.title}",
                    metadata=meta.dump(),
                    workspace_id=workspace,
                ))

        try:
            self._store.add_memories(memories, workspace)
        except RecallError as e:
            raise ExtractionError(f"Failed to store conversation memories: {e}") from e
        return memories

    async def _summarize_session(self, request: CommandRequest, assistant_summary: str) -> Optional[str]:
        exchange = f"User: {request.text}\nAssistant: {assistant_summary}"
        try:
            text = await self._llm.complete(SESSION_PROMPT.format(exchange=exchange), temperature=0.2)
        except ExtractionError as e:
            logger.warning("Session extraction failed for %s: %s", request.command_id, e)
            return None
        text = text.strip()
        return text or None
