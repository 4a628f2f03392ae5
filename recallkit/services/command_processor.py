"""Command processor — end-to-end handling of one user command.

Validation, context gathering, deterministic file-intent interception and,
when nothing deterministic applies, the LLM coordinator. Every answered
command is persisted atomically before it is returned.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from recallkit.config import RetrievalConfig
from recallkit.core.enums import NOISE_TYPE_PREFIXES, ActionType, MemoryType
from recallkit.core.errors import RecallError, ValidationError
from recallkit.core.protocols import Action, CommandRequest, CommandResponse, MemoryReference
from recallkit.core.tasks import TaskTracker
from recallkit.logging_config import log_command_result
from recallkit.services.llm_coordinator import LLMCoordinator
from recallkit.services.memory_service import MemoryService
from recallkit.services.storage_service import StorageService

logger = logging.getLogger(__name__)

COMMAND_PROCESSED = "command_processed"

_OPEN_RE = re.compile(r"\b(open|view|show|display|look at|launch|navigate|go to|jump to)\b")
_SCROLL_RE = re.compile(r"\b(scroll|scrolling|page down|page up|to the end|bottom|top)\b")
_SUMMARIZE_RE = re.compile(r"\b(summarize|summary|what('|’)s in|whats in|contents|overview|outline|tl;dr)\b")
_SEARCH_RE = re.compile(r"\b(find|search for|look for|highlight)\b")
_FILE_RECALL_RE = re.compile(
    r"\b(remind(er)?|which file|what file|which doc|what doc|what paper|supposed to read|finish reading|reminded you)\b"
)
_UP_RE = re.compile(r"\b(up|top|start|beginning|page up)\b")
_REMINDER_RE = re.compile(r"\b(remind me|reminder|set a reminder|remember to)\b")

_KEYWORD_STOPWORDS = frozenset({
    "what", "did", "does", "say", "about", "the", "and", "for", "with", "that", "this",
    "are", "was", "were", "have", "has", "had", "you", "your", "can", "please", "tell",
    "me", "my", "how", "when", "where", "who", "why", "any", "there",
})

NEED_ACTIVE_FILE_TEXT = "I need an active file/window to scroll. Please focus the file first or tell me which one."
NEAR_END_TEXT = "You're already near the end of the file, so I won't scroll further."
FILE_RECALL_TEXT = "I found a file that matches. Want me to open it?"
SCROLL_AMOUNT = 5000
NEAR_END_PROGRESS = 0.95
RECALL_MIN_SCORE = 0.4


@dataclass(frozen=True)
class Intent:
    open: bool
    scroll: bool
    summarize: bool
    search: bool
    file_recall: bool
    reminder: bool
    direction: str

    @property
    def file_action(self) -> bool:
        return self.open or self.scroll or self.summarize or self.search


def detect_intent(request: CommandRequest) -> Intent:
    lower = request.text.lower()
    direction = "up" if _UP_RE.search(lower) or request.scroll_direction == "up" else "down"
    return Intent(
        open=bool(_OPEN_RE.search(lower)),
        scroll=bool(_SCROLL_RE.search(lower)),
        summarize=bool(_SUMMARIZE_RE.search(lower)),
        search=bool(_SEARCH_RE.search(lower)),
        file_recall=bool(_FILE_RECALL_RE.search(lower)),
        reminder=bool(_REMINDER_RE.search(lower)),
        direction=direction,
    )


def is_useful(memory: MemoryReference) -> bool:
    """Neither file metadata, a screen capture nor a conversation echo."""
    return not memory.type.startswith((MemoryType.FILE.value, *NOISE_TYPE_PREFIXES))


def dedupe_by_path(memories: Sequence[MemoryReference]) -> List[MemoryReference]:
    """One memory per path (case-insensitive), keeping the highest score."""
    by_path: Dict[str, MemoryReference] = {}
    for mem in memories:
        if not mem.path:
            continue
        key = mem.path.lower()
        existing = by_path.get(key)
        if existing is None or mem.score > existing.score:
            by_path[key] = mem
    return list(by_path.values())


def keyword_query(text: str) -> str:
    words = [w.strip("?.!,;:\"'()") for w in text.lower().split()]
    keywords = []
    for word in words:
        if len(word) <= 2 or word in _KEYWORD_STOPWORDS:
            continue
        keywords.append(word)
        if word.endswith("s") and len(word) > 4:
            keywords.append(word[:-1])
    return " ".join(keywords)


class CommandProcessor:
    def __init__(
        self,
        store: StorageService,
        memory: MemoryService,
        coordinator: LLMCoordinator,
        *,
        retrieval: Optional[RetrievalConfig] = None,
        tasks: Optional[TaskTracker] = None,
    ):
        self._store = store
        self._memory = memory
        self._coordinator = coordinator
        self._cfg = retrieval or RetrievalConfig()
        self._tasks = tasks or TaskTracker()
        self._listeners: Dict[str, List[Callable[[CommandResponse], None]]] = defaultdict(list)

    @property
    def tasks(self) -> TaskTracker:
        return self._tasks

    # ── Events ──

    def on(self, event: str, callback: Callable[[CommandResponse], None]) -> None:
        self._listeners[event].append(callback)

    def _emit(self, event: str, response: CommandResponse) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(response)
            except Exception as e:
                logger.warning("Listener for %s failed: %s", event, e)

    # ── Entry point ──

    @staticmethod
    def validate(request: CommandRequest) -> None:
        if not request.user_id:
            raise ValidationError("user_id is required")
        if not request.command_id:
            raise ValidationError("command_id is required")
        if not request.text:
            raise ValidationError("text is required")

    async def process(self, request: CommandRequest) -> CommandResponse:
        """Answer ``request``; raises ValidationError or StorageError."""
        self.validate(request)
        workspace = request.workspace_id

        context = self._memory.build_context(request.text, workspace)
        memories = self._gather_context(request, list(context.memories))
        logger.info(
            "Command %s: %d context memories (%s)",
            request.command_id, len(memories), ", ".join(m.type for m in memories[:8]),
        )

        intent = detect_intent(request)

        if intent.file_action:
            handled = self._handle_file_intent(request, intent, memories)
            if handled is not None:
                response, path, extract = handled
                return self._finish(request, response, path, extract=extract)

        if intent.file_recall and not intent.file_action:
            response = self._handle_file_recall(request, memories)
            if response is not None:
                return self._finish(request, response, "recall")

        if not memories:
            memories = self._safe(self._store.get_recent_files, workspace, 6)

        llm_response = await self._coordinator.generate_response(
            request.text,
            context.context,
            memories,
            request.screen_context,
        )
        actions = list(llm_response.actions)
        if intent.reminder:
            actions = self._apply_reminder_hints(actions, request, memories)

        response = CommandResponse(
            command_id=request.command_id,
            assistant_text=llm_response.assistant_text,
            actions=actions,
            memories_used=memories,
        )
        return self._finish(request, response, "llm")

    def _finish(
        self,
        request: CommandRequest,
        response: CommandResponse,
        path: str,
        *,
        extract: bool = True,
    ) -> CommandResponse:
        self._store.save_command(request, response, response.memories_used)
        if extract:
            self._tasks.spawn(
                f"extract-{request.command_id}",
                self._memory.extract_from_conversation(request, response),
            )
        log_command_result(response, path)
        self._emit(COMMAND_PROCESSED, response)
        return response

    # ── Context cascade ──

    def _safe(self, fn: Callable[..., List[MemoryReference]], *args) -> List[MemoryReference]:
        try:
            return fn(*args)
        except RecallError as e:
            logger.warning("%s failed: %s", getattr(fn, "__name__", "lookup"), e)
            return []

    def _text_fallbacks(self, request: CommandRequest, memories: List[MemoryReference]) -> List[MemoryReference]:
        workspace = request.workspace_id
        extras = [m for m in self._safe(self._store.search_memories_text, request.text, workspace, 5) if is_useful(m)]
        memories = memories + extras
        if not any(is_useful(m) for m in memories):
            memories = memories + self._safe(self._store.get_recent_non_screen_memories, workspace, 3)
        return memories

    def _gather_context(self, request: CommandRequest, memories: List[MemoryReference]) -> List[MemoryReference]:
        """Widen context step by step until something useful turns up."""
        workspace = request.workspace_id

        if not memories:
            memories = self._safe(self._store.search_memories, request.text, workspace, self._cfg.context_limit)
            memories = self._text_fallbacks(request, memories)

        if not any(is_useful(m) for m in memories):
            extras = self._safe(self._store.search_memories, request.text, workspace, 3)
            memories = memories + [m for m in extras if not m.is_file()]
            memories = self._text_fallbacks(request, memories)

        if not any(is_useful(m) for m in memories):
            query = keyword_query(request.text)
            if query:
                extras = self._safe(self._store.search_memories_text, query, workspace, 5)
                memories = memories + [m for m in extras if is_useful(m)]

        seen = set()
        unique = []
        for m in memories:
            if m.id not in seen:
                seen.add(m.id)
                unique.append(m)

        without_noise = [m for m in unique if not m.type.startswith(NOISE_TYPE_PREFIXES)]
        return without_noise or unique

    # ── Deterministic paths ──

    def _lookup_files(self, request: CommandRequest, limit: int) -> List[MemoryReference]:
        return self._safe(self._store.find_file_by_name_or_path, request.text, request.workspace_id, limit)

    def _handle_file_intent(
        self,
        request: CommandRequest,
        intent: Intent,
        memories: List[MemoryReference],
    ) -> Optional[Tuple[CommandResponse, str, bool]]:
        candidates = dedupe_by_path(memories)
        if len(candidates) != 1:
            matches = self._lookup_files(request, 3)
            if matches:
                candidates = dedupe_by_path(matches)
                memories.extend(matches)

        ranked = sorted(candidates, key=lambda m: m.score, reverse=True)

        if len(ranked) > 1 and ranked[0].score - ranked[1].score < self._cfg.disambiguation_margin:
            options = [
                f"{i}) {m.display_name or f'Option {i}'}"
                for i, m in enumerate(ranked[:3], 1)
            ]
            response = CommandResponse(
                command_id=request.command_id,
                assistant_text="I found multiple matching files. Which one should I use?\n" + "\n".join(options),
                actions=[],
                memories_used=ranked[:3],
            )
            return response, "disambiguation", True

        if intent.scroll and not request.active_path and not ranked:
            response = CommandResponse(
                command_id=request.command_id,
                assistant_text=NEED_ACTIVE_FILE_TEXT,
                actions=[],
                memories_used=[],
            )
            return response, "direct", False

        if not ranked:
            return None

        file = ranked[0]
        active_matches = bool(request.active_path) and file.path.lower() == request.active_path.lower()
        near_end = (
            intent.scroll
            and intent.direction == "down"
            and request.scroll_progress is not None
            and request.scroll_progress >= NEAR_END_PROGRESS
            and active_matches
        )

        actions: List[Action] = []
        if intent.summarize or intent.search:
            topic = f"Find: {request.text}" if intent.search else f"Summary: {request.text}"
            actions.append(Action(
                type=ActionType.INFO_SUMMARIZE.value,
                params={"topic": topic, "sources": [file.path], "format": "brief"},
            ))
        elif intent.open or (not active_matches and not intent.scroll):
            actions.append(Action(type=ActionType.FILE_OPEN.value, params={"path": file.path}))

        if intent.scroll and not near_end:
            actions.append(Action(
                type=ActionType.FILE_SCROLL.value,
                params={"direction": intent.direction, "amount": SCROLL_AMOUNT},
            ))

        if near_end:
            text = NEAR_END_TEXT
        elif intent.summarize or intent.search:
            text = f"Working on {'finding that in' if intent.search else 'summarizing'} the file."
        elif intent.scroll:
            text = f"Scrolling {intent.direction} in the file."
        else:
            text = "Opening the file."

        if not actions and not near_end:
            return None
        response = CommandResponse(
            command_id=request.command_id,
            assistant_text=text,
            actions=actions,
            memories_used=[file],
        )
        return response, "direct", True

    def _handle_file_recall(
        self,
        request: CommandRequest,
        memories: List[MemoryReference],
    ) -> Optional[CommandResponse]:
        candidates = [m for m in memories if m.path]
        if not candidates:
            matches = self._lookup_files(request, 1)
            if matches:
                candidates = matches
                memories.extend(matches)
        candidates = dedupe_by_path(candidates)

        if len(candidates) != 1 or candidates[0].score < RECALL_MIN_SCORE:
            return None
        file = candidates[0]
        name = file.name or file.path or "file"
        return CommandResponse(
            command_id=request.command_id,
            assistant_text=FILE_RECALL_TEXT,
            actions=[Action(
                type=ActionType.INFO_RECALL.value,
                params={
                    "summary": f'Matched file: {name}. Say "open the file" to open it.',
                    "confidence": file.score,
                },
            )],
            memories_used=[file],
        )

    @staticmethod
    def reminder_hints(request: CommandRequest, memories: Sequence[MemoryReference]) -> Dict[str, str]:
        """Title and notes for a reminder, drawn from the best file and facts in context."""
        best_file = next((m for m in memories if m.path), None)
        base = (best_file.name or best_file.summary) if best_file else request.text
        title = re.sub(r"\s+", " ", base or "Reminder").strip()
        if len(title) > 80:
            title = f"{title[:77]}..."

        facts = [
            m.summary.split(":")[-1].strip() or m.summary
            for m in memories if m.type.startswith(MemoryType.FACT.value)
        ][:2]
        notes = []
        if best_file and best_file.name:
            notes.append(f"File: {best_file.name}")
        if facts:
            notes.append(f"Context: {' | '.join(facts)}")
        return {"title": title, "notes": "\n".join(notes)[:200]}

    def _apply_reminder_hints(
        self,
        actions: List[Action],
        request: CommandRequest,
        memories: Sequence[MemoryReference],
    ) -> List[Action]:
        hints = self.reminder_hints(request, memories)
        updated = []
        for action in actions:
            if action.type == ActionType.REMINDER_CREATE.value:
                params = dict(action.params)
                if not params.get("title"):
                    params["title"] = hints["title"]
                if not params.get("notes") and hints["notes"]:
                    params["notes"] = hints["notes"]
                action = Action(type=action.type, params=params)
            updated.append(action)
        return updated
