"""LLM coordinator — provider call, output clean-up and deterministic fallback."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import random
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from recallkit.core.enums import ActionType, MemoryType
from recallkit.core.errors import ExtractionError
from recallkit.core.protocols import Action, LLMResponse, MemoryReference
from recallkit.services.context_service import build_prompt, build_screen_summary_prompt
from recallkit.services.llm_service import LLMService, strip_fences

logger = logging.getLogger(__name__)

NO_MEMORIES_TEXT = (
    "I don't have any relevant information for that request. "
    "Try indexing some files or ask about something else."
)
NO_MEMORIES_RECALL = "No memories found. Check the dashboard for indexed content."
NO_REMINDERS_TEXT = "I don't see any reminders yet. Want me to create one?"

_META_CHATTER_RE = re.compile(
    r"(user asked|user was|user inquir|previously attempted|search now|no memories found|"
    r"the assistant|assistant responded|did not provide|based on.*memor)",
    re.IGNORECASE,
)
_REMINDER_QUERY_RE = re.compile(r"what.*(working|bug|reminder|yesterday|task)", re.IGNORECASE)
_PATH_RE = re.compile(r"[A-Za-z]:?[/\\][\w\s.\-/\\]+")
_FILENAME_RE = re.compile(r"\b[\w.-]+\.[A-Za-z0-9]{2,5}\b")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")

REMINDER_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"remind me",
        r"set a reminder",
        r"\breminder\b",
        r"don'?t (let me )?forget",
        r"\bnote that\b",
        r"\bremember (this|that|to)\b",
        r"\bsave (this|that) for later\b",
        r"\bput (this|that) on my (list|todo)\b",
        r"\bi need to\b.*\blater\b",
        r"\bcome back to this\b",
        r"\bmake (a )?note\b",
    )
]

SUMMARY_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"summarize",
        r"\bsummary\b",
        r"\brecap\b",
        r"\boverview\b",
        r"everything about",
        r"\bwhat do (i|we) know about\b",
        r"\bcatch me up\b",
        r"\bfill me in\b",
        r"\bwhat('?s| is) the (status|state)\b",
        r"\btell me about\b",
        r"\bbrief me\b",
        r"\bbreak (it|this) down\b",
        r"\bkey (points|takeaways)\b",
        r"\bhighlights?\b",
        r"\btl;?dr\b",
    )
]

SCROLL_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"(scroll|move|go) (up|down)",
        r"\b(page|screen) (up|down)\b",
        r"\bshow me (more|less)\b",
        r"\b(keep|continue) (scrolling|going)\b",
        r"\bnext (page|section)\b",
        r"\bprevious (page|section)\b",
        r"\b(go|jump) to (top|bottom)\b",
    )
]

DOWNLOADS_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"download(s)?",
        r"\bfrom (the )?downloads\b",
        r"\b(in|from) my downloads\b",
    )
]

RANDOM_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\brandom\b",
        r"\bany\b",
        r"\bsurprise me\b",
        r"\bpick (one|something)\b",
    )
]

RECENT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"(latest|recent|new)",
        r"\bjust (added|created|modified)\b",
        r"\blast (one|file)\b",
        r"\btoday'?s\b",
        r"\bthis (week|month)\b",
        r"\bmost recent\b",
    )
]

_OPEN_INTENT_RE = re.compile(r"(open|show|launch|start)", re.IGNORECASE)

_OVERLAP_STOPWORDS = frozenset({"open", "the", "a", "an", "folder", "file", "please", "in", "my"})

_SNIPPET_STOPWORDS = frozenset({
    "what", "did", "say", "about", "the", "and", "for", "with", "that", "this",
    "are", "was", "were", "have", "has", "had", "but", "you", "your", "api",
    "redesign", "project", "alpha", "rest", "meeting", "notes", "doc",
    "document", "summary", "feedback", "question", "asked", "ask",
})


def _matches_any(patterns: Sequence[re.Pattern], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _parse_time(value: Any) -> float:
    if not isinstance(value, str) or not value:
        return 0.0
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def _memory_date(memory: MemoryReference) -> float:
    meta = memory.metadata
    value = memory.modified or meta.get("timestamp") or meta.get("created_at") or meta.get("createdAt")
    return _parse_time(value)


# ── Output clean-up ──

def clean_assistant_text(text: str) -> str:
    """Strip code fences and unwrap a JSON body's ``assistant_text``."""
    if not text:
        return ""
    t = strip_fences(text)
    try:
        parsed = json.loads(t)
    except ValueError:
        return t
    if isinstance(parsed, dict) and isinstance(parsed.get("assistant_text"), str):
        return parsed["assistant_text"]
    return t


def scrub_filenames(text: str) -> str:
    """Remove paths and ``name.ext`` tokens from text meant for the user."""
    if not text:
        return ""
    stripped = _FILENAME_RE.sub("", _PATH_RE.sub("", text))
    return re.sub(r"\s{2,}", " ", stripped).strip()


def is_meta_chatter(text: str) -> bool:
    return bool(_META_CHATTER_RE.search(text or ""))


def get_recall_summary(actions: Sequence[Action]) -> Optional[str]:
    for action in actions:
        if action.type == ActionType.INFO_RECALL.value:
            summary = action.params.get("summary")
            if isinstance(summary, str) and summary.strip():
                return summary.strip()
            return None
    return None


def choose_assistant_text(text: Optional[str], actions: Sequence[Action]) -> str:
    """Prefer a recalled summary over model chatter."""
    cleaned = scrub_filenames(clean_assistant_text(text or ""))
    recall = get_recall_summary(actions)

    if recall:
        if scrub_filenames(recall).lower() not in cleaned.lower():
            return recall

    if is_meta_chatter(cleaned):
        if recall:
            return recall
        stripped = re.sub(r"user asked:?", "", cleaned, flags=re.IGNORECASE).strip()
        if stripped:
            return stripped
    return cleaned


def force_recall_assistant_text(response: LLMResponse) -> LLMResponse:
    recall = get_recall_summary(response.actions)
    if recall:
        return response.model_copy(update={"assistant_text": recall})
    return response


def build_relevant_summary(memory: MemoryReference, command_text: str) -> str:
    """Up to two best-matching sentences of a memory, kept on sentence boundaries."""
    summary = memory.summary or ""
    all_tokens = [t for t in re.split(r"\W+", command_text.lower()) if len(t) > 2]
    focus = {t for t in all_tokens if t not in _SNIPPET_STOPWORDS}
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(summary) if s]

    def score(sentence: str) -> int:
        lower = sentence.lower()
        return sum((3 if t in focus else 1) for t in all_tokens if t in lower)

    scored = [(s.strip(), score(s)) for s in sentences]
    scored = sorted([item for item in scored if item[1] > 0], key=lambda item: item[1], reverse=True)
    chosen = [s for s, _ in scored[:2]] if scored else sentences[:2]

    snippet = " ".join(re.sub(r"\s+", " ", s) for s in chosen).strip() or summary
    if len(snippet) <= 350:
        return snippet

    result = ""
    for sentence in (s for s in _SENTENCE_SPLIT_RE.split(snippet) if s):
        if len(result + sentence) > 450:
            break
        result += sentence + " "
    return result.strip() or snippet[:350] + "..."


def extract_topic(command_text: str) -> str:
    match = re.search(r"summarize\s+(.*)", command_text, re.IGNORECASE) or re.search(
        r"summary of\s+(.*)", command_text, re.IGNORECASE
    )
    if match and match.group(1):
        return match.group(1).strip()
    return command_text.strip()


def parse_llm_payload(text: str) -> Optional[LLMResponse]:
    """Decode ``{"assistant_text", "actions"}``; None when the body is not that shape."""
    try:
        data = json.loads(strip_fences(text))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    actions = []
    for raw in data.get("actions") or []:
        if isinstance(raw, dict) and isinstance(raw.get("type"), str):
            params = raw.get("params") if isinstance(raw.get("params"), dict) else {}
            actions.append(Action(type=raw["type"], params=params))
    assistant_text = data.get("assistant_text")
    return LLMResponse(
        assistant_text=assistant_text if isinstance(assistant_text, str) else "",
        actions=actions,
    )


class LLMCoordinator:
    def __init__(
        self,
        llm: Optional[LLMService] = None,
        *,
        conversational_mode: bool = False,
        timeout: float = 30.0,
        downloads_dir: Optional[Path] = None,
        rng: Optional[random.Random] = None,
    ):
        self._llm = llm
        self._conversational = conversational_mode
        self._timeout = timeout
        self._downloads_dir = downloads_dir if downloads_dir is not None else Path.home() / "Downloads"
        self._rng = rng or random.Random()

    @property
    def has_provider(self) -> bool:
        return self._llm is not None and self._llm.enabled

    async def generate_response(
        self,
        command_text: str,
        context: str,
        memories: Sequence[MemoryReference],
        screen_context: Optional[str] = None,
        conversational_mode: Optional[bool] = None,
    ) -> LLMResponse:
        memories = list(memories)
        if not self.has_provider:
            fb = self.fallback(command_text, memories)
            cleaned = choose_assistant_text(fb.assistant_text, fb.actions)
            return force_recall_assistant_text(fb.model_copy(update={"assistant_text": cleaned}))

        if _REMINDER_QUERY_RE.search(command_text) and not memories:
            return LLMResponse(assistant_text=NO_REMINDERS_TEXT, actions=[])

        conversational = self._conversational if conversational_mode is None else conversational_mode
        prompt = build_prompt(command_text, context, memories, screen_context, conversational)
        try:
            raw = await asyncio.wait_for(self._llm.complete(prompt, retry=False), timeout=self._timeout)
        except (ExtractionError, asyncio.TimeoutError) as e:
            logger.warning("LLM call failed, using fallback: %s", e)
            return self.apply_memory_guard(self.fallback(command_text, memories), command_text, memories)

        parsed = parse_llm_payload(raw)
        if parsed is None:
            parsed = LLMResponse(assistant_text=raw, actions=[])
        response = self.with_fallback_actions(parsed, command_text, memories)
        return self.apply_memory_guard(response, command_text, memories)

    def with_fallback_actions(
        self,
        response: LLMResponse,
        command_text: str,
        memories: Sequence[MemoryReference],
    ) -> LLMResponse:
        """Keep the model's actions unless it returned none or only chatter."""
        if response.actions:
            cleaned = choose_assistant_text(response.assistant_text, response.actions)
            has_recall = any(a.type == ActionType.INFO_RECALL.value for a in response.actions)
            if not has_recall and is_meta_chatter(cleaned):
                fb = self.fallback(command_text, memories)
                return fb.model_copy(update={"assistant_text": choose_assistant_text(fb.assistant_text, fb.actions)})
            return response.model_copy(update={"assistant_text": cleaned})

        fb = self.fallback(command_text, memories)
        return LLMResponse(
            assistant_text=choose_assistant_text(response.assistant_text or fb.assistant_text, fb.actions),
            actions=fb.actions,
        )

    def apply_memory_guard(
        self,
        response: LLMResponse,
        command_text: str,
        memories: Sequence[MemoryReference],
    ) -> LLMResponse:
        """With memories present, never answer with chatter or "no memories found"."""
        if not memories:
            return force_recall_assistant_text(response)

        recall = get_recall_summary(response.actions)
        useful = bool(recall) and not re.search("no memories found", recall, re.IGNORECASE) and not is_meta_chatter(recall)
        if not response.actions or not useful:
            return force_recall_assistant_text(self.fallback(command_text, memories))
        return force_recall_assistant_text(response)

    # ── Deterministic fallback ──

    def fallback(self, command_text: str, memories: Sequence[MemoryReference]) -> LLMResponse:
        lower = command_text.lower()

        if _matches_any(REMINDER_PATTERNS, lower):
            title = re.sub(r".*remind me (to )?", "", command_text, flags=re.IGNORECASE | re.DOTALL).strip() or "Reminder"
            return LLMResponse(
                assistant_text=f"Setting a reminder: {title}",
                actions=[Action(type=ActionType.REMINDER_CREATE.value, params={"title": title})],
            )

        if _matches_any(SUMMARY_PATTERNS, lower):
            return self._summary_fallback(command_text, memories)

        if _matches_any(SCROLL_PATTERNS, lower):
            match = re.search(r"(up|down)", lower)
            direction = "down" if match and match.group(1) == "down" else "up"
            params: Dict[str, Any] = {"direction": direction}
            amount = re.search(r"(\d+)\s*(pages?|lines?)", lower)
            if amount:
                params["amount"] = int(amount.group(1)) * (800 if direction == "down" else -800)
            return LLMResponse(
                assistant_text=f"Scrolling {direction}",
                actions=[Action(type=ActionType.FILE_SCROLL.value, params=params)],
            )

        return self._recall_fallback(command_text, lower, memories)

    def _summary_fallback(self, command_text: str, memories: Sequence[MemoryReference]) -> LLMResponse:
        topic = extract_topic(command_text)
        relevant = sorted(memories, key=lambda m: m.score, reverse=True)[:8]
        file_count = sum(1 for m in relevant if m.is_file())

        timeline = sorted(relevant, key=_memory_date, reverse=True)
        snippets = []
        for m in timeline[:3]:
            ts = _memory_date(m)
            snippets.append(f"{datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()}: {m.summary}" if ts else m.summary)

        assistant_text = " ".join([
            f'Summary for "{topic}":',
            f"Based on {len(relevant)} memories ({file_count} files, {len(relevant) - file_count} other).",
            " • ".join(snippets) if snippets else "No detailed timeline available.",
        ])
        return LLMResponse(
            assistant_text=assistant_text,
            actions=[Action(
                type=ActionType.INFO_SUMMARIZE.value,
                params={"topic": topic, "sources": [m.id for m in relevant], "format": "timeline"},
            )],
        )

    def _recall_fallback(self, command_text: str, lower: str, memories: Sequence[MemoryReference]) -> LLMResponse:
        file_memories = [m for m in memories if m.is_file() and m.path]
        tokens = [t for t in lower.split() if len(t) > 2 and t not in _OVERLAP_STOPWORDS]

        def overlap(mem: MemoryReference) -> int:
            haystack = f"{mem.summary} {json.dumps(mem.metadata, default=str)}".lower()
            return sum(1 for t in tokens if t in haystack)

        def rank(mem: MemoryReference) -> float:
            boost = 2 if mem.type.startswith(MemoryType.DOC_CHUNK.value) else 1 if mem.type.startswith("fact") else 0
            return (mem.score or 0) + overlap(mem) * 1.5 + boost

        candidates = [
            m for m in memories
            if not m.type.startswith((MemoryType.FILE.value, MemoryType.SCREEN.value, MemoryType.SESSION.value))
        ]
        info_memory = sorted(candidates, key=rank, reverse=True)[0] if candidates else None

        if not file_memories and info_memory is None:
            return self._no_memories()

        wants_downloads = _matches_any(DOWNLOADS_PATTERNS, lower)
        wants_random = _matches_any(RANDOM_PATTERNS, lower)
        wants_recent = _matches_any(RECENT_PATTERNS, lower)

        def score_file(mem: MemoryReference) -> int:
            name = (mem.name or mem.summary or "").lower()
            score = sum(2 for t in tokens if t in name)
            if wants_downloads and "Downloads" in (mem.path or ""):
                score += 1
            return score

        def compare(a: MemoryReference, b: MemoryReference) -> float:
            if wants_recent:
                date_a = _parse_time(a.modified)
                date_b = _parse_time(b.modified)
                if abs(date_a - date_b) > 60:
                    return date_b - date_a
            return score_file(b) - score_file(a)

        sorted_files = sorted(file_memories, key=functools.cmp_to_key(compare))
        actions: List[Action] = []
        assistant_text = "On it."
        chosen: Optional[MemoryReference] = None

        if wants_downloads:
            downloads = sorted(
                [m for m in file_memories if "Downloads" in (m.path or "")],
                key=functools.cmp_to_key(compare),
            )
            if downloads:
                chosen = self._rng.choice(downloads) if wants_random else downloads[0]
            else:
                return LLMResponse(
                    assistant_text="Opening your Downloads folder.",
                    actions=[Action(type=ActionType.FILE_OPEN.value, params={"path": str(self._downloads_dir)})],
                )

        if chosen is None and sorted_files:
            chosen = self._rng.choice(sorted_files) if wants_random else sorted_files[0]

        explicit_open = bool(_OPEN_INTENT_RE.search(command_text))

        if chosen is not None and explicit_open:
            params: Dict[str, Any] = {"path": chosen.path}
            hint = ""
            for key in ("page", "section", "line_number"):
                if chosen.meta_value(key):
                    params[key] = chosen.meta_value(key)
            if params.get("page"):
                hint = f" on page {params['page']}"
            elif params.get("section"):
                hint = ", jumping to the section"
            elif params.get("line_number"):
                hint = " at the specified line"
            actions.append(Action(type=ActionType.FILE_OPEN.value, params=params))
            assistant_text = f"I just opened the file{hint}."
        elif info_memory is not None:
            snippet = build_relevant_summary(info_memory, command_text)
            actions.append(Action(type=ActionType.INFO_RECALL.value, params={"summary": snippet}))
            assistant_text = snippet
        elif chosen is not None:
            actions.append(Action(type=ActionType.INFO_RECALL.value, params={"summary": chosen.summary}))
            assistant_text = chosen.summary

        if not actions:
            return self._no_memories()
        return LLMResponse(assistant_text=assistant_text, actions=actions)

    @staticmethod
    def _no_memories() -> LLMResponse:
        return LLMResponse(
            assistant_text=NO_MEMORIES_TEXT,
            actions=[Action(type=ActionType.INFO_RECALL.value, params={"summary": NO_MEMORIES_RECALL})],
        )

    async def summarize_screen_context(self, ocr_text: str) -> Optional[str]:
        """Short description of what was on screen, or None."""
        if not self.has_provider or not ocr_text or len(ocr_text.strip()) < 20:
            return None
        try:
            text = await asyncio.wait_for(
                self._llm.complete(build_screen_summary_prompt(ocr_text), temperature=0.2, retry=False),
                timeout=self._timeout,
            )
        except (ExtractionError, asyncio.TimeoutError) as e:
            logger.warning("Failed to summarize screen context: %s", e)
            return None
        summary = text.strip()
        if 15 < len(summary) < 150:
            return summary
        return None
