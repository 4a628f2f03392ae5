"""Tests for end-to-end command handling."""

import pytest

from recallkit.config import RetrievalConfig
from recallkit.core.errors import StorageError, ValidationError
from recallkit.core.protocols import CommandRequest, ContextResult, MemoryReference
from recallkit.services.command_processor import (
    COMMAND_PROCESSED,
    FILE_RECALL_TEXT,
    NEAR_END_TEXT,
    NEED_ACTIVE_FILE_TEXT,
    CommandProcessor,
    dedupe_by_path,
    detect_intent,
    keyword_query,
)
from recallkit.services.llm_coordinator import LLMCoordinator


class FakeMemory:
    """Memory service stand-in with fixed context and recorded extraction calls."""

    def __init__(self, memories=None):
        self.memories = list(memories or [])
        self.extracted = []

    def build_context(self, text, workspace_id):
        return ContextResult(
            context="\n".join(f"- {m.summary}" for m in self.memories),
            memories=list(self.memories),
        )

    async def extract_from_conversation(self, request, response):
        self.extracted.append(request.command_id)
        return []


def _doc(path, score, id=None, type="doc.chunk", summary=None):
    name = path.rsplit("/", 1)[-1]
    return MemoryReference(
        id=id or f"doc-{name}",
        type=type,
        score=score,
        summary=summary or f"Notes from {name}",
        metadata={"path": path, "name": name},
    )


def _request(text, **kwargs):
    data = {"user_id": "local", "command_id": "cmd-1", "text": text, "timestamp": "2026-01-01T00:00:00Z"}
    data.update(kwargs)
    return CommandRequest(**data)


def _processor(store, memories=None):
    memory = FakeMemory(memories)
    return CommandProcessor(store, memory, LLMCoordinator(), retrieval=RetrievalConfig()), memory


# ── Helpers ──

def test_detect_intent():
    intent = detect_intent(_request("please scroll to the top"))
    assert intent.scroll and intent.direction == "up"
    assert not intent.open
    assert detect_intent(_request("summarize the spec doc")).summarize
    assert detect_intent(_request("which file was I supposed to read")).file_recall
    assert detect_intent(_request("remind me to pay rent")).reminder
    assert detect_intent(_request("keep going", scroll_direction="up")).direction == "up"
    assert not detect_intent(_request("what day is the release")).file_action


def test_dedupe_by_path_keeps_best_score():
    a_low = _doc("/docs/A.md", 0.4, id="a1")
    a_high = _doc("/docs/a.md", 0.9, id="a2")
    b = _doc("/docs/b.md", 0.5)
    no_path = MemoryReference(id="x", type="fact", score=1.0, summary="no path")
    result = dedupe_by_path([a_low, a_high, b, no_path])
    assert sorted(m.id for m in result) == ["a2", "doc-b.md"]


def test_keyword_query():
    assert keyword_query("What did Sarah say about the API redesigns?") == "sarah api redesigns redesign"
    assert keyword_query("did you") == ""


# ── Validation ──

@pytest.mark.asyncio
async def test_validation_errors(store):
    processor, _ = _processor(store)
    with pytest.raises(ValidationError):
        await processor.process(_request(""))
    with pytest.raises(ValidationError):
        await processor.process(_request("hello", user_id=""))
    with pytest.raises(ValidationError):
        await processor.process(_request("hello", command_id=""))
    assert store.get_stats()["total_commands"] == 0


# ── File intents ──

@pytest.mark.asyncio
async def test_close_scores_ask_for_disambiguation(store):
    processor, memory = _processor(store, [
        _doc("/docs/report-a.md", 0.52, type="entity.file"),
        _doc("/docs/report-b.md", 0.50, type="entity.file"),
    ])

    response = await processor.process(_request("open the report"))
    await processor.tasks.wait_all()

    assert response.actions == []
    assert "1) report-a.md" in response.assistant_text
    assert "2) report-b.md" in response.assistant_text
    assert store.command_exists("cmd-1")
    assert memory.extracted == ["cmd-1"]


@pytest.mark.asyncio
async def test_clear_winner_opens_file(store):
    processor, _ = _processor(store, [
        _doc("/docs/report-a.md", 0.80, type="entity.file"),
        _doc("/docs/report-b.md", 0.40, type="entity.file"),
    ])

    response = await processor.process(_request("open the report"))
    await processor.tasks.wait_all()

    assert len(response.actions) == 1
    assert response.actions[0].type == "file.open"
    assert response.actions[0].params == {"path": "/docs/report-a.md"}
    assert [m.id for m in response.memories_used] == ["doc-report-a.md"]


@pytest.mark.asyncio
async def test_open_falls_back_to_file_lookup(store, make_file):
    file = make_file("roadmap.md", "Roadmap for the year ahead.")
    store.index_files([file], "local")
    processor, _ = _processor(store)

    response = await processor.process(_request("open the roadmap"))
    await processor.tasks.wait_all()

    assert response.actions[0].type == "file.open"
    assert response.actions[0].params["path"] == file.path


@pytest.mark.asyncio
async def test_scroll_without_active_file(store):
    processor, memory = _processor(store)

    response = await processor.process(_request("scroll down"))
    await processor.tasks.wait_all()

    assert response.assistant_text == NEED_ACTIVE_FILE_TEXT
    assert response.actions == []
    assert memory.extracted == []
    assert store.command_exists("cmd-1")


@pytest.mark.asyncio
async def test_scroll_in_active_file(store):
    processor, _ = _processor(store, [_doc("/docs/a.md", 0.9)])
    response = await processor.process(_request("scroll down", active_path="/docs/A.md", scroll_progress=0.4))
    await processor.tasks.wait_all()
    assert [a.type for a in response.actions] == ["file.scroll"]
    assert response.actions[0].params == {"direction": "down", "amount": 5000}


@pytest.mark.asyncio
async def test_scroll_near_end_is_suppressed(store):
    processor, _ = _processor(store, [_doc("/docs/a.md", 0.9)])
    response = await processor.process(_request("scroll down", active_path="/docs/a.md", scroll_progress=0.97))
    await processor.tasks.wait_all()
    assert response.assistant_text == NEAR_END_TEXT
    assert response.actions == []


@pytest.mark.asyncio
async def test_summarize_file(store):
    processor, _ = _processor(store, [_doc("/docs/a.md", 0.9)])
    response = await processor.process(_request("summarize the notes"))
    await processor.tasks.wait_all()
    action = response.actions[0]
    assert action.type == "info.summarize"
    assert action.params == {"topic": "Summary: summarize the notes", "sources": ["/docs/a.md"], "format": "brief"}


@pytest.mark.asyncio
async def test_file_recall(store):
    processor, _ = _processor(store, [_doc("/docs/paper.pdf", 0.6)])
    response = await processor.process(_request("which file was I supposed to read"))
    await processor.tasks.wait_all()
    assert response.assistant_text == FILE_RECALL_TEXT
    assert response.actions[0].type == "info.recall"
    assert "paper.pdf" in response.actions[0].params["summary"]


# ── LLM path ──

@pytest.mark.asyncio
async def test_recall_through_coordinator(store):
    fact = MemoryReference(id="fact-release", type="fact", score=0.9, summary="The release is scheduled for Monday.")
    processor, memory = _processor(store, [fact])
    seen = []
    processor.on(COMMAND_PROCESSED, seen.append)

    response = await processor.process(_request("what day is the release"))
    await processor.tasks.wait_all()

    assert response.actions[0].type == "info.recall"
    assert "Monday" in response.assistant_text
    assert seen == [response]
    assert memory.extracted == ["cmd-1"]
    assert store.get_recent_commands()[0]["assistant_text"] == response.assistant_text


@pytest.mark.asyncio
async def test_context_cascade_searches_store(store):
    store.add_memories([
        MemoryReference(id="fact-fin", type="fact", score=0.8, summary="Finance approved the hiring budget."),
    ], "local")
    processor, _ = _processor(store)

    response = await processor.process(_request("what did finance say about the hiring budget"))
    await processor.tasks.wait_all()

    assert "fact-fin" in [m.id for m in response.memories_used]
    assert "hiring budget" in response.assistant_text


@pytest.mark.asyncio
async def test_reminder_gets_context_notes(store):
    fact = MemoryReference(id="fact-budget", type="fact", score=0.9, summary="Budget review: due Friday")
    processor, _ = _processor(store, [fact])

    response = await processor.process(_request("remind me to review the budget"))
    await processor.tasks.wait_all()

    action = response.actions[0]
    assert action.type == "reminder.create"
    assert action.params["title"] == "review the budget"
    assert action.params["notes"] == "Context: due Friday"


def test_reminder_hints_use_best_file():
    hints = CommandProcessor.reminder_hints(
        _request("remind me later"),
        [_doc("/docs/contract.pdf", 0.8), MemoryReference(id="f", type="fact", score=0.5, summary="Signed in May")],
    )
    assert hints["title"] == "contract.pdf"
    assert hints["notes"] == "File: contract.pdf\nContext: Signed in May"


@pytest.mark.asyncio
async def test_storage_failure_propagates(store, monkeypatch):
    processor, memory = _processor(store)
    seen = []
    processor.on(COMMAND_PROCESSED, seen.append)

    def broken(*args, **kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "save_command", broken)
    with pytest.raises(StorageError):
        await processor.process(_request("what day is the release"))
    assert seen == []
    assert memory.extracted == []
