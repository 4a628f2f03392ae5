"""Tests for the file content ingestor and the file indexer."""

import pytest

from recallkit.core.enums import MemoryType
from recallkit.core.errors import ExtractionError, ValidationError
from recallkit.core.protocols import FileMetadata
from recallkit.services.file_indexer import FileIndexer
from recallkit.services.ingest_service import FileContentIngestor, split_sections
from recallkit.services.memory_extractor import ExtractedMemory
from recallkit.utils.fingerprint import file_memory_id, path_hash

LONG_FACT = (
    "The migration to the new billing provider finishes on the fourteenth of March, "
    "after which invoices are issued from the new system only."
)


class ScriptedExtractor:
    """Plays back a list of outcomes; an exception instance is raised, a list returned."""

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = []

    async def extract(self, sections):
        self.calls.append(list(sections))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome or [])


class FailingExtractor:
    def __init__(self, error=None):
        self.error = error or ExtractionError("provider unavailable")
        self.calls = 0

    async def extract(self, sections):
        self.calls += 1
        raise self.error


def _ingestor(store, config, extractor, no_sleep, **overrides):
    cfg = config.ingest.model_copy(update=overrides)
    return FileContentIngestor(store, extractor, cfg, sleep=no_sleep)


def _paragraphs(count, size=1500):
    sentence = "Lorem ipsum dolor sit amet consectetur. "
    paragraph = (sentence * (size // len(sentence) + 1))[:size].strip()
    return "\n\n".join(f"{i} {paragraph}" for i in range(count))


# ── Section splitting ──

def test_split_sections_packs_short_paragraphs():
    text = "First paragraph.\n\nSecond paragraph.\n\n\nThird one."
    assert split_sections(text, 2000) == ["First paragraph.\n\nSecond paragraph.\n\nThird one."]


def test_split_sections_respects_cap():
    text = "\n\n".join(["a" * 60] * 5)
    sections = split_sections(text, 130)
    assert all(len(s) <= 130 for s in sections)
    assert len(sections) == 3


def test_split_sections_splits_long_paragraph_on_sentences():
    paragraph = " ".join(f"Sentence number {i} is here." for i in range(200))
    sections = split_sections(paragraph, 500)
    assert len(sections) > 1
    assert all(len(s) <= 500 for s in sections)
    assert sections[0].startswith("Sentence number 0")


def test_split_sections_empty():
    assert split_sections("") == []
    assert split_sections("\n\n   \n") == []


# ── Filtering ──

def test_filter_files(store, config, no_sleep, make_file, isolated_db):
    ingestor = _ingestor(store, config, None, no_sleep)
    good = make_file("notes.md", "These notes are long enough to keep.")
    tiny = make_file("tiny.md", "short")
    binary = make_file("image.png", "not really an image but long enough")
    vendored = isolated_db / "node_modules" / "pkg" / "readme.md"
    vendored.parent.mkdir(parents=True)
    vendored.write_text("Vendored readme that should be ignored.")
    excluded = FileMetadata(path=str(vendored), name="readme.md", size=vendored.stat().st_size)

    assert ingestor.filter_files([good, tiny, binary, excluded]) == [good]


def test_prioritize_newest_first():
    old = FileMetadata(path="/a.md", name="a.md", modified="2025-01-01T00:00:00Z")
    new = FileMetadata(path="/b.md", name="b.md", modified="2026-06-01T00:00:00Z")
    undated = FileMetadata(path="/c.md", name="c.md")
    assert FileContentIngestor.prioritize([old, undated, new]) == [new, old, undated]


# ── Per-file extraction ──

@pytest.mark.asyncio
async def test_fallback_chunks_are_ordered_and_anonymous(store, config, no_sleep, make_file):
    body = _paragraphs(4)
    file = make_file("secret-plan.md", body)
    ingestor = _ingestor(store, config, None, no_sleep)

    memories = await ingestor.extract_file(file, "local")

    assert len(memories) == 4
    for i, mem in enumerate(memories):
        assert mem.type == MemoryType.DOC_CHUNK.value
        assert mem.metadata["chunk_index"] == i
        assert mem.metadata["total_chunks"] == 4
        assert mem.metadata["source_file_id"] == file_memory_id(file.path)
        assert mem.metadata["extraction_method"] == "fallback"
        assert mem.summary.startswith(f"{i} ")
        assert "secret-plan" not in mem.summary
        assert mem.score == 0.8

    named = make_file("roadmap.md", "See Roadmap.md for the Q3 plan. Owners are listed per milestone.")
    [chunk] = await ingestor.extract_file(named, "local")
    assert "roadmap.md" not in chunk.summary.lower()
    assert chunk.summary == "See for the Q3 plan. Owners are listed per milestone."


@pytest.mark.asyncio
async def test_retry_succeeds_on_third_attempt(store, config, no_sleep, make_file):
    file = make_file("billing.md", "Billing migration notes.\n\nInvoices move to the new provider in March.")
    extractor = ScriptedExtractor([
        ExtractionError("rate limited"),
        ExtractionError("rate limited"),
        [ExtractedMemory(type="fact", content="Invoices move in March.", confidence=0.95)],
    ])
    ingestor = _ingestor(store, config, extractor, no_sleep)

    memories = await ingestor.extract_file(file, "local")

    assert len(extractor.calls) == 3
    assert no_sleep.delays == [2.0, 4.0]
    assert [m.type for m in memories] == [MemoryType.FACT.value]
    assert memories[0].summary == "Invoices move in March."
    assert memories[0].id.startswith("doc-")
    assert not any(m.id.startswith("chunk-") for m in memories)


@pytest.mark.asyncio
async def test_retry_exhausted_falls_back_to_chunks(store, config, no_sleep, make_file):
    file = make_file("big.md", _paragraphs(30))
    extractor = FailingExtractor()
    ingestor = _ingestor(store, config, extractor, no_sleep)

    memories = await ingestor.extract_file(file, "local")

    # 30 sections in sub-batches of 4, three attempts each
    assert extractor.calls == 8 * 3
    assert 0 < len(memories) <= 10
    assert all(len(m.summary) <= 2000 for m in memories)
    assert all(m.id.startswith("chunk-") for m in memories)


@pytest.mark.asyncio
async def test_unexpected_provider_error_still_indexes_file(store, config, no_sleep, make_file):
    file = make_file("notes.md", "Kickoff notes for the vendor review.\n\nDecisions are due by Friday.")
    extractor = FailingExtractor(RuntimeError("connection reset"))
    ingestor = _ingestor(store, config, extractor, no_sleep)

    assert await ingestor.ingest([file], "local") is None

    # Not retryable: one call for the only sub-batch and no backoff
    assert extractor.calls == 1
    assert no_sleep.delays == []
    assert store.get_memory(file_memory_id(file.path)) is not None
    assert store.count_memories("local", MemoryType.DOC_CHUNK.value) == 1


@pytest.mark.asyncio
async def test_low_confidence_output_is_raised_to_floor(store, config, no_sleep, make_file):
    file = make_file("memo.md", "A memo about the quarterly offsite and its agenda.")
    extractor = ScriptedExtractor(default=[ExtractedMemory(type="fact", content="Offsite in May.", confidence=0.2)])
    ingestor = _ingestor(store, config, extractor, no_sleep)

    memories = await ingestor.extract_file(file, "local")

    assert [m.type for m in memories] == [MemoryType.FACT.value]
    assert memories[0].score == 0.7


@pytest.mark.asyncio
async def test_llm_chunks_carry_position(store, config, no_sleep, make_file):
    file = make_file("guide.md", "Setup guide for the staging cluster and its credentials.")
    extractor = ScriptedExtractor(default=[
        ExtractedMemory(type="doc.chunk", content=LONG_FACT, confidence=0.9),
        ExtractedMemory(type="doc.chunk", content=LONG_FACT + " Again.", confidence=0.9),
    ])
    ingestor = _ingestor(store, config, extractor, no_sleep)

    memories = await ingestor.extract_file(file, "local")

    assert [m.metadata["chunk_index"] for m in memories] == [0, 1]
    assert all(m.metadata["total_chunks"] == 2 for m in memories)
    assert all(m.metadata["extraction_method"] == "llm" for m in memories)


# ── Full ingest ──

@pytest.mark.asyncio
async def test_ingest_is_idempotent(store, config, no_sleep, make_file):
    files = [make_file("a.md", _paragraphs(2, 300)), make_file("b.md", _paragraphs(3, 300))]
    extractor = ScriptedExtractor(default=[])
    ingestor = _ingestor(store, config, extractor, no_sleep)

    await ingestor.ingest(files, "local")
    first_count = store.count_memories("local")
    first_calls = len(extractor.calls)
    assert store.count_memories("local", MemoryType.FILE.value) == 2
    assert store.count_memories("local", MemoryType.DOC_CHUNK.value) == 2

    await ingestor.ingest(files, "local")
    assert store.count_memories("local") == first_count
    assert len(extractor.calls) == first_calls

    await ingestor.ingest(files, "local", skip_unchanged=False)
    assert store.count_memories("local") == first_count


@pytest.mark.asyncio
async def test_ingest_background_phase(store, config, no_sleep, make_file):
    files = [
        make_file(f"f{i}.md", f"File number {i} has enough text.", modified=f"2026-01-0{i + 1}T00:00:00+00:00")
        for i in range(5)
    ]
    ingestor = _ingestor(store, config, None, no_sleep, priority_count=2, priority_batch_size=1)

    background = await ingestor.ingest(files, "local")

    # priority phase covers the two newest files before ingest returns
    assert store.get_memory(file_memory_id(files[4].path)) is not None
    assert store.get_memory(file_memory_id(files[3].path)) is not None
    assert background is not None
    assert await background.wait() is None
    assert store.count_memories("local", MemoryType.FILE.value) == 5
    assert no_sleep.delays.count(0) >= 1


@pytest.mark.asyncio
async def test_ingest_skips_unreadable_file(store, config, no_sleep, make_file):
    good = make_file("good.md", "Readable content for the store.")
    missing = FileMetadata(path=str(good.path).replace("good.md", "gone.md"), name="gone.md", size=100)
    ingestor = _ingestor(store, config, None, no_sleep)

    assert await ingestor.ingest([good, missing], "local") is None
    assert store.get_memory(file_memory_id(good.path)) is not None
    assert store.get_memory(file_memory_id(missing.path)) is None


@pytest.mark.asyncio
async def test_reingest_retires_stale_chunks(store, config, no_sleep, make_file):
    file = make_file("plan.md", _paragraphs(3))
    ingestor = _ingestor(store, config, None, no_sleep)
    await ingestor.ingest([file], "local")
    assert store.count_memories("local", MemoryType.DOC_CHUNK.value) == 3

    rewritten = make_file("plan.md", "Only one paragraph survives the rewrite.", modified="2026-02-01T00:00:00+00:00")
    await ingestor.ingest([rewritten], "local")

    assert store.count_memories("local", MemoryType.DOC_CHUNK.value) == 1
    assert store.count_memories("local", MemoryType.DOC_CHUNK.value, include_inactive=True) == 3
    stale = store.get_memory(f"chunk-{path_hash(file.path)}-2")
    assert "superseded_at" in stale.metadata
    found = store.search_memories("lorem ipsum dolor", "local")
    assert stale.id not in [m.id for m in found]
    assert store.get_memory(f"chunk-{path_hash(file.path)}-0").summary == "Only one paragraph survives the rewrite."


@pytest.mark.asyncio
async def test_ingest_nothing_eligible(store, config, no_sleep):
    ingestor = _ingestor(store, config, None, no_sleep)
    assert await ingestor.ingest([FileMetadata(path="/x/y.exe", name="y.exe", size=500)], "local") is None
    assert store.count_memories("local") == 0


# ── File indexer ──

@pytest.mark.asyncio
async def test_indexer_validates_input(store, config, no_sleep, make_file):
    indexer = FileIndexer(store, _ingestor(store, config, None, no_sleep))
    with pytest.raises(ValidationError):
        await indexer.index_files([make_file("a.md", "Some long enough content.")], "")
    with pytest.raises(ValidationError):
        await indexer.index_files([], "local")


@pytest.mark.asyncio
async def test_indexer_ingests_changed_files_only(store, config, no_sleep, make_file):
    files = [make_file("a.md", "Alpha project kickoff notes."), make_file("b.md", "Beta project retro notes.")]
    indexer = FileIndexer(store, _ingestor(store, config, None, no_sleep))

    result = await indexer.index_files(files, "local")
    assert result.indexed == 2
    assert indexer.last_ingest is not None
    assert await indexer.last_ingest.wait() is None
    assert store.count_memories("local", MemoryType.DOC_CHUNK.value) == 2

    indexer.last_ingest = None
    again = await indexer.index_files(files, "local")
    assert again.indexed == 2
    assert indexer.last_ingest is None
