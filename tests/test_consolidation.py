"""Tests for memory consolidation."""

from datetime import datetime

import pytest

from recallkit.core.enums import MemoryType
from recallkit.core.errors import ValidationError
from recallkit.core.protocols import MemoryReference
from recallkit.models import Memory
from recallkit.services.consolidation_service import ConsolidationService, MemoryCluster

BUDGET = "Quarterly budget review moved to Friday afternoon"
OFFSITE = "Team offsite planned for May in Lisbon"


def _mem(id, summary, score=0.6, **meta):
    return MemoryReference(id=id, type=MemoryType.FACT.value, score=score, summary=summary, metadata=meta)


def _set_created(session_factory, **days):
    with session_factory() as session, session.begin():
        for memory_id, day in days.items():
            session.get(Memory, memory_id).created_at = datetime(2026, 1, day)


@pytest.fixture
def consolidation(session_factory):
    return ConsolidationService(session_factory)


def test_find_similar_memories_groups_near_duplicates(store, session_factory, consolidation):
    store.add_memories([
        _mem("old", BUDGET),
        _mem("new", BUDGET),
        _mem("other", OFFSITE),
        MemoryReference(id="file", type=MemoryType.FILE.value, score=1.0, summary=BUDGET, metadata={"path": "/b.md"}),
    ], "local")
    _set_created(session_factory, old=1, new=2, other=3, file=4)

    clusters = consolidation.find_similar_memories("local")
    assert len(clusters) == 1
    assert [m.id for m in clusters[0].memories] == ["new", "old"]
    assert clusters[0].avg_similarity == pytest.approx(1.0)

    assert consolidation.find_similar_memories("other-workspace") == []


def test_consolidate_cluster_keeps_newest_as_parent(store, session_factory, consolidation):
    store.add_memories([
        _mem("old", BUDGET, score=0.9, path="/docs/a.md"),
        _mem("new", BUDGET, score=0.6, sources=["/docs/b.md"]),
    ], "local")
    _set_created(session_factory, old=1, new=2)

    merged = consolidation.consolidate_cluster(consolidation.find_similar_memories("local")[0])

    assert merged.parent.id == "new"
    assert [m.id for m in merged.versions] == ["old"]
    assert merged.version == 2
    assert merged.consolidated_count == 1
    assert merged.parent.score == 0.9
    assert merged.parent.metadata["sources"] == ["/docs/b.md", "/docs/a.md"]
    assert merged.parent.metadata["consolidated_count"] == 1

    assert [m.id for m in store.search_memories("budget review friday", "local")] == ["new"]
    assert store.count_memories("local", MemoryType.FACT.value) == 1
    assert store.count_memories("local", MemoryType.FACT.value, include_inactive=True) == 2
    with session_factory() as session:
        version = session.get(Memory, "old")
        assert not version.is_active
        assert version.parent_memory_id == "new"
        assert version.consolidated_at is not None


def test_consolidation_accumulates_versions(store, session_factory, consolidation):
    store.add_memories([_mem("first", BUDGET), _mem("second", BUDGET)], "local")
    _set_created(session_factory, first=2, second=3)
    consolidation.consolidate_workspace("local")

    store.add_memories([_mem("earliest", BUDGET)], "local")
    _set_created(session_factory, earliest=1)
    [merged] = consolidation.consolidate_workspace("local")

    assert merged.parent.id == "second"
    assert merged.version == 3
    assert merged.parent.metadata["consolidated_count"] == 2

    history = consolidation.get_version_history("second")
    assert [m.id for m in history.versions] == ["first", "earliest"]
    assert history.version == 3
    assert consolidation.get_version_history("first") is None
    assert consolidation.get_version_history("missing") is None


def test_consolidate_cluster_needs_two_active_members(store, consolidation):
    store.add_memories([_mem("a", BUDGET), _mem("b", BUDGET)], "local")
    a, b = store.get_memory("a"), store.get_memory("b")

    with pytest.raises(ValidationError):
        consolidation.consolidate_cluster(MemoryCluster(memories=[a, a], avg_similarity=1.0))

    consolidation.consolidate_cluster(MemoryCluster(memories=[a, b], avg_similarity=1.0))
    with pytest.raises(ValidationError):
        consolidation.consolidate_cluster(MemoryCluster(memories=[a, b], avg_similarity=1.0))


def test_reupserting_a_version_reactivates_it(store, consolidation):
    store.add_memories([_mem("a", BUDGET), _mem("b", BUDGET)], "local")
    merged = consolidation.consolidate_workspace("local")[0]
    [version] = merged.versions

    store.add_memories([_mem(version.id, "Budget review is back on Monday")], "local")
    assert store.count_memories("local", MemoryType.FACT.value) == 2
    assert consolidation.find_similar_memories("local") == []
