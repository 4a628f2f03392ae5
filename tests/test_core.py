"""Tests for retry policy, background tasks, errors and fingerprints."""

import asyncio

import pytest

from recallkit.core.errors import ExtractionError, ProviderError, StorageError, ValidationError
from recallkit.core.retry import RetryPolicy, is_retryable
from recallkit.core.tasks import TaskTracker
from recallkit.utils.fingerprint import compute_file_fingerprint, file_memory_id, path_hash


# ── Retry ──

def test_is_retryable():
    assert is_retryable(ExtractionError("bad output"))
    assert is_retryable(ProviderError("rate limited", status_code=429))
    assert is_retryable(ProviderError("timeout"))
    assert not is_retryable(ProviderError("unauthorized", status_code=401))
    assert not is_retryable(StorageError("locked"))
    assert not is_retryable(ValueError("nope"))


def test_delay_for():
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(2) == 4.0
    assert policy.delay_for(10) == 60.0
    assert policy.delay_for(1, ProviderError("slow down", retry_after=12)) == 12.0
    assert policy.delay_for(1, ProviderError("slow down", retry_after=600)) == 60.0


@pytest.mark.asyncio
async def test_run_stops_on_success(no_sleep):
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise ExtractionError("once")
        return "ok"

    assert await RetryPolicy(sleep=no_sleep).run(flaky) == "ok"
    assert len(attempts) == 2
    assert no_sleep.delays == [2.0]


@pytest.mark.asyncio
async def test_run_reraises_last_error(no_sleep):
    async def always():
        raise ExtractionError("still broken")

    with pytest.raises(ExtractionError, match="still broken"):
        await RetryPolicy(max_attempts=3, sleep=no_sleep).run(always)
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_run_does_not_retry_other_errors(no_sleep):
    calls = []

    async def broken():
        calls.append(1)
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await RetryPolicy(sleep=no_sleep).run(broken)
    assert calls == [1]
    assert no_sleep.delays == []


# ── Background tasks ──

@pytest.mark.asyncio
async def test_background_task_result():
    async def work():
        await asyncio.sleep(0)
        return 42

    tracker = TaskTracker()
    task = tracker.spawn("work", work())
    assert await task.wait() is None
    assert task.done()
    assert task.result() == 42
    assert tracker.pending == []


@pytest.mark.asyncio
async def test_background_task_failure_is_observable():
    async def fail():
        raise ExtractionError("no provider")

    tracker = TaskTracker()
    task = tracker.spawn("fail", fail())
    error = await task.wait()
    assert isinstance(error, ExtractionError)
    assert task.exception() is error


@pytest.mark.asyncio
async def test_wait_all_collects_failures():
    async def ok():
        return None

    async def fail():
        raise StorageError("locked")

    tracker = TaskTracker()
    tracker.spawn("ok", ok())
    tracker.spawn("fail", fail())
    errors = await tracker.wait_all()
    assert [type(e) for e in errors] == [StorageError]
    assert tracker.pending == []


# ── Errors and fingerprints ──

def test_error_to_dict():
    assert ValidationError("text is required").to_dict() == {
        "type": "validation_error",
        "message": "text is required",
    }
    assert ProviderError("x").error_type == "provider_error"


def test_fingerprint_changes_with_inputs():
    base = compute_file_fingerprint("/a.md", 10, "2026-01-01")
    assert base == compute_file_fingerprint("/a.md", 10, "2026-01-01")
    assert base != compute_file_fingerprint("/a.md", 11, "2026-01-01")
    assert base != compute_file_fingerprint("/a.md", 10, "2026-01-02")
    assert base != compute_file_fingerprint("/b.md", 10, "2026-01-01")
    assert compute_file_fingerprint("/a.md") == compute_file_fingerprint("/a.md", None, None)


def test_file_memory_id():
    assert file_memory_id("/a.md") == f"file-{path_hash('/a.md')}"
    assert len(path_hash("/a.md")) == 32
