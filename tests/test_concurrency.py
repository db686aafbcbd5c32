"""Tests for bounded fan-out and cooperative cancellation between chunks."""

import asyncio

import pytest

from braindump.analysis.orchestrator import AnalysisOrchestrator
from braindump.analysis.topics import TopicExtractor
from braindump.config import AnalysisSettings
from braindump.errors import AnalysisCancelled
from braindump.utils.concurrency import bounded_gather
from tests.fakes import FakeCompletionClient

TOPICS_JSON = '[{"name": "Planning", "description": "Plans"}]'
LONG_TEXT = "\n\n".join(f"Paragraph {i} talks about planning the quarter." for i in range(20))


# --- bounded_gather -----------------------------------------------------------------

@pytest.mark.asyncio
async def test_in_flight_work_never_exceeds_limit_and_order_is_kept():
    in_flight = 0
    peak = 0

    async def worker(i, item):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        # later items finish first
        await asyncio.sleep(0.001 * (6 - i))
        in_flight -= 1
        return item * 10

    results = await bounded_gather([1, 2, 3, 4, 5, 6], worker, max_concurrency=2)

    assert results == [10, 20, 30, 40, 50, 60]
    assert peak == 2


@pytest.mark.asyncio
async def test_first_failure_cancels_remaining_work():
    started = set()
    cancelled = []

    async def worker(i, item):
        started.add(i)
        if i == 0:
            await asyncio.sleep(0)
            raise RuntimeError("chunk 1 failed")
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.append(i)
            raise
        return item

    with pytest.raises(RuntimeError, match="chunk 1 failed"):
        await asyncio.wait_for(bounded_gather(list(range(6)), worker, max_concurrency=2), timeout=2)

    assert 1 in cancelled
    assert started <= {0, 1, 2}


@pytest.mark.asyncio
async def test_cancel_event_stops_items_that_have_not_started():
    cancel = asyncio.Event()
    calls = []

    async def worker(i, item):
        calls.append(i)
        cancel.set()
        return item

    with pytest.raises(AnalysisCancelled):
        await bounded_gather(["a", "b", "c"], worker, max_concurrency=1, cancel_event=cancel)
    assert calls == [0]


@pytest.mark.asyncio
async def test_empty_input_runs_nothing():
    async def worker(i, item):
        raise AssertionError("should not run")

    assert await bounded_gather([], worker) == []


# --- Cancellation between chunk iterations -------------------------------------------

def _cancelling_client(cancel: asyncio.Event) -> FakeCompletionClient:
    def responder(prompt):
        cancel.set()
        return TOPICS_JSON

    return FakeCompletionClient(responder)


@pytest.mark.asyncio
async def test_topic_extraction_stops_after_the_chunk_in_progress():
    settings = AnalysisSettings(topic_chunk_size=200, topic_chunk_overlap=0, max_concurrency=1)
    cancel = asyncio.Event()
    client = _cancelling_client(cancel)
    extractor = TopicExtractor(client, settings)
    assert len(extractor._chunker.split(LONG_TEXT)) > 1

    with pytest.raises(AnalysisCancelled):
        await extractor.extract_topics(LONG_TEXT, cancel_event=cancel)
    assert len(client.prompts) == 1


@pytest.mark.asyncio
async def test_orchestrator_cancelled_mid_run_makes_no_further_calls():
    settings = AnalysisSettings(topic_chunk_size=200, topic_chunk_overlap=0, max_concurrency=1)
    cancel = asyncio.Event()
    client = _cancelling_client(cancel)
    progress = []

    with pytest.raises(AnalysisCancelled):
        await AnalysisOrchestrator(client, settings).analyze_text(
            LONG_TEXT, progress_callback=progress.append, cancel_event=cancel
        )

    assert len(client.prompts) == 1
    assert "Extracting keywords" not in progress
