"""End-to-end tests for the analysis orchestrator."""

import asyncio

import pytest
from pydantic import ValidationError

from braindump.analysis.orchestrator import AnalysisOrchestrator, build_combined_text, combine_sources
from braindump.analysis.summarizer import extractive_summary
from braindump.analysis.topics import CATCH_ALL_NAME
from braindump.config import AnalysisSettings
from braindump.errors import AnalysisCancelled, EmptyInputError
from braindump.schemas import ProcessingMode, SourceDocument, SourceKind
from tests.fakes import chat_response, error_response, make_client, request_body

TEXT = "Intro text.\n\n# Section A\nContent A about alpha.\n\n# Section B\nContent B about beta."

AUX = [
    {"id": "file-1", "title": "notes.txt", "kind": "file", "text": "File body about budgets."},
    {"id": "link-1", "title": "Talk", "kind": "link", "text": "Transcript body about hiring."},
    {"id": "file-2", "title": "empty.txt", "kind": "file", "text": "   "},
]


def _backend(request):
    prompt = request_body(request)["messages"][1]["content"]
    if "main topics" in prompt:
        return chat_response(
            'Here you go:\n[{"name": "Alpha", "description": "All about alpha"},'
            ' {"name": "Beta", "description": "All about beta"}]'
        )
    if "keywords" in prompt:
        return chat_response("alpha, beta")
    return chat_response("A short summary.")


@pytest.mark.asyncio
async def test_full_analysis_with_backend():
    seen = []

    def handler(request):
        seen.append(request)
        return _backend(request)

    client = make_client(handler)
    result = await AnalysisOrchestrator(client).analyze_text(TEXT)

    assert [s.title for s in result.sections] == ["Introduction", "Section A", "Section B"]
    assert [t.name for t in result.topics] == ["Alpha", "Beta"]
    assert result.topics[0].related_section_ids[0] == "section-2"
    assert result.topics[1].related_section_ids[0] == "section-3"
    valid = {s.id for s in result.sections}
    assert all(set(t.related_section_ids) <= valid for t in result.topics)
    assert result.keywords == ["alpha", "beta"]
    assert result.summary == "A short summary."
    assert result.processing_info.processing_method == ProcessingMode.COMBINED
    assert result.processing_info.degraded_stages == []
    assert len(seen) == 3

    data = result.to_dict()
    assert data["documentId"] == result.document_id
    assert data["processingInfo"]["processingMethod"] == "combined"
    assert data["processingInfo"]["version"] == "2.0"
    assert data["sections"][1]["wordCount"] == 4
    assert data["sections"][1]["sourceId"] == "main-content"
    assert "heading" not in data["sections"][1]
    assert data["topics"][0]["relatedSectionIds"][0] == "section-2"
    assert data["stats"]["readingTimeMinutes"] == 1


@pytest.mark.asyncio
async def test_failing_backend_degrades_to_heuristics(clock):
    calls = []

    def handler(request):
        calls.append(request)
        return error_response(503, "upstream down")

    client = make_client(handler, clock, max_retries=1)
    result = await AnalysisOrchestrator(client).analyze_text(TEXT)

    assert len(calls) == 3
    assert result.sections
    assert result.topics
    assert result.keywords
    assert result.summary == extractive_summary(build_combined_text([_main(TEXT)]))
    # stage fallbacks inside the extractors, not wrapper-level failures
    assert result.processing_info.degraded_stages == []


@pytest.mark.asyncio
async def test_missing_credential_makes_no_requests():
    calls = []
    client = make_client(lambda r: calls.append(r) or _backend(r), api_key=None)
    result = await AnalysisOrchestrator(client).analyze_text(TEXT)

    assert calls == []
    assert result.summary
    assert result.keywords


@pytest.mark.asyncio
async def test_empty_input_is_rejected():
    with pytest.raises(EmptyInputError):
        await AnalysisOrchestrator().analyze_text("  \n ", [{"id": "f", "title": "t", "text": " "}])


@pytest.mark.asyncio
async def test_progress_messages_and_raising_callback():
    messages = []

    def callback(message):
        messages.append(message)
        raise RuntimeError("UI went away")

    result = await AnalysisOrchestrator().analyze_text(TEXT, progress_callback=callback)

    assert result.summary
    assert any("Segmenting" in m for m in messages)
    assert messages[-1].startswith("Done in")


@pytest.mark.asyncio
async def test_cancelled_before_start():
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(AnalysisCancelled):
        await AnalysisOrchestrator().analyze_text(TEXT, cancel_event=cancel)


@pytest.mark.asyncio
async def test_auxiliary_sources_are_attributed():
    result = await AnalysisOrchestrator().analyze_text("Main notes here.", AUX)

    assert [s.title for s in result.sections] == ["Introduction", "notes.txt", "Talk"]
    assert [s.source_id for s in result.sections] == ["main-content", "file-1", "link-1"]

    stats = result.stats
    assert stats.source_count == 3
    assert stats.file_count == 1
    assert stats.link_count == 1
    assert [s.kind for s in stats.sources] == [SourceKind.MAIN, SourceKind.FILE, SourceKind.LINK]

    sections_group, topics_group = result.outline
    assert sections_group.title == "Content Sections"
    assert [i.id for i in sections_group.items] == [s.id for s in result.sections]
    assert topics_group.title == "Key Topics"
    assert [i.title for i in topics_group.items] == [t.name for t in result.topics]


@pytest.mark.asyncio
async def test_duplicate_titles_and_separator_look_alikes_resolve_by_position():
    aux = [
        {"id": "file-1", "title": "notes.txt", "kind": "file", "text": "First upload."},
        {"id": "file-2", "title": "notes.txt", "kind": "file", "text": "Second upload."},
        {"id": "link-1", "title": "Talk", "kind": "link", "text": "Transcript body."},
    ]
    main = "Agenda first.\n\n=== Talk ===\nStill the main notes."
    result = await AnalysisOrchestrator().analyze_text(main, aux)

    assert [s.title for s in result.sections] == ["Introduction", "Talk", "notes.txt", "notes.txt", "Talk"]
    assert [s.source_id for s in result.sections] == [
        "main-content",
        "main-content",
        "file-1",
        "file-2",
        "link-1",
    ]


def test_combine_sources_reports_where_each_source_starts():
    sources = [
        _main("  Main text.  "),
        SourceDocument(id="file-1", title="a.txt", text="Body A."),
        SourceDocument(id="file-2", title="a.txt", text="Body B."),
    ]
    text, offsets = combine_sources(sources)

    assert text == build_combined_text(sources)
    assert [sid for _, sid in offsets] == ["main-content", "file-1", "file-2"]
    assert text[offsets[0][0]:].startswith("Main text.")
    assert text[offsets[1][0]:].startswith("=== a.txt ===\n\nBody A.")
    assert text[offsets[2][0]:].startswith("=== a.txt ===\n\nBody B.")


@pytest.mark.asyncio
async def test_result_models_are_frozen():
    result = await AnalysisOrchestrator().analyze_text(TEXT)

    with pytest.raises(ValidationError):
        result.sections[0].title = "Renamed"
    with pytest.raises(ValidationError):
        result.topics[0].related_section_ids = []
    with pytest.raises(ValidationError):
        result.stats.word_count = 0

@pytest.mark.asyncio
async def test_large_input_runs_distributed():
    settings = AnalysisSettings(distributed_threshold=50)
    aux = [
        SourceDocument(id=f"file-{i}", title=f"doc{i}.txt", text=f"Document {i} covers budget planning.")
        for i in range(1, 7)
    ]
    result = await AnalysisOrchestrator(None, settings).analyze_text("Main text about budget planning.", aux)

    assert result.processing_info.processing_method == ProcessingMode.DISTRIBUTED
    assert len(result.sections) == 7
    assert [s.id for s in result.sections] == [f"section-{i}" for i in range(1, 8)]
    assert [s.source_id for s in result.sections] == ["main-content"] + [f"file-{i}" for i in range(1, 7)]
    assert result.summary.startswith("Main Content: ")
    assert "doc4.txt: " in result.summary
    assert "doc5.txt: " not in result.summary
    assert result.summary.endswith("(Plus 2 additional source(s) not summarised individually.)")
    assert result.topics[0].name == "Budget"
    assert len(result.topics) <= settings.distributed_max_topics


@pytest.mark.asyncio
async def test_failing_stage_is_replaced_by_fallback(monkeypatch):
    orchestrator = AnalysisOrchestrator()

    async def broken(*args, **kwargs):
        raise RuntimeError("topic stage exploded")

    monkeypatch.setattr(orchestrator.topic_extractor, "extract_topics", broken)
    result = await orchestrator.analyze_text(TEXT)

    assert [t.name for t in result.topics] == [CATCH_ALL_NAME]
    assert result.topics[0].related_section_ids == ["section-1", "section-2"]
    assert result.processing_info.degraded_stages == ["topics"]
    assert result.summary


@pytest.mark.asyncio
async def test_reading_time_rounds_up():
    result = await AnalysisOrchestrator().analyze_text(" ".join(["word"] * 450))
    assert result.stats.word_count == 450
    assert result.stats.reading_time_minutes == 2


def _main(text):
    return SourceDocument(id="main-content", title="Main Content", kind=SourceKind.MAIN, text=text)
