import pytest

from chatcore.documents import DocumentCatalog
from chatcore.errors import CircuitOpenFailure, ModelCallFailure
from chatcore.functions import build_default_executor
from chatcore.handlers import (
    APOLOGY,
    CASUAL_FALLBACK,
    DASHBOARD_HINT,
    NO_MEMORIES_MESSAGE,
    NO_RESULTS_MESSAGE,
    NO_TRAINING_DOCUMENTS_MESSAGE,
    RAG_FAILURE_MESSAGE,
    TOOL_FAILURE_MESSAGE,
    CasualHandler,
    DashboardHandler,
    MemoryHandler,
    RagHandler,
    Turn,
    format_fallback_result,
    run_handler,
)
from chatcore.schemas import (
    ClassificationResult,
    FunctionCall,
    GenerationResult,
    GroundingChunk,
    GroundingMetadata,
    GroundingSupport,
    Session,
    TenantContext,
)
from tests.conftest import make_settings
from tests.fakes import FakeDocumentSearch, FakeModelClient


class Recorder:
    def __init__(self):
        self.chunks = []

    async def __call__(self, chunk):
        self.chunks.append(chunk)

    def of_type(self, kind):
        return [c for c in self.chunks if c.type == kind]

    @property
    def text(self):
        return "".join(c.content for c in self.of_type("content"))


def make_turn(message, route="casual", client_id=None):
    return Turn(
        message=message,
        tenant=TenantContext(tenant_id="t1", user_id="u1", client_id=client_id),
        session=Session(tenant_id="t1", user_id="u1"),
        classification=ClassificationResult(route=route, confidence=0.9),
        system_prompt="You are a test assistant.",
        temperature=0.5,
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def executor(memory, sessions):
    return build_default_executor(memory, sessions)


@pytest.mark.asyncio
async def test_dashboard_empty_list_uses_no_results_message(settings, executor):
    model = FakeModelClient(
        responses=[GenerationResult(function_call=FunctionCall(name="search_memories", args={"query": "budget"})), ""]
    )
    emit = Recorder()
    result = await DashboardHandler(model, settings, executor).handle(make_turn("Any budget notes?", "dashboard"), emit)

    assert result.content == NO_RESULTS_MESSAGE
    assert emit.text == NO_RESULTS_MESSAGE
    assert [c.name for c in emit.of_type("function_call")] == ["search_memories"]
    assert emit.of_type("function_result")[0].summary == "Found 0 search memories"
    assert result.function_calls[0].success is True
    assert model.calls[0]["tools"] == executor.declarations


@pytest.mark.asyncio
async def test_dashboard_tool_error_is_not_summarised(settings, executor):
    model = FakeModelClient(
        responses=[GenerationResult(function_call=FunctionCall(name="navigate_to", args={"destination": "client_detail"}))]
    )
    emit = Recorder()
    result = await DashboardHandler(model, settings, executor).handle(make_turn("Open the client", "dashboard"), emit)

    assert result.content == TOOL_FAILURE_MESSAGE
    assert result.degraded is True
    assert result.function_calls[0].success is False
    assert result.function_calls[0].result["error"] is True
    assert emit.of_type("function_result")[0].success is False
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_dashboard_unknown_function_reports_tool_failure(settings, executor):
    model = FakeModelClient(responses=[GenerationResult(function_call=FunctionCall(name="drop_tables"))])
    result = await DashboardHandler(model, settings, executor).handle(make_turn("Do it", "dashboard"), Recorder())
    assert result.content == TOOL_FAILURE_MESSAGE
    assert result.degraded is True


@pytest.mark.asyncio
async def test_dashboard_raw_json_interpretation_falls_back_to_formatter(settings, executor, memory):
    await memory.store_decision("t1", "u1", "Pause the Acme budget")
    model = FakeModelClient(
        responses=[
            GenerationResult(function_call=FunctionCall(name="search_memories", args={"query": "acme budget"})),
            '[{"content": "raw"}]',
        ]
    )
    result = await DashboardHandler(model, settings, executor).handle(make_turn("Acme budget?", "dashboard"), Recorder())
    assert result.content.startswith("Here's what I found (1 results):")
    assert "Decision: Pause the Acme budget" in result.content


@pytest.mark.asyncio
async def test_dashboard_navigation_result_is_interpreted(settings, executor):
    model = FakeModelClient(
        responses=[
            GenerationResult(function_call=FunctionCall(name="navigate_to", args={"destination": "alerts"})),
            'Taking you to alerts.\n---SUGGESTIONS---\n["Show critical alerts"]',
        ]
    )
    emit = Recorder()
    result = await DashboardHandler(model, settings, executor).handle(make_turn("Go to alerts", "dashboard"), emit)
    assert result.content == "Taking you to alerts."
    assert result.suggestions == ["Show critical alerts"]
    assert result.function_calls[0].result == {"url": "/alerts", "destination": "alerts"}
    assert emit.of_type("function_result")[0].summary == "Navigation ready: /alerts"


@pytest.mark.asyncio
async def test_dashboard_plain_json_answer_becomes_hint(settings, executor):
    model = FakeModelClient(responses=['{"clients": []}'])
    result = await DashboardHandler(model, settings, executor).handle(make_turn("hm", "dashboard"), Recorder())
    assert result.content == DASHBOARD_HINT


def test_format_fallback_result_variants():
    assert format_fallback_result([]) == NO_RESULTS_MESSAGE
    assert format_fallback_result({"emails": []}) == NO_RESULTS_MESSAGE
    items = [{"name": f"Client {i}", "status": "active", "date": "2025-01-01"} for i in range(12)]
    text = format_fallback_result(items)
    assert "1. **Client 0** - active (2025-01-01)" in text
    assert text.endswith("...and 2 more")
    assert format_fallback_result({"url": "/alerts"}) == "Here's the page you asked for: /alerts"


@pytest.mark.asyncio
async def test_rag_without_training_documents_skips_search(settings, db):
    search = FakeDocumentSearch()
    emit = Recorder()
    result = await RagHandler(settings, DocumentCatalog(db), search).handle(make_turn("What's our SLA?", "rag"), emit)
    assert result.content == NO_TRAINING_DOCUMENTS_MESSAGE
    assert emit.text == NO_TRAINING_DOCUMENTS_MESSAGE
    assert search.calls == []


@pytest.mark.asyncio
async def test_rag_searches_allow_list_and_emits_citations(settings, db):
    catalog = DocumentCatalog(db)
    await catalog.register_document("t1", "doc-1", "Onboarding Guide", use_for_training=True)
    await catalog.register_document("t1", "doc-2", "Draft", use_for_training=False)
    await catalog.register_store("t1", "stores/agency-t1")
    search = FakeDocumentSearch()
    emit = Recorder()

    result = await RagHandler(settings, catalog, search).handle(make_turn("How long is onboarding?", "rag", "acme"), emit)

    assert search.calls[0]["allow_list"] == ["doc-1"]
    assert search.calls[0]["store_name"] == "stores/agency-t1"
    assert search.calls[0]["client_id"] == "acme"
    assert result.content == "Our onboarding takes two weeks."
    citation = emit.of_type("citation")[0].citation
    assert (citation.index, citation.source, citation.title) == (1, "rag", "Onboarding Guide")
    assert emit.chunks.index(emit.of_type("citation")[0]) < emit.chunks.index(emit.of_type("content")[0])


@pytest.mark.asyncio
async def test_rag_circuit_open_gives_retry_hint(settings, db):
    catalog = DocumentCatalog(db)
    await catalog.register_document("t1", "doc-1", "Guide", use_for_training=True)
    search = FakeDocumentSearch(error=CircuitOpenFailure("File Search service", 42, "timeout"))
    result = await RagHandler(settings, catalog, search).handle(make_turn("Policy?", "rag"), Recorder())
    assert "about 42 seconds" in result.content
    assert result.degraded is True
    assert result.metadata["circuit_open"] is True


@pytest.mark.asyncio
async def test_rag_search_error_gives_failure_message(settings, db):
    catalog = DocumentCatalog(db)
    await catalog.register_document("t1", "doc-1", "Guide", use_for_training=True)
    search = FakeDocumentSearch(error=RuntimeError("boom"))
    result = await RagHandler(settings, catalog, search).handle(make_turn("Policy?", "rag"), Recorder())
    assert result.content == RAG_FAILURE_MESSAGE
    assert result.degraded is True


@pytest.mark.asyncio
async def test_memory_route_without_memories_skips_model(settings, memory):
    model = FakeModelClient()
    result = await MemoryHandler(model, settings, memory).handle(
        make_turn("Do you remember what we decided about pricing?", "memory"), Recorder()
    )
    assert result.content == NO_MEMORIES_MESSAGE
    assert model.calls == []


@pytest.mark.asyncio
async def test_memory_route_answers_from_memories(settings, memory):
    await memory.store_decision("t1", "u1", "Raise retainer pricing by 10%", "Q2 review")
    model = FakeModelClient(responses=["We agreed to raise pricing by 10%."])
    result = await MemoryHandler(model, settings, memory).handle(
        make_turn("Do you remember what we decided about retainer pricing?", "memory"), Recorder()
    )
    assert result.content == "We agreed to raise pricing by 10%."
    assert "Raise retainer pricing by 10%" in model.calls[0]["prompt"]
    assert result.metadata["memories_used"] == 1


@pytest.mark.asyncio
async def test_web_route_inserts_citations(settings):
    text = "Paris is the capital of France."
    grounding = GroundingMetadata(
        chunks=[GroundingChunk(uri="https://example.com/paris", title="Paris")],
        supports=[GroundingSupport(end_index=len(text), chunk_indices=[0])],
    )
    model = FakeModelClient(responses=[GenerationResult(text=text, grounding=grounding)])
    emit = Recorder()
    result = await CasualHandler(model, settings).handle(make_turn("Capital of France?", "web"), emit)

    assert result.content == "Paris is the capital of France. [1]"
    assert model.calls[0]["web_search"] is True
    assert [c.citation.url for c in emit.of_type("citation")] == ["https://example.com/paris"]
    assert result.citations[0].index == 1


@pytest.mark.asyncio
async def test_web_route_empty_answer_uses_fallback(settings):
    model = FakeModelClient(responses=[""])
    result = await CasualHandler(model, settings).handle(make_turn("news?", "web"), Recorder())
    assert result.content == CASUAL_FALLBACK


@pytest.mark.asyncio
async def test_casual_stream_hides_suggestions_block(settings):
    model = FakeModelClient(streams=[["Hi there", "\n---SUGGESTIONS---\n", '["Next?"]']])
    emit = Recorder()
    result = await CasualHandler(model, settings).handle(make_turn("hello"), emit)
    assert "SUGGESTIONS" not in emit.text
    assert result.content == "Hi there"
    assert result.suggestions == ["Next?"]


@pytest.mark.asyncio
async def test_casual_stream_retries_when_nothing_was_sent(settings):
    model = FakeModelClient(streams=[ModelCallFailure("connect timeout"), ["Recovered answer"]])
    emit = Recorder()
    result = await CasualHandler(model, settings).handle(make_turn("hello"), emit)
    assert result.content == "Recovered answer"
    assert len(model.stream_calls) == 2


@pytest.mark.asyncio
async def test_partial_stream_failure_appends_apology(settings):
    model = FakeModelClient(streams=[["Partial answer", ModelCallFailure("stream dropped")]])
    emit = Recorder()
    result = await run_handler(CasualHandler(model, settings), make_turn("hello"), emit)
    assert emit.text == "Partial answer\n\n" + APOLOGY
    assert result.content == "Partial answer\n\n" + APOLOGY
    assert result.degraded is True
    assert len(model.stream_calls) == 1


@pytest.mark.asyncio
async def test_run_handler_apologises_after_two_failed_attempts(settings, executor):
    model = FakeModelClient(responses=[ModelCallFailure("500"), ModelCallFailure("500")])
    emit = Recorder()
    result = await run_handler(DashboardHandler(model, settings, executor), make_turn("stats", "dashboard"), emit)
    assert result.content == APOLOGY
    assert emit.text == APOLOGY
    assert len(model.calls) == 2
