import pytest

from chatcore.errors import ToolExecutionFailure, UnknownFunctionError
from chatcore.functions import FUNCTION_DECLARATIONS, build_default_executor, summarize_function_result
from chatcore.schemas import TenantContext

CTX = TenantContext(tenant_id="t1", user_id="u1", client_id="acme")


@pytest.fixture
def executor(memory, sessions):
    return build_default_executor(memory, sessions)


def test_declarations_cover_registered_tools(executor):
    names = [d["name"] for d in executor.declarations]
    assert names == [d["name"] for d in FUNCTION_DECLARATIONS]
    assert all(executor.has(name) for name in names)


@pytest.mark.asyncio
async def test_navigate_builds_urls(executor):
    result = await executor.execute("navigate_to", CTX, {"destination": "client_detail", "client_id": "c-42"})
    assert result == {"url": "/clients/c-42", "destination": "client_detail"}
    filtered = await executor.execute("navigate_to", CTX, {"destination": "alerts", "filters": {"severity": "high"}})
    assert filtered["url"] == "/alerts?severity=high"


@pytest.mark.asyncio
async def test_invalid_arguments_raise_tool_failure(executor):
    with pytest.raises(ToolExecutionFailure) as excinfo:
        await executor.execute("navigate_to", CTX, {"destination": "nowhere"})
    assert excinfo.value.function_name == "navigate_to"


@pytest.mark.asyncio
async def test_unknown_function(executor):
    with pytest.raises(UnknownFunctionError):
        await executor.execute("drop_tables", CTX, {})


@pytest.mark.asyncio
async def test_remember_and_search_use_caller_scope(executor, memory):
    stored = await executor.execute("remember", CTX, {"content": "Weekly reports on Monday", "type": "preference"})
    assert stored["stored"] is True

    record = await memory.get(stored["memory_id"], "t1")
    assert record.content == "Preference: Weekly reports on Monday"
    assert record.client_id == "acme"

    found = await executor.execute("search_memories", CTX, {"query": "weekly reports"})
    assert [f["type"] for f in found] == ["preference"]
    other_user = TenantContext(tenant_id="t1", user_id="u2", client_id="acme")
    assert await executor.execute("search_memories", other_user, {"query": "weekly reports"}) == []


@pytest.mark.asyncio
async def test_list_chat_sessions(executor, sessions):
    await sessions.get_or_create_session("t1", "u1")
    found = await executor.execute("list_chat_sessions", CTX, {"limit": 5})
    assert len(found) == 1
    assert found[0]["name"] == "Untitled chat"


def test_summarize_function_result():
    assert summarize_function_result("get_clients", [1, 2]) == "Found 2 clients"
    assert summarize_function_result("navigate_to", {"url": "/alerts"}) == "Navigation ready: /alerts"
    assert summarize_function_result("get_client_detail", {"id": 1}) == "Retrieved client detail data"
    assert summarize_function_result("remember", None) == "Completed remember"
