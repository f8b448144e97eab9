import pytest

from chatcore.prompts import SUGGESTIONS_INSTRUCTION, WEB_CITATION_INSTRUCTION, PromptBuilder
from chatcore.schemas import TenantContext
from chatcore.sessions import new_message
from tests.conftest import make_settings


@pytest.fixture
def builder(tmp_path, db, memory):
    return PromptBuilder(make_settings(tmp_path, recent_message_limit=2), db, memory)


@pytest.mark.asyncio
async def test_prompt_includes_recent_history_only(builder):
    history = [new_message("user", f"message {i}") for i in range(4)]
    prompt, temperature = await builder.build("casual", TenantContext(tenant_id="t1", user_id="u1"), history)
    assert "User: message 3" in prompt
    assert "message 1" not in prompt
    assert "This query was classified as: casual" in prompt
    assert prompt.endswith(SUGGESTIONS_INSTRUCTION)
    assert WEB_CITATION_INSTRUCTION not in prompt
    assert temperature == 0.7


@pytest.mark.asyncio
async def test_web_and_dashboard_prompts(builder):
    tenant = TenantContext(tenant_id="t1", user_id="u1")
    web_prompt, _ = await builder.build("web", tenant, [])
    assert WEB_CITATION_INSTRUCTION in web_prompt
    _, dashboard_temperature = await builder.build("dashboard", tenant, [])
    assert dashboard_temperature == 0.0


@pytest.mark.asyncio
async def test_client_context_uses_only_that_clients_memories(builder, memory):
    await memory.store_preference("t1", "u1", "Acme client context: formal tone", client_id="acme")
    await memory.store_preference("t1", "u1", "Globex client context: casual tone", client_id="globex")
    prompt, _ = await builder.build("casual", TenantContext(tenant_id="t1", user_id="u1", client_id="acme"), [])
    assert "<client_context>" in prompt
    assert "formal tone" in prompt
    assert "casual tone" not in prompt


@pytest.mark.asyncio
async def test_request_override_renames_assistant(builder, db):
    await db.set_ai_config("t1", {"assistant_name": "Nova", "temperature": 0.3})
    tenant = TenantContext(tenant_id="t1", user_id="u1")
    prompt, temperature = await builder.build("casual", tenant, [])
    assert prompt.startswith("Your name is Nova.")
    assert temperature == 0.3
    prompt, _ = await builder.build("casual", tenant, [], {"assistant_name": "Ada"})
    assert prompt.startswith("Your name is Ada.")


@pytest.mark.asyncio
async def test_user_assistant_name_beats_tenant_default(builder, db):
    await db.set_ai_config("t1", {"assistant_name": "Nova"})
    await db.set_user_preferences("t1", "u1", {"ai": {"assistant_name": "Max"}})

    prompt, _ = await builder.build("casual", TenantContext(tenant_id="t1", user_id="u1"), [])
    assert prompt.startswith("Your name is Max.")
    other, _ = await builder.build("casual", TenantContext(tenant_id="t1", user_id="u2"), [])
    assert other.startswith("Your name is Nova.")
