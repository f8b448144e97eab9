from datetime import timedelta

import pytest

from chatcore.memory_store import relevance
from chatcore.schemas import utc_now


@pytest.mark.asyncio
async def test_search_is_scoped_to_tenant_and_user(memory):
    await memory.add("Acme prefers weekly budget reports", "tenant-a", "user-1")
    await memory.add("Acme prefers weekly budget reports", "tenant-b", "user-1")
    await memory.add("Acme prefers weekly budget reports", "tenant-a", "user-2")

    results = await memory.search("budget reports", "tenant-a", "user-1")
    assert len(results) == 1
    assert results[0].tenant_id == "tenant-a"
    assert results[0].user_id == "user-1"


@pytest.mark.asyncio
async def test_session_id_never_filters_reads(memory):
    await memory.add("Launch date is March 3rd", "t1", "u1", session_id="session-old")
    results = await memory.search("launch date", "t1", "u1")
    assert [r.session_id for r in results] == ["session-old"]


@pytest.mark.asyncio
async def test_client_filter_narrows_results(memory):
    await memory.add("Campaign budget is 40k", "t1", "u1", client_id="acme")
    await memory.add("Campaign budget is 10k", "t1", "u1", client_id="globex")

    results = await memory.search("campaign budget", "t1", "u1", client_id="acme")
    assert [r.client_id for r in results] == ["acme"]
    everything = await memory.search("campaign budget", "t1", "u1")
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_missing_identity_is_rejected(memory):
    with pytest.raises(ValueError):
        await memory.search("anything", "", "u1")
    with pytest.raises(ValueError):
        await memory.add("content", "t1", "")


@pytest.mark.asyncio
async def test_expired_records_are_invisible(memory):
    now = utc_now()
    await memory.store_task("t1", "u1", "Send the proposal", due="Friday", created_at=now - timedelta(days=15))
    await memory.store_preference("t1", "u1", "short bullet summaries", created_at=now - timedelta(days=400))

    results = await memory.search("", "t1", "u1", limit=10)
    assert [r.type for r in results] == ["preference"]
    assert results[0].expires_at is None


@pytest.mark.asyncio
async def test_expiration_dates_follow_type(memory):
    created = utc_now()
    task_id = await memory.store_task("t1", "u1", "Draft brief", created_at=created)
    conversation_id = await memory.add("chat", "t1", "u1", type="conversation", created_at=created)
    project_id = await memory.add("project notes", "t1", "u1", type="project", created_at=created)

    assert (await memory.get(task_id, "t1")).expires_at == created + timedelta(days=14)
    assert (await memory.get(conversation_id, "t1")).expires_at == created + timedelta(days=30)
    assert (await memory.get(project_id, "t1")).expires_at == created + timedelta(days=90)


@pytest.mark.asyncio
async def test_purge_expired_deletes_only_expired(memory):
    now = utc_now()
    await memory.add("old chat", "t1", "u1", created_at=now - timedelta(days=31))
    await memory.add("fresh chat", "t1", "u1", created_at=now)
    assert await memory.purge_expired(now) == 1
    page = await memory.list("t1", "u1")
    assert [m.content for m in page.memories] == ["fresh chat"]


@pytest.mark.asyncio
async def test_clear_session_removes_only_that_session(memory):
    await memory.add("first", "t1", "u1", session_id="s1")
    await memory.add("second", "t1", "u1", session_id="s2")
    await memory.add("other user", "t1", "u2", session_id="s1")

    assert await memory.clear_session("u1", "s1") == 1
    remaining = await memory.list("t1", "u1")
    assert [m.content for m in remaining.memories] == ["second"]
    assert (await memory.list("t1", "u2")).total == 1


@pytest.mark.asyncio
async def test_clear_session_stays_inside_the_tenant(memory):
    await memory.add("tenant one note", "t1", "u1", session_id="s1")
    await memory.add("tenant two note", "t2", "u1", session_id="s1")

    assert await memory.clear_session("u1", "s1", tenant_id="t1") == 1
    assert (await memory.list("t1", "u1")).total == 0
    assert [m.content for m in (await memory.list("t2", "u1")).memories] == ["tenant two note"]


@pytest.mark.asyncio
async def test_clear_tenant_removes_every_user(memory):
    await memory.add("a", "t1", "u1")
    await memory.add("b", "t1", "u2")
    await memory.add("c", "t2", "u1")

    assert await memory.clear_tenant("t1") == 2
    assert (await memory.list("t1", "u1")).total == 0
    assert (await memory.list("t1", "u2")).total == 0
    assert (await memory.list("t2", "u1")).total == 1


@pytest.mark.asyncio
async def test_update_and_delete_write_history(memory):
    memory_id = await memory.add("Budget is 10k", "t1", "u1")
    updated = await memory.update(memory_id, "t1", "Budget is 12k")
    assert updated.content == "Budget is 12k"
    assert await memory.delete(memory_id, "t1") is True

    events = await memory.history(memory_id, "t1")
    assert [e.event for e in events] == ["created", "updated", "deleted"]
    assert events[1].old_content == "Budget is 10k"
    assert events[1].new_content == "Budget is 12k"
    assert await memory.get(memory_id, "t1") is None


@pytest.mark.asyncio
async def test_other_tenant_cannot_read_or_update_by_id(memory):
    memory_id = await memory.add("secret", "t1", "u1")
    assert await memory.get(memory_id, "t2") is None
    assert await memory.update(memory_id, "t2", "hijacked") is None
    assert (await memory.get(memory_id, "t1")).content == "secret"


@pytest.mark.asyncio
async def test_typed_writers_format_content(memory):
    decision_id = await memory.store_decision("t1", "u1", "Use Google Ads", "Q3 launch")
    task_id = await memory.store_task("t1", "u1", "Call the client", due="Monday")
    summary_id = await memory.store_conversation_summary("t1", "u1", "Discussed ad spend.")

    decision = await memory.get(decision_id, "t1")
    assert decision.content == "Decision: Use Google Ads. Context: Q3 launch"
    assert decision.importance == "high"
    assert (await memory.get(task_id, "t1")).content == "Task: Call the client. Due: Monday"
    summary = await memory.get(summary_id, "t1")
    assert summary.type == "insight"
    assert summary.topic == "session summary"


@pytest.mark.asyncio
async def test_message_pair_memory_is_searchable(memory):
    pair = [
        {"role": "user", "content": "What did we decide for Acme's newsletter?"},
        {"role": "assistant", "content": "You chose a monthly cadence."},
    ]
    await memory.add(pair, "t1", "u1")
    results = await memory.search("newsletter cadence", "t1", "u1")
    assert len(results) == 1
    assert results[0].messages == pair
    assert results[0].content.startswith("user: What did we decide")


@pytest.mark.asyncio
async def test_search_min_score_and_ordering(memory):
    await memory.add("Website redesign kickoff", "t1", "u1")
    await memory.add("Website redesign budget approved", "t1", "u1")
    await memory.add("Unrelated note about lunch", "t1", "u1")

    results = await memory.search("website redesign budget", "t1", "u1", min_score=0.3)
    assert [r.content for r in results][0] == "Website redesign budget approved"
    assert all(r.score >= 0.3 for r in results)
    assert len(results) == 2


@pytest.mark.asyncio
async def test_stats_counts_by_type_and_importance(memory):
    await memory.store_preference("t1", "u1", "dark mode")
    await memory.add("chat", "t1", "u1")
    stats = await memory.stats("t1", "u1")
    assert stats["total"] == 2
    assert stats["by_type"] == {"preference": 1, "conversation": 1}
    assert stats["by_importance"] == {"high": 1, "medium": 1}


def test_relevance_empty_query_is_neutral():
    class Record:
        content = "anything"
        messages = []

    assert relevance("", Record()) == 0.5
    assert relevance("the and", Record()) == 0.5


@pytest.mark.asyncio
async def test_preference_visible_only_to_its_owner(memory):
    await memory.add("X prefers blue", "A", "U1", type="preference", importance="high")
    assert [r.content for r in await memory.search("blue", "A", "U1")] == ["X prefers blue"]
    assert await memory.search("blue", "B", "U1") == []
    assert await memory.search("blue", "A", "U2") == []
