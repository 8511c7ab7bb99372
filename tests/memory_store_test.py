import pytest

from coach_chatbot.exceptions import ConflictError, NotFoundError
from coach_chatbot.models.memory import MemoryCategory, MemorySource
from coach_chatbot.services.memory_store import CREATED, UNCHANGED, UPDATED, MemoryStore


@pytest.fixture
def memory_store(crud):
    return MemoryStore(crud)


@pytest.mark.asyncio
async def test_upsert_creates_then_reports_unchanged_then_updates(memory_store):
    row, result = await memory_store.upsert_fact(
        "user-1", "tenant-1", MemoryCategory.BUSINESS_INFO, "business_name", " Acme Coaching "
    )
    assert result == CREATED
    assert (row["key"], row["value"], row["source"]) == ("business_name", "Acme Coaching", "auto")

    same, result = await memory_store.upsert_fact(
        "user-1", "tenant-1", MemoryCategory.BUSINESS_INFO, "business_name", "Acme Coaching"
    )
    assert result == UNCHANGED
    assert same["id"] == row["id"]

    changed, result = await memory_store.upsert_fact(
        "user-1", "tenant-1", MemoryCategory.BUSINESS_INFO, "business_name", "Acme Growth",
        source=MemorySource.MANUAL,
    )
    assert result == UPDATED
    assert changed["id"] == row["id"]
    assert (changed["value"], changed["source"]) == ("Acme Growth", "manual")
    assert len(await memory_store.list_memories("user-1", "tenant-1")) == 1


@pytest.mark.asyncio
async def test_same_key_in_another_category_is_a_separate_fact(memory_store):
    await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.GOALS, "focus", "Grow revenue")
    await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.CHALLENGES, "focus", "Time")

    assert len(await memory_store.list_memories("user-1", "tenant-1")) == 2
    goals = await memory_store.list_memories("user-1", "tenant-1", category=MemoryCategory.GOALS)
    assert [m["value"] for m in goals] == ["Grow revenue"]


@pytest.mark.asyncio
async def test_query_matches_key_or_value_case_insensitively(memory_store):
    await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.OFFERS, "flagship", "Group Program $2000")
    await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.GOALS, "program_launch", "March")
    await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.PERSONAL_INFO, "name", "Dana")

    matches = await memory_store.query("user-1", "tenant-1", "PROGRAM")

    assert sorted(m["key"] for m in matches) == ["flagship", "program_launch"]


@pytest.mark.asyncio
async def test_memories_are_isolated_per_tenant_and_user(memory_store):
    row, _ = await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.GOALS, "goal", "Scale")
    await memory_store.upsert_fact("user-1", "tenant-2", MemoryCategory.GOALS, "goal", "Hire")

    assert [m["value"] for m in await memory_store.list_memories("user-1", "tenant-2")] == ["Hire"]
    assert await memory_store.list_memories("user-2", "tenant-1") == []
    assert await memory_store.query("user-1", "tenant-2", "scale") == []

    with pytest.raises(NotFoundError):
        await memory_store.update_memory(row["id"], "user-1", "tenant-2", {"value": "Hijack"})
    with pytest.raises(NotFoundError):
        await memory_store.delete_memory(row["id"], "user-2", "tenant-1")


@pytest.mark.asyncio
async def test_update_and_delete_memory(memory_store):
    row, _ = await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.GOALS, "goal", "Scale")

    updated = await memory_store.update_memory(
        row["id"], "user-1", "tenant-1", {"value": "Scale to 7 figures", "category": "business_info"}
    )
    assert (updated["category"], updated["value"]) == ("business_info", "Scale to 7 figures")

    await memory_store.delete_memory(row["id"], "user-1", "tenant-1")
    assert await memory_store.list_memories("user-1", "tenant-1") == []


@pytest.mark.asyncio
async def test_update_onto_an_existing_fact_is_a_conflict(memory_store):
    await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.GOALS, "revenue", "$10k/month")
    launch, _ = await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.GOALS, "launch", "March")

    with pytest.raises(ConflictError):
        await memory_store.update_memory(launch["id"], "user-1", "tenant-1", {"key": "revenue"})

    goals = await memory_store.list_memories("user-1", "tenant-1", category=MemoryCategory.GOALS)
    assert sorted(m["key"] for m in goals) == ["launch", "revenue"]
    assert [m["value"] for m in goals if m["key"] == "revenue"] == ["$10k/month"]


@pytest.mark.asyncio
async def test_manual_edit_marks_fact_as_manual(memory_store):
    row, _ = await memory_store.upsert_fact("user-1", "tenant-1", MemoryCategory.OFFERS, "flagship", "Group program")
    assert row["source"] == "auto"

    updated = await memory_store.update_memory(row["id"], "user-1", "tenant-1", {"value": "1:1 program"})

    assert (updated["value"], updated["source"]) == ("1:1 program", "manual")
