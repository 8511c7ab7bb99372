from datetime import datetime

import pytest

from coach_chatbot.exceptions import AccessError, NotFoundError
from coach_chatbot.services import persistence
from coach_chatbot.services.persistence import MessageTree, TurnPersistenceStore, fallback_title
from coach_chatbot.streaming.events import Usage


@pytest.fixture
def store(crud):
    return TurnPersistenceStore(crud)


async def new_conversation(store, text="Hello coach", conversation_id=None, user_id="user-1"):
    conversation_id, _ = await store.ensure_conversation(
        conversation_id, "tenant-1", user_id, "gemini-2.0-flash", None, text
    )
    return conversation_id


async def assistant_with_artifact(store, conversation_id, content="Draft"):
    user = await store.record_user_message(conversation_id, "tenant-1", "Write a plan")
    return await store.record_assistant_message(
        conversation_id,
        "tenant-1",
        "assistant-1",
        "Here you go.",
        tool_calls=[{"id": "call_1", "name": "create_artifact", "arguments": {"title": "Plan", "kind": "text"}}],
        tool_results=[
            {"toolCallId": "call_1", "result": {"id": "call_1", "title": "Plan", "kind": "text", "content": content}}
        ],
        usage=Usage(prompt_tokens=3, completion_tokens=4, total_tokens=7),
        parent_message_id=user["id"],
    )


def test_fallback_title():
    assert fallback_title("Hi") == "Hi"
    assert fallback_title("x" * 150) == "x" * 100
    assert fallback_title("   ") == "New Chat"
    assert fallback_title(None) == "New Chat"


def test_message_tree_follows_the_requested_branch():
    rows = [
        {"id": "u1", "parent_message_id": None, "sequence_order": 1},
        {"id": "a1", "parent_message_id": "u1", "sequence_order": 2},
        {"id": "u2", "parent_message_id": "a1", "sequence_order": 3},
        {"id": "u2-edit", "parent_message_id": "a1", "sequence_order": 4},
        {"id": "a2", "parent_message_id": "u2-edit", "sequence_order": 5},
    ]
    tree = MessageTree(rows)

    assert [m["id"] for m in tree.path_to()] == ["u1", "a1", "u2-edit", "a2"]
    assert [m["id"] for m in tree.path_to("u2")] == ["u1", "a1", "u2"]
    assert tree.siblings("u2") == ["u2", "u2-edit"]
    assert tree.children[None] == ["u1"]


@pytest.mark.asyncio
async def test_ensure_conversation_reuses_owned_and_rejects_foreign(store):
    conversation_id = await new_conversation(store)

    assert await store.ensure_conversation(
        conversation_id, "tenant-1", "user-1", "gemini-2.0-flash", None, "again"
    ) == (conversation_id, False)
    with pytest.raises(AccessError):
        await store.ensure_conversation(
            conversation_id, "tenant-1", "user-2", "gemini-2.0-flash", None, "hi"
        )


@pytest.mark.asyncio
async def test_record_user_message_skips_blank_text(store, crud):
    conversation_id = await new_conversation(store)

    assert await store.record_user_message(conversation_id, "tenant-1", "   ") is None
    assert crud.messages.count_resource() == 0


@pytest.mark.asyncio
async def test_assistant_message_stores_usage_and_touches_conversation(store, crud):
    conversation_id = await new_conversation(store)
    before = crud.conversations.get_resource(conversation_id)["updated_at"]

    message = await assistant_with_artifact(store, conversation_id)

    assert message["sequence_order"] == 2
    assert (message["prompt_tokens"], message["completion_tokens"], message["total_tokens"]) == (3, 4, 7)
    assert crud.conversations.get_resource(conversation_id)["updated_at"] > before


@pytest.mark.asyncio
async def test_touch_is_strictly_increasing_when_clock_stalls(store, crud, monkeypatch):
    conversation_id = await new_conversation(store)
    frozen = datetime(2020, 1, 1, 12, 0, 0)
    monkeypatch.setattr(persistence, "utcnow", lambda: frozen)

    stamps = []
    for _ in range(3):
        await store.touch_conversation(conversation_id, "tenant-1")
        stamps.append(crud.conversations.get_resource(conversation_id)["updated_at"])

    assert stamps[0] < stamps[1] < stamps[2]


@pytest.mark.asyncio
async def test_list_conversations_orders_by_activity_and_filters_archived(store):
    older = await new_conversation(store, "first")
    newer = await new_conversation(store, "second")
    await new_conversation(store, "someone else", user_id="user-2")
    await store.touch_conversation(older, "tenant-1")

    listed = await store.list_conversations("user-1", "tenant-1")
    assert [c["id"] for c in listed] == [older, newer]

    await store.archive_conversation(newer, "tenant-1", "user-1")
    assert [c["id"] for c in await store.list_conversations("user-1", "tenant-1")] == [older]
    assert [c["id"] for c in await store.list_conversations("user-1", "tenant-1", archived=True)] == [newer]


@pytest.mark.asyncio
async def test_archive_requires_ownership(store):
    conversation_id = await new_conversation(store)

    with pytest.raises(NotFoundError):
        await store.archive_conversation(conversation_id, "tenant-1", "user-2")


@pytest.mark.asyncio
async def test_update_artifact_content_replaces_only_the_content(store):
    conversation_id = await new_conversation(store)
    original = await assistant_with_artifact(store, conversation_id)

    updated = await store.update_artifact_content(
        conversation_id, "tenant-1", original["id"], "call_1", "Final draft"
    )

    assert updated["tool_results"][0]["result"] == {
        "id": "call_1", "title": "Plan", "kind": "text", "content": "Final draft"
    }
    assert updated["content"] == original["content"]
    assert updated["tool_calls"] == original["tool_calls"]


@pytest.mark.asyncio
async def test_update_artifact_content_unknown_tool_call_leaves_message_unchanged(store, crud):
    conversation_id = await new_conversation(store)
    original = await assistant_with_artifact(store, conversation_id)

    with pytest.raises(NotFoundError):
        await store.update_artifact_content(
            conversation_id, "tenant-1", original["id"], "call_missing", "Overwritten"
        )

    assert crud.messages.get_resource(original["id"]) == original


@pytest.mark.asyncio
async def test_update_artifact_content_is_tenant_scoped(store):
    conversation_id = await new_conversation(store)
    original = await assistant_with_artifact(store, conversation_id)

    with pytest.raises(NotFoundError):
        await store.update_artifact_content(
            conversation_id, "tenant-2", original["id"], "call_1", "Hijacked"
        )


@pytest.mark.asyncio
async def test_recent_messages_and_history_path(store):
    conversation_id = await new_conversation(store)
    for text in ["one", "two", "three", "four"]:
        await store.record_user_message(conversation_id, "tenant-1", text)

    recent = await store.recent_messages(conversation_id, "tenant-1", 2)
    assert [m["content"] for m in recent] == ["three", "four"]
    path = await store.history_path(conversation_id, "tenant-1", limit=3)
    assert [m["content"] for m in path] == ["two", "three", "four"]
    assert await store.count_messages(conversation_id, "tenant-1") == 4


@pytest.mark.asyncio
async def test_parent_message_must_belong_to_conversation_and_tenant(store, crud):
    conversation_id = await new_conversation(store)
    own = await store.record_user_message(conversation_id, "tenant-1", "first")
    other_conversation = await new_conversation(store, "elsewhere")
    foreign = await store.record_user_message(other_conversation, "tenant-1", "not this branch")
    before = crud.messages.count_resource()

    with pytest.raises(AccessError) as exc_info:
        await store.record_user_message(conversation_id, "tenant-1", "reply", foreign["id"])
    assert exc_info.value.status_code == 404
    with pytest.raises(AccessError):
        await store.record_user_message(conversation_id, "tenant-2", "reply", own["id"])
    assert crud.messages.count_resource() == before

    reply = await store.record_user_message(conversation_id, "tenant-1", "reply", own["id"])
    assert reply["parent_message_id"] == own["id"]
