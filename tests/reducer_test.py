import asyncio

import pytest

from coach_chatbot.streaming.events import (
    ArtifactCompleteEvent,
    ArtifactDeltaEvent,
    ArtifactDocument,
    ArtifactKind,
    ArtifactMetadataEvent,
    ErrorEvent,
    FinishEvent,
    StartEvent,
    TextDeltaEvent,
    Usage,
)
from coach_chatbot.streaming.reducer import ChatState, MailboxReducer, apply_event, mailbox_key


def artifact_turn():
    return [
        StartEvent(message_id="m-1", conversation_id="c-1"),
        TextDeltaEvent(text="Here is "),
        ArtifactMetadataEvent(id="call_1", title="Plan", kind=ArtifactKind.TEXT),
        ArtifactDeltaEvent(id="call_1", content="Step 1"),
        TextDeltaEvent(text="your plan."),
        ArtifactDeltaEvent(id="call_1", content=", Step 2"),
        ArtifactCompleteEvent(
            id="call_1",
            final_object=ArtifactDocument(title="Plan", kind=ArtifactKind.TEXT, content="Step 1, Step 2"),
        ),
        FinishEvent(finish_reason="stop", usage=Usage(total_tokens=15)),
    ]


def test_apply_event_builds_message_and_artifact():
    state = ChatState()
    for event in artifact_turn():
        apply_event(state, event)

    assert state.message.id == "m-1"
    assert state.message.conversation_id == "c-1"
    assert state.message.text == "Here is your plan."
    assert state.message.artifact_ids == ["call_1"]
    assert state.message.done
    artifact = state.artifacts["call_1"]
    assert (artifact.content, artifact.complete, artifact.error) == ("Step 1, Step 2", True, None)


def test_complete_event_overrides_accumulated_deltas():
    state = ChatState()
    apply_event(state, ArtifactMetadataEvent(id="a", title="Draft", kind=ArtifactKind.CODE))
    apply_event(state, ArtifactDeltaEvent(id="a", content="partial"))
    apply_event(
        state,
        ArtifactCompleteEvent(
            id="a",
            final_object=ArtifactDocument(title="Draft", kind=ArtifactKind.CODE, content="partial"),
            error="Artifact generation failed",
        ),
    )

    assert state.artifacts["a"].complete
    assert state.artifacts["a"].error == "Artifact generation failed"


def test_delta_for_unknown_artifact_raises():
    with pytest.raises(ValueError):
        apply_event(ChatState(), ArtifactDeltaEvent(id="missing", content="x"))


def test_error_event_marks_message_done():
    state = apply_event(ChatState(), ErrorEvent(message="Provider failed", code="provider_error"))

    assert state.message.error == "Provider failed"
    assert state.message.done


def test_mailbox_key_routes_by_target():
    assert mailbox_key(StartEvent(message_id="m-1", conversation_id="c"), "assistant") == "m-1"
    assert mailbox_key(TextDeltaEvent(text="x"), "m-1") == "m-1"
    assert mailbox_key(ArtifactDeltaEvent(id="call_1", content="x"), "m-1") == "call_1"


@pytest.mark.asyncio
async def test_mailbox_reducer_serializes_each_target():
    active: dict[str, int] = {}
    overlaps = []
    seen = []

    async def slow_listener(state, event):
        key = mailbox_key(event, state.message.id)
        active[key] = active.get(key, 0) + 1
        if active[key] > 1:
            overlaps.append(key)
        seen.append((key, event.type))
        await asyncio.sleep(0.01)
        active[key] -= 1

    reducer = MailboxReducer(listener=slow_listener)
    for event in artifact_turn():
        reducer.dispatch(event)
    state = await reducer.drain()

    assert overlaps == []
    assert state.message.text == "Here is your plan."
    assert state.artifacts["call_1"].content == "Step 1, Step 2"
    assert [t for k, t in seen if k == "call_1"] == [
        "artifact-metadata",
        "artifact-delta",
        "artifact-delta",
        "artifact-complete",
    ]
    assert [t for k, t in seen if k == "m-1"] == ["start", "text-delta", "text-delta", "finish"]
    await reducer.close()


@pytest.mark.asyncio
async def test_mailbox_reducer_survives_a_failing_apply():
    reducer = MailboxReducer()
    reducer.dispatch(ArtifactDeltaEvent(id="ghost", content="lost"))
    reducer.dispatch(TextDeltaEvent(text="still here"))

    state = await reducer.drain()

    assert "ghost" not in state.artifacts
    assert state.message.text == "still here"
    await reducer.close()
