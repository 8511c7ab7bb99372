import json

import pytest
from pydantic import ValidationError

from coach_chatbot.streaming.events import (
    ArtifactCompleteEvent,
    ArtifactDocument,
    ArtifactKind,
    ErrorEvent,
    FinishEvent,
    StartEvent,
    TextDeltaEvent,
    Usage,
    parse_event,
    to_sse,
)


def payload(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


def test_start_event_uses_camel_case_keys():
    frame = to_sse(StartEvent(message_id="m-1", conversation_id="c-1"))

    assert payload(frame) == {"type": "start", "messageId": "m-1", "conversationId": "c-1"}


def test_finish_event_nests_camel_case_usage():
    usage = Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15)

    data = payload(to_sse(FinishEvent(finish_reason="stop", usage=usage)))

    assert data == {
        "type": "finish",
        "finishReason": "stop",
        "usage": {"promptTokens": 10, "completionTokens": 5, "totalTokens": 15},
    }


def test_artifact_complete_omits_missing_optionals():
    event = ArtifactCompleteEvent(
        id="call_1",
        final_object=ArtifactDocument(title="Plan", kind=ArtifactKind.TEXT, content="Body"),
    )

    data = payload(to_sse(event))

    assert data == {
        "type": "artifact-complete",
        "id": "call_1",
        "finalObject": {"title": "Plan", "kind": "text", "content": "Body"},
    }


def test_parse_event_reads_wire_format():
    event = parse_event('{"type": "text-delta", "text": "Hel"}')
    assert event == TextDeltaEvent(text="Hel")

    error = parse_event({"type": "error", "message": "boom", "code": "provider_error"})
    assert isinstance(error, ErrorEvent) and error.code == "provider_error"


def test_parse_event_round_trips_an_encoded_frame():
    original = ArtifactCompleteEvent(
        id="call_2",
        final_object=ArtifactDocument(title="App", kind=ArtifactKind.CODE, content="x = 1", language="python"),
        error="truncated",
    )

    assert parse_event(to_sse(original)[len("data: "):].strip()) == original


def test_parse_event_rejects_unknown_type():
    with pytest.raises(ValidationError):
        parse_event({"type": "reasoning", "text": "hmm"})


def test_usage_addition():
    total = Usage(prompt_tokens=1, completion_tokens=2, total_tokens=3) + Usage(
        prompt_tokens=4, completion_tokens=5, total_tokens=9
    )

    assert total == Usage(prompt_tokens=5, completion_tokens=7, total_tokens=12)
