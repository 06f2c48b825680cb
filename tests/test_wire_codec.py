import pytest

from agentkoppler.agent_runtime import RunResult
from agentkoppler.run_items import (
    AssistantTextItem,
    MessageOutputEvent,
    ReasoningDeltaEvent,
    SystemItem,
    TextDeltaEvent,
    ToolCalledEvent,
    ToolInvocationItem,
    ToolOutputEvent,
    ToolResultItem,
    Usage,
    UserItem,
)
from agentkoppler.wire_codec import (
    RequestDecodeError,
    build_error_payload,
    build_models_payload,
    decode_request,
    encode_chunk,
    encode_result,
    final_chunk,
)


def test_decode_maps_roles_to_items_in_order() -> None:
    decoded = decode_request(
        {
            "model": "helper",
            "stream": True,
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "developer", "content": "also polite"},
                {"role": "user", "content": "add 2 and 3"},
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [{"id": "call_1", "type": "function", "function": {"name": "add", "arguments": {"a": 2}}}],
                },
                {"role": "tool", "tool_call_id": "call_1", "content": "5"},
                {"role": "function", "name": "legacy", "content": "old"},
                {"role": "narrator", "content": "odd role"},
            ],
        }
    )

    assert decoded.model == "helper"
    assert decoded.stream is True
    assert [item.kind for item in decoded.items] == [
        "system",
        "system",
        "user",
        "assistant",
        "tool_result",
        "tool_result",
        "user",
    ]
    assistant = decoded.items[3]
    assert isinstance(assistant, AssistantTextItem)
    assert assistant.content == ""
    assert assistant.tool_calls == [ToolInvocationItem(call_id="call_1", name="add", arguments='{"a": 2}', status="completed")]
    assert decoded.items[4] == ToolResultItem(call_id="call_1", name="", output="5")
    assert decoded.items[5] == ToolResultItem(call_id="legacy", name="legacy", output="old")
    assert decoded.items[6] == UserItem(content="odd role")


def test_decode_joins_text_parts_and_drops_others() -> None:
    decoded = decode_request(
        {
            "model": "helper",
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "first"},
                        {"type": "image_url", "image_url": {"url": "http://x/y.png"}},
                        {"type": "input_text", "text": "second"},
                    ],
                }
            ],
        }
    )

    assert decoded.items == [UserItem(content="first\nsecond")]
    assert decoded.stream is False


def test_decode_non_string_model_becomes_empty() -> None:
    assert decode_request({"model": 7, "messages": []}).model == ""


@pytest.mark.parametrize(
    "body",
    [
        [],
        "text",
        {"model": "x"},
        {"model": "x", "messages": "hello"},
        {"model": "x", "messages": ["hello"]},
    ],
)
def test_decode_rejects_malformed_bodies(body) -> None:
    with pytest.raises(RequestDecodeError):
        decode_request(body)


def test_encode_result_uses_last_assistant_text_and_usage() -> None:
    result = RunResult(
        output=[
            SystemItem(content="ignored"),
            AssistantTextItem(content="thinking about tools"),
            ToolResultItem(call_id="c", name="add", output="5"),
            AssistantTextItem(content="The answer is 5."),
        ],
        usage=Usage(prompt_tokens=10, completion_tokens=4),
        response_id="chatcmpl-abc",
    )

    payload = encode_result(result, "helper")

    assert payload["id"] == "chatcmpl-abc"
    assert payload["object"] == "chat.completion"
    assert payload["model"] == "helper"
    choice = payload["choices"][0]
    assert choice["message"] == {"role": "assistant", "content": "The answer is 5.", "refusal": None}
    assert choice["finish_reason"] == "stop"
    assert choice["logprobs"] is None
    assert payload["usage"]["total_tokens"] == 14
    assert payload["usage"]["prompt_tokens_details"]["cached_tokens"] == 0


def test_encode_result_without_assistant_text_has_null_content() -> None:
    payload = encode_result(RunResult(output=[], usage=Usage(), response_id=""), "helper")
    blank = encode_result(RunResult(output=[AssistantTextItem(content="")], usage=Usage(), response_id="r"), "helper")

    assert payload["choices"][0]["message"]["content"] is None
    assert blank["choices"][0]["message"]["content"] is None
    assert payload["id"].startswith("chatcmpl-")
    assert payload["usage"]["total_tokens"] == 0


def test_encode_chunk_renders_tool_annotations() -> None:
    invocation = ToolInvocationItem(call_id="c1", name="ref_search_docs")
    called = encode_chunk(ToolCalledEvent(item=invocation), "run", "helper", 1)
    done = encode_chunk(
        ToolOutputEvent(item=ToolResultItem(call_id="c1", name="list_files", output="[]"), label="List Files"),
        "run",
        "helper",
        1,
    )

    assert called["choices"][0]["delta"] == {"content": "\n[Tool Call]: Ref Search Docs\n"}
    assert done["choices"][0]["delta"] == {"content": "[Tool Complete]: List Files\n"}
    assert called["id"] == done["id"] == "run"
    assert called["created"] == 1
    assert called["choices"][0]["finish_reason"] is None


def test_encode_chunk_text_delta_and_silent_events() -> None:
    chunk = encode_chunk(TextDeltaEvent(delta="Hel"), "run", "helper", 1)

    assert chunk["object"] == "chat.completion.chunk"
    assert chunk["choices"][0]["delta"] == {"content": "Hel"}
    assert encode_chunk(ReasoningDeltaEvent(delta="hmm"), "run", "helper", 1) is None
    assert encode_chunk(MessageOutputEvent(item=AssistantTextItem(content="x")), "run", "helper", 1) is None


def test_final_chunk_has_empty_delta_and_stop() -> None:
    chunk = final_chunk("run", "helper", 5)

    assert chunk["choices"][0]["delta"] == {}
    assert chunk["choices"][0]["finish_reason"] == "stop"
    assert chunk["id"] == "run"


def test_models_payload_lists_agent_names() -> None:
    payload = build_models_payload(["alpha", "beta"])

    assert payload["object"] == "list"
    assert [entry["id"] for entry in payload["data"]] == ["alpha", "beta"]
    assert all(entry["owned_by"] == "agentkoppler" and entry["root"] == entry["id"] for entry in payload["data"])


def test_error_payload_shape() -> None:
    assert build_error_payload("nope") == {"error": {"message": "nope", "type": "invalid_request_error"}}
    assert build_error_payload("boom", "internal_error")["error"]["type"] == "internal_error"
