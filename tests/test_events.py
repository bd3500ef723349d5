"""Tests for agent SDK message decoding."""

from __future__ import annotations

from facilitator.ai.events import (
    AssistantBlock,
    McpServerInfo,
    PartialDelta,
    Result,
    SystemInit,
    TokenUsage,
    UserBlock,
    decode_sdk_message,
    event_kind,
)


def test_system_init_collects_tools_and_servers() -> None:
    (event,) = decode_sdk_message(
        {
            "type": "system",
            "subtype": "init",
            "model": "claude-sonnet",
            "session_id": "sess-1",
            "tools": ["search_documents", {"name": "read_document"}, ""],
            "mcp_servers": [{"name": "workspace", "status": "connected"}, {"status": "failed"}],
        }
    )

    assert event == SystemInit(
        model="claude-sonnet",
        tools=("search_documents", "read_document"),
        mcp_servers=(McpServerInfo(name="workspace", status="connected"),),
        session_id="sess-1",
    )
    assert event_kind(event) == ("system", "init")


def test_stream_deltas_map_to_partial_events() -> None:
    def delta(payload: dict[str, str]) -> dict[str, object]:
        return {"type": "stream_event", "event": {"type": "content_block_delta", "delta": payload}}

    assert decode_sdk_message(delta({"type": "text_delta", "text": "Hi"})) == [
        PartialDelta(kind="text", payload="Hi")
    ]
    assert decode_sdk_message(delta({"type": "thinking_delta", "thinking": "hmm"})) == [
        PartialDelta(kind="thinking", payload="hmm")
    ]
    assert decode_sdk_message(delta({"type": "text_delta", "text": ""})) == []
    assert decode_sdk_message(delta({"type": "input_json_delta", "partial_json": "{"})) == []
    assert decode_sdk_message({"type": "stream_event", "event": {"type": "message_start"}}) == []


def test_assistant_blocks_keep_content_order_and_usage() -> None:
    events = decode_sdk_message(
        {
            "type": "assistant",
            "message": {
                "usage": {"input_tokens": 10, "output_tokens": 2},
                "content": [
                    {"type": "thinking", "thinking": "plan"},
                    {"type": "text", "text": "Looking that up."},
                    {"type": "tool_use", "id": "tu-1", "name": "search_documents", "input": {"query": "q"}},
                ],
            },
        }
    )

    assert [event_kind(event) for event in events] == [
        ("assistant", "thinking"),
        ("assistant", "text"),
        ("assistant", "tool_use"),
    ]
    tool_use = events[2]
    assert isinstance(tool_use, AssistantBlock)
    assert tool_use.tool_name == "search_documents"
    assert tool_use.tool_input == {"query": "q"}
    assert tool_use.tool_use_id == "tu-1"
    assert all(event.usage == TokenUsage(input_tokens=10, output_tokens=2) for event in events)


def test_assistant_string_content_and_usage_only_messages() -> None:
    assert decode_sdk_message({"type": "assistant", "message": {"content": "plain"}}) == [
        AssistantBlock(kind="text", text="plain")
    ]
    (usage_only,) = decode_sdk_message(
        {"type": "assistant", "message": {"content": [], "usage": {"output_tokens": 4}}}
    )
    assert usage_only == AssistantBlock(kind="text", text="", usage=TokenUsage(output_tokens=4))


def test_user_tool_results_are_decoded() -> None:
    events = decode_sdk_message(
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "tu-1", "content": [{"type": "text", "text": "ok"}]},
                    {"type": "text", "text": "ignored"},
                ]
            },
        }
    )

    assert events == [UserBlock(tool_result=[{"type": "text", "text": "ok"}], tool_use_id="tu-1")]


def test_result_messages() -> None:
    (success,) = decode_sdk_message(
        {
            "type": "result",
            "subtype": "success",
            "result": "Done.",
            "total_cost_usd": 0.002,
            "usage": {"input_tokens": 5, "output_tokens": 7},
        }
    )
    assert success == Result(
        subtype="success",
        usage=TokenUsage(input_tokens=5, output_tokens=7),
        cost_usd=0.002,
        text="Done.",
    )

    (failure,) = decode_sdk_message({"type": "result", "subtype": "error_during_execution", "errors": ["boom"]})
    assert failure.errors == ("boom",)

    (unknown,) = decode_sdk_message({"type": "result", "subtype": "mystery"})
    assert unknown.subtype == "error_during_execution"


def test_unknown_message_types_are_ignored() -> None:
    assert decode_sdk_message({"type": "heartbeat"}) == []
    assert decode_sdk_message({"type": "system", "subtype": "compact"}) == []
