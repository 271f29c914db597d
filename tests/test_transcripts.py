"""Tests for the live and history adapters."""

import json
import random
from datetime import datetime, timezone
from pathlib import Path

from transcript_merge.transcripts import (
    AbortStream,
    AppendText,
    AttachToolResult,
    FinalizeStream,
    NewMessage,
    Role,
    SessionCreated,
    SessionSwitch,
    Skip,
    StatusUpdate,
    TurnEnded,
)
from transcript_merge.transcripts.claude import load_records, summarize_tool_use, translate_records
from transcript_merge.transcripts.cursor import (
    decode_blob,
    decode_meta,
    map_tool_input,
    summarize_session,
    translate_blobs,
)
from transcript_merge.transcripts.live import LiveProtocolAdapter, clean_output, format_usage_limit

FIXTURES = Path(__file__).parent / "fixtures"

BASE_TIME = datetime(2026, 2, 10, 14, 0, tzinfo=timezone.utc)


def _messages(deltas):
    return [d.message for d in deltas if isinstance(d, NewMessage)]


class TestClaudeHistory:
    def test_parse_fixture(self):
        deltas = translate_records(load_records(FIXTURES / "claude-history.jsonl"))
        messages = _messages(deltas)
        assert [m.role for m in messages] == [
            Role.USER,
            Role.ASSISTANT,
            Role.ASSISTANT,
            Role.ASSISTANT,
            Role.ASSISTANT,
        ]
        assert all(m.source == "claude" for m in messages)

    def test_messages_have_timestamps(self):
        deltas = translate_records(load_records(FIXTURES / "claude-history.jsonl"))
        for msg in _messages(deltas):
            assert msg.timestamp, f"Message missing timestamp: {msg.content[:50]}"

    def test_tool_use_and_result(self):
        deltas = translate_records(load_records(FIXTURES / "claude-history.jsonl"))
        tools = [m for m in _messages(deltas) if m.is_tool_use]
        assert [t.tool_id for t in tools] == ["toolu_01", "toolu_02"]
        assert tools[0].tool_input == {"command": "mkdir -p app", "description": "Create app directory"}
        attach = [d for d in deltas if isinstance(d, AttachToolResult)]
        assert len(attach) == 1
        assert attach[0].tool_id == "toolu_01"

    def test_system_and_command_records_filtered(self):
        deltas = translate_records(load_records(FIXTURES / "claude-history.jsonl"))
        contents = " ".join(m.content for m in _messages(deltas))
        assert "compacted" not in contents
        assert "<command-name>" not in contents

    def test_user_text_parts_joined(self):
        records = [{"message": {"role": "user", "content": [{"type": "text", "text": "hi"}]}, "timestamp": "t"}]
        messages = _messages(translate_records(records))
        assert len(messages) == 1
        assert messages[0].role == Role.USER
        assert messages[0].content == "hi"

    def test_system_role_produces_no_messages(self):
        records = [{"message": {"role": "system", "content": "You are helpful"}}]
        assert _messages(translate_records(records)) == []

    def test_malformed_records_skipped(self):
        deltas = translate_records(["not a record", {"message": "nope"}, {}])
        assert all(isinstance(d, Skip) for d in deltas)

    def test_load_records_from_paginated_response(self, tmp_path):
        path = tmp_path / "page.json"
        path.write_text(json.dumps({"messages": [{"a": 1}], "hasMore": True}))
        assert load_records(path) == [{"a": 1}]

    def test_summarize_tool_use(self):
        assert summarize_tool_use("Bash", {"command": "ls", "description": "List"}) == "[Bash: List]"
        assert summarize_tool_use("Read", {"file_path": "/a.py"}) == "[Read: /a.py]"
        assert summarize_tool_use("Custom", None) == "[Custom]"


class TestDecodeBlob:
    def test_direct_json(self):
        assert decode_blob('{"role": "user", "content": "hi"}') == {"role": "user", "content": "hi"}

    def test_bytes_payload(self):
        assert decode_blob(b'{"role": "user"}') == {"role": "user"}

    def test_hex_encoded_json(self):
        payload = json.dumps({"role": "assistant", "content": "ok"}).encode().hex()
        assert decode_blob(payload) == {"role": "assistant", "content": "ok"}

    def test_embedded_json_in_binary(self):
        data = b"\x00\x01\x02prefix" + b'{"role": "user", "content": "x"}' + b"\x7f\x00"
        assert decode_blob(data) == {"role": "user", "content": "x"}

    def test_pure_binary_dropped(self):
        assert decode_blob(b"\x00\x01\x02\x03") is None

    def test_non_object_json_dropped(self):
        assert decode_blob("[1, 2, 3]") is None
        assert decode_blob("42") is None

    def test_two_objects_are_not_guessed(self):
        # Boundary extraction spans both objects and fails to parse
        assert decode_blob(b'\x00{"a": 1} junk {"b": 2}\x00') is None

    def test_boundary_extraction_never_raises(self):
        rng = random.Random(1234)
        alphabet = b'{}[]":,abc \x00\x01\xff\\'
        for _ in range(500):
            blob = bytes(rng.choice(alphabet) for _ in range(rng.randint(0, 40)))
            result = decode_blob(blob)
            assert result is None or isinstance(result, dict)


class TestCursorBlobs:
    def _deltas(self):
        blobs = json.loads((FIXTURES / "cursor-blobs.json").read_text())
        return translate_blobs(blobs, project_path="/work/demo", base_time=BASE_TIME)

    def test_fixture_messages(self):
        messages = _messages(self._deltas())
        assert [(m.role, m.content) for m in messages] == [
            (Role.USER, "Add a README"),
            (Role.ASSISTANT, "Creating it."),
            (Role.ASSISTANT, ""),
            (Role.ASSISTANT, "README added."),
        ]

    def test_system_blob_filtered(self):
        messages = _messages(self._deltas())
        assert not any("coding agent" in m.content for m in messages)

    def test_reasoning_kept_separately(self):
        messages = _messages(self._deltas())
        assert messages[1].reasoning == "Need a file"

    def test_tool_call_mapped(self):
        tool = _messages(self._deltas())[2]
        assert tool.is_tool_use
        assert tool.tool_id == "call_1"
        assert tool.tool_name == "Write"
        assert tool.tool_input == {"file_path": "/work/demo/README.md", "content": "# Demo"}

    def test_tool_result_blob_becomes_attach(self):
        attach = [d for d in self._deltas() if isinstance(d, AttachToolResult)]
        assert len(attach) == 1
        assert attach[0].tool_id == "call_1"
        assert attach[0].result.content == "Wrote README.md"

    def test_messages_carry_blob_order_hints(self):
        messages = _messages(self._deltas())
        assert [m.sequence for m in messages] == [2, 3, 3, 6]
        assert [m.rowid for m in messages] == [12, 13, 13, 16]
        assert messages[0].source_id == "b2"

    def test_timestamps_spread_by_blob_index(self):
        messages = _messages(self._deltas())
        assert messages[0].timestamp == "2026-02-10T14:00:01+00:00"

    def test_apply_patch_maps_to_edit(self):
        patch = "@@ -1 +1 @@\n-old line\n+new line\n context"
        assert map_tool_input("Edit", {"patch": patch, "file_path": "a.txt"}, "/p") == {
            "file_path": "/p/a.txt",
            "old_string": "old line\ncontext",
            "new_string": "new line\ncontext",
        }
        blobs = [{"id": "x", "content": {"role": "assistant", "content": [
            {"type": "tool-call", "toolName": "ApplyPatch", "args": {"patch": patch}},
        ]}}]
        tool = _messages(translate_blobs(blobs, base_time=BASE_TIME))[0]
        assert tool.tool_name == "Edit"
        assert tool.tool_id == "tool_0"

    def test_malformed_blob_entries_skipped(self):
        deltas = translate_blobs(["oops", {"id": "y", "data": None}], base_time=BASE_TIME)
        assert all(isinstance(d, Skip) for d in deltas)


class TestCursorSessionSummary:
    def test_meta_hex_json_decoded(self):
        agent = json.dumps({"name": "Refactor", "createdAt": 1760000000, "mode": "agent"}).encode().hex()
        meta = decode_meta([("agent", agent), ("note", "plain")])
        assert meta["agent"]["name"] == "Refactor"
        assert meta["note"] == "plain"

    def test_summary_normalizes_created_at(self):
        agent = json.dumps({"name": "Refactor", "createdAt": 1760000000000}).encode().hex()
        blobs = [{"data": json.dumps({"role": "user", "content": [{"type": "text", "text": "x" * 150}]})}]
        summary = summarize_session("s1", [("agent", agent)], blobs)
        assert summary["name"] == "Refactor"
        assert summary["createdAt"] == datetime.fromtimestamp(1760000000, tz=timezone.utc).isoformat()
        assert summary["messageCount"] == 1
        assert summary["lastMessage"] == "x" * 100 + "..."

    def test_out_of_range_created_at_falls_back_to_mtime(self):
        for created_at in (1e20, "nan", -1e300):
            agent = json.dumps({"name": "Odd", "createdAt": created_at}).encode().hex()
            summary = summarize_session("s1", [("agent", agent)], [], fallback_mtime=0)
            assert summary["createdAt"] == "1970-01-01T00:00:00+00:00"

    def test_summary_falls_back_to_mtime(self):
        summary = summarize_session("s1", [], [], fallback_mtime=0)
        assert summary["name"] == "Untitled Session"
        assert summary["createdAt"] == "1970-01-01T00:00:00+00:00"
        assert summary["lastMessage"] is None


class TestLiveAdapter:
    def test_content_block_delta(self):
        adapter = LiveProtocolAdapter()
        event = {"type": "claude-response", "data": {"message": {"type": "content_block_delta", "delta": {"text": "Hel"}}}}
        assert adapter.translate(event) == [AppendText("Hel")]

    def test_content_block_stop(self):
        adapter = LiveProtocolAdapter()
        event = {"type": "claude-response", "data": {"message": {"type": "content_block_stop"}}}
        assert adapter.translate(event) == [FinalizeStream()]

    def test_tool_use_and_text_parts(self):
        adapter = LiveProtocolAdapter()
        event = {"type": "claude-response", "data": {"message": {"role": "assistant", "content": [
            {"type": "text", "text": "Reading the file."},
            {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "/a.py"}},
            {"type": "text", "text": "   "},
        ]}}}
        messages = _messages(adapter.translate(event))
        assert len(messages) == 2
        assert messages[0].content == "Reading the file."
        assert messages[1].is_tool_use and messages[1].tool_id == "t1"

    def test_tool_result_from_user_message(self):
        adapter = LiveProtocolAdapter()
        event = {"type": "claude-response", "data": {"message": {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": "t1", "content": "ok", "is_error": True},
        ]}}}
        (delta,) = adapter.translate(event)
        assert isinstance(delta, AttachToolResult)
        assert delta.tool_id == "t1"
        assert delta.result.is_error is True

    def test_session_created_only_without_tracked_session(self):
        assert LiveProtocolAdapter().translate({"type": "session-created", "sessionId": "s1"}) == [SessionCreated("s1")]
        deltas = LiveProtocolAdapter("s0").translate({"type": "session-created", "sessionId": "s1"})
        assert isinstance(deltas[0], Skip)

    def test_init_for_current_session_ignored(self):
        adapter = LiveProtocolAdapter("s1")
        event = {"type": "claude-response", "data": {"type": "system", "subtype": "init", "session_id": "s1"}}
        assert isinstance(adapter.translate(event)[0], Skip)

    def test_conflicting_init_signals_switch(self):
        adapter = LiveProtocolAdapter("s1")
        event = {"type": "claude-response", "data": {"type": "system", "subtype": "init", "session_id": "s2"}}
        assert adapter.translate(event) == [SessionSwitch("s2", "s1")]
        assert adapter.session_id == "s2"

    def test_cursor_system_init(self):
        adapter = LiveProtocolAdapter("s1")
        event = {"type": "cursor-system", "data": {"type": "system", "subtype": "init", "session_id": "c2"}}
        assert adapter.translate(event) == [SessionSwitch("c2", "s1")]

    def test_output_cleaned(self):
        adapter = LiveProtocolAdapter()
        deltas = adapter.translate({"type": "cursor-output", "data": "\x1b[32mdone\x1b[0m\x07"})
        assert deltas == [AppendText("done", separator="\n")]
        assert isinstance(adapter.translate({"type": "claude-output", "data": "\x1b[0m  "})[0], Skip)

    def test_cursor_result(self):
        deltas = LiveProtocolAdapter().translate({"type": "cursor-result", "data": {"result": "All done.", "is_error": False}})
        assert deltas == [FinalizeStream(final_text="All done.", is_error=False), TurnEnded("result")]

    def test_error_closes_turn(self):
        deltas = LiveProtocolAdapter().translate({"type": "claude-error", "error": "socket closed"})
        assert isinstance(deltas[0], FinalizeStream)
        assert _messages(deltas)[0].role == Role.ERROR
        assert _messages(deltas)[0].content == "Error: socket closed"
        assert deltas[-1] == TurnEnded("error")

    def test_complete_and_abort(self):
        adapter = LiveProtocolAdapter()
        assert adapter.translate({"type": "claude-complete", "exitCode": 0}) == [FinalizeStream(), TurnEnded("complete", 0)]
        assert adapter.translate({"type": "session-aborted"}) == [AbortStream(), TurnEnded("aborted")]

    def test_status(self):
        adapter = LiveProtocolAdapter()
        deltas = adapter.translate({"type": "claude-status", "data": {"message": "Thinking", "token_count": 12, "can_interrupt": False}})
        assert deltas == [StatusUpdate(text="Thinking", tokens=12, can_interrupt=False)]

    def test_interactive_prompt(self):
        (delta,) = LiveProtocolAdapter().translate({"type": "claude-interactive-prompt", "data": "Continue? (y/n)"})
        assert delta.message.role == Role.INTERACTIVE_PROMPT

    def test_malformed_events_never_raise(self):
        adapter = LiveProtocolAdapter()
        for event in [None, 42, {}, {"type": 5}, {"type": "claude-response"}, {"type": "claude-response", "data": "x"},
                      {"type": "claude-status", "data": {"tokens": "many"}}, {"type": "unknown-kind"}]:
            deltas = adapter.translate(event)
            assert all(isinstance(d, Skip) for d in deltas)

    def test_usage_limit_rewritten(self):
        text = format_usage_limit("Claude AI usage limit reached|1760000000")
        assert "|" not in text
        assert "UTC" in text

    def test_clean_output(self):
        assert clean_output(None) == ""
        assert clean_output("\x1b[1;31mred\x1b[0m") == "red"
