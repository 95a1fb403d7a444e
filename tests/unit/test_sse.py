import json

import pytest

from thinking_chat.core.exceptions import StreamDecodeError
from thinking_chat.services.sse import SSEBuffer, extract_stream_token, format_event, parse_event_block


class TestSSEBuffer:
    def test_splits_on_blank_lines(self):
        buffer = SSEBuffer()
        blocks = buffer.feed(b"data: one\n\ndata: two\n\ndata: thr")
        assert blocks == ["data: one", "data: two"]
        assert buffer.feed(b"ee\n\n") == ["data: three"]

    def test_separator_split_across_feeds(self):
        buffer = SSEBuffer()
        assert buffer.feed(b"data: a\n") == []
        assert buffer.feed(b"\n") == ["data: a"]

    def test_crlf_normalized(self):
        buffer = SSEBuffer()
        assert buffer.feed(b"data: a\r\n\r") == []
        assert buffer.feed(b"\ndata: b\r\n\r\n") == ["data: a", "data: b"]

    def test_multibyte_character_split_across_feeds(self):
        encoded = "data: café 👋\n\n".encode("utf-8")
        buffer = SSEBuffer()
        blocks = []
        for i in range(len(encoded)):
            blocks.extend(buffer.feed(encoded[i:i + 1]))
        assert blocks == ["data: café 👋"]

    def test_flush_returns_trailing_block(self):
        buffer = SSEBuffer()
        buffer.feed(b"data: tail")
        assert buffer.flush() == ["data: tail"]
        assert buffer.flush() == []

    def test_flush_ignores_whitespace(self):
        buffer = SSEBuffer()
        buffer.feed(b"data: x\n\n\n")
        assert buffer.flush() == []


class TestExtractStreamToken:
    def test_chat_delta(self):
        chunk = {"choices": [{"delta": {"content": "Hi"}}]}
        assert extract_stream_token(f"data: {json.dumps(chunk)}") == "Hi"

    def test_legacy_text(self):
        chunk = {"choices": [{"text": "legacy"}]}
        assert extract_stream_token(f"data: {json.dumps(chunk)}") == "legacy"

    def test_role_only_delta_has_no_token(self):
        chunk = {"choices": [{"delta": {"role": "assistant"}}]}
        assert extract_stream_token(f"data: {json.dumps(chunk)}") is None

    def test_done_sentinel(self):
        assert extract_stream_token("data: [DONE]") is None

    def test_data_before_done_is_kept(self):
        chunk = {"choices": [{"delta": {"content": "last"}}]}
        assert extract_stream_token(f"data: {json.dumps(chunk)}\ndata: [DONE]") == "last"

    def test_comment_and_other_fields_ignored(self):
        chunk = {"choices": [{"delta": {"content": "x"}}]}
        assert extract_stream_token(f": keep-alive\nid: 7\ndata: {json.dumps(chunk)}") == "x"

    def test_no_space_after_colon(self):
        assert extract_stream_token('data:{"choices":[{"text":"t"}]}') == "t"

    def test_malformed_json_raises(self):
        with pytest.raises(StreamDecodeError):
            extract_stream_token("data: {not json")

    def test_non_object_payload_raises(self):
        with pytest.raises(StreamDecodeError):
            extract_stream_token("data: [1, 2]")

    def test_empty_choices(self):
        assert extract_stream_token('data: {"choices": []}') is None


class TestParseEventBlock:
    def test_named_event(self):
        assert parse_event_block('event: message_delta\ndata: {"delta": "a"}') == ("message_delta", {"delta": "a"})

    def test_default_event_name(self):
        assert parse_event_block('data: {"x": 1}') == ("message", {"x": 1})

    def test_first_event_line_wins(self):
        name, _ = parse_event_block("event: first\nevent: second\ndata: {}")
        assert name == "first"

    def test_multiple_data_lines_joined_by_newline(self):
        block = 'event: conversation\ndata: {"title":\ndata: "two lines"}'
        assert parse_event_block(block) == ("conversation", {"title": "two lines"})

    def test_invalid_json_becomes_empty_object(self):
        assert parse_event_block("event: done\ndata: oops") == ("done", {})

    def test_blank_block(self):
        assert parse_event_block("  ") is None


def test_format_event_frames_json():
    frame = format_event("message_delta", {"delta": "héllo"})
    assert frame == 'event: message_delta\ndata: {"delta": "héllo"}\n\n'.encode("utf-8")
    assert parse_event_block(frame.decode("utf-8").rstrip("\n")) == ("message_delta", {"delta": "héllo"})
