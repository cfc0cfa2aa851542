"""Tests for frame reassembly and JSON-RPC message parsing.

Verifies that:
- Frames split across chunks are reassembled exactly once
- Several frames in one chunk come out as separate frames
- Whitespace-only frames are dropped
- Multi-byte UTF-8 characters split across chunks survive
- Malformed lines are dropped (None), never raised
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from mcp_transport import (
    FrameReader,
    IncomingMessage,
    Response,
    encode_frame,
    parse_message,
)


# ============================================================
# FrameReader
# ============================================================


class TestFrameReader:
    def test_single_complete_frame(self):
        reader = FrameReader()
        assert reader.feed(b'{"jsonrpc":"2.0","id":1,"result":1}\n') == [
            '{"jsonrpc":"2.0","id":1,"result":1}'
        ]
        assert reader.pending == b""

    def test_frame_split_across_two_chunks(self):
        """{"jsonrpc":"2 then .0",...}\\n is one frame, produced once."""
        reader = FrameReader()
        assert reader.feed(b'{"jsonrpc":"2') == []
        frames = reader.feed(b'.0","id":1,"result":"ok"}\n')
        assert frames == ['{"jsonrpc":"2.0","id":1,"result":"ok"}']
        assert reader.feed(b"") == []

    def test_frame_split_across_many_chunks(self):
        reader = FrameReader()
        data = encode_frame({"jsonrpc": "2.0", "id": 7, "result": {"x": "y" * 50}})
        frames = []
        for i in range(len(data)):
            frames.extend(reader.feed(data[i:i + 1]))
        assert len(frames) == 1
        assert json.loads(frames[0])["id"] == 7

    def test_two_frames_in_one_chunk(self):
        reader = FrameReader()
        frames = reader.feed(b'{"id":1,"result":1}\n{"id":2,"result":2}\n')
        assert frames == ['{"id":1,"result":1}', '{"id":2,"result":2}']

    def test_trailing_partial_frame_is_kept(self):
        reader = FrameReader()
        assert reader.feed(b'{"id":1,"result":1}\n{"id":2,') == ['{"id":1,"result":1}']
        assert reader.pending == b'{"id":2,'
        assert reader.feed(b'"result":2}\n') == ['{"id":2,"result":2}']

    def test_blank_frames_dropped(self):
        reader = FrameReader()
        assert reader.feed(b"\n   \n\t\n{\"id\":1,\"result\":1}\n\n") == ['{"id":1,"result":1}']

    def test_crlf_frames(self):
        reader = FrameReader()
        frames = reader.feed(b'{"id":1,"result":1}\r\n')
        assert len(frames) == 1
        assert json.loads(frames[0]) == {"id": 1, "result": 1}

    def test_multibyte_character_split_across_chunks(self):
        reader = FrameReader()
        data = '{"id":1,"result":"héllo ☃"}\n'.encode("utf-8")
        snowman = data.index("☃".encode())
        assert reader.feed(data[:snowman + 1]) == []
        frames = reader.feed(data[snowman + 1:])
        assert json.loads(frames[0])["result"] == "héllo ☃"


# ============================================================
# encode_frame
# ============================================================


class TestEncodeFrame:
    def test_newline_terminated_single_line(self):
        data = encode_frame({"jsonrpc": "2.0", "method": "x", "params": {"text": "a\nb"}})
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert json.loads(data) == {"jsonrpc": "2.0", "method": "x", "params": {"text": "a\nb"}}


# ============================================================
# parse_message
# ============================================================


class TestParseMessage:
    def test_success_response(self):
        msg = parse_message('{"jsonrpc":"2.0","id":3,"result":{"a":1}}')
        assert isinstance(msg, Response)
        assert msg.id == 3
        assert msg.result == {"a": 1}
        assert not msg.is_error

    def test_error_response(self):
        msg = parse_message('{"jsonrpc":"2.0","id":4,"error":{"code":-1,"message":"bad"}}')
        assert isinstance(msg, Response)
        assert msg.is_error
        assert msg.error["message"] == "bad"

    def test_null_result_is_a_response(self):
        msg = parse_message('{"jsonrpc":"2.0","id":5,"result":null}')
        assert isinstance(msg, Response)
        assert msg.result is None
        assert not msg.is_error

    def test_worker_request(self):
        msg = parse_message('{"jsonrpc":"2.0","id":"s1","method":"ping"}')
        assert isinstance(msg, IncomingMessage)
        assert msg.method == "ping"
        assert msg.id == "s1"

    def test_worker_notification(self):
        msg = parse_message('{"jsonrpc":"2.0","method":"notifications/message","params":{"data":"hi"}}')
        assert isinstance(msg, IncomingMessage)
        assert msg.id is None
        assert msg.params == {"data": "hi"}

    @pytest.mark.parametrize("frame", [
        "not json at all",
        '{"jsonrpc":"2.0","id":1,"result":',
        "[1, 2, 3]",
        '"just a string"',
        '{"jsonrpc":"2.0","id":1}',
        '{"jsonrpc":"2.0","result":1}',
        '{"jsonrpc":"2.0","id":true,"result":1}',
        '{"jsonrpc":"2.0","id":[1],"result":1}',
    ])
    def test_malformed_frames_dropped(self, frame, capsys):
        assert parse_message(frame) is None
        assert "[bridge] Dropping" in capsys.readouterr().err
