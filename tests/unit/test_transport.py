"""传输层单元测试"""

import asyncio
import json

import pytest

from tiemcp.protocol import JSONRPCRequest
from tiemcp.transport import (
    MalformedFrameError,
    StdioTransport,
    StreamTransport,
    TransportClosedError,
    TransportError,
    create_memory_transport_pair,
    decode_frame,
    encode_frame,
)
from tiemcp.transport.stdio import get_default_environment


class FakeWriter:
    """记录写入内容的写端"""

    def __init__(self):
        self.data = bytearray()
        self.closed = False

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def make_stream(*chunks, eof=True):
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    writer = FakeWriter()
    return StreamTransport(reader, writer), writer


class TestFrames:
    """帧编解码"""

    def test_encode_compact_single_line(self):
        frame = encode_frame({"a": "中文", "b": [1, 2]})
        assert frame == '{"a":"中文","b":[1,2]}'
        assert "\n" not in frame

    def test_encode_model_excludes_none(self):
        frame = encode_frame(JSONRPCRequest(id=1, method="ping"))
        assert json.loads(frame) == {"jsonrpc": "2.0", "id": 1, "method": "ping"}

    def test_decode_rejects_non_object(self):
        with pytest.raises(MalformedFrameError):
            decode_frame("[1, 2]")
        with pytest.raises(MalformedFrameError):
            decode_frame("{oops")


class TestStreamTransport:
    """按行分帧的流传输"""

    @pytest.mark.asyncio
    async def test_receive_skips_blank_lines(self):
        transport, _ = make_stream(b'\n{"id":1}\n\n{"id":2}\n')
        await transport.connect()

        assert await transport.receive() == {"id": 1}
        assert await transport.receive() == {"id": 2}
        with pytest.raises(TransportClosedError):
            await transport.receive()

    @pytest.mark.asyncio
    async def test_frame_split_across_chunks(self):
        transport, _ = make_stream(b'{"method":', b'"ping"}\n')
        assert await transport.receive() == {"method": "ping"}

    @pytest.mark.asyncio
    async def test_last_frame_without_newline(self):
        transport, _ = make_stream(b'{"id":7}')
        assert await transport.receive() == {"id": 7}
        with pytest.raises(TransportClosedError):
            await transport.receive()

    @pytest.mark.asyncio
    async def test_malformed_line_does_not_end_stream(self):
        """测试无法解析的行之后仍可继续读取"""
        transport, _ = make_stream(b"not json\n{\"id\":1}\n")
        with pytest.raises(MalformedFrameError):
            await transport.receive()
        assert await transport.receive() == {"id": 1}

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_malformed(self):
        """测试非法 UTF-8 字节报告为无法解析的帧，而不是被替换"""
        transport, _ = make_stream(b'{"text":"\xff\xfe"}\n{"id":2}\n')
        with pytest.raises(MalformedFrameError):
            await transport.receive()
        assert await transport.receive() == {"id": 2}

    @pytest.mark.asyncio
    async def test_large_frame(self):
        payload = "x" * (200 * 1024)
        transport, _ = make_stream(json.dumps({"data": payload}).encode() + b"\n")
        message = await transport.receive()
        assert len(message["data"]) == len(payload)

    @pytest.mark.asyncio
    async def test_send_writes_one_line_per_message(self):
        transport, writer = make_stream(eof=False)
        await transport.send({"id": 1})
        await transport.send(JSONRPCRequest(id=2, method="ping"))

        lines = writer.data.decode().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["method"] == "ping"

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_interleave(self):
        transport, writer = make_stream(eof=False)
        await asyncio.gather(*(transport.send({"id": i, "text": "y" * 1000}) for i in range(20)))

        lines = writer.data.decode().splitlines()
        assert sorted(json.loads(line)["id"] for line in lines) == list(range(20))

    @pytest.mark.asyncio
    async def test_send_after_close(self):
        transport, writer = make_stream(eof=False)
        await transport.close()
        assert writer.closed
        with pytest.raises(TransportClosedError):
            await transport.send({"id": 1})

    @pytest.mark.asyncio
    async def test_connect_without_streams(self):
        with pytest.raises(TransportError):
            await StreamTransport().connect()


class TestMemoryTransport:
    """内存传输"""

    @pytest.mark.asyncio
    async def test_pair_exchanges_messages(self):
        server, client = create_memory_transport_pair()
        await client.send({"id": 1, "method": "ping"})
        assert await server.receive() == {"id": 1, "method": "ping"}

        await server.send({"id": 1, "result": {}})
        assert await client.receive() == {"id": 1, "result": {}}

    @pytest.mark.asyncio
    async def test_close_is_seen_by_peer(self):
        server, client = create_memory_transport_pair()
        await client.close()

        assert not client.is_connected
        with pytest.raises(TransportClosedError):
            await server.receive()
        with pytest.raises(TransportClosedError):
            await client.send({"id": 1})

    @pytest.mark.asyncio
    async def test_close_wakes_pending_receive(self):
        server, _ = create_memory_transport_pair()
        pending = asyncio.create_task(server.receive())
        await asyncio.sleep(0)

        await server.disconnect()
        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(pending, timeout=2)


class TestStdioTransport:
    """子进程传输"""

    def test_default_environment_is_filtered(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        monkeypatch.setenv("SECRET_TOKEN", "x")
        env = get_default_environment()
        assert env["PATH"] == "/usr/bin"
        assert "SECRET_TOKEN" not in env

    def test_env_merged_with_defaults(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        transport = StdioTransport("server", env={"EXTRA": "1"})
        assert transport.env["EXTRA"] == "1"
        assert transport.env["PATH"] == "/usr/bin"

    @pytest.mark.asyncio
    async def test_missing_command(self):
        transport = StdioTransport("/nonexistent/tiemcp-server-binary")
        with pytest.raises(TransportError):
            await transport.connect()
        assert not transport.is_connected
