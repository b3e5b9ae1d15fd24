"""stdio 集成测试

以子进程方式启动演示服务器，通过真实的 stdin/stdout 通信。
"""

import asyncio
import shlex
import sys
from pathlib import Path

import pytest

from tiemcp import MCPClient
from tiemcp.cli import main

DEMO_SERVER_SCRIPT = Path(__file__).resolve().parent.parent / "fixtures" / "demo_server.py"


@pytest.fixture
async def stdio_client():
    """连接到演示 stdio 服务器的客户端"""
    client = MCPClient(command=sys.executable, args=[str(DEMO_SERVER_SCRIPT)], timeout=15.0)
    await client.connect()
    await client.initialize()
    yield client
    await client.disconnect()


class TestStdioServer:
    """stdio 服务器端到端测试"""

    @pytest.mark.asyncio
    async def test_handshake(self, stdio_client):
        assert stdio_client.server_info.name == "demo"
        assert await stdio_client.ping() == {}

    @pytest.mark.asyncio
    async def test_list_tools(self, stdio_client):
        tools = {tool.name: tool for tool in await stdio_client.list_tools()}
        assert {"echo", "generate-hash", "add_complex"} <= set(tools)
        assert tools["echo"].inputSchema["required"] == ["input"]

    @pytest.mark.asyncio
    async def test_echo_and_hash(self, stdio_client):
        result = await stdio_client.call_tool("echo", {"input": "你好"})
        assert result.get_text() == "你好"

        result = await stdio_client.call_tool("generate-hash", {"input": "test", "algorithm": "MD5"})
        assert result.get_text() == "098f6bcd4621d373cade4e832627b4f6"

    @pytest.mark.asyncio
    async def test_errors_are_results(self, stdio_client):
        result = await stdio_client.call_tool("throw_exception")
        assert result.isError is True
        assert result.get_text() == "boom"

        result = await stdio_client.call_tool("echo", {})
        assert result.isError is True

    @pytest.mark.asyncio
    async def test_concurrent_calls(self, stdio_client):
        messages = [f"Message {i}" for i in range(10)]
        results = await asyncio.gather(
            *(stdio_client.call_tool("slow_echo", {"input": m}) for m in messages)
        )
        assert [r.get_text() for r in results] == messages

    @pytest.mark.asyncio
    async def test_large_payload(self, stdio_client):
        payload = "x" * (256 * 1024)
        result = await stdio_client.call_tool("echo", {"input": payload})
        assert len(result.get_text()) == len(payload)

    @pytest.mark.asyncio
    async def test_read_resource(self, stdio_client):
        result = await stdio_client.read_resource("test://binary")
        assert result.contents[0].blob == "AAEC"

    @pytest.mark.asyncio
    async def test_disconnect_stops_server(self):
        client = MCPClient(command=sys.executable, args=[str(DEMO_SERVER_SCRIPT)], timeout=15.0)
        await client.connect()
        await client.initialize()
        process = client.transport._process

        await client.disconnect()
        assert process.returncode is not None
        assert not client.is_connected


def test_cli_call(capsys):
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(DEMO_SERVER_SCRIPT))}"
    exit_code = main(["--command", command, "call", "echo", "--args", '{"input": "hello"}'])

    assert exit_code == 0
    assert "hello" in capsys.readouterr().out


def test_cli_error_exit_code(capsys):
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(DEMO_SERVER_SCRIPT))}"
    assert main(["--command", command, "call", "throw_exception"]) == 1
