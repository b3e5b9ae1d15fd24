"""MCP 客户端单元测试"""

import asyncio

import pytest

from tiemcp.client import (
    PERMISSION_DENIED_MESSAGE,
    MCPClient,
    MCPClientError,
    MCPClientManager,
    MCPServerError,
    RequestTimeoutError,
)
from tiemcp.config import MCPConfig, ServerConfig
from tiemcp.content import CallToolResult
from tiemcp.transport import TransportClosedError, create_memory_transport_pair


class FakeServer:
    """手动控制响应的对端"""

    def __init__(self):
        self.client_transport = None
        self.transport, self.client_transport = create_memory_transport_pair()

    async def next_request(self):
        return await asyncio.wait_for(self.transport.receive(), timeout=5)

    async def reply(self, request_id, result):
        await self.transport.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def handshake(self, client):
        """完成 initialize 握手"""
        init_task = asyncio.create_task(client.initialize())
        request = await self.next_request()
        await self.reply(
            request["id"],
            {
                "protocolVersion": "2025-03-26",
                "capabilities": {},
                "serverInfo": {"name": "fake", "version": "0.0.1"},
            },
        )
        await init_task
        notification = await self.next_request()
        assert notification["method"] == "notifications/initialized"


@pytest.fixture
async def fake():
    server = FakeServer()
    client = MCPClient(server.client_transport, timeout=5.0)
    await client.connect()
    await server.handshake(client)
    yield server, client
    await client.disconnect()


class TestConstruction:
    def test_requires_transport_source(self):
        with pytest.raises(ValueError):
            MCPClient()

    def test_from_config_stdio(self):
        config = MCPConfig(timeout=12.0)
        client = MCPClient.from_config(ServerConfig(command="python", args=["s.py"]), config)
        assert client.transport.command == "python"
        assert client._timeout == 12.0

    def test_from_config_sse(self):
        client = MCPClient.from_config(ServerConfig(url="http://localhost:1/sse", timeout=3))
        assert client.transport.url == "http://localhost:1/sse"
        assert client._timeout == 3


class TestCapabilities:
    """通过内存传输与演示服务器交互"""

    @pytest.mark.asyncio
    async def test_initialize(self, client):
        assert client.is_initialized
        assert client.server_info.name == "demo"
        assert client.instructions == "Demo server for tests"
        assert client.server_capabilities.tools.listChanged is True

    @pytest.mark.asyncio
    async def test_ping(self, client):
        assert await client.ping() == {}

    @pytest.mark.asyncio
    async def test_list_and_call_tool(self, client):
        tools = await client.list_tools()
        assert "echo" in {tool.name for tool in tools}
        assert "echo" in client.tools

        result = await client.call_tool("echo", {"input": "hello"})
        assert result.isError is False
        assert result.get_text() == "hello"

    @pytest.mark.asyncio
    async def test_hash(self, client):
        result = await client.call_tool("generate-hash", {"input": "test", "algorithm": "MD5"})
        assert result.get_text() == "098f6bcd4621d373cade4e832627b4f6"

    @pytest.mark.asyncio
    async def test_fault_containment(self, client):
        result = await client.call_tool("throw_exception")
        assert result.isError is True
        assert result.get_text() == "boom"

        # 服务器仍然可用
        assert await client.ping() == {}

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, client):
        result = await client.call_tool("echo", {})
        assert result.isError is True

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_leak(self, client):
        """测试 10 个并发调用各自得到自己的结果"""
        messages = [f"Message {i}" for i in range(10)]
        results = await asyncio.gather(
            *(client.call_tool("slow_echo", {"input": m, "delay": 0.01 * (10 - i)}) for i, m in enumerate(messages))
        )

        assert [r.get_text() for r in results] == messages
        assert all(not r.isError for r in results)
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_prompts(self, client):
        prompts = await client.list_prompts()
        assert "greet" in {p.name for p in prompts}

        result = await client.get_prompt("greet", {"name": "Ann"})
        assert result.messages[0].content.text == "Hello, Ann! How can I help?"

    @pytest.mark.asyncio
    async def test_unknown_prompt_raises_server_error(self, client):
        with pytest.raises(MCPServerError) as exc_info:
            await client.get_prompt("nope")
        assert exc_info.value.code == -32602

    @pytest.mark.asyncio
    async def test_resources(self, client):
        resources = await client.list_resources()
        templates = await client.list_resource_templates()
        assert "test://static" in {r.uri for r in resources}
        assert templates[0].uriTemplate == "test://{name}"

        result = await client.read_resource("test://world")
        assert result.contents[0].text == "Hello, world"

    @pytest.mark.asyncio
    async def test_list_changed_notification(self, demo_server, client):
        """测试初始化后注册新工具时客户端收到通知"""
        changed = asyncio.Event()
        client.on_notification("notifications/tools/list_changed", lambda params: changed.set())

        # ping 返回时服务器已处理 initialized 通知
        await client.ping()

        @demo_server.tool
        def late_tool() -> str:
            return "late"

        await asyncio.wait_for(changed.wait(), timeout=5)
        tools = await client.list_tools()
        assert "late_tool" in {tool.name for tool in tools}

    @pytest.mark.asyncio
    async def test_requires_initialize(self, demo_server):
        _, client_transport = create_memory_transport_pair()
        client = MCPClient(client_transport)
        with pytest.raises(MCPClientError):
            await client.list_tools()


class TestPermissionGate:
    """权限检查"""

    @pytest.mark.asyncio
    async def test_denied_call_is_not_executed(self, demo_server, demo_tools, connect_client):
        """测试权限拒绝时返回固定错误，工具不执行"""
        asked = []

        def deny(name, arguments):
            asked.append((name, arguments))
            return False

        client = await connect_client(demo_server, permission_callback=deny)
        result = await client.call_tool("count", {})

        assert result.isError is True
        assert result.get_text() == PERMISSION_DENIED_MESSAGE == "Permission Denied."
        assert demo_tools.calls == 0
        assert asked == [("count", {})]

    @pytest.mark.asyncio
    async def test_async_gate_allows(self, demo_server, demo_tools, connect_client):
        async def allow(name, arguments):
            return name == "count"

        client = await connect_client(demo_server, permission_callback=allow)
        result = await client.call_tool("count")

        assert result.get_text() == "1"
        assert demo_tools.calls == 1


class TestCorrelation:
    """请求关联"""

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, fake):
        server, client = fake

        first = asyncio.create_task(client._send_request("a"))
        second = asyncio.create_task(client._send_request("b"))
        req_a = await server.next_request()
        req_b = await server.next_request()

        await server.reply(req_b["id"], {"value": "b"})
        await server.reply(req_a["id"], {"value": "a"})

        assert await first == {"value": "a"}
        assert await second == {"value": "b"}

    @pytest.mark.asyncio
    async def test_timeout_removes_pending_and_discards_late_response(self, fake):
        server, client = fake

        with pytest.raises(RequestTimeoutError):
            await client._send_request("slow", timeout=0.05)
        assert client.pending_count == 0

        request = await server.next_request()
        cancelled = await server.next_request()
        assert cancelled["method"] == "notifications/cancelled"
        assert cancelled["params"]["requestId"] == request["id"]

        # 迟到的响应被丢弃，之后的请求正常
        await server.reply(request["id"], {"late": True})
        ping = asyncio.create_task(client.ping())
        ping_request = await server.next_request()
        await server.reply(ping_request["id"], {})
        assert await ping == {}

    @pytest.mark.asyncio
    async def test_timeout_is_builtin_timeout(self, fake):
        _, client = fake
        with pytest.raises(TimeoutError):
            await client._send_request("slow", timeout=0.01)

    @pytest.mark.asyncio
    async def test_server_error_response(self, fake):
        server, client = fake
        task = asyncio.create_task(client._send_request("x"))
        request = await server.next_request()
        await server.transport.send(
            {"jsonrpc": "2.0", "id": request["id"], "error": {"code": -32601, "message": "nope"}}
        )
        with pytest.raises(MCPServerError) as exc_info:
            await task
        assert exc_info.value.code == -32601
        assert exc_info.value.message == "nope"

    @pytest.mark.asyncio
    async def test_server_error_becomes_error_result_for_tools(self, fake):
        server, client = fake
        task = asyncio.create_task(client.call_tool("t", {"a": 1}))
        request = await server.next_request()
        assert request["params"] == {"name": "t", "arguments": {"a": 1}}
        await server.transport.send(
            {"jsonrpc": "2.0", "id": request["id"], "error": {"code": -32602, "message": "bad"}}
        )
        result = await task
        assert result == CallToolResult.error("bad")

    @pytest.mark.asyncio
    async def test_answers_server_ping(self, fake):
        server, _ = fake
        await server.transport.send({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
        response = await server.next_request()
        assert response == {"jsonrpc": "2.0", "id": "srv-1", "result": {}}

    @pytest.mark.asyncio
    async def test_notifications_routed(self, fake):
        server, client = fake
        received = asyncio.Queue()

        @client.on_notification("notifications/message")
        async def on_message(params):
            await received.put(params)

        await server.transport.send(
            {"jsonrpc": "2.0", "method": "notifications/message", "params": {"text": "hi"}}
        )
        assert await asyncio.wait_for(received.get(), timeout=5) == {"text": "hi"}


class TestDisposal:
    """关闭与连接断开"""

    @pytest.mark.asyncio
    async def test_disconnect_fails_in_flight_request(self, fake):
        """测试关闭时未完成请求以 TransportClosedError 结束"""
        server, client = fake
        task = asyncio.create_task(client._send_request("never", timeout=30))
        await server.next_request()

        await client.disconnect()
        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(task, timeout=2)
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_peer_close_fails_in_flight_request(self, fake):
        server, client = fake
        task = asyncio.create_task(client._send_request("never", timeout=30))
        await server.next_request()

        await server.transport.disconnect()
        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(task, timeout=2)
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_request_after_close(self, fake):
        _, client = fake
        await client.close()
        with pytest.raises(TransportClosedError):
            await client.ping()


class TestClientManager:
    """客户端管理器"""

    @pytest.mark.asyncio
    async def test_add_and_call(self, demo_server):
        server_transport, client_transport = create_memory_transport_pair()
        serve_task = asyncio.create_task(demo_server.serve(server_transport))

        async with MCPClientManager() as manager:
            await manager.add_client("demo", MCPClient(client_transport, timeout=5))
            assert "demo:echo" in manager.get_all_tools()

            result = await manager.call_tool("demo", "echo", {"input": "x"})
            assert result.get_text() == "x"

            with pytest.raises(MCPClientError):
                await manager.call_tool("missing", "echo")

        assert manager.clients == {}
        await asyncio.wait_for(serve_task, timeout=5)
