"""pytest 配置"""

import asyncio
import sys
from pathlib import Path

import pytest

# 添加项目根目录和演示能力目录到 Python 路径
ROOT_DIR = Path(__file__).parent.parent
FIXTURES_DIR = Path(__file__).parent / "fixtures"
sys.path.insert(0, str(ROOT_DIR))
sys.path.insert(0, str(FIXTURES_DIR))

from demo_tools import DemoTools, build_demo_server  # noqa: E402

from tiemcp import MCPClient, create_memory_transport_pair  # noqa: E402

DEMO_SERVER_SCRIPT = FIXTURES_DIR / "demo_server.py"


@pytest.fixture
def demo_tools():
    """演示工具实例 (可检查调用计数)"""
    return DemoTools()


@pytest.fixture
def demo_server(demo_tools):
    """注册了演示能力的服务器"""
    return build_demo_server(tools=demo_tools)


@pytest.fixture
async def connect_client():
    """创建通过内存传输连接到服务器的客户端"""
    created = []

    async def factory(server, **kwargs):
        server_transport, client_transport = create_memory_transport_pair()
        serve_task = asyncio.create_task(server.serve(server_transport))
        client = MCPClient(client_transport, **{"timeout": 5.0, **kwargs})
        await client.connect()
        await client.initialize()
        created.append((client, serve_task))
        return client

    yield factory

    for client, serve_task in created:
        await client.disconnect()
        await asyncio.wait_for(serve_task, timeout=5.0)


@pytest.fixture
async def client(demo_server, connect_client):
    """已初始化的客户端"""
    return await connect_client(demo_server)
