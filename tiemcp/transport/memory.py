"""进程内传输

一对互联的内存传输，用于在同一进程内托管服务器 (以及测试)。
消息仍会被编码为 JSON 文本，与真实传输的行为保持一致。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Tuple

from .base import Message, Transport, TransportClosedError, decode_frame, encode_frame, preview

logger = logging.getLogger(__name__)

# 关闭标记
_EOF = object()


class MemoryTransport(Transport):
    """内存传输 (一端)"""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, name: str = "memory"):
        self.name = name
        self._inbox = inbox
        self._outbox = outbox
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._eof = False

    @property
    def is_connected(self) -> bool:
        return not self._closed and not self._eof

    async def connect(self) -> None:
        if self._closed:
            raise TransportClosedError(f"{self.name}: 传输已关闭，不能重新连接")

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        # 通知对端 EOF，同时唤醒本端阻塞中的读取
        self._outbox.put_nowait(_EOF)
        self._inbox.put_nowait(_EOF)

    async def send(self, message: Message) -> None:
        if not self.is_connected:
            raise TransportClosedError(f"{self.name}: 传输已关闭")

        frame = encode_frame(message)
        async with self._write_lock:
            logger.debug(f"{self.name} 发送: {preview(frame)}")
            await self._outbox.put(frame)

    async def receive(self) -> Dict[str, Any]:
        if self._eof:
            raise TransportClosedError(f"{self.name}: 连接已关闭")

        frame = await self._inbox.get()
        if frame is _EOF:
            self._eof = True
            raise TransportClosedError(f"{self.name}: 连接已关闭")

        logger.debug(f"{self.name} 接收: {preview(frame)}")
        return decode_frame(frame)


def create_memory_transport_pair() -> Tuple[MemoryTransport, MemoryTransport]:
    """创建一对互联的内存传输

    Returns:
        (服务器端, 客户端)
    """
    client_to_server: asyncio.Queue = asyncio.Queue()
    server_to_client: asyncio.Queue = asyncio.Queue()
    server = MemoryTransport(client_to_server, server_to_client, name="server")
    client = MemoryTransport(server_to_client, client_to_server, name="client")
    return server, client
