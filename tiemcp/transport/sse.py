"""HTTP SSE 传输 (实验性)

- 入站: GET 请求建立 text/event-stream 长连接，每个 message 事件携带一帧 JSON
- 出站: 每条消息一个 POST 请求

服务器若先发送 endpoint 事件，其 data 即为 POST 地址 (相对于流地址解析)；
否则 POST 到流地址本身。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from .base import (
    MalformedFrameError,
    Message,
    Transport,
    TransportClosedError,
    TransportError,
    decode_frame,
    encode_frame,
    preview,
)

logger = logging.getLogger(__name__)

_EOF = object()


class SSETransport(Transport):
    """HTTP SSE 传输 (实验性，不保证稳定)"""

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        endpoint_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """初始化 SSE 传输

        Args:
            url: 事件流地址
            headers: 附加请求头
            timeout: HTTP 请求超时 (秒)，事件流本身不限时
            endpoint_timeout: 等待 endpoint 事件的最长时间 (秒)
            client: 外部提供的 httpx 客户端 (不会被关闭)
        """
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.endpoint_timeout = endpoint_timeout

        self._client = client
        self._owns_client = client is None
        self._response: Optional[httpx.Response] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._post_url: Optional[str] = None
        self._endpoint_ready = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._eof = False

    @property
    def is_connected(self) -> bool:
        return self._response is not None and not self._closed and not self._eof

    @property
    def post_url(self) -> str:
        return self._post_url or self.url

    async def connect(self) -> None:
        if self.is_connected:
            return

        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout, read=None),
            )

        request = self._client.build_request(
            "GET", self.url, headers={"Accept": "text/event-stream"}
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(f"连接事件流失败: {e}") from e

        if response.status_code >= 400:
            await response.aclose()
            raise TransportError(f"连接事件流失败: HTTP {response.status_code}")

        self._response = response
        self._closed = False
        self._eof = False
        self._reader_task = asyncio.create_task(self._read_events())
        logger.info(f"已连接 SSE 事件流: {self.url}")

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._response is not None:
            await self._response.aclose()
            self._response = None

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

        self._queue.put_nowait(_EOF)
        logger.info("SSE 事件流已断开")

    async def send(self, message: Message) -> None:
        if not self.is_connected or self._client is None:
            raise TransportClosedError("未连接到服务器")

        if not self._endpoint_ready.is_set():
            try:
                await asyncio.wait_for(self._endpoint_ready.wait(), timeout=self.endpoint_timeout)
            except asyncio.TimeoutError:
                logger.debug("未收到 endpoint 事件，POST 到事件流地址")
                self._endpoint_ready.set()

        body = encode_frame(message)
        async with self._write_lock:
            logger.debug(f"POST {self.post_url}: {preview(body)}")
            try:
                response = await self._client.post(
                    self.post_url,
                    content=body.encode("utf-8"),
                    headers={"Content-Type": "application/json"},
                )
            except httpx.HTTPError as e:
                raise TransportError(f"发送消息失败: {e}") from e

        if response.status_code >= 400:
            raise TransportError(f"发送消息失败: HTTP {response.status_code}")

        # 部分服务器直接在 POST 响应中返回结果
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("application/json") and response.content.strip():
            self._enqueue_frame(response.text)

    async def receive(self) -> Dict[str, Any]:
        if self._eof:
            raise TransportClosedError("事件流已关闭")

        item = await self._queue.get()
        if item is _EOF:
            self._eof = True
            raise TransportClosedError("事件流已关闭")
        if isinstance(item, MalformedFrameError):
            raise item
        return item

    def _enqueue_frame(self, data: str) -> None:
        try:
            self._queue.put_nowait(decode_frame(data))
        except MalformedFrameError as e:
            self._queue.put_nowait(e)

    def _dispatch_event(self, event: str, data_lines: List[str]) -> None:
        data = "\n".join(data_lines)
        if event == "endpoint":
            self._post_url = urljoin(self.url, data.strip())
            self._endpoint_ready.set()
            logger.debug(f"SSE endpoint: {self._post_url}")
        elif event == "message":
            logger.debug(f"SSE 接收: {preview(data)}")
            self._enqueue_frame(data)
        else:
            logger.debug(f"忽略 SSE 事件: {event}")

    async def _read_events(self) -> None:
        """解析事件流"""
        event = "message"
        data_lines: List[str] = []

        try:
            async for line in self._response.aiter_lines():
                if not line:
                    if data_lines:
                        self._dispatch_event(event, data_lines)
                    event, data_lines = "message", []
                    continue
                if line.startswith(":"):
                    continue  # 注释/心跳

                field, _, value = line.partition(":")
                if value.startswith(" "):
                    value = value[1:]

                if field == "event":
                    event = value or "message"
                elif field == "data":
                    data_lines.append(value)

            if data_lines:
                self._dispatch_event(event, data_lines)

        except httpx.HTTPError as e:
            logger.warning(f"SSE 事件流中断: {e}")
        finally:
            self._queue.put_nowait(_EOF)
