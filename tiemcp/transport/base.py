"""传输层抽象

一个传输对象恰好暴露一个读端和一个写端：
- 读端只能由一个读取循环消费
- 写端在内部串行化，保证一帧完整写出后才写下一帧
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Message = Union[BaseModel, Dict[str, Any]]


class TransportError(Exception):
    """传输层错误"""

    pass


class TransportClosedError(TransportError):
    """传输已关闭 (EOF 或连接断开)"""

    pass


class MalformedFrameError(TransportError):
    """无法解析的消息帧"""

    pass


def encode_frame(message: Message) -> str:
    """将消息编码为单行 JSON"""
    if isinstance(message, BaseModel):
        data = message.model_dump(mode="json", exclude_none=True)
    else:
        data = message
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def decode_frame(frame: Union[str, bytes]) -> Dict[str, Any]:
    """将一帧 JSON 解码为消息字典"""
    try:
        data = json.loads(frame)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedFrameError(f"JSON 解析失败: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrameError(f"消息必须是 JSON 对象，收到 {type(data).__name__}")
    return data


def preview(text: str, limit: int = 200) -> str:
    """截断日志中的消息内容"""
    return text if len(text) <= limit else text[:limit] + "..."


class Transport(ABC):
    """传输层抽象基类"""

    @abstractmethod
    async def connect(self) -> None:
        """建立连接"""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """断开连接"""
        pass

    @abstractmethod
    async def send(self, message: Message) -> None:
        """发送一帧消息"""
        pass

    @abstractmethod
    async def receive(self) -> Dict[str, Any]:
        """接收一帧消息

        Raises:
            TransportClosedError: 对端关闭或连接断开
            MalformedFrameError: 收到无法解析的帧 (连接仍可继续使用)
        """
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """是否已连接"""
        pass

    async def close(self) -> None:
        """关闭传输，等同于 disconnect()"""
        await self.disconnect()

    async def __aenter__(self) -> "Transport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()
