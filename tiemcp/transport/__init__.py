"""传输层

- StdioTransport: 子进程 stdin/stdout (客户端)
- StdioServerTransport: 当前进程 stdin/stdout (服务器)
- MemoryTransport: 进程内互联
- SSETransport: HTTP SSE (实验性)
"""

from .base import (
    MalformedFrameError,
    Transport,
    TransportClosedError,
    TransportError,
    decode_frame,
    encode_frame,
)
from .memory import MemoryTransport, create_memory_transport_pair
from .sse import SSETransport
from .stdio import StdioServerTransport, StdioTransport, StreamTransport

__all__ = [
    "Transport",
    "TransportError",
    "TransportClosedError",
    "MalformedFrameError",
    "encode_frame",
    "decode_frame",
    "StreamTransport",
    "StdioTransport",
    "StdioServerTransport",
    "MemoryTransport",
    "create_memory_transport_pair",
    "SSETransport",
]
