"""
tiemcp - MCP (Model Context Protocol) 运行时

宿主进程把函数声明为工具、提示、资源，通过成帧的双向通道提供给调用方
(通常是模型驱动的 Agent)。包含服务器、客户端、stdio/SSE/内存传输，
以及统一的内容与结果模型。
"""

__version__ = "0.1.0"

from .client import (
    MCPClient,
    MCPClientError,
    MCPClientManager,
    MCPServerError,
    RequestTimeoutError,
)
from .config import MCPConfig, ServerConfig, configure_logging
from .content import (
    AudioContent,
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    MixedContentBuilder,
    ResourceContents,
    TextContent,
    VideoContent,
)
from .handlers import PromptHandler, ResourceHandler, ToolHandler
from .protocol import GetPromptResult, MCPError, PromptMessage, ReadResourceResult
from .registry import (
    Capability,
    CapabilityCatalog,
    CapabilityKind,
    CapabilityRegistry,
    RegistrationError,
    parameter,
    prompt,
    resource,
    tool,
)
from .server import MCPServer
from .transport import (
    MalformedFrameError,
    MemoryTransport,
    SSETransport,
    StdioServerTransport,
    StdioTransport,
    Transport,
    TransportClosedError,
    TransportError,
    create_memory_transport_pair,
)

__all__ = [
    # Content
    "TextContent",
    "ImageContent",
    "AudioContent",
    "VideoContent",
    "EmbeddedResource",
    "ResourceContents",
    "CallToolResult",
    "MixedContentBuilder",
    # Protocol
    "GetPromptResult",
    "PromptMessage",
    "ReadResourceResult",
    "MCPError",
    # Registry
    "tool",
    "prompt",
    "resource",
    "parameter",
    "Capability",
    "CapabilityKind",
    "CapabilityRegistry",
    "CapabilityCatalog",
    "RegistrationError",
    # Handlers
    "ToolHandler",
    "PromptHandler",
    "ResourceHandler",
    # Server / Client
    "MCPServer",
    "MCPClient",
    "MCPClientManager",
    "MCPClientError",
    "MCPServerError",
    "RequestTimeoutError",
    # Transport
    "Transport",
    "TransportError",
    "TransportClosedError",
    "MalformedFrameError",
    "StdioTransport",
    "StdioServerTransport",
    "MemoryTransport",
    "SSETransport",
    "create_memory_transport_pair",
    # Config
    "MCPConfig",
    "ServerConfig",
    "configure_logging",
]
