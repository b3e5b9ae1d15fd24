"""MCP 协议类型定义

基于 JSON-RPC 2.0 和 MCP 规范实现。
参考: https://modelcontextprotocol.io/specification/
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .content import (
    AudioContent,
    EmbeddedResource,
    ImageContent,
    ResourceContents,
    TextContent,
)

# =============================================================================
# JSON-RPC 2.0 基础类型
# =============================================================================


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 请求"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int]
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 通知 (无 id)"""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 错误"""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 响应"""

    jsonrpc: Literal["2.0"] = "2.0"
    id: Union[str, int, None] = None
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None


# 标准错误码
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# MCP 扩展错误码
RESOURCE_NOT_FOUND = -32002


class MCPError(Exception):
    """协议层错误，会被转换为 JSON-RPC 错误响应"""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_error(self) -> JSONRPCError:
        return JSONRPCError(code=self.code, message=self.message, data=self.data)


def success_response(request_id: Union[str, int, None], result: Any) -> Dict[str, Any]:
    """构建成功响应"""
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_response(
    request_id: Union[str, int, None],
    code: int,
    message: str,
    data: Any = None,
) -> Dict[str, Any]:
    """构建错误响应"""
    error = JSONRPCError(code=code, message=message, data=data)
    return {"jsonrpc": "2.0", "id": request_id, "error": error.model_dump(exclude_none=True)}


# =============================================================================
# MCP 方法名
# =============================================================================

METHOD_INITIALIZE = "initialize"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"
METHOD_PROMPTS_LIST = "prompts/list"
METHOD_PROMPTS_GET = "prompts/get"
METHOD_RESOURCES_LIST = "resources/list"
METHOD_RESOURCE_TEMPLATES_LIST = "resources/templates/list"
METHOD_RESOURCES_READ = "resources/read"

NOTIFICATION_INITIALIZED = "notifications/initialized"
NOTIFICATION_CANCELLED = "notifications/cancelled"
NOTIFICATION_TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
NOTIFICATION_PROMPTS_LIST_CHANGED = "notifications/prompts/list_changed"
NOTIFICATION_RESOURCES_LIST_CHANGED = "notifications/resources/list_changed"


# =============================================================================
# MCP 协议版本
# =============================================================================

LATEST_PROTOCOL_VERSION = "2025-03-26"

SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26")


# =============================================================================
# MCP 实现信息
# =============================================================================


class Implementation(BaseModel):
    """客户端/服务器实现信息"""

    name: str
    version: str


# =============================================================================
# MCP 能力 (Capabilities)
# =============================================================================


class ToolsCapability(BaseModel):
    """工具能力"""

    listChanged: bool = False


class ResourcesCapability(BaseModel):
    """资源能力"""

    subscribe: bool = False
    listChanged: bool = False


class PromptsCapability(BaseModel):
    """提示能力"""

    listChanged: bool = False


class ClientCapabilities(BaseModel):
    """客户端能力"""

    experimental: Optional[Dict[str, Any]] = None


class ServerCapabilities(BaseModel):
    """服务器能力"""

    tools: Optional[ToolsCapability] = None
    resources: Optional[ResourcesCapability] = None
    prompts: Optional[PromptsCapability] = None
    experimental: Optional[Dict[str, Any]] = None


# =============================================================================
# MCP 初始化
# =============================================================================


class InitializeParams(BaseModel):
    """初始化请求参数"""

    protocolVersion: str = LATEST_PROTOCOL_VERSION
    capabilities: ClientCapabilities = Field(default_factory=ClientCapabilities)
    clientInfo: Implementation


class InitializeResult(BaseModel):
    """初始化响应结果"""

    protocolVersion: str
    capabilities: ServerCapabilities
    serverInfo: Implementation
    instructions: Optional[str] = None


# =============================================================================
# MCP 工具类型
# =============================================================================


class MCPTool(BaseModel):
    """MCP 工具定义"""

    name: str
    description: Optional[str] = None
    inputSchema: Dict[str, Any] = Field(
        default_factory=lambda: {
            "type": "object",
            "properties": {},
        }
    )
    title: Optional[str] = None


class ListToolsResult(BaseModel):
    """工具列表响应"""

    tools: List[MCPTool]
    nextCursor: Optional[str] = None


class MCPToolCall(BaseModel):
    """工具调用参数"""

    name: str
    arguments: Optional[Dict[str, Any]] = None


# =============================================================================
# MCP 资源类型
# =============================================================================


class MCPResource(BaseModel):
    """MCP 资源定义"""

    uri: str
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    mimeType: Optional[str] = None


class MCPResourceTemplate(BaseModel):
    """MCP 资源模板 (URI 含 {参数})"""

    uriTemplate: str
    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    mimeType: Optional[str] = None


class ListResourcesResult(BaseModel):
    """资源列表响应"""

    resources: List[MCPResource]
    nextCursor: Optional[str] = None


class ListResourceTemplatesResult(BaseModel):
    """资源模板列表响应"""

    resourceTemplates: List[MCPResourceTemplate]
    nextCursor: Optional[str] = None


class ReadResourceResult(BaseModel):
    """资源读取响应"""

    contents: List[ResourceContents] = Field(default_factory=list)


# =============================================================================
# MCP 提示类型
# =============================================================================


class MCPPromptArgument(BaseModel):
    """提示参数"""

    name: str
    description: Optional[str] = None
    required: bool = False


class MCPPrompt(BaseModel):
    """MCP 提示定义"""

    name: str
    title: Optional[str] = None
    description: Optional[str] = None
    arguments: Optional[List[MCPPromptArgument]] = None


class ListPromptsResult(BaseModel):
    """提示列表响应"""

    prompts: List[MCPPrompt]
    nextCursor: Optional[str] = None


class PromptMessage(BaseModel):
    """提示消息"""

    role: Literal["user", "assistant"] = "user"
    content: Union[TextContent, ImageContent, AudioContent, EmbeddedResource] = Field(
        discriminator="type"
    )


class GetPromptResult(BaseModel):
    """提示获取响应"""

    description: Optional[str] = None
    messages: List[PromptMessage] = Field(default_factory=list)
