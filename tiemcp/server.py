"""MCP 服务器

在一个传输上运行读取循环，把请求分派给工具、提示、资源处理器并写回响应。

使用示例:
    server = MCPServer("demo")

    @server.tool
    def echo(input: str) -> str:
        '''回显输入'''
        return input

    server.run()  # 通过 stdin/stdout 提供服务
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ValidationError

from .config import configure_logging
from .content import CallToolResult
from .handlers import PromptHandler, ResourceHandler, ToolHandler, fault_message
from .protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_INITIALIZE,
    METHOD_NOT_FOUND,
    METHOD_PING,
    METHOD_PROMPTS_GET,
    METHOD_PROMPTS_LIST,
    METHOD_RESOURCE_TEMPLATES_LIST,
    METHOD_RESOURCES_LIST,
    METHOD_RESOURCES_READ,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    NOTIFICATION_CANCELLED,
    NOTIFICATION_INITIALIZED,
    NOTIFICATION_PROMPTS_LIST_CHANGED,
    NOTIFICATION_RESOURCES_LIST_CHANGED,
    NOTIFICATION_TOOLS_LIST_CHANGED,
    PARSE_ERROR,
    RESOURCE_NOT_FOUND,
    SUPPORTED_PROTOCOL_VERSIONS,
    GetPromptResult,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCNotification,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    MCPError,
    MCPToolCall,
    PromptsCapability,
    ReadResourceResult,
    ResourcesCapability,
    ServerCapabilities,
    ToolsCapability,
    error_response,
    success_response,
)
from .registry import CapabilityCatalog, CapabilityKind, CapabilityRegistry
from .transport import (
    MalformedFrameError,
    StdioServerTransport,
    Transport,
    TransportClosedError,
    TransportError,
)
from .transport.base import Message

logger = logging.getLogger(__name__)

_LIST_CHANGED_NOTIFICATIONS = {
    CapabilityKind.TOOL: NOTIFICATION_TOOLS_LIST_CHANGED,
    CapabilityKind.PROMPT: NOTIFICATION_PROMPTS_LIST_CHANGED,
    CapabilityKind.RESOURCE: NOTIFICATION_RESOURCES_LIST_CHANGED,
}

RequestHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

# 对端关闭后等待未完成请求的时间 (秒)，超时后取消
SHUTDOWN_GRACE_PERIOD = 2.0


def _is_valid_id(value: Any) -> bool:
    """JSON-RPC id 只能是字符串、整数或 null"""
    if isinstance(value, bool):
        return False
    return value is None or isinstance(value, (str, int))


class MCPServer:
    """MCP 服务器

    每个实例持有自己的能力目录，同一进程内可以同时运行多个服务器。
    """

    def __init__(
        self,
        name: str = "tiemcp",
        version: str = "1.0.0",
        instructions: Optional[str] = None,
        catalog: Optional[CapabilityCatalog] = None,
        shutdown_grace_period: float = SHUTDOWN_GRACE_PERIOD,
    ):
        """初始化服务器

        Args:
            name: 服务器名称 (initialize 响应中的 serverInfo)
            version: 服务器版本
            instructions: 提供给客户端的使用说明
            catalog: 能力目录，默认新建
            shutdown_grace_period: 连接关闭后等待未完成请求的时间 (秒)
        """
        self.name = name
        self.version = version
        self.shutdown_grace_period = shutdown_grace_period
        self.instructions = instructions
        self.catalog = catalog or CapabilityCatalog()

        self.tool_handler = ToolHandler()
        self.prompt_handler = PromptHandler()
        self.resource_handler = ResourceHandler()

        self.client_info: Optional[Implementation] = None
        self.protocol_version = LATEST_PROTOCOL_VERSION
        self._initialized = False

        self._transport: Optional[Transport] = None
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Dict[Any, asyncio.Task] = {}

        for registry in (self.catalog.tools, self.catalog.prompts, self.catalog.resources):
            registry.on_list_changed(self._on_list_changed)

        self._handlers: Dict[str, RequestHandler] = {
            METHOD_INITIALIZE: self._handle_initialize,
            METHOD_PING: self._handle_ping,
            METHOD_TOOLS_LIST: self._handle_list_tools,
            METHOD_TOOLS_CALL: self._handle_call_tool,
            METHOD_PROMPTS_LIST: self._handle_list_prompts,
            METHOD_PROMPTS_GET: self._handle_get_prompt,
            METHOD_RESOURCES_LIST: self._handle_list_resources,
            METHOD_RESOURCE_TEMPLATES_LIST: self._handle_list_resource_templates,
            METHOD_RESOURCES_READ: self._handle_read_resource,
        }

    # =========================================================================
    # 注册
    # =========================================================================

    @property
    def tools(self) -> CapabilityRegistry:
        return self.catalog.tools

    @property
    def prompts(self) -> CapabilityRegistry:
        return self.catalog.prompts

    @property
    def resources(self) -> CapabilityRegistry:
        return self.catalog.resources

    @property
    def is_serving(self) -> bool:
        return self._transport is not None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def tool(self, fn=None, *, name=None, description=None, title=None):
        """注册工具 (装饰器)"""
        return self.tools.register(fn, name=name, description=description, title=title)

    def prompt(self, fn=None, *, name=None, description=None, title=None):
        """注册提示 (装饰器)"""
        return self.prompts.register(fn, name=name, description=description, title=title)

    def resource(self, uri: str, *, name=None, description=None, title=None, mime_type=None):
        """注册资源 (装饰器)"""
        return self.resources.register(
            uri=uri, name=name, description=description, title=title, mime_type=mime_type
        )

    def register_type(self, cls: type, instance: Any = None):
        return self.catalog.register_type(cls, instance)

    def register_module(self, module):
        return self.catalog.register_module(module)

    # =========================================================================
    # 消息分派
    # =========================================================================

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """处理一条消息

        请求返回响应字典，通知返回 None。不会抛出异常。
        """
        method = message.get("method")
        has_id = "id" in message
        request_id = message.get("id")

        if not _is_valid_id(request_id):
            logger.warning(f"无效的请求 id: {request_id!r}")
            return error_response(None, INVALID_REQUEST, "Invalid Request")

        if not isinstance(method, str):
            if has_id and ("result" in message or "error" in message):
                logger.debug(f"忽略未匹配的响应: id={request_id}")
                return None
            return error_response(request_id, INVALID_REQUEST, "Invalid Request")

        params = message.get("params")
        if params is None:
            params = {}

        if not has_id:
            await self._handle_notification(method, params if isinstance(params, dict) else {})
            return None

        if not isinstance(params, dict):
            return error_response(request_id, INVALID_PARAMS, "Invalid params: expected an object")

        handler = self._handlers.get(method)
        if handler is None:
            logger.debug(f"未知方法: {method}")
            return error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            result = await handler(params)
        except MCPError as e:
            return error_response(request_id, e.code, e.message, e.data)
        except ValidationError as e:
            errors = e.errors()
            reason = errors[0]["msg"] if errors else str(e)
            return error_response(request_id, INVALID_PARAMS, f"Invalid params: {reason}")
        except Exception as e:
            logger.exception(f"处理 {method} 失败")
            return error_response(request_id, INTERNAL_ERROR, fault_message(e))

        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json", exclude_none=True)
        return success_response(request_id, result)

    async def _handle_notification(self, method: str, params: Dict[str, Any]) -> None:
        if method == NOTIFICATION_INITIALIZED:
            self._initialized = True
            logger.info("客户端初始化完成")
        elif method == NOTIFICATION_CANCELLED:
            request_id = params.get("requestId")
            if request_id is None or not _is_valid_id(request_id):
                logger.debug(f"忽略无效的取消通知: {request_id!r}")
                return
            task = self._in_flight.get(request_id)
            if task is not None and not task.done():
                task.cancel()
                logger.info(f"请求 {request_id} 已取消: {params.get('reason', '')}")
        else:
            logger.debug(f"忽略通知: {method}")

    # =========================================================================
    # 方法处理
    # =========================================================================

    async def _handle_initialize(self, params: Dict[str, Any]) -> InitializeResult:
        request = InitializeParams.model_validate(params)
        self.client_info = request.clientInfo

        if request.protocolVersion in SUPPORTED_PROTOCOL_VERSIONS:
            self.protocol_version = request.protocolVersion
        else:
            logger.warning(
                f"客户端请求的协议版本 {request.protocolVersion} 不受支持，"
                f"使用 {LATEST_PROTOCOL_VERSION}"
            )
            self.protocol_version = LATEST_PROTOCOL_VERSION

        logger.info(
            f"客户端 {request.clientInfo.name} {request.clientInfo.version} 已连接 "
            f"(协议版本: {self.protocol_version})"
        )

        return InitializeResult(
            protocolVersion=self.protocol_version,
            capabilities=ServerCapabilities(
                tools=ToolsCapability(listChanged=True),
                resources=ResourcesCapability(listChanged=True),
                prompts=PromptsCapability(listChanged=True),
            ),
            serverInfo=Implementation(name=self.name, version=self.version),
            instructions=self.instructions,
        )

    async def _handle_ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _handle_list_tools(self, params: Dict[str, Any]) -> ListToolsResult:
        return ListToolsResult(tools=[capability.to_tool() for capability in self.tools])

    async def _handle_call_tool(self, params: Dict[str, Any]) -> CallToolResult:
        call = MCPToolCall.model_validate(params)
        capability = self.tools.get(call.name)
        if capability is None:
            return CallToolResult.error(f"Unknown tool: '{call.name}'")

        arguments = call.arguments or {}
        missing = capability.missing_arguments(arguments)
        if missing:
            return CallToolResult.error(f"Missing required argument(s): {', '.join(missing)}")

        return await self.tool_handler.invoke(capability, arguments)

    async def _handle_list_prompts(self, params: Dict[str, Any]) -> ListPromptsResult:
        return ListPromptsResult(prompts=[capability.to_prompt() for capability in self.prompts])

    async def _handle_get_prompt(self, params: Dict[str, Any]) -> GetPromptResult:
        name = params.get("name")
        capability = self.prompts.get(name) if isinstance(name, str) else None
        if capability is None:
            raise MCPError(INVALID_PARAMS, f"Unknown prompt: '{name}'")

        arguments = params.get("arguments") or {}
        missing = capability.missing_arguments(arguments)
        if missing:
            raise MCPError(INVALID_PARAMS, f"Missing required argument(s): {', '.join(missing)}")

        return await self.prompt_handler.invoke(capability, arguments)

    async def _handle_list_resources(self, params: Dict[str, Any]) -> ListResourcesResult:
        return ListResourcesResult(
            resources=[c.to_resource() for c in self.resources if not c.is_template]
        )

    async def _handle_list_resource_templates(
        self, params: Dict[str, Any]
    ) -> ListResourceTemplatesResult:
        return ListResourceTemplatesResult(
            resourceTemplates=[c.to_template() for c in self.resources if c.is_template]
        )

    async def _handle_read_resource(self, params: Dict[str, Any]) -> ReadResourceResult:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise MCPError(INVALID_PARAMS, "Invalid params: missing resource uri")

        resolved = self.resources.resolve_uri(uri)
        if resolved is None:
            raise MCPError(RESOURCE_NOT_FOUND, f"Resource not found: {uri}", {"uri": uri})

        capability, template_params = resolved
        return await self.resource_handler.read(capability, uri, template_params)

    # =========================================================================
    # 服务循环
    # =========================================================================

    async def serve(self, transport: Transport) -> None:
        """在传输上提供服务，直到对端关闭

        每个请求在独立任务中处理，慢调用不会阻塞其他请求；
        通知按到达顺序在读取循环中处理。
        """
        if self._transport is not None:
            raise RuntimeError(f"服务器 {self.name} 已在运行")

        if not transport.is_connected:
            await transport.connect()

        self._transport = transport
        cancelled = False
        logger.info(f"MCP 服务器 {self.name} 开始服务")

        try:
            while True:
                try:
                    message = await transport.receive()
                except MalformedFrameError as e:
                    logger.warning(f"收到无法解析的消息: {e}")
                    await self._send(transport, error_response(None, PARSE_ERROR, "Parse error"))
                    continue
                except TransportClosedError:
                    logger.info("连接已关闭")
                    break

                if (
                    "id" in message
                    and isinstance(message.get("method"), str)
                    and _is_valid_id(message["id"])
                ):
                    self._spawn_request(transport, message)
                else:
                    response = await self.handle_message(message)
                    if response is not None:
                        await self._send(transport, response)

        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            tasks = list(self._tasks)
            if tasks and not cancelled:
                # 对端已关闭，响应无法送达，超过宽限期的请求被取消
                _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace_period)
                if pending:
                    logger.warning(f"连接关闭后仍有 {len(pending)} 个请求未完成，已取消")
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self._transport = None
            self._initialized = False
            logger.info(f"MCP 服务器 {self.name} 停止服务")

    async def run_stdio(self) -> None:
        """通过当前进程的 stdin/stdout 提供服务"""
        transport = StdioServerTransport()
        await transport.connect()
        try:
            await self.serve(transport)
        finally:
            await transport.disconnect()

    def run(self, log_level: str = "WARNING") -> None:
        """阻塞运行 stdio 服务 (日志写到 stderr)"""
        configure_logging(log_level)
        try:
            asyncio.run(self.run_stdio())
        except KeyboardInterrupt:
            logger.info("已中断")

    def _spawn_request(self, transport: Transport, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        task = asyncio.create_task(self._process_request(transport, message))
        self._track(task)
        self._in_flight[request_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._in_flight.get(request_id) is done:
                del self._in_flight[request_id]

        task.add_done_callback(_forget)

    async def _process_request(self, transport: Transport, message: Dict[str, Any]) -> None:
        response = await self.handle_message(message)
        if response is not None:
            await self._send(transport, response)

    async def _send(self, transport: Transport, message: Message) -> None:
        try:
            await transport.send(message)
        except TransportError as e:
            logger.warning(f"发送消息失败: {e}")

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_list_changed(self, registry: CapabilityRegistry) -> None:
        transport = self._transport
        if transport is None or not self._initialized:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        notification = JSONRPCNotification(method=_LIST_CHANGED_NOTIFICATIONS[registry.kind])
        self._track(loop.create_task(self._send(transport, notification)))
