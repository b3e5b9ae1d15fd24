"""MCP 客户端实现

提供与 MCP 服务器交互的高级 API:
- 后台读取循环按 id 匹配响应，响应可以乱序到达
- 无 id 的消息作为通知分发给 on_notification 注册的处理器
- 每个请求有超时，超时后本地移除，迟到的响应被丢弃
- 工具调用前的权限检查
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, Union

from pydantic import BaseModel

from .config import MCPConfig, ServerConfig
from .content import CallToolResult
from .protocol import (
    INTERNAL_ERROR,
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
    ClientCapabilities,
    GetPromptResult,
    Implementation,
    InitializeParams,
    InitializeResult,
    JSONRPCNotification,
    JSONRPCRequest,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    MCPPrompt,
    MCPResource,
    MCPResourceTemplate,
    MCPTool,
    ReadResourceResult,
    ServerCapabilities,
    error_response,
    success_response,
)
from .transport import (
    MalformedFrameError,
    SSETransport,
    StdioTransport,
    Transport,
    TransportClosedError,
    TransportError,
)

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = "Permission Denied."

PermissionCallback = Callable[[str, Dict[str, Any]], Union[bool, Awaitable[bool]]]
NotificationHandler = Callable[[Dict[str, Any]], Any]


class MCPClientError(Exception):
    """MCP 客户端错误"""

    pass


class MCPServerError(MCPClientError):
    """服务器返回的 JSON-RPC 错误"""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"服务器错误 [{code}]: {message}")
        self.code = code
        self.message = message
        self.data = data


class RequestTimeoutError(MCPClientError, TimeoutError):
    """请求超时"""

    pass


class MCPClient:
    """MCP 客户端

    用于连接 MCP 服务器并调用其提供的工具、提示、资源。

    使用示例:
        async with MCPClient(command="python", args=["server.py"]) as client:
            tools = await client.list_tools()
            result = await client.call_tool("echo", {"input": "hello"})
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        client_name: str = "tiemcp",
        client_version: str = "0.1.0",
        timeout: float = 30.0,
        permission_callback: Optional[PermissionCallback] = None,
    ):
        """初始化 MCP 客户端

        Args:
            transport: 已创建的传输；未提供时由 command (stdio) 或 url (SSE) 创建
            command: MCP 服务器命令
            args: 命令参数
            env: 环境变量
            cwd: 工作目录
            url: SSE 事件流地址
            headers: SSE 请求头
            client_name: 客户端名称
            client_version: 客户端版本
            timeout: 默认请求超时时间 (秒)
            permission_callback: 工具调用前的权限检查 (tool_name, arguments) -> bool，可为异步
        """
        if transport is None:
            if command:
                transport = StdioTransport(command=command, args=args, env=env, cwd=cwd)
            elif url:
                transport = SSETransport(url, headers=headers, timeout=timeout)
            else:
                raise ValueError("需要提供 transport、command 或 url 之一")

        self._transport = transport
        self._client_info = Implementation(name=client_name, version=client_version)
        self._timeout = timeout
        self._permission_callback = permission_callback

        # 状态
        self._initialized = False
        self._server_info: Optional[Implementation] = None
        self._server_capabilities: Optional[ServerCapabilities] = None
        self._protocol_version: Optional[str] = None
        self._instructions: Optional[str] = None
        self._tools: Dict[str, MCPTool] = {}

        # 请求关联
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._notification_handlers: Dict[str, List[NotificationHandler]] = {}
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        server: ServerConfig,
        config: Optional[MCPConfig] = None,
        permission_callback: Optional[PermissionCallback] = None,
    ) -> "MCPClient":
        """根据服务器配置创建客户端"""
        config = config or MCPConfig()
        timeout = server.timeout if server.timeout is not None else config.timeout
        return cls(
            command=server.command,
            args=server.args,
            env=server.env,
            cwd=server.cwd,
            url=server.url,
            headers=server.headers,
            client_name=config.client_name,
            client_version=config.client_version,
            timeout=timeout,
            permission_callback=permission_callback,
        )

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return (
            self._transport.is_connected
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    @property
    def is_initialized(self) -> bool:
        """是否已初始化"""
        return self._initialized

    @property
    def server_info(self) -> Optional[Implementation]:
        """服务器信息"""
        return self._server_info

    @property
    def server_capabilities(self) -> Optional[ServerCapabilities]:
        return self._server_capabilities

    @property
    def protocol_version(self) -> Optional[str]:
        return self._protocol_version

    @property
    def instructions(self) -> Optional[str]:
        return self._instructions

    @property
    def tools(self) -> Dict[str, MCPTool]:
        """已发现的工具"""
        return self._tools

    @property
    def pending_count(self) -> int:
        """等待响应的请求数"""
        return len(self._pending)

    # =========================================================================
    # 连接
    # =========================================================================

    async def connect(self) -> None:
        """连接到 MCP 服务器并启动读取循环"""
        if self.is_connected:
            return
        if not self._transport.is_connected:
            await self._transport.connect()
        self._reader_task = asyncio.create_task(self._read_loop())

    async def disconnect(self) -> None:
        """断开与 MCP 服务器的连接

        所有未完成的请求以 TransportClosedError 结束。
        """
        self._initialized = False
        self._server_info = None
        self._server_capabilities = None
        self._tools.clear()

        try:
            await self._transport.disconnect()
        finally:
            reader = self._reader_task
            self._reader_task = None
            if reader is not None and not reader.done():
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass
            self._fail_pending(TransportClosedError("连接已关闭"))

            for task in list(self._background):
                task.cancel()

    async def close(self) -> None:
        """等同于 disconnect()"""
        await self.disconnect()

    async def __aenter__(self) -> "MCPClient":
        """异步上下文管理器入口"""
        await self.connect()
        await self.initialize()
        await self.list_tools()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """异步上下文管理器出口"""
        await self.disconnect()

    # =========================================================================
    # 请求/通知
    # =========================================================================

    def _next_id(self) -> int:
        """生成下一个请求 ID"""
        self._request_id += 1
        return self._request_id

    async def _send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """发送请求并等待响应

        Raises:
            TransportClosedError: 连接已关闭或在等待期间关闭
            RequestTimeoutError: 超时
            MCPServerError: 服务器返回错误
        """
        if not self.is_connected:
            raise TransportClosedError("未连接到服务器")

        request_id = self._next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        timeout = self._timeout if timeout is None else timeout

        try:
            await self._transport.send(JSONRPCRequest(id=request_id, method=method, params=params))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"请求超时: {method} (id={request_id})")
            self._spawn(self._notify_cancelled(request_id, "timeout"))
            raise RequestTimeoutError(f"请求超时: {method} ({timeout}s)") from None
        finally:
            self._pending.pop(request_id, None)

    async def _send_notification(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """发送通知 (不等待响应)"""
        await self._transport.send(JSONRPCNotification(method=method, params=params))

    async def _notify_cancelled(self, request_id: int, reason: str) -> None:
        try:
            await self._send_notification(
                NOTIFICATION_CANCELLED, {"requestId": request_id, "reason": reason}
            )
        except TransportError as e:
            logger.debug(f"发送取消通知失败: {e}")

    def on_notification(self, method: str, handler: Optional[NotificationHandler] = None):
        """注册通知处理器 (可作为装饰器使用)

        处理器接收通知的 params，可以是同步或异步函数。
        """

        def decorator(func: NotificationHandler) -> NotificationHandler:
            self._notification_handlers.setdefault(method, []).append(func)
            return func

        if handler is None:
            return decorator
        return decorator(handler)

    # =========================================================================
    # 读取循环
    # =========================================================================

    async def _read_loop(self) -> None:
        """读取并分发服务器消息，直到连接关闭"""
        error = TransportClosedError("连接已关闭")
        try:
            while True:
                try:
                    message = await self._transport.receive()
                except MalformedFrameError as e:
                    logger.warning(f"收到无法解析的消息: {e}")
                    continue

                try:
                    await self._handle_message(message)
                except Exception:
                    logger.exception("处理服务器消息失败")

        except TransportClosedError as e:
            error = e
            logger.info(f"服务器连接已关闭: {e}")
        except TransportError as e:
            error = TransportClosedError(str(e))
            logger.warning(f"读取消息失败: {e}")
        finally:
            self._initialized = False
            self._fail_pending(error)

    def _fail_pending(self, error: TransportClosedError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(TransportClosedError(str(error)))
        if pending:
            logger.debug(f"{len(pending)} 个请求因连接关闭而失败")

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        """处理服务器消息"""
        method = message.get("method")
        if isinstance(method, str):
            params = message.get("params") or {}
            if "id" in message:
                # 服务器请求
                await self._handle_server_request(message["id"], method)
            else:
                # 通知
                self._dispatch_notification(method, params)
            return

        if "id" not in message:
            logger.debug("忽略无法识别的消息")
            return

        request_id = message["id"]
        future = self._pending.pop(request_id, None)
        if future is None:
            if message.get("error"):
                logger.warning(f"服务器错误 (id={request_id}): {message['error']}")
            else:
                logger.debug(f"丢弃未匹配的响应: id={request_id}")
            return
        if future.done():
            return

        error = message.get("error")
        if error is not None:
            error = error if isinstance(error, dict) else {}
            future.set_exception(
                MCPServerError(
                    error.get("code", INTERNAL_ERROR),
                    error.get("message", "Unknown error"),
                    error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result"))

    async def _handle_server_request(self, request_id: Any, method: str) -> None:
        """处理服务器请求"""
        if method == METHOD_PING:
            response = success_response(request_id, {})
        else:
            response = error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            await self._transport.send(response)
        except TransportError as e:
            logger.warning(f"响应服务器请求失败: {e}")

    def _dispatch_notification(self, method: str, params: Dict[str, Any]) -> None:
        handlers = self._notification_handlers.get(method)
        if not handlers:
            logger.debug(f"未处理的通知: {method}")
            return

        for handler in list(handlers):
            try:
                result = handler(params)
            except Exception:
                logger.exception(f"通知处理器失败: {method}")
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"后台任务失败: {task.exception()}")

    # =========================================================================
    # MCP 方法
    # =========================================================================

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise MCPClientError("未初始化，请先调用 initialize()")

    async def initialize(self) -> InitializeResult:
        """初始化 MCP 会话

        执行 MCP 协议握手，协商能力。
        """
        if not self.is_connected:
            raise MCPClientError("未连接到服务器")

        params = InitializeParams(
            protocolVersion=LATEST_PROTOCOL_VERSION,
            capabilities=ClientCapabilities(),
            clientInfo=self._client_info,
        )

        result = await self._send_request(
            METHOD_INITIALIZE, params.model_dump(mode="json", exclude_none=True)
        )

        init_result = InitializeResult.model_validate(result)
        self._server_info = init_result.serverInfo
        self._server_capabilities = init_result.capabilities
        self._protocol_version = init_result.protocolVersion
        self._instructions = init_result.instructions

        logger.info(
            f"MCP 初始化成功: {init_result.serverInfo.name} v{init_result.serverInfo.version}"
        )

        # 发送 initialized 通知
        await self._send_notification(NOTIFICATION_INITIALIZED)

        self._initialized = True
        return init_result

    async def ping(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """存活检测，成功时返回空字典"""
        result = await self._send_request(METHOD_PING, None, timeout)
        return result or {}

    async def _list_all(self, method: str, model: Type[BaseModel], key: str) -> List[Any]:
        """按 nextCursor 取完所有分页"""
        items: List[Any] = []
        cursor: Optional[str] = None
        while True:
            params = {"cursor": cursor} if cursor else None
            page = model.model_validate(await self._send_request(method, params) or {})
            items.extend(getattr(page, key))
            cursor = page.nextCursor
            if not cursor:
                return items

    async def list_tools(self) -> List[MCPTool]:
        """获取服务器提供的工具列表"""
        self._ensure_initialized()

        tools = await self._list_all(METHOD_TOOLS_LIST, ListToolsResult, "tools")

        # 缓存工具
        self._tools = {tool.name: tool for tool in tools}
        logger.info(f"发现 {len(tools)} 个工具")
        return tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CallToolResult:
        """调用工具

        配置了权限回调时先做检查，被拒绝则直接返回错误结果，不发送任何请求。

        Args:
            name: 工具名称
            arguments: 工具参数
            timeout: 本次请求的超时时间，默认使用客户端设置

        Returns:
            工具执行结果 (服务器返回的 JSON-RPC 错误也转换为错误结果)
        """
        self._ensure_initialized()
        arguments = arguments or {}

        if self._permission_callback is not None:
            allowed = self._permission_callback(name, arguments)
            if inspect.isawaitable(allowed):
                allowed = await allowed
            if not allowed:
                logger.info(f"工具调用被拒绝: {name}")
                return CallToolResult.error(PERMISSION_DENIED_MESSAGE)

        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments

        try:
            result = await self._send_request(METHOD_TOOLS_CALL, params, timeout)
        except MCPServerError as e:
            return CallToolResult.error(e.message)

        return CallToolResult.model_validate(result)

    async def list_prompts(self) -> List[MCPPrompt]:
        """获取提示列表"""
        self._ensure_initialized()
        return await self._list_all(METHOD_PROMPTS_LIST, ListPromptsResult, "prompts")

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> GetPromptResult:
        """获取提示"""
        self._ensure_initialized()
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return GetPromptResult.model_validate(await self._send_request(METHOD_PROMPTS_GET, params))

    async def list_resources(self) -> List[MCPResource]:
        """获取资源列表"""
        self._ensure_initialized()
        return await self._list_all(METHOD_RESOURCES_LIST, ListResourcesResult, "resources")

    async def list_resource_templates(self) -> List[MCPResourceTemplate]:
        """获取资源模板列表"""
        self._ensure_initialized()
        return await self._list_all(
            METHOD_RESOURCE_TEMPLATES_LIST, ListResourceTemplatesResult, "resourceTemplates"
        )

    async def read_resource(self, uri: str) -> ReadResourceResult:
        """读取资源"""
        self._ensure_initialized()
        result = await self._send_request(METHOD_RESOURCES_READ, {"uri": uri})
        return ReadResourceResult.model_validate(result)


class MCPClientManager:
    """MCP 客户端管理器

    管理多个 MCP 服务器连接。
    """

    def __init__(self, permission_callback: Optional[PermissionCallback] = None):
        self._clients: Dict[str, MCPClient] = {}
        self._permission_callback = permission_callback

    @property
    def clients(self) -> Dict[str, MCPClient]:
        """所有客户端"""
        return self._clients

    def get_client(self, name: str) -> MCPClient:
        if name not in self._clients:
            raise MCPClientError(f"服务器 '{name}' 不存在")
        return self._clients[name]

    def get_all_tools(self) -> Dict[str, tuple[str, MCPTool]]:
        """获取所有服务器的工具

        Returns:
            Dict[server_name:tool_name, (server_name, tool)]
        """
        all_tools: Dict[str, tuple[str, MCPTool]] = {}
        for server_name, client in self._clients.items():
            for tool_name, tool in client.tools.items():
                # 使用 server_name:tool_name 格式避免冲突
                all_tools[f"{server_name}:{tool_name}"] = (server_name, tool)
        return all_tools

    async def add_client(self, name: str, client: MCPClient) -> MCPClient:
        """添加客户端并完成连接、初始化、工具发现"""
        if name in self._clients:
            logger.warning(f"服务器 '{name}' 已存在，将替换")
            await self.remove_server(name)

        await client.connect()
        try:
            await client.initialize()
            await client.list_tools()
        except BaseException:
            await client.disconnect()
            raise

        self._clients[name] = client
        logger.info(f"已添加 MCP 服务器: {name}")
        return client

    async def add_server(
        self,
        name: str,
        server: ServerConfig,
        config: Optional[MCPConfig] = None,
    ) -> MCPClient:
        """根据配置添加并连接 MCP 服务器"""
        client = MCPClient.from_config(server, config, self._permission_callback)
        return await self.add_client(name, client)

    async def load_config(self, config: MCPConfig) -> Dict[str, Exception]:
        """连接配置中所有启用的服务器

        Returns:
            连接失败的服务器及其异常
        """
        failures: Dict[str, Exception] = {}
        for name, server in config.enabled_servers.items():
            try:
                await self.add_server(name, server, config)
            except (MCPClientError, TransportError, OSError) as e:
                logger.error(f"连接 MCP 服务器 '{name}' 失败: {e}")
                failures[name] = e
        return failures

    async def remove_server(self, name: str) -> None:
        """移除 MCP 服务器"""
        if name not in self._clients:
            return

        client = self._clients.pop(name)
        await client.disconnect()
        logger.info(f"已移除 MCP 服务器: {name}")

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> CallToolResult:
        """调用指定服务器的工具"""
        return await self.get_client(server_name).call_tool(tool_name, arguments)

    async def disconnect_all(self) -> None:
        """断开所有服务器连接"""
        for name in list(self._clients.keys()):
            await self.remove_server(name)

    async def __aenter__(self) -> "MCPClientManager":
        """异步上下文管理器入口"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """异步上下文管理器出口"""
        await self.disconnect_all()
