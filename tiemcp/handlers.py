"""能力调用处理器

执行单次能力调用并总是产生结果，宿主代码抛出的异常不会越过这一层：
- ToolHandler: 工具调用 → CallToolResult (异常转换为 isError=True)
- PromptHandler: 提示获取 → GetPromptResult (异常转换为错误提示消息)
- ResourceHandler: 资源读取 → ReadResourceResult (异常转换为 MCPError)
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .content import (
    CallToolResult,
    EmbeddedResource,
    ResourceContents,
    TextContent,
    VideoContent,
    is_content,
)
from .protocol import (
    INTERNAL_ERROR,
    GetPromptResult,
    MCPError,
    PromptMessage,
    ReadResourceResult,
)
from .registry import Capability

logger = logging.getLogger(__name__)


def fault_message(error: BaseException) -> str:
    """异常的可读消息，单成员异常组先拆开一层"""
    if isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    return str(error) or type(error).__name__


def _to_json_text(value: Any) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json(exclude_none=True)
    return json.dumps(value, ensure_ascii=False, default=str)


class InvocationHandler:
    """调用处理器基类：参数绑定与调用"""

    def bind_arguments(
        self, capability: Capability, arguments: Optional[Dict[str, Any]]
    ) -> Tuple[List[Any], Dict[str, Any]]:
        """把 JSON 参数绑定到函数参数

        - 提供的值按声明类型转换
        - 缺省时使用默认值，没有默认值则使用类型零值 (记录 debug 日志)
        - 函数接受 **kwargs 时，多余参数原样传递
        """
        arguments = arguments or {}
        args: List[Any] = []
        kwargs: Dict[str, Any] = {}

        for param in capability.parameters:
            if param.name in arguments:
                value = param.coerce(arguments[param.name])
            elif param.has_default:
                logger.debug(f"{capability.name}: 参数 '{param.name}' 未提供，使用默认值")
                value = param.default
            else:
                value = param.zero_value()
                logger.debug(
                    f"{capability.name}: 参数 '{param.name}' 未提供，使用零值 {value!r}"
                )

            if param.kind is inspect.Parameter.POSITIONAL_ONLY:
                args.append(value)
            else:
                kwargs[param.name] = value

        if capability.accepts_extra:
            known = {param.name for param in capability.parameters}
            for key, value in arguments.items():
                if key not in known:
                    kwargs[key] = value

        return args, kwargs

    async def invoke(self, capability: Capability, arguments: Optional[Dict[str, Any]]) -> Any:
        """绑定参数并调用，异步函数会被等待"""
        args, kwargs = self.bind_arguments(capability, arguments)
        result = capability.invoker(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolHandler(InvocationHandler):
    """工具调用处理器"""

    async def invoke(
        self, capability: Capability, arguments: Optional[Dict[str, Any]] = None
    ) -> CallToolResult:
        try:
            value = await super().invoke(capability, arguments)
            return self.to_result(value)
        except Exception as e:
            message = fault_message(e)
            logger.warning(f"工具 {capability.name} 执行失败: {message}")
            logger.debug("工具异常详情", exc_info=True)
            return CallToolResult.error(message)

    @staticmethod
    def to_result(value: Any) -> CallToolResult:
        """将返回值规范化为 CallToolResult"""
        if isinstance(value, CallToolResult):
            return value
        if value is None:
            return CallToolResult()
        if isinstance(value, str):
            return CallToolResult.text(value)
        if is_content(value):
            return CallToolResult.mixed([value])
        if isinstance(value, (list, tuple)) and value and all(is_content(item) for item in value):
            return CallToolResult.mixed(value)
        return CallToolResult.text(_to_json_text(value))


class PromptHandler(InvocationHandler):
    """提示处理器"""

    async def invoke(
        self, capability: Capability, arguments: Optional[Dict[str, Any]] = None
    ) -> GetPromptResult:
        try:
            value = await super().invoke(capability, arguments)
            return self.to_result(capability, value)
        except Exception as e:
            message = fault_message(e)
            logger.warning(f"提示 {capability.name} 执行失败: {message}")
            return GetPromptResult(
                description=f"Error: {message}",
                messages=[
                    PromptMessage(
                        role="user",
                        content=TextContent(text=f"Error executing prompt: {message}"),
                    )
                ],
            )

    @staticmethod
    def _to_message(item: Any) -> PromptMessage:
        if isinstance(item, PromptMessage):
            return item
        if isinstance(item, str):
            return PromptMessage(role="user", content=TextContent(text=item))
        if isinstance(item, VideoContent):
            raise ValueError("Video content is not supported in prompt messages")
        if is_content(item):
            return PromptMessage(role="user", content=item)
        if isinstance(item, dict):
            return PromptMessage.model_validate(item)
        return PromptMessage(role="user", content=TextContent(text=_to_json_text(item)))

    def to_result(self, capability: Capability, value: Any) -> GetPromptResult:
        if isinstance(value, GetPromptResult):
            return value
        if isinstance(value, (list, tuple)):
            messages = [self._to_message(item) for item in value]
        elif value is None:
            messages = []
        else:
            messages = [self._to_message(value)]
        return GetPromptResult(description=capability.description, messages=messages)


class ResourceHandler(InvocationHandler):
    """资源读取处理器"""

    async def read(
        self,
        capability: Capability,
        uri: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> ReadResourceResult:
        """读取资源

        Raises:
            MCPError: 资源函数执行失败 (INTERNAL_ERROR)
        """
        try:
            value = await self.invoke(capability, params)
            return self.to_result(capability, uri, value)
        except Exception as e:
            message = fault_message(e)
            logger.warning(f"资源 {uri} 读取失败: {message}")
            raise MCPError(INTERNAL_ERROR, f"Error reading resource {uri}: {message}") from e

    def _to_contents(self, capability: Capability, uri: str, item: Any) -> ResourceContents:
        if isinstance(item, ResourceContents):
            return item
        if isinstance(item, EmbeddedResource):
            return item.resource
        if isinstance(item, str):
            return ResourceContents.from_text(uri, item, capability.mime_type or "text/plain")
        if isinstance(item, (bytes, bytearray)):
            return ResourceContents.from_bytes(
                uri, bytes(item), capability.mime_type or "application/octet-stream"
            )
        return ResourceContents.from_text(
            uri, _to_json_text(item), capability.mime_type or "application/json"
        )

    def to_result(self, capability: Capability, uri: str, value: Any) -> ReadResourceResult:
        if isinstance(value, ReadResourceResult):
            return value
        items = value if isinstance(value, (list, tuple)) else [value]
        return ReadResourceResult(
            contents=[self._to_contents(capability, uri, item) for item in items]
        )
