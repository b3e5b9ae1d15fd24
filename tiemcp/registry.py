"""能力注册表

把宿主声明的函数/方法转换为具名、带参数 Schema、可调用的能力 (工具、提示、资源)。

声明与注册是分开的两步：
- 标记装饰器 @tool / @prompt / @resource / @parameter 只在函数上记录元数据
- 注册由宿主显式完成: registry.register(fn)、catalog.register_type(cls)、
  catalog.register_module(module)

使用示例:
    class DemoTools:
        @tool(description="回显输入")
        def echo(self, input: str) -> str:
            return input

    catalog = CapabilityCatalog()
    catalog.register_type(DemoTools)
"""

from __future__ import annotations

import inspect
import logging
import re
import types
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .protocol import (
    MCPPrompt,
    MCPPromptArgument,
    MCPResource,
    MCPResourceTemplate,
    MCPTool,
)
from .schema import (
    ParameterDescriptor,
    ParameterOverride,
    build_input_schema,
    describe_parameters,
    parse_docstring,
)

logger = logging.getLogger(__name__)

CAPABILITY_ATTR = "__tiemcp_capability__"
PARAMETER_ATTR = "__tiemcp_parameters__"


class RegistrationError(ValueError):
    """无效的能力声明"""

    pass


class CapabilityKind(str, Enum):
    """能力类型"""

    TOOL = "tool"
    PROMPT = "prompt"
    RESOURCE = "resource"


# =============================================================================
# 标记装饰器
# =============================================================================


@dataclass(frozen=True)
class CapabilityMarker:
    """记录在函数上的能力声明"""

    kind: CapabilityKind
    name: Optional[str] = None
    description: Optional[str] = None
    title: Optional[str] = None
    uri: Optional[str] = None
    mime_type: Optional[str] = None


def _unwrap_member(obj: Any) -> Any:
    """staticmethod/classmethod/property 取出底层函数"""
    if isinstance(obj, (staticmethod, classmethod)):
        return obj.__func__
    if isinstance(obj, property):
        return obj.fget
    return obj


def _mark(obj: Any, marker: CapabilityMarker) -> Any:
    target = _unwrap_member(obj)
    if target is None or not callable(target):
        raise RegistrationError(f"只能标记可调用对象: {obj!r}")
    setattr(target, CAPABILITY_ATTR, marker)
    return obj


def get_marker(obj: Any) -> Optional[CapabilityMarker]:
    """读取能力声明"""
    return getattr(_unwrap_member(obj), CAPABILITY_ATTR, None)


def tool(
    fn: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    title: Optional[str] = None,
):
    """标记函数为工具

    可直接使用 ``@tool``，也可带参数 ``@tool(name="add")``。
    """
    marker = CapabilityMarker(CapabilityKind.TOOL, name, description, title)
    if fn is not None:
        return _mark(fn, marker)
    return lambda f: _mark(f, marker)


def prompt(
    fn: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    title: Optional[str] = None,
):
    """标记函数为提示模板"""
    marker = CapabilityMarker(CapabilityKind.PROMPT, name, description, title)
    if fn is not None:
        return _mark(fn, marker)
    return lambda f: _mark(f, marker)


def resource(
    uri: str,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    title: Optional[str] = None,
    mime_type: Optional[str] = None,
):
    """标记函数 (或 property) 为资源

    Args:
        uri: 资源 URI，可包含 ``{参数}`` 作为模板
    """
    if not uri or not isinstance(uri, str):
        raise RegistrationError("资源必须提供 URI")
    marker = CapabilityMarker(CapabilityKind.RESOURCE, name, description, title, uri, mime_type)
    return lambda f: _mark(f, marker)


def parameter(name: str, description: Optional[str] = None, required: Optional[bool] = None):
    """覆盖单个参数的说明或必需性"""

    def decorator(obj):
        target = _unwrap_member(obj)
        overrides = dict(getattr(target, PARAMETER_ATTR, {}))
        overrides[name] = ParameterOverride(name, description, required)
        setattr(target, PARAMETER_ATTR, overrides)
        return obj

    return decorator


# =============================================================================
# 能力
# =============================================================================

_URI_PARAM_RE = re.compile(r"\{(\w+)\}")


@lru_cache(maxsize=256)
def compile_uri_template(template: str) -> "re.Pattern[str]":
    """将 URI 模板编译为正则，每个 {参数} 匹配一段不含 / 的文本"""
    parts: List[str] = []
    pos = 0
    for match in _URI_PARAM_RE.finditer(template):
        parts.append(re.escape(template[pos : match.start()]))
        parts.append(f"(?P<{match.group(1)}>[^/]+)")
        pos = match.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("^" + "".join(parts) + "$")


def _default_schema() -> Dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass(frozen=True)
class Capability:
    """一个已注册的能力 (创建后不可变)"""

    kind: CapabilityKind
    name: str
    invoker: Callable[..., Any] = field(repr=False)
    description: Optional[str] = None
    title: Optional[str] = None
    parameters: Tuple[ParameterDescriptor, ...] = ()
    input_schema: Dict[str, Any] = field(default_factory=_default_schema)
    uri: Optional[str] = None
    mime_type: Optional[str] = None
    accepts_extra: bool = False

    @property
    def is_template(self) -> bool:
        return self.uri is not None and _URI_PARAM_RE.search(self.uri) is not None

    def missing_arguments(self, arguments: Optional[Dict[str, Any]]) -> List[str]:
        """缺失的必需参数"""
        arguments = arguments or {}
        return [p.name for p in self.parameters if p.required and p.name not in arguments]

    def match_uri(self, uri: str) -> Optional[Dict[str, str]]:
        """匹配资源 URI，返回模板参数；不匹配返回 None"""
        if self.uri is None:
            return None
        if not self.is_template:
            return {} if uri == self.uri else None
        match = compile_uri_template(self.uri).match(uri)
        return match.groupdict() if match else None

    def to_tool(self) -> MCPTool:
        return MCPTool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
            title=self.title,
        )

    def to_prompt(self) -> MCPPrompt:
        arguments = [
            MCPPromptArgument(name=p.name, description=p.description, required=p.required)
            for p in self.parameters
        ]
        return MCPPrompt(
            name=self.name,
            title=self.title,
            description=self.description,
            arguments=arguments or None,
        )

    def to_resource(self) -> MCPResource:
        return MCPResource(
            uri=self.uri or "",
            name=self.name,
            title=self.title,
            description=self.description,
            mimeType=self.mime_type,
        )

    def to_template(self) -> MCPResourceTemplate:
        return MCPResourceTemplate(
            uriTemplate=self.uri or "",
            name=self.name,
            title=self.title,
            description=self.description,
            mimeType=self.mime_type,
        )


def build_capability(
    kind: Union[CapabilityKind, str],
    fn: Any,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    title: Optional[str] = None,
    uri: Optional[str] = None,
    mime_type: Optional[str] = None,
    invoker: Optional[Callable[..., Any]] = None,
) -> Capability:
    """从函数创建能力

    显式参数优先于函数上的标记，标记优先于函数名与文档字符串。

    Args:
        kind: 能力类型
        fn: 被声明的函数 (可以是 staticmethod/classmethod/property)
        invoker: 实际调用的对象，默认为函数本身 (方法需传入绑定后的对象)
    """
    kind = CapabilityKind(kind)
    target = _unwrap_member(fn)
    if target is None or not callable(target):
        raise RegistrationError(f"能力必须是可调用对象: {fn!r}")

    marker = getattr(target, CAPABILITY_ATTR, None)
    if marker is not None and marker.kind is kind:
        name = name or marker.name
        description = description or marker.description
        title = title or marker.title
        uri = uri or marker.uri
        mime_type = mime_type or marker.mime_type

    if kind is CapabilityKind.RESOURCE and not uri:
        raise RegistrationError(f"资源 '{name or target.__name__}' 缺少 URI")

    call = invoker if invoker is not None else target
    summary, doc_params = parse_docstring(inspect.getdoc(target))
    overrides = getattr(target, PARAMETER_ATTR, {})
    parameters = describe_parameters(call, overrides, doc_params)

    accepts_extra = any(
        p.kind is inspect.Parameter.VAR_KEYWORD for p in inspect.signature(call).parameters.values()
    )

    return Capability(
        kind=kind,
        name=name or target.__name__,
        invoker=call,
        description=description or summary or None,
        title=title,
        parameters=tuple(parameters),
        input_schema=build_input_schema(parameters),
        uri=uri,
        mime_type=mime_type,
        accepts_extra=accepts_extra,
    )


# =============================================================================
# 注册表
# =============================================================================

ListChangedCallback = Callable[["CapabilityRegistry"], None]


class CapabilityRegistry:
    """单一类型的能力注册表

    同名注册以最后一次为准 (记录警告)。每批注册完成后触发列表变更回调。
    注册完成后只读，并发调用无需加锁。
    """

    def __init__(self, kind: Union[CapabilityKind, str]):
        self.kind = CapabilityKind(kind)
        self._capabilities: Dict[str, Capability] = {}
        self._listeners: List[ListChangedCallback] = []

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(list(self._capabilities.values()))

    def __repr__(self) -> str:
        return f"CapabilityRegistry(kind={self.kind.value!r}, size={len(self)})"

    def register(
        self,
        fn: Optional[Callable] = None,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        title: Optional[str] = None,
        uri: Optional[str] = None,
        mime_type: Optional[str] = None,
    ):
        """注册函数 (可作为装饰器使用，返回原函数)

        使用示例:
            @server.tools.register
            def echo(input: str) -> str:
                return input

            @server.resources.register(uri="test://{name}")
            def greeting(name: str) -> str:
                return f"Hello, {name}"
        """

        def decorator(func):
            self.add(
                build_capability(
                    self.kind,
                    func,
                    name=name,
                    description=description,
                    title=title,
                    uri=uri,
                    mime_type=mime_type,
                )
            )
            return func

        if fn is None:
            return decorator
        return decorator(fn)

    def add(self, capability: Capability) -> Capability:
        """添加单个能力"""
        self._store(capability)
        self._notify()
        return capability

    def add_many(self, capabilities: Iterable[Capability]) -> List[Capability]:
        """批量添加，整批只触发一次变更回调"""
        added = [self._store(capability) for capability in capabilities]
        if added:
            self._notify()
        return added

    def remove(self, name: str) -> bool:
        """移除能力"""
        if name not in self._capabilities:
            return False
        del self._capabilities[name]
        logger.info(f"已移除{self.kind.value}: {name}")
        self._notify()
        return True

    def get(self, name: str) -> Optional[Capability]:
        return self._capabilities.get(name)

    def list(self) -> List[Capability]:
        return list(self._capabilities.values())

    def resolve_uri(self, uri: str) -> Optional[Tuple[Capability, Dict[str, str]]]:
        """按 URI 查找资源，精确匹配优先于模板"""
        capabilities = self.list()
        for capability in capabilities:
            if not capability.is_template and capability.uri == uri:
                return capability, {}
        for capability in capabilities:
            if capability.is_template:
                params = capability.match_uri(uri)
                if params is not None:
                    return capability, params
        return None

    def on_list_changed(self, callback: ListChangedCallback) -> ListChangedCallback:
        """注册列表变更回调"""
        self._listeners.append(callback)
        return callback

    def remove_listener(self, callback: ListChangedCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _store(self, capability: Capability) -> Capability:
        if capability.kind is not self.kind:
            raise RegistrationError(
                f"不能把 {capability.kind.value} '{capability.name}' 注册到 {self.kind.value} 注册表"
            )
        if capability.name in self._capabilities:
            logger.warning(f"{self.kind.value} '{capability.name}' 已存在，将替换")
        self._capabilities[capability.name] = capability
        logger.debug(f"已注册{self.kind.value}: {capability.name}")
        return capability

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception(f"{self.kind.value} 列表变更回调失败")


class CapabilityCatalog:
    """能力目录：工具、提示、资源三个注册表

    每个服务器实例持有自己的目录，同一进程内的多个服务器互不干扰。
    """

    def __init__(self):
        self.tools = CapabilityRegistry(CapabilityKind.TOOL)
        self.prompts = CapabilityRegistry(CapabilityKind.PROMPT)
        self.resources = CapabilityRegistry(CapabilityKind.RESOURCE)

    def registry_for(self, kind: Union[CapabilityKind, str]) -> CapabilityRegistry:
        kind = CapabilityKind(kind)
        if kind is CapabilityKind.TOOL:
            return self.tools
        if kind is CapabilityKind.PROMPT:
            return self.prompts
        return self.resources

    def register_function(self, fn: Callable) -> Capability:
        """注册已标记的函数"""
        marker = get_marker(fn)
        if marker is None:
            raise RegistrationError(f"{fn!r} 没有能力标记")
        return self.registry_for(marker.kind).add(build_capability(marker.kind, fn))

    def register_type(self, cls: type, instance: Any = None) -> List[Capability]:
        """注册类中所有已标记的成员

        普通方法和 property 需要实例；未提供时使用无参构造，构造失败抛出 RegistrationError。
        """
        members = _marked_members(cls)
        needs_instance = any(
            not isinstance(raw, (staticmethod, classmethod)) for _, raw, _ in members
        )
        if needs_instance and instance is None:
            try:
                instance = cls()
            except Exception as e:
                raise RegistrationError(f"无法构造 {cls.__name__}: {e}") from e

        grouped: Dict[CapabilityKind, List[Capability]] = {}
        for _, raw, marker in members:
            func = _unwrap_member(raw)
            if isinstance(raw, staticmethod):
                invoker = func
            elif isinstance(raw, classmethod):
                invoker = types.MethodType(func, cls)
            else:
                invoker = types.MethodType(func, instance)
            grouped.setdefault(marker.kind, []).append(
                build_capability(marker.kind, raw, invoker=invoker)
            )

        registered: List[Capability] = []
        for kind, capabilities in grouped.items():
            registered.extend(self.registry_for(kind).add_many(capabilities))

        logger.info(f"已注册 {cls.__name__} 的 {len(registered)} 个能力")
        return registered

    def register_module(self, module: types.ModuleType) -> List[Capability]:
        """注册模块中所有已标记的函数"""
        grouped: Dict[CapabilityKind, List[Capability]] = {}
        for value in vars(module).values():
            if not inspect.isfunction(value):
                continue
            marker = get_marker(value)
            if marker is None:
                continue
            grouped.setdefault(marker.kind, []).append(build_capability(marker.kind, value))

        registered: List[Capability] = []
        for kind, capabilities in grouped.items():
            registered.extend(self.registry_for(kind).add_many(capabilities))
        return registered


def _marked_members(cls: type) -> List[Tuple[str, Any, CapabilityMarker]]:
    """按声明顺序收集类 (含基类) 中已标记的成员，子类覆盖基类"""
    members: Dict[str, Any] = {}
    for klass in reversed(cls.__mro__):
        if klass is object:
            continue
        members.update(vars(klass))

    result = []
    for attr, raw in members.items():
        if not isinstance(raw, (staticmethod, classmethod, property)) and not inspect.isfunction(raw):
            continue
        marker = get_marker(raw)
        if marker is not None:
            result.append((attr, raw, marker))
    return result
