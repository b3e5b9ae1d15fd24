"""参数 Schema 生成与参数转换

从函数签名生成 JSON Schema 形式的参数描述，并用 pydantic 把
未类型化的 JSON 参数转换为声明的参数类型。

支持的类型:
- 基础类型: str / int / float / bool / bytes
- 容器: list / tuple / set / dict 及其泛型形式
- 结构体: pydantic BaseModel、dataclass (递归展开为嵌套 object)
- Optional / Union / Literal / Enum / Annotated
"""

from __future__ import annotations

import dataclasses
import enum
import inspect
import logging
import re
import types
import typing
from collections import abc
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, TypeAdapter, ValidationError
from pydantic.fields import FieldInfo

logger = logging.getLogger(__name__)

_EMPTY = inspect.Parameter.empty

_PRIMITIVE_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}

_ARRAY_ORIGINS = (
    list,
    tuple,
    set,
    frozenset,
    abc.Sequence,
    abc.MutableSequence,
    abc.Set,
    abc.MutableSet,
    abc.Iterable,
    abc.Collection,
)

_MAPPING_ORIGINS = (dict, abc.Mapping, abc.MutableMapping)


class ArgumentError(ValueError):
    """参数无法转换为声明的类型"""

    def __init__(self, name: str, reason: str):
        super().__init__(f"Invalid value for argument '{name}': {reason}")
        self.name = name
        self.reason = reason


# =============================================================================
# 类型工具
# =============================================================================


def _is_union(origin: Any) -> bool:
    return origin is Union or origin is types.UnionType


def strip_annotated(annotation: Any) -> Tuple[Any, Tuple[Any, ...]]:
    """拆出 Annotated[T, ...]，返回 (T, 元数据)"""
    if typing.get_origin(annotation) is Annotated:
        base, *metadata = typing.get_args(annotation)
        return base, tuple(metadata)
    return annotation, ()


def unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
    """拆出 Optional[T]，返回 (T, 是否可选)"""
    annotation, _ = strip_annotated(annotation)
    if _is_union(typing.get_origin(annotation)):
        args = typing.get_args(annotation)
        non_none = tuple(arg for arg in args if arg is not type(None))
        if len(non_none) < len(args):
            if len(non_none) == 1:
                return non_none[0], True
            return Union[non_none], True
    return annotation, False


def zero_value(annotation: Any) -> Any:
    """类型的零值/空值"""
    inner, optional = unwrap_optional(annotation)
    if optional:
        return None

    origin = typing.get_origin(inner) or inner
    if origin is bool:
        return False
    if origin is int:
        return 0
    if origin is float:
        return 0.0
    if origin is str:
        return ""
    if origin is bytes:
        return b""
    if origin is tuple:
        return ()
    if origin is frozenset:
        return frozenset()
    if origin in (set, abc.Set, abc.MutableSet):
        return set()
    if origin in _ARRAY_ORIGINS:
        return []
    if origin in _MAPPING_ORIGINS:
        return {}
    return None


# =============================================================================
# JSON Schema 生成
# =============================================================================


def _literal_type(values: Iterable[Any]) -> Optional[str]:
    kinds = {_PRIMITIVE_TYPES.get(type(value)) for value in values}
    if len(kinds) == 1:
        return kinds.pop()
    return None


def _object_schema(
    owner: type,
    fields: Iterable[Tuple[str, Any, bool, Optional[str]]],
    seen: frozenset,
) -> Dict[str, Any]:
    if owner in seen:
        # 自引用结构不再展开
        return {"type": "object"}
    seen = seen | {owner}

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, annotation, is_required, description in fields:
        prop = build_schema(annotation, seen)
        if description:
            prop = {**prop, "description": description}
        properties[name] = prop
        if is_required:
            required.append(name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _model_fields(model: type) -> List[Tuple[str, Any, bool, Optional[str]]]:
    return [
        (info.alias or name, info.annotation, info.is_required(), info.description)
        for name, info in model.model_fields.items()
    ]


def _dataclass_fields(cls: type) -> List[Tuple[str, Any, bool, Optional[str]]]:
    try:
        hints = typing.get_type_hints(cls, include_extras=True)
    except (NameError, TypeError):
        hints = {}

    result = []
    for f in dataclasses.fields(cls):
        required = f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING
        annotation = hints.get(f.name, Any)
        result.append((f.name, annotation, required, f.metadata.get("description")))
    return result


def build_schema(annotation: Any, _seen: frozenset = frozenset()) -> Dict[str, Any]:
    """将类型注解转换为 JSON Schema"""
    if annotation is _EMPTY or annotation is Any or isinstance(annotation, str):
        return {}

    annotation, metadata = strip_annotated(annotation)
    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    inner, optional = unwrap_optional(annotation)
    if optional:
        return build_schema(inner, _seen)

    if _is_union(origin):
        return {"anyOf": [build_schema(arg, _seen) for arg in args]}

    if origin is Literal:
        schema: Dict[str, Any] = {"enum": list(args)}
        literal_type = _literal_type(args)
        if literal_type:
            schema["type"] = literal_type
        return schema

    if isinstance(annotation, type) and issubclass(annotation, enum.Enum):
        values = [member.value for member in annotation]
        schema = {"enum": values}
        enum_type = _literal_type(values)
        if enum_type:
            schema["type"] = enum_type
        return schema

    if isinstance(annotation, type) and annotation in _PRIMITIVE_TYPES:
        return {"type": _PRIMITIVE_TYPES[annotation]}

    if annotation is bytes:
        return {"type": "string", "contentEncoding": "base64"}

    if annotation is type(None):
        return {"type": "null"}

    if origin in _ARRAY_ORIGINS or annotation in (list, tuple, set, frozenset):
        schema = {"type": "array"}
        if origin is tuple and args and not (len(args) == 2 and args[1] is Ellipsis):
            # 定长元组
            schema["prefixItems"] = [build_schema(arg, _seen) for arg in args]
            schema["minItems"] = schema["maxItems"] = len(args)
        elif args:
            schema["items"] = build_schema(args[0], _seen)
        return schema

    if origin in _MAPPING_ORIGINS or annotation is dict:
        schema = {"type": "object"}
        if len(args) == 2:
            value_schema = build_schema(args[1], _seen)
            if value_schema:
                schema["additionalProperties"] = value_schema
        return schema

    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return _object_schema(annotation, _model_fields(annotation), _seen)

    if isinstance(annotation, type) and dataclasses.is_dataclass(annotation):
        return _object_schema(annotation, _dataclass_fields(annotation), _seen)

    return {}


# =============================================================================
# 文档字符串解析
# =============================================================================

_SECTION_RE = re.compile(
    r"^(Args|Arguments|Parameters|Params|Returns?|Raises|Yields?|Examples?|Notes?|"
    r"Attributes|使用示例|示例|参数|返回)\s*[:：]\s*$"
)
_ARG_SECTIONS = {"Args", "Arguments", "Parameters", "Params", "参数"}
_PARAM_RE = re.compile(r"^(\s*)\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*[:：]\s*(.*)$")


def parse_docstring(doc: Optional[str]) -> Tuple[str, Dict[str, str]]:
    """解析 Google 风格文档字符串

    Returns:
        (摘要, {参数名: 说明})
    """
    if not doc:
        return "", {}

    summary_lines: List[str] = []
    params: Dict[str, str] = {}
    section: Optional[str] = None
    current: Optional[str] = None
    param_indent: Optional[int] = None

    for line in inspect.cleandoc(doc).splitlines():
        stripped = line.strip()
        header = _SECTION_RE.match(stripped)
        if header and not line[:1].isspace():
            section = header.group(1)
            current = None
            param_indent = None
            continue

        if section is None:
            summary_lines.append(line)
            continue

        if section not in _ARG_SECTIONS or not stripped:
            continue

        indent = len(line) - len(line.lstrip())
        match = _PARAM_RE.match(line)
        if match and (param_indent is None or indent <= param_indent):
            param_indent = indent
            current = match.group(2)
            params[current] = match.group(3).strip()
        elif current is not None:
            params[current] = f"{params[current]} {stripped}".strip()

    return "\n".join(summary_lines).strip(), params


# =============================================================================
# 参数描述
# =============================================================================


@dataclass(frozen=True)
class ParameterOverride:
    """参数声明覆盖 (说明、是否必需)"""

    name: str
    description: Optional[str] = None
    required: Optional[bool] = None


@dataclass(frozen=True)
class ParameterDescriptor:
    """参数描述"""

    name: str
    annotation: Any = Any
    required: bool = True
    default: Any = _EMPTY
    description: Optional[str] = None
    kind: inspect._ParameterKind = inspect.Parameter.POSITIONAL_OR_KEYWORD
    schema: Dict[str, Any] = field(default_factory=dict, compare=False)
    adapter: Optional[TypeAdapter] = field(default=None, compare=False, repr=False)

    @property
    def has_default(self) -> bool:
        return self.default is not _EMPTY

    def coerce(self, value: Any) -> Any:
        """将 JSON 值转换为声明的类型"""
        if self.adapter is None:
            return value
        try:
            return self.adapter.validate_python(value)
        except ValidationError as e:
            errors = e.errors()
            reason = errors[0]["msg"] if errors else str(e)
            raise ArgumentError(self.name, reason) from e

    def zero_value(self) -> Any:
        return zero_value(self.annotation)


def _make_adapter(annotation: Any) -> Optional[TypeAdapter]:
    if annotation is Any or annotation is _EMPTY:
        return None
    try:
        return TypeAdapter(annotation)
    except Exception as e:  # pydantic 无法处理的注解按原样传递
        logger.debug(f"无法为 {annotation!r} 创建类型适配器: {e}")
        return None


def _annotation_description(metadata: Tuple[Any, ...]) -> Optional[str]:
    for item in metadata:
        if isinstance(item, str):
            return item
        if isinstance(item, FieldInfo) and item.description:
            return item.description
    return None


def _resolve_hints(fn: Any) -> Dict[str, Any]:
    target = inspect.unwrap(fn)
    try:
        return typing.get_type_hints(target, include_extras=True)
    except (NameError, TypeError) as e:
        logger.debug(f"无法解析 {getattr(fn, '__name__', fn)!r} 的类型注解: {e}")
        return {}


def describe_parameters(
    fn: Any,
    overrides: Optional[Dict[str, ParameterOverride]] = None,
    doc_params: Optional[Dict[str, str]] = None,
) -> List[ParameterDescriptor]:
    """从函数签名生成参数描述

    必需性规则: 有默认值、注解为 Optional、或覆盖声明为非必需时为 False，否则为 True；
    覆盖中显式给出的 required 优先。
    """
    overrides = overrides or {}
    doc_params = doc_params or {}
    hints = _resolve_hints(fn)

    descriptors: List[ParameterDescriptor] = []
    for param in inspect.signature(fn).parameters.values():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue

        annotation = hints.get(param.name, param.annotation)
        if annotation is _EMPTY or isinstance(annotation, str):
            annotation = Any

        _, metadata = strip_annotated(annotation)
        _, optional = unwrap_optional(annotation)
        has_default = param.default is not _EMPTY

        override = overrides.get(param.name)
        required = not (has_default or optional)
        if override is not None and override.required is not None:
            required = override.required

        description = (
            (override.description if override else None)
            or _annotation_description(metadata)
            or doc_params.get(param.name)
        )

        descriptors.append(
            ParameterDescriptor(
                name=param.name,
                annotation=annotation,
                required=required,
                default=param.default,
                description=description,
                kind=param.kind,
                schema=build_schema(annotation),
                adapter=_make_adapter(annotation),
            )
        )

    return descriptors


def build_input_schema(parameters: Iterable[ParameterDescriptor]) -> Dict[str, Any]:
    """组合参数描述为对象 Schema"""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param in parameters:
        prop = dict(param.schema)
        if param.description:
            prop["description"] = param.description
        if param.has_default and _is_json_value(param.default):
            prop["default"] = param.default
        properties[param.name] = prop
        if param.required:
            required.append(param.name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _is_json_value(value: Any) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, (list, tuple)):
        return all(_is_json_value(item) for item in value)
    if isinstance(value, dict):
        return all(isinstance(k, str) and _is_json_value(v) for k, v in value.items())
    return False
