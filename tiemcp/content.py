"""内容模型

工具返回值的统一表示：文本、图片、音频、视频、嵌入资源，
以及包装它们的 CallToolResult 结果信封。

所有内容类型都带有 ``type`` 判别字段，序列化后即为 MCP 线上格式。
"""

from __future__ import annotations

import base64
from typing import Annotated, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# =============================================================================
# 资源内容
# =============================================================================


class ResourceContents(BaseModel):
    """资源内容

    ``text`` 与 ``blob`` 必须且只能提供一个。
    """

    model_config = ConfigDict(frozen=True)

    uri: str
    mimeType: Optional[str] = None
    text: Optional[str] = None
    blob: Optional[str] = None  # base64 编码

    @model_validator(mode="after")
    def _check_payload(self) -> "ResourceContents":
        if (self.text is None) == (self.blob is None):
            raise ValueError("ResourceContents 必须且只能包含 text 或 blob 之一")
        return self

    @classmethod
    def from_text(
        cls, uri: str, text: str, mime_type: Optional[str] = "text/plain"
    ) -> "ResourceContents":
        """创建文本资源"""
        return cls(uri=uri, text=text, mimeType=mime_type)

    @classmethod
    def from_blob(cls, uri: str, data: str, mime_type: Optional[str]) -> "ResourceContents":
        """创建二进制资源 (data 为 base64 字符串)"""
        return cls(uri=uri, blob=data, mimeType=mime_type)

    @classmethod
    def from_bytes(
        cls, uri: str, data: bytes, mime_type: Optional[str] = "application/octet-stream"
    ) -> "ResourceContents":
        """从原始字节创建二进制资源"""
        return cls.from_blob(uri, base64.b64encode(data).decode("ascii"), mime_type)


# =============================================================================
# 内容类型
# =============================================================================


class TextContent(BaseModel):
    """文本内容"""

    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class _BinaryContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: str  # base64 编码
    mimeType: str

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str):
        """从原始字节创建"""
        return cls(data=base64.b64encode(data).decode("ascii"), mimeType=mime_type)

    def to_bytes(self) -> bytes:
        """解码为原始字节"""
        return base64.b64decode(self.data)


class ImageContent(_BinaryContent):
    """图片内容"""

    type: Literal["image"] = "image"


class AudioContent(_BinaryContent):
    """音频内容"""

    type: Literal["audio"] = "audio"


class VideoContent(_BinaryContent):
    """视频内容"""

    type: Literal["video"] = "video"


class EmbeddedResource(BaseModel):
    """嵌入资源内容"""

    model_config = ConfigDict(frozen=True)

    type: Literal["resource"] = "resource"
    resource: ResourceContents

    @classmethod
    def from_text(
        cls, uri: str, text: str, mime_type: Optional[str] = "text/plain"
    ) -> "EmbeddedResource":
        return cls(resource=ResourceContents.from_text(uri, text, mime_type))

    @classmethod
    def from_blob(cls, uri: str, data: str, mime_type: Optional[str]) -> "EmbeddedResource":
        return cls(resource=ResourceContents.from_blob(uri, data, mime_type))


# 内容类型联合 (按 type 判别)
Content = Annotated[
    Union[TextContent, ImageContent, AudioContent, VideoContent, EmbeddedResource],
    Field(discriminator="type"),
]

CONTENT_TYPES = (TextContent, ImageContent, AudioContent, VideoContent, EmbeddedResource)


def is_content(value: object) -> bool:
    """判断对象是否为内容项"""
    return isinstance(value, CONTENT_TYPES)


# =============================================================================
# 结果信封
# =============================================================================


class CallToolResult(BaseModel):
    """工具调用结果

    错误以 isError=True 加一条文本内容表示，没有单独的错误通道。
    """

    model_config = ConfigDict(frozen=True)

    content: List[Content] = Field(default_factory=list)
    isError: bool = False

    @classmethod
    def text(cls, text: str) -> "CallToolResult":
        """单条文本的成功结果"""
        return cls(content=[TextContent(text=text)])

    @classmethod
    def error(cls, message: str) -> "CallToolResult":
        """错误结果"""
        return cls(content=[TextContent(text=message)], isError=True)

    @classmethod
    def mixed(cls, contents: Iterable[Content]) -> "CallToolResult":
        """混合内容结果，保持给定顺序"""
        return cls(content=list(contents))

    @classmethod
    def images(cls, images: Iterable[ImageContent]) -> "CallToolResult":
        return cls(content=list(images))

    @classmethod
    def audios(cls, audios: Iterable[AudioContent]) -> "CallToolResult":
        return cls(content=list(audios))

    @classmethod
    def videos(cls, videos: Iterable[VideoContent]) -> "CallToolResult":
        return cls(content=list(videos))

    @classmethod
    def resources(cls, resources: Iterable[EmbeddedResource]) -> "CallToolResult":
        return cls(content=list(resources))

    @classmethod
    def builder(cls) -> "MixedContentBuilder":
        return MixedContentBuilder()

    def get_text(self, separator: str = "\n") -> str:
        """提取所有文本内容"""
        return separator.join(item.text for item in self.content if isinstance(item, TextContent))


class MixedContentBuilder:
    """混合内容构建器

    使用示例:
        result = (
            MixedContentBuilder()
            .add_text("分析结果")
            .add_image(png_base64, "image/png")
            .build()
        )
    """

    def __init__(self):
        self._contents: List[Content] = []

    def __len__(self) -> int:
        return len(self._contents)

    def add(self, content: Content) -> "MixedContentBuilder":
        """追加任意内容项"""
        if not is_content(content):
            raise TypeError(f"不支持的内容类型: {type(content).__name__}")
        self._contents.append(content)
        return self

    def add_text(self, text: str) -> "MixedContentBuilder":
        return self.add(TextContent(text=text))

    def add_image(self, data: str, mime_type: str) -> "MixedContentBuilder":
        return self.add(ImageContent(data=data, mimeType=mime_type))

    def add_audio(self, data: str, mime_type: str) -> "MixedContentBuilder":
        return self.add(AudioContent(data=data, mimeType=mime_type))

    def add_video(self, data: str, mime_type: str) -> "MixedContentBuilder":
        return self.add(VideoContent(data=data, mimeType=mime_type))

    def add_resource(self, resource: EmbeddedResource) -> "MixedContentBuilder":
        return self.add(resource)

    def add_text_resource(
        self, uri: str, text: str, mime_type: Optional[str] = "text/plain"
    ) -> "MixedContentBuilder":
        return self.add(EmbeddedResource.from_text(uri, text, mime_type))

    def add_blob_resource(
        self, uri: str, data: str, mime_type: Optional[str]
    ) -> "MixedContentBuilder":
        return self.add(EmbeddedResource.from_blob(uri, data, mime_type))

    def build(self) -> CallToolResult:
        """生成结果 (快照，之后的追加不影响已生成的结果)"""
        return CallToolResult(content=list(self._contents))
