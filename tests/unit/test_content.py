"""内容模型单元测试"""

import pytest
from pydantic import ValidationError

from tiemcp.content import (
    AudioContent,
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    MixedContentBuilder,
    ResourceContents,
    TextContent,
    VideoContent,
)


class TestResourceContents:
    """ResourceContents 测试"""

    def test_text_resource(self):
        """测试文本资源默认 MIME"""
        contents = ResourceContents.from_text("test://a", "hello")
        assert contents.text == "hello"
        assert contents.blob is None
        assert contents.mimeType == "text/plain"

    def test_blob_from_bytes(self):
        """测试从字节创建二进制资源"""
        contents = ResourceContents.from_bytes("test://b", b"\x00\x01")
        assert contents.blob == "AAE="
        assert contents.text is None
        assert contents.mimeType == "application/octet-stream"

    def test_both_text_and_blob_rejected(self):
        """测试同时提供 text 与 blob"""
        with pytest.raises(ValidationError):
            ResourceContents(uri="test://c", text="x", blob="eA==")

    def test_neither_text_nor_blob_rejected(self):
        """测试两者都不提供"""
        with pytest.raises(ValidationError):
            ResourceContents(uri="test://d")


class TestContentTypes:
    """内容类型测试"""

    def test_text_wire_shape(self):
        """测试文本内容线上格式"""
        assert TextContent(text="hi").model_dump() == {"type": "text", "text": "hi"}

    def test_binary_wire_shape(self):
        """测试二进制内容线上格式"""
        image = ImageContent.from_bytes(b"png", "image/png")
        data = image.model_dump()
        assert data["type"] == "image"
        assert data["mimeType"] == "image/png"
        assert image.to_bytes() == b"png"

        assert AudioContent(data="YQ==", mimeType="audio/wav").type == "audio"
        assert VideoContent(data="dg==", mimeType="video/mp4").type == "video"

    def test_embedded_resource_wire_shape(self):
        """测试嵌入资源线上格式"""
        resource = EmbeddedResource.from_blob("test://bin", "AAE=", "application/pdf")
        assert resource.model_dump(exclude_none=True) == {
            "type": "resource",
            "resource": {"uri": "test://bin", "mimeType": "application/pdf", "blob": "AAE="},
        }

    def test_content_is_immutable(self):
        """测试内容不可变"""
        content = TextContent(text="a")
        with pytest.raises(ValidationError):
            content.text = "b"


class TestCallToolResult:
    """CallToolResult 测试"""

    def test_text_result(self):
        result = CallToolResult.text("hello")
        assert result.isError is False
        assert result.content == [TextContent(text="hello")]

    def test_error_result(self):
        """测试错误结果: isError 加一条文本"""
        result = CallToolResult.error("boom")
        assert result.isError is True
        assert len(result.content) == 1
        assert result.content[0].text == "boom"

    def test_mixed_preserves_order(self):
        """测试混合内容保持顺序"""
        items = [
            TextContent(text="1"),
            ImageContent(data="aW1n", mimeType="image/png"),
            TextContent(text="2"),
            EmbeddedResource.from_text("test://r", "r"),
        ]
        result = CallToolResult.mixed(items)
        assert [item.type for item in result.content] == ["text", "image", "text", "resource"]
        assert result.get_text() == "1\n2"

    def test_homogeneous_lists(self):
        images = [ImageContent(data="YQ==", mimeType="image/png")] * 2
        assert len(CallToolResult.images(images).content) == 2

    def test_parse_discriminated_content(self):
        """测试按 type 解析内容"""
        result = CallToolResult.model_validate(
            {
                "content": [
                    {"type": "text", "text": "a"},
                    {"type": "audio", "data": "YQ==", "mimeType": "audio/wav"},
                    {"type": "resource", "resource": {"uri": "x://y", "text": "t"}},
                ],
                "isError": False,
            }
        )
        assert isinstance(result.content[0], TextContent)
        assert isinstance(result.content[1], AudioContent)
        assert isinstance(result.content[2], EmbeddedResource)

    def test_unknown_content_type_rejected(self):
        with pytest.raises(ValidationError):
            CallToolResult.model_validate({"content": [{"type": "hologram"}]})


class TestMixedContentBuilder:
    """MixedContentBuilder 测试"""

    def test_build_in_append_order(self):
        result = (
            MixedContentBuilder()
            .add_text("intro")
            .add_audio("YQ==", "audio/mpeg")
            .add_video("dg==", "video/mp4")
            .add_blob_resource("test://b", "AAE=", "application/octet-stream")
            .build()
        )
        assert [item.type for item in result.content] == [
            "text",
            "audio",
            "video",
            "resource",
        ]
        assert result.isError is False

    def test_build_is_snapshot(self):
        """测试 build 后继续追加不影响已生成的结果"""
        builder = MixedContentBuilder().add_text("a")
        first = builder.build()
        builder.add_text("b")
        second = builder.build()

        assert len(first.content) == 1
        assert len(second.content) == 2
        assert len(builder) == 2

    def test_add_rejects_non_content(self):
        with pytest.raises(TypeError):
            MixedContentBuilder().add("plain string")
