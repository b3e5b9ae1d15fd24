"""Stdio 传输实现

- StreamTransport: 基于 asyncio 流的按行 JSON 传输
- StdioTransport: 启动子进程，通过其 stdin/stdout 通信 (客户端)
- StdioServerTransport: 使用当前进程的 stdin/stdout (服务器)
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .base import (
    MalformedFrameError,
    Message,
    Transport,
    TransportClosedError,
    TransportError,
    decode_frame,
    encode_frame,
    preview,
)

logger = logging.getLogger(__name__)

# 每次读取的块大小
READ_CHUNK_SIZE = 64 * 1024

# 默认继承的环境变量
DEFAULT_INHERITED_ENV_VARS = (
    ["HOME", "LOGNAME", "PATH", "SHELL", "TERM", "USER"]
    if sys.platform != "win32"
    else [
        "APPDATA",
        "HOMEDRIVE",
        "HOMEPATH",
        "LOCALAPPDATA",
        "PATH",
        "PATHEXT",
        "PROCESSOR_ARCHITECTURE",
        "SYSTEMDRIVE",
        "SYSTEMROOT",
        "TEMP",
        "USERNAME",
        "USERPROFILE",
    ]
)

# 进程终止超时
PROCESS_TERMINATION_TIMEOUT = 2.0


def get_default_environment() -> Dict[str, str]:
    """获取默认环境变量"""
    env: Dict[str, str] = {}
    for key in DEFAULT_INHERITED_ENV_VARS:
        value = os.environ.get(key)
        if value is not None and not value.startswith("()"):
            env[key] = value
    return env


class StreamTransport(Transport):
    """基于 asyncio 流的传输

    每行一个完整的 JSON 对象。读缓冲手动维护，不受 StreamReader 行长度限制，
    可以承载较大的 base64 内容。
    """

    def __init__(
        self,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Optional[Any] = None,
        encoding: str = "utf-8",
    ):
        self.encoding = encoding
        self._reader = reader
        self._writer = writer
        self._read_buffer = bytearray()
        self._read_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._reader is not None and self._writer is not None and not self._closed

    async def connect(self) -> None:
        if self._reader is None or self._writer is None:
            raise TransportError("未提供读写流")
        self._closed = False

    async def disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._close_writer()

    async def _close_writer(self) -> None:
        if self._writer is None:
            return
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def send(self, message: Message) -> None:
        """发送 JSON-RPC 消息"""
        if not self.is_connected:
            raise TransportClosedError("未连接")

        json_str = encode_frame(message)
        data = (json_str + "\n").encode(self.encoding)

        async with self._write_lock:
            logger.debug(f"发送: {preview(json_str)}")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, RuntimeError) as e:
                raise TransportClosedError(f"发送消息失败: {e}") from e

    async def receive(self) -> Dict[str, Any]:
        """接收 JSON-RPC 消息"""
        if self._reader is None or self._closed:
            raise TransportClosedError("未连接")

        async with self._read_lock:
            while True:
                line = await self._read_line()
                if line.strip():
                    break

        try:
            text = line.decode(self.encoding)
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f"消息不是合法的 {self.encoding} 文本: {e}") from e

        logger.debug(f"接收: {preview(text)}")
        return decode_frame(text)

    async def _read_line(self) -> bytes:
        """读取直到获得完整的一行"""
        while True:
            index = self._read_buffer.find(b"\n")
            if index >= 0:
                line = bytes(self._read_buffer[:index])
                del self._read_buffer[: index + 1]
                return line

            try:
                chunk = await self._reader.read(READ_CHUNK_SIZE)
            except (ConnectionError, OSError) as e:
                raise TransportClosedError(f"读取失败: {e}") from e

            if not chunk:
                # EOF 前残留的最后一帧
                if self._read_buffer.strip():
                    line = bytes(self._read_buffer)
                    self._read_buffer.clear()
                    return line
                raise TransportClosedError("连接已关闭")

            self._read_buffer.extend(chunk)


class StdioTransport(StreamTransport):
    """Stdio 传输实现

    通过子进程的 stdin/stdout 与 MCP 服务器通信。
    服务器的 stderr 默认继承当前进程。
    """

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        encoding: str = "utf-8",
        stderr: Any = None,
    ):
        """初始化 Stdio 传输

        Args:
            command: 服务器命令
            args: 命令参数
            env: 环境变量 (会与默认环境变量合并)
            cwd: 工作目录
            encoding: 编码
            stderr: 子进程 stderr 的去向，默认继承
        """
        super().__init__(encoding=encoding)
        self.command = command
        self.args = args or []
        self.env = {**get_default_environment(), **(env or {})}
        self.cwd = cwd
        self.stderr = stderr

        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return (
            self._process is not None
            and self._process.returncode is None
            and not self._closed
        )

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def connect(self) -> None:
        """启动子进程并建立连接"""
        if self.is_connected:
            return

        cmd = [self.command] + self.args
        logger.debug(f"启动 MCP 服务器: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=self.stderr,
                env=self.env,
                cwd=self.cwd,
            )
        except FileNotFoundError:
            raise TransportError(f"找不到命令: {self.command}")
        except PermissionError:
            raise TransportError(f"没有执行权限: {self.command}")
        except OSError as e:
            raise TransportError(f"启动服务器失败: {e}")

        self._reader = self._process.stdout
        self._writer = self._process.stdin
        self._read_buffer.clear()
        self._closed = False

        logger.info(f"MCP 服务器已启动 (PID: {self._process.pid})")

    async def disconnect(self) -> None:
        """断开连接并终止子进程"""
        if self._process is None:
            return

        self._closed = True
        process = self._process

        try:
            # 关闭 stdin，服务器读到 EOF 后应自行退出
            await self._close_writer()

            try:
                await asyncio.wait_for(process.wait(), timeout=PROCESS_TERMINATION_TIMEOUT)
            except asyncio.TimeoutError:
                # 超时则强制终止
                logger.warning("MCP 服务器未响应，强制终止")
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()

            logger.info("MCP 服务器已断开")

        except ProcessLookupError:
            pass
        finally:
            self._process = None
            self._reader = None
            self._writer = None
            self._read_buffer.clear()


class StdioServerTransport(StreamTransport):
    """服务器端 Stdio 传输

    读取当前进程的 stdin，写入 stdout。stdout 只能用于协议帧，日志须写到 stderr。
    """

    def __init__(self, stdin: Any = None, stdout: Any = None, encoding: str = "utf-8"):
        super().__init__(encoding=encoding)
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout

    async def connect(self) -> None:
        if self._reader is not None and not self._closed:
            return

        loop = asyncio.get_running_loop()

        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, self._stdin)

        write_transport, write_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, self._stdout
        )
        writer = asyncio.StreamWriter(write_transport, write_protocol, reader, loop)

        self._reader = reader
        self._writer = writer
        self._closed = False
        logger.debug("stdio 服务器传输已就绪")
