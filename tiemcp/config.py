"""配置管理

配置文件示例 (config/mcp.yaml):

    client_name: tiemcp
    timeout: 30
    log_level: INFO
    servers:
      demo:
        command: python
        args: ["demo_server.py"]
        env:
          DEMO_MODE: "1"
      remote:
        url: http://localhost:8080/sse
        enabled: false
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

LOG_LEVEL_ENV = "TIEMCP_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "WARNING") -> None:
    """配置日志输出到 stderr

    stdio 服务器的 stdout 专用于协议帧，日志不能写到 stdout。
    环境变量 TIEMCP_LOG_LEVEL 优先于参数。
    """
    level_name = (os.environ.get(LOG_LEVEL_ENV) or level or "WARNING").upper()
    numeric = logging.getLevelName(level_name)
    if not isinstance(numeric, int):
        numeric = logging.WARNING

    root = logging.getLogger("tiemcp")
    root.setLevel(numeric)
    for handler in list(root.handlers):
        if getattr(handler, "_tiemcp_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._tiemcp_handler = True
    root.addHandler(handler)


@dataclass
class ServerConfig:
    """MCP 服务器配置

    command 与 url 二选一: command 通过 stdio 启动子进程，url 使用 SSE 连接。
    """

    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    timeout: Optional[float] = None

    @property
    def transport(self) -> str:
        return "sse" if self.url else "stdio"

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ServerConfig":
        if not isinstance(data, dict):
            raise ValueError(f"服务器 '{name}' 的配置必须是映射")

        config = cls(
            command=data.get("command"),
            args=[str(arg) for arg in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            url=data.get("url"),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            enabled=data.get("enabled", True),
            timeout=data.get("timeout"),
        )
        if not config.command and not config.url:
            raise ValueError(f"服务器 '{name}' 需要 command 或 url")
        return config


@dataclass
class MCPConfig:
    """MCP 客户端配置"""

    client_name: str = "tiemcp"
    client_version: str = "0.1.0"
    timeout: float = 30.0
    log_level: str = "WARNING"
    servers: Dict[str, ServerConfig] = field(default_factory=dict)

    def __post_init__(self):
        env_level = os.environ.get(LOG_LEVEL_ENV)
        if env_level:
            self.log_level = env_level.upper()

    @property
    def enabled_servers(self) -> Dict[str, ServerConfig]:
        return {name: server for name, server in self.servers.items() if server.enabled}

    def get_server(self, name: str) -> ServerConfig:
        if name not in self.servers:
            raise KeyError(f"配置中没有服务器 '{name}'")
        return self.servers[name]

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "MCPConfig":
        """加载配置

        指定的文件不存在时抛出 FileNotFoundError；
        未指定且找不到配置文件时返回默认配置。
        """
        if config_path is not None:
            if not Path(config_path).exists():
                raise FileNotFoundError(f"配置文件未找到: {config_path}")
            return cls.from_yaml(config_path)

        found = cls._find_config_file()
        if found is None:
            return cls()
        return cls.from_yaml(found)

    @classmethod
    def _find_config_file(cls) -> Path | None:
        """查找配置文件"""
        # 优先级: 当前目录 > 用户目录
        search_paths = [
            Path.cwd() / "config" / "mcp.yaml",
            Path.home() / ".tiemcp" / "mcp.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "MCPConfig":
        """从 YAML 文件加载配置"""
        config_path = Path(config_path)

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MCPConfig":
        if not isinstance(data, dict):
            raise ValueError("配置文件格式错误: 顶层必须是映射")

        servers: Dict[str, ServerConfig] = {}
        for server_name, server_data in (data.get("servers") or {}).items():
            servers[server_name] = ServerConfig.from_dict(server_name, server_data)

        return cls(
            client_name=data.get("client_name", "tiemcp"),
            client_version=str(data.get("client_version", "0.1.0")),
            timeout=float(data.get("timeout", 30.0)),
            log_level=str(data.get("log_level", "WARNING")).upper(),
            servers=servers,
        )
