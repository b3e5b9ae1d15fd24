"""
tiemcp CLI 入口

命令行检查工具：连接 MCP 服务器，列出并调用其能力。
- 服务器来自配置文件 (--server)，或临时指定 (--command / --url)
- 输出使用 rich 渲染，--json 输出原始 JSON
"""

from __future__ import annotations

import argparse
import asyncio
import json
import shlex
import sys
from dataclasses import replace
from typing import Any, List, Optional

from rich.console import Console
from rich.table import Table

from .client import MCPClient, MCPClientError
from .config import MCPConfig, configure_logging
from .transport import TransportError

VERSION = "0.1.0"

console = Console()
err_console = Console(stderr=True)


def build_parser() -> argparse.ArgumentParser:
    """创建命令行解析器"""
    parser = argparse.ArgumentParser(
        prog="tiemcp",
        description="tiemcp - MCP 服务器检查工具",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  tiemcp -s demo tools                          # 列出配置中 demo 服务器的工具
  tiemcp --command "python server.py" tools     # 临时启动 stdio 服务器
  tiemcp --url http://localhost:8080/sse ping   # SSE 服务器存活检测
  tiemcp -s demo call echo --args '{"input": "hello"}'
  tiemcp -s demo read "test://world"
        """,
    )

    parser.add_argument("-c", "--config", type=str, help="配置文件路径 (默认: config/mcp.yaml)")
    parser.add_argument("-s", "--server", type=str, help="配置文件中的服务器名称")
    parser.add_argument("--command", type=str, help="临时 stdio 服务器命令 (含参数)")
    parser.add_argument("--url", type=str, help="临时 SSE 服务器地址")
    parser.add_argument("-t", "--timeout", type=float, help="请求超时时间 (秒)")
    parser.add_argument("--json", action="store_true", help="输出原始 JSON")
    parser.add_argument("--log-level", type=str, help="日志级别 (默认: 配置文件或 WARNING)")
    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"tiemcp v{VERSION}",
    )

    subparsers = parser.add_subparsers(dest="action", required=True)
    subparsers.add_parser("tools", help="列出工具")
    subparsers.add_parser("prompts", help="列出提示")
    subparsers.add_parser("resources", help="列出资源与资源模板")
    subparsers.add_parser("ping", help="存活检测")

    call_parser = subparsers.add_parser("call", help="调用工具")
    call_parser.add_argument("tool", type=str, help="工具名称")
    call_parser.add_argument("--args", type=str, default="{}", help="JSON 格式的参数")

    prompt_parser = subparsers.add_parser("prompt", help="获取提示")
    prompt_parser.add_argument("name", type=str, help="提示名称")
    prompt_parser.add_argument("--args", type=str, default="{}", help="JSON 格式的参数")

    read_parser = subparsers.add_parser("read", help="读取资源")
    read_parser.add_argument("uri", type=str, help="资源 URI")

    return parser


def create_client(args: argparse.Namespace, config: MCPConfig) -> MCPClient:
    """根据命令行参数创建客户端"""
    timeout = args.timeout if args.timeout is not None else config.timeout

    if args.command:
        command, *command_args = shlex.split(args.command)
        return MCPClient(
            command=command,
            args=command_args,
            client_name=config.client_name,
            client_version=config.client_version,
            timeout=timeout,
        )

    if args.url:
        return MCPClient(
            url=args.url,
            client_name=config.client_name,
            client_version=config.client_version,
            timeout=timeout,
        )

    if args.server:
        server = config.get_server(args.server)
        if args.timeout is not None:
            server = replace(server, timeout=args.timeout)
        return MCPClient.from_config(server, config)

    enabled = list(config.enabled_servers)
    if len(enabled) == 1:
        return MCPClient.from_config(config.servers[enabled[0]], config)

    raise ValueError("请通过 --server、--command 或 --url 指定服务器")


def parse_json_args(text: str) -> dict:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"参数不是合法的 JSON: {e}") from e
    if not isinstance(value, dict):
        raise ValueError("参数必须是 JSON 对象")
    return value


def _print_json(value: Any) -> None:
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", exclude_none=True)
    elif isinstance(value, list):
        value = [
            item.model_dump(mode="json", exclude_none=True) if hasattr(item, "model_dump") else item
            for item in value
        ]
    console.print_json(json.dumps(value, ensure_ascii=False))


def _print_tools(tools: List[Any]) -> None:
    table = Table(title=f"工具 ({len(tools)})")
    table.add_column("名称", style="cyan")
    table.add_column("描述")
    table.add_column("必需参数", style="yellow")
    for tool in tools:
        required = ", ".join(tool.inputSchema.get("required", []))
        table.add_row(tool.name, tool.description or "", required)
    console.print(table)


def _print_prompts(prompts: List[Any]) -> None:
    table = Table(title=f"提示 ({len(prompts)})")
    table.add_column("名称", style="cyan")
    table.add_column("描述")
    table.add_column("参数", style="yellow")
    for item in prompts:
        arguments = ", ".join(
            f"{arg.name}{'*' if arg.required else ''}" for arg in item.arguments or []
        )
        table.add_row(item.name, item.description or "", arguments)
    console.print(table)


def _print_resources(resources: List[Any], templates: List[Any]) -> None:
    table = Table(title=f"资源 ({len(resources) + len(templates)})")
    table.add_column("URI", style="cyan")
    table.add_column("名称")
    table.add_column("MIME")
    for item in resources:
        table.add_row(item.uri, item.name, item.mimeType or "")
    for item in templates:
        table.add_row(item.uriTemplate, item.name, item.mimeType or "")
    console.print(table)


def _print_content(items: List[Any]) -> None:
    for item in items:
        if item.type == "text":
            console.print(item.text, markup=False)
        elif item.type == "resource":
            resource = item.resource
            console.print(f"[dim]资源 {resource.uri}[/dim]")
            if resource.text is not None:
                console.print(resource.text, markup=False)
        else:
            console.print(f"[dim]<{item.type} {item.mimeType}, {len(item.data)} 字节 base64>[/dim]")


async def run_command(args: argparse.Namespace, config: MCPConfig) -> int:
    """执行子命令，返回退出码"""
    client = create_client(args, config)

    await client.connect()
    try:
        await client.initialize()

        if args.action == "ping":
            await client.ping()
            info = client.server_info
            console.print(f"[green]✓[/green] {info.name} v{info.version} 在线")
            return 0

        if args.action == "tools":
            tools = await client.list_tools()
            if args.json:
                _print_json(tools)
            else:
                _print_tools(tools)
            return 0

        if args.action == "prompts":
            prompts = await client.list_prompts()
            if args.json:
                _print_json(prompts)
            else:
                _print_prompts(prompts)
            return 0

        if args.action == "resources":
            resources = await client.list_resources()
            templates = await client.list_resource_templates()
            if args.json:
                _print_json({"resources": [r.model_dump(exclude_none=True) for r in resources],
                             "resourceTemplates": [t.model_dump(exclude_none=True) for t in templates]})
            else:
                _print_resources(resources, templates)
            return 0

        if args.action == "call":
            result = await client.call_tool(args.tool, parse_json_args(args.args))
            if args.json:
                _print_json(result)
            else:
                if result.isError:
                    err_console.print("[red]✗[/red] 工具返回错误:")
                _print_content(result.content)
            return 1 if result.isError else 0

        if args.action == "prompt":
            result = await client.get_prompt(args.name, parse_json_args(args.args))
            if args.json:
                _print_json(result)
            else:
                if result.description:
                    console.print(f"[bold]{result.description}[/bold]")
                for message in result.messages:
                    console.print(f"[cyan]{message.role}:[/cyan]")
                    _print_content([message.content])
            return 0

        if args.action == "read":
            result = await client.read_resource(args.uri)
            if args.json:
                _print_json(result)
            else:
                for contents in result.contents:
                    if contents.text is not None:
                        console.print(contents.text, markup=False)
                    else:
                        console.print(f"[dim]<{contents.mimeType}, {len(contents.blob)} 字节 base64>[/dim]")
            return 0

        raise ValueError(f"未知命令: {args.action}")
    finally:
        await client.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    """主入口"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = MCPConfig.load(args.config)
    except (FileNotFoundError, ValueError) as e:
        err_console.print(f"[red]✗[/red] 加载配置失败: {e}")
        return 1

    configure_logging(args.log_level or config.log_level)

    try:
        return asyncio.run(run_command(args, config))
    except (MCPClientError, TransportError, ValueError, KeyError) as e:
        err_console.print(f"[red]✗[/red] {e}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
