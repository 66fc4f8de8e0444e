"""
duolsp CLI 入口

在命令行中直接使用配置好的语言服务器：
- servers: 列出已配置的服务器和可用预设
- diagnostics: 打开文件并输出诊断
- definition / references / hover: 按位置查询
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import PRESETS, LSPSettings
from .diagnostics import format_diagnostics
from .manager import LSPManager, find_project_root
from .protocol import path_to_uri

logger = logging.getLogger(__name__)

DEFAULT_DIAGNOSTICS_WAIT = 3.0


def build_settings(config_path: Optional[str], presets: List[str]) -> LSPSettings:
    """加载配置文件，并追加命令行指定的预设"""
    if config_path:
        settings = LSPSettings.load(config_path)
    else:
        found = LSPSettings.find_config_file()
        settings = LSPSettings.from_yaml(found) if found else LSPSettings()

    for name in presets:
        if name not in PRESETS:
            raise ValueError(f"未知的预设: {name}（可用: {', '.join(PRESETS)}）")
        config = PRESETS[name]()
        settings.servers[config.name] = config

    return settings


def print_servers(console: Console, settings: LSPSettings) -> None:
    table = Table(title="LSP servers")
    table.add_column("Name", style="cyan")
    table.add_column("Command")
    table.add_column("Languages")
    table.add_column("Patterns")
    table.add_column("Auto start")
    table.add_column("Sync on change")

    for config in settings.servers.values():
        table.add_row(
            config.name,
            " ".join(config.argv),
            ", ".join(config.language_ids),
            ", ".join(config.file_patterns),
            "yes" if config.auto_start else "no",
            "yes" if config.sync_on_change else "no",
        )

    if settings.servers:
        console.print(table)
    else:
        console.print("[yellow]No servers configured.[/yellow]")
    console.print(f"[dim]Presets: {', '.join(PRESETS)}[/dim]")


async def start_for_file(manager: LSPManager, file_path: str) -> List[str]:
    """启动所有匹配该文件的服务器，并打开文件"""
    root = find_project_root(file_path)
    started = []
    for name in manager.registered_servers():
        config = manager.settings.servers.get(name)
        if config is None or not config.handles_file(file_path):
            continue
        await manager.start_server(name, root)
        if name in manager.running_servers():
            started.append(name)

    text = Path(file_path).read_text(encoding="utf-8", errors="replace")
    await manager.did_open(file_path, text)
    return started


async def run_command(args: argparse.Namespace, console: Console) -> int:
    """执行需要启动服务器的子命令"""
    settings = build_settings(args.config, args.preset)
    file_path = str(Path(args.file).resolve())
    if not Path(file_path).exists():
        console.print(f"[red]File not found: {args.file}[/red]")
        return 1

    on_message = None
    if args.verbose:
        on_message = lambda text: console.print(f"[dim]{text}[/dim]")  # noqa: E731
    manager = LSPManager(on_message=on_message, settings=settings)

    try:
        started = await start_for_file(manager, file_path)
        if not started:
            console.print(f"[red]{manager.server_unavailable_message(file_path)}[/red]")
            return 1

        if args.command == "diagnostics":
            await asyncio.sleep(args.wait)
            diagnostics = {
                path_to_uri(file_path): manager.diagnostics.diagnostics_for(path_to_uri(file_path))
            }
            if args.format == "json":
                print(json.dumps(
                    {uri: [d.to_dict() for d in diags] for uri, diags in diagnostics.items()},
                    ensure_ascii=False, indent=2,
                ))
            else:
                console.print(format_diagnostics(diagnostics))
            return 0

        # 命令行里的行列从 1 开始
        line, character = args.line - 1, args.column - 1

        if args.command == "hover":
            hover = await manager.hover(file_path, line, character)
            if hover is None:
                console.print(f"[yellow]{manager.last_message or 'No hover information'}[/yellow]")
                return 1
            if args.format == "json":
                print(json.dumps({"contents": hover.contents}, ensure_ascii=False, indent=2))
            else:
                console.print(Panel(hover.contents, title="hover", border_style="blue"))
            return 0

        if args.command == "definition":
            locations = await manager.definition(file_path, line, character)
        else:
            locations = await manager.references(file_path, line, character)

        if not locations:
            console.print(f"[yellow]{manager.last_message or 'No results'}[/yellow]")
            return 1
        if args.format == "json":
            print(json.dumps([loc.to_dict() for loc in locations], ensure_ascii=False, indent=2))
        else:
            for location in locations:
                console.print(location.format())
        return 0
    finally:
        await manager.stop_all()


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="duolsp",
        description="duolsp - 多语言服务器客户端",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  duolsp servers                                # 列出已配置的服务器
  duolsp --preset pyright diagnostics app.py    # 用预设检查文件
  duolsp definition lib/app.rb 12 5             # 跳转到定义（行列从 1 开始）
        """,
    )
    parser.add_argument("-c", "--config", help="配置文件路径 (默认查找 config/lsp.yaml)")
    parser.add_argument(
        "--preset",
        action="append",
        default=[],
        help="追加一个预设服务器，可重复使用",
    )
    parser.add_argument(
        "-f", "--format",
        choices=["text", "json"],
        default="text",
        help="输出格式 (默认: text)",
    )
    parser.add_argument("--verbose", action="store_true", help="输出调试日志")
    parser.add_argument("-v", "--version", action="version", version=f"duolsp v{__version__}")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("servers", help="列出服务器配置")

    diagnostics = subparsers.add_parser("diagnostics", help="输出文件的诊断")
    diagnostics.add_argument("file")
    diagnostics.add_argument(
        "--wait",
        type=float,
        default=DEFAULT_DIAGNOSTICS_WAIT,
        help=f"等待服务器推送诊断的秒数 (默认: {DEFAULT_DIAGNOSTICS_WAIT})",
    )

    for name, help_text in (
        ("definition", "查找定义"),
        ("references", "查找引用"),
        ("hover", "显示悬停信息"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("file")
        sub.add_argument("line", type=int)
        sub.add_argument("column", type=int)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主入口"""
    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    console = Console()

    if args.command is None:
        parser.print_help()
        return 1

    try:
        if args.command == "servers":
            print_servers(console, build_settings(args.config, args.preset))
            return 0
        return asyncio.run(run_command(args, console))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
