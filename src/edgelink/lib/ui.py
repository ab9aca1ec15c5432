"""
命令行 UI 工具

基于 rich（表格、面板、进度条）和 prompt_toolkit（交互输入）
"""
from typing import Any, Dict, List, Optional

from prompt_toolkit import prompt
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.validation import Validator
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

console = Console()

_LEVEL_STYLES = {
    "debug": "dim",
    "info": "cyan",
    "warn": "yellow",
    "error": "red",
}


# ============================================================
# 输入交互
# ============================================================
def prompt_input(
    message: str,
    default: str = "",
    completer_words: Optional[List[str]] = None,
    validator: Optional[Validator] = None,
) -> str:
    """带自动补全的输入提示，空输入返回默认值"""
    completer = WordCompleter(completer_words) if completer_words else None

    suffix = f" [{default}]" if default else ""
    result = prompt(
        f"{message}{suffix}: ",
        completer=completer,
        validator=validator,
    )
    return result.strip() or default


def prompt_confirm(message: str, default: bool = True) -> bool:
    """确认提示 (y/n)"""
    hint = "[Y/n]" if default else "[y/N]"
    result = prompt(f"{message} {hint}: ").strip().lower()

    if not result:
        return default
    return result in ("y", "yes", "是", "确认")


def prompt_select(
    message: str,
    options: List[str],
    default_index: int = 0,
) -> str:
    """单选菜单，输入序号或选项内容"""
    console.print(f"\n[bold cyan]{message}[/bold cyan]")

    for i, opt in enumerate(options):
        marker = "→" if i == default_index else " "
        console.print(f"  {marker} [{i + 1}] {opt}")

    result = prompt(f"请选择 [{default_index + 1}]: ").strip()
    if not result:
        return options[default_index]

    if result.isdigit():
        idx = int(result) - 1
        if 0 <= idx < len(options):
            return options[idx]
    for opt in options:
        if result.lower() == opt.lower():
            return opt
    return options[default_index]


def port_validator(message: str = "请输入 1-65535 之间的端口") -> Validator:
    return Validator.from_callable(
        lambda text: text.strip().isdigit() and 1 <= int(text.strip()) <= 65535,
        error_message=message,
        move_cursor_to_end=True,
    )


# ============================================================
# 输出美化
# ============================================================
def print_info(message: str) -> None:
    console.print(f"[cyan]ℹ[/cyan] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def print_panel(title: str, content: str, style: str = "blue") -> None:
    console.print(Panel(content, title=title, border_style=style))


def print_table(
    title: str,
    columns: List[str],
    rows: List[List[str]],
) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")

    for col in columns:
        table.add_column(col)

    for row in rows:
        table.add_row(*row)

    console.print(table)


def status_badge(status: str) -> str:
    if status == "running":
        return "[green]● 运行中[/green]"
    return "[dim]○ 已停止[/dim]"


def format_uptime(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def print_log_line(entry: Dict[str, Any]) -> None:
    """打印一条引擎日志（LogEntry.to_dict() 的结果）"""
    style = _LEVEL_STYLES.get(entry.get("level", "info"), "cyan")
    console.print(
        f"[dim]{entry.get('timestamp', '')[11:19]}[/dim] "
        f"[bold]{entry.get('proxyName', '')}[/bold] "
        f"[{style}]{entry.get('level', '').upper():5}[/{style}] "
        f"{escape(entry.get('message', ''))}",
        highlight=False,
        markup=True,
    )


# ============================================================
# 进度条
# ============================================================
def create_download_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
    )
