"""
EdgeLink 命令行入口

用法:
  edgelink list                        # 列出代理
  edgelink add mc1 --file mc1.yaml     # 从文件添加（不带 --file 时交互式输入）
  edgelink up                          # 启动全部代理并输出引擎日志，Ctrl+C 全部停止
  edgelink install                     # 下载安装 Xray 内核
"""
import argparse
import queue
import sys
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from edgelink import __version__
from edgelink.core.errors import ConfigError, EdgeLinkError, NotFoundError
from edgelink.core.events import EventQueue
from edgelink.core.interface import AppContext, create_context, resolve_home
from edgelink.core.schema import Network, Protocol, Security
from edgelink.core.utils import logger, setup_logger
from edgelink.lib import ui
from edgelink.lib.engine.installer import AcquisitionProgress
from edgelink.lib.engine.settings import update_mirror
from edgelink.lib.proxy.importer import import_proxies, load_engine_config
from edgelink.lib.utils import format_size, load_yaml


# ============================================================
# 辅助
# ============================================================
def _load_descriptor_file(path: Path) -> Dict[str, Any]:
    """读取 JSON / YAML 描述文件（YAML 是 JSON 的超集）"""
    if not path.is_file():
        raise ConfigError(f"文件不存在: {path}")
    data = load_yaml(path)
    if not isinstance(data, dict):
        raise ConfigError(f"文件内容必须是对象: {path}")
    return data


def _prompt_descriptor(name: str) -> Dict[str, Any]:
    """交互式输入代理描述"""
    ui.print_panel("新增代理", f"名称: {name}")

    descriptor: Dict[str, Any] = {
        "address": ui.prompt_input("服务器地址"),
        "port": int(ui.prompt_input("服务器端口", default="443", validator=ui.port_validator())),
        "localPort": int(ui.prompt_input("本地端口", default="1080", validator=ui.port_validator())),
    }

    protocol = ui.prompt_select("协议", [p.value for p in Protocol])
    descriptor["protocol"] = protocol
    if protocol == Protocol.TROJAN.value:
        descriptor["password"] = ui.prompt_input("密码")
    else:
        descriptor["userId"] = ui.prompt_input("用户 ID (UUID)", default=str(uuid.uuid4()))

    network = ui.prompt_select("传输方式", [n.value for n in Network])
    security = ui.prompt_select("传输层安全", [s.value for s in Security], default_index=1)
    stream: Dict[str, Any] = {"network": network, "security": security}

    if network in (Network.WS.value, Network.H2.value, Network.XHTTP.value):
        stream["path"] = ui.prompt_input("路径", default="/")
        host = ui.prompt_input("Host (可留空)")
        if host:
            stream["host"] = host
    elif network == Network.GRPC.value:
        stream["serviceName"] = ui.prompt_input("gRPC serviceName")

    if security != Security.NONE.value:
        server_name = ui.prompt_input("SNI (留空使用服务器地址)")
        if server_name:
            stream["serverName"] = server_name
    if security == Security.TLS.value:
        stream["allowInsecure"] = ui.prompt_confirm("跳过证书校验 (不安全)", default=False)
    elif security == Security.REALITY.value:
        stream["publicKey"] = ui.prompt_input("REALITY publicKey")
        stream["shortId"] = ui.prompt_input("REALITY shortId (可留空)")

    descriptor["streamSettings"] = stream
    return descriptor


def _run_with_progress(
    description: str,
    action: Callable[[Callable[[AcquisitionProgress], None]], Any],
) -> Any:
    """带进度条执行内核下载类操作"""
    with ui.create_download_progress() as progress:
        task = progress.add_task(description, total=None)

        def on_progress(p: AcquisitionProgress) -> None:
            if p.stage == "download" and p.total:
                progress.update(task, completed=p.downloaded, total=p.total)
            elif p.stage == "complete":
                progress.update(task, description=f"{description} ✓")
            else:
                progress.update(task, description=f"{description} ({p.stage})")

        return action(on_progress)


def _ensure_engine(ctx: AppContext) -> None:
    if ctx.supervisor.engine_path is not None:
        return
    path = _run_with_progress(
        "Xray",
        lambda on_progress: ctx.acquirer.ensure_available(on_progress=on_progress),
    )
    ctx.supervisor.engine_path = path


# ============================================================
# CLI 命令 - 代理管理
# ============================================================
def cmd_list(ctx: AppContext, args: argparse.Namespace) -> None:
    proxies = ctx.registry.list()
    if not proxies:
        ui.print_info("暂无代理，使用 edgelink add <名称> 添加")
        return

    rows: List[List[str]] = []
    for p in proxies:
        network = (p.get("streamSettings") or {}).get("network", "tcp")
        rows.append([
            p["name"],
            f"{p['protocol']}/{network}",
            f"{p['address']}:{p['port']}",
            f"127.0.0.1:{p['localPort']}",
            ui.status_badge(p["status"]),
            ui.format_uptime(p.get("uptime")),
        ])

    ui.print_table(
        title=f"代理 ({len(proxies)} 个)",
        columns=["名称", "协议", "服务器", "本地监听", "状态", "运行时长"],
        rows=rows,
    )


def cmd_show(ctx: AppContext, args: argparse.Namespace) -> None:
    details = ctx.registry.get_details(args.name)
    if details is None:
        raise NotFoundError(args.name)
    lines = [f"{key}: {value}" for key, value in details.items() if value is not None and key != "streamSettings"]
    stream = details.get("streamSettings")
    if stream:
        lines.append("streamSettings:")
        lines.extend(f"  {key}: {value}" for key, value in stream.items())
    ui.print_panel(args.name, "\n".join(lines))


def cmd_add(ctx: AppContext, args: argparse.Namespace) -> None:
    if args.file:
        descriptor = _load_descriptor_file(Path(args.file))
    else:
        descriptor = _prompt_descriptor(args.name)
    ctx.registry.add(args.name, descriptor)
    ui.print_success(f"已添加代理 {args.name}")


def cmd_update(ctx: AppContext, args: argparse.Namespace) -> None:
    descriptor = _load_descriptor_file(Path(args.file))
    details = ctx.registry.update(args.name, descriptor)
    ui.print_success(f"已更新代理 {args.name} ({details['status']})")


def cmd_delete(ctx: AppContext, args: argparse.Namespace) -> None:
    if not args.force and not ui.prompt_confirm(f"确认删除代理 {args.name}？", default=False):
        ui.print_info("已取消")
        return
    ctx.registry.delete(args.name)
    ui.print_success(f"已删除代理 {args.name}")


def cmd_stats(ctx: AppContext, args: argparse.Namespace) -> None:
    stats = ctx.registry.stats()
    log_stats = ctx.logs.statistics()
    ui.print_panel(
        "统计",
        f"代理总数: {stats['total']}\n运行中: {stats['running']}\n已停止: {stats['stopped']}\n"
        f"日志条数: {log_stats['total']}",
    )


def cmd_import(ctx: AppContext, args: argparse.Namespace) -> None:
    config = load_engine_config(Path(args.file))
    results = import_proxies(ctx.registry, config)
    if not results:
        ui.print_warning("未在配置文件中找到可导入的代理 (vless / vmess / trojan)")
        return

    for result in results:
        if result.ok:
            ui.print_success(f"已导入 {result.name}")
        else:
            ui.print_error(f"{result.name}: {result.error}")

    imported = sum(1 for r in results if r.ok)
    ui.print_info(f"导入完成: {imported}/{len(results)}")
    if not imported:
        sys.exit(1)


def cmd_up(ctx: AppContext, args: argparse.Namespace) -> None:
    names = args.names or ctx.registry.names()
    if not names:
        ui.print_warning("没有可启动的代理")
        return

    _ensure_engine(ctx)
    listener = ctx.events.register(EventQueue())

    try:
        for name in names:
            try:
                details = ctx.registry.start(name)
                ui.print_success(f"{name} 已启动，本地端口 {details['localPort']}")
            except EdgeLinkError as e:
                ui.print_error(e.message)

        if not ctx.supervisor.running_names():
            ui.print_error("没有代理启动成功")
            sys.exit(1)

        ui.print_info("按 Ctrl+C 停止全部代理")
        while ctx.supervisor.running_names():
            try:
                event = listener.get(timeout=0.5)
            except queue.Empty:
                continue
            if event.type == "log_added":
                ui.print_log_line(event.payload)
            elif event.type == "process_exited" and not event.payload["requested"]:
                ui.print_warning(f"{event.payload['name']} 已退出 (code={event.payload['returncode']})")
    except KeyboardInterrupt:
        ui.console.print("")
        ui.print_info("正在停止...")
    finally:
        for result in ctx.registry.stop_all():
            if not result.ok:
                ui.print_warning(f"停止 {result.name} 失败: {result.error}")
        ctx.events.unregister(listener)


# ============================================================
# CLI 命令 - 内核
# ============================================================
def cmd_install(ctx: AppContext, args: argparse.Namespace) -> None:
    path = _run_with_progress(
        "Xray",
        lambda on_progress: ctx.acquirer.download_and_install(
            on_progress=on_progress, force_update=args.force,
        ),
    )
    ui.print_success(f"Xray {ctx.acquirer.get_current_version()} 已就绪: {path}")


def cmd_check_update(ctx: AppContext, args: argparse.Namespace) -> None:
    result = ctx.acquirer.check_for_updates()
    if result.error:
        ui.print_warning(f"检查更新失败: {result.error}")
    elif result.reason == "not_installed":
        ui.print_info(f"尚未安装，最新版本 {result.latest_version}")
    elif result.needs_update:
        ui.print_info(f"有新版本: {result.current_version} → {result.latest_version}")
    else:
        ui.print_success(f"已是最新版本 ({result.current_version})")


def cmd_cache(ctx: AppContext, args: argparse.Namespace) -> None:
    entries = ctx.acquirer.cache_info()
    if not entries:
        ui.print_info("没有下载缓存")
        return
    ui.print_table(
        title="下载缓存",
        columns=["文件", "大小"],
        rows=[[entry.name, format_size(entry.size_bytes)] for entry in entries],
    )
    ui.print_info(f"缓存总大小: {format_size(sum(e.size_bytes for e in entries))}")


def cmd_clean_cache(ctx: AppContext, args: argparse.Namespace) -> None:
    scope = "全部" if args.all else "保留最新的一个"
    if not args.force and not ui.prompt_confirm(f"清理下载缓存（{scope}）？", default=False):
        ui.print_info("已取消")
        return

    results = ctx.acquirer.clean_cache(keep_latest=not args.all)
    if not results:
        ui.print_info("没有需要清理的缓存")
        return

    freed = 0
    for result in results:
        if result.success:
            freed += result.freed_bytes
            ui.print_success(f"已清理: {result.path}")
        else:
            ui.print_warning(f"清理失败: {result.path} ({result.error})")
    ui.print_success(f"共释放空间: {format_size(freed)}")


def cmd_mirror(ctx: AppContext, args: argparse.Namespace) -> None:
    if args.type:
        try:
            ctx.settings = update_mirror(ctx.home, args.type)
        except ValueError as e:
            raise ConfigError(str(e))
        ctx.acquirer.settings = ctx.settings
        ui.print_success(f"下载镜像: {ctx.settings.current_mirror.name}")
        return

    rows: List[List[str]] = []
    for key, mirror in ctx.settings.mirrors.items():
        marker = "[green]●[/green]" if key == ctx.settings.mirror else ""
        rows.append([marker, key, mirror.name, mirror.base_url, mirror.description or ""])
    ui.print_table(
        title="下载镜像（只影响归档下载）",
        columns=["", "类型", "名称", "地址", "说明"],
        rows=rows,
    )


COMMANDS: Dict[str, Callable[[AppContext, argparse.Namespace], None]] = {
    "list": cmd_list,
    "show": cmd_show,
    "add": cmd_add,
    "update": cmd_update,
    "delete": cmd_delete,
    "stats": cmd_stats,
    "import": cmd_import,
    "up": cmd_up,
    "install": cmd_install,
    "check-update": cmd_check_update,
    "cache": cmd_cache,
    "clean-cache": cmd_clean_cache,
    "mirror": cmd_mirror,
}


# ============================================================
# 入口
# ============================================================
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="edgelink",
        description="EdgeLink - Xray 代理管理器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
环境变量:
  EDGELINK_HOME      数据目录 (默认 ~/.edgelink)
  EDGELINK_ENGINE    指定 Xray 可执行文件，跳过自动下载
        """,
    )
    parser.add_argument("--debug", action="store_true", help="调试模式")
    parser.add_argument("--home", type=Path, help="数据目录")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list", help="列出代理")

    show = sub.add_parser("show", help="查看代理详情")
    show.add_argument("name")

    add = sub.add_parser("add", help="新增代理")
    add.add_argument("name")
    add.add_argument("--file", help="描述文件 (JSON / YAML)，不提供则交互式输入")

    update = sub.add_parser("update", help="更新代理")
    update.add_argument("name")
    update.add_argument("--file", required=True, help="描述文件 (JSON / YAML)")

    delete = sub.add_parser("delete", help="删除代理")
    delete.add_argument("name")
    delete.add_argument("-f", "--force", action="store_true", help="跳过确认")

    sub.add_parser("stats", help="统计信息")

    import_ = sub.add_parser("import", help="从现有 Xray config.json 导入代理")
    import_.add_argument("file", help="Xray 配置文件 (JSON)")

    up = sub.add_parser("up", help="启动代理并输出日志")
    up.add_argument("names", nargs="*", help="代理名称，默认全部")

    install = sub.add_parser("install", help="下载安装 Xray 内核")
    install.add_argument("--force", action="store_true", help="即使已是最新版本也重新安装")

    sub.add_parser("check-update", help="检查内核更新")
    sub.add_parser("cache", help="查看下载缓存")

    clean = sub.add_parser("clean-cache", help="清理下载缓存")
    clean.add_argument("--all", action="store_true", help="清理全部（默认保留最新的一个）")
    clean.add_argument("-f", "--force", action="store_true", help="跳过确认")

    mirror = sub.add_parser("mirror", help="查看或切换下载镜像")
    mirror.add_argument("type", nargs="?", help="镜像类型，如 github / bgithub / ghproxy")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.cmd:
        parser.print_help()
        return

    # 初始化日志（必须在所有其他操作之前）
    home = resolve_home(args.home)
    setup_logger(home / "logs" / "edgelink.log", debug=args.debug)

    try:
        ctx = create_context(home=home, debug=args.debug)
        COMMANDS[args.cmd](ctx, args)
    except EdgeLinkError as e:
        logger.debug(f"  -> 命令 {args.cmd} 失败: {e.to_dict()}")
        ui.print_error(e.message)
        sys.exit(1)
    except KeyboardInterrupt:
        ui.print_warning("已中断")
        sys.exit(130)


if __name__ == "__main__":
    main()
