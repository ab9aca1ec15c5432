"""
应用上下文 - 组合根

CLI（或其它宿主，如 HTTP 服务）通过 create_context() 拿到装配好的各组件，
组件之间只通过这里注入的引用协作，不存在模块级单例。
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from edgelink.core.adapters import JsonFileStore, SubprocessRunner
from edgelink.core.events import EventHub
from edgelink.core.ports import ICommandRunner, IDocumentStore
from edgelink.core.schema import EnvKey
from edgelink.lib.engine.installer import BinaryAcquirer
from edgelink.lib.engine.logs import LogAggregator
from edgelink.lib.engine.settings import DownloadSettings, load_settings
from edgelink.lib.engine.supervisor import EngineSupervisor
from edgelink.lib.proxy.registry import ProxyRegistry

DEFAULT_HOME = Path.home() / ".edgelink"
REGISTRY_FILENAME = "proxies.json"


def resolve_home(home: Optional[Path] = None) -> Path:
    """数据目录: 参数 > EDGELINK_HOME > ~/.edgelink"""
    if home is not None:
        return home
    env_home = os.environ.get(EnvKey.EDGELINK_HOME.value)
    return Path(env_home).expanduser() if env_home else DEFAULT_HOME


@dataclass
class AppContext:
    """
    应用上下文

    路径在创建时确定，各组件共享同一个 EventHub。
    """

    # === 路径 ===
    home: Path
    bin_dir: Path
    cache_dir: Path
    configs_dir: Path
    logs_dir: Path

    # === 注入的服务 ===
    cmd: ICommandRunner
    store: IDocumentStore
    settings: DownloadSettings
    events: EventHub

    # === 核心组件 ===
    logs: LogAggregator
    acquirer: BinaryAcquirer
    supervisor: EngineSupervisor
    registry: ProxyRegistry

    # === 运行时参数 ===
    debug: bool = False

    @property
    def log_file(self) -> Path:
        return self.logs_dir / "edgelink.log"


def create_context(
    home: Optional[Path] = None,
    debug: bool = False,
    cmd: Optional[ICommandRunner] = None,
    engine_path: Optional[Path] = None,
) -> AppContext:
    """装配所有组件

    Args:
        home:        数据目录（默认见 resolve_home）
        debug:       调试模式
        cmd:         短命令执行器（测试时注入 MockRunner）
        engine_path: 显式指定引擎；不指定时读 EDGELINK_ENGINE，仍没有则自动获取
    """
    home = resolve_home(home)
    bin_dir = home / "bin"
    cache_dir = home / "cache"
    configs_dir = home / "configs"
    logs_dir = home / "logs"
    for d in (bin_dir, cache_dir, configs_dir, logs_dir):
        d.mkdir(parents=True, exist_ok=True)

    if engine_path is None and os.environ.get(EnvKey.EDGELINK_ENGINE.value):
        engine_path = Path(os.environ[EnvKey.EDGELINK_ENGINE.value]).expanduser()

    cmd = cmd or SubprocessRunner()
    settings = load_settings(home)
    events = EventHub()
    store = JsonFileStore(home / REGISTRY_FILENAME)

    logs = LogAggregator(events=events)
    acquirer = BinaryAcquirer(
        bin_dir=bin_dir,
        cache_dir=cache_dir,
        settings=settings,
        runner=cmd,
        events=events,
    )
    supervisor = EngineSupervisor(
        engine_path=engine_path,
        acquirer=acquirer,
        logs=logs,
        events=events,
    )
    registry = ProxyRegistry(
        store=store,
        configs_dir=configs_dir,
        supervisor=supervisor,
        events=events,
    )

    return AppContext(
        home=home,
        bin_dir=bin_dir,
        cache_dir=cache_dir,
        configs_dir=configs_dir,
        logs_dir=logs_dir,
        cmd=cmd,
        store=store,
        settings=settings,
        events=events,
        logs=logs,
        acquirer=acquirer,
        supervisor=supervisor,
        registry=registry,
        debug=debug,
    )
