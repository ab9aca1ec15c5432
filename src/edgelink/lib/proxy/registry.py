"""
ProxyRegistry - 代理注册表

持有所有代理描述，编排 ConfigValidator → ConfigGenerator → EngineSupervisor:
- add / update / delete:  校验 → 生成配置文件 → 保存
- start / stop / restart: 委托 Supervisor，并维护 status / 时间戳记账
- list / get_details / stats: 以 Supervisor 的实时状态为准（记录里的 status 可能过期）

每次变更都会整体写回 proxies.json 并广播 on_registry_changed。
同一代理的操作串行执行；写盘另有一把锁串行化。
"""
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from edgelink.core.adapters import write_json_atomic
from edgelink.core.errors import (
    AlreadyRunningError,
    DuplicateNameError,
    EdgeLinkError,
    NotFoundError,
    NotRunningError,
    ProcessStartFailed,
    ValidationError,
)
from edgelink.core.events import EventHub, hookimpl
from edgelink.core.ports import IDocumentStore
from edgelink.core.schema import ProcessState, ProxyStatus
from edgelink.core.utils import NamedLocks, isoformat, logger, utc_now
from edgelink.lib.engine.config import ConfigGenerator
from edgelink.lib.engine.supervisor import EngineSupervisor, StopResult
from edgelink.lib.engine.validator import ConfigValidator, normalize_descriptor
from edgelink.lib.proxy.schema import ProxyDescriptor, ProxyRecord

PROXIES_KEY = "proxies"

_UNSAFE_FILENAME_RE = re.compile(r"[^\w.-]")


def config_filename(name: str) -> str:
    """代理名 → 配置文件名"""
    return f"{_UNSAFE_FILENAME_RE.sub('_', name)}.json"


class _ProcessExitListener:
    """把进程意外退出同步到注册表记账"""

    def __init__(self, registry: "ProxyRegistry") -> None:
        self._registry = registry

    @hookimpl
    def on_process_exited(self, name: str, returncode: Optional[int], requested: bool) -> None:
        if not requested:
            self._registry._mark_exited(name)


class ProxyRegistry:
    """代理注册表"""

    def __init__(
        self,
        store: IDocumentStore,
        configs_dir: Path,
        supervisor: EngineSupervisor,
        generator: Optional[ConfigGenerator] = None,
        validator: Optional[ConfigValidator] = None,
        events: Optional[EventHub] = None,
    ) -> None:
        self.store = store
        self.configs_dir = configs_dir
        self.supervisor = supervisor
        self.generator = generator or ConfigGenerator()
        self.validator = validator or ConfigValidator()
        self.events = events

        self._proxies: Dict[str, ProxyRecord] = {}
        self._map_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._locks = NamedLocks()

        self._load()
        if events is not None:
            events.register(_ProcessExitListener(self))

    # ── 持久化 ──────────────────────────────────────────────

    def _load(self) -> None:
        data = self.store.load()
        for name, raw in (data.get(PROXIES_KEY) or {}).items():
            try:
                record = ProxyRecord.model_validate(raw)
            except SchemaError as e:
                logger.warning(f"  -> [WARN] 跳过无效的代理记录 {name}: {e}")
                continue
            # 启动时没有任何存活进程
            record.status = ProxyStatus.STOPPED
            self._proxies[name] = record
        logger.debug(f"  -> 已加载 {len(self._proxies)} 个代理")

    def _persist(self) -> None:
        with self._persist_lock:
            with self._map_lock:
                snapshot = {name: record.to_dict() for name, record in self._proxies.items()}
            self.store.save({PROXIES_KEY: snapshot})

    def _notify(self) -> None:
        if self.events is None:
            return
        proxies = self.list()
        self.events.registry_changed(proxies, self._count(proxies))

    # ── 内部工具 ────────────────────────────────────────────

    def _require(self, name: str) -> ProxyRecord:
        with self._map_lock:
            record = self._proxies.get(name)
        if record is None:
            raise NotFoundError(name)
        return record

    def _prepare(
        self, name: str, descriptor: Union[Mapping, BaseModel],
    ) -> Tuple[ProxyDescriptor, Dict[str, Any]]:
        """校验描述并生成引擎配置（不触碰任何进程或文件）"""
        if isinstance(descriptor, BaseModel):
            descriptor = descriptor.model_dump(by_alias=True, exclude_none=True, mode="json")
        data = normalize_descriptor(descriptor)
        data["name"] = name

        self.validator.validate(data).raise_if_invalid()
        try:
            model = ProxyDescriptor.model_validate(data)
        except SchemaError as e:
            raise ValidationError([
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            ])
        config = self.generator.generate(model)
        self.validator.validate_engine_config(config).raise_if_invalid(prefix="生成的引擎配置无效")
        return model, config

    def _write_config(self, name: str, config: Dict[str, Any]) -> Path:
        path = self.configs_dir / config_filename(name)
        write_json_atomic(path, config)
        return path

    def _mark_stopped(self, record: ProxyRecord) -> None:
        record.status = ProxyStatus.STOPPED
        record.last_stopped = isoformat(utc_now())

    def _mark_exited(self, name: str) -> None:
        with self._locks.get(name):
            with self._map_lock:
                record = self._proxies.get(name)
            if record is None or self.supervisor.is_running(name):
                return
            self._mark_stopped(record)
            self._persist()
        logger.warning(f"  -> [WARN] {name} 已退出，状态已更新为 stopped")
        self._notify()

    def _view(self, record: ProxyRecord) -> Dict[str, Any]:
        """记录 + Supervisor 实时状态"""
        live = self.supervisor.status(record.name)
        running = live.status != ProcessState.STOPPED
        data = record.to_dict()
        data["status"] = (ProxyStatus.RUNNING if running else ProxyStatus.STOPPED).value
        data["pid"] = live.pid
        data["startTime"] = live.start_time
        data["uptime"] = live.uptime
        return data

    @staticmethod
    def _count(proxies: List[Dict[str, Any]]) -> Dict[str, int]:
        running = sum(1 for p in proxies if p["status"] == ProxyStatus.RUNNING.value)
        return {"total": len(proxies), "running": running, "stopped": len(proxies) - running}

    # ── 增删改 ──────────────────────────────────────────────

    def add(self, name: str, descriptor: Union[Mapping, BaseModel]) -> Dict[str, Any]:
        """新增代理

        Raises:
            DuplicateNameError / ValidationError / ConfigError
        """
        with self._locks.get(name):
            with self._map_lock:
                exists = name in self._proxies
            if exists:
                raise DuplicateNameError(name)

            model, config = self._prepare(name, descriptor)
            path = self._write_config(name, config)
            now = isoformat(utc_now())
            record = ProxyRecord.model_validate({
                **model.to_dict(),
                "configPath": str(path),
                "status": ProxyStatus.STOPPED.value,
                "createdAt": now,
                "updatedAt": now,
            })
            with self._map_lock:
                self._proxies[name] = record
            self._persist()

        logger.info(f"  -> ✓ 已添加代理 {name} ({model.protocol}://{model.address}:{model.port})")
        self._notify()
        return self.get_details(name)

    def update(self, name: str, descriptor: Union[Mapping, BaseModel]) -> Dict[str, Any]:
        """更新代理；运行中的代理会先停止，更新后按新配置重启

        中途任一步失败，记录都会停在 stopped。

        Raises:
            NotFoundError / ValidationError / ConfigError / ProcessStartFailed
        """
        with self._locks.get(name):
            current = self._require(name)
            model, config = self._prepare(name, descriptor)
            was_running = self.supervisor.is_running(name)

            try:
                if was_running:
                    try:
                        self.supervisor.stop(name)
                    except NotRunningError:
                        pass
                    self._mark_stopped(current)

                path = self._write_config(name, config)
                record = ProxyRecord.model_validate({
                    **model.to_dict(),
                    "configPath": str(path),
                    "status": ProxyStatus.STOPPED.value,
                    "createdAt": current.created_at,
                    "updatedAt": isoformat(utc_now()),
                    "lastStarted": current.last_started,
                    "lastStopped": current.last_stopped,
                })
                with self._map_lock:
                    self._proxies[name] = record

                if was_running:
                    self.supervisor.start(name, path)
                    record.status = ProxyStatus.RUNNING
                    record.last_started = isoformat(utc_now())
            finally:
                self._persist()
                self._notify()

        logger.info(f"  -> ✓ 已更新代理 {name}")
        return self.get_details(name)

    def delete(self, name: str) -> None:
        """删除代理（运行中先停止），同时删除配置文件

        Raises:
            NotFoundError
        """
        with self._locks.get(name):
            record = self._require(name)
            if self.supervisor.is_running(name):
                try:
                    self.supervisor.stop(name)
                except NotRunningError:
                    pass
            if record.config_path:
                Path(record.config_path).unlink(missing_ok=True)
            with self._map_lock:
                del self._proxies[name]
            self._persist()

        logger.info(f"  -> ✓ 已删除代理 {name}")
        self._notify()

    # ── 启停 ────────────────────────────────────────────────

    def start(self, name: str) -> Dict[str, Any]:
        """启动代理

        Raises:
            NotFoundError / AlreadyRunningError / ProcessStartFailed
        """
        with self._locks.get(name):
            record = self._require(name)
            if self.supervisor.is_running(name):
                raise AlreadyRunningError(name)

            path = Path(record.config_path) if record.config_path else None
            if path is None or not path.is_file():
                # 配置文件丢失时按描述重新生成
                _, config = self._prepare(name, record.descriptor())
                path = self._write_config(name, config)
                record.config_path = str(path)

            try:
                self.supervisor.start(name, path)
            except ProcessStartFailed:
                self._mark_stopped(record)
                self._persist()
                self._notify()
                raise

            record.status = ProxyStatus.RUNNING
            record.last_started = isoformat(utc_now())
            self._persist()

        self._notify()
        return self.get_details(name)

    def stop(self, name: str) -> None:
        """停止代理

        记账为 running 但实际没有进程时，修正为 stopped 并抛出 NotRunningError。

        Raises:
            NotFoundError / NotRunningError
        """
        with self._locks.get(name):
            record = self._require(name)
            try:
                self.supervisor.stop(name)
            except NotRunningError:
                if record.status == ProxyStatus.RUNNING:
                    self._mark_stopped(record)
                    self._persist()
                    self._notify()
                raise

            self._mark_stopped(record)
            self._persist()

        self._notify()

    def restart(self, name: str) -> Dict[str, Any]:
        """重启代理

        Raises:
            NotFoundError / NotRunningError / ProcessStartFailed
        """
        with self._locks.get(name):
            record = self._require(name)
            try:
                self.supervisor.restart(name)
            except NotRunningError:
                if record.status == ProxyStatus.RUNNING:
                    self._mark_stopped(record)
                    self._persist()
                    self._notify()
                raise
            except ProcessStartFailed:
                self._mark_stopped(record)
                self._persist()
                self._notify()
                raise

            record.status = ProxyStatus.RUNNING
            record.last_started = isoformat(utc_now())
            self._persist()

        self._notify()
        return self.get_details(name)

    def stop_all(self) -> List[StopResult]:
        """停止所有运行中的代理，单个失败不影响其它"""
        results: List[StopResult] = []
        for name in self.supervisor.running_names():
            try:
                self.stop(name)
                results.append(StopResult(name=name, ok=True))
            except EdgeLinkError as e:
                logger.error(f"  -> ✗ 停止 {name} 失败: {e.message}")
                results.append(StopResult(name=name, ok=False, error=e.message))
        return results

    # ── 查询 ────────────────────────────────────────────────

    def list(self) -> List[Dict[str, Any]]:
        with self._map_lock:
            records = list(self._proxies.values())
        return [self._view(record) for record in records]

    def get_details(self, name: str) -> Optional[Dict[str, Any]]:
        """未知名称返回 None"""
        with self._map_lock:
            record = self._proxies.get(name)
        return self._view(record) if record is not None else None

    def get_descriptor(self, name: str) -> ProxyDescriptor:
        return self._require(name).descriptor()

    def names(self) -> List[str]:
        with self._map_lock:
            return list(self._proxies)

    def stats(self) -> Dict[str, int]:
        return self._count(self.list())
