"""
EngineSupervisor - 每个代理一个 Xray 子进程

状态机: (无) → starting → running → 退出后移除
       starting 期间（宽限期内）退出 → ProcessStartFailed，记录直接移除

每个进程配三个守护线程: stdout / stderr 读取（逐行转发到 LogAggregator）和退出监视。
同一名称的操作由按名称分配的锁串行化，不同名称互不阻塞。
进程意外退出不会自动重启，只通过 on_process_exited 通知上层。
"""
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Deque, Dict, List, Optional, Union

from edgelink.core.errors import (
    AcquisitionError,
    AlreadyRunningError,
    EdgeLinkError,
    NotRunningError,
    ProcessStartFailed,
)
from edgelink.core.events import EventHub
from edgelink.core.schema import LogSource, ProcessState
from edgelink.core.utils import NamedLocks, isoformat, logger, utc_now

STDERR_TAIL_LINES = 20


@dataclass
class EngineProcessRecord:
    """一个存活的引擎进程（仅内存）"""
    proxy_name: str
    process: subprocess.Popen
    config_path: Path
    start_time: datetime
    status: ProcessState = ProcessState.STARTING
    stop_requested: bool = False
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    readers: List[threading.Thread] = field(default_factory=list)
    # start() 判定完成（成功或立即失败）后置位
    settled: threading.Event = field(default_factory=threading.Event)
    start_failed: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass
class ProcessStatus:
    status: ProcessState
    pid: Optional[int] = None
    start_time: Optional[str] = None
    uptime: Optional[float] = None
    config_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "pid": self.pid,
            "startTime": self.start_time,
            "uptime": self.uptime,
            "configPath": self.config_path,
        }


@dataclass
class StopResult:
    name: str
    ok: bool
    error: Optional[str] = None


class EngineSupervisor:
    """引擎进程管理器"""

    def __init__(
        self,
        engine_path: Optional[Union[Path, str]] = None,
        acquirer: Optional[Any] = None,
        logs: Optional[Any] = None,
        events: Optional[EventHub] = None,
        grace_period: float = 2.0,
        stop_timeout: float = 5.0,
        restart_delay: float = 1.0,
    ) -> None:
        self.engine_path = engine_path
        self.acquirer = acquirer
        self.logs = logs
        self.events = events
        self.grace_period = grace_period
        self.stop_timeout = stop_timeout
        self.restart_delay = restart_delay
        self._records: Dict[str, EngineProcessRecord] = {}
        self._records_lock = threading.Lock()
        self._locks = NamedLocks()
        self._engine_lock = threading.Lock()

    # ── 引擎路径 ────────────────────────────────────────────

    def _resolve_engine(self, name: str) -> str:
        """显式路径优先，否则通过 acquirer 获取（只解析一次）"""
        with self._engine_lock:
            if self.engine_path is not None:
                return str(self.engine_path)
            if self.acquirer is None:
                raise ProcessStartFailed(name, "未配置引擎可执行文件")
            try:
                path = self.acquirer.ensure_available()
            except AcquisitionError as e:
                raise ProcessStartFailed(name, f"无法获取引擎: {e.message}")
            if path is None:
                raise ProcessStartFailed(name, "引擎未安装")
            self.engine_path = path
            return str(path)

    # ── 记录 ────────────────────────────────────────────────

    def _get_record(self, name: str) -> Optional[EngineProcessRecord]:
        with self._records_lock:
            return self._records.get(name)

    def _release(self, record: EngineProcessRecord) -> bool:
        """移除记录（仅当仍归属于该进程）"""
        with self._records_lock:
            if self._records.get(record.proxy_name) is record:
                del self._records[record.proxy_name]
                return True
            return False

    # ── 启动 ────────────────────────────────────────────────

    def start(self, name: str, config_path: Union[Path, str]) -> ProcessStatus:
        """启动引擎进程，宽限期内退出视为启动失败

        Raises:
            AlreadyRunningError: 该名称已有存活进程
            ProcessStartFailed:  配置缺失、引擎不可用或进程立即退出
        """
        config_path = Path(config_path)
        with self._locks.get(name):
            if self._get_record(name) is not None:
                raise AlreadyRunningError(name)
            if not config_path.is_file():
                raise ProcessStartFailed(name, f"配置文件不存在: {config_path}")

            engine = self._resolve_engine(name)
            cmd = [engine, "run", "-c", str(config_path)]
            logger.info(f"  -> 正在启动 {name}...")
            logger.debug(f"[CMD] {' '.join(cmd)}")

            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except OSError as e:
                raise ProcessStartFailed(name, f"无法启动引擎进程: {e}")

            record = EngineProcessRecord(
                proxy_name=name,
                process=process,
                config_path=config_path,
                start_time=utc_now(),
            )
            with self._records_lock:
                self._records[name] = record

            record.readers = [
                threading.Thread(
                    target=self._read_stream, args=(record, process.stdout, LogSource.STDOUT),
                    name=f"{name}-stdout", daemon=True,
                ),
                threading.Thread(
                    target=self._read_stream, args=(record, process.stderr, LogSource.STDERR),
                    name=f"{name}-stderr", daemon=True,
                ),
            ]
            for reader in record.readers:
                reader.start()
            threading.Thread(
                target=self._watch, args=(record,), name=f"{name}-watch", daemon=True,
            ).start()

            try:
                process.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                record.status = ProcessState.RUNNING
                record.settled.set()
                logger.info(f"  -> ✓ {name} 已启动 (PID: {process.pid})")
                return self.status(name)

            # 宽限期内退出
            record.start_failed = True
            record.settled.set()
            self._join_readers(record)
            self._release(record)
            record.status = ProcessState.STOPPED
            stderr = "\n".join(record.stderr_tail)
            logger.error(f"  -> ✗ {name} 启动后立即退出 (code={process.returncode})")
            raise ProcessStartFailed(
                name, "进程启动后立即退出", returncode=process.returncode, stderr=stderr,
            )

    def _read_stream(self, record: EngineProcessRecord, stream: IO[str], source: LogSource) -> None:
        try:
            for line in iter(stream.readline, ""):
                line = line.rstrip("\r\n")
                if not line:
                    continue
                if source == LogSource.STDERR:
                    record.stderr_tail.append(line)
                if self.logs is not None:
                    self.logs.add_log(record.proxy_name, line, source)
                else:
                    logger.debug(f"[{record.proxy_name}] {line}")
        finally:
            stream.close()

    @staticmethod
    def _join_readers(record: EngineProcessRecord, timeout: float = 2.0) -> None:
        for reader in record.readers:
            reader.join(timeout)

    def _watch(self, record: EngineProcessRecord) -> None:
        """退出监视: 移除记录、分类退出原因、通知上层"""
        returncode = record.process.wait()
        record.settled.wait()
        if record.start_failed:
            return

        self._join_readers(record)
        self._release(record)
        record.status = ProcessState.STOPPED
        name = record.proxy_name

        if record.stop_requested:
            logger.debug(f"  -> {name} 已按请求退出 (code={returncode})")
        elif returncode == 0:
            logger.info(f"  -> {name} 进程正常退出")
        else:
            logger.error(f"  -> ✗ {name} 进程异常退出 (code={returncode})")
            if record.stderr_tail:
                logger.error("  -> 日志尾部:\n" + "\n".join(record.stderr_tail))

        if self.events is not None:
            self.events.process_exited(name, returncode, record.stop_requested)

    # ── 停止 / 重启 ─────────────────────────────────────────

    def stop(self, name: str) -> None:
        """SIGTERM，超时后 SIGKILL

        Raises:
            NotRunningError: 没有存活进程
        """
        with self._locks.get(name):
            record = self._get_record(name)
            if record is None:
                raise NotRunningError(name)

            record.stop_requested = True
            self._terminate(record)
            self._release(record)
            logger.info(f"  -> ✓ {name} 已停止 (PID: {record.pid})")

    def _terminate(self, record: EngineProcessRecord) -> None:
        process = record.process
        if process.poll() is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"  -> [WARN] {record.proxy_name} (PID: {record.pid}) SIGTERM 超时，强制 SIGKILL"
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            process.wait()

    def restart(self, name: str) -> ProcessStatus:
        """停止后按原配置重新启动，整个过程持有该名称的锁

        Raises:
            NotRunningError: 没有存活进程
        """
        with self._locks.get(name):
            record = self._get_record(name)
            if record is None:
                raise NotRunningError(name)
            config_path = record.config_path
            self.stop(name)
            time.sleep(self.restart_delay)
            return self.start(name, config_path)

    def stop_all(self) -> List[StopResult]:
        """停止全部进程，单个失败不影响其它"""
        results: List[StopResult] = []
        for name in self.running_names():
            try:
                self.stop(name)
                results.append(StopResult(name=name, ok=True))
            except (EdgeLinkError, OSError) as e:
                logger.error(f"  -> ✗ 停止 {name} 失败: {e}")
                results.append(StopResult(name=name, ok=False, error=str(e)))
        return results

    # ── 查询 ────────────────────────────────────────────────

    def status(self, name: str) -> ProcessStatus:
        record = self._get_record(name)
        if record is None:
            return ProcessStatus(status=ProcessState.STOPPED)
        return ProcessStatus(
            status=record.status,
            pid=record.pid,
            start_time=isoformat(record.start_time),
            uptime=(utc_now() - record.start_time).total_seconds(),
            config_path=str(record.config_path),
        )

    def statuses(self) -> Dict[str, ProcessStatus]:
        return {name: self.status(name) for name in self.running_names()}

    def is_running(self, name: str) -> bool:
        return self._get_record(name) is not None

    def running_names(self) -> List[str]:
        with self._records_lock:
            return list(self._records)
