"""
引擎日志聚合

按代理名称缓存引擎 stdout/stderr 的每一行，供 UI 分页查询。

保留策略:
- 每个代理最多 max_logs_per_proxy 条（超出丢弃最旧的）
- 全局最多 max_total_logs 条，超出后从"最旧日志最早"的代理开始，
  每批最多删 100 条，直到总数回到上限以内；删空的代理直接移除
"""
import itertools
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from edgelink.core.events import EventHub
from edgelink.core.schema import LogLevel, LogSource
from edgelink.core.utils import isoformat, logger, utc_now

EVICTION_BATCH = 100

_TAG_RE = re.compile(r"\[(Debug|Info|Warning|Warn|Error)\]", re.IGNORECASE)
_TAG_LEVELS = {
    "debug": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "warning": LogLevel.WARN,
    "warn": LogLevel.WARN,
    "error": LogLevel.ERROR,
}


def detect_level(message: str) -> LogLevel:
    """推断日志级别: 先看 [Warning] 这类标签，再看关键字"""
    match = _TAG_RE.search(message)
    if match:
        return _TAG_LEVELS[match.group(1).lower()]

    lower = message.lower()
    if "error" in lower or "fail" in lower:
        return LogLevel.ERROR
    if "warn" in lower:
        return LogLevel.WARN
    if "debug" in lower:
        return LogLevel.DEBUG
    return LogLevel.INFO


@dataclass
class LogEntry:
    timestamp: str
    level: LogLevel
    message: str
    source: LogSource
    proxy_name: str
    # 单调递增序号，同一时间戳下也能稳定排序
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
            "source": self.source.value,
            "proxyName": self.proxy_name,
        }


@dataclass
class LogPage:
    logs: List[LogEntry] = field(default_factory=list)
    total: int = 0
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logs": [entry.to_dict() for entry in self.logs],
            "total": self.total,
            "hasMore": self.has_more,
        }


class LogAggregator:
    """引擎日志缓存（线程安全）"""

    def __init__(
        self,
        max_logs_per_proxy: int = 1000,
        max_total_logs: int = 5000,
        events: Optional[EventHub] = None,
    ) -> None:
        self.max_logs_per_proxy = max_logs_per_proxy
        self.max_total_logs = max_total_logs
        self.events = events
        self._buckets: Dict[str, Deque[LogEntry]] = {}
        self._total = 0
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def add_log(
        self,
        proxy_name: str,
        message: str,
        source: LogSource = LogSource.STDOUT,
        level: Optional[LogLevel] = None,
    ) -> Optional[LogEntry]:
        """追加一行日志，空行忽略并返回 None"""
        message = message.rstrip("\r\n")
        if not message.strip():
            return None

        entry = LogEntry(
            timestamp=isoformat(utc_now()),
            level=LogLevel(level) if level is not None else detect_level(message),
            message=message,
            source=LogSource(source),
            proxy_name=proxy_name,
        )

        with self._lock:
            entry.seq = next(self._seq)
            bucket = self._buckets.get(proxy_name)
            if bucket is None:
                bucket = deque()
                self._buckets[proxy_name] = bucket
            bucket.append(entry)
            self._total += 1
            if len(bucket) > self.max_logs_per_proxy:
                bucket.popleft()
                self._total -= 1
            if self._total > self.max_total_logs:
                self._evict()

        if entry.level == LogLevel.ERROR:
            logger.error(f"  -> [{proxy_name}] {message}")
        elif entry.level == LogLevel.WARN:
            logger.warning(f"  -> [{proxy_name}] {message}")

        if self.events is not None:
            self.events.log_added(entry)
        return entry

    def _evict(self) -> None:
        while self._total > self.max_total_logs and self._buckets:
            oldest_name = min(self._buckets, key=lambda n: self._buckets[n][0].seq)
            bucket = self._buckets[oldest_name]
            count = min(EVICTION_BATCH, len(bucket))
            for _ in range(count):
                bucket.popleft()
            self._total -= count
            if not bucket:
                del self._buckets[oldest_name]

    def get_logs(
        self,
        proxy_name: Optional[str] = None,
        level: Optional[LogLevel] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> LogPage:
        """分页查询，最新的在前"""
        with self._lock:
            if proxy_name is not None:
                entries = list(self._buckets.get(proxy_name, ()))
            else:
                entries = [e for bucket in self._buckets.values() for e in bucket]

        if level is not None:
            level = LogLevel(level)
            entries = [e for e in entries if e.level == level]

        entries.sort(key=lambda e: e.seq, reverse=True)
        total = len(entries)
        page = entries[offset:offset + limit]
        return LogPage(logs=page, total=total, has_more=offset + limit < total)

    def clear(self, proxy_name: Optional[str] = None) -> None:
        """清空日志，proxy_name 为 None 时清空全部"""
        with self._lock:
            if proxy_name is None:
                self._buckets.clear()
                self._total = 0
            else:
                bucket = self._buckets.pop(proxy_name, None)
                if bucket is not None:
                    self._total -= len(bucket)

        if self.events is not None:
            self.events.logs_cleared(proxy_name)

    def statistics(self) -> Dict[str, Any]:
        """按级别、按代理统计"""
        by_level = {lvl.value: 0 for lvl in LogLevel}
        by_proxy: Dict[str, int] = {}
        with self._lock:
            for name, bucket in self._buckets.items():
                by_proxy[name] = len(bucket)
                for entry in bucket:
                    by_level[entry.level.value] += 1
            total = self._total
        return {"total": total, "byLevel": by_level, "byProxy": by_proxy}

    def proxy_names(self) -> List[str]:
        with self._lock:
            return list(self._buckets)

    def __len__(self) -> int:
        return self._total
