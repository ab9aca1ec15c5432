"""
事件通知 - 核心 → 上层的推送通道

基于 pluggy 的 hookspec/hookimpl：
  - 上层把实现了若干 @hookimpl 方法的对象注册到 EventHub
  - 核心在日志新增、日志清空、注册表变更、内核获取进度、进程退出时广播

监听者抛出的异常只记录日志，不会传播回核心。

示例:
    class UiBridge:
        @hookimpl
        def on_registry_changed(self, proxies, stats):
            socket.emit("proxies-update", proxies)

    hub.register(UiBridge())
"""
import queue
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pluggy

from edgelink.core.utils import logger

PROJECT_NAME = "edgelink"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class EventSpec:
    """所有可订阅事件的声明"""

    @hookspec
    def on_log_added(self, entry: Any) -> None:
        """引擎输出了一行新日志（entry: LogEntry）"""

    @hookspec
    def on_logs_cleared(self, proxy_name: Optional[str]) -> None:
        """日志被清空，proxy_name 为 None 表示全部"""

    @hookspec
    def on_registry_changed(self, proxies: List[Dict[str, Any]], stats: Dict[str, int]) -> None:
        """注册表发生变更（增删改、启停）"""

    @hookspec
    def on_acquisition_event(self, event: Dict[str, Any]) -> None:
        """内核获取流程的生命周期事件（type 见 AcquisitionEventType）"""

    @hookspec
    def on_process_exited(self, name: str, returncode: Optional[int], requested: bool) -> None:
        """引擎进程退出，requested 表示由 stop 主动触发"""


@dataclass
class Event:
    """统一的事件包装，供队列/回调型监听者使用"""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


class EventHub:
    """事件广播中心"""

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(EventSpec)

    # ── 订阅 ────────────────────────────────────────────────

    def register(self, listener: object) -> object:
        """注册监听者（实现了任意 @hookimpl 方法的对象）"""
        self._pm.register(listener)
        return listener

    def unregister(self, listener: object) -> None:
        if self._pm.is_registered(listener):
            self._pm.unregister(listener)

    def subscribe(self, callback: Callable[[Event], None]) -> "CallbackListener":
        """以单个回调订阅全部事件"""
        listener = CallbackListener(callback)
        self.register(listener)
        return listener

    # ── 广播 ────────────────────────────────────────────────

    def _emit(self, hook_name: str, **kwargs: Any) -> None:
        caller = getattr(self._pm.hook, hook_name)
        # 逐个调用，单个监听者失败不影响其它监听者
        for impl in caller.get_hookimpls():
            try:
                impl.function(**{name: kwargs[name] for name in impl.argnames})
            except Exception as e:
                logger.warning(f"  -> [WARN] 事件监听者 {impl.plugin_name} 处理 {hook_name} 失败: {e}")

    def log_added(self, entry: Any) -> None:
        self._emit("on_log_added", entry=entry)

    def logs_cleared(self, proxy_name: Optional[str] = None) -> None:
        self._emit("on_logs_cleared", proxy_name=proxy_name)

    def registry_changed(self, proxies: List[Dict[str, Any]], stats: Dict[str, int]) -> None:
        self._emit("on_registry_changed", proxies=proxies, stats=stats)

    def acquisition_event(self, event_type: str, **data: Any) -> None:
        event = {"type": event_type}
        event.update(data)
        self._emit("on_acquisition_event", event=event)

    def process_exited(self, name: str, returncode: Optional[int], requested: bool) -> None:
        self._emit("on_process_exited", name=name, returncode=returncode, requested=requested)


def _to_payload(value: Any) -> Dict[str, Any]:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


class CallbackListener:
    """把所有 hook 转成 Event 交给单个回调"""

    def __init__(self, callback: Callable[[Event], None]) -> None:
        self._callback = callback

    def deliver(self, event: Event) -> None:
        self._callback(event)

    @hookimpl
    def on_log_added(self, entry: Any) -> None:
        self.deliver(Event("log_added", _to_payload(entry)))

    @hookimpl
    def on_logs_cleared(self, proxy_name: Optional[str]) -> None:
        self.deliver(Event("logs_cleared", {"proxyName": proxy_name, "all": proxy_name is None}))

    @hookimpl
    def on_registry_changed(self, proxies: List[Dict[str, Any]], stats: Dict[str, int]) -> None:
        self.deliver(Event("registry_changed", {"proxies": proxies, "stats": stats}))

    @hookimpl
    def on_acquisition_event(self, event: Dict[str, Any]) -> None:
        self.deliver(Event("acquisition", dict(event)))

    @hookimpl
    def on_process_exited(self, name: str, returncode: Optional[int], requested: bool) -> None:
        self.deliver(Event("process_exited", {
            "name": name, "returncode": returncode, "requested": requested,
        }))


class EventQueue(CallbackListener):
    """出站队列：核心写入，上层自行消费

    示例:
        events = hub.register(EventQueue())
        while True:
            event = events.get(timeout=1)
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        super().__init__(self._put)

    def _put(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            logger.debug(f"  -> 事件队列已满，丢弃事件: {event.type}")

    def get(self, timeout: Optional[float] = None) -> Event:
        return self.queue.get(timeout=timeout)

    def drain(self) -> List[Event]:
        """取出当前所有事件（不阻塞）"""
        events: List[Event] = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events
