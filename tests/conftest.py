"""
Pytest 共享 Fixtures

提供 mock 服务、事件记录、假引擎脚本和装配好的注册表。
"""
from pathlib import Path
from typing import Any, Dict, Iterator

import pytest

from edgelink.core.events import EventHub
from edgelink.lib.engine.logs import LogAggregator
from edgelink.lib.engine.supervisor import EngineSupervisor
from edgelink.lib.proxy.registry import ProxyRegistry
from tests.mocks import (
    FAILING_ENGINE_SCRIPT,
    FAKE_ENGINE_SCRIPT,
    MemoryStore,
    MockRunner,
    RecordingListener,
    write_script,
)

SAMPLE_UUID = "b831381d-6324-4d53-ad4f-8cda48b30811"


@pytest.fixture
def mock_runner() -> MockRunner:
    return MockRunner()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def event_hub() -> EventHub:
    return EventHub()


@pytest.fixture
def recorder(event_hub: EventHub) -> RecordingListener:
    """注册到 event_hub 上的事件记录器"""
    return event_hub.register(RecordingListener())


@pytest.fixture
def log_aggregator(event_hub: EventHub) -> LogAggregator:
    return LogAggregator(events=event_hub)


@pytest.fixture
def fake_engine(tmp_path: Path) -> Path:
    return write_script(tmp_path / "fake-xray", FAKE_ENGINE_SCRIPT)


@pytest.fixture
def failing_engine(tmp_path: Path) -> Path:
    return write_script(tmp_path / "failing-xray", FAILING_ENGINE_SCRIPT)


@pytest.fixture
def supervisor(
    fake_engine: Path, log_aggregator: LogAggregator, event_hub: EventHub,
) -> Iterator[EngineSupervisor]:
    """使用假引擎、缩短宽限期的 Supervisor，测试结束后停止所有进程"""
    sup = EngineSupervisor(
        engine_path=fake_engine,
        logs=log_aggregator,
        events=event_hub,
        grace_period=0.3,
        stop_timeout=2.0,
        restart_delay=0.0,
    )
    yield sup
    sup.stop_all()


@pytest.fixture
def configs_dir(tmp_path: Path) -> Path:
    path = tmp_path / "configs"
    path.mkdir()
    return path


@pytest.fixture
def registry(
    memory_store: MemoryStore,
    configs_dir: Path,
    supervisor: EngineSupervisor,
    event_hub: EventHub,
) -> ProxyRegistry:
    return ProxyRegistry(
        store=memory_store,
        configs_dir=configs_dir,
        supervisor=supervisor,
        events=event_hub,
    )


@pytest.fixture
def vless_descriptor() -> Dict[str, Any]:
    return {
        "address": "edge.example.com",
        "port": 443,
        "localPort": 10808,
        "protocol": "vless",
        "userId": SAMPLE_UUID,
        "streamSettings": {"network": "ws", "security": "tls", "path": "/ws"},
    }


@pytest.fixture
def trojan_descriptor() -> Dict[str, Any]:
    return {
        "address": "203.0.113.10",
        "port": 8443,
        "localPort": 10809,
        "protocol": "trojan",
        "password": "s3cret",
    }
