"""
集成测试专用 Fixtures

提供装配好的 AppContext（真实组件 + 假引擎 / 假网络），用于测试完整的使用流程。
"""
from pathlib import Path
from typing import Iterator

import pytest

from edgelink.core.interface import AppContext, create_context
from tests.mocks import FakeSession, MockRunner


@pytest.fixture
def integration_home(tmp_path: Path) -> Path:
    """模拟用户数据目录"""
    home = tmp_path / "edgelink-home"
    home.mkdir(parents=True, exist_ok=True)
    return home


@pytest.fixture
def integration_runner() -> MockRunner:
    return MockRunner()


@pytest.fixture
def integration_session() -> FakeSession:
    return FakeSession()


def _shorten_timings(ctx: AppContext) -> None:
    ctx.supervisor.grace_period = 0.3
    ctx.supervisor.stop_timeout = 2.0
    ctx.supervisor.restart_delay = 0.0
    ctx.acquirer.settings.download.retry_delay = 0


@pytest.fixture
def integration_ctx(
    integration_home: Path,
    integration_runner: MockRunner,
    fake_engine: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[AppContext]:
    """显式指定假引擎的上下文，结束时停止所有进程"""
    monkeypatch.delenv("EDGELINK_ENGINE", raising=False)
    ctx = create_context(home=integration_home, cmd=integration_runner, engine_path=fake_engine)
    _shorten_timings(ctx)
    yield ctx
    ctx.registry.stop_all()


@pytest.fixture
def acquiring_ctx(
    integration_home: Path,
    integration_runner: MockRunner,
    integration_session: FakeSession,
    monkeypatch: pytest.MonkeyPatch,
) -> Iterator[AppContext]:
    """不指定引擎的上下文，引擎需通过 BinaryAcquirer 获取"""
    monkeypatch.delenv("EDGELINK_ENGINE", raising=False)
    ctx = create_context(home=integration_home, cmd=integration_runner)
    ctx.acquirer.session = integration_session
    _shorten_timings(ctx)
    yield ctx
    ctx.registry.stop_all()
