"""
引擎进程管理测试

使用 tests/mocks.py 中的 shell 假引擎，只在 POSIX 平台运行。
"""
import os
import threading
import time

import pytest

from edgelink.core.errors import AlreadyRunningError, NotRunningError, ProcessStartFailed
from edgelink.core.schema import LogSource, ProcessState
from edgelink.lib.engine.supervisor import EngineSupervisor

pytestmark = pytest.mark.skipif(os.name != "posix", reason="假引擎是 shell 脚本")


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "mc1.json"
    path.write_text("{}", encoding="utf-8")
    return path


class TestStart:
    """启动"""

    def test_start_running(self, supervisor, config_file):
        status = supervisor.start("mc1", config_file)

        assert status.status == ProcessState.RUNNING
        assert status.pid
        assert status.to_dict()["configPath"] == str(config_file)
        assert supervisor.is_running("mc1")
        assert supervisor.running_names() == ["mc1"]

    def test_output_forwarded_to_logs(self, supervisor, config_file, log_aggregator):
        supervisor.start("mc1", config_file)

        assert wait_for(lambda: log_aggregator.get_logs("mc1").total >= 2)
        entries = log_aggregator.get_logs("mc1").logs
        sources = {e.source for e in entries}
        assert sources == {LogSource.STDOUT, LogSource.STDERR}
        assert any(str(config_file) in e.message for e in entries)

    def test_already_running(self, supervisor, config_file):
        supervisor.start("mc1", config_file)

        with pytest.raises(AlreadyRunningError):
            supervisor.start("mc1", config_file)

    def test_missing_config(self, supervisor, tmp_path):
        with pytest.raises(ProcessStartFailed) as exc_info:
            supervisor.start("mc1", tmp_path / "missing.json")

        assert "配置文件不存在" in exc_info.value.message
        assert not supervisor.is_running("mc1")

    def test_missing_engine(self, tmp_path, config_file):
        sup = EngineSupervisor(engine_path=tmp_path / "no-such-engine", grace_period=0.1)

        with pytest.raises(ProcessStartFailed):
            sup.start("mc1", config_file)
        assert not sup.is_running("mc1")

    def test_immediate_exit(self, failing_engine, log_aggregator, config_file):
        """宽限期内退出: 带上退出码和 stderr，且不残留记录"""
        sup = EngineSupervisor(engine_path=failing_engine, logs=log_aggregator, grace_period=1.0)

        with pytest.raises(ProcessStartFailed) as exc_info:
            sup.start("mc1", config_file)

        error = exc_info.value
        assert error.returncode == 23
        assert "failed to load config files" in error.stderr
        assert not sup.is_running("mc1")
        assert sup.status("mc1").status == ProcessState.STOPPED

    def test_immediate_exit_does_not_emit_exit_event(self, failing_engine, event_hub, recorder, config_file):
        sup = EngineSupervisor(engine_path=failing_engine, events=event_hub, grace_period=1.0)

        with pytest.raises(ProcessStartFailed):
            sup.start("mc1", config_file)

        time.sleep(0.2)
        assert recorder.of_type("process_exited") == []

    def test_concurrent_starts_single_process(self, supervisor, config_file):
        """同一名称并发启动，最多只有一个进程存活"""
        results = []

        def start():
            try:
                supervisor.start("mc1", config_file)
                results.append("ok")
            except AlreadyRunningError:
                results.append("already")

        threads = [threading.Thread(target=start) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("already") == 3
        assert supervisor.running_names() == ["mc1"]

    def test_engine_resolved_through_acquirer(self, fake_engine, config_file):
        class Acquirer:
            calls = 0

            def ensure_available(self):
                Acquirer.calls += 1
                return fake_engine

        sup = EngineSupervisor(acquirer=Acquirer(), grace_period=0.2, stop_timeout=2.0)
        try:
            sup.start("a", config_file)
            sup.start("b", config_file)
            assert Acquirer.calls == 1
        finally:
            sup.stop_all()

    def test_acquirer_returns_nothing(self, config_file):
        class Acquirer:
            def ensure_available(self):
                return None

        sup = EngineSupervisor(acquirer=Acquirer())
        with pytest.raises(ProcessStartFailed) as exc_info:
            sup.start("mc1", config_file)
        assert "引擎未安装" in exc_info.value.message


class TestStop:
    """停止与重启"""

    def test_stop(self, supervisor, config_file):
        status = supervisor.start("mc1", config_file)

        supervisor.stop("mc1")

        assert not supervisor.is_running("mc1")
        with pytest.raises(ProcessLookupError):
            # 进程已被回收
            os.kill(status.pid, 0)

    def test_stop_not_running(self, supervisor):
        with pytest.raises(NotRunningError):
            supervisor.stop("mc1")

    def test_stop_emits_requested_exit(self, supervisor, config_file, recorder):
        supervisor.start("mc1", config_file)
        supervisor.stop("mc1")

        assert wait_for(lambda: recorder.of_type("process_exited"))
        payload = recorder.of_type("process_exited")[0].payload
        assert payload["name"] == "mc1"
        assert payload["requested"] is True

    def test_unexpected_exit_detected(self, supervisor, config_file, recorder):
        status = supervisor.start("mc1", config_file)

        os.kill(status.pid, 9)

        assert wait_for(lambda: not supervisor.is_running("mc1"))
        assert wait_for(lambda: recorder.of_type("process_exited"))
        payload = recorder.of_type("process_exited")[0].payload
        assert payload["requested"] is False
        assert payload["returncode"] == -9

    def test_restart_new_pid(self, supervisor, config_file):
        first = supervisor.start("mc1", config_file)

        second = supervisor.restart("mc1")

        assert second.status == ProcessState.RUNNING
        assert second.pid != first.pid
        assert supervisor.running_names() == ["mc1"]

    def test_restart_not_running(self, supervisor):
        with pytest.raises(NotRunningError):
            supervisor.restart("mc1")

    def test_stop_all(self, supervisor, config_file):
        supervisor.start("a", config_file)
        supervisor.start("b", config_file)

        results = supervisor.stop_all()

        assert sorted(r.name for r in results) == ["a", "b"]
        assert all(r.ok for r in results)
        assert supervisor.running_names() == []


class TestStatus:

    def test_stopped_status(self, supervisor):
        status = supervisor.status("mc1")
        assert status.status == ProcessState.STOPPED
        assert status.to_dict()["pid"] is None

    def test_statuses(self, supervisor, config_file):
        supervisor.start("mc1", config_file)

        statuses = supervisor.statuses()
        assert list(statuses) == ["mc1"]
        assert statuses["mc1"].uptime >= 0
