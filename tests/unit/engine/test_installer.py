"""
内核获取器测试

覆盖核心场景：
1. 平台/架构映射与 .dgst 解析
2. 已安装检查（完整安装 / PATH / 缺失）
3. 最新版本查询（重试、限流兜底）
4. 下载安装（缓存命中、校验失败清理、资产缺失、取消）
5. ensure_available 事件序列
6. 缓存清理
"""
import hashlib
import os
import threading
from pathlib import Path

import pytest
import requests

from edgelink.core.errors import AcquisitionError, AcquisitionStage
from edgelink.lib.engine.installer import (
    BinaryAcquirer,
    detect_architecture,
    detect_platform,
    parse_digest,
)
from edgelink.lib.engine.settings import load_settings
from edgelink.lib.engine.version import InstalledVersionRecord
from tests.mocks import FakeResponse, FakeSession, build_engine_archive

API_URL = "https://api.github.com/repos/XTLS/Xray-core/releases/latest"
WEB_URL = "https://github.com/XTLS/Xray-core/releases/latest"
ASSET = "Xray-linux-64.zip"
DOWNLOAD_BASE = "https://github.com/XTLS/Xray-core/releases/download/v1.8.4"
ZIP_URL = f"{DOWNLOAD_BASE}/{ASSET}"
DGST_URL = f"{DOWNLOAD_BASE}/{ASSET}.dgst"
VERSION_OUTPUT = "Xray 1.8.4 (Xray, Penetrates Everything.) Custom (go1.21.1 linux/amd64)"


def build_archive() -> bytes:
    return build_engine_archive("#!/bin/sh\necho fake\n")


def release_json(tag: str = "v1.8.4", with_dgst: bool = True) -> dict:
    assets = [{"name": ASSET, "browser_download_url": ZIP_URL}]
    if with_dgst:
        assets.append({"name": f"{ASSET}.dgst", "browser_download_url": DGST_URL})
    return {"tag_name": tag, "assets": assets}


@pytest.fixture
def settings():
    settings = load_settings()
    settings.download.retry_delay = 0
    return settings


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def acquirer(tmp_path, settings, session, mock_runner, event_hub) -> BinaryAcquirer:
    return BinaryAcquirer(
        bin_dir=tmp_path / "bin",
        cache_dir=tmp_path / "cache",
        settings=settings,
        runner=mock_runner,
        events=event_hub,
        session=session,
        system="Linux",
        machine="x86_64",
    )


def install_files(acquirer: BinaryAcquirer, mock_runner) -> Path:
    """在 bin 目录放置一套完整安装，并让 `xray version` 可解析"""
    acquirer.bin_dir.mkdir(parents=True, exist_ok=True)
    exe = acquirer.executable_path
    exe.write_text("#!/bin/sh\n", encoding="utf-8")
    exe.chmod(0o755)
    for name in ("geoip.dat", "geosite.dat"):
        (acquirer.bin_dir / name).write_text(name, encoding="utf-8")
    mock_runner.stub(f"{exe} version", stdout=VERSION_OUTPUT)
    return exe


class TestDetection:
    """平台与架构映射"""

    @pytest.mark.parametrize("system,expected", [
        ("Windows", "windows"), ("Darwin", "macos"), ("Linux", "linux"), ("FreeBSD", "linux"),
    ])
    def test_platform(self, system, expected):
        assert detect_platform(system) == expected

    @pytest.mark.parametrize("machine,expected", [
        ("x86_64", "64"), ("AMD64", "64"), ("i686", "32"),
        ("aarch64", "arm64-v8a"), ("armv7l", "arm32-v7a"), ("riscv64", "64"),
    ])
    def test_architecture(self, machine, expected):
        assert detect_architecture(machine) == expected

    def test_asset_and_executable_names(self, tmp_path, settings):
        win = BinaryAcquirer(tmp_path, tmp_path, settings=settings, system="Windows", machine="arm64")
        assert win.asset_name == "Xray-windows-arm64-v8a.zip"
        assert win.executable_name == "xray.exe"

    def test_parse_digest(self):
        digest = "a" * 64
        text = f"MD5= 0123\nSHA1= 4567\nSHA2-256= {digest}\nSHA2-512= {'b' * 128}\n"
        assert parse_digest(text) == digest
        assert parse_digest(f"{digest.upper()}  Xray-linux-64.zip") == digest
        assert parse_digest("nothing here") is None


class TestInstalled:
    """已安装检查"""

    def test_complete_install(self, acquirer, mock_runner):
        exe = install_files(acquirer, mock_runner)

        assert acquirer.check_installed() == exe
        assert acquirer.verify_install() == []

    def test_missing_geo_files(self, acquirer, mock_runner):
        install_files(acquirer, mock_runner)
        (acquirer.bin_dir / "geosite.dat").unlink()

        assert acquirer.verify_install() == ["geosite.dat"]
        assert acquirer.check_installed() is None

    def test_falls_back_to_path(self, acquirer, mock_runner):
        mock_runner.stub("xray version", stdout=VERSION_OUTPUT)
        assert acquirer.check_installed() == "xray"

    def test_nothing_installed(self, acquirer):
        assert acquirer.check_installed() is None

    def test_current_version_prefers_record(self, acquirer):
        InstalledVersionRecord(version="1.8.0").save(acquirer.bin_dir)
        assert acquirer.get_current_version() == "1.8.0"


class TestLatestRelease:
    """最新版本查询"""

    def test_from_api(self, acquirer, session):
        session.add(API_URL, FakeResponse(json_data=release_json()))

        release = acquirer.get_latest_release()
        assert release.version == "1.8.4"
        assert release.find_asset(ASSET) is not None
        assert not release.synthesized

    def test_retries_then_succeeds(self, acquirer, session):
        session.add(
            API_URL,
            requests.ConnectionError("reset"),
            FakeResponse(json_data=release_json()),
        )

        assert acquirer.get_latest_release().version == "1.8.4"
        assert session.called(API_URL) == 2

    def test_retries_exhausted(self, acquirer, session):
        session.add(API_URL, requests.ConnectionError("offline"))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.get_latest_release()

        assert exc_info.value.stage == AcquisitionStage.NETWORK
        assert exc_info.value.retryable
        assert session.called(API_URL) == 3

    def test_rate_limit_falls_back_to_web(self, acquirer, session):
        session.add(API_URL, FakeResponse(status_code=403, text="API rate limit exceeded"))
        session.add(WEB_URL, FakeResponse(url="https://github.com/XTLS/Xray-core/releases/tag/v1.8.5"))

        release = acquirer.get_latest_release()

        assert release.version == "1.8.5"
        assert release.synthesized
        assert release.find_asset(ASSET)["browser_download_url"].endswith("/v1.8.5/Xray-linux-64.zip")

    def test_rate_limit_and_web_unparsable(self, acquirer, session):
        session.add(API_URL, FakeResponse(status_code=429))
        session.add(WEB_URL, FakeResponse(url="https://github.com/login"))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.get_latest_release()
        assert exc_info.value.stage == AcquisitionStage.RATE_LIMIT


class TestCheckForUpdates:

    def test_not_installed(self, acquirer, session):
        session.add(API_URL, FakeResponse(json_data=release_json()))

        check = acquirer.check_for_updates()
        assert check.needs_update
        assert check.reason == "not_installed"

    def test_outdated(self, acquirer, session):
        InstalledVersionRecord(version="1.8.0").save(acquirer.bin_dir)
        session.add(API_URL, FakeResponse(json_data=release_json()))

        check = acquirer.check_for_updates()
        assert check.reason == "outdated"
        assert check.current_version == "1.8.0"
        assert check.latest_version == "1.8.4"

    def test_network_error_reported(self, acquirer, session):
        InstalledVersionRecord(version="1.8.4").save(acquirer.bin_dir)

        check = acquirer.check_for_updates()
        assert not check.needs_update
        assert check.error


class TestDownloadAndInstall:
    """下载安装"""

    def test_fresh_install(self, acquirer, session, mock_runner):
        archive = build_archive()
        digest = hashlib.sha256(archive).hexdigest()
        session.add(API_URL, FakeResponse(json_data=release_json()))
        session.add(ZIP_URL, FakeResponse(content=archive, chunk_size=64))
        session.add(DGST_URL, FakeResponse(text=f"SHA2-256= {digest}\n"))
        mock_runner.stub(f"{acquirer.executable_path} version", stdout=VERSION_OUTPUT)
        progress = []

        path = acquirer.download_and_install(on_progress=progress.append)

        assert path == acquirer.executable_path
        assert path.stat().st_mode & 0o111
        assert acquirer.cache_path("1.8.4").read_bytes() == archive
        assert InstalledVersionRecord.load(acquirer.bin_dir).version == "1.8.4"
        assert progress[0].stage == "fetch_info"
        assert progress[-1].stage == "complete"
        assert progress[-1].progress == 100
        assert not list(acquirer.cache_dir.glob("*.part"))

    def test_cache_hit_skips_download(self, acquirer, session, mock_runner):
        acquirer.cache_dir.mkdir(parents=True)
        acquirer.cache_path("1.8.4").write_bytes(build_archive())
        session.add(API_URL, FakeResponse(json_data=release_json(with_dgst=False)))
        mock_runner.stub(f"{acquirer.executable_path} version", stdout=VERSION_OUTPUT)
        progress = []

        acquirer.download_and_install(on_progress=progress.append)

        assert session.called(ZIP_URL) == 0
        downloads = [p for p in progress if p.stage == "download"]
        assert downloads[0].progress == 100
        assert downloads[0].message == "使用缓存"
        assert progress[-1].progress == 100
        assert acquirer.verify_install() == []

    def test_already_up_to_date(self, acquirer, session, mock_runner):
        install_files(acquirer, mock_runner)
        InstalledVersionRecord(version="1.8.4").save(acquirer.bin_dir)
        session.add(API_URL, FakeResponse(json_data=release_json()))

        acquirer.download_and_install()

        assert session.called(ZIP_URL) == 0

    def test_checksum_mismatch_removes_archive(self, acquirer, session, mock_runner):
        session.add(API_URL, FakeResponse(json_data=release_json()))
        session.add(ZIP_URL, FakeResponse(content=build_archive()))
        session.add(DGST_URL, FakeResponse(text=f"SHA2-256= {'0' * 64}\n"))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.download_and_install()

        assert exc_info.value.stage == AcquisitionStage.CHECKSUM
        assert exc_info.value.downloaded
        assert not exc_info.value.retryable
        assert not acquirer.cache_path("1.8.4").exists()
        assert InstalledVersionRecord.load(acquirer.bin_dir) is None

    def test_corrupt_archive_removed(self, acquirer, session):
        session.add(API_URL, FakeResponse(json_data=release_json(with_dgst=False)))
        session.add(ZIP_URL, FakeResponse(content=b"not a zip"))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.download_and_install()

        assert exc_info.value.stage == AcquisitionStage.EXTRACT
        assert not acquirer.cache_path("1.8.4").exists()

    def test_asset_missing(self, acquirer, session):
        data = release_json()
        data["assets"] = [{"name": "Xray-windows-64.zip"}]
        session.add(API_URL, FakeResponse(json_data=data))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.download_and_install()

        assert exc_info.value.stage == AcquisitionStage.ASSET_MISSING
        assert not exc_info.value.retryable

    def test_download_retries_exhausted(self, acquirer, session):
        session.add(API_URL, FakeResponse(json_data=release_json()))
        session.add(ZIP_URL, FakeResponse(status_code=502))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.download_and_install()

        assert exc_info.value.stage == AcquisitionStage.NETWORK
        assert session.called(ZIP_URL) == 3
        assert not acquirer.cache_path("1.8.4").exists()

    def test_cancel(self, acquirer, session):
        session.add(API_URL, FakeResponse(json_data=release_json()))
        session.add(ZIP_URL, FakeResponse(content=build_archive()))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.download_and_install(cancel=cancel)

        assert exc_info.value.stage == AcquisitionStage.CANCELLED
        assert not list(acquirer.cache_dir.iterdir())

    def test_verify_failure_keeps_no_record(self, acquirer, session):
        """版本输出无法解析时不写版本记录"""
        session.add(API_URL, FakeResponse(json_data=release_json(with_dgst=False)))
        session.add(ZIP_URL, FakeResponse(content=build_archive()))

        with pytest.raises(AcquisitionError) as exc_info:
            acquirer.download_and_install()

        assert exc_info.value.stage == AcquisitionStage.VERIFY
        assert InstalledVersionRecord.load(acquirer.bin_dir) is None


class TestEnsureAvailable:
    """组合流程与事件"""

    def test_already_installed(self, acquirer, mock_runner, recorder):
        exe = install_files(acquirer, mock_runner)

        assert acquirer.ensure_available() == exe
        events = recorder.of_type("acquisition")
        assert [e.payload["type"] for e in events] == ["initializing", "ready"]

    def test_download_required_without_auto_download(self, acquirer, recorder):
        assert acquirer.ensure_available(auto_download=False) is None
        types = [e.payload["type"] for e in recorder.of_type("acquisition")]
        assert types == ["initializing", "download_required"]

    def test_downloads_when_missing(self, acquirer, session, mock_runner, recorder):
        session.add(API_URL, FakeResponse(json_data=release_json(with_dgst=False)))
        session.add(ZIP_URL, FakeResponse(content=build_archive()))
        mock_runner.stub(f"{acquirer.executable_path} version", stdout=VERSION_OUTPUT)

        assert acquirer.ensure_available() == acquirer.executable_path

        types = [e.payload["type"] for e in recorder.of_type("acquisition")]
        assert types[0] == "initializing"
        assert "downloading" in types
        assert types[-1] == "ready"

    def test_download_failure_raises(self, acquirer, session, recorder):
        session.add(API_URL, requests.ConnectionError("offline"))

        with pytest.raises(AcquisitionError):
            acquirer.ensure_available()

        failed = [e for e in recorder.of_type("acquisition") if e.payload["type"] == "download_failed"]
        assert failed[0].payload["stage"] == "network"
        assert failed[0].payload["retryable"] is True

    def test_failed_update_keeps_existing(self, acquirer, session, mock_runner):
        exe = install_files(acquirer, mock_runner)
        InstalledVersionRecord(version="1.8.0").save(acquirer.bin_dir)
        session.add(API_URL, FakeResponse(json_data=release_json(with_dgst=False)))
        session.add(ZIP_URL, FakeResponse(status_code=500))

        assert acquirer.ensure_available(check_updates=True) == exe


class TestCache:
    """缓存管理"""

    def _seed(self, acquirer):
        acquirer.cache_dir.mkdir(parents=True)
        old = acquirer.cache_dir / "1.8.0-Xray-linux-64.zip"
        new = acquirer.cache_dir / "1.8.4-Xray-linux-64.zip"
        old.write_bytes(b"x" * 10)
        new.write_bytes(b"y" * 20)
        os.utime(old, (1_000_000, 1_000_000))
        return old, new

    def test_cache_info(self, acquirer):
        self._seed(acquirer)

        entries = acquirer.cache_info()
        assert [e.name for e in entries] == ["1.8.4-Xray-linux-64.zip", "1.8.0-Xray-linux-64.zip"]
        assert entries[0].size_bytes == 20

    def test_clean_keeps_latest(self, acquirer):
        old, new = self._seed(acquirer)

        results = acquirer.clean_cache(keep_latest=True)

        assert [r.success for r in results] == [True]
        assert results[0].freed_bytes == 10
        assert not old.exists()
        assert new.exists()

    def test_clean_all(self, acquirer):
        self._seed(acquirer)

        acquirer.clean_cache(keep_latest=False)
        assert acquirer.cache_info() == []

    def test_partial_downloads_ignored(self, acquirer):
        """未完成的 .part 文件不算缓存归档，清理时不能挤掉最新归档"""
        old, new = self._seed(acquirer)
        part = acquirer.cache_dir / "1.8.5-Xray-linux-64.zip.abcd1234.part"
        part.write_bytes(b"z" * 5)

        assert [e.name for e in acquirer.cache_info()] == [new.name, old.name]

        acquirer.clean_cache(keep_latest=True)

        assert new.exists()
        assert not old.exists()
        assert part.exists()

    def test_missing_cache_dir(self, acquirer):
        assert acquirer.cache_info() == []
        assert acquirer.clean_cache() == []
