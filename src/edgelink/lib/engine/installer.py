"""
Xray 内核获取器

职责:
- 检测平台与架构，映射到 Xray Release 的资产命名
- 查询 GitHub 最新版本（限流时回退到 Release 网页）
- 下载归档（重试、跟随跳转、可选镜像、本地缓存）
- SHA256 完整性校验（Release 附带的 .dgst）
- 解压、设置可执行权限、验证 geoip.dat / geosite.dat 与版本输出
- 记录已安装版本，避免重复下载

缓存文件名为 <版本>-<资产名>，写入时先落到唯一的 .part 临时文件再 rename，
多个实例共享同一缓存目录是安全的。
"""
import os
import platform
import re
import subprocess
import threading
import time
import uuid
import zipfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from edgelink.core.errors import AcquisitionError, AcquisitionStage
from edgelink.core.events import EventHub
from edgelink.core.ports import ICommandRunner
from edgelink.core.schema import AcquisitionEventType
from edgelink.core.utils import isoformat, logger, utc_now
from edgelink.lib.engine.settings import DownloadSettings, load_settings
from edgelink.lib.engine.version import (
    InstalledVersionRecord,
    compare_versions,
    parse_version_output,
)
from edgelink.lib.utils import format_size, sha256

GEO_FILES = ("geoip.dat", "geosite.dat")
CHUNK_SIZE = 64 * 1024

# 网页兜底时合成资产列表用
KNOWN_PLATFORMS = ("windows", "macos", "linux")
KNOWN_ARCHITECTURES = ("64", "32", "arm64-v8a", "arm32-v7a")

_DIGEST_RE = re.compile(r"SHA2?-?256\s*[=:]\s*([0-9a-fA-F]{64})", re.IGNORECASE)
_HEX64_RE = re.compile(r"\b([0-9a-fA-F]{64})\b")
_TAG_RE = re.compile(r"/releases/tag/([^/?#]+)")

ProgressCallback = Callable[["AcquisitionProgress"], None]


def detect_platform(system: Optional[str] = None) -> str:
    """检测操作系统，映射到 Xray 的命名 (windows / macos / linux)"""
    name = (system if system is not None else platform.system()).lower()
    if name.startswith("win"):
        return "windows"
    elif name == "darwin":
        return "macos"
    else:
        return "linux"


def detect_architecture(machine: Optional[str] = None) -> str:
    """检测系统架构，映射到 Xray 的命名 (64 / 32 / arm64-v8a / arm32-v7a)"""
    name = (machine if machine is not None else platform.machine()).lower()
    if name in ("x86_64", "amd64", "x64"):
        return "64"
    elif name in ("i386", "i686", "x86", "ia32"):
        return "32"
    elif name in ("aarch64", "arm64"):
        return "arm64-v8a"
    elif name.startswith("armv7") or name in ("arm", "armv6l"):
        return "arm32-v7a"
    else:
        return "64"


def parse_digest(text: str) -> Optional[str]:
    """从 .dgst 文件内容中取出 SHA256"""
    match = _DIGEST_RE.search(text or "")
    if match:
        return match.group(1).lower()
    match = _HEX64_RE.search(text or "")
    return match.group(1).lower() if match else None


# ============================================================
# 数据类
# ============================================================

@dataclass
class AcquisitionProgress:
    """下载安装进度

    stage: fetch_info → download → extract → complete
    """
    stage: str
    progress: int
    downloaded: int = 0
    total: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UpdateCheck:
    needs_update: bool
    reason: Optional[str] = None          # not_installed / outdated
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ReleaseInfo:
    tag_name: str
    assets: List[Dict[str, Any]] = field(default_factory=list)
    # 由网页兜底合成（没有 .dgst 等附属资产）
    synthesized: bool = False

    @property
    def version(self) -> str:
        return self.tag_name.lstrip("vV")

    def find_asset(self, name: str) -> Optional[Dict[str, Any]]:
        for asset in self.assets:
            if asset.get("name") == name:
                return asset
        return None


@dataclass
class CacheEntry:
    """单个缓存归档"""
    name: str
    path: Path
    size_bytes: int
    exists: bool


@dataclass
class PurgeResult:
    """单次缓存清理结果"""
    path: str
    freed_bytes: int
    success: bool
    error: Optional[str] = field(default=None)


# ============================================================
# 获取器
# ============================================================

class BinaryAcquirer:
    """Xray 内核获取器"""

    def __init__(
        self,
        bin_dir: Path,
        cache_dir: Path,
        settings: Optional[DownloadSettings] = None,
        runner: Optional[ICommandRunner] = None,
        events: Optional[EventHub] = None,
        session: Optional[requests.Session] = None,
        system: Optional[str] = None,
        machine: Optional[str] = None,
    ) -> None:
        if runner is None:
            from edgelink.core.adapters import SubprocessRunner
            runner = SubprocessRunner()

        self.bin_dir = bin_dir
        self.cache_dir = cache_dir
        self.settings = settings or load_settings()
        self.runner = runner
        self.events = events
        self.session = session or requests.Session()
        self.platform = detect_platform(system)
        self.architecture = detect_architecture(machine)
        self._install_lock = threading.Lock()

    # ── 命名 ────────────────────────────────────────────────

    @property
    def asset_name(self) -> str:
        return f"Xray-{self.platform}-{self.architecture}.zip"

    @property
    def executable_name(self) -> str:
        return "xray.exe" if self.platform == "windows" else "xray"

    @property
    def executable_path(self) -> Path:
        return self.bin_dir / self.executable_name

    def cache_path(self, version: str) -> Path:
        return self.cache_dir / f"{version}-{self.asset_name}"

    # ── 已安装检查 ──────────────────────────────────────────

    def get_installed_version(self, executable: Union[Path, str]) -> Optional[str]:
        """运行 `<executable> version` 解析版本号，失败返回 None"""
        try:
            result = self.runner.run([str(executable), "version"], timeout=10, check=False)
        except subprocess.TimeoutExpired:
            logger.debug(f"  -> 获取 {executable} 版本超时")
            return None
        if not result.success:
            return None
        return parse_version_output(result.stdout)

    def _missing_files(self) -> List[str]:
        exe = self.executable_path
        missing: List[str] = []
        if not exe.is_file():
            missing.append(self.executable_name)
        elif self.platform != "windows" and not os.access(exe, os.X_OK):
            missing.append(f"{self.executable_name} (不可执行)")
        for name in GEO_FILES:
            if not (self.bin_dir / name).is_file():
                missing.append(name)
        return missing

    def verify_install(self) -> List[str]:
        """校验安装完整性，返回问题列表（空表示完整）"""
        problems = self._missing_files()
        if not problems and not self.get_installed_version(self.executable_path):
            problems.append("无法解析版本输出")
        return problems

    def check_installed(self) -> Optional[Union[Path, str]]:
        """查找可用的内核

        Returns:
            bin_dir 中的完整安装路径；或 PATH 上的 "xray"；都没有返回 None
        """
        exe = self.executable_path
        if exe.exists():
            problems = self.verify_install()
            if not problems:
                logger.debug(f"  -> 找到完整的 Xray 安装: {exe}")
                return exe
            logger.warning(f"  -> [WARN] Xray 安装不完整: {', '.join(problems)}")

        if self.get_installed_version("xray"):
            logger.debug("  -> 使用系统 PATH 中的 xray")
            return "xray"

        return None

    def get_current_version(self) -> Optional[str]:
        """当前版本: 优先读版本记录，其次运行二进制"""
        record = InstalledVersionRecord.load(self.bin_dir)
        if record is not None:
            return record.version
        return self.get_installed_version(self.executable_path)

    # ── 版本信息 ────────────────────────────────────────────

    def get_latest_release(self) -> ReleaseInfo:
        """查询最新 Release

        Raises:
            AcquisitionError: 重试耗尽（network）或限流且兜底失败（rate_limit）
        """
        options = self.settings.download
        last_error: Optional[Exception] = None

        for attempt in range(1, options.retries + 1):
            try:
                response = self.session.get(
                    self.settings.api_url,
                    headers={"Accept": "application/vnd.github+json"},
                    timeout=self.settings.timeout,
                )
                if self._is_rate_limited(response):
                    logger.warning("  -> [WARN] GitHub API 被限流，改用 Release 网页获取版本")
                    return self._fetch_release_from_web()
                response.raise_for_status()
                data = response.json()
                return ReleaseInfo(tag_name=data["tag_name"], assets=list(data.get("assets") or []))
            except (requests.RequestException, KeyError, ValueError) as e:
                last_error = e
                logger.warning(f"  -> [WARN] 获取版本信息失败 (第 {attempt}/{options.retries} 次): {e}")
                if attempt < options.retries:
                    time.sleep(options.retry_delay * attempt)

        raise AcquisitionError(f"获取最新版本信息失败: {last_error}", AcquisitionStage.NETWORK)

    @staticmethod
    def _is_rate_limited(response: requests.Response) -> bool:
        if response.status_code in (403, 429):
            return True
        return response.status_code >= 400 and "rate limit" in (response.text or "").lower()

    def _fetch_release_from_web(self) -> ReleaseInfo:
        try:
            response = self.session.get(
                self.settings.release.web_url,
                allow_redirects=True,
                timeout=self.settings.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise AcquisitionError(f"API 被限流，网页兜底也失败: {e}", AcquisitionStage.RATE_LIMIT)

        match = _TAG_RE.search(response.url or "")
        if not match:
            raise AcquisitionError("API 被限流，且无法从网页解析最新版本", AcquisitionStage.RATE_LIMIT)

        tag = match.group(1)
        base = f"https://github.com/{self.settings.release.repo}/releases/download/{tag}"
        assets = [
            {"name": name, "browser_download_url": f"{base}/{name}"}
            for name in (
                f"Xray-{p}-{a}.zip" for p in KNOWN_PLATFORMS for a in KNOWN_ARCHITECTURES
            )
        ]
        logger.info(f"  -> 从网页获取到最新版本: {tag}")
        return ReleaseInfo(tag_name=tag, assets=assets, synthesized=True)

    def check_for_updates(self) -> UpdateCheck:
        """检查是否需要更新，网络失败时 needs_update=False 并带上 error"""
        try:
            current = self.get_current_version()
            latest = self.get_latest_release().version
        except AcquisitionError as e:
            logger.warning(f"  -> [WARN] 检查更新失败: {e.message}")
            return UpdateCheck(needs_update=False, error=e.message)

        if not current:
            return UpdateCheck(needs_update=True, reason="not_installed", latest_version=latest)
        if compare_versions(latest, current) > 0:
            return UpdateCheck(
                needs_update=True, reason="outdated",
                current_version=current, latest_version=latest,
            )
        return UpdateCheck(needs_update=False, current_version=current, latest_version=latest)

    # ── 下载安装 ────────────────────────────────────────────

    def download_and_install(
        self,
        on_progress: Optional[ProgressCallback] = None,
        force_update: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        """下载并安装内核

        Args:
            on_progress:  进度回调
            force_update: 为 True 时即使已是最新版本也重新安装
            cancel:       置位后中止下载，删除临时文件

        Returns:
            可执行文件路径

        Raises:
            AcquisitionError
        """
        def report(stage: str, progress: int, **kwargs: Any) -> None:
            if on_progress is not None:
                on_progress(AcquisitionProgress(stage=stage, progress=progress, **kwargs))

        with self._install_lock:
            report("fetch_info", 10, message="获取版本信息")
            release = self.get_latest_release()
            version = release.version
            logger.info(f"  -> 最新版本: {version}")

            # 已是最新且安装完整
            if not force_update:
                record = InstalledVersionRecord.load(self.bin_dir)
                if (
                    record is not None
                    and compare_versions(version, record.version) <= 0
                    and not self.verify_install()
                ):
                    logger.info(f"  -> ✓ Xray 已是最新版本 ({record.version})")
                    report("complete", 100, message="已是最新版本")
                    return self.executable_path

            asset_name = self.asset_name
            if release.find_asset(asset_name) is None:
                raise AcquisitionError(
                    f"未找到适用于 {self.platform}-{self.architecture} 的安装包: {asset_name}",
                    AcquisitionStage.ASSET_MISSING,
                    retryable=False,
                )

            url = self.settings.download_url(version, asset_name)
            archive = self._obtain_archive(url, version, report, cancel)

            try:
                if self.settings.download.verify_checksum and not release.synthesized:
                    self._verify_checksum(release, version, archive)
                report("extract", 90, message="解压中")
                self._extract(archive)
            except AcquisitionError as e:
                if e.stage in (AcquisitionStage.CHECKSUM, AcquisitionStage.EXTRACT):
                    # 损坏的缓存不能留给下一次
                    archive.unlink(missing_ok=True)
                raise

            problems = self.verify_install()
            if problems:
                raise AcquisitionError(
                    f"安装验证失败: {', '.join(problems)}",
                    AcquisitionStage.VERIFY,
                    downloaded=True,
                )

            InstalledVersionRecord(
                version=version,
                download_url=url,
                download_date=isoformat(utc_now()),
                platform=self.platform,
                architecture=self.architecture,
            ).save(self.bin_dir)

            if not self.settings.download.use_cache:
                archive.unlink(missing_ok=True)

            logger.info(f"  -> ✓ Xray {version} 安装完成: {self.executable_path}")
            report("complete", 100, message="安装完成")
            return self.executable_path

    def _obtain_archive(
        self,
        url: str,
        version: str,
        report: Callable[..., None],
        cancel: Optional[threading.Event],
    ) -> Path:
        """命中缓存直接返回，否则下载（带重试）"""
        archive = self.cache_path(version)
        if self.settings.download.use_cache and archive.is_file():
            size = archive.stat().st_size
            logger.info(f"  -> 使用缓存: {archive.name} ({format_size(size)})")
            report("download", 100, downloaded=size, total=size, message="使用缓存")
            return archive

        options = self.settings.download
        last_error: Optional[Exception] = None
        logger.info(f"  -> 正在下载 {url}")

        for attempt in range(1, options.retries + 1):
            try:
                self._stream_to(url, archive, report, cancel)
                return archive
            except requests.RequestException as e:
                last_error = e
                logger.warning(f"  -> [WARN] 下载失败 (第 {attempt}/{options.retries} 次): {e}")
                if attempt < options.retries:
                    time.sleep(options.retry_delay * attempt)

        raise AcquisitionError(f"下载失败: {last_error}", AcquisitionStage.NETWORK)

    def _stream_to(
        self,
        url: str,
        target: Path,
        report: Callable[..., None],
        cancel: Optional[threading.Event],
    ) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        part = target.with_name(f"{target.name}.{uuid.uuid4().hex[:8]}.part")

        try:
            response = self.session.get(
                url, stream=True, allow_redirects=True, timeout=self.settings.timeout,
            )
            try:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or 0)
                downloaded = 0
                with open(part, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel is not None and cancel.is_set():
                            raise AcquisitionError(
                                "下载已取消", AcquisitionStage.CANCELLED, retryable=False,
                            )
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        percent = min(100, downloaded * 100 // total) if total else 0
                        report("download", percent, downloaded=downloaded, total=total)
            finally:
                response.close()
            os.replace(part, target)
        finally:
            part.unlink(missing_ok=True)

    def _verify_checksum(self, release: ReleaseInfo, version: str, archive: Path) -> None:
        dgst_name = f"{self.asset_name}.dgst"
        if release.find_asset(dgst_name) is None:
            logger.debug(f"  -> Release 未提供 {dgst_name}，跳过校验")
            return

        try:
            response = self.session.get(
                self.settings.download_url(version, dgst_name),
                allow_redirects=True,
                timeout=self.settings.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise AcquisitionError(
                f"下载校验文件失败: {e}", AcquisitionStage.NETWORK, downloaded=True,
            )

        expected = parse_digest(response.text)
        if not expected:
            logger.warning(f"  -> [WARN] 无法解析 {dgst_name}，跳过校验")
            return

        actual = sha256(archive)
        if actual != expected:
            raise AcquisitionError(
                f"SHA256 校验失败: 期望 {expected[:16]}..., 实际 {actual[:16]}...",
                AcquisitionStage.CHECKSUM,
                downloaded=True,
            )
        logger.info("     SHA256 校验通过 ✓")

    def _extract(self, archive: Path) -> None:
        self.bin_dir.mkdir(parents=True, exist_ok=True)
        try:
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(self.bin_dir)
        except (zipfile.BadZipFile, OSError) as e:
            raise AcquisitionError(
                f"解压失败: {e}", AcquisitionStage.EXTRACT, downloaded=True,
            )

        exe = self.executable_path
        if self.platform != "windows" and exe.exists():
            exe.chmod(0o755)

    # ── 组合流程 ────────────────────────────────────────────

    def _emit(self, event_type: AcquisitionEventType, **data: Any) -> None:
        if self.events is not None:
            self.events.acquisition_event(event_type.value, **data)

    def ensure_available(
        self,
        auto_download: bool = True,
        check_updates: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[Union[Path, str]]:
        """确保内核可用

        Returns:
            内核路径；未安装且 auto_download=False 时返回 None

        Raises:
            AcquisitionError: 未安装且下载失败
        """
        self._emit(AcquisitionEventType.INITIALIZING)
        installed = self.check_installed()

        if installed is not None:
            if not check_updates:
                self._emit(AcquisitionEventType.READY, path=str(installed))
                return installed
            update = self.check_for_updates()
            if not update.needs_update or not auto_download:
                self._emit(
                    AcquisitionEventType.READY,
                    path=str(installed),
                    update_available=update.needs_update,
                    latest_version=update.latest_version,
                )
                return installed
            logger.info(f"  -> 发现新版本: {update.current_version} → {update.latest_version}")
        elif not auto_download:
            self._emit(AcquisitionEventType.DOWNLOAD_REQUIRED)
            return None

        def forward(progress: AcquisitionProgress) -> None:
            self._emit(AcquisitionEventType.DOWNLOADING, **progress.to_dict())
            if on_progress is not None:
                on_progress(progress)

        self._emit(AcquisitionEventType.DOWNLOADING, stage="fetch_info", progress=0)
        try:
            path = self.download_and_install(on_progress=forward, force_update=installed is not None)
        except AcquisitionError as e:
            self._emit(
                AcquisitionEventType.DOWNLOAD_FAILED,
                error=e.message,
                stage=e.stage.value,
                downloaded=e.downloaded,
                retryable=e.retryable,
            )
            if installed is not None:
                logger.warning(f"  -> [WARN] 更新失败，继续使用现有内核: {e.message}")
                return installed
            raise

        self._emit(AcquisitionEventType.READY, path=str(path))
        return path

    # ── 缓存管理 ────────────────────────────────────────────

    def _cached_archives(self) -> List[Path]:
        if not self.cache_dir.is_dir():
            return []
        files = [p for p in self.cache_dir.glob("*.zip") if p.is_file()]
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    def cache_info(self) -> List[CacheEntry]:
        return [
            CacheEntry(name=p.name, path=p, size_bytes=p.stat().st_size, exists=True)
            for p in self._cached_archives()
        ]

    def clean_cache(self, keep_latest: bool = True) -> List[PurgeResult]:
        """清理缓存归档，keep_latest 时保留修改时间最新的一个"""
        archives = self._cached_archives()
        if keep_latest:
            archives = archives[1:]

        results: List[PurgeResult] = []
        for path in archives:
            size = path.stat().st_size
            try:
                path.unlink()
            except OSError as e:
                logger.error(f"  -> ✗ 删除缓存失败 {path.name}: {e}")
                results.append(PurgeResult(path=str(path), freed_bytes=0, success=False, error=str(e)))
                continue
            logger.info(f"  -> 已删除缓存: {path.name} ({format_size(size)})")
            results.append(PurgeResult(path=str(path), freed_bytes=size, success=True))
        return results
