"""
内核下载设置

默认值来自同目录的 manifest.yaml，用户覆盖保存在 <数据目录>/download-settings.yaml。
镜像只影响归档下载，元数据 API 始终走官方 GitHub。
"""
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, field_validator, model_validator

from edgelink.core.utils import logger
from edgelink.lib.utils import load_yaml, save_yaml

MANIFEST_PATH = Path(__file__).parent / "manifest.yaml"
SETTINGS_FILENAME = "download-settings.yaml"


class MirrorInfo(BaseModel):
    name: str
    base_url: str
    description: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ReleaseSource(BaseModel):
    repo: str = "XTLS/Xray-core"
    api_url: str = "https://api.github.com/repos/XTLS/Xray-core/releases/latest"
    web_url: str = "https://github.com/XTLS/Xray-core/releases/latest"


class DownloadOptions(BaseModel):
    retries: int = 3
    retry_delay: float = 2.0
    connect_timeout: float = 30.0
    read_timeout: float = 300.0
    use_cache: bool = True
    verify_checksum: bool = True

    @field_validator("retries")
    @classmethod
    def retries_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retries 至少为 1")
        return v


class DownloadSettings(BaseModel):
    """download-settings.yaml 的顶层结构"""
    release: ReleaseSource = ReleaseSource()
    mirror: str = "github"
    mirrors: Dict[str, MirrorInfo] = {}
    download: DownloadOptions = DownloadOptions()

    @model_validator(mode="after")
    def mirror_known(self) -> "DownloadSettings":
        if self.mirrors and self.mirror not in self.mirrors:
            raise ValueError(f"未知的下载镜像: {self.mirror}，可选: {', '.join(self.mirrors)}")
        return self

    @property
    def api_url(self) -> str:
        return self.release.api_url

    @property
    def current_mirror(self) -> MirrorInfo:
        mirror = self.mirrors.get(self.mirror)
        if mirror is None:
            return MirrorInfo(name="GitHub", base_url="https://github.com")
        return mirror

    @property
    def timeout(self) -> tuple:
        """requests 的 (connect, read) 超时"""
        return (self.download.connect_timeout, self.download.read_timeout)

    def download_url(self, version: str, filename: str) -> str:
        """按当前镜像拼接归档下载地址"""
        version = version.lstrip("v")
        return (
            f"{self.current_mirror.base_url}/{self.release.repo}"
            f"/releases/download/v{version}/{filename}"
        )


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(home: Optional[Path] = None) -> DownloadSettings:
    """读取下载设置（manifest 默认值 + 用户覆盖）

    用户文件无效时记录警告并回退到默认值。
    """
    defaults = load_yaml(MANIFEST_PATH)
    if home is None:
        return DownloadSettings.model_validate(defaults)

    overrides = load_yaml(home / SETTINGS_FILENAME)
    try:
        return DownloadSettings.model_validate(_merge(defaults, overrides))
    except ValueError as e:
        logger.warning(f"  -> [WARN] {home / SETTINGS_FILENAME} 无效，使用默认下载设置: {e}")
        return DownloadSettings.model_validate(defaults)


def save_settings(home: Path, settings: DownloadSettings) -> None:
    """保存用户可修改的部分（镜像选择与下载参数）"""
    save_yaml(home / SETTINGS_FILENAME, {
        "mirror": settings.mirror,
        "download": settings.download.model_dump(),
    })


def update_mirror(home: Path, mirror: str) -> DownloadSettings:
    """切换下载镜像并持久化

    Raises:
        ValueError: 镜像类型不存在
    """
    settings = load_settings(home)
    if mirror not in settings.mirrors:
        raise ValueError(f"未知的下载镜像: {mirror}，可选: {', '.join(settings.mirrors)}")
    settings = settings.model_copy(update={"mirror": mirror})
    save_settings(home, settings)
    logger.info(f"  -> ✓ 下载镜像已切换为 {settings.current_mirror.name}")
    return settings
