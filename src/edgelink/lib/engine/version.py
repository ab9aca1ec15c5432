"""
版本工具

- compare_versions():       比较 "1.8.4" / "v1.8.10" 这类点分版本号
- parse_version_output():   从 `xray version` 输出中提取版本号
- InstalledVersionRecord:   已安装内核的版本记录（<bin_dir>/.version）
"""
import json
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from edgelink.core.adapters import write_json_atomic

VERSION_FILENAME = ".version"

_VERSION_OUTPUT_RE = re.compile(r"Xray\s+v?(\d+\.\d+\.\d+)", re.IGNORECASE)


def _version_parts(version: str) -> List[int]:
    parts: List[int] = []
    for part in version.strip().lstrip("vV").split("."):
        parts.append(int(part) if part.isdigit() else 0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """比较版本号

    Returns:
        1 表示 a 较新，-1 表示 b 较新，0 表示相同
    """
    left, right = _version_parts(a), _version_parts(b)
    length = max(len(left), len(right))
    left += [0] * (length - len(left))
    right += [0] * (length - len(right))
    if left > right:
        return 1
    if left < right:
        return -1
    return 0


def parse_version_output(output: str) -> Optional[str]:
    """从 `xray version` 的输出中提取版本号，如 "Xray 1.8.4 (Xray, Penetrates Everything.)" → "1.8.4" """
    match = _VERSION_OUTPUT_RE.search(output or "")
    return match.group(1) if match else None


# camelCase 键名与 .version 文件保持一致
_JSON_KEYS = {
    "version": "version",
    "download_url": "downloadUrl",
    "download_date": "downloadDate",
    "platform": "platform",
    "architecture": "architecture",
}


@dataclass
class InstalledVersionRecord:
    """已安装内核的版本记录

    只在安装完全校验通过后写入，文件存在即表示该版本可用。
    """
    version: str
    download_url: Optional[str] = None
    download_date: Optional[str] = None
    platform: Optional[str] = None
    architecture: Optional[str] = None

    def save(self, bin_dir: Path) -> None:
        data: Dict[str, Any] = {}
        for f in fields(self):
            data[_JSON_KEYS[f.name]] = getattr(self, f.name)
        write_json_atomic(bin_dir / VERSION_FILENAME, data)

    @classmethod
    def load(cls, bin_dir: Path) -> Optional["InstalledVersionRecord"]:
        """读取版本记录，文件不存在或损坏时返回 None"""
        file_path = bin_dir / VERSION_FILENAME
        if not file_path.exists():
            return None

        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, IOError):
            return None

        if not isinstance(data, dict) or not data.get("version"):
            return None

        kwargs = {name: data.get(key) for name, key in _JSON_KEYS.items()}
        return cls(**kwargs)
