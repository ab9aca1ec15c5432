"""
适配器 - 生产环境的接口实现
"""
import json
import os
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from edgelink.core.ports import ICommandRunner, IDocumentStore, CommandResult
from edgelink.core.utils import logger


class SubprocessRunner(ICommandRunner):
    """生产环境命令执行器"""

    def run(
        self,
        cmd: List[str],
        cwd: Optional[Path] = None,
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> CommandResult:
        cmd_str = " ".join(str(c) for c in cmd)
        logger.debug(f"[CMD] {cmd_str}")

        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                cwd=cwd,
                timeout=timeout,
                capture_output=True,
                text=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug(f"[CMD] 无法执行: {e}")
            return CommandResult(returncode=127, stdout="", stderr=str(e), command=cmd_str)

        if result.stdout:
            logger.debug(f"[STDOUT] {result.stdout.strip()}")
        if result.stderr:
            logger.debug(f"[STDERR] {result.stderr.strip()}")

        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, cmd, result.stdout, result.stderr
            )

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            command=cmd_str,
        )


def write_json_atomic(path: Path, data: Any) -> None:
    """先写临时文件再 rename，避免写一半的 JSON 被读到"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonFileStore(IDocumentStore):
    """基于单个 JSON 文件的文档存储

    写入串行化（同一实例内加锁），并通过 rename 原子替换。
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"  -> ✗ 读取 {self.path} 失败: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]) -> None:
        with self._lock:
            write_json_atomic(self.path, data)
