"""
端口（接口）定义
所有与外部世界交互的能力都在这里声明
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class CommandResult:
    """命令执行结果"""
    returncode: int
    stdout: str
    stderr: str
    command: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


class ICommandRunner(ABC):
    """短命令执行接口（如 `xray version`）"""

    @abstractmethod
    def run(
        self,
        cmd: List[str],
        cwd: Optional[Path] = None,
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> CommandResult:
        """执行命令并返回结果

        命令不存在时返回 returncode=127 的结果，而不是抛出 FileNotFoundError。
        """
        ...


class IDocumentStore(ABC):
    """单文档 JSON 持久化接口"""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """读取整个文档，不存在时返回空字典"""
        ...

    @abstractmethod
    def save(self, data: Dict[str, Any]) -> None:
        """整体覆盖写入文档"""
        ...
