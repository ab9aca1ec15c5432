"""
异常定义

所有预期内的失败都以 EdgeLinkError 子类抛出，kind 字段标识错误类别，
上层（HTTP / IPC / CLI）可据此映射为不同的响应，而不必解析错误文本。

分类:
  - ValidationError:      描述或生成的引擎配置不合法（不重试，原样展示所有错误）
  - DuplicateNameError / NotFoundError / NotRunningError / AlreadyRunningError:
                          状态前置条件不满足（不重试，用户可操作）
  - ProcessStartFailed:   引擎进程在宽限期内退出（附带 stderr 尾部）
  - AcquisitionError:     内核下载/安装失败（stage 区分网络、限流、解压、校验等）
  - ConfigError:          配置生成失败（如不支持的协议）

磁盘写满等意外错误不在此列，直接以原始异常向上传播。
"""
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    DUPLICATE_NAME = "duplicate_name"
    NOT_FOUND = "not_found"
    NOT_RUNNING = "not_running"
    ALREADY_RUNNING = "already_running"
    PROCESS_START_FAILED = "process_start_failed"
    ACQUISITION = "acquisition"
    CONFIG = "config"


class AcquisitionStage(str, Enum):
    """内核获取失败发生的阶段"""
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    ASSET_MISSING = "asset_missing"
    CHECKSUM = "checksum"
    EXTRACT = "extract"
    VERIFY = "verify"
    CANCELLED = "cancelled"


class EdgeLinkError(Exception):
    """EdgeLink 异常基类"""

    kind: ErrorKind = ErrorKind.CONFIG

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class ValidationError(EdgeLinkError):
    """描述或引擎配置校验失败，errors 包含本次发现的全部问题"""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: List[str], prefix: str = "配置验证失败") -> None:
        self.errors = list(errors)
        super().__init__(f"{prefix}: {'; '.join(self.errors)}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class DuplicateNameError(EdgeLinkError):
    kind = ErrorKind.DUPLICATE_NAME

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'代理名称 "{name}" 已存在')


class NotFoundError(EdgeLinkError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'代理 "{name}" 不存在')


class NotRunningError(EdgeLinkError):
    kind = ErrorKind.NOT_RUNNING

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'代理 "{name}" 未运行')


class AlreadyRunningError(EdgeLinkError):
    kind = ErrorKind.ALREADY_RUNNING

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f'代理 "{name}" 已经在运行中')


class ProcessStartFailed(EdgeLinkError):
    """引擎进程启动失败

    Attributes:
        name:       代理名称
        returncode: 进程退出码（未能启动时为 None）
        stderr:     进程 stderr 尾部（可能为空）
    """

    kind = ErrorKind.PROCESS_START_FAILED

    def __init__(
        self,
        name: str,
        reason: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        self.name = name
        self.reason = reason
        self.returncode = returncode
        self.stderr = stderr
        message = f'代理 "{name}" 启动失败: {reason}'
        if returncode is not None:
            message += f" (退出码: {returncode})"
        if stderr:
            message += f"\n{stderr}"
        super().__init__(message)


class AcquisitionError(EdgeLinkError):
    """内核获取失败

    Attributes:
        stage:      失败阶段
        downloaded: 归档是否已经下载到本地（区分"没下到"与"下到了但损坏/不完整"）
        retryable:  后台是否值得自动重试（网络类错误为 True）
    """

    kind = ErrorKind.ACQUISITION

    def __init__(
        self,
        message: str,
        stage: AcquisitionStage,
        downloaded: bool = False,
        retryable: Optional[bool] = None,
    ) -> None:
        self.stage = stage
        self.downloaded = downloaded
        if retryable is None:
            retryable = stage in (AcquisitionStage.NETWORK, AcquisitionStage.RATE_LIMIT)
        self.retryable = retryable
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "stage": self.stage.value,
            "downloaded": self.downloaded,
            "retryable": self.retryable,
        })
        return data


class ConfigError(EdgeLinkError):
    kind = ErrorKind.CONFIG


class UnsupportedProtocolError(ConfigError):
    def __init__(self, protocol: str) -> None:
        self.protocol = protocol
        super().__init__(f"不支持的协议类型: {protocol}")
