"""
Schema & 类型定义

集中管理:
- Protocol / Network / Security: 代理描述中的枚举值
- ProcessState / ProxyStatus: 进程与代理状态
- LogLevel / LogSource: 引擎日志
- AcquisitionEventType: 内核获取流程的生命周期事件
- EnvKey: 环境变量名（避免魔法字符串）
"""
from enum import Enum


# ============================================================
# 代理描述
# ============================================================
class Protocol(str, Enum):
    """出站协议"""
    VLESS = "vless"
    VMESS = "vmess"
    TROJAN = "trojan"


class Network(str, Enum):
    """传输方式"""
    TCP = "tcp"
    WS = "ws"
    H2 = "h2"
    GRPC = "grpc"
    XHTTP = "xhttp"


class Security(str, Enum):
    """传输层安全"""
    NONE = "none"
    TLS = "tls"
    REALITY = "reality"


# 需要 UUID 的协议
UUID_PROTOCOLS = (Protocol.VLESS.value, Protocol.VMESS.value)


# ============================================================
# 状态
# ============================================================
class ProcessState(str, Enum):
    """Supervisor 内部的进程状态"""
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class ProxyStatus(str, Enum):
    """对外暴露的代理状态"""
    RUNNING = "running"
    STOPPED = "stopped"


# ============================================================
# 日志
# ============================================================
class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogSource(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


# ============================================================
# 内核获取事件
# ============================================================
class AcquisitionEventType(str, Enum):
    INITIALIZING = "initializing"
    DOWNLOADING = "downloading"
    READY = "ready"
    DOWNLOAD_REQUIRED = "download_required"
    DOWNLOAD_FAILED = "download_failed"


# ============================================================
# 环境变量名枚举
# ============================================================
class EnvKey(str, Enum):
    """
    EdgeLink 读取的环境变量名。
    """
    # 数据目录（bin/ cache/ configs/ logs/ proxies.json）
    EDGELINK_HOME = "EDGELINK_HOME"

    # 显式指定引擎可执行文件，跳过自动下载
    EDGELINK_ENGINE = "EDGELINK_ENGINE"
