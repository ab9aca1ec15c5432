"""
Xray 引擎管理

模块结构:
- config.py       ConfigGenerator，代理描述 → Xray JSON 配置
- validator.py    ConfigValidator，描述与生成配置的校验
- supervisor.py   EngineSupervisor，每个代理一个引擎子进程
- installer.py    BinaryAcquirer，内核下载、缓存、校验、安装
- settings.py     下载设置（镜像、重试、超时）
- version.py      版本比较与已安装版本记录
- logs.py         LogAggregator，引擎输出的分级缓存

配置来源:
- src/edgelink/lib/engine/manifest.yaml   (下载默认参数)
- <数据目录>/download-settings.yaml         (用户覆盖)
"""
from edgelink.lib.engine.config import ConfigGenerator, ConfigProfile
from edgelink.lib.engine.installer import BinaryAcquirer
from edgelink.lib.engine.logs import LogAggregator
from edgelink.lib.engine.supervisor import EngineSupervisor
from edgelink.lib.engine.validator import ConfigValidator

__all__ = [
    "ConfigGenerator",
    "ConfigProfile",
    "ConfigValidator",
    "BinaryAcquirer",
    "EngineSupervisor",
    "LogAggregator",
]
