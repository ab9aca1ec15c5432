"""
代理管理

- schema.py     ProxyDescriptor / ProxyRecord (pydantic)
- registry.py   ProxyRegistry，持久化的代理注册表（依赖 engine 子包，需显式导入）
- importer.py   从现有 Xray config.json 导入代理
"""
from edgelink.lib.proxy.schema import ProxyDescriptor, ProxyRecord, StreamSettings

__all__ = ["ProxyDescriptor", "ProxyRecord", "StreamSettings"]
