"""
EdgeLink - Xray 代理引擎管理层

配置生成、进程托管、内核下载，供上层 UI / HTTP / CLI 调用。
"""
__version__ = "1.0.0"
