"""
代理描述 Schema 定义

用 Pydantic 描述用户侧的代理配置 (ProxyDescriptor) 与注册表中持久化的记录 (ProxyRecord)。
字段名在 JSON 中使用 camelCase（与 UI / proxies.json 保持一致），Python 侧使用 snake_case。

注意: 语义校验（端口范围、UUID、协议相关必填项等）由 ConfigValidator 负责并一次性
收集所有错误；这里只负责类型和结构。
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from edgelink.core.schema import ProxyStatus


class StreamSettings(BaseModel):
    """传输层设置

    network 相关的额外调优参数（xhttp 的 xPaddingBytes、xmux 等）不逐一声明，
    保留在 model_extra 中，由 ConfigGenerator 按需读取。
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    network: str = "tcp"
    security: Optional[str] = None

    # ws / h2 / xhttp
    path: Optional[str] = None
    host: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    mode: Optional[str] = None

    # grpc
    service_name: Optional[str] = Field(default=None, alias="serviceName")

    # tls
    server_name: Optional[str] = Field(default=None, alias="serverName")
    allow_insecure: bool = Field(default=False, alias="allowInsecure")
    fingerprint: Optional[str] = None
    alpn: Optional[Union[str, List[str]]] = None

    # reality
    public_key: Optional[str] = Field(default=None, alias="publicKey")
    short_id: Optional[str] = Field(default=None, alias="shortId")
    spider_x: Optional[str] = Field(default=None, alias="spiderX")

    @property
    def extras(self) -> Dict[str, Any]:
        """未声明的附加参数"""
        return dict(self.model_extra or {})


class ProxyDescriptor(BaseModel):
    """用户侧的代理定义"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    address: str
    port: int
    local_port: int = Field(alias="localPort")
    protocol: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    password: Optional[str] = None
    # vmess 用户加密方式
    security: Optional[str] = None
    stream_settings: Optional[StreamSettings] = Field(default=None, alias="streamSettings")

    @field_validator("protocol")
    @classmethod
    def protocol_lower(cls, v: str) -> str:
        return v.lower()

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ProxyRecord(ProxyDescriptor):
    """注册表中的代理记录（描述 + 托管字段）

    status 只是记账字段，判断"是否在运行"必须询问 EngineSupervisor。
    """
    config_path: Optional[str] = Field(default=None, alias="configPath")
    status: ProxyStatus = ProxyStatus.STOPPED
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    last_started: Optional[str] = Field(default=None, alias="lastStarted")
    last_stopped: Optional[str] = Field(default=None, alias="lastStopped")

    def descriptor(self) -> ProxyDescriptor:
        """去掉托管字段后的纯描述"""
        return ProxyDescriptor.model_validate(self.model_dump(by_alias=True))
