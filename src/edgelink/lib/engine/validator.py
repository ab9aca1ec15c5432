"""
配置验证

- validate():               校验用户提交的代理描述
- validate_engine_config(): 校验生成出来的 Xray 配置

所有规则都会检查并收集错误（不是遇错即停），校验不通过不会抛异常；
只有输入根本不是对象（dict）时才抛出 TypeError。
"""
import ipaddress
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List

from edgelink.core.errors import ValidationError
from edgelink.core.schema import Network, Protocol, Security, UUID_PROTOCOLS

_DOMAIN_RE = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

PROTOCOLS = [p.value for p in Protocol]
NETWORKS = [n.value for n in Network]
SECURITIES = [s.value for s in Security]

_STRING_FIELDS = ("name", "address", "userId", "password")
_PORT_FIELDS = ("port", "localPort")


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return "; ".join(self.errors)

    def raise_if_invalid(self, prefix: str = "配置验证失败") -> None:
        if not self.valid:
            raise ValidationError(self.errors, prefix=prefix)


# ============================================================
# 基础校验函数
# ============================================================
def is_valid_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def is_valid_domain(value: str) -> bool:
    # 纯数字加点的写法只能是 IPv4，不当作域名
    if re.fullmatch(r"[\d.]+", value):
        return False
    return bool(_DOMAIN_RE.match(value))


def is_valid_port(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        return False
    return 1 <= value <= 65535


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def normalize_descriptor(data: Mapping) -> Dict[str, Any]:
    """清理和标准化描述: 去掉字符串首尾空白，数字字符串端口转 int"""
    if not isinstance(data, Mapping):
        raise TypeError("代理描述必须是对象")

    normalized = dict(data)
    for key in _STRING_FIELDS:
        value = normalized.get(key)
        if isinstance(value, str):
            normalized[key] = value.strip()
    for key in _PORT_FIELDS:
        value = normalized.get(key)
        if isinstance(value, str) and value.strip().isdigit():
            normalized[key] = int(value.strip())
    protocol = normalized.get("protocol")
    if isinstance(protocol, str):
        normalized["protocol"] = protocol.strip().lower()
    return normalized


class ConfigValidator:
    """代理描述与引擎配置的校验器"""

    def validate(self, descriptor: Mapping) -> ValidationResult:
        """校验代理描述，返回全部错误"""
        if not isinstance(descriptor, Mapping):
            raise TypeError("代理描述必须是对象")

        errors: List[str] = []

        name = descriptor.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append("name 不能为空")

        address = descriptor.get("address")
        if not address:
            errors.append("address 不能为空")
        elif not isinstance(address, str) or not (is_valid_ipv4(address) or is_valid_domain(address)):
            errors.append("address 格式无效（需要 IPv4 地址或域名）")

        for key in _PORT_FIELDS:
            if not is_valid_port(descriptor.get(key)):
                errors.append(f"{key} 必须是 1-65535 之间的整数")

        protocol = descriptor.get("protocol")
        if protocol not in PROTOCOLS:
            errors.append(f"protocol 必须是 {'、'.join(PROTOCOLS)} 之一")

        if protocol in UUID_PROTOCOLS:
            user_id = descriptor.get("userId")
            if not user_id:
                errors.append(f"userId 不能为空（{protocol} 协议需要 UUID）")
            elif not is_valid_uuid(user_id):
                errors.append("userId 必须是有效的 UUID 格式")

        if protocol == Protocol.TROJAN.value:
            password = descriptor.get("password")
            if not isinstance(password, str) or not password:
                errors.append("password 不能为空（trojan 协议需要密码）")

        stream = descriptor.get("streamSettings")
        if stream is not None:
            errors.extend(self._validate_stream_settings(stream))

        return ValidationResult(valid=not errors, errors=errors)

    @staticmethod
    def _validate_stream_settings(stream: Any) -> List[str]:
        if not isinstance(stream, Mapping):
            return ["streamSettings 必须是对象"]

        errors: List[str] = []
        network = stream.get("network")
        if network is not None and network not in NETWORKS:
            errors.append(f"streamSettings.network 必须是 {'、'.join(NETWORKS)} 之一")

        security = stream.get("security")
        if security is not None and security not in SECURITIES:
            errors.append(f"streamSettings.security 必须是 {'、'.join(SECURITIES)} 之一")

        allow_insecure = stream.get("allowInsecure")
        if allow_insecure is not None and not isinstance(allow_insecure, bool):
            errors.append("streamSettings.allowInsecure 必须是布尔值")

        return errors

    def validate_engine_config(self, config: Mapping) -> ValidationResult:
        """校验生成的 Xray 配置"""
        if not isinstance(config, Mapping):
            raise TypeError("引擎配置必须是对象")

        errors: List[str] = []

        inbounds = config.get("inbounds")
        if not isinstance(inbounds, list) or not inbounds:
            errors.append("inbounds 缺失或为空")
        else:
            for index, inbound in enumerate(inbounds):
                if not isinstance(inbound, Mapping):
                    errors.append(f"inbounds[{index}] 必须是对象")
                    continue
                if not is_valid_port(inbound.get("port")):
                    errors.append(f"inbounds[{index}] 端口无效")
                if not inbound.get("protocol"):
                    errors.append(f"inbounds[{index}] 缺少 protocol")

        outbounds = config.get("outbounds")
        if not isinstance(outbounds, list) or not outbounds:
            errors.append("outbounds 缺失或为空")
        else:
            for index, outbound in enumerate(outbounds):
                if not isinstance(outbound, Mapping) or not outbound.get("protocol"):
                    errors.append(f"outbounds[{index}] 缺少 protocol")

        return ValidationResult(valid=not errors, errors=errors)
