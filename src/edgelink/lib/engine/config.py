"""
Xray 配置生成

职责:
- 代理描述 (ProxyDescriptor) → Xray JSON 配置（纯函数，不做任何 I/O）
- 入站: 本地 127.0.0.1:localPort，两种配置档位
    socks   (默认) SOCKS 监听，应用通过本地 SOCKS 代理上网
    forward        dokodemo-door 直接转发到远端，强制 xHTTP + TLS、固定路径 /mcproxy
- 出站: 按协议生成唯一一个 vless / vmess / trojan 出站
- 传输: 按 network 附加 ws / h2 / grpc / xhttp 参数，按 security 附加 TLS / REALITY

未填写 userId 时使用注入的 id_factory 生成 UUID，方便测试时固定结果。
"""
import uuid
from collections.abc import Mapping
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from edgelink.core.errors import UnsupportedProtocolError
from edgelink.core.schema import Network, Protocol, Security
from edgelink.lib.proxy.schema import ProxyDescriptor, StreamSettings

INBOUND_TAG = "proxy-in"
OUTBOUND_TAG = "proxy-out"
DEFAULT_LISTEN = "127.0.0.1"


class ConfigProfile(str, Enum):
    """入站配置档位"""
    SOCKS = "socks"
    FORWARD = "forward"


# forward 档位强制使用的传输参数
_FORWARD_STREAM_OVERRIDES: Dict[str, Any] = {
    "network": Network.XHTTP.value,
    "security": Security.TLS.value,
    "mode": "auto",
    "path": "/mcproxy",
}

# xHTTP extra 调优参数默认值
_XHTTP_EXTRA_DEFAULTS: Dict[str, Any] = {
    "xPaddingBytes": "100-1000",
    "noGRPCHeader": False,
    "noSSEHeader": False,
    "scMaxEachPostBytes": 1000000,
    "scMinPostsIntervalMs": "0-100",
    "scMaxBufferedPosts": 30,
    "scStreamUpServerSecs": "20-80",
}

# XMUX 连接复用默认值
_XMUX_DEFAULTS: Dict[str, Any] = {
    "maxConcurrency": "16-32",
    "maxConnections": 0,
    "cMaxReuseTimes": 0,
    "hMaxRequestTimes": "600-900",
    "hMaxReusableSecs": "1800-3000",
    "hKeepAlivePeriod": 0,
}


def _as_list(value: Union[str, List[str]]) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


def _pick(extras: Dict[str, Any], key: str, default: Any) -> Any:
    value = extras.get(key)
    return default if value is None else value


class ConfigGenerator:
    """Xray 配置生成器"""

    def __init__(
        self,
        profile: ConfigProfile = ConfigProfile.SOCKS,
        log_level: str = "warning",
        id_factory: Optional[Callable[[], str]] = None,
        listen: str = DEFAULT_LISTEN,
    ) -> None:
        self.profile = ConfigProfile(profile)
        self.log_level = log_level
        self.listen = listen
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def generate(self, descriptor: Union[ProxyDescriptor, Mapping]) -> Dict[str, Any]:
        """生成完整的 Xray 配置

        Raises:
            UnsupportedProtocolError: 协议不是 vless / vmess / trojan
        """
        if isinstance(descriptor, Mapping):
            descriptor = ProxyDescriptor.model_validate(descriptor)

        if descriptor.protocol not in [p.value for p in Protocol]:
            raise UnsupportedProtocolError(descriptor.protocol)

        # ── 1. 基础骨架 ──
        config: Dict[str, Any] = {
            "log": {"loglevel": self.log_level},
            "inbounds": [],
            "outbounds": [],
        }

        # ── 2. 入站（唯一） ──
        config["inbounds"].append(self.build_inbound(descriptor))

        # ── 3. 出站（唯一） ──
        outbound = self.build_outbound(descriptor)

        # ── 4. 传输层 ──
        stream = self._effective_stream(descriptor)
        if stream is not None:
            outbound["streamSettings"] = self.build_stream_settings(stream, descriptor.address)

        config["outbounds"].append(outbound)
        return config

    # ── 入站 ────────────────────────────────────────────────

    def build_inbound(self, descriptor: ProxyDescriptor) -> Dict[str, Any]:
        inbound: Dict[str, Any] = {
            "tag": INBOUND_TAG,
            "listen": self.listen,
            "port": int(descriptor.local_port),
        }

        if self.profile == ConfigProfile.FORWARD:
            inbound["protocol"] = "dokodemo-door"
            inbound["settings"] = {
                "address": descriptor.address,
                "port": int(descriptor.port),
                "network": "tcp",
            }
        else:
            inbound["protocol"] = "socks"
            inbound["settings"] = {"auth": "noauth", "udp": True}
            inbound["sniffing"] = {"enabled": True, "destOverride": ["http", "tls"]}

        return inbound

    # ── 出站 ────────────────────────────────────────────────

    def build_outbound(self, descriptor: ProxyDescriptor) -> Dict[str, Any]:
        protocol = descriptor.protocol
        address = descriptor.address
        port = int(descriptor.port)

        if protocol == Protocol.VLESS.value:
            settings: Dict[str, Any] = {"vnext": [{
                "address": address,
                "port": port,
                "users": [{"id": descriptor.user_id or self._id_factory(), "encryption": "none"}],
            }]}
        elif protocol == Protocol.VMESS.value:
            settings = {"vnext": [{
                "address": address,
                "port": port,
                "users": [{
                    "id": descriptor.user_id or self._id_factory(),
                    "security": descriptor.security or "auto",
                }],
            }]}
        elif protocol == Protocol.TROJAN.value:
            settings = {"servers": [{
                "address": address,
                "port": port,
                "password": descriptor.password,
            }]}
        else:
            raise UnsupportedProtocolError(protocol)

        return {"tag": OUTBOUND_TAG, "protocol": protocol, "settings": settings}

    # ── 传输层 ──────────────────────────────────────────────

    def _effective_stream(self, descriptor: ProxyDescriptor) -> Optional[StreamSettings]:
        """forward 档位覆盖传输参数（不修改原始描述）"""
        stream = descriptor.stream_settings
        if self.profile != ConfigProfile.FORWARD:
            return stream
        base = stream if stream is not None else StreamSettings()
        return base.model_copy(update=_FORWARD_STREAM_OVERRIDES)

    def build_stream_settings(self, stream: StreamSettings, address: str) -> Dict[str, Any]:
        network = stream.network or Network.TCP.value
        security = stream.security or Security.TLS.value
        settings: Dict[str, Any] = {"network": network, "security": security}

        if security == Security.TLS.value:
            tls: Dict[str, Any] = {
                "serverName": stream.server_name or address,
                "allowInsecure": bool(stream.allow_insecure),
            }
            if stream.fingerprint:
                tls["fingerprint"] = stream.fingerprint
            if stream.alpn:
                tls["alpn"] = _as_list(stream.alpn)
            settings["tlsSettings"] = tls
        elif security == Security.REALITY.value:
            settings["realitySettings"] = {
                "serverName": stream.server_name or address,
                "fingerprint": stream.fingerprint or "chrome",
                "publicKey": stream.public_key or "",
                "shortId": stream.short_id or "",
                "spiderX": stream.spider_x or "/",
            }

        if network == Network.WS.value:
            headers = dict(stream.headers or {})
            if stream.host:
                headers.setdefault("Host", stream.host)
            settings["wsSettings"] = {"path": stream.path or "/", "headers": headers}
        elif network == Network.H2.value:
            settings["httpSettings"] = {
                "path": stream.path or "/",
                "host": [stream.host] if stream.host else [],
            }
        elif network == Network.GRPC.value:
            settings["grpcSettings"] = {"serviceName": stream.service_name or ""}
        elif network == Network.XHTTP.value:
            settings["xhttpSettings"] = self._build_xhttp(stream)

        return settings

    @staticmethod
    def _build_xhttp(stream: StreamSettings) -> Dict[str, Any]:
        extras = stream.extras
        xhttp: Dict[str, Any] = {
            "mode": stream.mode or "auto",
            "path": stream.path or "/",
        }
        if stream.host:
            xhttp["host"] = stream.host

        extra: Dict[str, Any] = {"headers": dict(stream.headers or {})}
        for key, default in _XHTTP_EXTRA_DEFAULTS.items():
            extra[key] = _pick(extras, key, default)

        if extras.get("enableXMUX") is not False:
            extra["xmux"] = {key: _pick(extras, key, default) for key, default in _XMUX_DEFAULTS.items()}

        # 上下行分离
        if extras.get("downloadSettings"):
            extra["downloadSettings"] = extras["downloadSettings"]

        # 用户自定义 extra 最后合并
        if isinstance(extras.get("extra"), dict):
            extra.update(extras["extra"])

        xhttp["extra"] = extra
        return xhttp
