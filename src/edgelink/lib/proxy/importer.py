"""
从现有 Xray config.json 导入代理

把引擎配置的 outbounds 反解析为代理描述，再逐个交给 ProxyRegistry.add:
- 只识别 vless / vmess / trojan 出站，其余（freedom、blackhole 等）跳过
- 本地端口取第一个 socks / http / dokodemo-door 入站，没有则用 1080
- 名称形如 VLESS-edge-443（协议-地址首段-端口）

单个出站解析或添加失败不影响其他出站，结果逐项返回。
"""
import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from edgelink.core.errors import ConfigError, EdgeLinkError
from edgelink.core.schema import Network, Protocol, Security
from edgelink.core.utils import logger

DEFAULT_LOCAL_PORT = 1080
LOCAL_INBOUND_PROTOCOLS = ("socks", "http", "dokodemo-door")


@dataclass
class ImportedProxy:
    """从出站解析出的代理"""
    name: str
    descriptor: Dict[str, Any]


@dataclass
class ImportResult:
    name: str
    ok: bool
    error: Optional[str] = None


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _first(items: Any) -> Optional[Dict[str, Any]]:
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return dict(items[0])
    return None


def proxy_name(protocol: str, address: str, port: Any) -> str:
    base = address.split(".")[0] if "." in address else address
    return f"{protocol.upper()}-{base}-{port}"


def parse_stream_settings(stream: Mapping) -> Dict[str, Any]:
    """引擎 streamSettings → 描述里的扁平 streamSettings"""
    settings: Dict[str, Any] = {
        "network": stream.get("network") or Network.TCP.value,
        "security": stream.get("security") or Security.NONE.value,
    }

    tls = stream.get("tlsSettings")
    if isinstance(tls, Mapping):
        settings.update(_drop_none({
            "serverName": tls.get("serverName"),
            "allowInsecure": tls.get("allowInsecure"),
            "fingerprint": tls.get("fingerprint"),
            "alpn": tls.get("alpn"),
        }))

    reality = stream.get("realitySettings")
    if isinstance(reality, Mapping):
        settings.update(_drop_none({
            "serverName": reality.get("serverName"),
            "fingerprint": reality.get("fingerprint"),
            "publicKey": reality.get("publicKey"),
            "shortId": reality.get("shortId"),
            "spiderX": reality.get("spiderX"),
        }))

    ws = stream.get("wsSettings")
    if isinstance(ws, Mapping):
        settings.update(_drop_none({"path": ws.get("path"), "headers": ws.get("headers") or None}))

    http = stream.get("httpSettings")
    if isinstance(http, Mapping):
        hosts = http.get("host") or []
        settings.update(_drop_none({"path": http.get("path"), "host": hosts[0] if hosts else None}))

    grpc = stream.get("grpcSettings")
    if isinstance(grpc, Mapping):
        settings.update(_drop_none({"serviceName": grpc.get("serviceName")}))

    xhttp = stream.get("xhttpSettings")
    if isinstance(xhttp, Mapping):
        settings.update(_drop_none({
            "host": xhttp.get("host"),
            "mode": xhttp.get("mode"),
            "path": xhttp.get("path"),
            "extra": xhttp.get("extra"),
        }))

    return settings


def find_local_inbound(inbounds: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(inbounds, list):
        return None
    for inbound in inbounds:
        if isinstance(inbound, Mapping) and inbound.get("protocol") in LOCAL_INBOUND_PROTOCOLS:
            return dict(inbound)
    return None


def parse_outbound(outbound: Mapping, inbounds: Any = None) -> Optional[ImportedProxy]:
    """解析单个出站，不支持的协议或缺少服务器信息时返回 None"""
    protocol = outbound.get("protocol")
    settings = outbound.get("settings") or {}
    descriptor: Dict[str, Any] = {"protocol": protocol}

    if protocol in (Protocol.VLESS.value, Protocol.VMESS.value):
        server = _first(settings.get("vnext"))
        if server is None:
            return None
        user = _first(server.get("users")) or {}
        descriptor.update(_drop_none({
            "address": server.get("address"),
            "port": server.get("port"),
            "userId": user.get("id"),
        }))
        if protocol == Protocol.VMESS.value and user.get("security"):
            descriptor["security"] = user["security"]
    elif protocol == Protocol.TROJAN.value:
        server = _first(settings.get("servers"))
        if server is None:
            return None
        descriptor.update(_drop_none({
            "address": server.get("address"),
            "port": server.get("port"),
            "password": server.get("password"),
        }))
    else:
        return None

    if not descriptor.get("address"):
        return None

    stream = outbound.get("streamSettings")
    if isinstance(stream, Mapping):
        descriptor["streamSettings"] = parse_stream_settings(stream)

    inbound = find_local_inbound(inbounds)
    descriptor["localPort"] = inbound.get("port", DEFAULT_LOCAL_PORT) if inbound else DEFAULT_LOCAL_PORT

    name = proxy_name(protocol, str(descriptor["address"]), descriptor.get("port"))
    return ImportedProxy(name=name, descriptor=descriptor)


def extract_descriptors(config: Mapping) -> List[ImportedProxy]:
    """从引擎配置中提取全部可导入的代理

    Raises:
        TypeError: config 不是对象
    """
    if not isinstance(config, Mapping):
        raise TypeError(f"引擎配置必须是对象，实际为 {type(config).__name__}")

    outbounds = config.get("outbounds")
    if not isinstance(outbounds, list):
        return []

    proxies: List[ImportedProxy] = []
    for index, outbound in enumerate(outbounds):
        if not isinstance(outbound, Mapping):
            logger.warning(f"  -> [WARN] 跳过出站 {index}: 不是对象")
            continue
        proxy = parse_outbound(outbound, config.get("inbounds"))
        if proxy is None:
            logger.debug(f"  -> 跳过出站 {index} ({outbound.get('protocol')})")
            continue
        proxies.append(proxy)
    return proxies


def load_engine_config(path: Union[Path, str]) -> Dict[str, Any]:
    """Raises: ConfigError"""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"配置文件不存在: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"无法读取配置文件 {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件格式错误（应为 JSON 对象）: {path}")
    return data


def import_proxies(registry, config: Mapping) -> List[ImportResult]:
    """把提取出的代理逐个加入注册表"""
    proxies = extract_descriptors(config)
    if not proxies:
        logger.warning("  -> [WARN] 配置中没有可导入的代理")
        return []

    logger.info(f"  -> 找到 {len(proxies)} 个代理，开始导入...")
    results: List[ImportResult] = []
    for proxy in proxies:
        try:
            registry.add(proxy.name, proxy.descriptor)
        except EdgeLinkError as e:
            logger.error(f"  -> ✗ 导入 {proxy.name} 失败: {e.message}")
            results.append(ImportResult(name=proxy.name, ok=False, error=e.message))
            continue
        results.append(ImportResult(name=proxy.name, ok=True))
    return results
