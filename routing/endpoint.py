"""
端点描述解析与序列化

端点描述格式:
    [scheme://][user[:pass]@]host[:port]
    或仅包含端口号的纯数字，例如 "9050"

scheme 必须匹配 socks(\\d\\w?)?，例如 socks、socks4、socks4a、socks5。
缺失字段使用默认值: scheme=socks, host=localhost, port=9050。
"""

import ipaddress
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, unquote, urlsplit

from common import ConfigError

DEFAULT_SCHEME = 'socks'
DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 9050

_SCHEME_PATTERN = re.compile(r'^socks(\d\w?)?$', re.ASCII)
_PORT_ONLY_PATTERN = re.compile(r'^\d+$', re.ASCII)


@dataclass(frozen=True)
class EndpointSpec:
    """
    已解析的代理端点

    Attributes:
        scheme: 协议方案，例如 "socks5"
        host: 主机名或 IP 地址（IPv6 不带方括号）
        port: 端口号（1-65535）
        user: 用户名（可选）
        password: 密码（可选）
        protocol_version: 方案中携带的协议版本，例如 "5"、"4a"（可选）
    """
    scheme: str = DEFAULT_SCHEME
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    user: Optional[str] = None
    password: Optional[str] = None
    protocol_version: Optional[str] = None

    @property
    def has_auth(self) -> bool:
        return self.user is not None or self.password is not None

    def __str__(self) -> str:
        return format_endpoint(self)


def parse_endpoint(text: str) -> EndpointSpec:
    """
    解析端点描述

    Args:
        text: 端点描述字符串

    Returns:
        EndpointSpec: 填充默认值后的端点

    Raises:
        ConfigError: 描述无效、无法解析或方案不受支持
    """
    text = text.strip()

    if _PORT_ONLY_PATTERN.match(text):
        return EndpointSpec(port=_check_port(int(text)))

    # 缺少方案时 urlsplit 会把主机名当作方案，先补上默认前缀
    if '://' not in text:
        text = f"{DEFAULT_SCHEME}://{text}"

    try:
        parts = urlsplit(text)
        hostname = parts.hostname
    except ValueError:
        raise ConfigError('invalid/unparsable socket given')

    try:
        port = parts.port
    except ValueError:
        # urlsplit 对超出范围的数字端口同样抛出 ValueError
        port_text = parts.netloc.rpartition('@')[2].rpartition(':')[2]
        if _PORT_ONLY_PATTERN.match(port_text):
            raise ConfigError('invalid socket given')
        raise ConfigError('invalid/unparsable socket given')

    if not parts.netloc:
        raise ConfigError('invalid/unparsable socket given')

    if parts.path or parts.query or parts.fragment:
        raise ConfigError('invalid socket given')

    scheme = parts.scheme or DEFAULT_SCHEME
    match = _SCHEME_PATTERN.match(scheme)
    if match is None:
        raise ConfigError('invalid socket scheme given')

    return EndpointSpec(
        scheme=scheme,
        host=hostname or DEFAULT_HOST,
        port=DEFAULT_PORT if port is None else _check_port(port),
        user=unquote(parts.username) if parts.username is not None else None,
        password=unquote(parts.password) if parts.password is not None else None,
        protocol_version=match.group(1),
    )


def format_endpoint(spec: EndpointSpec) -> str:
    """
    将端点序列化为规范字符串 "<scheme>://[user:pass@]host:port"

    Args:
        spec: 端点

    Returns:
        str: 用于向操作员展示的规范字符串
    """
    result = f"{spec.scheme}://"
    if spec.has_auth:
        result += f"{quote(spec.user or '', safe='')}:{quote(spec.password or '', safe='')}@"
    result += f"{_format_host(spec.host)}:{spec.port}"
    return result


def _check_port(port: int) -> int:
    if not 1 <= port <= 65535:
        raise ConfigError('invalid socket given')
    return port


def _format_host(host: str) -> str:
    try:
        if ipaddress.ip_address(host).version == 6:
            return f"[{host}]"
    except ValueError:
        pass
    return host
