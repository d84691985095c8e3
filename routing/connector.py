"""
出站连接器

本模块定义了守护进程使用的全部出站连接器，以及它们共享的网络上下文：
- NetworkContext: DNS 解析（带缓存）和 TCP 连接原语，进程内唯一
- DirectConnector: DNS 解析后直接建立 TCP 连接
- RejectConnector: 总是拒绝连接
- SocksClient: 经由上游 SOCKS 代理转发 CONNECT 请求
- LabeledConnector: 带有展示标签的连接器

所有连接器的 connect(host, port) 都是协程，成功时返回 (reader, writer)，
失败时抛出 ConnectionError。
"""

import asyncio
import ipaddress
import socket
import time
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from common import ConnectionRejectedError, HostResolutionError
from protocol import socks4_connect, socks5_connect

logger = logging.getLogger('socks-via-connector')

Stream = Tuple[asyncio.StreamReader, asyncio.StreamWriter]

SUPPORTED_PROTOCOL_VERSIONS = ('4', '4a', '5')
DEFAULT_PROTOCOL_VERSION = '5'

RESOLVE_REMOTE = 'remote'
RESOLVE_LOCAL = 'local'

MAX_CACHE_ENTRIES = 4096


# ============================================================================
# 网络上下文
# ============================================================================

class Resolver:
    """
    异步 DNS 解析器

    使用事件循环的 getaddrinfo，结果按 (主机名, 地址族) 缓存 TTL 秒。
    IP 字面量直接返回，不经过解析。缓存最多保留 max_entries 条，
    写入时先清除过期条目，仍然超出时丢弃最早写入的条目。
    TTL 固定，写入顺序即过期顺序。
    """

    def __init__(self, ttl: float = 300.0, max_entries: int = MAX_CACHE_ENTRIES):
        self.ttl = ttl
        self.max_entries = max_entries
        self._cache: Dict[Tuple[str, int], Tuple[str, float]] = {}

    def __len__(self) -> int:
        return len(self._cache)

    async def resolve(self, host: str, family: int = socket.AF_UNSPEC) -> str:
        """
        将主机名解析为 IP 地址

        Args:
            host: 主机名或 IP 字面量
            family: socket.AF_INET 时只接受 IPv4 地址

        Raises:
            HostResolutionError: 解析失败，或没有所需地址族的地址
        """
        try:
            literal = ipaddress.ip_address(host)
        except ValueError:
            literal = None
        if literal is not None:
            if family == socket.AF_INET and literal.version != 4:
                raise HostResolutionError(f"{host} is not an IPv4 address")
            if family == socket.AF_INET6 and literal.version != 6:
                raise HostResolutionError(f"{host} is not an IPv6 address")
            return str(literal)

        key = (host, family)
        cached = self._cache.get(key)
        if cached is not None and cached[1] > time.monotonic():
            return cached[0]

        try:
            infos = await self._lookup(host, family)
        except (socket.gaierror, UnicodeError) as e:
            raise HostResolutionError(f"DNS lookup for {host} failed: {e}") from e
        if not infos:
            raise HostResolutionError(f"DNS lookup for {host} returned no addresses")

        address = infos[0][4][0]
        logger.debug(f"DNS 解析: {host} -> {address}")
        if self.ttl > 0:
            self._store(key, address)
        return address

    async def _lookup(self, host: str, family: int) -> list:
        loop = asyncio.get_running_loop()
        return await loop.getaddrinfo(host, None, family=family, type=socket.SOCK_STREAM)

    def _store(self, key: Tuple[str, int], address: str):
        now = time.monotonic()
        self._cache.pop(key, None)
        while self._cache:
            oldest = next(iter(self._cache))
            if self._cache[oldest][1] > now and len(self._cache) < self.max_entries:
                break
            del self._cache[oldest]
        self._cache[key] = (address, now + self.ttl)

    def clear(self):
        """清空缓存"""
        self._cache.clear()


class NetworkContext:
    """
    进程级网络上下文

    在启动时创建一次，通过引用传递给所有发起网络操作的组件，
    关闭时调用 close() 释放。

    Attributes:
        resolver: DNS 解析器
    """

    def __init__(self, resolver: Optional[Resolver] = None):
        self.resolver = resolver or Resolver()
        self.closed = False

    async def open_connection(self, host: str, port: int) -> Stream:
        """
        解析 host 并建立 TCP 连接

        Raises:
            ConnectionError: 解析或连接失败
        """
        address = await self.resolver.resolve(host)
        try:
            return await asyncio.open_connection(address, port)
        except ConnectionError:
            raise
        except OSError as e:
            raise ConnectionError(f"connection to {address}:{port} failed: {e}") from e

    def close(self):
        """释放上下文持有的资源"""
        self.resolver.clear()
        self.closed = True


# ============================================================================
# 连接器
# ============================================================================

class Connector(ABC):
    """出站连接器接口"""

    @abstractmethod
    async def connect(self, host: str, port: int) -> Stream:
        """建立到 (host, port) 的出站连接"""


class DirectConnector(Connector):
    """DNS 解析后直接 TCP 连接目标，不带任何 SOCKS 帧"""

    def __init__(self, context: NetworkContext):
        self.context = context

    async def connect(self, host: str, port: int) -> Stream:
        return await self.context.open_connection(host, port)


class RejectConnector(Connector):
    """对所有目标都拒绝连接"""

    async def connect(self, host: str, port: int) -> Stream:
        raise ConnectionRejectedError(f"connection to {host}:{port} rejected")


def supports_remote_resolution(protocol_version: Optional[str]) -> bool:
    """
    判断协议版本是否支持由上游解析域名

    SOCKS4 只能携带 IPv4 地址；SOCKS4a 与 SOCKS5 可以携带域名。
    """
    return (protocol_version or DEFAULT_PROTOCOL_VERSION) != '4'


class SocksClient(Connector):
    """
    SOCKS 客户端连接器

    通过内部的直连连接器连到上游代理 (proxy_host, proxy_port)，
    再用 SOCKS CONNECT 把请求的目标转发给上游。

    Attributes:
        proxy_host: 上游代理地址
        proxy_port: 上游代理端口
        connector: 用于连到上游代理的内部连接器
        context: 本地解析时使用的网络上下文
        protocol_version: "4"、"4a" 或 "5"
        resolve_local: True 表示在本地解析目标域名
    """

    def __init__(self, proxy_host: str, proxy_port: int, connector: Connector,
                 context: NetworkContext):
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.connector = connector
        self.context = context
        self.protocol_version = DEFAULT_PROTOCOL_VERSION
        self.resolve_local = False
        self._auth: Optional[Tuple[str, str]] = None

    def set_protocol_version(self, version: str):
        """
        设置协议版本

        Raises:
            ValueError: 版本不受支持，或与已设置的凭据或远程解析冲突
        """
        if version not in SUPPORTED_PROTOCOL_VERSIONS:
            raise ValueError(f"supported versions are {', '.join(SUPPORTED_PROTOCOL_VERSIONS)}, got {version!r}")
        if self._auth is not None and version != '5':
            raise ValueError("authentication requires SOCKS5")
        if version == '4':
            self.resolve_local = True
        self.protocol_version = version

    def set_auth(self, username: str, password: str):
        """
        设置用户名/密码认证（RFC 1929）

        Raises:
            ValueError: 协议版本不支持认证，或字段超过 255 字节
        """
        if len(username.encode('utf-8')) > 255 or len(password.encode('utf-8')) > 255:
            raise ValueError("username and password must not exceed 255 bytes each")
        if self.protocol_version != '5':
            raise ValueError("authentication requires SOCKS5, consider using protocol version 5")
        self._auth = (username, password)

    def supports_remote_resolution(self) -> bool:
        return supports_remote_resolution(self.protocol_version)

    def set_resolve_local(self, resolve_local: bool):
        """
        设置目标域名的解析位置

        Raises:
            ValueError: 当前协议版本不支持远程解析
        """
        if not resolve_local and not self.supports_remote_resolution():
            raise ValueError("SOCKS4 does not support remote resolution")
        self.resolve_local = resolve_local

    async def connect(self, host: str, port: int) -> Stream:
        if self.resolve_local:
            family = socket.AF_INET if self.protocol_version == '4' else socket.AF_UNSPEC
            host = await self.context.resolver.resolve(host, family)

        reader, writer = await self.connector.connect(self.proxy_host, self.proxy_port)
        established = False
        try:
            if self.protocol_version == '5':
                await socks5_connect(reader, writer, host, port, self._auth)
            else:
                await socks4_connect(reader, writer, host, port,
                                     remote_dns=self.protocol_version == '4a')
            established = True
        finally:
            if not established:
                writer.close()

        logger.debug(f"经由 {self.proxy_host}:{self.proxy_port} 连接 {host}:{port} 成功")
        return reader, writer


class LabeledConnector(Connector):
    """
    带展示标签的连接器

    Attributes:
        connector: 实际的连接器
        label: 展示标签，例如 "-direct-"、"-reject-" 或规范端点字符串
        resolve_mode: "remote"、"local"，非 SOCKS 连接器为 None
    """

    def __init__(self, connector: Connector, label: str, resolve_mode: Optional[str] = None):
        self.connector = connector
        self.label = label
        self.resolve_mode = resolve_mode

    async def connect(self, host: str, port: int) -> Stream:
        return await self.connector.connect(host, port)

    def __str__(self) -> str:
        return self.label

    def __repr__(self) -> str:
        return f"LabeledConnector({self.label!r})"
