"""
路由表

按目标 (host, port) 选择出站连接器。

模式:
- 主机: "*"、精确主机名或通配模式（例如 "*.example.com"）
- 端口: "*"、精确端口或闭区间（例如 "8000-8080"）

选择规则:
1. 精确度优先: 精确值优于通配模式和区间，它们又优于 "*"；先比较主机，其次比较端口
2. 精确度相同时优先级数值高者胜出
3. 两者都相同时最近注册的条目胜出

路由表始终包含唯一的兜底条目 ("*", "*")，它只能替换连接器，不能删除。
所有操作都是同步的，不会在事件循环中让出执行权。
"""

import fnmatch
import itertools
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from common import PRIORITY_DEFAULT, RoutingError
from .connector import LabeledConnector

logger = logging.getLogger('socks-via-routing')

WILDCARD = '*'
_GLOB_CHARS = set('*?[')

PortPattern = Union[int, str]


@dataclass
class RouteEntry:
    """
    路由条目

    Attributes:
        id: 展示和删除使用的稳定编号
        host: 主机模式
        port: 端口模式，精确端口为 int，区间为 "lo-hi" 字符串
        connector: 带标签的连接器
        priority: 优先级，数值越大越优先
        sequence: 注册序号，用于判定最近注册
    """
    id: int
    host: str
    port: PortPattern
    connector: LabeledConnector
    priority: int
    sequence: int

    @property
    def is_catch_all(self) -> bool:
        return self.host == WILDCARD and self.port == WILDCARD

    def matches(self, host: str, port: int) -> bool:
        return _host_matches(self.host, host) and _port_matches(self.port, port)

    def rank(self) -> Tuple[int, int, int, int]:
        """排序键，值越大越优先"""
        return (_host_specificity(self.host), _port_specificity(self.port), self.priority, self.sequence)


def _host_specificity(pattern: str) -> int:
    if pattern == WILDCARD:
        return 0
    return 1 if _GLOB_CHARS & set(pattern) else 2


def _port_specificity(pattern: PortPattern) -> int:
    if pattern == WILDCARD:
        return 0
    return 1 if isinstance(pattern, str) else 2


def _host_matches(pattern: str, host: str) -> bool:
    if pattern == WILDCARD:
        return True
    if _GLOB_CHARS & set(pattern):
        return fnmatch.fnmatchcase(host, pattern)
    return pattern == host


def _port_matches(pattern: PortPattern, port: int) -> bool:
    if pattern == WILDCARD:
        return True
    if isinstance(pattern, str):
        low, high = (int(value) for value in pattern.split('-'))
        return low <= port <= high
    return pattern == port


def normalize_host(host: str) -> str:
    """主机模式统一为小写且去掉结尾的点"""
    pattern = host.strip()
    if pattern == WILDCARD:
        return pattern
    host = pattern.lower().rstrip('.')
    if not host:
        raise ValueError("host pattern must not be empty")
    # 去掉结尾的点后才成为 "*" 的模式（例如 "*."）无效
    if host == WILDCARD:
        raise ValueError(f"invalid host pattern: {pattern}")
    return host


def normalize_port(port: PortPattern) -> PortPattern:
    """端口模式为 "*"、0-65535 之间的整数或 "lo-hi" 闭区间"""
    if port == WILDCARD:
        return port
    if isinstance(port, str) and '-' in port.strip('-'):
        low, _, high = port.partition('-')
        low, high = _parse_port(low, port), _parse_port(high, port)
        if low > high:
            raise ValueError(f"invalid port range: {port!r}")
        return low if low == high else f"{low}-{high}"
    return _parse_port(port, port)


def _parse_port(value, pattern) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"invalid port pattern: {pattern!r}")
    if not 0 <= port <= 65535:
        raise ValueError(f"invalid port pattern: {pattern!r}")
    return port


class RoutingTable:
    """
    可在运行时修改的路由表

    Args:
        default_connector: 兜底条目的连接器
        default_priority: 兜底条目的优先级
    """

    def __init__(self, default_connector: LabeledConnector, default_priority: int = PRIORITY_DEFAULT):
        self._entries: List[RouteEntry] = []
        self._ids = itertools.count(1)
        self._sequence = itertools.count(1)
        self.register(WILDCARD, WILDCARD, default_connector, default_priority)

    @property
    def catch_all(self) -> RouteEntry:
        for entry in self._entries:
            if entry.is_catch_all:
                return entry
        raise RoutingError("catch-all route missing")

    def register(self, host: str, port: PortPattern, connector: LabeledConnector,
                 priority: int = PRIORITY_DEFAULT) -> RouteEntry:
        """
        注册路由条目；模式完全相同的已有条目被整体替换

        Returns:
            RouteEntry: 新注册（或替换后）的条目

        Raises:
            ValueError: 主机或端口模式无效
        """
        host = normalize_host(host)
        port = normalize_port(port)
        priority = int(priority)

        for index, entry in enumerate(self._entries):
            if entry.host == host and entry.port == port:
                replacement = RouteEntry(entry.id, host, port, connector, priority, next(self._sequence))
                self._entries[index] = replacement
                logger.info(f"替换路由 #{entry.id}: {host}:{port} -> {connector} (优先级 {priority})")
                return replacement

        entry = RouteEntry(next(self._ids), host, port, connector, priority, next(self._sequence))
        self._entries.append(entry)
        logger.info(f"添加路由 #{entry.id}: {host}:{port} -> {connector} (优先级 {priority})")
        return entry

    def resolve(self, host: str, port: int) -> LabeledConnector:
        """
        为目标选择连接器

        Raises:
            RoutingError: 没有匹配的条目（兜底条目丢失时才会发生）
        """
        host = host.lower().rstrip('.')
        best: Optional[RouteEntry] = None
        for entry in self._entries:
            if entry.matches(host, port) and (best is None or entry.rank() > best.rank()):
                best = entry
        if best is None:
            raise RoutingError("no matching route")
        logger.debug(f"路由 {host}:{port} -> #{best.id} {best.connector}")
        return best.connector

    def remove(self, entry_id: int) -> RouteEntry:
        """
        删除条目

        Raises:
            RoutingError: 条目不存在或是兜底条目
        """
        for index, entry in enumerate(self._entries):
            if entry.id == entry_id:
                if entry.is_catch_all:
                    raise RoutingError("the default route can not be removed")
                del self._entries[index]
                logger.info(f"删除路由 #{entry.id}: {entry.host}:{entry.port}")
                return entry
        raise RoutingError(f"no route with id {entry_id}")

    def reset(self, default_connector: Optional[LabeledConnector] = None):
        """删除兜底条目以外的全部条目，可选地替换兜底连接器"""
        catch_all = self.catch_all
        self._entries = [catch_all]
        if default_connector is not None:
            self.register(WILDCARD, WILDCARD, default_connector, catch_all.priority)
        logger.info("路由表已重置")

    def entries(self) -> List[RouteEntry]:
        """按解析优先顺序返回条目快照"""
        return sorted(self._entries, key=RouteEntry.rank, reverse=True)

    def __len__(self) -> int:
        return len(self._entries)
