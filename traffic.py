"""
SOCKS-VIA - 流量统计模块
统计每个会话的流量和出站连接耗时。

版本: 1.0.0

功能概述:
本模块为监听器提供会话级别的测量:
1. 出站连接建立耗时
2. 双向传输字节数
3. 进程内累计统计（供 status 命令展示）
"""

import time
import logging
import itertools
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger('socks-via-traffic')


@dataclass
class SessionStats:
    """
    会话统计数据类

    Attributes:
        session_id: 会话编号
        client: 入站客户端地址
        host: 目标主机
        port: 目标端口
        route: 选中的路由标签
        bytes_sent: 客户端 -> 目标的字节数
        bytes_received: 目标 -> 客户端的字节数
        connect_time: 出站连接耗时（秒），未连接为 None
        started: 会话开始时间（monotonic）
    """
    session_id: int
    client: str
    host: str = ''
    port: int = 0
    route: str = ''
    bytes_sent: int = 0
    bytes_received: int = 0
    connect_time: Optional[float] = None
    started: float = field(default_factory=time.monotonic)

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"


class TrafficMeter:
    """
    流量统计器

    Args:
        measure_traffic: 会话结束时记录传输字节数
        measure_time: 出站连接建立后记录耗时
    """

    def __init__(self, measure_traffic: bool = True, measure_time: bool = True):
        self.measure_traffic = measure_traffic
        self.measure_time = measure_time
        self.active: Dict[int, SessionStats] = {}
        self.total_sessions = 0
        self.failed_sessions = 0
        self.total_sent = 0
        self.total_received = 0
        self._ids = itertools.count(1)

    def open_session(self, client: str) -> SessionStats:
        """登记一个新的入站会话"""
        stats = SessionStats(session_id=next(self._ids), client=client)
        self.active[stats.session_id] = stats
        self.total_sessions += 1
        return stats

    def connecting(self, stats: SessionStats, host: str, port: int, route: str):
        stats.host = host
        stats.port = port
        stats.route = route

    def connected(self, stats: SessionStats, elapsed: float):
        stats.connect_time = elapsed
        if self.measure_time:
            logger.info(f"[#{stats.session_id}] {stats.target} 经由 {stats.route} 连接耗时 {elapsed * 1000:.1f}ms")

    def failed(self, stats: SessionStats, reason: str):
        self.failed_sessions += 1
        logger.warning(f"[#{stats.session_id}] {stats.target} 经由 {stats.route} 连接失败: {reason}")

    def add_sent(self, stats: SessionStats, count: int):
        stats.bytes_sent += count
        self.total_sent += count

    def add_received(self, stats: SessionStats, count: int):
        stats.bytes_received += count
        self.total_received += count

    def close_session(self, stats: SessionStats):
        """会话结束，移出活动列表"""
        self.active.pop(stats.session_id, None)
        if self.measure_traffic and stats.connect_time is not None:
            duration = time.monotonic() - stats.started
            logger.info(
                f"[#{stats.session_id}] {stats.target} 关闭: 发送 {format_bytes(stats.bytes_sent)}, "
                f"接收 {format_bytes(stats.bytes_received)}, 持续 {duration:.1f}s"
            )


def format_bytes(count: int) -> str:
    """
    格式化字节数

    Args:
        count: 字节数

    Returns:
        str: 例如 "512 B"、"1.5 KiB"
    """
    value = float(count)
    for unit in ('B', 'KiB', 'MiB', 'GiB'):
        if value < 1024 or unit == 'GiB':
            return f"{int(value)} {unit}" if unit == 'B' else f"{value:.1f} {unit}"
        value /= 1024
