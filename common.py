"""
SOCKS-VIA - 通用组件
守护进程各模块共享的异常类型和配置

版本: 1.0.0
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

logger = logging.getLogger('socks-via-common')


# ============================================================================
# 常量
# ============================================================================

PRIORITY_DEFAULT = 100  # 路由条目默认优先级
DEFAULT_SOCKET = 'socks://localhost:9050'  # 默认监听地址


# ============================================================================
# 异常
# ============================================================================

class ConfigError(ValueError):
    """端点描述无效、协议版本不受支持或凭据被拒绝"""


class RoutingError(LookupError):
    """路由表中找不到匹配条目，或对路由表的操作无效"""


class ConnectionRejectedError(ConnectionError):
    """连接被 reject 路由拒绝"""


class HostResolutionError(ConnectionError):
    """DNS 解析失败"""


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass
class DaemonConfig:
    """
    守护进程配置数据类

    Attributes:
        socket: 监听地址端点描述（默认: "socks://localhost:9050"）
        interactive: 是否启用交互式控制台（默认: True）
        measure_traffic: 是否统计会话流量（默认: True）
        measure_time: 是否统计出站连接耗时（默认: True）
        dns_cache_ttl: DNS 缓存有效期（秒，默认: 300）
        default_priority: 默认路由条目优先级（默认: 100）
    """
    socket: str = DEFAULT_SOCKET
    interactive: bool = True
    measure_traffic: bool = True
    measure_time: bool = True
    dns_cache_ttl: float = 300.0
    default_priority: int = PRIORITY_DEFAULT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DaemonConfig':
        """从配置文件的 daemon 段创建配置，忽略未知键"""
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"忽略未知配置项: {', '.join(sorted(unknown))}")
        return cls(**known)


def load_config(path: str) -> dict:
    """
    从 YAML 文件加载配置

    Args:
        path: 配置文件路径

    Returns:
        dict: 配置字典，空文件返回空字典

    Raises:
        FileNotFoundError: 配置文件不存在
    """
    import yaml
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}
