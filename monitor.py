"""
进程资源统计 - 为 status 命令提供守护进程的资源使用情况

统计内容:
1. 内存占用（RSS）
2. CPU 使用率
3. 线程数和文件描述符数
4. TCP 连接数
5. 告警阈值检查
"""

import os
from datetime import datetime
from typing import Dict, List, Optional

import psutil

# 告警阈值
THRESHOLDS = {
    'memory_mb': 500,         # 内存阈值: 500MB
    'cpu_percent': 80,        # CPU 阈值: 80%
    'connections': 1000,      # 连接数阈值: 1000
    'num_fds': 1000,          # 文件描述符阈值: 1000
}


def get_process_stats(pid: Optional[int] = None) -> Optional[Dict]:
    """
    获取进程统计信息

    cpu_percent 使用非阻塞模式，返回自上次调用以来的使用率，
    首次调用返回 0.0。

    参数:
        pid: 进程号，默认为当前进程

    返回:
        Dict: 统计信息，进程不存在或无权限时返回 None
    """
    try:
        proc = psutil.Process(pid or os.getpid())
        with proc.oneshot():
            memory_info = proc.memory_info()
            return {
                'pid': proc.pid,
                'memory_mb': memory_info.rss / 1024 / 1024,
                'cpu_percent': proc.cpu_percent(interval=None),
                'num_threads': proc.num_threads(),
                'num_fds': proc.num_fds() if hasattr(proc, 'num_fds') else 0,
                'connections': len(proc.net_connections(kind='tcp')),
                'create_time': datetime.fromtimestamp(proc.create_time()),
            }
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def check_thresholds(stats: Dict) -> List[str]:
    """
    检查是否超过阈值

    参数:
        stats: get_process_stats 返回的统计信息

    返回:
        List[str]: 告警信息列表
    """
    warnings = []

    if stats['memory_mb'] > THRESHOLDS['memory_mb']:
        warnings.append(f"memory usage high: {stats['memory_mb']:.2f} MB > {THRESHOLDS['memory_mb']} MB")

    if stats['cpu_percent'] > THRESHOLDS['cpu_percent']:
        warnings.append(f"CPU usage high: {stats['cpu_percent']:.2f}% > {THRESHOLDS['cpu_percent']}%")

    if stats['connections'] > THRESHOLDS['connections']:
        warnings.append(f"too many connections: {stats['connections']} > {THRESHOLDS['connections']}")

    if stats['num_fds'] > THRESHOLDS['num_fds']:
        warnings.append(f"too many file descriptors: {stats['num_fds']} > {THRESHOLDS['num_fds']}")

    return warnings
