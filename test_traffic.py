#!/usr/bin/env python3
"""
测试会话流量统计与进程资源统计

测试内容:
1. 会话登记与关闭
2. 流量与耗时统计
3. 字节数格式化
4. 进程统计与阈值检查

使用方法:
    python3 test_traffic.py
    pytest test_traffic.py
"""

import os
import sys

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from monitor import THRESHOLDS, check_thresholds, get_process_stats
from traffic import TrafficMeter, format_bytes


def test_session_lifecycle():
    """会话从登记到关闭"""
    print("\n=== 测试1: 会话生命周期 ===")

    meter = TrafficMeter()
    first = meter.open_session('127.0.0.1:40000')
    second = meter.open_session('127.0.0.1:40001')
    assert first.session_id == 1 and second.session_id == 2
    assert len(meter.active) == 2
    assert meter.total_sessions == 2

    meter.connecting(first, 'example.com', 443, '-direct-')
    assert first.target == 'example.com:443'
    assert first.route == '-direct-'

    meter.connected(first, 0.025)
    assert first.connect_time == 0.025

    meter.failed(second, 'connection refused')
    assert meter.failed_sessions == 1

    meter.close_session(first)
    meter.close_session(second)
    meter.close_session(second)
    assert not meter.active
    assert meter.total_sessions == 2
    print("✓ 测试通过: 会话生命周期正确")


def test_traffic_counters():
    """双向字节数同时计入会话和累计值"""
    print("\n=== 测试2: 流量统计 ===")

    meter = TrafficMeter(measure_traffic=False, measure_time=False)
    stats = meter.open_session('client')
    meter.add_sent(stats, 100)
    meter.add_sent(stats, 28)
    meter.add_received(stats, 4096)

    assert stats.bytes_sent == 128
    assert stats.bytes_received == 4096
    assert meter.total_sent == 128
    assert meter.total_received == 4096

    other = meter.open_session('client')
    meter.add_received(other, 1)
    assert meter.total_received == 4097
    print("✓ 测试通过: 流量统计正确")


def test_format_bytes():
    """字节数格式化"""
    assert format_bytes(0) == '0 B'
    assert format_bytes(1023) == '1023 B'
    assert format_bytes(1536) == '1.5 KiB'
    assert format_bytes(5 * 1024 * 1024) == '5.0 MiB'
    assert format_bytes(3 * 1024 ** 4) == '3072.0 GiB'


def test_process_stats():
    """当前进程统计与阈值检查"""
    print("\n=== 测试3: 进程统计 ===")

    stats = get_process_stats()
    assert stats is not None
    assert stats['pid'] == os.getpid()
    assert stats['memory_mb'] > 0
    assert stats['num_threads'] >= 1

    quiet = dict(stats, memory_mb=1, cpu_percent=0, connections=0, num_fds=0)
    assert check_thresholds(quiet) == []

    busy = dict(quiet, memory_mb=THRESHOLDS['memory_mb'] + 1, connections=THRESHOLDS['connections'] + 1)
    warnings = check_thresholds(busy)
    assert len(warnings) == 2
    assert warnings[0].startswith('memory usage high')
    print("✓ 测试通过: 进程统计正确")


def main():
    """运行所有测试"""
    print("=" * 60)
    print("SOCKS-VIA - 流量统计测试")
    print("=" * 60)

    tests = [
        ("会话生命周期", test_session_lifecycle),
        ("流量统计", test_traffic_counters),
        ("字节数格式化", test_format_bytes),
        ("进程统计", test_process_stats),
    ]

    passed = 0
    failed = 0

    for name, test_func in tests:
        try:
            test_func()
            passed += 1
        except AssertionError as e:
            print(f"✗ 测试失败: {name} - {e}")
            failed += 1

    print("\n" + "=" * 60)
    print(f"测试结果: 通过={passed}, 失败={failed}")
    print("=" * 60)

    return failed == 0


if __name__ == '__main__':
    exit(0 if main() else 1)
