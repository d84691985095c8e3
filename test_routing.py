#!/usr/bin/env python3
"""
测试路由表

测试内容:
1. 只有兜底条目时的选择
2. 精确度优先于优先级
3. 优先级与最近注册
4. 通配主机与端口区间
5. 同模式替换
6. 删除与重置
7. 模式校验

使用方法:
    python3 test_routing.py
    pytest test_routing.py
"""

import sys
import os

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from common import RoutingError
from routing import LabeledConnector, RejectConnector, RoutingTable


def make_connector(label: str) -> LabeledConnector:
    """创建只用于比较身份的连接器"""
    return LabeledConnector(RejectConnector(), label)


def test_catch_all_only():
    """只有兜底条目时任意目标都选中它"""
    print("\n=== 测试1: 兜底条目 ===")

    default = make_connector('C')
    table = RoutingTable(default)

    assert len(table) == 1
    assert table.catch_all.priority == 100
    for host, port in [('example.com', 443), ('10.0.0.1', 22), ('::1', 0)]:
        assert table.resolve(host, port) is default
    print("✓ 测试通过: 兜底条目匹配全部目标")


def test_specificity_before_priority():
    """精确主机的条目即使优先级更低也胜出"""
    print("\n=== 测试2: 精确度优先 ===")

    c1, c2 = make_connector('C1'), make_connector('C2')
    table = RoutingTable(c1, 100)
    table.register('example.com', '*', c2, 50)

    assert table.resolve('example.com', 443) is c2
    assert table.resolve('Example.COM.', 443) is c2
    assert table.resolve('other.com', 443) is c1
    print("✓ 测试通过: 精确度优先于优先级")


def test_host_outranks_port():
    """主机精确度的权重高于端口精确度"""
    by_port, by_host = make_connector('port'), make_connector('host')
    table = RoutingTable(make_connector('default'))
    table.register('*', 443, by_port, 500)
    table.register('example.com', '*', by_host, 1)

    assert table.resolve('example.com', 443) is by_host
    assert table.resolve('other.com', 443) is by_port
    assert table.resolve('example.com', 80) is by_host


def test_priority_and_recency():
    """精确度相同时比较优先级，再比较注册先后"""
    print("\n=== 测试3: 优先级与最近注册 ===")

    low, high = make_connector('low'), make_connector('high')
    table = RoutingTable(make_connector('default'))
    table.register('*.example.com', '*', high, 200)
    table.register('www.*', '*', low, 100)
    assert table.resolve('www.example.com', 80) is high

    older, newer = make_connector('older'), make_connector('newer')
    table = RoutingTable(make_connector('default'))
    table.register('*.example.com', '*', older, 100)
    table.register('www.*', '*', newer, 100)
    assert table.resolve('www.example.com', 80) is newer
    print("✓ 测试通过: 优先级与注册顺序正确")


def test_patterns():
    """通配主机和端口区间"""
    print("\n=== 测试4: 模式匹配 ===")

    glob, ranged, exact = make_connector('glob'), make_connector('range'), make_connector('exact')
    default = make_connector('default')
    table = RoutingTable(default)
    table.register('*.example.com', '*', glob)
    table.register('*', '8000-8080', ranged)
    table.register('*', 8080, exact)

    assert table.resolve('www.example.com', 80) is glob
    assert table.resolve('example.com', 80) is default
    assert table.resolve('other.com', 8000) is ranged
    assert table.resolve('other.com', 8080) is exact
    assert table.resolve('other.com', 8081) is default
    print("✓ 测试通过: 模式匹配正确")


def test_replace_same_pattern():
    """相同模式的注册替换已有条目，保留编号"""
    print("\n=== 测试5: 同模式替换 ===")

    first, second = make_connector('first'), make_connector('second')
    table = RoutingTable(make_connector('default'))
    entry = table.register('example.com', 443, first, 100)
    replacement = table.register('EXAMPLE.com', '443', second, 10)

    assert len(table) == 2
    assert replacement.id == entry.id
    assert replacement.sequence > entry.sequence
    assert replacement.priority == 10
    assert table.resolve('example.com', 443) is second

    direct = make_connector('-direct-')
    table.register('*', '*', direct, 100)
    assert len(table) == 2
    assert table.catch_all.connector is direct
    print("✓ 测试通过: 同模式条目被整体替换")


def test_remove_and_reset():
    """兜底条目不能删除，重置后只剩兜底条目"""
    print("\n=== 测试6: 删除与重置 ===")

    default = make_connector('default')
    table = RoutingTable(default)
    entry = table.register('example.com', '*', make_connector('example'))
    table.register('*', 22, make_connector('ssh'))
    assert len(table) == 3

    removed = table.remove(entry.id)
    assert removed.host == 'example.com'
    assert table.resolve('example.com', 443) is default

    try:
        table.remove(table.catch_all.id)
        raise AssertionError("兜底条目不应该被删除")
    except RoutingError:
        pass

    try:
        table.remove(999)
        raise AssertionError("不存在的条目应该删除失败")
    except RoutingError:
        pass

    direct = make_connector('-direct-')
    table.reset(direct)
    assert len(table) == 1
    assert table.resolve('any.host', 22) is direct
    print("✓ 测试通过: 删除与重置正确")


def test_entries_order():
    """条目快照按解析优先顺序排列，兜底条目在最后"""
    table = RoutingTable(make_connector('default'))
    table.register('*', 443, make_connector('port'))
    table.register('example.com', 443, make_connector('both'))
    table.register('example.com', '*', make_connector('host'))

    labels = [entry.connector.label for entry in table.entries()]
    assert labels == ['both', 'host', 'port', 'default']


def test_invalid_patterns():
    """无效的模式抛出 ValueError，路由表保持不变"""
    print("\n=== 测试7: 模式校验 ===")

    table = RoutingTable(make_connector('default'))
    for host, port in [('', '*'), ('.', '*'), ('*.', '*'), ('*..', 443), ('example.com', 70000),
                       ('example.com', 'http'), ('example.com', '90-80'), ('example.com', '-1')]:
        try:
            table.register(host, port, make_connector('bad'))
            raise AssertionError(f"模式 {host!r}:{port!r} 应该无效")
        except ValueError:
            pass
    assert len(table) == 1

    entry = table.register('example.com', '443-443', make_connector('single'))
    assert entry.port == 443
    print("✓ 测试通过: 无效模式被拒绝")


def main():
    """运行所有测试"""
    print("=" * 60)
    print("SOCKS-VIA - 路由表测试")
    print("=" * 60)

    tests = [
        ("兜底条目", test_catch_all_only),
        ("精确度优先", test_specificity_before_priority),
        ("主机权重", test_host_outranks_port),
        ("优先级与最近注册", test_priority_and_recency),
        ("模式匹配", test_patterns),
        ("同模式替换", test_replace_same_pattern),
        ("删除与重置", test_remove_and_reset),
        ("条目顺序", test_entries_order),
        ("模式校验", test_invalid_patterns),
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
