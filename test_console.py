#!/usr/bin/env python3
"""
测试交互式控制台

测试内容:
1. help 与未知命令
2. via 列表、添加、替换兜底、删除、重置
3. 错误报告且路由表保持不变
4. status
5. ping
6. quit / exit
7. 参数拆分辅助函数

使用方法:
    python3 test_console.py
    pytest test_console.py
"""

import asyncio
import sys
import os

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from common import DaemonConfig
from console import Console, split_options, split_target
from routing import ConnectorFactory, NetworkContext, RoutingTable
from server import SocksServer
from test_factory import EchoServer
from traffic import TrafficMeter


class FakeDaemon:
    """提供控制台所需属性的守护进程替身"""

    def __init__(self):
        self.config = DaemonConfig()
        self.context = NetworkContext()
        self.factory = ConnectorFactory(self.context)
        self.router = RoutingTable(self.factory.build('none'), self.config.default_priority)
        self.meter = TrafficMeter()
        self.server = SocksServer(self.router, meter=self.meter)
        self.stopped = False

    def stop(self):
        self.stopped = True


def make_console():
    """创建控制台，输出收集到列表中"""
    output = []
    daemon = FakeDaemon()
    console = Console(daemon, output.append)
    daemon.factory.notify = console.write
    return console, daemon, output


def run(console: Console, *lines: str):
    async def scenario():
        for line in lines:
            await console.handle_line(line)

    asyncio.run(scenario())


def test_help_and_unknown():
    """help 列出命令，未知命令给出提示"""
    print("\n=== 测试1: help ===")

    console, _, output = make_console()
    run(console, 'help')
    assert any('via remove <id>' in line for line in output)
    assert any('ping' in line for line in output)

    output.clear()
    run(console, 'frobnicate', '', '   ')
    assert output == ['invalid command. type "help"?']
    print("✓ 测试通过: help 与未知命令正确")


def test_via_register():
    """via 先构造连接器再注册路由"""
    print("\n=== 测试2: via 添加 ===")

    console, daemon, output = make_console()
    run(console, 'via --host=example.com --port=443 --priority=50 reject')

    assert output == ['reject', 'route #2: example.com:443 (priority 50)']
    assert daemon.router.resolve('example.com', 443).label == '-reject-'
    assert daemon.router.resolve('example.com', 80).label == '-direct-'

    output.clear()
    run(console, 'via --host *.example.org socks5://127.0.0.1:1080')
    assert output[0] == 'use socks5://127.0.0.1:1080 as next hop (resolve remotely)'
    assert daemon.router.resolve('www.example.org', 80).label == 'socks5://127.0.0.1:1080'

    output.clear()
    run(console, 'via', 'via list')
    assert len(output) == 6
    assert '-reject-' in output[0]
    assert '-direct-' in output[2]
    print("✓ 测试通过: 路由已注册")


def test_via_default_remove_reset():
    """替换兜底连接器，删除条目，重置路由表"""
    print("\n=== 测试3: via default / remove / reset ===")

    console, daemon, output = make_console()
    run(console, 'via default reject')
    assert daemon.router.catch_all.connector.label == '-reject-'
    assert len(daemon.router) == 1

    run(console, 'via --host=example.com none')
    entry = daemon.router.entries()[0]
    output.clear()
    run(console, f'via remove {entry.id}')
    assert output == [f'removed route #{entry.id}']
    assert len(daemon.router) == 1

    run(console, 'via --port=22 none', 'via reset')
    assert len(daemon.router) == 1
    assert daemon.router.catch_all.connector.label == '-direct-'
    print("✓ 测试通过: 兜底、删除与重置正确")


def test_via_errors():
    """错误报告给操作员，路由表保持不变"""
    print("\n=== 测试4: via 错误 ===")

    console, daemon, output = make_console()
    cases = [
        ('via --host=example.com socks4://user@proxy', 'error: invalid authentication info'),
        ('via socks9://proxy', 'error: invalid protocol version'),
        ('via socks://proxy/path', 'error: invalid socket given'),
        ('via remove 1', 'error: the default route can not be removed'),
        ('via remove 42', 'error: no route with id 42'),
        ('via remove abc', 'error: '),
        ('via --port=http none', 'error: invalid port pattern'),
        ('via --bogus=1 none', 'error: unknown option --bogus'),
        ('via --host', 'error: option --host requires a value'),
        ('via --host=*. reject', 'error: invalid host pattern'),
        ('via a b c', 'error: invalid "via" usage'),
        ('via "unbalanced', 'error: '),
    ]
    for line, expected in cases:
        output.clear()
        run(console, line)
        assert len(output) == 1 and output[0].startswith(expected), f"{line!r}: {output}"

    assert len(daemon.router) == 1
    assert daemon.router.catch_all.connector.label == '-direct-'
    print("✓ 测试通过: 错误已报告")


def test_status():
    """status 显示监听地址、会话和流量"""
    print("\n=== 测试5: status ===")

    console, daemon, output = make_console()
    stats = daemon.meter.open_session('127.0.0.1:50000')
    daemon.meter.connecting(stats, 'example.com', 443, '-direct-')
    daemon.meter.add_sent(stats, 2048)

    run(console, 'status')
    assert output[0] == 'listening on 127.0.0.1:9050'
    assert output[1] == 'sessions: 1 active, 1 total, 0 failed'
    assert output[2] == 'traffic: sent 2.0 KiB, received 0 B'
    assert output[3] == '  #1 127.0.0.1:50000 -> example.com:443 via -direct-'
    assert any(line.startswith('process: pid') for line in output)
    print("✓ 测试通过: status 正确")


def test_ping():
    """ping 通过路由表选择连接器并测量连接耗时，测量后关闭连接"""
    print("\n=== 测试6: ping ===")

    console, daemon, output = make_console()
    daemon.router.register('blocked.example', '*', daemon.factory.build('reject'))

    async def scenario():
        echo = EchoServer()
        port = await echo.start()
        output.clear()
        await console.handle_line(f'ping 127.0.0.1:{port}')
        assert output[0].startswith(f'ping 127.0.0.1:{port} via -direct-: ')
        assert output[0].endswith('ms')
        for _ in range(50):
            if echo.finished:
                break
            await asyncio.sleep(0.01)
        assert echo.finished == 1

        output.clear()
        await console.handle_line('ping blocked.example:80')
        assert output[0].startswith('ping blocked.example:80 via -reject- failed: ')

        output.clear()
        await console.handle_line('ping example.com:99999')
        assert output[0].startswith('error: invalid port')
        await echo.close()

    asyncio.run(scenario())
    print("✓ 测试通过: ping 正确")


def test_quit():
    """quit 和 exit 请求停止守护进程"""
    for command in ('quit', 'exit'):
        console, daemon, output = make_console()
        run(console, command)
        assert daemon.stopped
        assert output == ['exiting...']


def test_split_helpers():
    """参数拆分辅助函数"""
    assert split_options(['--host', 'example.com', '--port=443', 'none']) == \
        (['none'], {'host': 'example.com', 'port': '443'})
    assert split_options(['list']) == (['list'], {})

    assert split_target('example.com') == ('example.com', 80)
    assert split_target('example.com:8080') == ('example.com', 8080)
    assert split_target('[::1]:443') == ('::1', 443)
    assert split_target('[::1]') == ('::1', 80)
    assert split_target('::1') == ('::1', 80)
    try:
        split_target('example.com:0')
        raise AssertionError("端口 0 应该无效")
    except ValueError:
        pass


def main():
    """运行所有测试"""
    print("=" * 60)
    print("SOCKS-VIA - 控制台测试")
    print("=" * 60)

    tests = [
        ("help", test_help_and_unknown),
        ("via 添加", test_via_register),
        ("via default / remove / reset", test_via_default_remove_reset),
        ("via 错误", test_via_errors),
        ("status", test_status),
        ("ping", test_ping),
        ("quit", test_quit),
        ("参数拆分", test_split_helpers),
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
