"""
交互式控制台

从标准输入读取操作员命令，调用连接器工厂和路由表修改转发策略。
控制台持有输出通道 write，连接器工厂的确认消息也通过它输出。

命令:
    help                      显示帮助
    status                    显示监听地址、会话、流量和进程统计
    via [list]                列出路由表
    via [--host=H] [--port=P] [--priority=N] <socket>
                              添加或替换路由
    via default <socket>      替换兜底路由的连接器
    via remove <id>           删除路由
    via reset                 只保留兜底路由并恢复直连
    ping [<host>[:<port>]]    测试到目标的出站连接耗时
    quit | exit               退出
"""

import asyncio
import shlex
import sys
import time
import logging
from typing import Callable, Dict, List, Optional, Tuple

from common import ConfigError, RoutingError
from monitor import check_thresholds, get_process_stats
from routing.table import WILDCARD, normalize_host, normalize_port
from server import close_writer
from traffic import format_bytes

logger = logging.getLogger('socks-via-console')

PING_TARGET = 'www.google.com:80'

HELP = [
    ('help', 'show this help'),
    ('status', 'show listener, session, traffic and process status'),
    ('via [list]', 'list routing table'),
    ('via [--host=<host>] [--port=<port>] [--priority=<n>] <socket>', 'add or replace a route'),
    ('via default <socket>', 'replace the connector of the default route'),
    ('via remove <id>', 'remove a route'),
    ('via reset', 'remove all routes except the default one, which becomes direct'),
    ('ping [<host>[:<port>]]', f'time an outbound connection (default {PING_TARGET})'),
    ('quit | exit', 'stop the daemon'),
]


def _stdout_write(text: str):
    sys.stdout.write(text + '\n')
    sys.stdout.flush()


def split_options(args: List[str]) -> Tuple[List[str], Dict[str, str]]:
    """
    拆分位置参数和 --key=value / --key value 形式的选项

    Raises:
        ValueError: 选项缺少取值
    """
    positional, options = [], {}
    iterator = iter(args)
    for arg in iterator:
        if not arg.startswith('--'):
            positional.append(arg)
            continue
        key, sep, value = arg[2:].partition('=')
        if not sep:
            value = next(iterator, None)
            if value is None:
                raise ValueError(f"option --{key} requires a value")
        options[key] = value
    return positional, options


def split_target(text: str, default_port: int = 80) -> Tuple[str, int]:
    """
    拆分 host[:port]，支持 [IPv6]:port

    Raises:
        ValueError: 端口无效
    """
    if text.startswith('['):
        host, _, rest = text[1:].partition(']')
        port = rest[1:] if rest.startswith(':') else ''
    elif text.count(':') == 1:
        host, _, port = text.partition(':')
    else:
        host, port = text, ''
    port = int(port) if port else default_port
    if not 0 < port <= 65535:
        raise ValueError(f"invalid port: {port}")
    return host, port


class Console:
    """
    操作员控制台

    Attributes:
        daemon: 守护进程对象，提供 factory、router、server、meter 和 stop()
        write: 输出通道
    """

    def __init__(self, daemon, write: Optional[Callable[[str], None]] = None):
        self.daemon = daemon
        self.write = write or _stdout_write
        self.commands = {
            'help': self.cmd_help,
            'status': self.cmd_status,
            'via': self.cmd_via,
            'ping': self.cmd_ping,
            'quit': self.cmd_quit,
            'exit': self.cmd_quit,
        }

    async def run(self, stream=None):
        """
        读取标准输入直到 EOF

        Args:
            stream: 输入流（默认 sys.stdin）
        """
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), stream or sys.stdin)

        self.write('Running in interactive mode. Type "help" for more info.')
        while True:
            line = await reader.readline()
            if not line:
                self.write('STDIN closed. Exiting program...')
                self.daemon.stop()
                return
            await self.handle_line(line.decode('utf-8', errors='replace'))

    async def handle_line(self, line: str):
        """解析并执行一行命令；错误只报告给操作员"""
        try:
            args = shlex.split(line)
        except ValueError as e:
            self.write(f"error: {e}")
            return
        if not args:
            return

        handler = self.commands.get(args[0])
        if handler is None:
            self.write('invalid command. type "help"?')
            return

        try:
            result = handler(args[1:])
            if asyncio.iscoroutine(result):
                await result
        except (ConfigError, RoutingError, ValueError) as e:
            logger.debug(f"命令执行失败: {line.strip()}: {e}")
            self.write(f"error: {e}")

    # ------------------------------------------------------------------------
    # 命令
    # ------------------------------------------------------------------------

    def cmd_help(self, args: List[str]):
        width = max(len(usage) for usage, _ in HELP)
        for usage, description in HELP:
            self.write(f"  {usage.ljust(width)}  {description}")

    def cmd_status(self, args: List[str]):
        host, port = self.daemon.server.address
        meter = self.daemon.meter
        self.write(f"listening on {host}:{port}")
        self.write(f"sessions: {len(meter.active)} active, {meter.total_sessions} total, "
                   f"{meter.failed_sessions} failed")
        self.write(f"traffic: sent {format_bytes(meter.total_sent)}, "
                   f"received {format_bytes(meter.total_received)}")
        for stats in meter.active.values():
            self.write(f"  #{stats.session_id} {stats.client} -> {stats.target or '?'} via {stats.route or '?'}")

        process = get_process_stats()
        if process is not None:
            self.write(f"process: pid {process['pid']}, memory {process['memory_mb']:.1f} MiB, "
                       f"cpu {process['cpu_percent']:.1f}%, threads {process['num_threads']}, "
                       f"fds {process['num_fds']}, tcp connections {process['connections']}")
            for warning in check_thresholds(process):
                self.write(f"warning: {warning}")

    def cmd_via(self, args: List[str]):
        router = self.daemon.router
        factory = self.daemon.factory
        positional, options = split_options(args)

        if not positional or positional == ['list']:
            self._list_routes()
        elif positional == ['reset']:
            router.reset(factory.build('none'))
        elif len(positional) == 2 and positional[0] == 'remove':
            entry = router.remove(int(positional[1]))
            self.write(f"removed route #{entry.id}")
        elif len(positional) == 2 and positional[0] == 'default':
            catch_all = router.catch_all
            router.register(WILDCARD, WILDCARD, factory.build(positional[1]), catch_all.priority)
        elif len(positional) == 1:
            host = normalize_host(options.pop('host', WILDCARD))
            port = normalize_port(options.pop('port', WILDCARD))
            priority = int(options.pop('priority', self.daemon.config.default_priority))
            if options:
                raise ValueError(f"unknown option --{next(iter(options))}")
            entry = router.register(host, port, factory.build(positional[0]), priority)
            self.write(f"route #{entry.id}: {entry.host}:{entry.port} (priority {entry.priority})")
        else:
            raise ValueError('invalid "via" usage. type "help"?')

    def _list_routes(self):
        entries = self.daemon.router.entries()
        host_width = max(len(entry.host) for entry in entries)
        for entry in entries:
            self.write(f"  #{entry.id:<3} {entry.host.ljust(host_width)}  {str(entry.port):<11}  "
                       f"{entry.priority:>5}  {entry.connector.label}")

    async def cmd_ping(self, args: List[str]):
        if len(args) > 1:
            raise ValueError('invalid "ping" usage. type "help"?')
        host, port = split_target(args[0] if args else PING_TARGET)
        connector = self.daemon.router.resolve(host, port)

        started = time.monotonic()
        try:
            _, writer = await connector.connect(host, port)
        except ConnectionError as e:
            self.write(f"ping {host}:{port} via {connector.label} failed: {e}")
            return
        elapsed = time.monotonic() - started
        await close_writer(writer)
        self.write(f"ping {host}:{port} via {connector.label}: {elapsed * 1000:.1f}ms")

    def cmd_quit(self, args: List[str]):
        self.write('exiting...')
        self.daemon.stop()
