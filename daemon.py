#!/usr/bin/env python3
"""
SOCKS-VIA 守护进程

版本: 1.0.0

功能:
- 在本地监听 SOCKS4 / SOCKS4a / SOCKS5 连接
- 按路由表把每个请求直连、拒绝或经由上游 SOCKS 代理转发
- 交互式控制台在运行时修改路由表，无需重启监听器

用法:
    socks-via [socket] [-n] [-c config.yaml] [-d] [--no-measure-traffic] [--no-measure-time]
"""

import argparse
import asyncio
import signal
import logging
from typing import Optional, Tuple

import yaml

from common import ConfigError, DaemonConfig, load_config
from console import Console
from logger import LogConfig, LoggerManager, add_context, clear_context
from routing import (
    ConnectorFactory, NetworkContext, Resolver, RoutingTable,
    SUPPORTED_PROTOCOL_VERSIONS, parse_endpoint,
)
from server import SocksServer
from traffic import TrafficMeter

logger = logging.getLogger('socks-via-daemon')


def parse_listen(text: str) -> Tuple[str, int, Optional[str], Optional[Tuple[str, str]]]:
    """
    解析监听地址

    Args:
        text: 端点描述，主机 "*" 表示监听全部地址

    Returns:
        (监听地址, 端口, 限定的协议版本, 认证凭据)

    Raises:
        ConfigError: 描述无效或协议版本与认证冲突
    """
    spec = parse_endpoint(text)
    host = spec.host
    if host == '*':
        host = '0.0.0.0'
    elif host == 'localhost':
        host = '127.0.0.1'

    version = spec.protocol_version
    if version is not None and version not in SUPPORTED_PROTOCOL_VERSIONS:
        raise ConfigError(f"invalid protocol version: {version}")

    auth = None
    if spec.has_auth:
        if version not in (None, '5'):
            raise ConfigError("invalid authentication info: authentication requires SOCKS5")
        auth = (spec.user or '', spec.password or '')
    return host, spec.port, version, auth


class Daemon:
    """
    守护进程

    持有进程级的网络上下文、连接器工厂、路由表和监听器，
    控制台通过这些属性操作路由表。
    """

    def __init__(self, config: DaemonConfig):
        self.config = config
        self.context = NetworkContext(Resolver(ttl=config.dns_cache_ttl))
        self.factory = ConnectorFactory(self.context)
        self.router = RoutingTable(self.factory.build('none'), config.default_priority)
        self.meter = TrafficMeter(config.measure_traffic, config.measure_time)
        self.server: Optional[SocksServer] = None
        self.console: Optional[Console] = None
        self._stop_event: Optional[asyncio.Event] = None

    def stop(self):
        """请求停止守护进程"""
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> int:
        """
        启动监听器并运行到收到停止请求

        Returns:
            int: 退出码
        """
        self._stop_event = asyncio.Event()

        try:
            host, port, version, auth = parse_listen(self.config.socket)
        except ConfigError as e:
            logger.error(f"监听地址无效: {self.config.socket}: {e}")
            return 1

        self.server = SocksServer(self.router, host, port, version, auth, self.meter)
        try:
            await self.server.start()
        except OSError as e:
            logger.error(f"无法监听 {host}:{port}: {e}")
            return 1

        listen_host, listen_port = self.server.address
        add_context(listen=f"{listen_host}:{listen_port}")

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        console_task = None
        if self.config.interactive:
            self.console = Console(self)
            self.factory.notify = self.console.write
            console_task = asyncio.ensure_future(self._run_console())

        try:
            await self._stop_event.wait()
        finally:
            logger.info("正在关闭...")
            if console_task is not None:
                console_task.cancel()
                await asyncio.gather(console_task, return_exceptions=True)
            self.factory.notify = None
            await self.server.close()
            self.context.close()
            clear_context()
        return 0

    async def _run_console(self):
        try:
            await self.console.run()
        except (ValueError, OSError) as e:
            # 标准输入是普通文件或已关闭时无法注册为管道
            logger.warning(f"无法读取标准输入，控制台已禁用: {e}")


def build_config(args: argparse.Namespace, data: dict) -> DaemonConfig:
    """合并配置文件和命令行参数，命令行优先"""
    config = DaemonConfig.from_dict(data.get('daemon') or {})
    if args.socket is not None:
        config.socket = args.socket
    if args.no_interaction:
        config.interactive = False
    if args.no_measure_traffic:
        config.measure_traffic = False
    if args.no_measure_time:
        config.measure_time = False
    return config


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='socks-via', description='可在运行时修改转发路由的 SOCKS 代理')
    parser.add_argument('socket', nargs='?', default=None,
                        help='监听地址（默认: socks://localhost:9050）')
    parser.add_argument('--no-interaction', '-n', action='store_true', help='禁用交互式控制台')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    parser.add_argument('--no-measure-traffic', action='store_true', help='不统计会话流量')
    parser.add_argument('--no-measure-time', action='store_true', help='不统计出站连接耗时')
    return parser


def main(argv=None) -> int:
    """主函数"""
    args = create_parser().parse_args(argv)

    config_error = None
    try:
        config_data = load_config(args.config)
    except FileNotFoundError:
        config_data = {}
    except yaml.YAMLError as e:
        config_data = {}
        config_error = e

    manager = LoggerManager()
    manager.initialize(LogConfig.from_dict(config_data.get('logging') or {}))
    if args.debug:
        manager.set_level('DEBUG')
        logger.debug("启用调试模式")

    if config_error is not None:
        logger.error(f"配置文件 {args.config} 解析失败: {config_error}")
        return 1

    config = build_config(args, config_data)
    logger.info(f"守护进程配置: 监听={config.socket}, 交互={config.interactive}")

    try:
        return asyncio.run(Daemon(config).run())
    except KeyboardInterrupt:
        logger.info("收到键盘中断信号")
        return 0


if __name__ == '__main__':
    exit(main())
