#!/usr/bin/env python3
"""
SOCKS-VIA 监听器 - 入站 SOCKS 服务器

版本: 1.0.0

协议:
1. 接受 SOCKS4 / SOCKS4a / SOCKS5 客户端连接
2. 解析 CONNECT 请求，得到目标地址和端口
3. 通过路由表选择出站连接器并建立连接
4. 在客户端和出站连接之间双向转发数据

功能:
- 可限定只接受某一个 SOCKS 版本
- 可选的 SOCKS5 用户名/密码认证（单一静态凭据）
- 出站连接建立前客户端断开时取消该会话的出站连接
"""

import asyncio
import hmac
import socket
import struct
import time
import logging
from typing import Optional, Set, Tuple

from common import ConnectionRejectedError, HostResolutionError, RoutingError
from protocol import (
    SOCKS4, SOCKS5, decode_hostname, read_address, read_until_nul, socks4_reply, socks5_reply
)
from routing import LabeledConnector, RoutingTable
from traffic import SessionStats, TrafficMeter

logger = logging.getLogger('socks-via-server')

BUFFER_SIZE = 32768

# 出站连接失败时返回给 SOCKS5 客户端的应答码
_REPLY_CODES = (
    (ConnectionRejectedError, SOCKS5.REP_NOT_ALLOWED),
    (HostResolutionError, SOCKS5.REP_HOST_UNREACHABLE),
    (ConnectionRefusedError, SOCKS5.REP_CONNECTION_REFUSED),
)


def reply_code_for(error: Exception) -> int:
    """将出站连接异常映射为 SOCKS5 应答码"""
    for error_type, code in _REPLY_CODES:
        if isinstance(error, error_type):
            return code
    return SOCKS5.REP_FAILURE


class SocksServer:
    """
    入站 SOCKS 服务器

    监听本地端口，接受 SOCKS 客户端连接，按路由表把每个请求转发到目标。

    Attributes:
        router: 路由表
        host: 监听地址
        port: 监听端口
        protocol_version: 只接受的协议版本（"4"、"4a"、"5"），None 表示全部接受
        auth: (用户名, 密码)，设置后只接受经过认证的 SOCKS5 客户端
        meter: 会话流量统计器
    """

    def __init__(self, router: RoutingTable, host: str = '127.0.0.1', port: int = 9050,
                 protocol_version: Optional[str] = None, auth: Optional[Tuple[str, str]] = None,
                 meter: Optional[TrafficMeter] = None):
        self.router = router
        self.host = host
        self.port = port
        self.protocol_version = protocol_version
        self.auth = auth
        self.meter = meter or TrafficMeter()
        self.server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def address(self) -> Tuple[str, int]:
        """实际监听的地址（端口 0 时由系统分配）"""
        if self.server is None or not self.server.sockets:
            return self.host, self.port
        sockname = self.server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def start(self) -> asyncio.AbstractServer:
        """
        绑定监听端口

        Raises:
            OSError: 绑定失败
        """
        self.server = await asyncio.start_server(self.handle_client, self.host, self.port)
        host, port = self.address
        logger.info(f"SOCKS 代理服务已启动: {host}:{port}")
        return self.server

    async def serve_forever(self):
        if self.server is None:
            await self.start()
        async with self.server:
            await self.server.serve_forever()

    async def close(self):
        """停止监听并取消所有活动会话"""
        if self.server is not None:
            self.server.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.server is not None:
            await self.server.wait_closed()
        logger.info("SOCKS 代理服务已关闭")

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理一个入站会话

        流程:
        1. 握手与请求解析
        2. 路由选择
        3. 建立出站连接（期间监视客户端是否断开）
        4. 回复客户端并转发数据
        """
        task = asyncio.current_task()
        self._tasks.add(task)
        peer = writer.get_extra_info('peername')
        stats = self.meter.open_session(f"{peer[0]}:{peer[1]}" if peer else '-')
        remote_writer = None
        try:
            request = await self._read_request(reader, writer)
            if request is None:
                return
            version, host, port = request
            logger.info(f"[#{stats.session_id}] SOCKS{version} CONNECT {host}:{port} 来自 {stats.client}")

            try:
                connector = self.router.resolve(host, port)
            except RoutingError as e:
                logger.critical(f"[#{stats.session_id}] 路由表不一致: {e}")
                await self._reply(writer, version, SOCKS5.REP_FAILURE)
                return

            self.meter.connecting(stats, host, port, connector.label)
            started = time.monotonic()
            try:
                outbound = await self._connect(reader, connector, host, port)
            except ConnectionError as e:
                self.meter.failed(stats, str(e))
                await self._reply(writer, version, reply_code_for(e))
                return

            if outbound is None:
                logger.info(f"[#{stats.session_id}] 客户端在出站连接建立前断开，已取消")
                return

            (remote_reader, remote_writer), first_read = outbound
            self.meter.connected(stats, time.monotonic() - started)

            bind = remote_writer.get_extra_info('sockname') or ('0.0.0.0', 0)
            await self._reply(writer, version, SOCKS5.REP_SUCCESS, bind[0], bind[1])
            await self._relay(stats, reader, writer, remote_reader, remote_writer, first_read)

        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ValueError) as e:
            logger.debug(f"[#{stats.session_id}] 无效的 SOCKS 请求: {e}")
        except OSError as e:
            logger.debug(f"[#{stats.session_id}] 客户端连接错误: {e}")
        finally:
            if remote_writer is not None:
                await close_writer(remote_writer)
            await close_writer(writer)
            self.meter.close_session(stats)
            self._tasks.discard(task)

    # ------------------------------------------------------------------------
    # 握手与请求解析
    # ------------------------------------------------------------------------

    def _accepts(self, version: int) -> bool:
        if self.protocol_version is None:
            return True
        if version == SOCKS5.VERSION:
            return self.protocol_version == '5'
        return self.protocol_version in ('4', '4a')

    async def _read_request(self, reader: asyncio.StreamReader,
                            writer: asyncio.StreamWriter) -> Optional[Tuple[int, str, int]]:
        """
        读取握手和 CONNECT 请求

        Returns:
            (协议版本, 目标主机, 目标端口)，请求被拒绝时返回 None
        """
        version = (await reader.readexactly(1))[0]
        if version == SOCKS5.VERSION and self._accepts(version):
            return await self._read_socks5_request(reader, writer)
        if version == SOCKS4.VERSION and self._accepts(version):
            return await self._read_socks4_request(reader, writer)
        logger.warning(f"不支持的 SOCKS 版本: {version}")
        return None

    async def _read_socks4_request(self, reader: asyncio.StreamReader,
                                   writer: asyncio.StreamWriter) -> Optional[Tuple[int, str, int]]:
        cmd = (await reader.readexactly(1))[0]
        port = struct.unpack('>H', await reader.readexactly(2))[0]
        packed_ip = await reader.readexactly(4)
        await read_until_nul(reader)

        # DSTIP 为 0.0.0.x (x != 0) 表示 SOCKS4a，域名跟在用户标识之后
        socks4a = packed_ip[:3] == b'\x00\x00\x00' and packed_ip[3] != 0
        if socks4a:
            host = decode_hostname(await read_until_nul(reader))
        else:
            host = socket.inet_ntoa(packed_ip)

        if cmd != SOCKS4.CMD_CONNECT:
            logger.warning(f"不支持的 SOCKS4 命令: {cmd}")
        elif self.auth is not None:
            logger.warning("SOCKS4 不支持认证，拒绝请求")
        elif socks4a and self.protocol_version == '4':
            logger.warning("服务器只接受 SOCKS4，拒绝 SOCKS4a 请求")
        else:
            return SOCKS4.VERSION, host, port

        writer.write(socks4_reply(SOCKS4.REP_REJECTED))
        await writer.drain()
        return None

    async def _read_socks5_request(self, reader: asyncio.StreamReader,
                                   writer: asyncio.StreamWriter) -> Optional[Tuple[int, str, int]]:
        nmethods = (await reader.readexactly(1))[0]
        methods = set(await reader.readexactly(nmethods))

        method = SOCKS5.AUTH_USERNAME_PASSWORD if self.auth is not None else SOCKS5.AUTH_NONE
        if method not in methods:
            logger.warning("客户端不支持所需的认证方式")
            writer.write(bytes([SOCKS5.VERSION, SOCKS5.AUTH_NO_ACCEPTABLE]))
            await writer.drain()
            return None

        writer.write(bytes([SOCKS5.VERSION, method]))
        await writer.drain()

        if self.auth is not None and not await self._verify_credentials(reader, writer):
            return None

        version, cmd, _, atyp = await reader.readexactly(4)
        if version != SOCKS5.VERSION:
            raise ValueError(f"invalid SOCKS5 request version: {version}")

        try:
            host = await read_address(reader, atyp)
        except ValueError:
            logger.warning(f"不支持的地址类型: {atyp}")
            writer.write(socks5_reply(SOCKS5.REP_ADDRESS_NOT_SUPPORTED))
            await writer.drain()
            return None
        port = struct.unpack('>H', await reader.readexactly(2))[0]

        if cmd != SOCKS5.CMD_CONNECT:
            logger.warning(f"不支持的命令: {cmd}")
            writer.write(socks5_reply(SOCKS5.REP_COMMAND_NOT_SUPPORTED))
            await writer.drain()
            return None

        return SOCKS5.VERSION, host, port

    async def _verify_credentials(self, reader: asyncio.StreamReader,
                                  writer: asyncio.StreamWriter) -> bool:
        """RFC 1929 用户名/密码子协商"""
        version = (await reader.readexactly(1))[0]
        if version != SOCKS5.AUTH_VERSION:
            raise ValueError(f"invalid authentication version: {version}")
        username = await reader.readexactly((await reader.readexactly(1))[0])
        password = await reader.readexactly((await reader.readexactly(1))[0])

        expected_user, expected_pass = (value.encode('utf-8') for value in self.auth)
        valid = hmac.compare_digest(username, expected_user) & hmac.compare_digest(password, expected_pass)

        writer.write(bytes([SOCKS5.AUTH_VERSION, SOCKS5.AUTH_SUCCESS if valid else SOCKS5.AUTH_FAILURE]))
        await writer.drain()
        if not valid:
            logger.warning(f"认证失败: 用户名 {username.decode('utf-8', errors='replace')}")
        return valid

    async def _reply(self, writer: asyncio.StreamWriter, version: int, code: int,
                     bind_host: str = '0.0.0.0', bind_port: int = 0):
        if version == SOCKS4.VERSION:
            rep = SOCKS4.REP_GRANTED if code == SOCKS5.REP_SUCCESS else SOCKS4.REP_REJECTED
            writer.write(socks4_reply(rep, bind_port, bind_host))
        else:
            writer.write(socks5_reply(code, bind_host, bind_port))
        await writer.drain()

    # ------------------------------------------------------------------------
    # 出站连接与转发
    # ------------------------------------------------------------------------

    async def _connect(self, reader: asyncio.StreamReader, connector: LabeledConnector,
                       host: str, port: int):
        """
        建立出站连接，同时监视客户端

        客户端在出站连接完成前断开时，取消出站连接并返回 None。
        客户端提前发送的数据保存在返回的读取任务中，由转发循环先行处理。

        Returns:
            ((remote_reader, remote_writer), first_read)，或 None

        Raises:
            ConnectionError: 出站连接失败
        """
        connect_task = asyncio.ensure_future(connector.connect(host, port))
        read_task = asyncio.ensure_future(reader.read(BUFFER_SIZE))
        try:
            done, _ = await asyncio.wait({connect_task, read_task},
                                         return_when=asyncio.FIRST_COMPLETED)
            if connect_task not in done:
                try:
                    early = read_task.result()
                except OSError:
                    early = b''
                if not early:
                    connect_task.cancel()
                    await asyncio.gather(connect_task, return_exceptions=True)
                    return None
            remote = await connect_task
        except BaseException:
            read_task.cancel()
            connect_task.cancel()
            raise
        return remote, read_task

    async def _relay(self, stats: SessionStats, reader: asyncio.StreamReader,
                     writer: asyncio.StreamWriter, remote_reader: asyncio.StreamReader,
                     remote_writer: asyncio.StreamWriter, first_read: asyncio.Future):
        """在客户端和出站连接之间双向转发，直到两个方向都结束"""
        upstream = asyncio.ensure_future(self._pipe(
            reader, remote_writer, lambda n: self.meter.add_sent(stats, n), first_read))
        downstream = asyncio.ensure_future(self._pipe(
            remote_reader, writer, lambda n: self.meter.add_received(stats, n)))
        try:
            await asyncio.gather(upstream, downstream)
        finally:
            upstream.cancel()
            downstream.cancel()
            first_read.cancel()

    @staticmethod
    async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, count,
                    first_read: Optional[asyncio.Future] = None):
        """单向转发；读到 EOF 时半关闭对端，出错时关闭对端"""
        try:
            data = await first_read if first_read is not None else await reader.read(BUFFER_SIZE)
            while data:
                writer.write(data)
                count(len(data))
                await writer.drain()
                data = await reader.read(BUFFER_SIZE)
            if writer.can_write_eof() and not writer.is_closing():
                writer.write_eof()
        except OSError as e:
            logger.debug(f"转发中断: {e}")
            writer.close()


async def close_writer(writer: asyncio.StreamWriter):
    """关闭写入流，超时则强制中止传输"""
    try:
        writer.close()
        await asyncio.wait_for(writer.wait_closed(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("关闭连接超时,强制关闭")
        writer.transport.abort()
    except OSError as e:
        logger.debug(f"关闭连接失败: {e}")
