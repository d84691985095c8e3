"""
SOCKS 协议核心模块

本模块包含 SOCKS4 / SOCKS4a / SOCKS5 协议的常量定义，
以及客户端 CONNECT 握手（用于链式上游代理）和服务端请求解析的辅助函数。

线路格式参考:
- SOCKS4 / SOCKS4a: https://www.openssh.com/txt/socks4.protocol
- SOCKS5: RFC 1928
- 用户名/密码认证: RFC 1929
"""

import asyncio
import ipaddress
import socket
import struct
import logging
from typing import Optional, Tuple

logger = logging.getLogger('socks-via-protocol')


# ============================================================================
# SOCKS4 协议常量
# ============================================================================

class SOCKS4:
    """SOCKS4 / SOCKS4a 协议常量"""
    VERSION = 0x04
    CMD_CONNECT = 0x01
    REPLY_VERSION = 0x00
    REP_GRANTED = 0x5A
    REP_REJECTED = 0x5B


# ============================================================================
# SOCKS5 协议常量
# ============================================================================

class SOCKS5:
    """
    SOCKS5 协议常量定义

    本实现只支持 CONNECT 命令，用于建立 TCP 隧道。
    """
    VERSION = 0x05
    AUTH_NONE = 0x00
    AUTH_USERNAME_PASSWORD = 0x02
    AUTH_NO_ACCEPTABLE = 0xFF
    AUTH_VERSION = 0x01
    AUTH_SUCCESS = 0x00
    AUTH_FAILURE = 0x01
    CMD_CONNECT = 0x01
    ATYP_IPV4 = 0x01
    ATYP_DOMAIN = 0x03
    ATYP_IPV6 = 0x04
    REP_SUCCESS = 0x00
    REP_FAILURE = 0x01
    REP_NOT_ALLOWED = 0x02
    REP_NETWORK_UNREACHABLE = 0x03
    REP_HOST_UNREACHABLE = 0x04
    REP_CONNECTION_REFUSED = 0x05
    REP_TTL_EXPIRED = 0x06
    REP_COMMAND_NOT_SUPPORTED = 0x07
    REP_ADDRESS_NOT_SUPPORTED = 0x08


SOCKS5_ERRORS = {
    SOCKS5.REP_FAILURE: 'general SOCKS server failure',
    SOCKS5.REP_NOT_ALLOWED: 'connection not allowed by ruleset',
    SOCKS5.REP_NETWORK_UNREACHABLE: 'network unreachable',
    SOCKS5.REP_HOST_UNREACHABLE: 'host unreachable',
    SOCKS5.REP_CONNECTION_REFUSED: 'connection refused',
    SOCKS5.REP_TTL_EXPIRED: 'TTL expired',
    SOCKS5.REP_COMMAND_NOT_SUPPORTED: 'command not supported',
    SOCKS5.REP_ADDRESS_NOT_SUPPORTED: 'address type not supported',
}


# ============================================================================
# 地址编解码
# ============================================================================

def encode_address(host: str) -> bytes:
    """
    将主机地址编码为 SOCKS5 的 ATYP + ADDR 格式

    Args:
        host: IPv4 / IPv6 字面量或域名

    Returns:
        bytes: 地址类型字节加地址内容
    """
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        host_bytes = host.encode('idna')
        if len(host_bytes) > 255:
            raise ValueError(f"hostname too long: {host}")
        return struct.pack('>BB', SOCKS5.ATYP_DOMAIN, len(host_bytes)) + host_bytes

    if ip.version == 4:
        return struct.pack('>B', SOCKS5.ATYP_IPV4) + ip.packed
    return struct.pack('>B', SOCKS5.ATYP_IPV6) + ip.packed


def decode_hostname(data: bytes) -> str:
    """
    解码客户端发来的域名

    无法按 IDNA 解码的 ASCII 域名原样返回，交给出站解析时报告失败；
    非 ASCII 字节抛出 ValueError。
    """
    try:
        return data.decode('idna')
    except UnicodeError:
        return data.decode('ascii')


async def read_address(reader: asyncio.StreamReader, atyp: int) -> str:
    """
    按地址类型从流中读取 SOCKS5 地址

    Args:
        reader: 异步流读取器
        atyp: 地址类型字节

    Returns:
        str: 文本形式的地址
    """
    if atyp == SOCKS5.ATYP_IPV4:
        return socket.inet_ntoa(await reader.readexactly(4))
    if atyp == SOCKS5.ATYP_IPV6:
        return socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
    if atyp == SOCKS5.ATYP_DOMAIN:
        length = (await reader.readexactly(1))[0]
        return decode_hostname(await reader.readexactly(length))
    raise ValueError(f"unsupported address type: {atyp}")


async def read_until_nul(reader: asyncio.StreamReader, limit: int = 1024) -> bytes:
    """读取以 NUL 结尾的字段（SOCKS4 用户标识与 SOCKS4a 域名）"""
    data = await reader.readuntil(b'\x00')
    if len(data) > limit:
        raise ValueError("field too long")
    return data[:-1]


def socks5_reply(code: int, bind_host: str = '0.0.0.0', bind_port: int = 0) -> bytes:
    """构造 SOCKS5 应答: VER REP RSV ATYP BND.ADDR BND.PORT"""
    try:
        address = encode_address(bind_host)
    except ValueError:
        address = encode_address('0.0.0.0')
    return struct.pack('>BBB', SOCKS5.VERSION, code, 0x00) + address + struct.pack('>H', bind_port)


def socks4_reply(code: int, bind_port: int = 0, bind_ip: str = '0.0.0.0') -> bytes:
    """构造 SOCKS4 应答: VN CD DSTPORT DSTIP"""
    try:
        packed = ipaddress.IPv4Address(bind_ip).packed
    except ValueError:
        packed = b'\x00\x00\x00\x00'
    return struct.pack('>BBH', SOCKS4.REPLY_VERSION, code, bind_port) + packed


# ============================================================================
# 客户端握手（链式上游代理）
# ============================================================================

async def socks4_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                         host: str, port: int, user_id: str = '',
                         remote_dns: bool = False) -> Tuple[str, int]:
    """
    通过 SOCKS4 / SOCKS4a 上游代理发起 CONNECT

    remote_dns 为 True 时使用 SOCKS4a 扩展（DSTIP=0.0.0.x 并附带域名），
    否则 host 必须是 IPv4 字面量。

    Returns:
        Tuple[str, int]: 上游报告的绑定地址和端口

    Raises:
        ConnectionError: 上游拒绝请求或应答无效
    """
    try:
        packed_ip = ipaddress.IPv4Address(host).packed
        domain = None
    except ValueError:
        if not remote_dns:
            raise ConnectionError(f"SOCKS4 requires an IPv4 address, got {host}")
        packed_ip = b'\x00\x00\x00\x01'
        try:
            domain = host.encode('idna')
        except UnicodeError as e:
            raise ConnectionError(f"invalid hostname {host!r}: {e}") from e

    request = struct.pack('>BBH', SOCKS4.VERSION, SOCKS4.CMD_CONNECT, port) + packed_ip
    request += user_id.encode('utf-8') + b'\x00'
    if domain is not None:
        request += domain + b'\x00'

    logger.debug(f"发送 SOCKS4 CONNECT: {host}:{port}, socks4a={domain is not None}")
    writer.write(request)
    await writer.drain()

    try:
        response = await reader.readexactly(8)
    except asyncio.IncompleteReadError:
        raise ConnectionError("upstream SOCKS4 proxy closed the connection")

    version, code, bind_port = struct.unpack('>BBH', response[:4])
    if version != SOCKS4.REPLY_VERSION:
        raise ConnectionError(f"invalid SOCKS4 response version: {version}")
    if code != SOCKS4.REP_GRANTED:
        raise ConnectionError(f"upstream SOCKS4 proxy rejected request (code 0x{code:02x})")

    return socket.inet_ntoa(response[4:8]), bind_port


async def socks5_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                         host: str, port: int,
                         auth: Optional[Tuple[str, str]] = None) -> Tuple[str, int]:
    """
    通过 SOCKS5 上游代理发起 CONNECT

    流程:
    1. 方法协商（无认证，或在配置凭据时使用用户名/密码）
    2. 可选的 RFC 1929 用户名/密码子协商
    3. CONNECT 请求与应答解析

    Args:
        reader: 到上游代理的读取流
        writer: 到上游代理的写入流
        host: 最终目标地址（域名表示由上游解析）
        port: 最终目标端口
        auth: (用户名, 密码)，可选

    Returns:
        Tuple[str, int]: 上游报告的绑定地址和端口

    Raises:
        ConnectionError: 握手失败或上游拒绝
    """
    method = SOCKS5.AUTH_USERNAME_PASSWORD if auth is not None else SOCKS5.AUTH_NONE
    writer.write(struct.pack('>BBB', SOCKS5.VERSION, 1, method))
    await writer.drain()

    try:
        version, chosen = await reader.readexactly(2)
        if version != SOCKS5.VERSION:
            raise ConnectionError(f"invalid SOCKS5 response version: {version}")
        if chosen != method:
            raise ConnectionError("upstream SOCKS5 proxy refused the authentication method")

        if auth is not None:
            username, password = (value.encode('utf-8') for value in auth)
            writer.write(
                struct.pack('>BB', SOCKS5.AUTH_VERSION, len(username)) + username +
                struct.pack('>B', len(password)) + password
            )
            await writer.drain()
            _, status = await reader.readexactly(2)
            if status != SOCKS5.AUTH_SUCCESS:
                raise ConnectionError("upstream SOCKS5 proxy rejected the credentials")
            logger.debug("SOCKS5 上游认证成功")

        try:
            address = encode_address(host)
        except ValueError as e:
            raise ConnectionError(str(e))
        writer.write(struct.pack('>BBB', SOCKS5.VERSION, SOCKS5.CMD_CONNECT, 0x00) +
                     address + struct.pack('>H', port))
        await writer.drain()

        version, code, _, atyp = await reader.readexactly(4)
        if version != SOCKS5.VERSION:
            raise ConnectionError(f"invalid SOCKS5 response version: {version}")
        if code != SOCKS5.REP_SUCCESS:
            reason = SOCKS5_ERRORS.get(code, f"unknown error 0x{code:02x}")
            raise ConnectionError(f"upstream SOCKS5 proxy failed: {reason}")

        try:
            bind_host = await read_address(reader, atyp)
        except ValueError as e:
            raise ConnectionError(str(e))
        bind_port = struct.unpack('>H', await reader.readexactly(2))[0]
    except asyncio.IncompleteReadError:
        raise ConnectionError("upstream SOCKS5 proxy closed the connection")

    logger.debug(f"SOCKS5 CONNECT 成功: {host}:{port}, 绑定地址 {bind_host}:{bind_port}")
    return bind_host, bind_port
