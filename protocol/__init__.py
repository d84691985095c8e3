"""
SOCKS 协议包

本包提供 SOCKS4 / SOCKS4a / SOCKS5 协议的常量和编解码实现，包括：
- 协议常量与错误码
- 地址编解码
- 客户端 CONNECT 握手（链式上游代理）
- 服务端应答构造

使用示例：
    from protocol import SOCKS5, socks5_connect

    reader, writer = await asyncio.open_connection('127.0.0.1', 1080)
    bind_host, bind_port = await socks5_connect(reader, writer, 'example.com', 443)
"""

from .core import (
    # 协议常量
    SOCKS4,
    SOCKS5,
    SOCKS5_ERRORS,

    # 地址编解码
    decode_hostname,
    encode_address,
    read_address,
    read_until_nul,

    # 应答构造
    socks4_reply,
    socks5_reply,

    # 客户端握手
    socks4_connect,
    socks5_connect,
)
