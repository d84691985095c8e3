"""
路由与链式转发模块

本模块负责为每个入站会话选择出站连接方式，提供了统一的路由接口。

主要功能包括：
- 端点描述的解析与序列化
- 直连 / 拒绝 / 链式 SOCKS 连接器
- 连接器工厂（协议版本、凭据与解析方式协商）
- 按精确度和优先级选择连接器的路由表

使用示例：
    from routing import NetworkContext, ConnectorFactory, RoutingTable

    context = NetworkContext()
    factory = ConnectorFactory(context)
    table = RoutingTable(factory.build('none'))
    table.register('example.com', '*', factory.build('socks5://127.0.0.1:1080'), 100)

    connector = table.resolve('example.com', 443)
    reader, writer = await connector.connect('example.com', 443)
"""

from .endpoint import EndpointSpec, parse_endpoint, format_endpoint
from .connector import (
    NetworkContext,
    Resolver,
    Connector,
    DirectConnector,
    RejectConnector,
    SocksClient,
    LabeledConnector,
    supports_remote_resolution,
    SUPPORTED_PROTOCOL_VERSIONS,
    RESOLVE_LOCAL,
    RESOLVE_REMOTE,
)
from .factory import ConnectorFactory, LABEL_DIRECT, LABEL_REJECT
from .table import RoutingTable, RouteEntry, WILDCARD

__all__ = [
    'EndpointSpec',
    'parse_endpoint',
    'format_endpoint',
    'NetworkContext',
    'Resolver',
    'Connector',
    'DirectConnector',
    'RejectConnector',
    'SocksClient',
    'LabeledConnector',
    'supports_remote_resolution',
    'SUPPORTED_PROTOCOL_VERSIONS',
    'RESOLVE_LOCAL',
    'RESOLVE_REMOTE',
    'ConnectorFactory',
    'LABEL_DIRECT',
    'LABEL_REJECT',
    'RoutingTable',
    'RouteEntry',
    'WILDCARD',
]
