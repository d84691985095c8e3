"""
连接器工厂

根据端点描述构造带标签的出站连接器:
- "reject" -> 拒绝连接器，标签 "-reject-"
- "none"   -> 直连连接器，标签 "-direct-"
- 其它     -> 经由上游 SOCKS 代理的链式连接器，标签为规范端点字符串
"""

import dataclasses
import logging
from typing import Callable, Optional

from common import ConfigError
from .connector import (
    DirectConnector, LabeledConnector, NetworkContext, RejectConnector, SocksClient,
    RESOLVE_LOCAL, RESOLVE_REMOTE,
)
from .endpoint import format_endpoint, parse_endpoint

logger = logging.getLogger('socks-via-factory')

LABEL_REJECT = '-reject-'
LABEL_DIRECT = '-direct-'


class ConnectorFactory:
    """
    连接器工厂

    Attributes:
        context: 所有连接器共享的网络上下文
        notify: 接收确认消息的回调（由控制台持有），可选
    """

    def __init__(self, context: NetworkContext, notify: Optional[Callable[[str], None]] = None):
        self.context = context
        self.notify = notify

    def build(self, text: str) -> LabeledConnector:
        """
        根据端点描述构造连接器

        Args:
            text: "none"、"reject" 或端点描述

        Returns:
            LabeledConnector: 带标签的连接器

        Raises:
            ConfigError: 描述无效、协议版本不受支持或凭据被拒绝
        """
        if text == 'reject':
            self._emit('reject')
            return LabeledConnector(RejectConnector(), LABEL_REJECT)

        direct = DirectConnector(self.context)
        if text == 'none':
            self._emit('use direct connection to target')
            return LabeledConnector(direct, LABEL_DIRECT)

        spec = parse_endpoint(text)

        # 解析器无法解析不带域的 localhost，直接使用回环地址
        if spec.host == 'localhost':
            spec = dataclasses.replace(spec, host='127.0.0.1')

        client = SocksClient(spec.host, spec.port, direct, self.context)
        if spec.protocol_version is not None:
            try:
                client.set_protocol_version(spec.protocol_version)
            except ValueError as e:
                raise ConfigError(f"invalid protocol version: {e}") from e

        if spec.has_auth:
            try:
                client.set_auth(spec.user or '', spec.password or '')
            except ValueError as e:
                raise ConfigError(f"invalid authentication info: {e}") from e

        remote = client.supports_remote_resolution()
        client.set_resolve_local(not remote)
        resolve_mode = RESOLVE_REMOTE if remote else RESOLVE_LOCAL

        label = format_endpoint(spec)
        self._emit(f"use {label} as next hop (resolve {resolve_mode}ly)")
        return LabeledConnector(client, label, resolve_mode)

    def _emit(self, message: str):
        # 控制台已经显示确认消息，日志只在 DEBUG 级别重复
        if self.notify is not None:
            logger.debug(message)
            self.notify(message)
        else:
            logger.info(message)
