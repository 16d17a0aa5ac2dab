"""
Hubless SSH 中继模块

本模块提供多连接 SSH 中继服务器的核心功能：

主要功能包括：
- 共享通道注册表（ChannelRegistry）
- 单连接会话状态机（SessionHandler）
- 跨连接广播（BroadcastRelay）
- 远程端口反向转发（ForwardingAgent）
- 服务器生命周期管理（RelayServer）

使用示例：
    from relay import RelayServer
    server = RelayServer(config)
    await server.serve_forever()
"""

from .registry import ChannelRegistry
from .broadcast import BroadcastRelay
from .forwarding import ForwardingAgent, ForwardRequest


# paramiko / aiohttp 相关模块延迟导入
def __getattr__(name):
    if name in ('SessionHandler', 'SessionState', 'Credential'):
        from . import session
        return getattr(session, name)
    elif name == 'RelayServer':
        from .server import RelayServer
        return RelayServer
    elif name == 'create_app':
        from .batch_api import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    'BroadcastRelay',
    'ChannelRegistry',
    'Credential',
    'ForwardingAgent',
    'ForwardRequest',
    'RelayServer',
    'SessionHandler',
    'SessionState',
    'create_app',
]
