"""
中继异常定义

所有故障最终都会在会话内部被吸收为"关闭客户端通道"的动作，
这些异常类型只用于在模块之间传递故障原因并写入日志。
"""


class RelayError(Exception):
    """中继基础异常"""


class ChannelError(RelayError):
    """客户端通道故障（error 事件）"""


class ChannelNotOpenError(ChannelError):
    """向非 OPEN 状态的客户端通道发送数据"""


class RemoteConnectError(RelayError):
    """出站连接建立失败"""

    def __init__(self, host, port, cause: Exception = None):
        self.host = host
        self.port = port
        self.cause = cause
        super().__init__(f"无法连接到 {host}:{port}: {cause}")
