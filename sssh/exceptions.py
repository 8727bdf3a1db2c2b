"""sssh 自定义异常模块

定义项目中使用的所有自定义异常类，提供结构化的错误处理。
异常层次结构：
    SSSHError (基类)
    ├── ConfigurationError      - 调用配置错误（如空凭据列表）
    ├── AuthenticationError     - 所有认证方式均被拒绝
    ├── SSHConnectionError      - 非认证类的连接错误
    ├── TerminalError           - 本地终端环境错误
    ├── SessionError            - 远程会话各阶段错误
    ├── CommandExecutionError   - 命令执行相关错误
    ├── FileTransferError       - 文件传输相关错误
    │   └── PostconditionError  - 操作返回成功但回读校验不通过
    └── CredentialError         - 凭据存储相关错误
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sssh.types import ErrorDict


class SSSHError(Exception):
    """sssh 基础异常类。

    所有自定义异常的基类，提供统一的错误消息格式。

    Attributes:
        message: 用户友好的错误描述信息
        details: 可选的附加错误详情字典
    """

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        """初始化基础异常。

        Args:
            message: 用户友好的错误描述信息
            details: 可选的附加错误详情
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_dict(self) -> ErrorDict:
        """将异常转换为结构化的错误字典。

        Returns:
            包含error_type、message和details的字典
        """
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(SSSHError):
    """调用配置错误。

    在发起任何网络连接之前即可判定的错误，例如未提供任何认证方式、
    地址格式非法等。此类错误不会重试。
    """


class AuthenticationError(SSSHError):
    """认证被拒绝错误。

    当提供的所有认证方式都被服务端拒绝时抛出，携带最后一次拒绝的原因。

    Attributes:
        host: 目标主机地址
        port: 目标SSH端口
        attempts: 已尝试的认证方式数量
    """

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        port: int = 22,
        attempts: int = 0,
        details: dict[str, object] | None = None,
    ) -> None:
        merged_details = {"host": host, "port": port, "attempts": attempts, **(details or {})}
        super().__init__(message, details=merged_details)
        self.host = host
        self.port = port
        self.attempts = attempts


class SSHConnectionError(SSSHError):
    """SSH连接错误。

    当SSH连接建立失败、超时或连接被拒绝时抛出（认证拒绝除外）。

    Attributes:
        host: 目标主机地址
        port: 目标SSH端口
    """

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        port: int = 22,
        details: dict[str, object] | None = None,
    ) -> None:
        """初始化SSH连接错误。

        Args:
            message: 错误描述信息
            host: 目标主机地址
            port: 目标SSH端口
            details: 附加错误详情
        """
        merged_details = {"host": host, "port": port, **(details or {})}
        super().__init__(message, details=merged_details)
        self.host = host
        self.port = port


class TerminalError(SSSHError):
    """本地终端错误。

    当标准输入不是真实终端、终端尺寸查询失败或无法进入raw模式时抛出。
    """


class SessionError(SSSHError):
    """远程会话错误。

    当会话创建、pty分配、shell启动或等待退出失败时抛出。

    Attributes:
        phase: 出错的会话阶段（session-open、pty-allocate、shell-launch、wait）
        exit_status: 远程进程退出状态码，未知时为None
    """

    def __init__(
        self,
        message: str,
        *,
        phase: str = "",
        exit_status: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """初始化会话错误。

        Args:
            message: 错误描述信息
            phase: 出错的会话阶段
            exit_status: 远程进程退出状态码
            details: 附加错误详情
        """
        merged_details = {"phase": phase, "exit_status": exit_status, **(details or {})}
        super().__init__(message, details=merged_details)
        self.phase = phase
        self.exit_status = exit_status


class CommandExecutionError(SSSHError):
    """命令执行错误。

    当远程命令以非零状态退出或执行过程中传输中断时抛出。
    已经捕获到的输出不会丢弃，通过output属性返回。

    Attributes:
        command: 执行失败的命令
        exit_status: 命令退出状态码，-1表示未收到退出状态
        output: 失败前已捕获的合并输出（stdout+stderr）
    """

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        exit_status: int = -1,
        output: bytes = b"",
        details: dict[str, object] | None = None,
    ) -> None:
        """初始化命令执行错误。

        Args:
            message: 错误描述信息
            command: 执行失败的命令
            exit_status: 命令退出状态码
            output: 已捕获的合并输出
            details: 附加错误详情
        """
        merged_details = {
            "command": command,
            "exit_status": exit_status,
            "output_bytes": len(output),
            **(details or {}),
        }
        super().__init__(message, details=merged_details)
        self.command = command
        self.exit_status = exit_status
        self.output = output


class FileTransferError(SSSHError):
    """文件传输错误。

    当SFTP操作（创建、写入、读取、删除、重命名等）失败时抛出。

    Attributes:
        operation: 失败的操作名称
        local_path: 本地文件路径
        remote_path: 远程文件路径
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        local_path: str = "",
        remote_path: str = "",
        details: dict[str, object] | None = None,
    ) -> None:
        """初始化文件传输错误。

        Args:
            message: 错误描述信息
            operation: 失败的操作名称
            local_path: 本地文件路径
            remote_path: 远程文件路径
            details: 附加错误详情
        """
        merged_details = {
            "operation": operation,
            "local_path": local_path,
            "remote_path": remote_path,
            **(details or {}),
        }
        super().__init__(message, details=merged_details)
        self.operation = operation
        self.local_path = local_path
        self.remote_path = remote_path


class PostconditionError(FileTransferError):
    """后置条件校验错误。

    底层调用报告成功，但随后的独立回读显示状态与预期不符，例如：
    写入后文件不存在、删除或移动后源路径仍可访问。
    """


class CredentialError(SSSHError):
    """凭据错误。

    当凭据缺失、无效或keyring操作失败时抛出。

    Attributes:
        host: 关联的主机地址
        username: 关联的用户名
    """

    def __init__(
        self,
        message: str,
        *,
        host: str = "",
        username: str = "",
        details: dict[str, object] | None = None,
    ) -> None:
        merged_details = {"host": host, "username": username, **(details or {})}
        super().__init__(message, details=merged_details)
        self.host = host
        self.username = username
