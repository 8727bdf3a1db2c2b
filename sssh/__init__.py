"""
sssh 简易SSH客户端工具库

在SSH传输之上提供多认证方式顺序协商、交互式终端会话，以及带后置条件校验的SFTP文件操作。
"""

__version__ = "0.1.0"

__all__ = [
    "auth_manager",
    "config_manager",
    "connection_manager",
    "exceptions",
    "file_transfer_manager",
    "logger",
    "settings",
    "shell_manager",
    "ssh_manager",
    "terminal",
    "types",
]
