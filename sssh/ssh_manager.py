from __future__ import annotations

from dataclasses import dataclass

import paramiko
from loguru import logger

from sssh.exceptions import CommandExecutionError, SessionError
from sssh.settings import SSSHSettings
from sssh.types import CommandResultDict


def _to_text(value: bytes) -> str:
    return value.decode(errors="replace")


def open_channel(conn: paramiko.SSHClient) -> paramiko.Channel:
    """在连接上打开一个新的会话通道。"""
    transport = conn.get_transport()
    if transport is None or not transport.is_active():
        raise SessionError("NewSession: 连接未建立或已关闭", phase="session-open")
    try:
        return transport.open_session()
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise SessionError(f"NewSession: 会话创建失败: {exc}", phase="session-open") from exc


def close_channel(channel: paramiko.Channel) -> None:
    try:
        channel.close()
    except (paramiko.SSHException, OSError, EOFError) as exc:
        logger.warning("会话关闭失败: {}", exc)


@dataclass(frozen=True)
class SSHCommandResult:
    command: str
    exit_status: int
    output: bytes

    @property
    def text(self) -> str:
        return _to_text(self.output)

    def to_dict(self) -> CommandResultDict:
        return {
            "command": self.command,
            "exit_status": self.exit_status,
            "output": self.text,
        }


class SSHManager:
    def __init__(self, *, settings: SSSHSettings) -> None:
        self._settings = settings

    def run_command(self, conn: paramiko.SSHClient, command: str) -> bytes:
        """非交互地执行命令，返回合并后的 stdout+stderr。

        命令失败时抛出 CommandExecutionError，已捕获的输出保存在其 output 属性中。
        """
        return self.execute_command(conn, command).output

    def execute_command(self, conn: paramiko.SSHClient, command: str) -> SSHCommandResult:
        if not command.strip():
            raise ValueError("command不能为空")

        channel = open_channel(conn)
        try:
            channel.set_combine_stderr(True)
            chunks: list[bytes] = []
            try:
                channel.exec_command(command)
                while True:
                    data = channel.recv(self._settings.chunk_size)
                    if not data:
                        break
                    chunks.append(data)
                exit_status = channel.recv_exit_status()
            except (paramiko.SSHException, OSError, EOFError) as exc:
                output = b"".join(chunks)
                raise CommandExecutionError(
                    f"RunCommand: 命令执行中断: {exc}",
                    command=command,
                    output=output,
                ) from exc
        finally:
            close_channel(channel)

        output = b"".join(chunks)
        logger.debug("命令执行完成: {!r} exit_status={}", command, exit_status)
        if exit_status != 0:
            if exit_status == -1:
                message = "RunCommand: 远程命令未返回退出状态"
            else:
                message = f"RunCommand: 远程命令以状态 {exit_status} 退出"
            raise CommandExecutionError(
                message,
                command=command,
                exit_status=exit_status,
                output=output,
            )
        return SSHCommandResult(command=command, exit_status=exit_status, output=output)

