"""交互式Shell会话模块

会话按以下阶段推进，任何阶段失败都会按获取的逆序释放已获取的资源：

    session-open -> 终端信息获取 -> pty-allocate -> raw模式 -> 流绑定
    -> shell-launch -> wait -> 清理（恢复终端、关闭会话）

本地终端状态和远程会话通过 ExitStack 管理，保证在 pty分配、raw模式、
shell启动或等待失败时都会恢复终端并关闭会话。
"""
from __future__ import annotations

import os
import select
import struct
import sys
from collections.abc import Callable, Mapping
from contextlib import ExitStack
from typing import IO, Any

import paramiko
from loguru import logger
from paramiko.common import cMSG_CHANNEL_REQUEST
from paramiko.message import Message

from sssh.exceptions import SessionError
from sssh.settings import SSSHSettings
from sssh.ssh_manager import close_channel, open_channel
from sssh.terminal import TerminalContext, get_terminal_context, raw_terminal

# RFC 4254 §8 终端模式操作码
TTY_OP_END = 0
ECHO = 53
TTY_OP_ISPEED = 128
TTY_OP_OSPEED = 129

TerminalResolver = Callable[[], TerminalContext]


def terminal_modes(*, baud_rate: int = 14400, echo: bool | None = None) -> dict[int, int]:
    """生成pty请求使用的终端模式集合。

    echo 为 None 时不携带 ECHO 标志，由远端决定回显行为。
    """
    modes = {TTY_OP_ISPEED: baud_rate, TTY_OP_OSPEED: baud_rate}
    if echo is not None:
        modes[ECHO] = int(echo)
    return modes


def encode_terminal_modes(modes: Mapping[int, int]) -> bytes:
    """按 RFC 4254 编码终端模式：每项为 opcode(byte) + value(uint32)，以 TTY_OP_END 结尾。"""
    encoded = b"".join(struct.pack(">BI", opcode, value) for opcode, value in modes.items())
    return encoded + bytes([TTY_OP_END])


def request_pty(
    channel: paramiko.Channel,
    *,
    term_type: str,
    width: int,
    height: int,
    modes: Mapping[int, int],
) -> None:
    """发送携带终端模式的 pty-req 请求并等待结果。

    paramiko 的 Channel.get_pty 总是发送空的模式串，因此这里按相同方式
    自行构造请求消息。

    Raises:
        paramiko.SSHException: 通道未打开或服务端拒绝分配pty
    """
    if channel.closed or not channel.active:
        raise paramiko.SSHException("Channel is not open")

    m = Message()
    m.add_byte(cMSG_CHANNEL_REQUEST)
    m.add_int(channel.remote_chanid)
    m.add_string("pty-req")
    m.add_boolean(True)
    m.add_string(term_type)
    m.add_int(width)
    m.add_int(height)
    m.add_int(0)
    m.add_int(0)
    m.add_string(encode_terminal_modes(modes))
    # 与 Channel.get_pty 相同的私有调用序列（paramiko 3.2 至 5.x）
    channel._event_pending()
    channel.transport._send_user_message(m)
    channel._wait_for_event()


def _write(stream: IO[bytes], data: bytes) -> None:
    stream.write(data)
    stream.flush()


class StreamPump:
    """在本地标准流与远程通道之间双向转发数据，直到远程通道结束。

    本地输入结束时向远端发送EOF，但继续转发远端输出。
    """

    def __init__(
        self,
        channel: paramiko.Channel,
        *,
        stdin_fd: int,
        stdout: IO[bytes],
        stderr: IO[bytes],
        chunk_size: int = 1024,
    ) -> None:
        self._channel = channel
        self._stdin_fd = stdin_fd
        self._stdout = stdout
        self._stderr = stderr
        self._chunk_size = chunk_size

    def run(self) -> None:
        stdin_open = True
        while True:
            watched: list[Any] = [self._channel]
            if stdin_open:
                watched.append(self._stdin_fd)
            readable, _, _ = select.select(watched, [], [])

            if self._channel in readable:
                if self._channel.recv_stderr_ready():
                    _write(self._stderr, self._channel.recv_stderr(self._chunk_size))
                    continue
                data = self._channel.recv(self._chunk_size)
                if not data:
                    return
                _write(self._stdout, data)

            if stdin_open and self._stdin_fd in readable:
                data = os.read(self._stdin_fd, self._chunk_size)
                if data:
                    self._channel.sendall(data)
                else:
                    stdin_open = False
                    self._channel.shutdown_write()


class ShellManager:
    """交互式Shell会话管理器。

    Attributes:
        _settings: sssh配置
        _stdin: 本地输入流（需为真实终端）
        _stdout: 本地二进制输出流
        _stderr: 本地二进制错误输出流
    """

    def __init__(
        self,
        *,
        settings: SSSHSettings,
        stdin: IO[Any] | None = None,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
        terminal_resolver: TerminalResolver | None = None,
    ) -> None:
        """初始化Shell会话管理器。

        Args:
            settings: sssh配置
            stdin: 本地输入流，默认为 sys.stdin
            stdout: 本地输出流，默认为 sys.stdout.buffer
            stderr: 本地错误输出流，默认为 sys.stderr.buffer
            terminal_resolver: 终端信息获取函数，用于测试注入
        """
        self._settings = settings
        self._stdin = sys.stdin if stdin is None else stdin
        self._stdout = sys.stdout.buffer if stdout is None else stdout
        self._stderr = sys.stderr.buffer if stderr is None else stderr
        self._terminal_resolver = terminal_resolver or self._resolve_terminal

    def run_shell(self, conn: paramiko.SSHClient, command: str | None = None) -> None:
        """在远程pty中启动交互式shell，阻塞直到远端退出。

        Args:
            conn: 已认证的SSH连接
            command: 指定时在pty中执行该命令而不是默认shell

        Raises:
            SessionError: 会话创建、pty分配、shell启动或等待失败
            TerminalError: 本地未连接真实终端或无法进入raw模式
        """
        channel = open_channel(conn)
        with ExitStack() as stack:
            stack.callback(close_channel, channel)

            context = self._terminal_resolver()
            self._allocate_pty(channel, context)
            stack.enter_context(raw_terminal(context.fd))

            pump = StreamPump(
                channel,
                stdin_fd=self._stdin.fileno(),
                stdout=self._stdout,
                stderr=self._stderr,
            )
            self._launch(channel, command)
            self._wait(channel, pump)

    def _resolve_terminal(self) -> TerminalContext:
        return get_terminal_context(
            self._stdin, default_term_type=self._settings.default_term_type
        )

    def _allocate_pty(self, channel: paramiko.Channel, context: TerminalContext) -> None:
        modes = terminal_modes(
            baud_rate=self._settings.pty_baud_rate, echo=self._settings.pty_echo
        )
        logger.debug(
            "请求pty: term={} size={}x{} modes={}",
            context.term_type,
            context.width,
            context.height,
            modes,
        )
        try:
            request_pty(
                channel,
                term_type=context.term_type,
                width=context.width,
                height=context.height,
                modes=modes,
            )
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise SessionError(f"RequestPty: pty分配失败: {exc}", phase="pty-allocate") from exc

    @staticmethod
    def _launch(channel: paramiko.Channel, command: str | None) -> None:
        try:
            if command is None:
                channel.invoke_shell()
            else:
                channel.exec_command(command)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise SessionError(f"Shell: shell启动失败: {exc}", phase="shell-launch") from exc

    @staticmethod
    def _wait(channel: paramiko.Channel, pump: StreamPump) -> None:
        try:
            pump.run()
            exit_status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise SessionError(f"Wait: 会话异常结束: {exc}", phase="wait") from exc

        if exit_status != 0:
            raise SessionError(
                f"Wait: 远程shell以状态 {exit_status} 退出",
                phase="wait",
                exit_status=exit_status,
            )
