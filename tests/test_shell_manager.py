"""ShellManager 交互式会话单元测试

远程端使用 socketpair 模拟的通道，本地终端使用真实伪终端，覆盖：
- pty 请求携带终端类型、尺寸和终端模式
- 默认shell与交互式命令两种启动方式
- 任一阶段失败后本地终端状态恢复、会话关闭
- 标准流双向转发与EOF传递
"""
import fcntl
import io
import os
import pty
import socket
import struct
import termios
import threading

import paramiko
import pytest

from sssh.exceptions import SessionError, TerminalError
from sssh.settings import SSSHSettings
from sssh.shell_manager import (
    ECHO,
    TTY_OP_ISPEED,
    TTY_OP_OSPEED,
    ShellManager,
    StreamPump,
    encode_terminal_modes,
    terminal_modes,
)
from sssh.terminal import TerminalContext


class FakeTransport:
    def __init__(self) -> None:
        self.channel: "FakeShellChannel | None" = None
        self.messages: list[paramiko.Message] = []
        self.open_error: Exception | None = None

    def is_active(self) -> bool:
        return True

    def open_session(self) -> "FakeShellChannel":
        if self.open_error is not None:
            raise self.open_error
        assert self.channel is not None
        return self.channel

    def _send_user_message(self, m: paramiko.Message) -> None:
        self.messages.append(m)


class FakeShellChannel:
    """基于 socketpair 的会话通道，远端在启动后输出预设内容并结束。"""

    def __init__(
        self,
        transport: FakeTransport,
        *,
        remote_output: bytes = b"",
        remote_stderr: bytes = b"",
        exit_status: int = 0,
        pty_error: Exception | None = None,
        launch_error: Exception | None = None,
        on_launch=None,
    ) -> None:
        self.transport = transport
        self.remote_chanid = 7
        self.closed = False
        self.active = True
        self.launched: str | None = None
        self.close_calls = 0
        self._local, self.remote = socket.socketpair()
        self._remote_output = remote_output
        self._stderr_chunks = [remote_stderr] if remote_stderr else []
        self._exit_status = exit_status
        self._pty_error = pty_error
        self._launch_error = launch_error
        self._on_launch = on_launch
        transport.channel = self

    def fileno(self) -> int:
        return self._local.fileno()

    def _event_pending(self) -> None:
        pass

    def _wait_for_event(self) -> None:
        if self._pty_error is not None:
            raise self._pty_error

    def invoke_shell(self) -> None:
        self._start("<shell>")

    def exec_command(self, command: str) -> None:
        self._start(command)

    def _start(self, what: str) -> None:
        if self._launch_error is not None:
            raise self._launch_error
        if self._on_launch is not None:
            self._on_launch()
        self.launched = what
        self.remote.sendall(self._remote_output)
        self.remote.shutdown(socket.SHUT_WR)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr_chunks)

    def recv_stderr(self, nbytes: int) -> bytes:
        return self._stderr_chunks.pop(0)

    def recv(self, nbytes: int) -> bytes:
        return self._local.recv(nbytes)

    def sendall(self, data: bytes) -> None:
        self._local.sendall(data)

    def shutdown_write(self) -> None:
        self._local.shutdown(socket.SHUT_WR)

    def recv_exit_status(self) -> int:
        return self._exit_status

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True
        self.active = False
        self._local.close()
        self.remote.close()


class FakeConn:
    def __init__(self, transport: FakeTransport) -> None:
        self._transport = transport

    def get_transport(self) -> FakeTransport:
        return self._transport


class _FdStream:
    def __init__(self, fd: int) -> None:
        self._fd = fd

    def fileno(self) -> int:
        return self._fd


@pytest.fixture
def pty_pair():
    master, slave = pty.openpty()
    fcntl.ioctl(slave, termios.TIOCSWINSZ, struct.pack("HHHH", 40, 120, 0, 0))
    yield master, slave
    os.close(master)
    os.close(slave)


@pytest.fixture(autouse=True)
def _term(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TERM", "vt220")


def _shell(slave: int, **settings) -> tuple[ShellManager, io.BytesIO, io.BytesIO]:
    stdout, stderr = io.BytesIO(), io.BytesIO()
    mgr = ShellManager(
        settings=SSSHSettings(**settings),
        stdin=_FdStream(slave),
        stdout=stdout,
        stderr=stderr,
    )
    return mgr, stdout, stderr


class TestTerminalModes:
    """终端模式编码测试组。"""

    def test_default_modes_have_no_echo(self) -> None:
        assert terminal_modes() == {TTY_OP_ISPEED: 14400, TTY_OP_OSPEED: 14400}

    def test_echo_can_be_set_explicitly(self) -> None:
        assert terminal_modes(echo=False)[ECHO] == 0
        assert terminal_modes(echo=True)[ECHO] == 1

    def test_encoding(self) -> None:
        """每项编码为 1字节opcode + 4字节大端值，以0结尾。"""
        encoded = encode_terminal_modes({TTY_OP_ISPEED: 14400, TTY_OP_OSPEED: 14400})
        assert encoded == b"\x80\x00\x00\x38\x40\x81\x00\x00\x38\x40\x00"

    def test_empty_encoding(self) -> None:
        assert encode_terminal_modes({}) == b"\x00"


class TestRunShell:
    """交互式shell生命周期测试组。"""

    def test_shell_success(self, pty_pair) -> None:
        """成功时远端输出写到本地stdout，终端恢复，会话关闭。"""
        _, slave = pty_pair
        before = termios.tcgetattr(slave)
        echo_during_launch: list[int] = []
        transport = FakeTransport()
        channel = FakeShellChannel(
            transport,
            remote_output=b"welcome\r\n",
            on_launch=lambda: echo_during_launch.append(termios.tcgetattr(slave)[3] & termios.ECHO),
        )
        mgr, stdout, _ = _shell(slave)

        assert mgr.run_shell(FakeConn(transport)) is None  # type: ignore[arg-type]

        assert channel.launched == "<shell>"
        assert stdout.getvalue() == b"welcome\r\n"
        assert echo_during_launch == [0]
        assert termios.tcgetattr(slave) == before
        assert channel.close_calls == 1

    def test_pty_request_contents(self, pty_pair) -> None:
        """pty-req 应携带 TERM、当前尺寸和终端模式。"""
        _, slave = pty_pair
        transport = FakeTransport()
        FakeShellChannel(transport)
        mgr, _, _ = _shell(slave, pty_echo=False)

        mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]

        assert len(transport.messages) == 1
        raw = transport.messages[0].asbytes()
        assert b"pty-req" in raw
        assert b"vt220" in raw
        assert struct.pack(">II", 120, 40) in raw
        modes = {TTY_OP_ISPEED: 14400, TTY_OP_OSPEED: 14400, ECHO: 0}
        assert encode_terminal_modes(modes) in raw

    def test_interactive_command(self, pty_pair) -> None:
        """指定命令时在pty中执行命令而不是默认shell。"""
        _, slave = pty_pair
        transport = FakeTransport()
        channel = FakeShellChannel(transport, remote_output=b"top output")
        mgr, stdout, _ = _shell(slave)

        mgr.run_shell(FakeConn(transport), command="top")  # type: ignore[arg-type]

        assert channel.launched == "top"
        assert stdout.getvalue() == b"top output"

    def test_session_open_failure(self, pty_pair) -> None:
        _, slave = pty_pair
        transport = FakeTransport()
        transport.open_error = paramiko.ChannelException(2, "Connect failed")
        mgr, _, _ = _shell(slave)

        with pytest.raises(SessionError) as exc_info:
            mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]
        assert exc_info.value.phase == "session-open"

    def test_not_a_terminal(self) -> None:
        """本地输入不是终端时关闭会话，且不发送pty请求。"""
        read_fd, write_fd = os.pipe()
        try:
            transport = FakeTransport()
            channel = FakeShellChannel(transport)
            mgr, _, _ = _shell(read_fd)

            with pytest.raises(TerminalError):
                mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]

            assert transport.messages == []
            assert channel.close_calls == 1
        finally:
            os.close(read_fd)
            os.close(write_fd)

    def test_pty_allocation_failure(self, pty_pair) -> None:
        _, slave = pty_pair
        before = termios.tcgetattr(slave)
        transport = FakeTransport()
        channel = FakeShellChannel(transport, pty_error=paramiko.SSHException("pty request failed"))
        mgr, _, _ = _shell(slave)

        with pytest.raises(SessionError) as exc_info:
            mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]

        assert exc_info.value.phase == "pty-allocate"
        assert channel.launched is None
        assert channel.close_calls == 1
        assert termios.tcgetattr(slave) == before

    def test_raw_mode_failure(self, pty_pair) -> None:
        """无法进入raw模式时关闭会话并抛出 TerminalError。"""
        _, slave = pty_pair
        read_fd, write_fd = os.pipe()
        try:
            transport = FakeTransport()
            channel = FakeShellChannel(transport)
            mgr = ShellManager(
                settings=SSSHSettings(),
                stdin=_FdStream(slave),
                stdout=io.BytesIO(),
                stderr=io.BytesIO(),
                terminal_resolver=lambda: TerminalContext(
                    fd=read_fd, term_type="xterm", width=80, height=24
                ),
            )

            with pytest.raises(TerminalError):
                mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]

            assert channel.launched is None
            assert channel.close_calls == 1
        finally:
            os.close(read_fd)
            os.close(write_fd)

    def test_launch_failure_restores_terminal(self, pty_pair) -> None:
        _, slave = pty_pair
        before = termios.tcgetattr(slave)
        transport = FakeTransport()
        channel = FakeShellChannel(transport, launch_error=paramiko.SSHException("shell refused"))
        mgr, _, _ = _shell(slave)

        with pytest.raises(SessionError) as exc_info:
            mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]

        assert exc_info.value.phase == "shell-launch"
        assert channel.close_calls == 1
        assert termios.tcgetattr(slave) == before

    def test_nonzero_exit_restores_terminal(self, pty_pair) -> None:
        _, slave = pty_pair
        before = termios.tcgetattr(slave)
        transport = FakeTransport()
        channel = FakeShellChannel(transport, remote_output=b"bye\r\n", exit_status=2)
        mgr, stdout, _ = _shell(slave)

        with pytest.raises(SessionError) as exc_info:
            mgr.run_shell(FakeConn(transport))  # type: ignore[arg-type]

        assert exc_info.value.phase == "wait"
        assert exc_info.value.exit_status == 2
        assert stdout.getvalue() == b"bye\r\n"
        assert channel.close_calls == 1
        assert termios.tcgetattr(slave) == before


class TestStreamPump:
    """标准流转发测试组。"""

    def test_forwards_stdin_and_propagates_eof(self) -> None:
        """本地输入结束后向远端发送EOF，继续接收远端输出直到结束。"""
        transport = FakeTransport()
        channel = FakeShellChannel(transport)
        received: list[bytes] = []

        def remote_side() -> None:
            while True:
                data = channel.remote.recv(1024)
                if not data:
                    break
                received.append(data)
            channel.remote.sendall(b"bye")
            channel.remote.shutdown(socket.SHUT_WR)

        read_fd, write_fd = os.pipe()
        os.write(write_fd, b"ls -l\n")
        os.close(write_fd)
        stdout = io.BytesIO()
        worker = threading.Thread(target=remote_side)
        worker.start()
        try:
            StreamPump(channel, stdin_fd=read_fd, stdout=stdout, stderr=io.BytesIO()).run()  # type: ignore[arg-type]
        finally:
            worker.join(timeout=5)
            os.close(read_fd)
            channel.close()

        assert b"".join(received) == b"ls -l\n"
        assert stdout.getvalue() == b"bye"

    def test_routes_stderr_separately(self) -> None:
        transport = FakeTransport()
        channel = FakeShellChannel(transport, remote_output=b"out", remote_stderr=b"err")
        channel.invoke_shell()
        read_fd, write_fd = os.pipe()
        stdout, stderr = io.BytesIO(), io.BytesIO()
        try:
            StreamPump(channel, stdin_fd=read_fd, stdout=stdout, stderr=stderr).run()  # type: ignore[arg-type]
        finally:
            os.close(read_fd)
            os.close(write_fd)
            channel.close()

        assert stdout.getvalue() == b"out"
        assert stderr.getvalue() == b"err"
