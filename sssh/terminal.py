"""本地终端模块

- get_terminal_context: 读取当前控制终端的描述符、类型和尺寸
- raw_terminal: 在作用域内把终端切换到raw模式，退出时无条件恢复
"""
from __future__ import annotations

import os
import sys
import termios
import tty
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from typing import IO, Any

from loguru import logger

from sssh.exceptions import TerminalError

DEFAULT_TERM_TYPE = "xterm"


@dataclass(frozen=True)
class TerminalContext:
    """终端快照，仅在获取的那一刻有效，每次交互式会话都重新获取。

    Attributes:
        fd: 终端文件描述符
        term_type: 终端类型（TERM）
        width: 列数
        height: 行数
    """

    fd: int
    term_type: str
    width: int
    height: int


def get_terminal_context(
    stdin: IO[Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    default_term_type: str = DEFAULT_TERM_TYPE,
) -> TerminalContext:
    """获取本地终端信息。

    Args:
        stdin: 终端输入流，默认为 sys.stdin
        environ: 环境变量映射，默认为 os.environ
        default_term_type: TERM未设置时使用的终端类型

    Returns:
        TerminalContext

    Raises:
        TerminalError: 未连接真实终端或终端尺寸查询失败
    """
    stream = sys.stdin if stdin is None else stdin
    env = os.environ if environ is None else environ

    try:
        fd = stream.fileno()
    except (AttributeError, OSError, ValueError) as exc:
        raise TerminalError("GetTerminalContext: 未连接到真实终端") from exc
    if not os.isatty(fd):
        raise TerminalError("GetTerminalContext: 未连接到真实终端")

    term_type = env.get("TERM") or default_term_type

    try:
        size = os.get_terminal_size(fd)
    except OSError as exc:
        raise TerminalError(f"GetTerminalContext: 终端尺寸查询失败: {exc}") from exc

    return TerminalContext(fd=fd, term_type=term_type, width=size.columns, height=size.lines)


@contextmanager
def raw_terminal(fd: int) -> Iterator[list[Any]]:
    """把终端切换为raw模式，退出作用域时恢复原状态。

    恢复失败只记录日志，不覆盖作用域内可能正在传播的异常。

    Yields:
        进入raw模式之前的termios属性
    """
    try:
        saved = termios.tcgetattr(fd)
        tty.setraw(fd)
    except termios.error as exc:
        raise TerminalError(f"RawMode: 无法进入raw模式: {exc}") from exc

    try:
        yield saved
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        except termios.error as exc:
            logger.warning("终端状态恢复失败: {}", exc)
