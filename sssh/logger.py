"""sssh 日志模块

基于 loguru，日志记录按连接目标（user@host:port）打标签：

- sssh.log: 全部日志，级别由配置决定
- error.log: 仅 ERROR 及以上
- stderr: 仅在 stderr 为终端时启用

所有消息在写入任何 sink 之前都会脱敏：口令、私钥口令、token，
以及整段 PEM 私钥。
"""
from __future__ import annotations

import re
import sys
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from loguru import logger

from sssh.settings import SSSHSettings

# 未绑定连接目标时的占位
NO_TARGET = "-"

LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[target]} | "
    "{name}:{function}:{line} - {message}"
)

_PEM_BLOCK = re.compile(
    r"-----BEGIN ([A-Z0-9 ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----",
    re.DOTALL,
)

_SECRET_FIELDS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?i)(password\s*[:=]\s*)([^\s,)]+)"), r"\1***"),
    (re.compile(r"(?i)(passphrase\s*[:=]\s*)([^\s,)]+)"), r"\1***"),
    (re.compile(r"(?i)(token\s*[:=]\s*)([^\s,)]+)"), r"\1***"),
]


def redact(text: str) -> str:
    """去掉文本中的口令、token 与 PEM 私钥内容。"""
    redacted = _PEM_BLOCK.sub("[private key]", text)
    for pattern, repl in _SECRET_FIELDS:
        redacted = pattern.sub(repl, redacted)
    return redacted


def target_logger(*, host: str, port: int, username: str) -> Any:
    """返回绑定了连接目标的 logger，每条记录都带有 user@host:port。"""
    return logger.bind(target=f"{username}@{host}:{port}")


def _redact_record(record: Any) -> None:
    record["message"] = redact(record.get("message", ""))


def _resolve_log_dir(settings: SSSHSettings) -> Path:
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        return Path(settings.log_dir)
    except OSError:
        fallback = Path(gettempdir()) / "sssh-logs"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def setup_logger(settings: SSSHSettings) -> Path:
    """按配置重新安装全部 sink。

    Returns:
        实际使用的日志目录（配置目录不可写时退回到临时目录）
    """
    log_dir = _resolve_log_dir(settings)

    logger.remove()
    logger.configure(patcher=_redact_record, extra={"target": NO_TARGET})

    if getattr(sys.stderr, "isatty", lambda: False)():
        logger.add(
            sys.stderr,
            level=settings.log_level,
            format=LOG_FORMAT,
            colorize=True,
            backtrace=False,
            diagnose=False,
        )

    file_sinks = {
        "sssh.log": settings.log_level,
        "error.log": "ERROR",
    }
    for file_name, level in file_sinks.items():
        logger.add(
            str(log_dir / file_name),
            level=level,
            format=LOG_FORMAT,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            enqueue=True,
            backtrace=False,
            diagnose=False,
            encoding="utf-8",
        )
    return log_dir
