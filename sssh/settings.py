"""sssh 配置设置模块

使用 Pydantic Settings 管理配置，支持以下配置方式（优先级从高到低）：
1. 环境变量（前缀：SSSH_）
2. .env 文件
3. 默认值

示例环境变量：
    SSSH_LOG_LEVEL=DEBUG
    SSSH_CONNECT_TIMEOUT_SECONDS=10
    SSSH_KNOWN_HOSTS_POLICY=reject
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known hosts 策略类型
KnownHostsPolicy = Literal["ignore", "warn", "reject"]


class SSSHSettings(BaseSettings):
    """sssh 客户端配置类。

    支持通过环境变量、.env文件或默认值进行配置。
    环境变量前缀为 SSSH_。
    """

    model_config = SettingsConfigDict(env_prefix="SSSH_", extra="ignore")

    # 配置文件路径
    config_file: Path = Field(default=Path("sssh_config.json"))

    # 日志配置
    log_level: str = Field(default="INFO", description="日志级别")
    log_dir: Path = Field(default=Path("logs"), description="日志目录")
    log_rotation: str = Field(default="10 MB", description="日志轮转大小")
    log_retention: str = Field(default="30 days", description="日志保留时间")

    # 连接配置
    default_port: int = Field(default=22, ge=1, le=65535, description="默认SSH端口")
    connect_timeout_seconds: float | None = Field(
        default=None, gt=0, description="TCP连接超时时间(秒)，None表示不设超时"
    )

    # SSH 安全配置
    known_hosts_policy: KnownHostsPolicy = Field(
        default="ignore",
        description="Known hosts 策略: ignore(自动接受), warn(警告), reject(拒绝)"
    )
    known_hosts_file: Path | None = Field(
        default=None, description="额外加载的known_hosts文件"
    )

    # 交互式终端配置
    default_term_type: str = Field(default="xterm", description="TERM未设置时的终端类型")
    pty_baud_rate: int = Field(default=14400, ge=1, description="pty输入/输出波特率")
    pty_echo: bool | None = Field(
        default=None, description="pty回显模式，None表示沿用远端默认值"
    )

    # 传输分块配置
    chunk_size: int = Field(
        default=32768, ge=1024, description="通道读取与SFTP写入的分块大小(字节)"
    )
