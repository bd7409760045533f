#!/usr/bin/env python3
"""
统一日志配置模块

通过环境变量控制日志级别：
- TPROXY_GATEWAY_LOG_LEVEL: 网关专用日志级别（优先）
- LOG_LEVEL: 通用日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: 设置为 "1"/"true" 时使用 DEBUG 级别

使用方式：
    from log_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

_logging_configured = False


def get_log_level() -> int:
    """从环境变量获取日志级别

    优先级：TPROXY_GATEWAY_LOG_LEVEL > LOG_LEVEL > DEBUG 标志 > 默认 INFO
    """
    level_str = os.environ.get("TPROXY_GATEWAY_LOG_LEVEL", "").upper().strip()
    if not level_str:
        level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL

    return _LEVEL_MAP.get(level_str, logging.INFO)


def setup_logging(
    level: Optional[int] = None,
    detailed: bool = False,
    force: bool = False,
) -> logging.Logger:
    """配置全局日志（只配置一次，除非 force=True）

    Args:
        level: 日志级别，None 表示从环境变量获取
        detailed: 是否包含文件名和行号
        force: 是否强制重新配置

    Returns:
        root logger
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger()

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )

    # 下载列表时 requests/urllib3 的连接日志没有意义
    for lib_logger in ("urllib3", "requests"):
        logging.getLogger(lib_logger).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger()
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """获取命名 logger，未配置时自动调用 setup_logging()"""
    if not _logging_configured:
        setup_logging()
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """动态调整 root logger 级别（CLI 的 --verbose 使用）"""
    logging.getLogger().setLevel(level)
    logging.debug(f"Log level changed to: {logging.getLevelName(level)}")
