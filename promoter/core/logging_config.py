"""
日志配置

整个服务只用一个 promoter logger：按大小轮转的文件 + stderr，各一个 handler。
配置来自 config.yaml 的 logging 段。相同配置重复调用不做任何事；
配置变化时（如 /-/reload）关闭旧 handler 再按新配置挂上，不会出现一条日志打两遍。
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .config import LoggingConfig

LOGGER_NAME = "promoter"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 当前生效的 logging 配置
_active: Optional["LoggingConfig"] = None


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def _build_handlers(cfg: "LoggingConfig") -> List[logging.Handler]:
    log_path = Path(cfg.log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_path / cfg.log_file,
        maxBytes=cfg.max_bytes,
        backupCount=cfg.backup_count,
        encoding="utf-8",
    )
    # 控制台只写 stderr
    return [file_handler, logging.StreamHandler(sys.stderr)]


def setup_logging(cfg: "LoggingConfig") -> logging.Logger:
    """
    按 logging 配置初始化 promoter logger

    Args:
        cfg: config.logging（日志目录、文件名、级别、轮转大小与份数）

    Returns:
        logging.Logger: 配置好的 logger 实例
    """
    global _active
    logger = logging.getLogger(LOGGER_NAME)
    if cfg == _active:
        return logger

    handlers = _build_handlers(cfg)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    level = _level(cfg.level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if _active is not None:
        logger.info(f"日志配置已更新: {Path(cfg.log_dir) / cfg.log_file}, level={cfg.level}")
    _active = cfg
    return logger


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """子模块可传 promoter.xxx，默认返回 promoter logger"""
    return logging.getLogger(name)
