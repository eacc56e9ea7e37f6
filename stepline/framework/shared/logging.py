"""
结构化日志配置模块

基于 structlog，为 stepline 提供统一的日志解决方案。
支持本地开发和生产环境的不同输出格式，并可绑定运行级上下文（run_id、schedule_id）。

使用方法:
    from stepline.framework.shared.logging import get_logger

    logger = get_logger(__name__)
    logger.info("运行开始", run_id="...", pipeline_id="...")

环境变量:
    LOG_LEVEL: 日志级别 (DEBUG, INFO, WARNING, ERROR)
    LOG_FORMAT: 日志格式 (json, console)
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.processors import CallsiteParameter
from structlog.types import EventDict, Processor


class SteplineLoggingConfig:
    """stepline 日志配置类"""

    def __init__(self) -> None:
        self.log_level = self._get_log_level()
        self.log_format = self._get_log_format()
        self.is_production = self._is_production_environment()

    def _get_log_level(self) -> int:
        """获取日志级别"""
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        return getattr(logging, level, logging.INFO)

    def _get_log_format(self) -> str:
        """获取日志格式"""
        return os.getenv("LOG_FORMAT", "console").lower()

    def _is_production_environment(self) -> bool:
        """判断是否为生产环境"""
        return os.getenv("ENVIRONMENT", "development").lower() == "production"


class SensitiveDataFilter:
    """敏感数据过滤器"""

    SENSITIVE_KEYS = {
        'password', 'secret', 'token', 'api_key', 'openai_api_key',
        'access_token', 'refresh_token', 'auth_token', 'authorization',
        'private_key', 'stripe_secret_key',
    }

    def __call__(
        self, logger: logging.Logger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        """过滤敏感数据"""
        for key, value in event_dict.items():
            if key.lower() in self.SENSITIVE_KEYS and value:
                if isinstance(value, str) and len(value) > 8:
                    # 保留首尾各4位
                    event_dict[key] = value[:4] + "*" * (len(value) - 8) + value[-4:]
                else:
                    event_dict[key] = "***"

        return event_dict


def _get_shared_processors() -> list[Processor]:
    """获取共享处理器链"""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.CallsiteParameterAdder({
            CallsiteParameter.FILENAME,
            CallsiteParameter.FUNC_NAME,
            CallsiteParameter.LINENO,
        }),
        SensitiveDataFilter(),
        structlog.processors.UnicodeDecoder(),
    ]


def _get_json_processors() -> list[Processor]:
    """获取 JSON 输出处理器链"""
    processors = _get_shared_processors()
    processors.append(structlog.processors.dict_tracebacks)
    processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
    return processors


def _get_console_processors() -> list[Processor]:
    """获取控制台输出处理器链"""
    processors = _get_shared_processors()
    processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    return processors


def configure_structlog() -> None:
    """配置 structlog"""
    config = SteplineLoggingConfig()

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",  # structlog 会处理格式
        stream=sys.stdout,
    )

    if config.log_format == "json":
        processors = _get_json_processors()
    else:
        processors = _get_console_processors()

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
        context_class=dict,
    )

    # 第三方库降噪
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    获取配置好的日志记录器

    Args:
        name: 日志记录器名称，通常为模块名

    Returns:
        structlog.stdlib.BoundLogger: 配置好的日志记录器
    """
    return structlog.get_logger(name or "stepline")


def bind_context(**kwargs: Any) -> None:
    """
    绑定上下文信息到当前协程的所有日志

    Args:
        **kwargs: 要绑定的上下文参数
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """清除当前协程的上下文信息"""
    structlog.contextvars.clear_contextvars()


# 导入时自动配置
configure_structlog()
