"""
shared/ - 共享组件

提供跨层共享的组件：
- 配置管理
- 异常定义
- 结构化日志
- 重试策略
- 用户密钥加解密与脱敏
"""

from .config import Settings, get_settings
from .exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    InsufficientCreditsError,
    SteplineError,
    TransientOperationError,
    ValidationError,
)

__all__ = [
    "Settings", "get_settings",
    "SteplineError", "ValidationError", "ConfigurationError",
    "TransientOperationError", "InsufficientCreditsError", "ConcurrencyConflictError",
]
