"""
orchestrators/ - 运行编排

负责：
- 流水线创建与版本发布
- 运行的同步校验、创建、入队与取消
- 定时计划管理
- 余额查询与健康检查
"""

from .run_service import RunService, ScheduleInput, parse_definition

__all__ = [
    "RunService",
    "ScheduleInput",
    "parse_definition",
]
