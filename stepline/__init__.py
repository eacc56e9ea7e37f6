"""
stepline - 多步骤 LLM 流水线运行编排

主要功能：
- 流水线定义、版本发布与输入校验
- 运行的排队、逐步执行、步骤级重试与取消
- 基于 cron 的定时计划调度（带追赶与防重复触发）
- 按令牌用量核算额度与计费周期滚动

架构分层：
- framework/: 框架层 - 配置、日志、存储、LLM 适配器与编排服务
- domain/: 领域层 - 流水线定义、cron、计划限制与额度核算
- workers/: 任务层 - Arq 异步任务、执行器与调度器
- cli/: 工具层 - Typer 命令行工具
"""

__version__ = "0.1.0"
__author__ = "stepline Team"
__description__ = "多步骤 LLM 流水线运行编排"

from . import domain, framework

__all__ = ["framework", "domain"]
