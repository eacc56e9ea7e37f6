"""
共享异常定义

定义 stepline 运行编排中使用的自定义异常。
"""

from typing import Any


class SteplineError(Exception):
    """stepline 基础异常"""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        self.message = message
        self.error_code = error_code or "STEPLINE_ERROR"
        self.details = details or {}
        self.cause = cause

        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "cause": str(self.cause) if self.cause else None
        }


class ValidationError(SteplineError):
    """验证错误（同步返回给调用方，从不入队）"""
    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        issues: list[dict[str, str]] | None = None,
        error_code: str = "VALIDATION_ERROR",
    ):
        self.issues = issues or []
        details: dict[str, Any] = {}
        if field:
            details.update({"field": field, "value": value})
        if self.issues:
            details["issues"] = self.issues
        super().__init__(message, error_code, details)


class InvalidCronExpressionError(ValidationError):
    """Cron 表达式无效"""
    def __init__(self, message: str, expression: str | None = None):
        super().__init__(
            message, "cron_expression", expression, error_code="INVALID_CRON_EXPRESSION"
        )


class InvalidTimezoneError(ValidationError):
    """时区无效"""
    def __init__(self, message: str, timezone: str | None = None):
        super().__init__(message, "timezone", timezone, error_code="INVALID_TIMEZONE")


class ConfigurationError(SteplineError):
    """配置错误（不可重试）"""
    def __init__(
        self,
        message: str,
        config_key: str | None = None,
        error_code: str = "CONFIG_ERROR",
    ):
        details = {"config_key": config_key} if config_key else {}
        super().__init__(message, error_code, details)


class CatchUpLimitExceededError(ConfigurationError):
    """追赶循环超过迭代上限"""
    def __init__(self, message: str, iterations: int | None = None):
        super().__init__(message, error_code="CATCH_UP_LIMIT_EXCEEDED")
        if iterations is not None:
            self.details["iterations"] = iterations


class TransientOperationError(SteplineError):
    """可恢复的步骤操作错误（超时、限流、服务端错误）"""
    def __init__(
        self, message: str, step_id: str | None = None, status_code: int | None = None
    ):
        details = {"step_id": step_id, "status_code": status_code} if step_id or status_code else {}
        super().__init__(message, "TRANSIENT_OPERATION_ERROR", details)


class StepOperationError(SteplineError):
    """不可重试的步骤操作错误"""
    def __init__(self, message: str, step_id: str | None = None):
        details = {"step_id": step_id} if step_id else {}
        super().__init__(message, "STEP_OPERATION_ERROR", details)


class InsufficientCreditsError(SteplineError):
    """额度不足"""
    def __init__(
        self, message: str, user_id: str | None = None, required: int | None = None
    ):
        details = {"user_id": user_id, "required": required} if user_id else {}
        super().__init__(message, "INSUFFICIENT_CREDITS", details)


class DuplicateDeliveryError(SteplineError):
    """重复投递的任务"""
    def __init__(self, message: str, run_id: str | None = None, status: str | None = None):
        details = {"run_id": run_id, "status": status} if run_id else {}
        super().__init__(message, "DUPLICATE_DELIVERY", details)


class ConcurrencyConflictError(SteplineError):
    """乐观并发更新冲突"""
    def __init__(self, message: str, resource: str | None = None, resource_id: str | None = None):
        details = {"resource": resource, "resource_id": resource_id} if resource else {}
        super().__init__(message, "CONCURRENCY_CONFLICT", details)


class NotFoundError(SteplineError):
    """记录不存在"""
    def __init__(self, message: str, resource: str | None = None, resource_id: str | None = None):
        details = {"resource": resource, "resource_id": resource_id} if resource else {}
        super().__init__(message, "NOT_FOUND", details)


class PlanLimitError(SteplineError):
    """订阅计划限制"""
    def __init__(self, message: str, limit_code: str, details: dict[str, Any] | None = None):
        self.limit_code = limit_code
        super().__init__(message, "PLAN_LIMIT_EXCEEDED", {"limit": limit_code, **(details or {})})


class DatabaseError(SteplineError):
    """数据库错误"""
    def __init__(
        self, message: str, operation: str | None = None, table: str | None = None
    ):
        details = {"operation": operation, "table": table} if operation else {}
        super().__init__(message, "DATABASE_ERROR", details)


class QueueError(SteplineError):
    """任务队列错误"""
    def __init__(self, message: str, queue_name: str | None = None, operation: str | None = None):
        details = {"queue_name": queue_name, "operation": operation} if queue_name else {}
        super().__init__(message, "QUEUE_ERROR", details)


# 错误码常量
ERROR_CODES = {
    "STEPLINE_ERROR": "未分类错误",
    "VALIDATION_ERROR": "验证错误",
    "INVALID_CRON_EXPRESSION": "Cron 表达式无效",
    "INVALID_TIMEZONE": "时区无效",
    "CONFIG_ERROR": "配置错误",
    "CATCH_UP_LIMIT_EXCEEDED": "追赶循环超过上限",
    "TRANSIENT_OPERATION_ERROR": "可重试的步骤错误",
    "STEP_OPERATION_ERROR": "步骤执行错误",
    "INSUFFICIENT_CREDITS": "额度不足",
    "DUPLICATE_DELIVERY": "重复投递",
    "CONCURRENCY_CONFLICT": "并发冲突",
    "NOT_FOUND": "记录不存在",
    "PLAN_LIMIT_EXCEEDED": "超出订阅计划限制",
    "DATABASE_ERROR": "数据库错误",
    "QUEUE_ERROR": "任务队列错误",
}
