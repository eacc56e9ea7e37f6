"""
Cron 引擎

- validate_cron: 先检查五字段格式，再检查时区，最后交给 croniter 解析
- next_tick: 给定时间之后的第一个触发点（UTC 感知时间）
- advance_until_future: 有界追赶，错过的多个触发点只推进到未来的第一个

时区计算由 croniter 在本地时区完成，夏令时切换由 zoneinfo 处理。
"""

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from stepline.framework.shared.exceptions import (
    CatchUpLimitExceededError,
    InvalidCronExpressionError,
    InvalidTimezoneError,
)

DEFAULT_CATCH_UP_MAX_ITERATIONS = 10_000

_FIVE_FIELDS = re.compile(r"^(\S+\s+){4}\S+$")


def has_five_fields(expression: str) -> bool:
    """是否恰好五个空白分隔字段"""
    return bool(_FIVE_FIELDS.match(expression.strip()))


def resolve_timezone(name: str) -> ZoneInfo:
    """
    解析 IANA 时区

    Raises:
        InvalidTimezoneError: 时区无法解析或无法用于格式化
    """
    try:
        zone = ZoneInfo(name)
        # 格式化探测，确认时区数据可用
        datetime.now(zone).strftime("%Y-%m-%d %H:%M %Z")
    except (ZoneInfoNotFoundError, ValueError, TypeError, OSError) as e:
        raise InvalidTimezoneError(f"无效的时区: {name}", name) from e
    return zone


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_cron(expression: str, timezone_name: str = "UTC") -> None:
    """
    校验 cron 表达式和时区

    Raises:
        InvalidCronExpressionError: 字段数不为 5 或无法解析
        InvalidTimezoneError: 时区无效
    """
    if not has_five_fields(expression):
        raise InvalidCronExpressionError("Cron 表达式必须恰好包含 5 个字段", expression)

    zone = resolve_timezone(timezone_name)

    try:
        croniter(expression.strip(), datetime.now(zone)).get_next(datetime)
    except (CroniterError, ValueError, KeyError) as e:
        raise InvalidCronExpressionError(f"无效的 Cron 表达式: {expression}", expression) from e


def next_tick(
    expression: str, timezone_name: str = "UTC", from_time: datetime | None = None
) -> datetime:
    """
    计算严格晚于 from_time 的下一个触发点

    Args:
        expression: 五字段 cron 表达式
        timezone_name: IANA 时区名
        from_time: 起始时间（默认当前时间，无时区视为 UTC）

    Returns:
        datetime: UTC 感知时间
    """
    validate_cron(expression, timezone_name)
    zone = ZoneInfo(timezone_name)

    start = _as_utc(from_time or datetime.now(timezone.utc)).astimezone(zone)
    tick = croniter(expression.strip(), start).get_next(datetime)
    return _as_utc(tick)


def advance_until_future(
    expression: str,
    timezone_name: str,
    basis: datetime,
    now: datetime,
    max_iterations: int = DEFAULT_CATCH_UP_MAX_ITERATIONS,
) -> datetime:
    """
    从 basis 开始逐个推进触发点，直到严格晚于 now

    Raises:
        CatchUpLimitExceededError: 超过 max_iterations 仍未到达未来
    """
    validate_cron(expression, timezone_name)
    zone = ZoneInfo(timezone_name)
    now = _as_utc(now)

    iterator = croniter(expression.strip(), _as_utc(basis).astimezone(zone))
    for _ in range(max_iterations):
        candidate = _as_utc(iterator.get_next(datetime))
        if candidate > now:
            return candidate

    raise CatchUpLimitExceededError(
        f"追赶超过 {max_iterations} 次迭代仍未到达未来: {expression}", max_iterations
    )
