"""
调度器

每次 tick：
1. 执行计费周期对账
2. 扫描已到期的启用计划（有界批次）
3. 对每个计划：校验 cron、计算追赶后的 next_run_at、计划限制、输入校验，
   然后在同一事务中条件推进 next_run_at、检查当日运行上限并创建 queued 运行，最后入队

next_run_at 以读取到的值为条件推进，多个调度器并发时只有一个能认领；
错过的多个触发点只产生一次运行。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError

from stepline.domain.billing.credits import CreditAccountant
from stepline.domain.billing.plans import get_plan_limits
from stepline.domain.pipeline.cron import (
    DEFAULT_CATCH_UP_MAX_ITERATIONS,
    advance_until_future,
    next_tick,
    validate_cron,
)
from stepline.domain.pipeline.definition import PipelineDefinition
from stepline.domain.pipeline.input_schema import validate_input
from stepline.domain.pipeline.models import Run, RunStatus, Schedule, TriggerType, utcnow
from stepline.framework.shared.error_handler import with_conflict_retry
from stepline.framework.shared.exceptions import (
    CatchUpLimitExceededError,
    QueueError,
    SteplineError,
    ValidationError,
)
from stepline.framework.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TickReport:
    """单次 tick 的处理结果"""

    scanned: int = 0
    triggered: list[str] = field(default_factory=list)
    skipped: int = 0
    disabled: int = 0
    enqueue_failed: int = 0
    errors: int = 0
    billing_rolled: int = 0

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "triggered": list(self.triggered),
            "skipped": self.skipped,
            "disabled": self.disabled,
            "enqueue_failed": self.enqueue_failed,
            "errors": self.errors,
            "billing_rolled": self.billing_rolled,
        }


def utc_day_start(now: datetime) -> datetime:
    """UTC 日的开始时刻"""
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class Scheduler:
    """定时计划调度器"""

    def __init__(
        self,
        gateway,
        queue,
        accountant: CreditAccountant,
        batch_size: int = 50,
        max_iterations: int = DEFAULT_CATCH_UP_MAX_ITERATIONS,
        conflict_retry_attempts: int = 3,
    ):
        self.gateway = gateway
        self.queue = queue
        self.accountant = accountant
        self.batch_size = batch_size
        self.max_iterations = max_iterations
        self.conflict_retry_attempts = conflict_retry_attempts

    @classmethod
    def from_settings(cls, gateway, queue, accountant, settings) -> "Scheduler":
        return cls(
            gateway,
            queue,
            accountant,
            batch_size=settings.SCHEDULER_BATCH_SIZE,
            max_iterations=settings.CATCH_UP_MAX_ITERATIONS,
            conflict_retry_attempts=settings.CONFLICT_RETRY_ATTEMPTS,
        )

    async def tick(self, now: datetime | None = None) -> TickReport:
        """
        执行一次调度扫描

        Args:
            now: 当前时间（默认 UTC 当前时间）

        Returns:
            TickReport: 处理结果
        """
        now = now or utcnow()
        report = TickReport()

        report.billing_rolled = await self.accountant.reconcile_billing_cycles(now)

        schedules = await self.gateway.list_due_schedules(now, self.batch_size)
        report.scanned = len(schedules)

        for schedule in schedules:
            try:
                await with_conflict_retry(
                    lambda schedule_id=schedule.id: self._process(schedule_id, now, report),
                    self.conflict_retry_attempts,
                )
            except SteplineError as e:
                report.errors += 1
                logger.error(
                    "计划处理失败",
                    schedule_id=schedule.id,
                    error_code=e.error_code,
                    error=e.message,
                )

        if report.scanned:
            logger.info("调度扫描完成", **report.to_dict())
        return report

    async def _process(self, schedule_id: str, now: datetime, report: TickReport) -> None:
        # 每次尝试都重新读取计划
        schedule = await self.gateway.get_schedule(schedule_id)
        if (
            schedule is None
            or not schedule.enabled
            or schedule.next_run_at is None
            or schedule.next_run_at > now
        ):
            return

        try:
            validate_cron(schedule.cron_expression, schedule.timezone)
        except ValidationError as e:
            await self.gateway.disable_schedule(schedule.id, e.message)
            report.disabled += 1
            logger.error(
                "计划 cron 无效，已停用",
                schedule_id=schedule.id,
                cron_expression=schedule.cron_expression,
                timezone=schedule.timezone,
                error=e.message,
            )
            return

        basis = schedule.next_run_at
        new_next_run_at = self._next_run_at(schedule, basis, now)

        run = await self._build_run(schedule, now)
        created = await self.gateway.advance_schedule(
            schedule.id, basis, new_next_run_at, run, runs_since=utc_day_start(now)
        )
        if created is None:
            report.skipped += 1
            return

        try:
            await self.queue.enqueue_run(created.id)
        except QueueError as e:
            await self.gateway.transition_run(
                created.id,
                [RunStatus.QUEUED],
                RunStatus.FAILED,
                error=f"入队失败: {e.message}",
                finished_at=utcnow(),
            )
            report.enqueue_failed += 1
            logger.error("计划运行入队失败", schedule_id=schedule.id, run_id=created.id, error=e.message)
            return

        report.triggered.append(created.id)
        logger.info(
            "计划已触发",
            schedule_id=schedule.id,
            run_id=created.id,
            next_run_at=new_next_run_at.isoformat(),
        )

    def _next_run_at(self, schedule: Schedule, basis: datetime, now: datetime) -> datetime:
        try:
            return advance_until_future(
                schedule.cron_expression, schedule.timezone, basis, now, self.max_iterations
            )
        except CatchUpLimitExceededError as e:
            # 积压过多时直接跳到 now 之后的下一个触发点
            logger.error("追赶超过迭代上限，从当前时间重新计算", schedule_id=schedule.id, error=e.message)
            return next_tick(schedule.cron_expression, schedule.timezone, now)

    async def _build_run(self, schedule: Schedule, now: datetime) -> Run | None:
        """构建计划运行；不满足条件时返回 None（仅推进计划）"""
        pipeline = await self.gateway.get_pipeline(schedule.pipeline_id)
        if pipeline is None:
            logger.warning("计划所属流水线不存在", schedule_id=schedule.id)
            return None

        user = await self.gateway.get_user(pipeline.user_id)
        if user is None:
            logger.warning("计划所属用户不存在", schedule_id=schedule.id, user_id=pipeline.user_id)
            return None

        if not get_plan_limits(user.plan).cron_enabled:
            logger.info("当前计划未开放定时运行，跳过", schedule_id=schedule.id, plan=user.plan)
            return None

        version = await self.gateway.get_latest_version(pipeline.id)
        if version is None:
            logger.warning("流水线没有已发布版本", schedule_id=schedule.id)
            return None
        try:
            definition = PipelineDefinition.model_validate(version.definition)
        except PydanticValidationError as e:
            logger.error("流水线定义无效", schedule_id=schedule.id, error=str(e))
            return None

        result = validate_input(definition.input_schema, schedule.input_data)
        if not result.valid:
            logger.warning("计划输入校验失败，跳过", schedule_id=schedule.id, issues=result.issues)
            return None

        return Run(
            pipeline_id=pipeline.id,
            pipeline_version=version.version,
            user_id=user.id,
            schedule_id=schedule.id,
            trigger_type=TriggerType.CRON.value,
            status=RunStatus.QUEUED.value,
            input_data=result.data,
        )
