"""
运行服务

对外暴露的编排操作：流水线创建与发布、运行创建/入队/取消、计划管理、余额查询与健康检查。
校验错误同步返回给调用方（ValidationError），从不入队。
"""

from datetime import datetime, timezone
from typing import Any

import psutil
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from stepline.domain.billing.credits import CreditAccountant
from stepline.domain.billing.plans import (
    SUPPORTED_MODELS,
    check_pipeline_limits,
    get_plan_limits,
    is_unlimited,
    resolve_plan,
)
from stepline.domain.pipeline.cron import next_tick
from stepline.domain.pipeline.definition import LlmStep, PipelineDefinition
from stepline.domain.pipeline.input_schema import validate_input
from stepline.domain.pipeline.models import (
    Pipeline,
    PipelineVersion,
    Plan,
    Run,
    RunStatus,
    Schedule,
    StepExecution,
    TriggerType,
    User,
    utcnow,
)
from stepline.framework.shared.exceptions import (
    ConfigurationError,
    NotFoundError,
    PlanLimitError,
    QueueError,
    ValidationError,
)
from stepline.framework.shared.logging import get_logger
from stepline.framework.shared.secrets import SecretCipher

logger = get_logger(__name__)


class ScheduleInput(BaseModel):
    """计划创建参数"""

    name: str = Field(min_length=1)
    description: str | None = None
    cron_expression: str
    timezone: str = "UTC"
    input_data: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True


def _utc_day_start() -> datetime:
    return utcnow().replace(hour=0, minute=0, second=0, microsecond=0)


def _issues_from_pydantic(error: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in item["loc"]) or "definition", "message": item["msg"]}
        for item in error.errors()
    ]


def parse_definition(document: dict[str, Any] | PipelineDefinition) -> PipelineDefinition:
    """
    解析并校验流水线定义

    Raises:
        ValidationError: 定义无效或引用了不支持的模型
    """
    if isinstance(document, PipelineDefinition):
        definition = document
    else:
        try:
            definition = PipelineDefinition.model_validate(document)
        except PydanticValidationError as e:
            raise ValidationError("流水线定义无效", issues=_issues_from_pydantic(e)) from e

    issues = [
        {"field": f"steps.{step.id}.model", "message": f"不支持的模型: {step.model}"}
        for step in definition.steps
        if isinstance(step, LlmStep) and step.model not in SUPPORTED_MODELS
    ]
    if issues:
        raise ValidationError("流水线定义引用了不支持的模型", issues=issues)
    return definition


class RunService:
    """运行编排服务"""

    def __init__(
        self,
        gateway,
        queue,
        accountant: CreditAccountant,
        db_manager=None,
        cipher: SecretCipher | None = None,
    ):
        self.gateway = gateway
        self.queue = queue
        self.accountant = accountant
        self.db_manager = db_manager
        self.cipher = cipher

    # 用户
    async def create_user(
        self,
        email: str | None = None,
        plan: Plan | str = Plan.FREE,
        credits: int | None = None,
        **billing: Any,
    ) -> User:
        """创建用户（额度默认为计划额度）"""
        plan = resolve_plan(plan)
        allotment = get_plan_limits(plan).credits
        if credits is None:
            credits = 0 if is_unlimited(allotment) else allotment
        user = User(email=email, plan=plan.value, credits_remaining=credits, **billing)
        return await self.gateway.create_user(user)

    async def set_user_secret(self, user_id: str, name: str, value: str) -> None:
        """
        加密保存用户密钥（模板中以 env.<name> 引用）

        Raises:
            ConfigurationError: 未配置主密钥
            NotFoundError: 用户不存在
            ValidationError: 名称或值为空
        """
        if self.cipher is None:
            raise ConfigurationError(
                "未配置 SECRETS_ENCRYPTION_KEY，无法保存用户密钥", "SECRETS_ENCRYPTION_KEY"
            )
        name = name.strip()
        if not name or not value:
            raise ValidationError("密钥名称与值不能为空", "secret")
        await self._require_user(user_id)
        await self.gateway.set_user_secret(user_id, name, self.cipher.encrypt(value))

    async def delete_user_secret(self, user_id: str, name: str) -> bool:
        """删除用户密钥；不存在时返回 False"""
        return await self.gateway.delete_user_secret(user_id, name)

    async def list_user_secret_names(self, user_id: str) -> list[str]:
        """列出用户密钥名称（不返回值）"""
        return sorted(await self.gateway.get_user_secrets(user_id))

    async def _require_user(self, user_id: str) -> User:
        user = await self.accountant.roll_user_billing_cycle(user_id)
        return user

    async def _require_pipeline(self, user_id: str, pipeline_id: str) -> Pipeline:
        pipeline = await self.gateway.get_pipeline(pipeline_id)
        if pipeline is None or pipeline.user_id != user_id:
            raise NotFoundError(f"流水线不存在: {pipeline_id}", "pipeline", pipeline_id)
        return pipeline

    # 流水线
    async def create_pipeline(
        self, user_id: str, document: dict[str, Any] | PipelineDefinition
    ) -> tuple[Pipeline, PipelineVersion]:
        """
        创建流水线（第一个版本）

        Raises:
            NotFoundError: 用户不存在
            ValidationError: 定义无效
            PlanLimitError: 超出计划限制
        """
        user = await self._require_user(user_id)
        definition = parse_definition(document)

        pipeline_count = await self.gateway.count_user_pipelines(user_id)
        check_pipeline_limits(user.plan, pipeline_count + 1, len(definition.steps))

        pipeline = Pipeline(
            user_id=user_id, name=definition.name, description=definition.description
        )
        return await self.gateway.create_pipeline(pipeline, definition.to_document())

    async def publish_version(
        self, user_id: str, pipeline_id: str, document: dict[str, Any] | PipelineDefinition
    ) -> PipelineVersion:
        """发布新版本（已发布的版本从不修改）"""
        user = await self._require_user(user_id)
        await self._require_pipeline(user_id, pipeline_id)
        definition = parse_definition(document)
        check_pipeline_limits(user.plan, 0, len(definition.steps))

        version = await self.gateway.publish_version(pipeline_id, definition.to_document())
        logger.info("流水线版本已发布", pipeline_id=pipeline_id, version=version.version)
        return version

    # 运行
    async def create_run(
        self,
        user_id: str,
        pipeline_id: str,
        raw_input: dict[str, Any] | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> Run:
        """
        校验输入并创建 queued 运行（不入队）

        Raises:
            NotFoundError: 流水线不存在或不属于该用户
            ValidationError: 输入校验失败（携带问题列表）
            PlanLimitError: 超出计划限制
        """
        pipeline = await self._require_pipeline(user_id, pipeline_id)
        user = await self._require_user(user_id)

        if trigger_type is TriggerType.WEBHOOK and not get_plan_limits(user.plan).webhooks_enabled:
            raise PlanLimitError("当前计划未开放 Webhook 触发", "PLAN_WEBHOOKS_DISABLED")

        version = await self.gateway.get_version(pipeline.id, pipeline.current_version)
        if version is None:
            raise NotFoundError(
                f"流水线版本不存在: {pipeline.current_version}", "pipeline_version", pipeline.id
            )
        definition = PipelineDefinition.model_validate(version.definition)

        data = validate_input(definition.input_schema, raw_input).raise_for_issues()

        run = await self.gateway.create_run(
            Run(
                pipeline_id=pipeline.id,
                pipeline_version=version.version,
                user_id=user_id,
                trigger_type=trigger_type.value,
                status=RunStatus.QUEUED.value,
                input_data=data,
            ),
            runs_since=_utc_day_start(),
        )
        logger.info("运行已创建", run_id=run.id, pipeline_id=pipeline.id, trigger_type=trigger_type.value)
        return run

    async def enqueue_run(self, run_id: str) -> str:
        """
        投递运行；投递失败时运行被标记为 failed

        Raises:
            QueueError: 投递失败
        """
        try:
            return await self.queue.enqueue_run(run_id)
        except QueueError as e:
            await self.gateway.transition_run(
                run_id,
                [RunStatus.QUEUED],
                RunStatus.FAILED,
                error=f"入队失败: {e.message}",
                finished_at=utcnow(),
            )
            raise

    async def trigger_run(
        self,
        user_id: str,
        pipeline_id: str,
        raw_input: dict[str, Any] | None = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> Run:
        """创建并投递运行"""
        run = await self.create_run(user_id, pipeline_id, raw_input, trigger_type)
        await self.enqueue_run(run.id)
        return run

    async def cancel_run(self, run_id: str) -> Run:
        """
        取消运行

        queued 的运行直接取消；running 的运行设置取消请求，由执行器在下一个步骤边界处理；
        已终止的运行保持不变。

        Raises:
            NotFoundError: 运行不存在
        """
        run = await self.get_run(run_id)

        if run.status == RunStatus.QUEUED and await self.gateway.transition_run(
            run_id, [RunStatus.QUEUED], RunStatus.CANCELED, finished_at=utcnow()
        ):
            logger.info("排队中的运行已取消", run_id=run_id)
        elif await self.gateway.request_cancel(run_id):
            logger.info("已请求取消运行", run_id=run_id)

        return await self.get_run(run_id)

    async def get_run(self, run_id: str) -> Run:
        """获取运行"""
        run = await self.gateway.get_run(run_id)
        if run is None:
            raise NotFoundError(f"运行不存在: {run_id}", "run", run_id)
        return run

    async def get_run_steps(self, run_id: str) -> list[StepExecution]:
        """按顺序获取运行的步骤执行"""
        return await self.gateway.list_step_executions(run_id)

    # 计划
    async def create_schedule(
        self, user_id: str, pipeline_id: str, schedule_input: ScheduleInput | dict[str, Any]
    ) -> Schedule:
        """
        创建计划（cron 必须能解析出下一个触发点）

        Raises:
            NotFoundError: 流水线不存在或不属于该用户
            ValidationError: cron 表达式或时区无效
        """
        if isinstance(schedule_input, dict):
            try:
                schedule_input = ScheduleInput.model_validate(schedule_input)
            except PydanticValidationError as e:
                raise ValidationError("计划参数无效", issues=_issues_from_pydantic(e)) from e

        await self._require_pipeline(user_id, pipeline_id)
        next_run_at = next_tick(schedule_input.cron_expression, schedule_input.timezone)

        schedule = Schedule(
            pipeline_id=pipeline_id,
            name=schedule_input.name,
            description=schedule_input.description,
            cron_expression=schedule_input.cron_expression.strip(),
            timezone=schedule_input.timezone or "UTC",
            input_data=schedule_input.input_data,
            enabled=schedule_input.enabled,
            next_run_at=next_run_at,
        )
        return await self.gateway.create_schedule(schedule)

    async def set_schedule_enabled(self, schedule_id: str, enabled: bool) -> Schedule:
        """
        启用或停用计划

        重新启用时从当前时间计算下一个触发点，不回补停用期间错过的运行。
        """
        schedule = await self.gateway.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"计划不存在: {schedule_id}", "schedule", schedule_id)

        if not enabled:
            return await self.gateway.disable_schedule(schedule_id)

        next_run_at = next_tick(schedule.cron_expression, schedule.timezone)
        if schedule.next_run_at and schedule.next_run_at > next_run_at:
            next_run_at = schedule.next_run_at
        return await self.gateway.enable_schedule(schedule_id, next_run_at)

    # 余额与健康
    async def get_user_balance(self, user_id: str) -> dict[str, Any]:
        """读取余额（读取前懒滚动计费周期）"""
        user = await self.accountant.roll_user_billing_cycle(user_id)
        period_end = user.stripe_current_period_end
        return {
            "user_id": user.id,
            "plan": user.plan,
            "credits_remaining": user.credits_remaining,
            "unlimited": is_unlimited(get_plan_limits(user.plan).credits),
            "current_period_end": period_end.isoformat() if period_end else None,
            "runs_today": await self.gateway.count_user_runs_since(user.id, _utc_day_start()),
            "max_runs_per_day": get_plan_limits(user.plan).max_runs_per_day,
        }

    async def health(self) -> dict[str, Any]:
        """队列深度、工作进程存活、数据库连通性与进程内存"""
        queue_health = await self.queue.health()
        database_ok = await self.db_manager.ping() if self.db_manager else None
        memory = psutil.Process().memory_info()

        healthy = bool(queue_health.get("healthy")) and database_ok is not False
        return {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queue": queue_health,
            "database": {"healthy": database_ok},
            "process": {"pid": psutil.Process().pid, "memory_rss_mb": round(memory.rss / 1024 / 1024, 1)},
        }
