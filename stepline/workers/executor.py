"""
步骤执行器

执行一次运行的全部步骤：
1. 只有 queued 的运行会被执行（条件迁移到 running），其余投递视为重复并丢弃
2. 按声明顺序为每个步骤创建 pending 记录，并解密运行所属用户的密钥（模板中的 env）
3. 每步执行前检查取消请求、余额与所需密钥；失败的步骤使运行失败，其后步骤全部 skipped
4. 步骤成功后扣费、标记成功与累加运行额度在同一事务中完成
5. 认领之后出现的任何未预期错误都会使运行失败，不会停留在 running
"""

import asyncio
import time
from dataclasses import dataclass, field
from itertools import chain
from typing import Any

from jinja2 import TemplateError
from pydantic import ValidationError as PydanticValidationError

from stepline.domain.billing.credits import CreditAccountant
from stepline.domain.pipeline.definition import (
    BaseStep,
    PipelineDefinition,
    build_context,
    render_template,
)
from stepline.domain.pipeline.models import (
    Run,
    RunStatus,
    StepExecution,
    StepStatus,
    utcnow,
)
from stepline.framework.shared.error_handler import step_retrying
from stepline.framework.shared.exceptions import (
    ConfigurationError,
    DuplicateDeliveryError,
    InsufficientCreditsError,
    NotFoundError,
    SteplineError,
    StepOperationError,
    TransientOperationError,
)
from stepline.framework.shared.logging import bind_context, clear_context, get_logger
from stepline.framework.shared.secrets import SecretCipher, redact_secrets
from stepline.workers.operations import PROVIDER_SECRET_NAMES, OperationRegistry, OperationResult

logger = get_logger(__name__)


@dataclass
class ExecutionOutcome:
    """运行执行结果"""

    run_id: str
    status: RunStatus | None
    credits_consumed: int = 0
    error: str | None = None
    discarded: bool = False
    steps: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value if self.status else None,
            "credits_consumed": self.credits_consumed,
            "error": self.error,
            "discarded": self.discarded,
            "steps": self.steps,
        }


class RunCancellationToken:
    """运行取消令牌（在步骤边界轮询）"""

    def __init__(self, gateway, run_id: str):
        self.gateway = gateway
        self.run_id = run_id
        self._cancelled = False

    async def is_cancelled(self) -> bool:
        if not self._cancelled:
            self._cancelled = await self.gateway.is_cancel_requested(self.run_id)
        return self._cancelled


class StepFailure(Exception):
    """步骤终止性失败（内部使用）"""

    def __init__(self, error: Exception, secret_values: list[str] | None = None):
        self.error = error
        message = error.message if isinstance(error, SteplineError) else str(error)
        super().__init__(redact_secrets(message or type(error).__name__, secret_values or []))


def _error_message(error: BaseException) -> str:
    message = error.message if isinstance(error, SteplineError) else str(error)
    return message or type(error).__name__


class StepExecutor:
    """步骤执行器"""

    def __init__(
        self,
        gateway,
        accountant: CreditAccountant,
        operations: OperationRegistry,
        cipher: SecretCipher | None = None,
    ):
        self.gateway = gateway
        self.accountant = accountant
        self.operations = operations
        self.cipher = cipher

    async def execute(self, run_id: str) -> ExecutionOutcome:
        """
        执行运行

        重复投递与不存在的运行只记录日志并丢弃，不产生任何步骤记录或扣费。

        Args:
            run_id: 运行 ID

        Returns:
            ExecutionOutcome: 执行结果
        """
        bind_context(run_id=run_id)
        try:
            return await self._execute(run_id)
        except DuplicateDeliveryError as e:
            logger.info("重复投递，已丢弃", status=e.details.get("status"))
            return ExecutionOutcome(run_id, None, error=e.message, discarded=True)
        except NotFoundError as e:
            logger.warning("运行不存在，已丢弃", error=e.message)
            return ExecutionOutcome(run_id, None, error=e.message, discarded=True)
        finally:
            clear_context()

    async def _execute(self, run_id: str) -> ExecutionOutcome:
        run = await self.gateway.get_run(run_id)
        if run is None:
            raise NotFoundError(f"运行不存在: {run_id}", "run", run_id)
        if run.status != RunStatus.QUEUED:
            raise DuplicateDeliveryError(f"运行状态为 {run.status}，跳过执行", run_id, run.status)

        if not await self.gateway.transition_run(
            run_id, [RunStatus.QUEUED], RunStatus.RUNNING, started_at=utcnow()
        ):
            raise DuplicateDeliveryError("运行已被其他工作进程认领", run_id, "running")

        logger.info(
            "运行开始",
            pipeline_id=run.pipeline_id,
            pipeline_version=run.pipeline_version,
            trigger_type=run.trigger_type,
        )

        # 认领之后运行必须到达终态
        try:
            return await self._run_claimed(run)
        except asyncio.CancelledError:
            logger.warning("运行被中断")
            await asyncio.shield(self._abort_run(run, "运行被中断（工作进程取消或任务超时）"))
            raise
        except Exception as e:
            logger.exception("运行出现未预期错误", error_type=type(e).__name__)
            return await self._abort_run(run, f"运行执行失败: {_error_message(e)}")

    async def _run_claimed(self, run: Run) -> ExecutionOutcome:
        run_id = run.id
        definition = await self._load_definition(run)
        if definition is None:
            return await self._fail_run(run, "流水线定义不存在或无效", {})

        executions = await self.gateway.ensure_step_executions(
            run_id, [step.id for step in definition.steps]
        )
        by_step = {execution.step_id: execution for execution in executions}

        try:
            env = await self._resolve_secrets(run, definition)
        except ConfigurationError as e:
            await self.gateway.skip_remaining_steps(run_id, 0)
            return await self._fail_run(
                run, e.message, {s.id: StepStatus.SKIPPED.value for s in definition.steps}
            )

        token = RunCancellationToken(self.gateway, run_id)
        step_outputs: dict[str, Any] = {}
        step_statuses: dict[str, str] = {}
        credits_consumed = 0

        for index, step in enumerate(definition.steps):
            execution = by_step[step.id]

            if await token.is_cancelled():
                await self.gateway.skip_remaining_steps(run_id, index)
                await self.gateway.transition_run(
                    run_id, [RunStatus.RUNNING], RunStatus.CANCELED, finished_at=utcnow()
                )
                logger.info("运行已取消", at_step=step.id)
                step_statuses.update({s.id: StepStatus.SKIPPED.value for s in definition.steps[index:]})
                return ExecutionOutcome(
                    run_id, RunStatus.CANCELED, credits_consumed, steps=step_statuses
                )

            try:
                output, cost = await self._run_step(
                    run, definition, step, execution, step_outputs, env
                )
            except StepFailure as failure:
                await self.gateway.skip_remaining_steps(run_id, index + 1)
                step_statuses[step.id] = StepStatus.FAILED.value
                step_statuses.update(
                    {s.id: StepStatus.SKIPPED.value for s in definition.steps[index + 1:]}
                )
                outcome = await self._fail_run(
                    run, f'步骤 "{step.id}" 失败: {failure}', step_statuses
                )
                outcome.credits_consumed = credits_consumed
                return outcome

            step_outputs[step.id] = output
            step_statuses[step.id] = StepStatus.SUCCEEDED.value
            credits_consumed += cost

        output_data = step_outputs.get(definition.output_step_id)
        await self.gateway.transition_run(
            run_id,
            [RunStatus.RUNNING],
            RunStatus.SUCCEEDED,
            output_data=output_data,
            finished_at=utcnow(),
        )
        logger.info("运行成功", credits_consumed=credits_consumed)
        return ExecutionOutcome(run_id, RunStatus.SUCCEEDED, credits_consumed, steps=step_statuses)

    async def _load_definition(self, run: Run) -> PipelineDefinition | None:
        version = await self.gateway.get_version(run.pipeline_id, run.pipeline_version)
        if version is None:
            logger.error("流水线版本不存在", pipeline_version=run.pipeline_version)
            return None
        try:
            return PipelineDefinition.model_validate(version.definition)
        except PydanticValidationError as e:
            logger.error("流水线定义无效", error=str(e))
            return None

    async def _resolve_secrets(self, run: Run, definition: PipelineDefinition) -> dict[str, str]:
        """
        解密步骤模板引用的密钥与模型提供方密钥

        Raises:
            ConfigurationError: 存在密钥但未配置主密钥，或密文无法解密
        """
        names = set(chain.from_iterable(PROVIDER_SECRET_NAMES.values()))
        for step in definition.steps:
            names |= step.secret_names()

        encrypted = await self.gateway.get_user_secrets(run.user_id, names)
        if not encrypted:
            return {}
        if self.cipher is None:
            raise ConfigurationError(
                "未配置 SECRETS_ENCRYPTION_KEY，无法解密用户密钥", "SECRETS_ENCRYPTION_KEY"
            )
        return {name: self.cipher.decrypt(value, name) for name, value in encrypted.items()}

    async def _fail_run(
        self, run: Run, error: str, step_statuses: dict[str, str]
    ) -> ExecutionOutcome:
        await self.gateway.transition_run(
            run.id, [RunStatus.RUNNING], RunStatus.FAILED, error=error, finished_at=utcnow()
        )
        logger.warning("运行失败", error=error)
        return ExecutionOutcome(run.id, RunStatus.FAILED, error=error, steps=step_statuses)

    async def _abort_run(self, run: Run, error: str) -> ExecutionOutcome:
        """未预期错误后尽力把运行与未完成的步骤推进到终态"""
        try:
            await self.gateway.abort_unfinished_steps(run.id, error)
            outcome = await self._fail_run(run, error, {})
            steps = await self.gateway.list_step_executions(run.id)
        except Exception:
            logger.exception("无法将运行标记为失败", error=error)
            return ExecutionOutcome(run.id, RunStatus.FAILED, error=error)

        outcome.steps = {row.step_id: row.status for row in steps}
        outcome.credits_consumed = sum(
            row.cost_credits for row in steps if row.status == StepStatus.SUCCEEDED.value
        )
        return outcome

    @staticmethod
    def _render_input(step: BaseStep, context: dict[str, Any]) -> dict[str, Any]:
        step_input: dict[str, Any] = {}
        for name in ("prompt", "system_prompt"):
            template = getattr(step, name, None)
            if template:
                try:
                    step_input[name] = render_template(template, context)
                except TemplateError as e:
                    raise StepOperationError(f"模板渲染失败: {e}", step.id) from e
        return step_input

    async def _run_step(
        self,
        run: Run,
        definition: PipelineDefinition,
        step: BaseStep,
        execution: StepExecution,
        step_outputs: dict[str, Any],
        env: dict[str, str],
    ) -> tuple[Any, int]:
        """
        执行单个步骤

        Returns:
            tuple[Any, int]: (输出, 扣除的额度)

        Raises:
            StepFailure: 步骤失败（已持久化为 failed）
        """
        started_at = utcnow()
        started = time.monotonic()
        attempts = 0
        secret_values = list(env.values())

        async def _mark_failed(error: Exception, **fields: Any) -> StepFailure:
            failure = StepFailure(error, secret_values)
            await self.gateway.update_step_execution(
                execution.id,
                status=StepStatus.FAILED.value,
                error=str(failure),
                attempt_count=attempts,
                finished_at=utcnow(),
                duration_ms=int((time.monotonic() - started) * 1000),
                **fields,
            )
            logger.warning(
                "步骤失败",
                step_id=step.id,
                attempts=attempts,
                error_type=type(error).__name__,
                error=str(failure),
            )
            return failure

        try:
            user = await self.accountant.roll_user_billing_cycle(run.user_id)
            self.accountant.ensure_can_dispatch(user, step.min_charge)
            missing = sorted(step.secret_names() - env.keys())
            if missing:
                raise ConfigurationError(f"缺少密钥: {', '.join(missing)}", "env")
            step_input = self._render_input(
                step, build_context(definition, run.input_data, step_outputs, env)
            )
            operation = self.operations.get(step.type)
        except SteplineError as e:
            raise await _mark_failed(e) from e

        await self.gateway.update_step_execution(
            execution.id,
            status=StepStatus.RUNNING.value,
            input_data=redact_secrets(step_input, secret_values),
            started_at=started_at,
            error=None,
        )
        logger.debug("步骤开始", step_id=step.id, step_type=step.type)

        try:
            async for attempt in step_retrying(step.retry.max_attempts, step.retry.backoff_ms):
                with attempt:
                    attempts += 1
                    await self.gateway.update_step_execution(execution.id, attempt_count=attempts)
                    result = await self._attempt(operation, step, step_input, env)
        except (TransientOperationError, ConfigurationError, StepOperationError) as e:
            raise await _mark_failed(e) from e
        except Exception as e:
            logger.exception("步骤出现未预期错误", step_id=step.id)
            raise await _mark_failed(e) from e

        cost = 0
        if result.pricing:
            cost = self.accountant.cost_for(result.tokens_in, result.tokens_out, result.pricing)
        usage = {"tokens_in": result.tokens_in, "tokens_out": result.tokens_out}

        try:
            await self.accountant.settle_step(
                run.user_id,
                run.id,
                execution.id,
                cost,
                output_data=result.output,
                attempt_count=attempts,
                finished_at=utcnow(),
                duration_ms=int((time.monotonic() - started) * 1000),
                **usage,
            )
        except (InsufficientCreditsError, NotFoundError) as e:
            # 并发运行已耗尽余额
            raise await _mark_failed(e, **usage) from e

        logger.info("步骤成功", step_id=step.id, attempts=attempts, cost_credits=cost, **usage)
        return result.output, cost

    @staticmethod
    async def _attempt(
        operation, step: BaseStep, step_input: dict[str, Any], env: dict[str, str]
    ) -> OperationResult:
        try:
            return await asyncio.wait_for(
                operation.execute(step, step_input, env), timeout=step.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise TransientOperationError(
                f"步骤执行超时（{step.timeout_seconds} 秒）", step.id
            ) from e
