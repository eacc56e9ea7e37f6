"""
测试辅助

内存运行队列、脚本化步骤操作，以及流水线定义与种子数据构造函数。
"""

from datetime import datetime
from typing import Any

from stepline.domain.billing.credits import CreditAccountant
from stepline.domain.billing.plans import get_model_pricing
from stepline.domain.pipeline.models import Pipeline, Plan, Run, RunStatus, User
from stepline.framework.shared.exceptions import QueueError
from stepline.framework.shared.secrets import SecretCipher
from stepline.workers.executor import StepExecutor
from stepline.workers.operations import (
    OperationRegistry,
    OperationResult,
    StepOperation,
    TransformOperation,
)
from stepline.workers.queue import RunQueue, run_job_id

LLM_MODEL = "gpt-4o-mini"


class FakeRunQueue(RunQueue):
    """内存运行队列"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.enqueued: list[str] = []
        self.outcomes: list[tuple[str, bool]] = []
        self.closed = False

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True

    async def enqueue_run(self, run_id: str) -> str:
        if self.fail:
            raise QueueError("Redis 不可用", "test-queue", "enqueue")
        self.enqueued.append(run_id)
        return run_job_id(run_id)

    async def record_outcome(self, job_id: str, success: bool) -> None:
        self.outcomes.append((job_id, success))

    async def health(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "queue_name": "test-queue",
            "queue_depth": len(self.enqueued),
            "worker_alive": True,
        }


class ScriptedOperation(StepOperation):
    """
    按步骤 ID 返回预设结果的 llm 操作

    script 中的每一项可以是 OperationResult、异常实例或异步可调用对象；
    用完后返回默认结果（1000 输入令牌、500 输出令牌）。
    """

    step_type = "llm"

    def __init__(self, script: dict[str, list[Any]] | None = None):
        self.script = {step_id: list(items) for step_id, items in (script or {}).items()}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.envs: list[dict[str, str]] = []

    async def execute(self, step, step_input: dict[str, Any], env=None) -> OperationResult:
        self.calls.append((step.id, step_input))
        self.envs.append(dict(env or {}))
        pending = self.script.get(step.id)
        item = pending.pop(0) if pending else None

        if item is None:
            return OperationResult(
                output=f"{step.id} 输出",
                tokens_in=1000,
                tokens_out=500,
                pricing=get_model_pricing(step.model),
            )
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item(step, step_input)
        return item

    def call_count(self, step_id: str) -> int:
        return sum(1 for called_id, _ in self.calls if called_id == step_id)


def llm_step(step_id: str, prompt: str | None = None, **overrides: Any) -> dict[str, Any]:
    step = {
        "id": step_id,
        "name": f"步骤 {step_id}",
        "type": "llm",
        "model": LLM_MODEL,
        "prompt": prompt or f"处理 {step_id}",
        "retry": {"max_attempts": 1, "backoff_ms": 0},
    }
    step.update(overrides)
    return step


def transform_step(step_id: str, prompt: str, **overrides: Any) -> dict[str, Any]:
    step = {"id": step_id, "name": f"步骤 {step_id}", "type": "transform", "prompt": prompt}
    step.update(overrides)
    return step


def definition_document(
    *steps: dict[str, Any],
    schema: dict[str, Any] | None = None,
    variables: dict[str, Any] | None = None,
    output_from: str | None = None,
    name: str = "测试流水线",
) -> dict[str, Any]:
    document: dict[str, Any] = {
        "name": name,
        "input": {"schema": schema or {}},
        "variables": variables or {},
        "steps": list(steps),
    }
    if output_from:
        document["output"] = {"from": output_from}
    return document


def build_executor(
    gateway,
    operation: StepOperation | None = None,
    cipher: SecretCipher | None = None,
) -> StepExecutor:
    operations = OperationRegistry([TransformOperation(), operation or ScriptedOperation()])
    return StepExecutor(gateway, CreditAccountant(gateway), operations, cipher)


async def seed_user(
    gateway,
    plan: Plan = Plan.PRO,
    credits: int = 1000,
    period_end: datetime | None = None,
    interval: str | None = None,
    subscription_status: str | None = None,
) -> User:
    return await gateway.create_user(
        User(
            email=f"{plan.value}@example.com",
            plan=plan.value,
            credits_remaining=credits,
            stripe_current_period_end=period_end,
            stripe_billing_interval=interval,
            stripe_subscription_status=subscription_status,
        )
    )


async def seed_pipeline(gateway, user: User, document: dict[str, Any]) -> Pipeline:
    pipeline, _ = await gateway.create_pipeline(
        Pipeline(user_id=user.id, name=document["name"]), document
    )
    return pipeline


async def seed_run(
    gateway,
    user: User,
    pipeline: Pipeline,
    input_data: dict[str, Any] | None = None,
    status: RunStatus = RunStatus.QUEUED,
) -> Run:
    return await gateway.create_run(
        Run(
            pipeline_id=pipeline.id,
            pipeline_version=pipeline.current_version,
            user_id=user.id,
            status=status.value,
            input_data=input_data or {},
        )
    )
