"""
步骤执行器单元测试
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from stepline.domain.pipeline.models import Plan, RunStatus
from stepline.framework.shared.exceptions import (
    DatabaseError,
    StepOperationError,
    TransientOperationError,
)
from stepline.framework.shared.secrets import REDACTED, SecretCipher
from stepline.workers.operations import OperationResult
from tests.helpers import (
    ScriptedOperation,
    build_executor,
    definition_document,
    llm_step,
    seed_pipeline,
    seed_run,
    seed_user,
    transform_step,
)


async def statuses(gateway, run_id: str) -> list[str]:
    return [row.status for row in await gateway.list_step_executions(run_id)]


class TestStepExecutorSuccess:
    """正常执行测试"""

    @pytest.mark.asyncio
    async def test_runs_steps_in_order(self, gateway):
        """步骤按顺序执行，后续步骤可引用前面的输出"""
        user = await seed_user(gateway, credits=10)
        document = definition_document(
            llm_step("draft", "写一段关于 {{ input.topic }} 的文字"),
            transform_step("wrap", "结果：{{ steps.draft.output }}"),
            schema={"topic": {"type": "string", "required": True}},
        )
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline, {"topic": "猫"})
        operation = ScriptedOperation()

        outcome = await build_executor(gateway, operation).execute(run.id)

        stored = await gateway.get_run(run.id)
        assert outcome.status is RunStatus.SUCCEEDED
        assert stored.status == "succeeded"
        assert stored.output_data == "结果：draft 输出"
        assert stored.started_at is not None and stored.finished_at is not None
        assert stored.credits_consumed == 1
        assert operation.calls[0][1]["prompt"] == "写一段关于 猫 的文字"
        assert await statuses(gateway, run.id) == ["succeeded", "succeeded"]
        assert (await gateway.get_user(user.id)).credits_remaining == 9

    @pytest.mark.asyncio
    async def test_step_usage_persisted(self, gateway):
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)

        await build_executor(gateway).execute(run.id)

        row = (await gateway.list_step_executions(run.id))[0]
        assert row.tokens_in == 1000
        assert row.tokens_out == 500
        assert row.cost_credits == 1
        assert row.attempt_count == 1
        assert row.input_data == {"prompt": "处理 a"}
        assert row.output_data == "a 输出"
        assert row.duration_ms is not None

    @pytest.mark.asyncio
    async def test_output_from_named_step(self, gateway):
        user = await seed_user(gateway, credits=10)
        document = definition_document(
            transform_step("a", "first"), transform_step("b", "second"), output_from="a"
        )
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)

        await build_executor(gateway).execute(run.id)
        assert (await gateway.get_run(run.id)).output_data == "first"

    @pytest.mark.asyncio
    async def test_json_output_available_to_later_steps(self, gateway):
        user = await seed_user(gateway, credits=10)
        document = definition_document(
            transform_step("data", '{"title": "标题"}', output_format="json"),
            transform_step("use", "{{ steps.data.output.title }}"),
        )
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)

        await build_executor(gateway).execute(run.id)
        assert (await gateway.get_run(run.id)).output_data == "标题"

    @pytest.mark.asyncio
    async def test_transform_steps_cost_nothing(self, gateway):
        user = await seed_user(gateway, Plan.FREE, credits=0)
        pipeline = await seed_pipeline(gateway, user, definition_document(transform_step("a", "x")))
        run = await seed_run(gateway, user, pipeline)

        outcome = await build_executor(gateway).execute(run.id)
        assert outcome.success
        assert outcome.credits_consumed == 0

    @pytest.mark.asyncio
    async def test_enterprise_runs_without_balance(self, gateway):
        user = await seed_user(gateway, Plan.ENTERPRISE, credits=0)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)

        outcome = await build_executor(gateway).execute(run.id)

        assert outcome.success
        assert (await gateway.get_run(run.id)).credits_consumed == 1
        assert (await gateway.get_user(user.id)).credits_remaining == 0


class TestStepExecutorFailures:
    """失败与重试测试"""

    @pytest.mark.asyncio
    async def test_third_of_five_steps_fails(self, gateway):
        """第三步重试耗尽：前两步成功并计费，第三步失败，其后跳过"""
        user = await seed_user(gateway, credits=100)
        document = definition_document(
            llm_step("s1"),
            llm_step("s2"),
            llm_step("s3", retry={"max_attempts": 2, "backoff_ms": 0}),
            llm_step("s4"),
            llm_step("s5"),
        )
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation({
            "s3": [TransientOperationError("第一次超时"), TransientOperationError("第二次超时")],
        })

        outcome = await build_executor(gateway, operation).execute(run.id)

        stored = await gateway.get_run(run.id)
        rows = await gateway.list_step_executions(run.id)
        assert outcome.status is RunStatus.FAILED
        assert stored.status == "failed"
        assert [row.status for row in rows] == ["succeeded", "succeeded", "failed", "skipped", "skipped"]
        assert stored.credits_consumed == rows[0].cost_credits + rows[1].cost_credits == 2
        assert rows[2].attempt_count == 2
        assert stored.error == '步骤 "s3" 失败: 第二次超时'
        assert operation.call_count("s4") == 0
        assert (await gateway.get_user(user.id)).credits_remaining == 98

    @pytest.mark.asyncio
    async def test_transient_error_retried_then_succeeds(self, gateway):
        user = await seed_user(gateway, credits=10)
        document = definition_document(llm_step("a", retry={"max_attempts": 3, "backoff_ms": 0}))
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation({"a": [TransientOperationError("限流")]})

        outcome = await build_executor(gateway, operation).execute(run.id)

        row = (await gateway.list_step_executions(run.id))[0]
        assert outcome.success
        assert row.attempt_count == 2
        assert row.error is None
        assert (await gateway.get_run(run.id)).error is None

    @pytest.mark.asyncio
    async def test_non_retryable_error_not_retried(self, gateway):
        user = await seed_user(gateway, credits=10)
        document = definition_document(llm_step("a", retry={"max_attempts": 3, "backoff_ms": 0}))
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation({"a": [StepOperationError("请求被拒绝")]})

        await build_executor(gateway, operation).execute(run.id)

        assert operation.call_count("a") == 1
        assert (await gateway.get_run(run.id)).error == '步骤 "a" 失败: 请求被拒绝'

    @pytest.mark.asyncio
    async def test_configuration_error_not_retried(self, gateway):
        """不支持的模型属于配置错误"""
        user = await seed_user(gateway, credits=10)
        document = definition_document(
            llm_step("a", model="unknown-model", retry={"max_attempts": 3, "backoff_ms": 0})
        )
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation()

        outcome = await build_executor(gateway, operation).execute(run.id)

        assert outcome.status is RunStatus.FAILED
        assert operation.call_count("a") == 1
        assert "unknown-model" in (await gateway.get_run(run.id)).error

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, gateway):
        """超时按可重试错误处理，耗尽后步骤失败"""
        user = await seed_user(gateway, credits=10)
        document = definition_document(llm_step("a", timeout_seconds=1))
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)

        async def slow(step, step_input):
            await asyncio.sleep(5)
            return OperationResult(output="late")

        operation = ScriptedOperation({"a": [slow]})
        outcome = await build_executor(gateway, operation).execute(run.id)

        assert outcome.status is RunStatus.FAILED
        assert "超时" in (await gateway.get_run(run.id)).error
        assert (await gateway.get_user(user.id)).credits_remaining == 10

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_step(self, gateway):
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a"), llm_step("b")))
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation({"a": [RuntimeError("崩溃")]})

        await build_executor(gateway, operation).execute(run.id)

        assert await statuses(gateway, run.id) == ["failed", "skipped"]

    @pytest.mark.asyncio
    async def test_missing_definition_fails_run(self, gateway):
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)
        await gateway.db_manager.update(type(run), run.id, {"pipeline_version": 9})

        outcome = await build_executor(gateway).execute(run.id)

        assert outcome.status is RunStatus.FAILED
        assert (await gateway.get_run(run.id)).error == "流水线定义不存在或无效"
        assert await gateway.list_step_executions(run.id) == []


class TestStepExecutorCredits:
    """额度测试"""

    @pytest.mark.asyncio
    async def test_insufficient_credits_before_dispatch(self, gateway):
        """余额不足时步骤不执行"""
        user = await seed_user(gateway, Plan.FREE, credits=0)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a"), llm_step("b")))
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation()

        outcome = await build_executor(gateway, operation).execute(run.id)

        stored = await gateway.get_run(run.id)
        assert outcome.status is RunStatus.FAILED
        assert operation.calls == []
        assert "额度不足" in stored.error
        assert await statuses(gateway, run.id) == ["failed", "skipped"]

    @pytest.mark.asyncio
    async def test_credits_exhausted_mid_run(self, gateway):
        """多步运行中途耗尽额度"""
        user = await seed_user(gateway, Plan.FREE, credits=1)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a"), llm_step("b")))
        run = await seed_run(gateway, user, pipeline)

        await build_executor(gateway).execute(run.id)

        stored = await gateway.get_run(run.id)
        assert await statuses(gateway, run.id) == ["succeeded", "failed"]
        assert stored.credits_consumed == 1
        assert (await gateway.get_user(user.id)).credits_remaining == 0

    @pytest.mark.asyncio
    async def test_concurrent_runs_never_overdraw(self, gateway):
        """同一用户的两个并发运行：一个成功，一个因额度不足失败"""
        user = await seed_user(gateway, Plan.FREE, credits=1)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        first = await seed_run(gateway, user, pipeline)
        second = await seed_run(gateway, user, pipeline)
        executor = build_executor(gateway)

        outcomes = await asyncio.gather(executor.execute(first.id), executor.execute(second.id))

        assert sorted(outcome.status.value for outcome in outcomes) == ["failed", "succeeded"]
        failed = next(outcome for outcome in outcomes if not outcome.success)
        assert "额度不足" in failed.error
        assert (await gateway.get_user(user.id)).credits_remaining == 0


class TestStepExecutorDelivery:
    """投递与取消测试"""

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, gateway):
        """终止后重复投递不产生新记录也不重复扣费"""
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a"), llm_step("b")))
        run = await seed_run(gateway, user, pipeline)
        executor = build_executor(gateway)

        await executor.execute(run.id)
        again = await executor.execute(run.id)

        assert again.discarded is True
        assert again.status is None
        assert len(await gateway.list_step_executions(run.id)) == 2
        assert (await gateway.get_run(run.id)).credits_consumed == 2
        assert (await gateway.get_user(user.id)).credits_remaining == 8

    @pytest.mark.asyncio
    async def test_missing_run_discarded(self, gateway):
        outcome = await build_executor(gateway).execute("missing")
        assert outcome.discarded is True

    @pytest.mark.asyncio
    async def test_cancellation_between_steps(self, gateway):
        """取消在步骤边界生效，其后步骤标记为 skipped"""
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(
            gateway, user, definition_document(llm_step("a"), llm_step("b"), llm_step("c"))
        )
        run = await seed_run(gateway, user, pipeline)

        async def cancel_during_step(step, step_input):
            await gateway.request_cancel(run.id)
            return OperationResult(output="done", tokens_in=100, tokens_out=100)

        operation = ScriptedOperation({"a": [cancel_during_step]})
        outcome = await build_executor(gateway, operation).execute(run.id)

        stored = await gateway.get_run(run.id)
        assert outcome.status is RunStatus.CANCELED
        assert stored.status == "canceled"
        assert stored.error is None
        assert await statuses(gateway, run.id) == ["succeeded", "skipped", "skipped"]
        assert operation.call_count("b") == 0


class TestStepExecutorUnexpectedErrors:
    """认领之后的未预期错误"""

    @pytest.mark.asyncio
    async def test_settlement_database_error_fails_run(self, gateway):
        """结算时数据库出错，运行仍到达终态且不扣费"""
        user = await seed_user(gateway, Plan.FREE, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)
        executor = build_executor(gateway)

        with patch.object(
            gateway, "settle_step", AsyncMock(side_effect=DatabaseError("磁盘已满", "update"))
        ):
            outcome = await executor.execute(run.id)

        stored = await gateway.get_run(run.id)
        assert outcome.status is RunStatus.FAILED
        assert stored.status == "failed"
        assert "磁盘已满" in stored.error
        assert stored.finished_at is not None
        assert await statuses(gateway, run.id) == ["failed"]
        assert (await gateway.get_user(user.id)).credits_remaining == 10
        assert (await executor.execute(run.id)).discarded is True

    @pytest.mark.asyncio
    async def test_error_before_steps_fails_run(self, gateway):
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)

        with patch.object(
            gateway, "ensure_step_executions", AsyncMock(side_effect=DatabaseError("连接中断"))
        ):
            outcome = await build_executor(gateway).execute(run.id)

        stored = await gateway.get_run(run.id)
        assert outcome.status is RunStatus.FAILED
        assert stored.status == "failed"
        assert stored.error == "运行执行失败: 连接中断"

    @pytest.mark.asyncio
    async def test_interrupted_run_fails_and_reraises(self, gateway):
        """任务被取消时运行标记为失败，取消继续向上传播"""
        user = await seed_user(gateway, credits=10)
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a"), llm_step("b")))
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation({"a": [asyncio.CancelledError()]})

        with pytest.raises(asyncio.CancelledError):
            await build_executor(gateway, operation).execute(run.id)

        stored = await gateway.get_run(run.id)
        assert stored.status == "failed"
        assert "中断" in stored.error
        assert await statuses(gateway, run.id) == ["failed", "skipped"]


class TestStepExecutorSecrets:
    """用户密钥测试"""

    @pytest.mark.asyncio
    async def test_env_rendered_and_redacted(self, gateway):
        """模板可引用 env，持久化的输入中明文被替换"""
        cipher = SecretCipher(SecretCipher.generate_key())
        user = await seed_user(gateway, credits=10)
        await gateway.set_user_secret(user.id, "API_TOKEN", cipher.encrypt("tok-12345"))
        document = definition_document(llm_step("a", "调用时使用 {{ env.API_TOKEN }}"))
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation()

        outcome = await build_executor(gateway, operation, cipher).execute(run.id)

        row = (await gateway.list_step_executions(run.id))[0]
        assert outcome.status is RunStatus.SUCCEEDED
        assert operation.calls[0][1]["prompt"] == "调用时使用 tok-12345"
        assert operation.envs[0] == {"API_TOKEN": "tok-12345"}
        assert row.input_data == {"prompt": f"调用时使用 {REDACTED}"}

    @pytest.mark.asyncio
    async def test_missing_secret_fails_step(self, gateway):
        user = await seed_user(gateway, credits=10)
        document = definition_document(llm_step("a", "{{ env['WEBHOOK_TOKEN'] }}"), llm_step("b"))
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation()

        outcome = await build_executor(gateway, operation).execute(run.id)

        assert outcome.status is RunStatus.FAILED
        assert operation.calls == []
        assert "缺少密钥: WEBHOOK_TOKEN" in (await gateway.get_run(run.id)).error
        assert await statuses(gateway, run.id) == ["failed", "skipped"]

    @pytest.mark.asyncio
    async def test_provider_key_passed_to_operation(self, gateway):
        """提供方密钥即使未在模板中引用也会传给操作"""
        cipher = SecretCipher(SecretCipher.generate_key())
        user = await seed_user(gateway, credits=10)
        await gateway.set_user_secret(user.id, "OPENAI_API_KEY", cipher.encrypt("sk-user-key"))
        await gateway.set_user_secret(user.id, "UNUSED", cipher.encrypt("not-loaded"))
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation()

        await build_executor(gateway, operation, cipher).execute(run.id)

        assert operation.envs[0] == {"OPENAI_API_KEY": "sk-user-key"}

    @pytest.mark.asyncio
    async def test_error_message_redacted(self, gateway):
        cipher = SecretCipher(SecretCipher.generate_key())
        user = await seed_user(gateway, credits=10)
        await gateway.set_user_secret(user.id, "API_TOKEN", cipher.encrypt("tok-12345"))
        document = definition_document(llm_step("a", "{{ env.API_TOKEN }}"))
        pipeline = await seed_pipeline(gateway, user, document)
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation({"a": [StepOperationError("上游拒绝了 tok-12345")]})

        await build_executor(gateway, operation, cipher).execute(run.id)

        stored = await gateway.get_run(run.id)
        row = (await gateway.list_step_executions(run.id))[0]
        assert "tok-12345" not in stored.error
        assert row.error == f"上游拒绝了 {REDACTED}"

    @pytest.mark.asyncio
    async def test_secrets_without_cipher_fail_run(self, gateway):
        """存在密文但未配置主密钥时运行失败，所有步骤跳过"""
        user = await seed_user(gateway, credits=10)
        await gateway.set_user_secret(user.id, "OPENAI_API_KEY", "密文")
        pipeline = await seed_pipeline(gateway, user, definition_document(llm_step("a")))
        run = await seed_run(gateway, user, pipeline)
        operation = ScriptedOperation()

        outcome = await build_executor(gateway, operation).execute(run.id)

        assert outcome.status is RunStatus.FAILED
        assert "SECRETS_ENCRYPTION_KEY" in (await gateway.get_run(run.id)).error
        assert operation.calls == []
        assert await statuses(gateway, run.id) == ["skipped"]
