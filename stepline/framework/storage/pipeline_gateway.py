"""
流水线网关

封装流水线、计划、运行、步骤执行与用户额度的数据访问。
所有跨行一致性要求（认领计划、状态迁移、扣减额度）都通过条件更新完成，
以受影响行数判断是否成功。先检查后写入的操作（当日运行上限、步骤结算）
在同一个会话中完成。
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from stepline.domain.billing.plans import check_daily_runs
from stepline.domain.pipeline.models import (
    Pipeline,
    PipelineVersion,
    Run,
    RunStatus,
    Schedule,
    StepExecution,
    StepStatus,
    User,
    UserSecret,
    utcnow,
)
from stepline.framework.shared.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PlanLimitError,
)
from stepline.framework.shared.logging import get_logger


def _values(statuses: Iterable[str]) -> list[str]:
    return [getattr(status, "value", status) for status in statuses]


def _count_runs_since(session: Session, user_id: str, since: datetime) -> int:
    statement = (
        select(func.count())
        .select_from(Run)
        .where(Run.user_id == user_id, Run.created_at >= since)
    )
    return int(session.exec(statement).one())


def _check_daily_runs(session: Session, user_id: str, since: datetime) -> None:
    """锁定用户行后统计运行数，超出计划上限时抛出 PlanLimitError"""
    user = session.exec(select(User).where(User.id == user_id).with_for_update()).first()
    if user is None:
        raise NotFoundError(f"用户不存在: {user_id}", "user", user_id)
    check_daily_runs(user.plan, _count_runs_since(session, user_id, since))


class PipelineGateway:
    """流水线数据访问网关"""

    def __init__(self, database_manager):
        """初始化网关"""
        self.db_manager = database_manager
        self.logger = get_logger(__name__)

    # 用户与额度
    async def create_user(self, user: User) -> User:
        """创建用户"""
        return await self.db_manager.create(user)

    async def get_user(self, user_id: str) -> User | None:
        """获取用户"""
        return await self.db_manager.get_by_id(User, user_id)

    async def apply_billing_rollover(
        self,
        user_id: str,
        expected_period_end: datetime | None,
        credits: int,
        period_end: datetime,
    ) -> bool:
        """以旧的周期结束时间为条件重置额度并推进周期"""
        def _apply(session: Session) -> bool:
            result = session.connection().execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.stripe_current_period_end == expected_period_end,
                )
                .values(
                    credits_remaining=credits,
                    stripe_current_period_end=period_end,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

        return await self.db_manager.run_in_session(_apply)

    async def list_users_due_for_rollover(
        self, now: datetime, limit: int = 500
    ) -> list[str]:
        """列出周期已结束的付费订阅用户"""
        def _list(session: Session) -> list[str]:
            statement = (
                select(User.id)
                .where(
                    User.plan.in_(["starter", "pro"]),
                    User.stripe_subscription_status.in_(["active", "trialing"]),
                    User.stripe_billing_interval.in_(["month", "year"]),
                    User.stripe_current_period_end.is_not(None),
                    User.stripe_current_period_end <= now,
                )
                .limit(limit)
            )
            return list(session.exec(statement).all())

        return await self.db_manager.run_in_session(_list)

    # 用户密钥（只存储密文）
    async def set_user_secret(self, user_id: str, name: str, encrypted_value: str) -> UserSecret:
        """创建或覆盖用户密钥"""
        def _set(session: Session) -> UserSecret:
            statement = select(UserSecret).where(
                UserSecret.user_id == user_id, UserSecret.name == name
            )
            secret = session.exec(statement).first()
            if secret is None:
                secret = UserSecret(user_id=user_id, name=name, encrypted_value=encrypted_value)
            else:
                secret.encrypted_value = encrypted_value
                secret.updated_at = utcnow()
            session.add(secret)
            session.flush()
            session.refresh(secret)
            return secret

        secret = await self.db_manager.run_in_session(_set)
        self.logger.info("用户密钥已保存", user_id=user_id, name=name)
        return secret

    async def get_user_secrets(
        self, user_id: str, names: Iterable[str] | None = None
    ) -> dict[str, str]:
        """读取用户密钥密文 {name: encrypted_value}（names 为 None 时读取全部）"""
        wanted = None if names is None else list(names)

        def _get(session: Session) -> dict[str, str]:
            statement = select(UserSecret).where(UserSecret.user_id == user_id)
            if wanted is not None:
                statement = statement.where(UserSecret.name.in_(wanted))
            return {row.name: row.encrypted_value for row in session.exec(statement).all()}

        return await self.db_manager.run_in_session(_get)

    async def delete_user_secret(self, user_id: str, name: str) -> bool:
        """删除用户密钥"""
        def _delete(session: Session) -> bool:
            statement = select(UserSecret).where(
                UserSecret.user_id == user_id, UserSecret.name == name
            )
            secret = session.exec(statement).first()
            if secret is None:
                return False
            session.delete(secret)
            return True

        return await self.db_manager.run_in_session(_delete)

    # 流水线与版本
    async def create_pipeline(
        self, pipeline: Pipeline, definition: dict[str, Any]
    ) -> tuple[Pipeline, PipelineVersion]:
        """创建流水线及其第一个版本"""
        def _create(session: Session) -> tuple[Pipeline, PipelineVersion]:
            pipeline.current_version = 1
            version = PipelineVersion(
                pipeline_id=pipeline.id,
                version=1,
                definition={**definition, "version": 1},
            )
            session.add(pipeline)
            session.add(version)
            session.flush()
            session.refresh(pipeline)
            session.refresh(version)
            return pipeline, version

        result = await self.db_manager.run_in_session(_create)
        self.logger.info("流水线已创建", pipeline_id=pipeline.id, user_id=pipeline.user_id)
        return result

    async def get_pipeline(self, pipeline_id: str) -> Pipeline | None:
        """获取流水线"""
        return await self.db_manager.get_by_id(Pipeline, pipeline_id)

    async def count_user_pipelines(self, user_id: str) -> int:
        """统计用户的流水线数"""
        def _count(session: Session) -> int:
            statement = select(func.count()).select_from(Pipeline).where(Pipeline.user_id == user_id)
            return int(session.exec(statement).one())

        return await self.db_manager.run_in_session(_count)

    async def publish_version(
        self, pipeline_id: str, definition: dict[str, Any]
    ) -> PipelineVersion:
        """
        发布新版本（version = 最新版本 + 1）

        Raises:
            NotFoundError: 流水线不存在
            ConcurrencyConflictError: 并发发布
        """
        def _publish(session: Session) -> PipelineVersion:
            pipeline = session.get(Pipeline, pipeline_id)
            if pipeline is None:
                raise NotFoundError(f"流水线不存在: {pipeline_id}", "pipeline", pipeline_id)

            current = pipeline.current_version
            next_version = current + 1
            result = session.connection().execute(
                update(Pipeline)
                .where(Pipeline.id == pipeline_id, Pipeline.current_version == current)
                .values(current_version=next_version, updated_at=utcnow())
            )
            if result.rowcount != 1:
                raise ConcurrencyConflictError("流水线版本已被并发更新", "pipeline", pipeline_id)

            version = PipelineVersion(
                pipeline_id=pipeline_id,
                version=next_version,
                definition={**definition, "version": next_version},
            )
            session.add(version)
            try:
                session.flush()
            except IntegrityError as e:
                raise ConcurrencyConflictError(
                    f"版本 {next_version} 已存在", "pipeline", pipeline_id
                ) from e
            session.refresh(version)
            return version

        return await self.db_manager.run_in_session(_publish)

    async def get_version(self, pipeline_id: str, version: int) -> PipelineVersion | None:
        """获取指定版本"""
        def _get(session: Session) -> PipelineVersion | None:
            statement = select(PipelineVersion).where(
                PipelineVersion.pipeline_id == pipeline_id,
                PipelineVersion.version == version,
            )
            return session.exec(statement).first()

        return await self.db_manager.run_in_session(_get)

    async def get_latest_version(self, pipeline_id: str) -> PipelineVersion | None:
        """获取最新版本"""
        def _get(session: Session) -> PipelineVersion | None:
            statement = (
                select(PipelineVersion)
                .where(PipelineVersion.pipeline_id == pipeline_id)
                .order_by(PipelineVersion.version.desc())
                .limit(1)
            )
            return session.exec(statement).first()

        return await self.db_manager.run_in_session(_get)

    # 计划
    async def create_schedule(self, schedule: Schedule) -> Schedule:
        """创建计划"""
        result = await self.db_manager.create(schedule)
        self.logger.info(
            "计划已创建",
            schedule_id=schedule.id,
            pipeline_id=schedule.pipeline_id,
            next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None,
        )
        return result

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        """获取计划"""
        return await self.db_manager.get_by_id(Schedule, schedule_id)

    async def list_due_schedules(self, now: datetime, limit: int = 50) -> list[Schedule]:
        """列出已到期的启用计划（按 next_run_at 升序）"""
        def _list(session: Session) -> list[Schedule]:
            statement = (
                select(Schedule)
                .where(
                    Schedule.enabled == True,  # noqa: E712
                    Schedule.next_run_at.is_not(None),
                    Schedule.next_run_at <= now,
                )
                .order_by(Schedule.next_run_at)
                .limit(limit)
            )
            return list(session.exec(statement).all())

        return await self.db_manager.run_in_session(_list)

    async def disable_schedule(self, schedule_id: str, error: str | None = None) -> Schedule | None:
        """停用计划（保留历史）"""
        return await self.db_manager.update(
            Schedule,
            schedule_id,
            {"enabled": False, "last_error": error, "updated_at": utcnow()},
        )

    async def enable_schedule(self, schedule_id: str, next_run_at: datetime) -> Schedule | None:
        """重新启用计划"""
        return await self.db_manager.update(
            Schedule,
            schedule_id,
            {"enabled": True, "next_run_at": next_run_at, "last_error": None, "updated_at": utcnow()},
        )

    async def advance_schedule(
        self,
        schedule_id: str,
        expected_next_run_at: datetime,
        next_run_at: datetime,
        run: Run | None = None,
        runs_since: datetime | None = None,
    ) -> Run | None:
        """
        在同一事务中认领计划并创建运行

        以读取到的 next_run_at 为条件推进；同时插入 run（如提供）。
        给出 runs_since 时在同一事务中检查当日运行上限，超限则只推进计划。

        Raises:
            ConcurrencyConflictError: 认领失败（已被其他调度器推进）
        """
        def _advance(session: Session) -> Run | None:
            pending = run
            if pending is not None and runs_since is not None:
                try:
                    _check_daily_runs(session, pending.user_id, runs_since)
                except PlanLimitError as e:
                    self.logger.info(
                        "已达到当日运行上限，跳过", schedule_id=schedule_id, error=e.message
                    )
                    pending = None

            values: dict[str, Any] = {"next_run_at": next_run_at, "updated_at": utcnow()}
            if pending is not None:
                values["last_run_at"] = expected_next_run_at

            result = session.connection().execute(
                update(Schedule)
                .where(
                    Schedule.id == schedule_id,
                    Schedule.enabled == True,  # noqa: E712
                    Schedule.next_run_at == expected_next_run_at,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflictError("计划已被并发推进", "schedule", schedule_id)

            if pending is None:
                return None
            session.add(pending)
            session.flush()
            session.refresh(pending)
            return pending

        return await self.db_manager.run_in_session(_advance)

    # 运行
    async def create_run(self, run: Run, runs_since: datetime | None = None) -> Run:
        """
        创建运行

        给出 runs_since 时，统计与插入在同一事务中完成（并锁定用户行），
        并发创建不会越过当日运行上限。

        Raises:
            PlanLimitError: 已达到当日运行上限
        """
        if runs_since is None:
            return await self.db_manager.create(run)

        def _create(session: Session) -> Run:
            _check_daily_runs(session, run.user_id, runs_since)
            session.add(run)
            session.flush()
            session.refresh(run)
            return run

        return await self.db_manager.run_in_session(_create)

    async def get_run(self, run_id: str) -> Run | None:
        """获取运行"""
        return await self.db_manager.get_by_id(Run, run_id)

    async def count_user_runs_since(self, user_id: str, since: datetime) -> int:
        """统计用户自某时刻以来创建的运行数"""
        return await self.db_manager.run_in_session(
            lambda session: _count_runs_since(session, user_id, since)
        )

    async def transition_run(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus | str],
        to_status: RunStatus,
        **fields: Any,
    ) -> bool:
        """条件迁移运行状态（仅当当前状态在 from_statuses 中）"""
        expected = _values(from_statuses)

        def _transition(session: Session) -> bool:
            result = session.connection().execute(
                update(Run)
                .where(Run.id == run_id, Run.status.in_(expected))
                .values(status=to_status.value, **fields)
            )
            return result.rowcount == 1

        changed = await self.db_manager.run_in_session(_transition)
        if changed:
            self.logger.debug("运行状态已迁移", run_id=run_id, status=to_status.value)
        return changed

    async def request_cancel(self, run_id: str, now: datetime | None = None) -> bool:
        """为运行中的运行设置取消请求"""
        now = now or datetime.now(timezone.utc)

        def _request(session: Session) -> bool:
            result = session.connection().execute(
                update(Run)
                .where(
                    Run.id == run_id,
                    Run.status == RunStatus.RUNNING.value,
                    Run.cancel_requested_at.is_(None),
                )
                .values(cancel_requested_at=now)
            )
            return result.rowcount == 1

        return await self.db_manager.run_in_session(_request)

    async def is_cancel_requested(self, run_id: str) -> bool:
        """是否已请求取消"""
        def _check(session: Session) -> bool:
            statement = select(Run.cancel_requested_at).where(Run.id == run_id)
            value = session.exec(statement).first()
            return value is not None

        return await self.db_manager.run_in_session(_check)

    # 步骤执行
    async def ensure_step_executions(
        self, run_id: str, step_ids: list[str]
    ) -> list[StepExecution]:
        """为运行的所有步骤创建 pending 记录（已存在的复用）"""
        def _ensure(session: Session) -> list[StepExecution]:
            statement = select(StepExecution).where(StepExecution.run_id == run_id)
            existing = {row.step_id: row for row in session.exec(statement).all()}

            for index, step_id in enumerate(step_ids):
                if step_id not in existing:
                    row = StepExecution(run_id=run_id, step_id=step_id, step_index=index)
                    session.add(row)
                    existing[step_id] = row
            session.flush()
            return sorted(existing.values(), key=lambda row: row.step_index)

        return await self.db_manager.run_in_session(_ensure)

    async def list_step_executions(self, run_id: str) -> list[StepExecution]:
        """按顺序列出运行的步骤执行"""
        def _list(session: Session) -> list[StepExecution]:
            statement = (
                select(StepExecution)
                .where(StepExecution.run_id == run_id)
                .order_by(StepExecution.step_index)
            )
            return list(session.exec(statement).all())

        return await self.db_manager.run_in_session(_list)

    async def update_step_execution(self, execution_id: str, **fields: Any) -> StepExecution | None:
        """更新步骤执行"""
        return await self.db_manager.update(StepExecution, execution_id, fields)

    async def settle_step(
        self,
        execution_id: str,
        run_id: str,
        user_id: str,
        debit: int,
        **fields: Any,
    ) -> bool:
        """
        在同一事务中结算成功的步骤

        1. 余额充足时扣减 debit（为 0 时不扣）
        2. 将步骤标记为 succeeded 并写入 fields（输出、用量、cost_credits 等）
        3. 将 cost_credits 累加到运行

        Returns:
            bool: 余额不足时返回 False，此时不做任何修改
        """
        credits = int(fields.get("cost_credits") or 0)

        def _settle(session: Session) -> bool:
            connection = session.connection()
            if debit > 0:
                result = connection.execute(
                    update(User)
                    .where(User.id == user_id, User.credits_remaining >= debit)
                    .values(
                        credits_remaining=User.credits_remaining - debit,
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount != 1:
                    return False

            connection.execute(
                update(StepExecution)
                .where(StepExecution.id == execution_id)
                .values(status=StepStatus.SUCCEEDED.value, **fields)
            )
            if credits > 0:
                connection.execute(
                    update(Run)
                    .where(Run.id == run_id)
                    .values(credits_consumed=Run.credits_consumed + credits)
                )
            return True

        return await self.db_manager.run_in_session(_settle)

    async def skip_remaining_steps(self, run_id: str, from_index: int) -> int:
        """将 from_index 及之后未完成的步骤标记为 skipped"""
        def _skip(session: Session) -> int:
            result = session.connection().execute(
                update(StepExecution)
                .where(
                    StepExecution.run_id == run_id,
                    StepExecution.step_index >= from_index,
                    or_(
                        StepExecution.status == StepStatus.PENDING.value,
                        StepExecution.status == StepStatus.RUNNING.value,
                    ),
                )
                .values(status=StepStatus.SKIPPED.value, finished_at=utcnow())
            )
            return result.rowcount

        return await self.db_manager.run_in_session(_skip)

    async def abort_unfinished_steps(self, run_id: str, error: str) -> int:
        """运行中止时：running 的步骤标记为 failed，pending 的步骤标记为 skipped"""
        def _abort(session: Session) -> int:
            connection = session.connection()
            now = utcnow()
            failed = connection.execute(
                update(StepExecution)
                .where(
                    StepExecution.run_id == run_id,
                    StepExecution.status == StepStatus.RUNNING.value,
                )
                .values(status=StepStatus.FAILED.value, error=error, finished_at=now)
            )
            skipped = connection.execute(
                update(StepExecution)
                .where(
                    StepExecution.run_id == run_id,
                    StepExecution.status == StepStatus.PENDING.value,
                )
                .values(status=StepStatus.SKIPPED.value, finished_at=now)
            )
            return failed.rowcount + skipped.rowcount

        return await self.db_manager.run_in_session(_abort)
