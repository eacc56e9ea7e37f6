"""
Pipeline 领域模型

定义流水线、版本、计划、运行与步骤执行的持久化模型，以及用户额度快照与用户密钥。
所有时间字段以 UTC 感知时间存取。
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import UniqueConstraint
from sqlmodel import JSON, Column, Field, SQLModel

from stepline.framework.storage.database import UTCDateTime


def new_id() -> str:
    """生成记录 ID"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(timezone.utc)


def _utc_column(index: bool = False) -> Column:
    return Column(UTCDateTime(timezone=True), index=index)


class Plan(str, Enum):
    """订阅计划"""
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class PipelineStatus(str, Enum):
    """流水线状态"""
    ACTIVE = "active"
    ARCHIVED = "archived"
    DRAFT = "draft"


class TriggerType(str, Enum):
    """运行触发方式"""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    CRON = "cron"


class RunStatus(str, Enum):
    """运行状态"""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED)


class StepStatus(str, Enum):
    """步骤执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class User(SQLModel, table=True):
    """用户与计费快照"""
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    email: str | None = Field(default=None, index=True)
    plan: str = Field(default=Plan.FREE.value)
    credits_remaining: int = Field(default=0)
    stripe_subscription_status: str | None = Field(default=None)  # active, trialing, canceled...
    stripe_billing_interval: str | None = Field(default=None)  # month, year
    stripe_current_period_end: datetime | None = Field(
        default=None, sa_column=_utc_column()
    )
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class UserSecret(SQLModel, table=True):
    """用户密钥（Fernet 密文，模板中以 env.<name> 引用）"""
    __tablename__ = "user_secrets"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_user_secret"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    name: str
    encrypted_value: str
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class Pipeline(SQLModel, table=True):
    """流水线"""
    __tablename__ = "pipelines"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    name: str
    description: str | None = Field(default=None)
    status: str = Field(default=PipelineStatus.ACTIVE.value)
    current_version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class PipelineVersion(SQLModel, table=True):
    """流水线定义版本（发布后不可修改）"""
    __tablename__ = "pipeline_versions"
    __table_args__ = (UniqueConstraint("pipeline_id", "version", name="uq_pipeline_version"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    pipeline_id: str = Field(foreign_key="pipelines.id", index=True)
    version: int
    definition: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class Schedule(SQLModel, table=True):
    """定时计划"""
    __tablename__ = "schedules"

    id: str = Field(default_factory=new_id, primary_key=True)
    pipeline_id: str = Field(foreign_key="pipelines.id", index=True)
    name: str
    description: str | None = Field(default=None)
    cron_expression: str
    timezone: str = Field(default="UTC")
    input_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    enabled: bool = Field(default=True, index=True)
    next_run_at: datetime | None = Field(default=None, sa_column=_utc_column(index=True))
    last_run_at: datetime | None = Field(default=None, sa_column=_utc_column())
    last_error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())
    updated_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class Run(SQLModel, table=True):
    """流水线运行"""
    __tablename__ = "runs"

    id: str = Field(default_factory=new_id, primary_key=True)
    pipeline_id: str = Field(foreign_key="pipelines.id", index=True)
    pipeline_version: int
    user_id: str = Field(foreign_key="users.id", index=True)
    schedule_id: str | None = Field(default=None, foreign_key="schedules.id")
    trigger_type: str = Field(default=TriggerType.MANUAL.value)
    status: str = Field(default=RunStatus.QUEUED.value, index=True)
    input_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    output_data: Any | None = Field(default=None, sa_column=Column(JSON))
    credits_consumed: int = Field(default=0)
    error: str | None = Field(default=None)
    cancel_requested_at: datetime | None = Field(default=None, sa_column=_utc_column())
    started_at: datetime | None = Field(default=None, sa_column=_utc_column())
    finished_at: datetime | None = Field(default=None, sa_column=_utc_column())
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column(index=True))


class StepExecution(SQLModel, table=True):
    """步骤执行记录（每个运行的每个步骤恰好一行）"""
    __tablename__ = "step_executions"
    __table_args__ = (UniqueConstraint("run_id", "step_id", name="uq_step_execution"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(foreign_key="runs.id", index=True)
    step_id: str
    step_index: int
    status: str = Field(default=StepStatus.PENDING.value)
    input_data: Any | None = Field(default=None, sa_column=Column(JSON))
    output_data: Any | None = Field(default=None, sa_column=Column(JSON))
    tokens_in: int = Field(default=0)
    tokens_out: int = Field(default=0)
    cost_credits: int = Field(default=0)
    attempt_count: int = Field(default=0)
    error: str | None = Field(default=None)
    started_at: datetime | None = Field(default=None, sa_column=_utc_column())
    finished_at: datetime | None = Field(default=None, sa_column=_utc_column())
    duration_ms: int | None = Field(default=None)
