"""
额度核算

- cost_credits: 令牌用量 -> 额度（加价后向上取整，Decimal 精确计算）
- roll_billing_cycle: 付费计划计费周期滚动（纯函数）
- CreditAccountant: 持久化封装（懒滚动、步骤结算、周期对账）

一个额度等于 tokens_per_credit 个令牌在参考价下的价格；默认 1000 令牌 × 10 美元/百万令牌 = 0.01 美元。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_CEILING, Decimal

from dateutil.relativedelta import relativedelta

from stepline.domain.billing.plans import (
    PAID_PLANS,
    ModelPricing,
    get_plan_limits,
    is_unlimited,
    resolve_plan,
)
from stepline.domain.pipeline.cron import DEFAULT_CATCH_UP_MAX_ITERATIONS
from stepline.domain.pipeline.models import Plan, User
from stepline.framework.shared.error_handler import with_conflict_retry
from stepline.framework.shared.exceptions import (
    CatchUpLimitExceededError,
    ConcurrencyConflictError,
    InsufficientCreditsError,
    NotFoundError,
)
from stepline.framework.shared.logging import get_logger

logger = get_logger(__name__)

MILLION = Decimal(1_000_000)
ACTIVE_SUBSCRIPTION_STATUSES = ("active", "trialing")
BILLING_INTERVAL_MONTHS = {"month": 1, "year": 12}


def cost_credits(
    tokens_in: int,
    tokens_out: int,
    pricing: ModelPricing,
    markup_percentage: int | Decimal = 25,
    tokens_per_credit: int = 1_000,
    reference_price_per_million: float | Decimal = 10,
) -> int:
    """
    计算令牌用量对应的额度

    Args:
        tokens_in: 输入令牌数
        tokens_out: 输出令牌数
        pricing: 模型定价（美元/百万令牌）
        markup_percentage: 加价百分比
        tokens_per_credit: 每额度令牌数
        reference_price_per_million: 额度换算参考价（美元/百万令牌）

    Returns:
        int: 额度（向上取整，零用量为 0）
    """
    if tokens_in <= 0 and tokens_out <= 0:
        return 0

    usd = (
        Decimal(max(tokens_in, 0)) * pricing.input_cost_per_million
        + Decimal(max(tokens_out, 0)) * pricing.output_cost_per_million
    ) / MILLION
    usd *= 1 + Decimal(markup_percentage) / 100

    credit_value = Decimal(tokens_per_credit) * Decimal(str(reference_price_per_million)) / MILLION
    return int((usd / credit_value).to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class BillingRollover:
    """计费周期滚动结果"""

    credits: int
    period_end: datetime
    intervals: int


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def roll_billing_cycle(
    user: User,
    now: datetime,
    max_iterations: int = DEFAULT_CATCH_UP_MAX_ITERATIONS,
) -> BillingRollover | None:
    """
    计算付费用户的计费周期滚动

    仅当计划为 starter/pro、订阅状态为 active/trialing、周期为 month/year
    且周期结束时间已过时滚动；额度重置为计划额度，周期结束时间从原锚点
    按整周期推进到未来。

    Raises:
        CatchUpLimitExceededError: 推进超过迭代上限
    """
    plan = resolve_plan(user.plan)
    if plan not in PAID_PLANS:
        return None
    if user.stripe_subscription_status not in ACTIVE_SUBSCRIPTION_STATUSES:
        return None
    step_months = BILLING_INTERVAL_MONTHS.get(user.stripe_billing_interval or "")
    if step_months is None or user.stripe_current_period_end is None:
        return None

    anchor = _as_utc(user.stripe_current_period_end)
    now = _as_utc(now)
    if anchor > now:
        return None

    # 从锚点整体偏移，避免月末日期逐次截断漂移
    for k in range(1, max_iterations + 1):
        candidate = anchor + relativedelta(months=k * step_months)
        if candidate > now:
            return BillingRollover(
                credits=get_plan_limits(plan).credits, period_end=candidate, intervals=k
            )

    raise CatchUpLimitExceededError(
        f"计费周期推进超过 {max_iterations} 次迭代: user={user.id}", max_iterations
    )


class CreditAccountant:
    """额度核算服务"""

    def __init__(
        self,
        gateway,
        markup_percentage: int = 25,
        tokens_per_credit: int = 1_000,
        reference_price_per_million: float = 10.0,
        conflict_retry_attempts: int = 3,
        max_iterations: int = DEFAULT_CATCH_UP_MAX_ITERATIONS,
    ):
        self.gateway = gateway
        self.markup_percentage = markup_percentage
        self.tokens_per_credit = tokens_per_credit
        self.reference_price_per_million = reference_price_per_million
        self.conflict_retry_attempts = conflict_retry_attempts
        self.max_iterations = max_iterations

    @classmethod
    def from_settings(cls, gateway, settings) -> "CreditAccountant":
        return cls(
            gateway,
            markup_percentage=settings.MARKUP_PERCENTAGE,
            tokens_per_credit=settings.TOKENS_PER_CREDIT,
            reference_price_per_million=settings.CREDIT_REFERENCE_PRICE_PER_MILLION,
            conflict_retry_attempts=settings.CONFLICT_RETRY_ATTEMPTS,
            max_iterations=settings.CATCH_UP_MAX_ITERATIONS,
        )

    def cost_for(self, tokens_in: int, tokens_out: int, pricing: ModelPricing) -> int:
        """按当前配置计算额度"""
        return cost_credits(
            tokens_in,
            tokens_out,
            pricing,
            markup_percentage=self.markup_percentage,
            tokens_per_credit=self.tokens_per_credit,
            reference_price_per_million=self.reference_price_per_million,
        )

    async def roll_user_billing_cycle(
        self, user_id: str, now: datetime | None = None
    ) -> User:
        """
        懒滚动用户计费周期并返回最新用户快照

        以旧的周期结束时间作为条件更新；冲突时重新读取后重试。

        Raises:
            NotFoundError: 用户不存在
        """
        now = now or datetime.now(timezone.utc)

        async def _attempt() -> User:
            user = await self.gateway.get_user(user_id)
            if user is None:
                raise NotFoundError(f"用户不存在: {user_id}", "user", user_id)

            rollover = roll_billing_cycle(user, now, self.max_iterations)
            if rollover is None:
                return user

            applied = await self.gateway.apply_billing_rollover(
                user_id,
                expected_period_end=user.stripe_current_period_end,
                credits=rollover.credits,
                period_end=rollover.period_end,
            )
            if not applied:
                raise ConcurrencyConflictError("计费周期已被并发更新", "user", user_id)

            logger.info(
                "计费周期已滚动",
                user_id=user_id,
                plan=user.plan,
                credits=rollover.credits,
                intervals=rollover.intervals,
                period_end=rollover.period_end.isoformat(),
            )
            user.credits_remaining = rollover.credits
            user.stripe_current_period_end = rollover.period_end
            return user

        return await with_conflict_retry(_attempt, self.conflict_retry_attempts)

    async def reconcile_billing_cycles(self, now: datetime | None = None) -> int:
        """
        对所有周期已过期的付费用户执行滚动

        Returns:
            int: 滚动的用户数
        """
        now = now or datetime.now(timezone.utc)
        user_ids = await self.gateway.list_users_due_for_rollover(now)

        rolled = 0
        for user_id in user_ids:
            try:
                before = await self.gateway.get_user(user_id)
                after = await self.roll_user_billing_cycle(user_id, now)
            except CatchUpLimitExceededError as e:
                logger.error("计费周期滚动超过上限", user_id=user_id, error=e.message)
                continue
            if before and after.stripe_current_period_end != before.stripe_current_period_end:
                rolled += 1

        if rolled:
            logger.info("计费周期对账完成", rolled=rolled)
        return rolled

    def ensure_can_dispatch(self, user: User, minimum: int) -> None:
        """
        检查用户余额是否足够执行一步

        Raises:
            InsufficientCreditsError: 余额低于最低扣费
        """
        if resolve_plan(user.plan) is Plan.ENTERPRISE:
            return
        if minimum > 0 and user.credits_remaining < minimum:
            raise InsufficientCreditsError(
                f"额度不足: 剩余 {user.credits_remaining}，至少需要 {minimum}",
                user.id,
                minimum,
            )

    async def settle_step(
        self,
        user_id: str,
        run_id: str,
        execution_id: str,
        credits: int,
        **step_fields,
    ) -> None:
        """
        结算成功的步骤

        扣费、步骤标记为 succeeded 与运行额度累加在同一事务中完成；
        不限额度的计划只记录消耗不扣减余额。

        Args:
            user_id: 运行所属用户
            run_id: 运行 ID
            execution_id: 步骤执行 ID
            credits: 步骤消耗的额度
            **step_fields: 写入步骤执行的其余字段（输出、用量、耗时等）

        Raises:
            NotFoundError: 用户不存在
            InsufficientCreditsError: 余额不足（可能被并发运行消耗），此时不做任何修改
        """
        debit = max(credits, 0)
        if debit:
            user = await self.gateway.get_user(user_id)
            if user is None:
                raise NotFoundError(f"用户不存在: {user_id}", "user", user_id)
            if is_unlimited(get_plan_limits(user.plan).credits):
                debit = 0

        settled = await self.gateway.settle_step(
            execution_id, run_id, user_id, debit, cost_credits=max(credits, 0), **step_fields
        )
        if not settled:
            raise InsufficientCreditsError(
                f"额度不足，无法扣除 {credits} 额度", user_id, credits
            )
