"""
订阅计划与模型价格

价格单位为美元/百万令牌；计划限制中 -1 表示不限。
"""

from dataclasses import dataclass
from decimal import Decimal

from stepline.domain.pipeline.models import Plan
from stepline.framework.shared.exceptions import ConfigurationError, PlanLimitError

UNLIMITED = -1


@dataclass(frozen=True)
class ModelPricing:
    """模型定价"""

    id: str
    name: str
    provider: str
    input_cost_per_million: Decimal
    output_cost_per_million: Decimal
    max_tokens: int


@dataclass(frozen=True)
class PlanLimits:
    """计划限制"""

    credits: int
    max_runs_per_day: int
    max_pipelines: int
    max_steps_per_pipeline: int
    cron_enabled: bool
    webhooks_enabled: bool
    price_cents: int


SUPPORTED_MODELS: dict[str, ModelPricing] = {
    model.id: model
    for model in (
        ModelPricing("gpt-4o", "GPT-4o", "openai", Decimal("2.50"), Decimal("10.00"), 16384),
        ModelPricing("gpt-4o-mini", "GPT-4o Mini", "openai", Decimal("0.15"), Decimal("0.60"), 16384),
        ModelPricing("gpt-5.2", "GPT-5.2", "openai", Decimal("1.75"), Decimal("14.00"), 128000),
        ModelPricing(
            "claude-sonnet-4-20250514", "Claude Sonnet 4", "anthropic",
            Decimal("3.00"), Decimal("15.00"), 8192,
        ),
        ModelPricing(
            "claude-3-5-haiku-20241022", "Claude Haiku 3.5", "anthropic",
            Decimal("0.25"), Decimal("1.25"), 8192,
        ),
        ModelPricing("gemini-2.5-pro", "Gemini 2.5 Pro", "google", Decimal("1.25"), Decimal("10.00"), 65536),
        ModelPricing("gemini-2.5-flash", "Gemini 2.5 Flash", "google", Decimal("0.30"), Decimal("2.50"), 65536),
        ModelPricing(
            "mistral-large-latest", "Mistral Large", "mistral",
            Decimal("2.00"), Decimal("6.00"), 32000,
        ),
        ModelPricing(
            "mistral-small-latest", "Mistral Small", "mistral",
            Decimal("0.20"), Decimal("0.60"), 32000,
        ),
    )
}

PLAN_LIMITS: dict[Plan, PlanLimits] = {
    Plan.FREE: PlanLimits(
        credits=100, max_runs_per_day=10, max_pipelines=3, max_steps_per_pipeline=5,
        cron_enabled=False, webhooks_enabled=False, price_cents=0,
    ),
    Plan.STARTER: PlanLimits(
        credits=2_000, max_runs_per_day=100, max_pipelines=10, max_steps_per_pipeline=10,
        cron_enabled=True, webhooks_enabled=False, price_cents=1_900,
    ),
    Plan.PRO: PlanLimits(
        credits=8_000, max_runs_per_day=500, max_pipelines=UNLIMITED, max_steps_per_pipeline=20,
        cron_enabled=True, webhooks_enabled=True, price_cents=4_900,
    ),
    Plan.ENTERPRISE: PlanLimits(
        credits=UNLIMITED, max_runs_per_day=UNLIMITED, max_pipelines=UNLIMITED,
        max_steps_per_pipeline=50, cron_enabled=True, webhooks_enabled=True, price_cents=0,
    ),
}

# 按计费周期重置额度的付费计划
PAID_PLANS = (Plan.STARTER, Plan.PRO)


def resolve_plan(plan: str | Plan) -> Plan:
    """解析计划名（未知计划按 free 处理）"""
    try:
        return Plan(plan)
    except ValueError:
        return Plan.FREE


def get_plan_limits(plan: str | Plan) -> PlanLimits:
    """获取计划限制"""
    return PLAN_LIMITS[resolve_plan(plan)]


def get_model_pricing(model_id: str) -> ModelPricing:
    """
    获取模型定价

    Raises:
        ConfigurationError: 模型不受支持
    """
    pricing = SUPPORTED_MODELS.get(model_id)
    if pricing is None:
        raise ConfigurationError(f"不支持的模型: {model_id}", "model")
    return pricing


def is_unlimited(value: int) -> bool:
    return value == UNLIMITED


def check_pipeline_limits(plan: str | Plan, pipeline_count: int, step_count: int) -> None:
    """
    检查流水线数量与步骤数限制

    Args:
        plan: 用户计划
        pipeline_count: 创建后用户拥有的流水线数
        step_count: 定义中的步骤数

    Raises:
        PlanLimitError: 超出限制
    """
    limits = get_plan_limits(plan)
    if not is_unlimited(limits.max_pipelines) and pipeline_count > limits.max_pipelines:
        raise PlanLimitError(
            f"当前计划最多允许 {limits.max_pipelines} 条流水线",
            "PLAN_MAX_PIPELINES",
            {"max_pipelines": limits.max_pipelines},
        )
    if step_count > limits.max_steps_per_pipeline:
        raise PlanLimitError(
            f"当前计划每条流水线最多允许 {limits.max_steps_per_pipeline} 个步骤",
            "PLAN_MAX_STEPS",
            {"max_steps_per_pipeline": limits.max_steps_per_pipeline},
        )


def check_daily_runs(plan: str | Plan, runs_today: int) -> None:
    """
    检查当日运行次数（UTC 日）

    Raises:
        PlanLimitError: 已达到当日上限
    """
    limits = get_plan_limits(plan)
    if not is_unlimited(limits.max_runs_per_day) and runs_today >= limits.max_runs_per_day:
        raise PlanLimitError(
            f"已达到当日运行上限 {limits.max_runs_per_day}",
            "PLAN_MAX_RUNS_PER_DAY",
            {"max_runs_per_day": limits.max_runs_per_day},
        )
