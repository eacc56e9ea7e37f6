"""计费领域：订阅计划、模型价格与额度核算"""

from .credits import BillingRollover, CreditAccountant, cost_credits, roll_billing_cycle
from .plans import PLAN_LIMITS, SUPPORTED_MODELS, get_model_pricing, get_plan_limits

__all__ = [
    "BillingRollover", "CreditAccountant", "cost_credits", "roll_billing_cycle",
    "PLAN_LIMITS", "SUPPORTED_MODELS", "get_model_pricing", "get_plan_limits",
]
