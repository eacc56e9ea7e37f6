"""
步骤操作

每种步骤类型对应一个操作：
- transform: 渲染后的模板即输出，不消耗令牌
- llm: 按模型所属提供方选择 LLM 适配器调用模型；用户密钥中的提供方密钥优先于全局配置

操作只负责单次尝试；超时与重试由执行器控制。
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from stepline.domain.billing.plans import ModelPricing, get_model_pricing
from stepline.domain.pipeline.definition import BaseStep, LlmStep, OutputFormat
from stepline.framework.adapters.llm_adapter import LLMAdapter, LLMMessage
from stepline.framework.shared.exceptions import ConfigurationError

_JSON_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

# 提供方 -> 用户密钥中可用的密钥名（按优先级）
PROVIDER_SECRET_NAMES: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY", "openai_api_key"),
    "anthropic": ("ANTHROPIC_API_KEY", "anthropic_api_key"),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY", "gemini_api_key", "google_api_key"),
    "mistral": ("MISTRAL_API_KEY", "mistral_api_key"),
}


@dataclass
class OperationResult:
    """单次步骤操作结果"""

    output: Any
    tokens_in: int = 0
    tokens_out: int = 0
    pricing: ModelPricing | None = None


def parse_output(text: str, output_format: OutputFormat) -> Any:
    """按输出格式解析文本（JSON 解析失败时保留原文）"""
    if output_format is not OutputFormat.JSON:
        return text

    candidate = text.strip()
    fenced = _JSON_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        return json.loads(candidate)
    except ValueError:
        return text


class StepOperation(ABC):
    """步骤操作基类"""

    step_type: str = ""

    @abstractmethod
    async def execute(
        self,
        step: BaseStep,
        step_input: dict[str, Any],
        env: dict[str, str] | None = None,
    ) -> OperationResult:
        """
        执行一次步骤操作

        Args:
            step: 步骤配置
            step_input: 已渲染的输入（prompt、system_prompt 等）
            env: 运行所属用户的密钥明文

        Returns:
            OperationResult: 输出与令牌用量
        """


class TransformOperation(StepOperation):
    """模板转换"""

    step_type = "transform"

    async def execute(
        self,
        step: BaseStep,
        step_input: dict[str, Any],
        env: dict[str, str] | None = None,
    ) -> OperationResult:
        return OperationResult(output=parse_output(step_input.get("prompt", ""), step.output_format))


class LlmOperation(StepOperation):
    """语言模型调用（按提供方路由到适配器）"""

    step_type = "llm"

    def __init__(self, adapters: dict[str, LLMAdapter]):
        self.adapters = dict(adapters)

    def adapter_for(self, pricing: ModelPricing) -> LLMAdapter:
        """
        Raises:
            ConfigurationError: 模型所属提供方没有可用的适配器
        """
        adapter = self.adapters.get(pricing.provider)
        if adapter is None:
            raise ConfigurationError(
                f"未配置模型提供方: {pricing.provider}（模型 {pricing.id}）", "provider"
            )
        return adapter

    @staticmethod
    def user_api_key(provider: str, env: dict[str, str] | None) -> str | None:
        for name in PROVIDER_SECRET_NAMES.get(provider, ()):
            if env and env.get(name):
                return env[name]
        return None

    async def execute(
        self,
        step: LlmStep,
        step_input: dict[str, Any],
        env: dict[str, str] | None = None,
    ) -> OperationResult:
        pricing = get_model_pricing(step.model)
        adapter = self.adapter_for(pricing)

        messages = []
        if step_input.get("system_prompt"):
            messages.append(LLMMessage(role="system", content=step_input["system_prompt"]))
        messages.append(LLMMessage(role="user", content=step_input.get("prompt", "")))

        response = await adapter.chat_completion(
            model=step.model,
            messages=messages,
            temperature=step.temperature,
            max_tokens=step.max_tokens,
            json_mode=step.output_format is OutputFormat.JSON,
            api_key=self.user_api_key(pricing.provider, env),
        )
        return OperationResult(
            output=parse_output(response.content, step.output_format),
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            pricing=pricing,
        )


class OperationRegistry:
    """步骤类型 -> 操作"""

    def __init__(self, operations: list[StepOperation] | None = None):
        self._operations: dict[str, StepOperation] = {}
        for operation in operations or []:
            self.register(operation)

    def register(self, operation: StepOperation) -> None:
        self._operations[operation.step_type] = operation

    def get(self, step_type: str) -> StepOperation:
        """
        Raises:
            ConfigurationError: 未注册的步骤类型
        """
        operation = self._operations.get(step_type)
        if operation is None:
            raise ConfigurationError(f'步骤类型 "{step_type}" 未实现', "step.type")
        return operation

    @classmethod
    def default(cls, adapters: dict[str, LLMAdapter]) -> "OperationRegistry":
        return cls([TransformOperation(), LlmOperation(adapters)])
