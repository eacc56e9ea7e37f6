"""
LLM 适配器

提供统一的 LLM 调用接口，每个模型提供方一个适配器：
- openai / mistral: OpenAI 兼容 API（chat/completions）
- anthropic: Messages API
- google: Gemini generateContent

HTTP 错误按可恢复性分类：
- 429 / 5xx / 超时 / 连接错误 -> TransientOperationError（可重试）
- 缺少密钥 / 401 / 403 -> ConfigurationError（不可重试）
- 其他 4xx 或响应格式错误 -> StepOperationError（不可重试）
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from stepline.framework.shared.exceptions import (
    ConfigurationError,
    StepOperationError,
    TransientOperationError,
)
from stepline.framework.shared.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_API_KEYS = ("placeholder", "your-api-key", "changeme")
DEFAULT_MAX_TOKENS = 4096


@dataclass
class LLMMessage:
    """LLM 消息数据类"""
    role: str  # system, user, assistant
    content: str


@dataclass
class LLMResponse:
    """LLM 响应数据类"""
    content: str
    tokens_in: int
    tokens_out: int
    model: str
    finish_reason: str


class LLMAdapter(ABC):
    """LLM 适配器抽象基类"""

    # 模型提供方与对应的密钥名
    provider: str = ""
    api_key_name: str = ""

    @abstractmethod
    async def chat_completion(
        self,
        model: str,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        api_key: str | None = None,
    ) -> LLMResponse:
        """聊天补全（api_key 覆盖适配器默认密钥）"""
        pass

    async def close(self) -> None:
        """释放资源"""
        return None


class HttpLLMAdapter(LLMAdapter):
    """基于 httpx 的适配器公共部分"""

    default_base_url = ""

    def __init__(
        self,
        api_key: str = "",
        base_url: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip('/')
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            transport=transport,
        )

    def _resolve_key(self, api_key: str | None) -> str:
        key = (api_key or self.api_key or "").strip()
        if not key or key.lower() in PLACEHOLDER_API_KEYS:
            raise ConfigurationError(f"未配置 {self.api_key_name}", self.api_key_name)
        return key

    async def _post(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(
                url, headers={**headers, "Content-Type": "application/json"}, json=body
            )
        except httpx.TimeoutException as e:
            raise TransientOperationError(f"LLM 请求超时: {e}") from e
        except httpx.TransportError as e:
            raise TransientOperationError(f"LLM 连接失败: {e}") from e

        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise StepOperationError(f"LLM 响应格式无效: {e}") from e

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = response.text[:500]
        if status in (401, 403):
            raise ConfigurationError(f"LLM 认证失败 ({status}): {detail}", self.api_key_name)
        if status == 429 or status >= 500:
            logger.warning("LLM 请求可重试失败", provider=self.provider, status_code=status)
            raise TransientOperationError(f"LLM 请求失败 ({status}): {detail}", status_code=status)
        raise StepOperationError(f"LLM 请求被拒绝 ({status}): {detail}")

    async def close(self) -> None:
        """关闭客户端"""
        await self.client.aclose()


class OpenAIAdapter(HttpLLMAdapter):
    """OpenAI 适配器 - 支持 OpenAI 兼容 API"""

    provider = "openai"
    api_key_name = "OPENAI_API_KEY"
    default_base_url = "https://api.openai.com/v1"

    async def chat_completion(
        self,
        model: str,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        api_key: str | None = None,
    ) -> LLMResponse:
        """
        调用 chat/completions

        Raises:
            ConfigurationError: 未配置密钥或认证失败
            TransientOperationError: 限流、服务端错误或网络超时
            StepOperationError: 其他请求错误
        """
        key = self._resolve_key(api_key)

        request_data: dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
        }
        if temperature is not None:
            request_data["temperature"] = temperature
        if max_tokens is not None:
            request_data["max_tokens"] = max_tokens
        if json_mode:
            request_data["response_format"] = {"type": "json_object"}

        result = await self._post(
            f"{self.base_url}/chat/completions",
            {"Authorization": f"Bearer {key}"},
            request_data,
        )

        try:
            choice = result["choices"][0]
            content = _text_content(choice["message"]["content"])
        except (KeyError, IndexError, TypeError) as e:
            raise StepOperationError(f"LLM 响应格式无效: {e}") from e

        usage = result.get("usage") or {}
        return LLMResponse(
            content=content,
            tokens_in=int(usage.get("prompt_tokens", 0)),
            tokens_out=int(usage.get("completion_tokens", 0)),
            model=result.get("model", model),
            finish_reason=choice.get("finish_reason") or "stop",
        )


class MistralAdapter(OpenAIAdapter):
    """Mistral 适配器（OpenAI 兼容接口）"""

    provider = "mistral"
    api_key_name = "MISTRAL_API_KEY"
    default_base_url = "https://api.mistral.ai/v1"


class AnthropicAdapter(HttpLLMAdapter):
    """Anthropic Messages API 适配器"""

    provider = "anthropic"
    api_key_name = "ANTHROPIC_API_KEY"
    default_base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    async def chat_completion(
        self,
        model: str,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        api_key: str | None = None,
    ) -> LLMResponse:
        key = self._resolve_key(api_key)

        system = "\n\n".join(m.content for m in messages if m.role == "system")
        request_data: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [
                {"role": m.role, "content": m.content} for m in messages if m.role != "system"
            ],
        }
        if system:
            request_data["system"] = system
        if temperature is not None:
            request_data["temperature"] = temperature

        result = await self._post(
            f"{self.base_url}/messages",
            {"x-api-key": key, "anthropic-version": self.api_version},
            request_data,
        )

        try:
            content = "".join(
                block["text"] for block in result["content"] if block.get("type") == "text"
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise StepOperationError(f"LLM 响应格式无效: {e}") from e

        usage = result.get("usage") or {}
        return LLMResponse(
            content=content,
            tokens_in=int(usage.get("input_tokens", 0)),
            tokens_out=int(usage.get("output_tokens", 0)),
            model=result.get("model", model),
            finish_reason=result.get("stop_reason") or "stop",
        )


class GoogleAdapter(HttpLLMAdapter):
    """Gemini generateContent 适配器"""

    provider = "google"
    api_key_name = "GOOGLE_API_KEY"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def chat_completion(
        self,
        model: str,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        api_key: str | None = None,
    ) -> LLMResponse:
        key = self._resolve_key(api_key)

        system = "\n\n".join(m.content for m in messages if m.role == "system")
        generation_config: dict[str, Any] = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_tokens is not None:
            generation_config["maxOutputTokens"] = max_tokens
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        request_data: dict[str, Any] = {
            "contents": [
                {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
                for m in messages
                if m.role != "system"
            ],
        }
        if system:
            request_data["systemInstruction"] = {"parts": [{"text": system}]}
        if generation_config:
            request_data["generationConfig"] = generation_config

        result = await self._post(
            f"{self.base_url}/models/{model}:generateContent",
            {"x-goog-api-key": key},
            request_data,
        )

        try:
            candidate = result["candidates"][0]
            parts = (candidate.get("content") or {}).get("parts") or []
            content = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise StepOperationError(f"LLM 响应格式无效: {e}") from e

        usage = result.get("usageMetadata") or {}
        return LLMResponse(
            content=content,
            tokens_in=int(usage.get("promptTokenCount", 0)),
            tokens_out=int(usage.get("candidatesTokenCount", 0)),
            model=result.get("modelVersion", model),
            finish_reason=(candidate.get("finishReason") or "stop").lower(),
        )


def _text_content(content: Any) -> str:
    """OpenAI 兼容接口的 content 可能是字符串或文本块列表"""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(
        chunk.get("text", "")
        for chunk in content
        if isinstance(chunk, dict) and chunk.get("type") == "text"
    )


def build_adapters(settings) -> dict[str, LLMAdapter]:
    """按配置构建 provider -> 适配器"""
    timeout = settings.LLM_HTTP_TIMEOUT
    adapters: list[LLMAdapter] = [
        OpenAIAdapter(settings.OPENAI_API_KEY, settings.OPENAI_API_BASE, timeout),
        AnthropicAdapter(settings.ANTHROPIC_API_KEY, settings.ANTHROPIC_API_BASE, timeout),
        GoogleAdapter(settings.GOOGLE_API_KEY, settings.GOOGLE_API_BASE, timeout),
        MistralAdapter(settings.MISTRAL_API_KEY, settings.MISTRAL_API_BASE, timeout),
    ]
    return {adapter.provider: adapter for adapter in adapters}
