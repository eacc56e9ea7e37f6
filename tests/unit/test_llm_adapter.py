"""
LLM 适配器单元测试

使用 httpx.MockTransport 模拟各提供方接口。
"""

import json

import httpx
import pytest

from stepline.domain.billing.plans import SUPPORTED_MODELS
from stepline.framework.adapters.llm_adapter import (
    AnthropicAdapter,
    GoogleAdapter,
    LLMMessage,
    MistralAdapter,
    OpenAIAdapter,
    build_adapters,
)
from stepline.framework.shared.config import Settings
from stepline.framework.shared.exceptions import (
    ConfigurationError,
    StepOperationError,
    TransientOperationError,
)

MESSAGES = [LLMMessage(role="system", content="你是助手"), LLMMessage(role="user", content="你好")]


def completion_body(content: str = "你好！", **overrides) -> dict:
    body = {
        "model": "gpt-4o-mini",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 5},
    }
    body.update(overrides)
    return body


def adapter_with(handler, api_key: str = "sk-test") -> OpenAIAdapter:
    return OpenAIAdapter(api_key, "https://llm.example.com/v1/", transport=httpx.MockTransport(handler))


class TestOpenAIAdapter:
    """OpenAI 适配器测试"""

    @pytest.mark.asyncio
    async def test_parses_content_and_usage(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=completion_body())

        adapter = adapter_with(handler)
        response = await adapter.chat_completion("gpt-4o-mini", MESSAGES, temperature=0.2)
        await adapter.close()

        sent = json.loads(requests[0].content)
        assert str(requests[0].url) == "https://llm.example.com/v1/chat/completions"
        assert requests[0].headers["Authorization"] == "Bearer sk-test"
        assert sent["messages"][0] == {"role": "system", "content": "你是助手"}
        assert sent["temperature"] == 0.2
        assert "response_format" not in sent
        assert "max_tokens" not in sent

        assert response.content == "你好！"
        assert response.tokens_in == 12
        assert response.tokens_out == 5
        assert response.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_json_mode_sets_response_format(self):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent.update(json.loads(request.content))
            return httpx.Response(200, json=completion_body('{"a": 1}'))

        adapter = adapter_with(handler)
        await adapter.chat_completion("gpt-4o-mini", MESSAGES, max_tokens=100, json_mode=True)

        assert sent["response_format"] == {"type": "json_object"}
        assert sent["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_missing_usage_counts_zero(self):
        adapter = adapter_with(lambda request: httpx.Response(200, json=completion_body(usage=None)))
        response = await adapter.chat_completion("gpt-4o-mini", MESSAGES)
        assert (response.tokens_in, response.tokens_out) == (0, 0)

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        """未配置密钥时不发起请求"""
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("不应发起请求")

        with pytest.raises(ConfigurationError):
            await adapter_with(handler, api_key="").chat_completion("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error_type",
        [
            (401, ConfigurationError),
            (403, ConfigurationError),
            (429, TransientOperationError),
            (500, TransientOperationError),
            (503, TransientOperationError),
            (400, StepOperationError),
            (404, StepOperationError),
        ],
    )
    async def test_status_classification(self, status, error_type):
        adapter = adapter_with(lambda request: httpx.Response(status, text="出错了"))

        with pytest.raises(error_type) as exc_info:
            await adapter.chat_completion("gpt-4o-mini", MESSAGES)
        assert str(status) in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("读取超时", request=request)

        with pytest.raises(TransientOperationError, match="超时"):
            await adapter_with(handler).chat_completion("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("连接被拒绝", request=request)

        with pytest.raises(TransientOperationError, match="连接失败"):
            await adapter_with(handler).chat_completion("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"choices": []}, {"unexpected": True}])
    async def test_malformed_body(self, body):
        adapter = adapter_with(lambda request: httpx.Response(200, json=body))

        with pytest.raises(StepOperationError, match="响应格式无效"):
            await adapter.chat_completion("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        adapter = adapter_with(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(StepOperationError):
            await adapter.chat_completion("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key", ["placeholder", "your-api-key", "CHANGEME", "  "])
    async def test_placeholder_api_key_rejected(self, api_key):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("不应发起请求")

        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            await adapter_with(handler, api_key=api_key).chat_completion("gpt-4o-mini", MESSAGES)

    @pytest.mark.asyncio
    async def test_request_key_overrides_default(self):
        """用户密钥优先于全局配置"""
        headers = {}

        def handler(request: httpx.Request) -> httpx.Response:
            headers.update(request.headers)
            return httpx.Response(200, json=completion_body())

        await adapter_with(handler, api_key="").chat_completion(
            "gpt-4o-mini", MESSAGES, api_key="sk-user"
        )
        assert headers["authorization"] == "Bearer sk-user"

    @pytest.mark.asyncio
    async def test_content_chunks_joined(self):
        chunks = [{"type": "text", "text": "你"}, {"type": "image"}, {"type": "text", "text": "好"}]
        adapter = adapter_with(lambda request: httpx.Response(200, json=completion_body(chunks)))

        response = await adapter.chat_completion("gpt-4o-mini", MESSAGES)
        assert response.content == "你好"


class TestMistralAdapter:
    """Mistral 适配器测试"""

    @pytest.mark.asyncio
    async def test_uses_openai_compatible_endpoint(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=completion_body(model="mistral-small-latest"))

        adapter = MistralAdapter("m-key", transport=httpx.MockTransport(handler))
        response = await adapter.chat_completion("mistral-small-latest", MESSAGES)

        assert str(requests[0].url) == "https://api.mistral.ai/v1/chat/completions"
        assert requests[0].headers["Authorization"] == "Bearer m-key"
        assert response.model == "mistral-small-latest"

    @pytest.mark.asyncio
    async def test_missing_key_names_mistral(self):
        adapter = MistralAdapter("", transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        with pytest.raises(ConfigurationError, match="MISTRAL_API_KEY"):
            await adapter.chat_completion("mistral-small-latest", MESSAGES)


class TestAnthropicAdapter:
    """Anthropic 适配器测试"""

    @pytest.mark.asyncio
    async def test_messages_request_and_usage(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "model": "claude-sonnet-4-20250514",
                "content": [{"type": "text", "text": "你好"}, {"type": "text", "text": "！"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 20, "output_tokens": 4},
            })

        adapter = AnthropicAdapter("a-key", transport=httpx.MockTransport(handler))
        response = await adapter.chat_completion("claude-sonnet-4-20250514", MESSAGES, temperature=0.5)

        sent = json.loads(requests[0].content)
        assert str(requests[0].url) == "https://api.anthropic.com/v1/messages"
        assert requests[0].headers["x-api-key"] == "a-key"
        assert requests[0].headers["anthropic-version"] == "2023-06-01"
        assert sent["system"] == "你是助手"
        assert sent["messages"] == [{"role": "user", "content": "你好"}]
        assert sent["max_tokens"] == 4096
        assert sent["temperature"] == 0.5

        assert response.content == "你好！"
        assert (response.tokens_in, response.tokens_out) == (20, 4)
        assert response.finish_reason == "end_turn"

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self):
        adapter = AnthropicAdapter(
            "a-key", transport=httpx.MockTransport(lambda request: httpx.Response(529, text="overloaded"))
        )
        with pytest.raises(TransientOperationError):
            await adapter.chat_completion("claude-sonnet-4-20250514", MESSAGES)

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        adapter = AnthropicAdapter(
            "a-key", transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"id": "x"}))
        )
        with pytest.raises(StepOperationError, match="响应格式无效"):
            await adapter.chat_completion("claude-sonnet-4-20250514", MESSAGES)


class TestGoogleAdapter:
    """Gemini 适配器测试"""

    @pytest.mark.asyncio
    async def test_generate_content_request_and_usage(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "candidates": [
                    {"content": {"parts": [{"text": '{"a": 1}'}]}, "finishReason": "STOP"}
                ],
                "usageMetadata": {"promptTokenCount": 9, "candidatesTokenCount": 3},
                "modelVersion": "gemini-2.5-flash",
            })

        adapter = GoogleAdapter("g-key", transport=httpx.MockTransport(handler))
        response = await adapter.chat_completion(
            "gemini-2.5-flash", MESSAGES, max_tokens=64, json_mode=True
        )

        sent = json.loads(requests[0].content)
        assert str(requests[0].url) == (
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent"
        )
        assert requests[0].headers["x-goog-api-key"] == "g-key"
        assert sent["systemInstruction"] == {"parts": [{"text": "你是助手"}]}
        assert sent["contents"] == [{"role": "user", "parts": [{"text": "你好"}]}]
        assert sent["generationConfig"] == {
            "maxOutputTokens": 64,
            "responseMimeType": "application/json",
        }

        assert response.content == '{"a": 1}'
        assert (response.tokens_in, response.tokens_out) == (9, 3)
        assert response.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_no_candidates_is_malformed(self):
        adapter = GoogleAdapter(
            "g-key", transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"candidates": []}))
        )
        with pytest.raises(StepOperationError):
            await adapter.chat_completion("gemini-2.5-flash", MESSAGES)


class TestBuildAdapters:
    """适配器注册测试"""

    @pytest.mark.asyncio
    async def test_every_provider_has_adapter(self):
        adapters = build_adapters(Settings(_env_file=None, OPENAI_API_KEY="sk", MISTRAL_API_KEY="m"))
        try:
            assert {pricing.provider for pricing in SUPPORTED_MODELS.values()} <= set(adapters)
            assert adapters["openai"].api_key == "sk"
            assert adapters["mistral"].api_key == "m"
        finally:
            for adapter in adapters.values():
                await adapter.close()
