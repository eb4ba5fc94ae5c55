"""OpenAI (GPT) provider implementation."""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from src.logging_config.performance import log_performance
from src.model_providers.base import (
    BaseProvider,
    ResponsePart,
    TextPart,
    ToolUsePart,
    build_result,
)
from src.model_providers.config import (
    CompletionRequest,
    CompletionResult,
    ProviderConfig,
    ProviderType,
    StreamChunk,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    """Provider for OpenAI GPT models (gpt-4-turbo, gpt-4o, gpt-3.5-turbo).

    Also serves as base class for OpenAI-compatible APIs (Perplexity).

    Two API styles are supported. Chat Completions is the default; when
    ``config.extra["use_responses_api"]`` is set the newer Responses endpoint
    is tried first and, if the account or gateway answers 404, the same call
    is repeated against Chat Completions. That retry stays inside this
    provider and is unrelated to the cross-provider fallback chain.
    """

    provider_type = ProviderType.OPENAI
    supports_responses_api = True

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            kwargs = {
                "api_key": self.config.api_key,
                "timeout": self.config.timeout_seconds,
                "max_retries": self.config.max_retries,
            }
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        return self._client

    def _vendor_errors(self) -> tuple[type[BaseException], ...]:
        import openai
        return (openai.OpenAIError,)

    @property
    def use_responses_api(self) -> bool:
        return self.supports_responses_api and bool(
            self.config.extra.get("use_responses_api", False)
        )

    def convert_tools_to_native(self, tools: list[dict]) -> list[dict]:
        """Convert Anthropic tool format to OpenAI function calling format.

        Anthropic:  {"name", "description", "input_schema": {"type": "object", ...}}
        OpenAI:     {"type": "function", "function": {"name", "description", "parameters": ...}}
        """
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for tool in tools
        ]

    def _chat_kwargs(self, request: CompletionRequest, model: str) -> dict:
        kwargs = {
            "model": model,
            "messages": [m.to_dict() for m in request.messages],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            kwargs["tools"] = self.convert_tools_to_native(request.tools)
        return kwargs

    # ── Single shot ───────────────────────────────────────────────────

    @log_performance(threshold_ms=20000)
    async def complete(self, request: CompletionRequest, model: str) -> CompletionResult:
        errors = self._wrapped_errors()
        try:
            if self.use_responses_api:
                import openai
                try:
                    return await self._complete_responses(request, model)
                except openai.NotFoundError:
                    logger.warning(
                        "Responses API not available for %s, retrying with chat completions",
                        model,
                        extra={"provider": self.provider_type.value, "model": model},
                    )
            return await self._complete_chat(request, model)
        except errors as exc:
            raise self._call_failed(exc) from exc

    async def _complete_chat(self, request: CompletionRequest, model: str) -> CompletionResult:
        response = await self._get_client().chat.completions.create(
            **self._chat_kwargs(request, model)
        )
        if not response.choices:
            raise self._call_failed(IndexError("response has no choices"))
        choice = response.choices[0]
        message = choice.message

        parts: list[ResponsePart] = []
        if message.content:
            parts.append(TextPart(message.content))
        for tc in message.tool_calls or []:
            try:
                args = json.loads(tc.function.arguments)
            except (json.JSONDecodeError, TypeError):
                args = {}
            parts.append(ToolUsePart(call_id=tc.id, name=tc.function.name, arguments=args))

        return build_result(
            parts,
            provider=self.provider_type,
            model=getattr(response, "model", None) or model,
            usage=self._chat_usage(response.usage),
            finish_reason=choice.finish_reason,
            response_id=getattr(response, "id", None),
        )

    async def _complete_responses(self, request: CompletionRequest, model: str) -> CompletionResult:
        kwargs = {
            "model": model,
            "input": [m.to_dict() for m in request.conversation],
            "max_output_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.system_prompt:
            kwargs["instructions"] = request.system_prompt
        response = await self._get_client().responses.create(**kwargs)

        usage = getattr(response, "usage", None)
        details = getattr(usage, "input_tokens_details", None)
        token_usage = TokenUsage.of(
            getattr(usage, "input_tokens", 0) if usage else 0,
            getattr(usage, "output_tokens", 0) if usage else 0,
            cached=getattr(details, "cached_tokens", 0) if details else 0,
        )
        finish = "length" if getattr(response, "status", "") == "incomplete" else "stop"

        return build_result(
            [TextPart(response.output_text or "")],
            provider=self.provider_type,
            model=getattr(response, "model", None) or model,
            usage=token_usage,
            finish_reason=finish,
            response_id=getattr(response, "id", None),
            api_style="responses",
        )

    @staticmethod
    def _chat_usage(usage) -> TokenUsage:
        if not usage:
            return TokenUsage()
        details = getattr(usage, "prompt_tokens_details", None)
        return TokenUsage.of(
            getattr(usage, "prompt_tokens", 0),
            getattr(usage, "completion_tokens", 0),
            cached=getattr(details, "cached_tokens", 0) if details else 0,
        )

    # ── Streaming ─────────────────────────────────────────────────────

    async def stream(self, request: CompletionRequest, model: str) -> AsyncIterator[StreamChunk]:
        errors = self._wrapped_errors()
        kwargs = self._chat_kwargs(request, model)
        kwargs.pop("tools", None)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        try:
            response = await self._get_client().chat.completions.create(**kwargs)
        except errors as exc:
            raise self._call_failed(exc, "stream") from exc

        usage = None
        try:
            async for chunk in response:
                if getattr(chunk, "usage", None):
                    usage = self._chat_usage(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield StreamChunk(content=delta)
        except errors as exc:
            raise self._call_failed(exc, "stream") from exc
        finally:
            await response.close()

        yield StreamChunk(content="", done=True, usage=usage)
