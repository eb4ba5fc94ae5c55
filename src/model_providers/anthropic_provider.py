"""Anthropic (Claude) provider implementation."""

from __future__ import annotations

from typing import AsyncIterator

from src.logging_config.performance import log_performance
from src.model_providers.base import (
    BaseProvider,
    IgnoredPart,
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


class AnthropicProvider(BaseProvider):
    """Provider for Anthropic Claude models.

    Tool definitions are already in Anthropic format and pass through
    unchanged. System messages are lifted into the ``system`` parameter.
    """

    provider_type = ProviderType.ANTHROPIC

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            kwargs = {
                "api_key": self.config.api_key,
                "timeout": self.config.timeout_seconds,
                "max_retries": self.config.max_retries,
            }
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            self._client = anthropic.AsyncAnthropic(**kwargs)
        return self._client

    def _vendor_errors(self) -> tuple[type[BaseException], ...]:
        import anthropic
        return (anthropic.AnthropicError,)

    def _message_kwargs(self, request: CompletionRequest, model: str) -> dict:
        kwargs = {
            "model": model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [m.to_dict() for m in request.conversation],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.tools:
            kwargs["tools"] = self.convert_tools_to_native(request.tools)
        return kwargs

    @staticmethod
    def _parse_block(block) -> ResponsePart:
        kind = getattr(block, "type", "")
        if kind == "text":
            return TextPart(block.text)
        if kind == "tool_use":
            return ToolUsePart(
                call_id=block.id,
                name=block.name,
                arguments=dict(block.input or {}),
            )
        return IgnoredPart(kind or type(block).__name__)

    @staticmethod
    def _usage(usage) -> TokenUsage:
        if not usage:
            return TokenUsage()
        return TokenUsage.of(
            getattr(usage, "input_tokens", 0),
            getattr(usage, "output_tokens", 0),
            cached=getattr(usage, "cache_read_input_tokens", 0) or 0,
            cache_write=getattr(usage, "cache_creation_input_tokens", 0) or 0,
        )

    @log_performance(threshold_ms=20000)
    async def complete(self, request: CompletionRequest, model: str) -> CompletionResult:
        try:
            response = await self._get_client().messages.create(
                **self._message_kwargs(request, model)
            )
            return build_result(
                [self._parse_block(block) for block in response.content],
                provider=self.provider_type,
                model=getattr(response, "model", None) or model,
                usage=self._usage(getattr(response, "usage", None)),
                finish_reason=response.stop_reason,
                response_id=getattr(response, "id", None),
                api_style="messages",
            )
        except self._wrapped_errors() as exc:
            raise self._call_failed(exc) from exc

    async def stream(self, request: CompletionRequest, model: str) -> AsyncIterator[StreamChunk]:
        errors = self._wrapped_errors()
        kwargs = self._message_kwargs(request, model)
        kwargs.pop("tools", None)

        usage = None
        try:
            # The SDK context manager closes the HTTP response on exit,
            # including when this generator is closed mid-stream.
            async with self._get_client().messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamChunk(content=text)
                final = await stream.get_final_message()
                usage = self._usage(getattr(final, "usage", None))
        except errors as exc:
            raise self._call_failed(exc, "stream") from exc

        yield StreamChunk(content="", done=True, usage=usage)
