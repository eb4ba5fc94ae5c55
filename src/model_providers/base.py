"""Abstract base class for all LLM providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Optional, Union

from src.model_providers.config import (
    CompletionRequest,
    CompletionResult,
    ProviderConfig,
    ProviderType,
    StreamChunk,
    TokenUsage,
    ToolCall,
)
from src.model_providers.errors import ProviderCallFailed


# ── Response parts ────────────────────────────────────────────────────
# Every vendor answer is first turned into a sequence of these parts, then
# ``build_result`` converts the sequence into a ``CompletionResult``.


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ToolUsePart:
    call_id: str
    name: str
    arguments: dict


@dataclass(frozen=True)
class IgnoredPart:
    """A part the canonical result has no slot for (e.g. thinking blocks)."""

    kind: str


ResponsePart = Union[TextPart, ToolUsePart, IgnoredPart]

# Raised while reading a vendor response that lacks the expected shape.
MALFORMED_RESPONSE_ERRORS: tuple[type[BaseException], ...] = (
    AttributeError,
    IndexError,
    KeyError,
    TypeError,
)


FINISH_REASONS = {
    # OpenAI / Perplexity
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "content_filter",
    # Anthropic
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_use",
    "refusal": "content_filter",
    # Gemini
    "safety": "content_filter",
    "recitation": "content_filter",
    "blocklist": "content_filter",
    "prohibited_content": "content_filter",
}


def normalize_finish_reason(raw: Optional[str]) -> str:
    """Map a vendor finish reason onto stop/length/tool_use/content_filter."""
    if not raw:
        return "stop"
    return FINISH_REASONS.get(str(raw).lower(), str(raw).lower())


def build_result(
    parts: Iterable[ResponsePart],
    *,
    provider: ProviderType,
    model: str,
    usage: TokenUsage,
    finish_reason: Optional[str],
    response_id: Optional[str] = None,
    api_style: str = "chat_completions",
) -> CompletionResult:
    """Convert parsed response parts into the canonical result."""
    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for part in parts:
        if isinstance(part, TextPart):
            texts.append(part.text)
        elif isinstance(part, ToolUsePart):
            tool_calls.append(ToolCall(
                call_id=part.call_id,
                name=part.name,
                arguments=part.arguments,
            ))
        elif isinstance(part, IgnoredPart):
            continue
        else:
            raise TypeError(f"Unhandled response part: {type(part).__name__}")

    reason = normalize_finish_reason(finish_reason)
    if tool_calls and reason == "stop":
        reason = "tool_use"

    return CompletionResult(
        content="".join(texts),
        model=model,
        provider=provider,
        tokens_used=usage,
        finish_reason=reason,
        tool_calls=tool_calls,
        response_id=response_id,
        api_style=api_style,
    )


class BaseProvider(abc.ABC):
    """Interface that every model provider must implement.

    Subclasses handle:
    1. Converting the canonical request to the vendor's call
    2. Parsing the vendor response into ``ResponsePart`` values
    3. Wrapping vendor exceptions and malformed responses in ``ProviderCallFailed``

    The vendor client is created lazily on first use.
    """

    provider_type: ProviderType

    def __init__(self, config: ProviderConfig):
        self.config = config

    # ── Abstract methods ──────────────────────────────────────────────

    @abc.abstractmethod
    async def complete(self, request: CompletionRequest, model: str) -> CompletionResult:
        """Send a single-shot request and return the normalized result."""

    @abc.abstractmethod
    def stream(self, request: CompletionRequest, model: str) -> AsyncIterator[StreamChunk]:
        """Stream the completion as chunks.

        Implemented as an async generator. The last chunk has ``done=True``
        and no content. Closing the generator early must release the
        underlying HTTP response.
        """

    @abc.abstractmethod
    def _vendor_errors(self) -> tuple[type[BaseException], ...]:
        """Exception types raised by the vendor SDK."""

    # ── Shared helpers ────────────────────────────────────────────────

    def is_available(self) -> bool:
        """True if the provider has a credential configured."""
        return self.config.is_configured

    def convert_tools_to_native(self, tools: list[dict]) -> list:
        """Convert Anthropic-format tool definitions to this provider's format.

        Default implementation returns tools unchanged (suitable for Anthropic).
        """
        return tools

    def _wrapped_errors(self) -> tuple[type[BaseException], ...]:
        """Vendor errors plus malformed-response errors, both surfaced as call failures."""
        return self._vendor_errors() + MALFORMED_RESPONSE_ERRORS

    def _call_failed(self, exc: BaseException, operation: str = "complete") -> ProviderCallFailed:
        return ProviderCallFailed(self.provider_type, exc, operation)
