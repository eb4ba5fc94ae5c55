"""Configuration types and static capability tables for the AI providers."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Optional


class ProviderType(enum.Enum):
    """Supported LLM provider backends."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    PERPLEXITY = "perplexity"


class ModelTier(enum.Enum):
    """Model capability bands."""

    FLAGSHIP = "flagship"     # Best quality (Claude Opus, GPT-4 Turbo, Gemini Pro)
    STANDARD = "standard"     # Good balance (Claude Sonnet, GPT-4)
    FAST = "fast"             # Cost-first  (Claude Haiku, GPT-3.5, Gemini Flash)


class MessageRole(str, enum.Enum):
    """Message role in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ModelInfo:
    """Metadata for a specific model."""

    model_id: str
    provider: ProviderType
    display_name: str
    tier: ModelTier
    context_window: int = 128_000
    max_output_tokens: int = 4096
    supports_tool_use: bool = True
    supports_streaming: bool = True
    cost_per_1k_input: float = 0.0   # USD per 1K input tokens
    cost_per_1k_output: float = 0.0  # USD per 1K output tokens


@dataclass
class ProviderConfig:
    """Connection configuration for a provider."""

    provider: ProviderType
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    default_model: Optional[str] = None
    timeout_seconds: int = 60
    max_retries: int = 2
    extra: dict = field(default_factory=dict)

    @property
    def is_configured(self) -> bool:
        """True if the provider has enough config to make requests."""
        return bool(self.api_key)


# ── Canonical request / response types ────────────────────────────────


@dataclass(frozen=True)
class Message:
    """A single message in a conversation."""

    role: MessageRole
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class CompletionRequest:
    """Provider-independent completion request."""

    messages: list[Message]
    max_tokens: int = 1024
    temperature: float = 0.7
    stream: bool = False
    tools: Optional[list[dict]] = None

    def __post_init__(self):
        if not self.messages:
            raise ValueError("messages is required and cannot be empty")
        if not 0.0 <= self.temperature <= 2.0:
            raise ValueError(f"temperature must be within [0, 2], got {self.temperature}")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CompletionRequest":
        """Build a request from the caller schema.

        ``{"messages": [{"role", "content"}], "maxTokens"?, "temperature"?,
        "stream"?, "tools"?}``; snake_case keys are accepted too.
        """
        raw_messages = payload.get("messages") or []
        messages = []
        for raw in raw_messages:
            try:
                role = MessageRole(raw["role"])
            except (KeyError, ValueError) as exc:
                raise ValueError(f"invalid message role: {raw.get('role')!r}") from exc
            messages.append(Message(role=role, content=str(raw.get("content", ""))))

        kwargs: dict[str, Any] = {"messages": messages}
        max_tokens = payload.get("maxTokens", payload.get("max_tokens"))
        if max_tokens is not None:
            kwargs["max_tokens"] = int(max_tokens)
        if payload.get("temperature") is not None:
            kwargs["temperature"] = float(payload["temperature"])
        if "stream" in payload:
            kwargs["stream"] = bool(payload["stream"])
        if payload.get("tools"):
            kwargs["tools"] = list(payload["tools"])
        return cls(**kwargs)

    @property
    def system_prompt(self) -> str:
        """All system messages joined, for vendors that take it separately."""
        return "\n\n".join(
            m.content for m in self.messages if m.role == MessageRole.SYSTEM
        )

    @property
    def conversation(self) -> list[Message]:
        """Messages without the system prompt."""
        return [m for m in self.messages if m.role != MessageRole.SYSTEM]


@dataclass(frozen=True)
class TokenUsage:
    """Token usage from a completion, including prompt-cache telemetry."""

    prompt: int = 0
    completion: int = 0
    total: int = 0
    cached: int = 0        # prompt tokens served from the vendor cache
    cache_write: int = 0   # prompt tokens written to the vendor cache

    @classmethod
    def of(cls, prompt: int, completion: int, cached: int = 0, cache_write: int = 0) -> "TokenUsage":
        prompt = prompt or 0
        completion = completion or 0
        return cls(
            prompt=prompt,
            completion=completion,
            total=prompt + completion,
            cached=cached or 0,
            cache_write=cache_write or 0,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt=self.prompt + other.prompt,
            completion=self.completion + other.completion,
            total=self.total + other.total,
            cached=self.cached + other.cached,
            cache_write=self.cache_write + other.cache_write,
        )


@dataclass
class ToolCall:
    """Normalized tool call extracted from any provider's response."""

    call_id: str
    name: str
    arguments: dict


@dataclass
class CompletionResult:
    """Normalized response from any provider."""

    content: str
    model: str
    provider: ProviderType
    tokens_used: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    tool_calls: list[ToolCall] = field(default_factory=list)
    response_id: Optional[str] = None
    api_style: str = "chat_completions"
    latency_ms: float = 0.0

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


@dataclass(frozen=True)
class StreamChunk:
    """One element of a completion stream.

    The terminal chunk has ``done=True``, empty content and carries the
    usage totals when the vendor reports them.
    """

    content: str
    done: bool = False
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class ModelChoice:
    """A concrete ``{provider, model}`` pair."""

    provider: ProviderType
    model: str


# ── Model catalog ─────────────────────────────────────────────────────

MODEL_CATALOG: dict[str, ModelInfo] = {
    # OpenAI
    "gpt-4-turbo": ModelInfo(
        model_id="gpt-4-turbo",
        provider=ProviderType.OPENAI,
        display_name="GPT-4 Turbo",
        tier=ModelTier.FLAGSHIP,
        context_window=128_000,
        max_output_tokens=4_096,
        cost_per_1k_input=0.01,
        cost_per_1k_output=0.03,
    ),
    "gpt-4o": ModelInfo(
        model_id="gpt-4o",
        provider=ProviderType.OPENAI,
        display_name="GPT-4o",
        tier=ModelTier.FLAGSHIP,
        context_window=128_000,
        max_output_tokens=16_384,
        cost_per_1k_input=0.005,
        cost_per_1k_output=0.015,
    ),
    "gpt-4": ModelInfo(
        model_id="gpt-4",
        provider=ProviderType.OPENAI,
        display_name="GPT-4",
        tier=ModelTier.STANDARD,
        context_window=8_192,
        max_output_tokens=8_192,
        cost_per_1k_input=0.03,
        cost_per_1k_output=0.06,
    ),
    "gpt-3.5-turbo": ModelInfo(
        model_id="gpt-3.5-turbo",
        provider=ProviderType.OPENAI,
        display_name="GPT-3.5 Turbo",
        tier=ModelTier.FAST,
        context_window=16_385,
        max_output_tokens=4_096,
        cost_per_1k_input=0.0005,
        cost_per_1k_output=0.0015,
    ),
    # Anthropic
    "claude-3-5-sonnet-20241022": ModelInfo(
        model_id="claude-3-5-sonnet-20241022",
        provider=ProviderType.ANTHROPIC,
        display_name="Claude 3.5 Sonnet",
        tier=ModelTier.FLAGSHIP,
        context_window=200_000,
        max_output_tokens=8_192,
        cost_per_1k_input=0.003,
        cost_per_1k_output=0.015,
    ),
    "claude-3-opus-20240229": ModelInfo(
        model_id="claude-3-opus-20240229",
        provider=ProviderType.ANTHROPIC,
        display_name="Claude 3 Opus",
        tier=ModelTier.FLAGSHIP,
        context_window=200_000,
        max_output_tokens=4_096,
        cost_per_1k_input=0.015,
        cost_per_1k_output=0.075,
    ),
    "claude-3-sonnet-20240229": ModelInfo(
        model_id="claude-3-sonnet-20240229",
        provider=ProviderType.ANTHROPIC,
        display_name="Claude 3 Sonnet",
        tier=ModelTier.STANDARD,
        context_window=200_000,
        max_output_tokens=4_096,
        cost_per_1k_input=0.003,
        cost_per_1k_output=0.015,
    ),
    "claude-3-haiku-20240307": ModelInfo(
        model_id="claude-3-haiku-20240307",
        provider=ProviderType.ANTHROPIC,
        display_name="Claude 3 Haiku",
        tier=ModelTier.FAST,
        context_window=200_000,
        max_output_tokens=4_096,
        cost_per_1k_input=0.00025,
        cost_per_1k_output=0.00125,
    ),
    # Google Gemini
    "gemini-1.5-pro": ModelInfo(
        model_id="gemini-1.5-pro",
        provider=ProviderType.GEMINI,
        display_name="Gemini 1.5 Pro",
        tier=ModelTier.FLAGSHIP,
        context_window=2_000_000,
        max_output_tokens=8_192,
        cost_per_1k_input=0.00125,
        cost_per_1k_output=0.005,
    ),
    "gemini-1.5-flash": ModelInfo(
        model_id="gemini-1.5-flash",
        provider=ProviderType.GEMINI,
        display_name="Gemini 1.5 Flash",
        tier=ModelTier.FAST,
        context_window=1_000_000,
        max_output_tokens=8_192,
        cost_per_1k_input=0.000075,
        cost_per_1k_output=0.0003,
    ),
    # Perplexity (online research models, no tool calling)
    "llama-3.1-sonar-huge-128k-online": ModelInfo(
        model_id="llama-3.1-sonar-huge-128k-online",
        provider=ProviderType.PERPLEXITY,
        display_name="Sonar Huge Online",
        tier=ModelTier.FLAGSHIP,
        context_window=127_072,
        supports_tool_use=False,
        cost_per_1k_input=0.005,
        cost_per_1k_output=0.005,
    ),
    "llama-3.1-sonar-large-128k-online": ModelInfo(
        model_id="llama-3.1-sonar-large-128k-online",
        provider=ProviderType.PERPLEXITY,
        display_name="Sonar Large Online",
        tier=ModelTier.STANDARD,
        context_window=127_072,
        supports_tool_use=False,
        cost_per_1k_input=0.001,
        cost_per_1k_output=0.001,
    ),
    "llama-3.1-sonar-small-128k-online": ModelInfo(
        model_id="llama-3.1-sonar-small-128k-online",
        provider=ProviderType.PERPLEXITY,
        display_name="Sonar Small Online",
        tier=ModelTier.FAST,
        context_window=127_072,
        supports_tool_use=False,
        cost_per_1k_input=0.0002,
        cost_per_1k_output=0.0002,
    ),
}


@dataclass(frozen=True)
class ProviderProfile:
    """Static knowledge about one provider: its models and their prices."""

    provider: ProviderType
    default_model: str
    budget_model: str

    @property
    def models(self) -> list[str]:
        return [m.model_id for m in list_models_for_provider(self.provider)]

    def cost_per_1k(self, model_id: str) -> tuple[float, float]:
        """``(input, output)`` USD per 1K tokens; zeros for unknown models."""
        info = get_model_info(model_id)
        if info is None or info.provider != self.provider:
            return (0.0, 0.0)
        return (info.cost_per_1k_input, info.cost_per_1k_output)


PROVIDER_PROFILES: dict[ProviderType, ProviderProfile] = {
    ProviderType.OPENAI: ProviderProfile(
        provider=ProviderType.OPENAI,
        default_model="gpt-4-turbo",
        budget_model="gpt-3.5-turbo",
    ),
    ProviderType.ANTHROPIC: ProviderProfile(
        provider=ProviderType.ANTHROPIC,
        default_model="claude-3-5-sonnet-20241022",
        budget_model="claude-3-haiku-20240307",
    ),
    ProviderType.GEMINI: ProviderProfile(
        provider=ProviderType.GEMINI,
        default_model="gemini-1.5-pro",
        budget_model="gemini-1.5-flash",
    ),
    ProviderType.PERPLEXITY: ProviderProfile(
        provider=ProviderType.PERPLEXITY,
        default_model="llama-3.1-sonar-large-128k-online",
        budget_model="llama-3.1-sonar-small-128k-online",
    ),
}


_SNAPSHOT_SUFFIX = re.compile(r"\d[\d-]*")


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    """Look up model info. Returns None if unknown.

    Vendors echo dated snapshots (``gpt-4-turbo-2024-04-09``,
    ``gpt-3.5-turbo-0125``); those resolve to the catalog id they extend.
    """
    info = MODEL_CATALOG.get(model_id)
    if info is not None or not model_id:
        return info
    for known, info in MODEL_CATALOG.items():
        if model_id.startswith(known + "-") and _SNAPSHOT_SUFFIX.fullmatch(model_id[len(known) + 1:]):
            return info
    return None


def list_models_for_provider(provider: ProviderType) -> list[ModelInfo]:
    """Return all catalog entries for a given provider."""
    return [m for m in MODEL_CATALOG.values() if m.provider == provider]


def list_all_models() -> list[ModelInfo]:
    """Return all models in the catalog."""
    return list(MODEL_CATALOG.values())


def estimate_cost(model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate cost in USD for a given model usage."""
    info = get_model_info(model_id)
    if not info:
        return 0.0
    return (
        (prompt_tokens / 1000) * info.cost_per_1k_input
        + (completion_tokens / 1000) * info.cost_per_1k_output
    )
