"""Tests for the completion dispatcher and streaming fallback."""

import logging
from dataclasses import replace
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.conversations.cache_stats import CacheStatsAggregator
from src.conversations.manager import ConversationManager
from src.conversations.usage_ledger import UsageLedger
from src.logging_config.context import get_context_dict, get_feature
from src.model_providers.base import BaseProvider
from src.model_providers.config import (
    CompletionRequest,
    CompletionResult,
    Message,
    MessageRole,
    ModelChoice,
    ProviderConfig,
    ProviderType,
    StreamChunk,
    TokenUsage,
)
from src.model_providers.errors import AllProvidersFailed, ProviderCallFailed, TierLimitExceeded
from src.model_providers.openai_provider import OpenAIProvider
from src.model_providers.policy import TIER_POLICIES, SubscriptionTier
from src.model_providers.registry import ProviderRegistry
from src.model_providers.router import CompletionDispatcher, RoutingContext, month_start


class FakeVendorError(Exception):
    pass


class FakeProvider(BaseProvider):
    """In-memory adapter recording every call it receives."""

    def __init__(self, provider_type, reply="ok", fail=False, chunks=None, fail_stream_after=None):
        self.provider_type = provider_type
        super().__init__(ProviderConfig(provider=provider_type, api_key="test-key"))
        self.reply = reply
        self.fail = fail
        self.chunks = chunks if chunks is not None else ["Hel", "lo"]
        self.fail_stream_after = fail_stream_after
        self.calls = []
        self.stream_closed = False

    def _vendor_errors(self):
        return (FakeVendorError,)

    async def complete(self, request, model):
        self.calls.append(model)
        if self.fail:
            raise self._call_failed(FakeVendorError("boom"))
        return CompletionResult(
            content=self.reply,
            model=model,
            provider=self.provider_type,
            tokens_used=TokenUsage.of(20, 10, cached=8),
        )

    async def stream(self, request, model):
        self.calls.append(model)
        if self.fail:
            raise self._call_failed(FakeVendorError("boom"), "stream")
        try:
            for index, text in enumerate(self.chunks):
                if self.fail_stream_after is not None and index == self.fail_stream_after:
                    raise self._call_failed(FakeVendorError("cut"), "stream")
                yield StreamChunk(content=text)
        finally:
            self.stream_closed = True
        yield StreamChunk(content="", done=True, usage=TokenUsage.of(5, len(self.chunks)))


def _registry(*providers):
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    return registry


def _request(max_tokens=500):
    return CompletionRequest(
        messages=[Message(MessageRole.USER, "Give me three plot twists.")],
        max_tokens=max_tokens,
    )


def _routing(feature="brainstorm", tier=SubscriptionTier.PREMIUM, **kwargs):
    return RoutingContext(feature=feature, tier=tier, **kwargs)


def _openai_adapter(choices, model="gpt-4-turbo", usage=None):
    """Real OpenAI adapter over a mocked SDK client."""
    provider = OpenAIProvider(ProviderConfig(provider=ProviderType.OPENAI, api_key="test-key"))
    provider._client = MagicMock()
    provider._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        id="chatcmpl-1", model=model, choices=choices, usage=usage,
    ))
    return provider


def _chat_choice(content):
    return SimpleNamespace(
        message=SimpleNamespace(content=content, tool_calls=None),
        finish_reason="stop",
    )


# ═══════════════════════════════════════════════════════════════════════
# Routing context
# ═══════════════════════════════════════════════════════════════════════


class TestRoutingContext:
    def test_from_dict_camel_case(self):
        routing = RoutingContext.from_dict({
            "feature": "expand",
            "userTier": "premium",
            "preferredProvider": "anthropic",
            "subjectId": "script_1",
            "userId": "user_1",
        })
        assert routing.tier == SubscriptionTier.PREMIUM
        assert routing.preferred_provider == ProviderType.ANTHROPIC
        assert routing.subject_id == "script_1"
        assert routing.context_type == "general"

    def test_from_dict_snake_case(self):
        routing = RoutingContext.from_dict({"feature": "outline", "tier": "free", "context_type": "plot"})
        assert routing.tier == SubscriptionTier.FREE
        assert routing.preferred_provider is None
        assert routing.context_type == "plot"

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError):
            RoutingContext.from_dict({"feature": "expand", "userTier": "platinum"})

    def test_month_start(self):
        assert month_start(datetime(2026, 3, 17, 12, 30)) == datetime(2026, 3, 1)


# ═══════════════════════════════════════════════════════════════════════
# Single-shot completion
# ═══════════════════════════════════════════════════════════════════════


class TestComplete:
    @pytest.mark.asyncio
    async def test_uses_selected_model(self):
        openai = FakeProvider(ProviderType.OPENAI, reply="twists")
        dispatcher = CompletionDispatcher(_registry(openai))

        result = await dispatcher.complete(_request(), _routing())

        assert result.content == "twists"
        assert result.provider == ProviderType.OPENAI
        assert openai.calls == ["gpt-4-turbo"]
        assert result.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_falls_back_along_chain(self):
        openai = FakeProvider(ProviderType.OPENAI, fail=True)
        anthropic = FakeProvider(ProviderType.ANTHROPIC, reply="from claude")
        gemini = FakeProvider(ProviderType.GEMINI)
        dispatcher = CompletionDispatcher(_registry(openai, anthropic, gemini))

        result = await dispatcher.complete(_request(), _routing())

        assert result.provider == ProviderType.ANTHROPIC
        assert result.content == "from claude"
        assert anthropic.calls == ["claude-3-5-sonnet-20241022"]
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_fallback_logged_as_warning(self, caplog):
        openai = FakeProvider(ProviderType.OPENAI, fail=True)
        anthropic = FakeProvider(ProviderType.ANTHROPIC)
        dispatcher = CompletionDispatcher(_registry(openai, anthropic))

        with caplog.at_level(logging.WARNING, logger="src.model_providers.router"):
            await dispatcher.complete(_request(), _routing())

        messages = [r.getMessage() for r in caplog.records]
        assert any("Falling back to anthropic" in m for m in messages)

    @pytest.mark.asyncio
    async def test_skips_alternates_without_credentials(self):
        openai = FakeProvider(ProviderType.OPENAI, fail=True)
        gemini = FakeProvider(ProviderType.GEMINI, reply="gemini")
        dispatcher = CompletionDispatcher(_registry(openai, gemini))

        result = await dispatcher.complete(_request(), _routing())

        assert result.provider == ProviderType.GEMINI
        assert gemini.calls == ["gemini-1.5-pro"]

    @pytest.mark.asyncio
    async def test_all_fail(self):
        providers = [FakeProvider(p, fail=True) for p in (
            ProviderType.OPENAI, ProviderType.ANTHROPIC, ProviderType.GEMINI
        )]
        dispatcher = CompletionDispatcher(_registry(*providers))

        with pytest.raises(AllProvidersFailed) as exc_info:
            await dispatcher.complete(_request(), _routing())

        err = exc_info.value
        assert err.attempted == [ProviderType.OPENAI, ProviderType.ANTHROPIC, ProviderType.GEMINI]
        assert err.feature == "brainstorm"
        assert err.tier == SubscriptionTier.PREMIUM
        assert len(err.errors) == 3
        assert all(isinstance(e, ProviderCallFailed) for e in err.errors)

    @pytest.mark.asyncio
    async def test_no_credentials_fails_without_calls(self):
        dispatcher = CompletionDispatcher(ProviderRegistry())

        with pytest.raises(AllProvidersFailed) as exc_info:
            await dispatcher.complete(_request(), _routing())

        assert exc_info.value.attempted == []
        assert exc_info.value.provider is None

    @pytest.mark.asyncio
    async def test_selects_among_available_providers(self):
        gemini = FakeProvider(ProviderType.GEMINI)
        dispatcher = CompletionDispatcher(_registry(gemini))

        result = await dispatcher.complete(_request(), _routing(tier=SubscriptionTier.FREE))

        assert result.provider == ProviderType.GEMINI
        assert gemini.calls == ["gemini-1.5-flash"]

    @pytest.mark.asyncio
    async def test_override_skips_selection(self):
        anthropic = FakeProvider(ProviderType.ANTHROPIC)
        dispatcher = CompletionDispatcher(_registry(anthropic))

        await dispatcher.complete(
            _request(),
            _routing(),
            override=ModelChoice(ProviderType.ANTHROPIC, "claude-3-opus-20240229"),
        )

        assert anthropic.calls == ["claude-3-opus-20240229"]

    @pytest.mark.asyncio
    async def test_malformed_response_falls_back(self):
        openai = _openai_adapter(choices=[])
        anthropic = FakeProvider(ProviderType.ANTHROPIC, reply="from claude")
        dispatcher = CompletionDispatcher(_registry(openai, anthropic))

        result = await dispatcher.complete(_request(), _routing())

        assert result.provider == ProviderType.ANTHROPIC
        assert result.content == "from claude"
        assert anthropic.calls == ["claude-3-5-sonnet-20241022"]

    @pytest.mark.asyncio
    async def test_malformed_response_on_every_provider_is_typed(self):
        openai = _openai_adapter(choices=[SimpleNamespace(finish_reason="stop")])
        dispatcher = CompletionDispatcher(_registry(openai))

        with pytest.raises(AllProvidersFailed) as exc_info:
            await dispatcher.complete(_request(), _routing())

        [error] = exc_info.value.errors
        assert isinstance(error, ProviderCallFailed)
        assert isinstance(error.cause, AttributeError)

    @pytest.mark.asyncio
    async def test_tier_limit_checked_before_dispatch(self):
        openai = FakeProvider(ProviderType.OPENAI)
        dispatcher = CompletionDispatcher(_registry(openai))

        with pytest.raises(TierLimitExceeded):
            await dispatcher.complete(_request(max_tokens=5000), _routing(tier=SubscriptionTier.FREE))

        assert openai.calls == []

    @pytest.mark.asyncio
    async def test_monthly_quota_from_ledger(self):
        openai = FakeProvider(ProviderType.OPENAI)
        ledger = AsyncMock()
        ledger.count_requests_since = AsyncMock(return_value=50)
        dispatcher = CompletionDispatcher(_registry(openai), usage_ledger=ledger)

        with pytest.raises(TierLimitExceeded, match="quota"):
            await dispatcher.complete(_request(), _routing(tier=SubscriptionTier.FREE, user_id="user_1"))

        ledger.count_requests_since.assert_awaited_once()
        assert ledger.count_requests_since.call_args.args[0] == "user_1"
        assert openai.calls == []

    @pytest.mark.asyncio
    async def test_unlimited_tier_does_not_query_ledger(self):
        openai = FakeProvider(ProviderType.OPENAI)
        ledger = AsyncMock()
        dispatcher = CompletionDispatcher(_registry(openai), usage_ledger=ledger)

        await dispatcher.complete(_request(), _routing(tier=SubscriptionTier.STUDIO, user_id="user_1"))

        ledger.count_requests_since.assert_not_called()
        ledger.record.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_records_side_effects(self):
        openai = FakeProvider(ProviderType.OPENAI, fail=True)
        anthropic = FakeProvider(ProviderType.ANTHROPIC)
        conversations = AsyncMock()
        conversations.get_or_create = AsyncMock(return_value=type("Conv", (), {"id": "conv-1"})())
        cache_stats = AsyncMock()
        ledger = AsyncMock()
        ledger.count_requests_since = AsyncMock(return_value=0)
        dispatcher = CompletionDispatcher(
            _registry(openai, anthropic),
            conversations=conversations,
            cache_stats=cache_stats,
            usage_ledger=ledger,
        )
        routing = _routing(subject_id="script_1", user_id="user_1")

        await dispatcher.complete(_request(), routing)

        conversations.get_or_create.assert_awaited_once_with("script_1", "user_1", "anthropic", "general")
        conversations.update_stats.assert_awaited_once()
        assert conversations.update_stats.call_args.args[:2] == ("conv-1", 30)
        cache_stats.record_usage.assert_awaited_once()
        assert cache_stats.record_usage.call_args.args[2] == ProviderType.ANTHROPIC
        assert ledger.record.call_args.kwargs["fallback_used"] is True

    @pytest.mark.asyncio
    async def test_side_effect_failure_does_not_fail_request(self, caplog):
        openai = FakeProvider(ProviderType.OPENAI, reply="still fine")
        conversations = AsyncMock()
        conversations.get_or_create = AsyncMock(side_effect=RuntimeError("db down"))
        cache_stats = AsyncMock()
        dispatcher = CompletionDispatcher(
            _registry(openai), conversations=conversations, cache_stats=cache_stats
        )

        with caplog.at_level(logging.ERROR, logger="src.model_providers.router"):
            result = await dispatcher.complete(
                _request(), _routing(subject_id="script_1", user_id="user_1")
            )

        assert result.content == "still fine"
        cache_stats.record_usage.assert_awaited_once()
        assert any("conversation stats" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_without_subject_only_ledger_is_written(self):
        openai = FakeProvider(ProviderType.OPENAI)
        conversations = AsyncMock()
        ledger = AsyncMock()
        dispatcher = CompletionDispatcher(_registry(openai), conversations=conversations, usage_ledger=ledger)

        await dispatcher.complete(_request(), _routing(tier=SubscriptionTier.STUDIO, user_id="user_1"))

        conversations.get_or_create.assert_not_called()
        ledger.record.assert_awaited_once()


# ═══════════════════════════════════════════════════════════════════════
# Streaming
# ═══════════════════════════════════════════════════════════════════════


class TestStream:
    @pytest.mark.asyncio
    async def test_streams_chunks_then_done(self):
        openai = FakeProvider(ProviderType.OPENAI, chunks=["Once ", "upon ", "a time"])
        dispatcher = CompletionDispatcher(_registry(openai))

        stream = await dispatcher.stream(_request(), _routing())
        chunks = [chunk async for chunk in stream]

        assert [c.content for c in chunks[:-1]] == ["Once ", "upon ", "a time"]
        assert chunks[-1].done is True
        assert stream.text == "Once upon a time"
        assert stream.usage.completion == 3
        assert stream.closed is True

    @pytest.mark.asyncio
    async def test_fallback_before_first_chunk(self):
        openai = FakeProvider(ProviderType.OPENAI, fail=True)
        anthropic = FakeProvider(ProviderType.ANTHROPIC, chunks=["Claude"])
        dispatcher = CompletionDispatcher(_registry(openai, anthropic))

        stream = await dispatcher.stream(_request(), _routing())
        text = "".join([chunk.content async for chunk in stream])

        assert text == "Claude"
        assert stream.provider == ProviderType.ANTHROPIC
        assert stream.fallback_used is True

    @pytest.mark.asyncio
    async def test_failure_at_first_chunk_falls_back(self):
        openai = FakeProvider(ProviderType.OPENAI, fail_stream_after=0)
        anthropic = FakeProvider(ProviderType.ANTHROPIC, chunks=["ok"])
        dispatcher = CompletionDispatcher(_registry(openai, anthropic))

        stream = await dispatcher.stream(_request(), _routing())

        assert stream.provider == ProviderType.ANTHROPIC
        assert openai.stream_closed is True

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_propagates(self):
        openai = FakeProvider(ProviderType.OPENAI, chunks=["a", "b", "c"], fail_stream_after=2)
        anthropic = FakeProvider(ProviderType.ANTHROPIC)
        dispatcher = CompletionDispatcher(_registry(openai, anthropic))

        stream = await dispatcher.stream(_request(), _routing())
        received = []
        with pytest.raises(ProviderCallFailed):
            async for chunk in stream:
                received.append(chunk.content)

        assert received == ["a", "b"]
        assert anthropic.calls == []
        assert stream.closed is True

    @pytest.mark.asyncio
    async def test_early_close_releases_adapter(self):
        openai = FakeProvider(ProviderType.OPENAI, chunks=["a", "b", "c"])
        dispatcher = CompletionDispatcher(_registry(openai))

        async with await dispatcher.stream(_request(), _routing()) as stream:
            async for chunk in stream:
                break

        assert stream.closed is True
        assert openai.stream_closed is True

    @pytest.mark.asyncio
    async def test_records_on_done_chunk(self):
        openai = FakeProvider(ProviderType.OPENAI, chunks=["x", "y"])
        ledger = AsyncMock()
        dispatcher = CompletionDispatcher(_registry(openai), usage_ledger=ledger)

        stream = await dispatcher.stream(_request(), _routing(tier=SubscriptionTier.STUDIO, user_id="user_1"))
        ledger.record.assert_not_called()
        async for _ in stream:
            pass

        ledger.record.assert_awaited_once()
        assert ledger.record.call_args.kwargs["usage"].completion == 2
        assert ledger.record.call_args.kwargs["fallback_used"] is False

    @pytest.mark.asyncio
    async def test_done_side_effects_run_in_request_context(self):
        openai = FakeProvider(ProviderType.OPENAI, chunks=["x"])
        seen = {}

        async def record(**kwargs):
            seen.update(get_context_dict())

        ledger = AsyncMock()
        ledger.record.side_effect = record
        dispatcher = CompletionDispatcher(_registry(openai), usage_ledger=ledger)
        routing = _routing(tier=SubscriptionTier.STUDIO, subject_id="script_1", user_id="user_1")

        stream = await dispatcher.stream(_request(), routing)
        assert get_feature() == ""
        async for _ in stream:
            pass

        assert seen["feature"] == "brainstorm"
        assert seen["user_id"] == "user_1"
        assert seen["subject_id"] == "script_1"
        assert seen["tier"] == "studio"
        assert seen["request_id"]

    @pytest.mark.asyncio
    async def test_stream_all_fail(self):
        openai = FakeProvider(ProviderType.OPENAI, fail=True)
        dispatcher = CompletionDispatcher(_registry(openai))

        with pytest.raises(AllProvidersFailed):
            await dispatcher.stream(_request(), _routing())

    @pytest.mark.asyncio
    async def test_stream_tier_limit(self):
        dispatcher = CompletionDispatcher(_registry(FakeProvider(ProviderType.OPENAI)))

        with pytest.raises(TierLimitExceeded):
            await dispatcher.stream(_request(), _routing(feature="critique", tier=SubscriptionTier.FREE))


# ═══════════════════════════════════════════════════════════════════════
# End to end with the database
# ═══════════════════════════════════════════════════════════════════════


class TestDispatcherWithDatabase:
    @pytest.mark.asyncio
    async def test_budget_request_on_single_provider(self, database):
        gemini = FakeProvider(ProviderType.GEMINI, reply="ideas")
        conversations = ConversationManager(database)
        cache_stats = CacheStatsAggregator(database)
        ledger = UsageLedger(database)
        dispatcher = CompletionDispatcher(
            _registry(gemini),
            conversations=conversations,
            cache_stats=cache_stats,
            usage_ledger=ledger,
        )
        routing = _routing(tier=SubscriptionTier.FREE, subject_id="script_1", user_id="user_1")

        result = await dispatcher.complete(_request(), routing)

        assert result.model == "gemini-1.5-flash"
        convs = await conversations.list_for_subject("script_1", "user_1")
        assert len(convs) == 1
        assert convs[0].provider == "gemini"
        assert convs[0].total_requests == 1
        assert convs[0].total_tokens == 30
        assert convs[0].metadata["last_model"] == "gemini-1.5-flash"

        stats = await cache_stats.aggregate("script_1", "user_1", ProviderType.GEMINI)
        assert stats.cache_hits == 1
        assert stats.tokens_cached == 8
        assert stats.tokens_saved == 6
        assert stats.requests_count == 1

        assert await ledger.count_requests_since("user_1", month_start()) == 1

    @pytest.mark.asyncio
    async def test_quota_enforced_from_recorded_usage(self, database):
        openai = FakeProvider(ProviderType.OPENAI)
        ledger = UsageLedger(database)
        for _ in range(3):
            await ledger.record("user_1", "expand", ProviderType.OPENAI, "gpt-3.5-turbo", TokenUsage.of(1, 1))
        dispatcher = CompletionDispatcher(_registry(openai), usage_ledger=ledger)

        policies = dict(TIER_POLICIES)
        policies[SubscriptionTier.FREE] = replace(TIER_POLICIES[SubscriptionTier.FREE], max_requests_per_month=3)
        dispatcher.tier_policies = policies

        with pytest.raises(TierLimitExceeded):
            await dispatcher.complete(_request(), _routing(tier=SubscriptionTier.FREE, user_id="user_1"))
        assert openai.calls == []

    @pytest.mark.asyncio
    async def test_dated_vendor_model_priced_from_catalog(self, database):
        usage = SimpleNamespace(
            prompt_tokens=10_000,
            completion_tokens=10_000,
            prompt_tokens_details=SimpleNamespace(cached_tokens=8_000),
        )
        openai = _openai_adapter(
            choices=[_chat_choice("Three twists")],
            model="gpt-4-turbo-2024-04-09",
            usage=usage,
        )
        cache_stats = CacheStatsAggregator(database)
        ledger = UsageLedger(database)
        dispatcher = CompletionDispatcher(_registry(openai), cache_stats=cache_stats, usage_ledger=ledger)
        routing = _routing(subject_id="script_1", user_id="user_1")

        result = await dispatcher.complete(_request(), routing)

        assert result.model == "gpt-4-turbo-2024-04-09"
        summary = await ledger.summarize("user_1")
        assert summary.cost_usd == pytest.approx(0.4)
        stats = await cache_stats.aggregate("script_1", "user_1", ProviderType.OPENAI)
        assert stats.tokens_saved == 4_000
        assert stats.cost_saved_usd == pytest.approx(0.04)
