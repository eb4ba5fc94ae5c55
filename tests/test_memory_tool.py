"""Tests for the memory tool, its handler and the memory agent."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from src.conversations.manager import ConversationManager
from src.conversations.memory_store import MemoryStore
from src.conversations.memory_tool import (
    CONTINUE_PROMPT,
    MEMORY_TOOL,
    MEMORY_TOOL_NAME,
    MemoryAgent,
    MemoryToolCall,
    MemoryToolHandler,
    format_memories,
)
from src.conversations.models import Memory
from src.db.models import ContextType, MemoryType
from src.model_providers.config import (
    CompletionRequest,
    CompletionResult,
    Message,
    MessageRole,
    ProviderType,
    TokenUsage,
    ToolCall,
)
from src.model_providers.errors import MalformedToolCall
from src.model_providers.policy import SubscriptionTier
from src.model_providers.router import RoutingContext


@pytest_asyncio.fixture
async def conversation(database):
    return await ConversationManager(database).get_or_create("script_1", "user_1", "anthropic", "character")


def _call(arguments, name=MEMORY_TOOL_NAME, call_id="call_1"):
    return ToolCall(call_id=call_id, name=name, arguments=arguments)


def _result(content="", tool_calls=None, tokens=TokenUsage.of(10, 5)):
    return CompletionResult(
        content=content,
        model="claude-3-5-sonnet-20241022",
        provider=ProviderType.ANTHROPIC,
        tokens_used=tokens,
        tool_calls=tool_calls or [],
    )


class TestMemoryToolDefinition:
    def test_anthropic_format(self):
        assert MEMORY_TOOL["name"] == "memory"
        schema = MEMORY_TOOL["input_schema"]
        assert schema["required"] == ["action"]
        assert schema["properties"]["action"]["enum"] == ["store", "retrieve", "list", "update", "delete"]
        assert "character" in schema["properties"]["memory_type"]["enum"]


class TestMemoryToolCall:
    def test_valid_store(self):
        call = MemoryToolCall.parse({"action": "store", "memory_type": "plot", "content": "  Twist  "})
        assert call.memory_type == MemoryType.PLOT
        assert call.content == "Twist"

    def test_extra_fields_ignored(self):
        call = MemoryToolCall.parse({"action": "list", "confidence": 0.9})
        assert call.action == "list"

    @pytest.mark.parametrize("arguments", [
        {"action": "store", "memory_type": "plot"},
        {"action": "store", "content": "no type"},
        {"action": "update", "content": "no id"},
        {"action": "update", "memory_id": "m1"},
        {"action": "delete"},
        {"action": "forget"},
        {"memory_type": "plot"},
        {"action": "store", "memory_type": "gossip", "content": "x"},
    ])
    def test_invalid_arguments(self, arguments):
        with pytest.raises(MalformedToolCall):
            MemoryToolCall.parse(arguments)

    def test_non_object_arguments(self):
        with pytest.raises(MalformedToolCall, match="object"):
            MemoryToolCall.parse(["store"])


class TestFormatMemories:
    def test_uses_summary_or_preview(self):
        memories = [
            Memory(id="1", conversation_id="c", memory_type=MemoryType.CHARACTER,
                   content="long dossier", summary="Character: Ada"),
            Memory(id="2", conversation_id="c", memory_type=MemoryType.FACT, content="x" * 300),
        ]
        lines = format_memories(memories).splitlines()
        assert lines[0] == "[character] Character: Ada"
        assert lines[1] == "[fact] " + "x" * 200


class TestMemoryToolHandler:
    @pytest.mark.asyncio
    async def test_store_and_list(self, database, conversation):
        handler = MemoryToolHandler(MemoryStore(database))

        stored = await handler.handle(conversation.id, _call({
            "action": "store", "memory_type": "character", "content": "Ada hates rain", "summary": "Ada",
        }))
        listed = await handler.handle(conversation.id, _call({"action": "list"}))

        assert stored.startswith("Stored character memory")
        assert listed == "[character] Ada"

    @pytest.mark.asyncio
    async def test_retrieve_filters_by_query(self, database, conversation):
        store = MemoryStore(database)
        handler = MemoryToolHandler(store)
        await store.store(conversation.id, MemoryType.WORLD, "The river runs uphill")
        await store.store(conversation.id, MemoryType.WORLD, "Bells ring at noon")

        found = await handler.handle(conversation.id, _call({"action": "retrieve", "content": "RIVER"}))

        assert found == "[world] The river runs uphill"

    @pytest.mark.asyncio
    async def test_retrieve_nothing(self, database, conversation):
        handler = MemoryToolHandler(MemoryStore(database))
        assert await handler.handle(conversation.id, _call({"action": "retrieve"})) == "No memories found."

    @pytest.mark.asyncio
    async def test_update_and_delete(self, database, conversation):
        store = MemoryStore(database)
        handler = MemoryToolHandler(store)
        memory = await store.store(conversation.id, MemoryType.PLOT, "The heist fails")

        updated = await handler.handle(conversation.id, _call({
            "action": "update", "memory_id": memory.id, "content": "The heist succeeds",
        }))
        assert updated == f"Updated memory {memory.id}"
        assert (await store.get(memory.id)).content == "The heist succeeds"

        deleted = await handler.handle(conversation.id, _call({"action": "delete", "memory_id": memory.id}))
        assert deleted == f"Deleted memory {memory.id}"
        assert await store.get(memory.id) is None

    @pytest.mark.asyncio
    async def test_missing_memory_reported(self, database, conversation):
        handler = MemoryToolHandler(MemoryStore(database))

        updated = await handler.handle(conversation.id, _call({
            "action": "update", "memory_id": "missing", "summary": "x",
        }))
        deleted = await handler.handle(conversation.id, _call({"action": "delete", "memory_id": "missing"}))

        assert updated == "Memory missing not found."
        assert deleted == "Memory missing not found."

    @pytest.mark.asyncio
    async def test_other_tools_and_malformed_calls_skipped(self, database, conversation):
        store = MemoryStore(database)
        handler = MemoryToolHandler(store)

        assert await handler.handle(conversation.id, _call({"q": 1}, name="search")) is None
        assert await handler.handle(conversation.id, _call({"action": "store"})) is None
        assert await store.list(conversation.id) == []


class TestMemoryAgent:
    def _routing(self, **kwargs):
        values = dict(feature="character", tier=SubscriptionTier.PREMIUM, subject_id="script_1", user_id="user_1")
        values.update(kwargs)
        return RoutingContext(**values)

    def _request(self):
        return CompletionRequest(messages=[
            Message(MessageRole.SYSTEM, "You are a novelist's assistant."),
            Message(MessageRole.USER, "Remember that Ada hates rain, then describe her."),
        ])

    @pytest.mark.asyncio
    async def test_requires_subject_and_user(self, database):
        agent = MemoryAgent(AsyncMock(), ConversationManager(database), MemoryStore(database))
        with pytest.raises(ValueError):
            await agent.generate(self._request(), self._routing(user_id=None))

    @pytest.mark.asyncio
    async def test_without_tool_calls_single_round(self, database):
        dispatcher = AsyncMock()
        dispatcher.complete = AsyncMock(return_value=_result("Ada stands in the doorway."))
        agent = MemoryAgent(dispatcher, ConversationManager(database), MemoryStore(database))

        outcome = await agent.generate(self._request(), self._routing())

        assert outcome.result.content == "Ada stands in the doorway."
        assert outcome.memory_operations == 0
        assert outcome.memories_used == 0
        sent = dispatcher.complete.call_args.args[0]
        assert sent.tools[-1] is MEMORY_TOOL
        assert dispatcher.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_loaded_memories_prepended(self, database):
        conversations = ConversationManager(database)
        memories = MemoryStore(database)
        conv = await conversations.get_or_create("script_1", "user_1", ProviderType.ANTHROPIC, ContextType.CHARACTER)
        await memories.store(conv.id, MemoryType.CHARACTER, "Ada is left-handed", summary="Character: Ada")
        dispatcher = AsyncMock()
        dispatcher.complete = AsyncMock(return_value=_result("ok"))
        agent = MemoryAgent(dispatcher, conversations, memories)

        outcome = await agent.generate(self._request(), self._routing(context_type="character"))

        sent = dispatcher.complete.call_args.args[0]
        assert sent.messages[0].role == MessageRole.SYSTEM
        assert sent.messages[0].content == "PERSISTENT MEMORY:\n[character] Character: Ada"
        assert outcome.memories_used == 1
        assert outcome.conversation.id == conv.id

    @pytest.mark.asyncio
    async def test_include_memory_false(self, database):
        conversations = ConversationManager(database)
        memories = MemoryStore(database)
        conv = await conversations.get_or_create("script_1", "user_1", "anthropic", "general")
        await memories.store(conv.id, MemoryType.FACT, "hidden")
        dispatcher = AsyncMock()
        dispatcher.complete = AsyncMock(return_value=_result("ok"))
        agent = MemoryAgent(dispatcher, conversations, memories)

        outcome = await agent.generate(self._request(), self._routing(), include_memory=False)

        assert outcome.memories_used == 0
        assert len(dispatcher.complete.call_args.args[0].messages) == 2

    @pytest.mark.asyncio
    async def test_tool_call_executed_then_follow_up(self, database):
        conversations = ConversationManager(database)
        memories = MemoryStore(database)
        dispatcher = AsyncMock()
        dispatcher.complete = AsyncMock(side_effect=[
            _result(tool_calls=[_call({
                "action": "store", "memory_type": "character", "content": "Ada hates rain",
            })]),
            _result("Ada glares at the clouds.", tokens=TokenUsage.of(30, 20)),
        ])
        agent = MemoryAgent(dispatcher, conversations, memories)

        outcome = await agent.generate(self._request(), self._routing())

        assert outcome.result.content == "Ada glares at the clouds."
        assert outcome.memory_operations == 1
        assert outcome.result.tokens_used.total == 65
        stored = await memories.list(outcome.conversation.id)
        assert [m.content for m in stored] == ["Ada hates rain"]

        follow_up = dispatcher.complete.call_args_list[1].args[0]
        assert follow_up.messages[-2].role == MessageRole.ASSISTANT
        assert follow_up.messages[-2].content == "Updating memory."
        assert follow_up.messages[-1].content.endswith(CONTINUE_PROMPT)
        assert follow_up.tools is None

    @pytest.mark.asyncio
    async def test_malformed_call_not_counted(self, database):
        dispatcher = AsyncMock()
        dispatcher.complete = AsyncMock(side_effect=[
            _result("thinking", tool_calls=[_call({"action": "delete"})]),
            _result("done"),
        ])
        agent = MemoryAgent(dispatcher, ConversationManager(database), MemoryStore(database))

        outcome = await agent.generate(self._request(), self._routing())

        assert outcome.memory_operations == 0
        assert outcome.result.content == "done"
        follow_up = dispatcher.complete.call_args_list[1].args[0]
        assert follow_up.messages[-2].content == "thinking"
        assert follow_up.messages[-1].content == CONTINUE_PROMPT


class TestMemoryHelpers:
    @pytest.mark.asyncio
    async def test_character_profiles(self, database):
        agent = MemoryAgent(AsyncMock(), ConversationManager(database), MemoryStore(database))

        memory = await agent.store_character_profile("script_1", "user_1", "Ada", "Left-handed inventor")

        assert memory.summary == "Character: Ada"
        assert await agent.get_character_profiles("script_1", "user_1") == ["Left-handed inventor"]

    @pytest.mark.asyncio
    async def test_plot_threads(self, database):
        agent = MemoryAgent(AsyncMock(), ConversationManager(database), MemoryStore(database))

        memory = await agent.store_plot_thread("script_1", "user_1", "Who stole the ledger?", status="in-progress")

        assert memory.metadata == {"status": "in-progress"}
        assert await agent.get_plot_threads("script_1", "user_1") == [
            "Plot thread (in-progress): Who stole the ledger?"
        ]

    @pytest.mark.asyncio
    async def test_world_and_research_use_their_contexts(self, database):
        conversations = ConversationManager(database)
        agent = MemoryAgent(AsyncMock(), conversations, MemoryStore(database))

        world = await agent.store_world_building("script_1", "user_1", "Two moons", "astronomy")
        research = await agent.store_research("script_1", "user_1", "Gas lamps arrived in 1812", "lighting")

        assert world.summary == "World-building: astronomy"
        assert research.memory_type == MemoryType.RESEARCH
        contexts = {c.context_type for c in await conversations.list_for_subject("script_1")}
        assert contexts == {ContextType.GENERAL, ContextType.RESEARCH}
        assert all(c.provider == "anthropic" for c in await conversations.list_for_subject("script_1"))
