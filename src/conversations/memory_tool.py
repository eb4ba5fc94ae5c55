"""Memory tool — lets tool-capable models read and write the memory store.

The tool definition is in Anthropic format; the OpenAI and Gemini adapters
convert it, Perplexity drops it. Tool-call arguments come from model output
and are validated with pydantic before anything touches the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from src.conversations.errors import MemoryNotFound
from src.conversations.memory_store import MemoryStore
from src.conversations.models import Conversation, Memory
from src.db.models import ContextType, MemoryType
from src.model_providers.config import (
    CompletionRequest,
    CompletionResult,
    Message,
    MessageRole,
    ProviderType,
    ToolCall,
)
from src.model_providers.errors import MalformedToolCall

if TYPE_CHECKING:
    from src.conversations.manager import ConversationManager
    from src.model_providers.router import CompletionDispatcher, RoutingContext

logger = logging.getLogger(__name__)

MEMORY_TOOL_NAME = "memory"

MEMORY_TOOL: dict = {
    "name": MEMORY_TOOL_NAME,
    "description": (
        "Store and manage persistent information about characters, plot, "
        "world-building and research.\n\n"
        "Use this tool to:\n"
        "- Store character profiles (traits, backstory, relationships)\n"
        "- Track plot threads and unresolved conflicts\n"
        "- Remember world-building details (locations, rules, timelines)\n"
        "- Save research notes and factual information\n"
        "- Record narrative style and tone guidelines\n\n"
        "The stored information persists across all writing sessions."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "action": {
                "type": "string",
                "enum": ["store", "retrieve", "list", "update", "delete"],
                "description": "Action to perform on memory",
            },
            "memory_type": {
                "type": "string",
                "enum": [t.value for t in MemoryType],
                "description": "Type of memory to store or retrieve",
            },
            "content": {
                "type": "string",
                "description": "Content to store, new content for update, or search query for retrieve",
            },
            "summary": {
                "type": "string",
                "description": "Optional short summary of the memory",
            },
            "memory_id": {
                "type": "string",
                "description": "Memory to update or delete",
            },
        },
        "required": ["action"],
    },
}

CONTINUE_PROMPT = "Memory operation completed. Please continue with your response."

SUMMARY_PREVIEW_CHARS = 200


class MemoryToolCall(BaseModel):
    """Validated arguments of one ``memory`` tool call."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    action: Literal["store", "retrieve", "list", "update", "delete"]
    memory_type: Optional[MemoryType] = None
    content: Optional[str] = None
    summary: Optional[str] = None
    memory_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_action_fields(self) -> "MemoryToolCall":
        if self.action == "store":
            if not self.content:
                raise ValueError("store requires content")
            if self.memory_type is None:
                raise ValueError("store requires memory_type")
        elif self.action == "update":
            if not self.memory_id:
                raise ValueError("update requires memory_id")
            if not self.content and self.summary is None:
                raise ValueError("update requires content or summary")
        elif self.action == "delete" and not self.memory_id:
            raise ValueError("delete requires memory_id")
        return self

    @classmethod
    def parse(cls, arguments: dict) -> "MemoryToolCall":
        """Validate raw tool arguments, raising ``MalformedToolCall``."""
        if not isinstance(arguments, dict):
            raise MalformedToolCall(MEMORY_TOOL_NAME, "arguments must be an object")
        try:
            return cls.model_validate(arguments)
        except ValidationError as exc:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
                for err in exc.errors()
            )
            raise MalformedToolCall(MEMORY_TOOL_NAME, reasons) from exc


def format_memories(memories: list[Memory]) -> str:
    """One line per memory: ``[type] summary`` (or a content preview)."""
    return "\n".join(
        f"[{m.memory_type.value}] {m.summary or m.content[:SUMMARY_PREVIEW_CHARS]}"
        for m in memories
    )


class MemoryToolHandler:
    """Executes validated memory tool calls against a ``MemoryStore``."""

    def __init__(self, memories: MemoryStore):
        self.memories = memories

    async def handle(self, conversation_pk: str, tool_call: ToolCall) -> Optional[str]:
        """Run one tool call and return the text to hand back to the model.

        Returns None for calls to other tools and for malformed calls, which
        are logged and skipped.
        """
        if tool_call.name != MEMORY_TOOL_NAME:
            return None
        try:
            call = MemoryToolCall.parse(tool_call.arguments)
        except MalformedToolCall as exc:
            logger.warning("Skipping tool call %s: %s", tool_call.call_id, exc)
            return None

        if call.action == "store":
            memory = await self.memories.store(
                conversation_pk, call.memory_type, call.content, summary=call.summary
            )
            logger.info("Stored %s memory via tool", call.memory_type.value)
            return f"Stored {call.memory_type.value} memory {memory.id}"

        if call.action in ("retrieve", "list"):
            found = await self.memories.list(conversation_pk, call.memory_type)
            if call.action == "retrieve" and call.content:
                query = call.content.lower()
                found = [
                    m for m in found
                    if query in m.content.lower() or query in (m.summary or "").lower()
                ]
            logger.info("Retrieved %d memories via tool", len(found))
            return format_memories(found) or "No memories found."

        if call.action == "update":
            try:
                await self.memories.update(call.memory_id, content=call.content, summary=call.summary)
            except MemoryNotFound:
                return f"Memory {call.memory_id} not found."
            return f"Updated memory {call.memory_id}"

        deleted = await self.memories.delete(call.memory_id)
        return f"Deleted memory {call.memory_id}" if deleted else f"Memory {call.memory_id} not found."


@dataclass
class MemoryAgentResult:
    result: CompletionResult
    conversation: Conversation
    memories_used: int = 0
    memory_operations: int = 0


class MemoryAgent:
    """Completion with persistent memory.

    Loads the conversation's memories into a system message, offers the
    memory tool, executes any memory calls the model makes and asks once
    more for the final answer. Memory conversations are kept under
    ``memory_provider`` regardless of which provider serves the request.
    """

    memory_provider = ProviderType.ANTHROPIC

    def __init__(
        self,
        dispatcher: "CompletionDispatcher",
        conversations: "ConversationManager",
        memories: MemoryStore,
    ):
        self.dispatcher = dispatcher
        self.conversations = conversations
        self.memories = memories
        self.handler = MemoryToolHandler(memories)

    async def generate(
        self,
        request: CompletionRequest,
        routing: "RoutingContext",
        include_memory: bool = True,
    ) -> MemoryAgentResult:
        if not routing.subject_id or not routing.user_id:
            raise ValueError("memory requests need subject_id and user_id")

        conversation = await self.conversations.get_or_create(
            routing.subject_id, routing.user_id, self.memory_provider, routing.context_type
        )

        messages = list(request.messages)
        memories_used = 0
        if include_memory:
            loaded = await self.memories.list(conversation.id)
            memories_used = len(loaded)
            if loaded:
                messages.insert(0, Message(
                    role=MessageRole.SYSTEM,
                    content=f"PERSISTENT MEMORY:\n{format_memories(loaded)}",
                ))

        tools = list(request.tools or []) + [MEMORY_TOOL]
        first_request = replace(request, messages=messages, tools=tools, stream=False)
        result = await self.dispatcher.complete(first_request, routing)

        memory_calls = [c for c in result.tool_calls if c.name == MEMORY_TOOL_NAME]
        if not memory_calls:
            return MemoryAgentResult(result, conversation, memories_used, 0)

        outputs = []
        for call in memory_calls:
            output = await self.handler.handle(conversation.id, call)
            if output is not None:
                outputs.append(output)

        follow_up = messages + [
            Message(role=MessageRole.ASSISTANT, content=result.content or "Updating memory."),
            Message(
                role=MessageRole.USER,
                content="\n".join(outputs + [CONTINUE_PROMPT]),
            ),
        ]
        final = await self.dispatcher.complete(
            replace(request, messages=follow_up, tools=request.tools or None, stream=False),
            routing,
        )
        final.tokens_used = result.tokens_used + final.tokens_used
        return MemoryAgentResult(final, conversation, memories_used, len(outputs))

    # ── Explicit memory helpers ───────────────────────────────────────

    async def _conversation(self, subject_id: str, user_id: str, context: ContextType) -> Conversation:
        return await self.conversations.get_or_create(subject_id, user_id, self.memory_provider, context)

    async def store_character_profile(
        self, subject_id: str, user_id: str, character_name: str, profile: str
    ) -> Memory:
        conv = await self._conversation(subject_id, user_id, ContextType.CHARACTER)
        return await self.memories.store(
            conv.id, MemoryType.CHARACTER, profile, summary=f"Character: {character_name}"
        )

    async def get_character_profiles(self, subject_id: str, user_id: str) -> list[str]:
        conv = await self._conversation(subject_id, user_id, ContextType.CHARACTER)
        return [m.content for m in await self.memories.list(conv.id, MemoryType.CHARACTER)]

    async def store_plot_thread(
        self,
        subject_id: str,
        user_id: str,
        description: str,
        status: Literal["unresolved", "in-progress", "resolved"] = "unresolved",
    ) -> Memory:
        conv = await self._conversation(subject_id, user_id, ContextType.PLOT)
        return await self.memories.store(
            conv.id,
            MemoryType.PLOT,
            description,
            summary=f"Plot thread ({status})",
            metadata={"status": status},
        )

    async def get_plot_threads(self, subject_id: str, user_id: str) -> list[str]:
        conv = await self._conversation(subject_id, user_id, ContextType.PLOT)
        return [
            f"{m.summary}: {m.content}"
            for m in await self.memories.list(conv.id, MemoryType.PLOT)
        ]

    async def store_world_building(
        self, subject_id: str, user_id: str, details: str, category: str
    ) -> Memory:
        conv = await self._conversation(subject_id, user_id, ContextType.GENERAL)
        return await self.memories.store(
            conv.id, MemoryType.WORLD, details, summary=f"World-building: {category}"
        )

    async def store_research(self, subject_id: str, user_id: str, research: str, topic: str) -> Memory:
        conv = await self._conversation(subject_id, user_id, ContextType.RESEARCH)
        return await self.memories.store(
            conv.id, MemoryType.RESEARCH, research, summary=f"Research: {topic}"
        )
