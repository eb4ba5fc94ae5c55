"""Lookup errors raised by the conversation and memory stores."""


class ConversationNotFound(LookupError):
    def __init__(self, conversation_pk: str):
        super().__init__(f"Conversation not found: {conversation_pk}")
        self.conversation_pk = conversation_pk


class MemoryNotFound(LookupError):
    def __init__(self, memory_id: str):
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id
