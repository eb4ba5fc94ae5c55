"""Pull-based completion stream returned by the dispatcher."""

from __future__ import annotations

import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from src.model_providers.config import ModelChoice, ProviderType, StreamChunk, TokenUsage


class CompletionStream:
    """Async iterator over one adapter's chunks.

    The stream is finite and non-restartable. It is ``closed`` once the
    ``done`` chunk has been handed out, the adapter raised, or the caller
    called ``aclose()``. Closing always closes the adapter generator, which
    releases the vendor HTTP response.

    ``on_done`` runs once, when the ``done`` chunk arrives, and receives the
    stream itself so it can read ``usage`` and ``latency_ms``.

    Usage::

        async with await dispatcher.stream(request, routing) as stream:
            async for chunk in stream:
                if not chunk.done:
                    send(chunk.content)
    """

    def __init__(
        self,
        chunks: AsyncIterator[StreamChunk],
        first: Optional[StreamChunk],
        choice: ModelChoice,
        on_done: Optional[Callable[["CompletionStream"], Awaitable[None]]] = None,
        fallback_used: bool = False,
        started_at: Optional[float] = None,
    ):
        self._chunks = chunks
        self._pending = first
        self._on_done = on_done
        self._started_at = started_at if started_at is not None else time.perf_counter()
        self._parts: list[str] = []
        self.choice = choice
        self.fallback_used = fallback_used
        self.usage: Optional[TokenUsage] = None
        self.latency_ms: float = 0.0
        self.closed = False

    @property
    def provider(self) -> ProviderType:
        return self.choice.provider

    @property
    def model(self) -> str:
        return self.choice.model

    @property
    def text(self) -> str:
        """Content received so far."""
        return "".join(self._parts)

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> StreamChunk:
        if self.closed:
            raise StopAsyncIteration

        if self._pending is not None:
            chunk, self._pending = self._pending, None
        else:
            try:
                chunk = await self._chunks.__anext__()
            except BaseException:
                await self.aclose()
                raise

        if not chunk.done:
            self._parts.append(chunk.content)
            return chunk

        self.usage = chunk.usage
        self.latency_ms = (time.perf_counter() - self._started_at) * 1000
        await self.aclose()
        if self._on_done is not None:
            await self._on_done(self)
        return chunk

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._pending = None
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
