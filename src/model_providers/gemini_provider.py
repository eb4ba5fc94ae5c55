"""Google Gemini provider implementation."""

from __future__ import annotations

import uuid
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
    MessageRole,
    ProviderConfig,
    ProviderType,
    StreamChunk,
    TokenUsage,
)


class GeminiProvider(BaseProvider):
    """Provider for Google Gemini models (gemini-1.5-pro, gemini-1.5-flash).

    Uses the google-generativeai SDK. Handles format conversion between
    Anthropic-style tool definitions and Gemini's function declarations.
    """

    provider_type = ProviderType.GEMINI

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._model_cache: dict = {}

    def _get_model(self, model: str, system_prompt: str):
        key = (model, system_prompt)
        if key not in self._model_cache:
            import google.generativeai as genai
            genai.configure(api_key=self.config.api_key)
            self._model_cache[key] = genai.GenerativeModel(
                model_name=model,
                system_instruction=system_prompt or None,
            )
        return self._model_cache[key]

    def _vendor_errors(self) -> tuple[type[BaseException], ...]:
        from google.api_core import exceptions as google_exceptions
        from google.generativeai.types import BlockedPromptException, StopCandidateException
        return (
            google_exceptions.GoogleAPIError,
            BlockedPromptException,
            StopCandidateException,
        )

    def convert_tools_to_native(self, tools: list[dict]) -> list:
        """Convert Anthropic tool format to Gemini function declarations."""
        import google.generativeai as genai

        declarations = []
        for tool in tools:
            schema = tool.get("input_schema", {})
            params = {"type_": "OBJECT", "properties": {}}
            for prop_name, prop_def in schema.get("properties", {}).items():
                prop_type = prop_def.get("type", "string").upper()
                if prop_type == "INTEGER":
                    prop_type = "NUMBER"
                if prop_type == "ARRAY":
                    prop_type = "STRING"
                params["properties"][prop_name] = {
                    "type_": prop_type,
                    "description": prop_def.get("description", ""),
                }
            if schema.get("required"):
                params["required"] = list(schema["required"])

            declarations.append(genai.protos.FunctionDeclaration(
                name=tool["name"],
                description=tool.get("description", ""),
                parameters=genai.protos.Schema(**params) if params["properties"] else None,
            ))

        return [genai.protos.Tool(function_declarations=declarations)]

    @staticmethod
    def _convert_messages(request: CompletionRequest) -> list[dict]:
        """Gemini calls the assistant role ``model`` and takes system text separately."""
        return [
            {
                "role": "model" if m.role == MessageRole.ASSISTANT else "user",
                "parts": [m.content],
            }
            for m in request.conversation
        ]

    def _generation_config(self, request: CompletionRequest):
        import google.generativeai as genai
        return genai.types.GenerationConfig(
            max_output_tokens=request.max_tokens,
            temperature=request.temperature,
        )

    @staticmethod
    def _parse_part(part) -> ResponsePart:
        if getattr(part, "function_call", None) and part.function_call.name:
            fc = part.function_call
            return ToolUsePart(
                call_id=str(uuid.uuid4()),
                name=fc.name,
                arguments=dict(fc.args) if fc.args else {},
            )
        if getattr(part, "text", ""):
            return TextPart(part.text)
        return IgnoredPart("empty")

    @staticmethod
    def _usage(metadata) -> TokenUsage:
        if not metadata:
            return TokenUsage()
        return TokenUsage.of(
            getattr(metadata, "prompt_token_count", 0),
            getattr(metadata, "candidates_token_count", 0),
            cached=getattr(metadata, "cached_content_token_count", 0) or 0,
        )

    @log_performance(threshold_ms=20000)
    async def complete(self, request: CompletionRequest, model: str) -> CompletionResult:
        try:
            gen_model = self._get_model(model, request.system_prompt)
            kwargs = {"generation_config": self._generation_config(request)}
            if request.tools:
                kwargs["tools"] = self.convert_tools_to_native(request.tools)
            response = await gen_model.generate_content_async(
                self._convert_messages(request), **kwargs
            )

            parts: list[ResponsePart] = []
            finish_reason = None
            if response.candidates:
                candidate = response.candidates[0]
                parts = [self._parse_part(p) for p in candidate.content.parts]
                reason = getattr(candidate, "finish_reason", None)
                finish_reason = getattr(reason, "name", reason)

            return build_result(
                parts,
                provider=self.provider_type,
                model=model,
                usage=self._usage(getattr(response, "usage_metadata", None)),
                finish_reason=finish_reason,
                api_style="generate_content",
            )
        except self._wrapped_errors() as exc:
            raise self._call_failed(exc) from exc

    async def stream(self, request: CompletionRequest, model: str) -> AsyncIterator[StreamChunk]:
        errors = self._wrapped_errors()
        try:
            gen_model = self._get_model(model, request.system_prompt)
            response = await gen_model.generate_content_async(
                self._convert_messages(request),
                generation_config=self._generation_config(request),
                stream=True,
            )
        except errors as exc:
            raise self._call_failed(exc, "stream") from exc

        usage = None
        try:
            async for chunk in response:
                for candidate in chunk.candidates or []:
                    for part in candidate.content.parts:
                        parsed = self._parse_part(part)
                        if isinstance(parsed, TextPart):
                            yield StreamChunk(content=parsed.text)
                if getattr(chunk, "usage_metadata", None):
                    usage = self._usage(chunk.usage_metadata)
        except errors as exc:
            raise self._call_failed(exc, "stream") from exc
        finally:
            await self._release(response)

        yield StreamChunk(content="", done=True, usage=usage)

    @staticmethod
    async def _release(response) -> None:
        """Close the gRPC stream behind an async ``GenerateContentResponse``."""
        iterator = getattr(response, "_iterator", response)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
            return
        cancel = getattr(iterator, "cancel", None)
        if cancel is not None:
            cancel()
