"""One turn of narrator conversation with an optional memory lookup round."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    SystemPromptPart,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.tools import ToolDefinition

from hobbitmind.assistant.memory_management import DEFAULT_RECALL_LIMIT, DEFAULT_RECALL_THRESHOLD
from hobbitmind.assistant.models import RecalledMemory, TokenUsage

logger = logging.getLogger(__name__)

SEARCH_MEMORY_TOOL_NAME = "search_memory"
NO_MEMORIES_FOUND = "no relevant memories found"
UNKNOWN_TOOL = "unknown tool {name}; only search_memory is available"
FINALIZE_INSTRUCTION = (
    "You have the results of your memory searches. "
    "Now produce the final answer in the required JSON format."
)

SEARCH_MEMORY_TOOL = ToolDefinition(
    name=SEARCH_MEMORY_TOOL_NAME,
    description=(
        "Search Bilbo's memories for relevant past experiences. "
        "Call it several times in one turn to look up different topics."
    ),
    parameters_json_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What to search for in memories"},
            "limit": {
                "type": "number",
                "description": "Maximum number of results to return",
                "default": DEFAULT_RECALL_LIMIT,
            },
        },
        "required": ["query"],
    },
)


class ModelBackend(Protocol):
    async def request(
        self,
        messages: Sequence[ModelMessage],
        *,
        tools: Sequence[ToolDefinition] = (),
    ) -> ModelResponse: ...


class MemoryRecaller(Protocol):
    async def recall(self, query: str, limit: int = ..., threshold: float = ...) -> list[RecalledMemory]: ...


@dataclass
class TurnResult:
    text: str
    usage: TokenUsage
    round_trips: int
    messages: list[ModelMessage] = field(default_factory=list)


def format_memories(memories: Sequence[RecalledMemory]) -> str:
    if not memories:
        return NO_MEMORIES_FOUND
    return "\n".join(f"{m.record.content} (importance: {m.record.importance})" for m in memories)


def response_text(response: ModelResponse) -> str:
    return "".join(part.content for part in response.parts if isinstance(part, TextPart))


def response_usage(response: ModelResponse) -> TokenUsage:
    usage = response.usage
    return TokenUsage(
        input_tokens=usage.input_tokens or 0,
        output_tokens=usage.output_tokens or 0,
        requests=1,
    )


class ToolUseOrchestrator:
    """Runs a turn that may pause once to let the model search its memory.

    The first request offers ``search_memory``. If the model calls it, every
    call is resolved and the conversation is sent back without any tools,
    so a turn never takes more than two round trips.
    """

    def __init__(self, backend: ModelBackend, memory: MemoryRecaller):
        self.backend = backend
        self.memory = memory

    async def run_turn(self, static_context: str, dynamic_context: str) -> TurnResult:
        initial = ModelRequest(parts=[SystemPromptPart(content=static_context), UserPromptPart(content=dynamic_context)])
        first = await self.backend.request([initial], tools=[SEARCH_MEMORY_TOOL])
        usage = response_usage(first)

        calls = [part for part in first.parts if isinstance(part, ToolCallPart)]
        if not any(call.tool_name == SEARCH_MEMORY_TOOL_NAME for call in calls):
            return TurnResult(text=response_text(first), usage=usage, round_trips=1, messages=[initial, first])

        # every call in the replayed response needs a matching return
        results = await asyncio.gather(*(self._resolve(call) for call in calls))
        follow_up = ModelRequest(
            parts=[
                *(
                    ToolReturnPart(tool_name=call.tool_name, content=content, tool_call_id=call.tool_call_id)
                    for call, content in zip(calls, results)
                ),
                UserPromptPart(content=FINALIZE_INSTRUCTION),
            ]
        )
        messages: list[ModelMessage] = [initial, first, follow_up]
        final = await self.backend.request(messages)
        messages.append(final)
        return TurnResult(
            text=response_text(final),
            usage=usage + response_usage(final),
            round_trips=2,
            messages=messages,
        )

    async def _resolve(self, call: ToolCallPart) -> str:
        if call.tool_name != SEARCH_MEMORY_TOOL_NAME:
            logger.warning("Model called unknown tool %r", call.tool_name)
            return UNKNOWN_TOOL.format(name=call.tool_name)
        query, limit = self._parse_arguments(call)
        logger.info("Model is searching memory for: %r", query)
        try:
            memories = await self.memory.recall(query, limit, DEFAULT_RECALL_THRESHOLD)
        except Exception:
            logger.exception("Memory search failed for %r, answering with no memories", query)
            return NO_MEMORIES_FOUND
        return format_memories(memories)

    def _parse_arguments(self, call: ToolCallPart) -> tuple[str, int]:
        try:
            args: dict[str, Any] = call.args_as_dict()
        except ValueError:
            logger.warning("Unparseable %s arguments: %r", call.tool_name, call.args)
            args = {}
        query = str(args.get("query") or "")
        try:
            limit = int(args.get("limit", DEFAULT_RECALL_LIMIT))
        except (TypeError, ValueError):
            limit = DEFAULT_RECALL_LIMIT
        return query, limit
