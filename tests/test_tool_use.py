import asyncio

import pytest
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models.function import AgentInfo, FunctionModel
from pydantic_ai.usage import RequestUsage

from hobbitmind.assistant.llm_toolkit import NarratorBackend
from hobbitmind.assistant.memory_management import DEFAULT_RECALL_THRESHOLD
from hobbitmind.assistant.models import MemoryRecord, RecalledMemory
from hobbitmind.assistant.tool_use import (
    FINALIZE_INSTRUCTION,
    NO_MEMORIES_FOUND,
    SEARCH_MEMORY_TOOL_NAME,
    UNKNOWN_TOOL,
    ToolUseOrchestrator,
    format_memories,
)

FINAL_JSON = '{"reaction": "Bilbo shivers.", "worldResponse": "The wind howls.", "importance": 0.2}'


class ScriptedNarrator:
    """Plays back one response per request and records what it was sent."""

    def __init__(self, *responses: ModelResponse):
        self.responses = list(responses)
        self.requests: list[list[ModelMessage]] = []
        self.offered_tools: list[list[str]] = []

    async def respond(self, messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
        self.requests.append(messages)
        self.offered_tools.append([tool.name for tool in info.function_tools])
        return self.responses.pop(0)

    def orchestrator(self, memory) -> ToolUseOrchestrator:
        return ToolUseOrchestrator(NarratorBackend(FunctionModel(self.respond), base_delay=0.0), memory)


class FakeRecaller:
    def __init__(self, answers: dict[str, list[str]] | None = None, delays: dict[str, float] | None = None):
        self.answers = answers or {}
        self.delays = delays or {}
        self.calls: list[tuple[str, int, float]] = []

    async def recall(self, query: str, limit: int = 3, threshold: float = 0.6) -> list[RecalledMemory]:
        self.calls.append((query, limit, threshold))
        await asyncio.sleep(self.delays.get(query, 0))
        return [
            RecalledMemory(record=MemoryRecord(id=f"{query}-{i}", content=text, importance=0.5, created_at=i), similarity=0.9)
            for i, text in enumerate(self.answers.get(query, []))
        ]


def search(query: str, call_id: str, **extra) -> ToolCallPart:
    return ToolCallPart(tool_name=SEARCH_MEMORY_TOOL_NAME, args={"query": query, **extra}, tool_call_id=call_id)


def usage(input_tokens: int, output_tokens: int) -> RequestUsage:
    return RequestUsage(input_tokens=input_tokens, output_tokens=output_tokens)


def tool_returns(request: ModelMessage) -> list[ToolReturnPart]:
    assert isinstance(request, ModelRequest)
    return [part for part in request.parts if isinstance(part, ToolReturnPart)]


@pytest.mark.asyncio
async def test_answer_without_tool_calls_takes_one_round_trip():
    narrator = ScriptedNarrator(ModelResponse(parts=[TextPart(FINAL_JSON)], usage=usage(100, 20)))
    recaller = FakeRecaller()

    result = await narrator.orchestrator(recaller).run_turn("rules", "state and action")

    assert result.round_trips == 1
    assert result.text == FINAL_JSON
    assert result.usage.input_tokens == 100
    assert result.usage.output_tokens == 20
    assert narrator.offered_tools == [[SEARCH_MEMORY_TOOL_NAME]]
    assert recaller.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [1, 2, 5])
async def test_any_number_of_searches_takes_exactly_two_round_trips(count):
    calls = [search(f"topic {i}", f"call_{i}") for i in range(count)]
    narrator = ScriptedNarrator(
        ModelResponse(parts=calls, usage=usage(100, 10)),
        ModelResponse(parts=[TextPart(FINAL_JSON)], usage=usage(150, 30)),
    )
    recaller = FakeRecaller()

    result = await narrator.orchestrator(recaller).run_turn("rules", "state and action")

    assert result.round_trips == 2
    assert result.text == FINAL_JSON
    assert narrator.offered_tools == [[SEARCH_MEMORY_TOOL_NAME], []]
    assert len(recaller.calls) == count
    follow_up = narrator.requests[1][-1]
    assert [part.tool_call_id for part in tool_returns(follow_up)] == [f"call_{i}" for i in range(count)]
    assert isinstance(follow_up.parts[-1], UserPromptPart)
    assert follow_up.parts[-1].content == FINALIZE_INSTRUCTION


@pytest.mark.asyncio
async def test_results_keep_their_call_ids_when_searches_finish_out_of_order():
    narrator = ScriptedNarrator(
        ModelResponse(parts=[search("slow", "a"), search("medium", "b"), search("fast", "c")]),
        ModelResponse(parts=[TextPart(FINAL_JSON)]),
    )
    recaller = FakeRecaller(
        answers={"slow": ["the slow one"], "medium": ["the medium one"], "fast": ["the fast one"]},
        delays={"slow": 0.06, "medium": 0.03, "fast": 0.0},
    )

    await narrator.orchestrator(recaller).run_turn("rules", "state and action")

    returns = tool_returns(narrator.requests[1][-1])
    assert [(part.tool_call_id, part.content) for part in returns] == [
        ("a", "the slow one (importance: 0.5)"),
        ("b", "the medium one (importance: 0.5)"),
        ("c", "the fast one (importance: 0.5)"),
    ]


@pytest.mark.asyncio
async def test_searches_run_concurrently():
    queries = [f"q{i}" for i in range(5)]
    narrator = ScriptedNarrator(
        ModelResponse(parts=[search(q, q) for q in queries]),
        ModelResponse(parts=[TextPart(FINAL_JSON)]),
    )
    recaller = FakeRecaller(delays={q: 0.1 for q in queries})

    loop = asyncio.get_running_loop()
    started = loop.time()
    await narrator.orchestrator(recaller).run_turn("rules", "state and action")

    assert loop.time() - started < 0.4


@pytest.mark.asyncio
async def test_failed_search_answers_with_no_memories():
    class BrokenRecaller(FakeRecaller):
        async def recall(self, query: str, limit: int = 3, threshold: float = 0.6) -> list[RecalledMemory]:
            if query == "broken":
                raise RuntimeError("store offline")
            return await super().recall(query, limit, threshold)

    narrator = ScriptedNarrator(
        ModelResponse(parts=[search("broken", "x"), search("fine", "y")]),
        ModelResponse(parts=[TextPart(FINAL_JSON)]),
    )

    result = await narrator.orchestrator(BrokenRecaller(answers={"fine": ["a hobbit hole"]})).run_turn("r", "d")

    returns = tool_returns(narrator.requests[1][-1])
    assert [part.content for part in returns] == [NO_MEMORIES_FOUND, "a hobbit hole (importance: 0.5)"]
    assert result.round_trips == 2


@pytest.mark.asyncio
async def test_empty_recall_answers_with_sentinel():
    narrator = ScriptedNarrator(
        ModelResponse(parts=[search("dragons", "x")]),
        ModelResponse(parts=[TextPart(FINAL_JSON)]),
    )

    await narrator.orchestrator(FakeRecaller()).run_turn("r", "d")

    assert tool_returns(narrator.requests[1][-1])[0].content == "no relevant memories found"


@pytest.mark.asyncio
async def test_search_limit_defaults_and_threshold_is_fixed():
    narrator = ScriptedNarrator(
        ModelResponse(parts=[search("a", "1"), search("b", "2", limit=7), search("c", "3", limit="many")]),
        ModelResponse(parts=[TextPart(FINAL_JSON)]),
    )
    recaller = FakeRecaller()

    await narrator.orchestrator(recaller).run_turn("r", "d")

    assert recaller.calls == [
        ("a", 3, DEFAULT_RECALL_THRESHOLD),
        ("b", 7, DEFAULT_RECALL_THRESHOLD),
        ("c", 3, DEFAULT_RECALL_THRESHOLD),
    ]


@pytest.mark.asyncio
async def test_unknown_tool_is_not_resolved():
    narrator = ScriptedNarrator(
        ModelResponse(parts=[TextPart(FINAL_JSON), ToolCallPart(tool_name="roll_dice", args={}, tool_call_id="d")]),
    )
    recaller = FakeRecaller()

    result = await narrator.orchestrator(recaller).run_turn("r", "d")

    assert result.round_trips == 1
    assert result.text == FINAL_JSON
    assert recaller.calls == []


@pytest.mark.asyncio
async def test_tool_calls_in_the_second_response_are_ignored():
    narrator = ScriptedNarrator(
        ModelResponse(parts=[search("first", "1")]),
        ModelResponse(parts=[TextPart(FINAL_JSON), search("again", "2")]),
    )
    recaller = FakeRecaller()

    result = await narrator.orchestrator(recaller).run_turn("r", "d")

    assert result.round_trips == 2
    assert result.text == FINAL_JSON
    assert [call[0] for call in recaller.calls] == ["first"]
    assert narrator.responses == []


@pytest.mark.asyncio
async def test_usage_is_summed_over_both_requests():
    narrator = ScriptedNarrator(
        ModelResponse(parts=[search("ring", "1")], usage=usage(120, 15)),
        ModelResponse(parts=[TextPart(FINAL_JSON)], usage=usage(200, 40)),
    )

    result = await narrator.orchestrator(FakeRecaller()).run_turn("r", "d")

    assert (result.usage.input_tokens, result.usage.output_tokens) == (320, 55)
    assert result.usage.requests == 2
    assert result.usage.total == 375


def test_format_memories():
    memories = [
        RecalledMemory(record=MemoryRecord(id="1", content="met Gandalf", importance=0.8, created_at=1), similarity=0.9),
        RecalledMemory(record=MemoryRecord(id="2", content="lost a button", importance=0.3, created_at=2), similarity=0.7),
    ]

    assert format_memories(memories) == "met Gandalf (importance: 0.8)\nlost a button (importance: 0.3)"
    assert format_memories([]) == NO_MEMORIES_FOUND


@pytest.mark.asyncio
async def test_every_call_in_a_mixed_response_gets_a_return():
    narrator = ScriptedNarrator(
        ModelResponse(
            parts=[
                search("ring", "s1"),
                ToolCallPart(tool_name="roll_dice", args={"sides": 20}, tool_call_id="d1"),
                search("trolls", "s2"),
            ]
        ),
        ModelResponse(parts=[TextPart(FINAL_JSON)]),
    )
    recaller = FakeRecaller(answers={"ring": ["found a ring"]})

    result = await narrator.orchestrator(recaller).run_turn("r", "d")

    returns = tool_returns(narrator.requests[1][-1])
    assert [(part.tool_call_id, part.content) for part in returns] == [
        ("s1", "found a ring (importance: 0.5)"),
        ("d1", UNKNOWN_TOOL.format(name="roll_dice")),
        ("s2", NO_MEMORIES_FOUND),
    ]
    assert [call[0] for call in recaller.calls] == ["ring", "trolls"]
    assert result.round_trips == 2
