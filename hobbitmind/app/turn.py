"""Turn controller tying narrator output to game state and memory."""

from __future__ import annotations

import json
import logging
import re

from opentelemetry.trace import get_tracer
from pydantic import ValidationError

from hobbitmind.assistant.errors import MalformedModelOutputError
from hobbitmind.assistant.memory_management import PERSISTENCE_THRESHOLD, MemoryService
from hobbitmind.assistant.models import (
    BilboState,
    GameState,
    HistoryEntry,
    NarrativeAnswer,
    TurnOutcome,
)
from hobbitmind.assistant.prompts import NarratorPrompt
from hobbitmind.assistant.tool_use import ToolUseOrchestrator
from hobbitmind.settings import Settings

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def parse_narrative_answer(text: str) -> NarrativeAnswer:
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise MalformedModelOutputError("no JSON object in model answer")
    raw = _TRAILING_COMMA.sub(r"\1", match.group(0))
    try:
        return NarrativeAnswer.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise MalformedModelOutputError(f"unparseable model answer: {exc}") from exc


def memory_content(state: GameState, text: str) -> str:
    """Tag an event with the in-game date and place it happened at."""
    t, loc = state.time, state.location
    return f"day {t.day} {t.month} {t.year}, {loc.region}, {loc.settlement}: {text}"


class NarrativeTurnController:
    def __init__(self, settings: Settings, orchestrator: ToolUseOrchestrator, memory: MemoryService):
        self.settings = settings
        self.orchestrator = orchestrator
        self.memory = memory

    async def process_action(self, state: GameState, action: str) -> TurnOutcome:
        with get_tracer(__name__).start_as_current_span("process game action"):
            prompt = NarratorPrompt(state=state, action=action, history_window=self.settings.HISTORY_WINDOW)
            result = await self.orchestrator.run_turn(prompt.static_context(), prompt.dynamic_context())
            logger.debug("Narrator answer: %s", result.text)
            answer = parse_narrative_answer(result.text)

            saved = False
            if answer.importance >= PERSISTENCE_THRESHOLD:
                saved = await self._persist(state, answer)

            return TurnOutcome(
                reaction=answer.reaction,
                world_response=answer.world_response,
                usage=result.usage,
                game_state=self._next_state(state, answer),
                memory_saved=saved,
            )

    async def _persist(self, state: GameState, answer: NarrativeAnswer) -> bool:
        text = answer.memory or answer.summary
        if not text:
            logger.info("Important turn (%.2f) without memory text, nothing saved", answer.importance)
            return False
        try:
            await self.memory.remember(
                memory_content(state, text),
                time=state.time.label,
                location=state.location.label,
                theme=answer.theme,
                importance=min(max(answer.importance, 0.0), 1.0),
                emotions=answer.new_emotions or state.bilbo_state.emotions,
            )
        except Exception:
            # losing one memory must not fail the turn
            logger.exception("Failed to save memory for turn")
            return False
        return True

    def _next_state(self, state: GameState, answer: NarrativeAnswer) -> GameState:
        old = state.bilbo_state
        history = list(state.history)
        if answer.reaction:
            history.append(HistoryEntry(content=answer.reaction, type="bilbo", description=answer.new_emotions or ""))
            history.append(HistoryEntry(content=answer.world_response, type="world"))
        return GameState(
            bilbo_state=BilboState(
                character=answer.new_character or old.character,
                character_evolution=answer.new_character_evolution or 0,
                health=answer.new_health or old.health,
                tasks=answer.new_task or old.tasks,
                plans=answer.new_plans or old.plans,
                thoughts=answer.new_thoughts or old.thoughts,
                emotions=answer.new_emotions or old.emotions,
            ),
            location=answer.new_location or state.location,
            time=answer.new_time or state.time,
            environment=answer.new_environment or state.environment,
            event=answer.world_response,
            history=history,
        )
