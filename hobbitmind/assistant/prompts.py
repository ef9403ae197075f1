"""Prompt payloads for the narrator model."""

from __future__ import annotations

from textwrap import dedent

from pydantic import BaseModel

from hobbitmind.assistant.models import GameState

NARRATOR_RULES = """
You are the narrator of a text adventure set in Middle-earth. The player
guides Bilbo Baggins by describing what he intends to do. Describe Bilbo's
reaction and how the world answers, keeping the world consistent with what
happened before.

Before answering you may call `search_memory` to recall Bilbo's past
experiences that matter for this scene.

Answer with a single JSON object and nothing else:
{
  "reaction": "what Bilbo does and says",
  "worldResponse": "how the world reacts",
  "memory": "one sentence worth remembering about this turn",
  "summary": "short summary of the turn",
  "theme": "short tag for the memory",
  "importance": 0.0,
  "newEmotions": "...",
  "newCharacter": "...",
  "newCharacterEvolution": 0,
  "newHealth": "...",
  "newTask": "...",
  "newPlans": "...",
  "newThoughts": "...",
  "newEnvironment": "...",
  "newLocation": {"region": "...", "settlement": "...", "place": "..."},
  "newTime": {"day": 1, "month": "...", "year": 2941, "era": "...", "time": "..."}
}

`importance` is between 0 and 1: 0 for routine moments, 1 for events Bilbo
will never forget. Omit any "new..." field that does not change.
"""


class NarratorPrompt(BaseModel):
    state: GameState
    action: str
    history_window: int = 3

    def static_context(self) -> str:
        return dedent(NARRATOR_RULES).strip()

    def dynamic_context(self) -> str:
        state = self.state
        bilbo = state.bilbo_state
        recent = [entry.content for entry in state.history[-(self.history_window + 1) : -1]]
        recent_history = "\n---\n".join(recent) or "(nothing yet)"
        return "\n".join(
            [
                f"Location: {state.location.label}",
                f"Time: {state.time.day} {state.time.month} {state.time.year} {state.time.era}, {state.time.time}",
                f"Environment: {state.environment}",
                f"Character: {bilbo.character}",
                f"Character evolution: {bilbo.character_evolution}",
                f"Health: {bilbo.health}",
                f"Tasks: {bilbo.tasks or 'resting'}",
                f"Plans: {bilbo.plans or 'no special plans'}",
                f"Thoughts: {bilbo.thoughts}",
                f"Emotions: {bilbo.emotions}",
                "",
                "Recent history:",
                recent_history,
                "",
                f"Current event: {state.event or 'the beginning of the game'}",
                f"Player action: {self.action}",
            ]
        )
