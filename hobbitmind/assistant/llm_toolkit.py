"""Narrator model providers and the retrying request wrapper."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from opentelemetry.trace import get_tracer
from pydantic_ai.direct import model_request
from pydantic_ai.exceptions import ModelHTTPError
from pydantic_ai.messages import ModelMessage, ModelResponse
from pydantic_ai.models import Model, ModelRequestParameters
from pydantic_ai.models.anthropic import AnthropicModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.anthropic import AnthropicProvider
from pydantic_ai.providers.openrouter import OpenRouterProvider
from pydantic_ai.settings import ModelSettings
from pydantic_ai.tools import ToolDefinition

from hobbitmind.assistant.errors import ModelBackendError, ModelBackendOverloadedError
from hobbitmind.settings import Settings

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OVERLOADED_STATUS_CODES = frozenset({529})
# transport failures; the SDK timeout errors subclass these
CONNECTION_ERRORS = (openai.APIConnectionError, anthropic.APIConnectionError, TimeoutError)


class LLMProvider:
    """Simple interface so other backends can be plugged in."""

    def create_model(self, model_name: str) -> Model:  # pragma: no cover
        raise NotImplementedError


class OpenRouterLLMProvider(LLMProvider):
    def __init__(self, settings: Settings) -> None:
        # SDK-level retries are disabled; NarratorBackend owns the retry policy.
        client = AsyncOpenAI(base_url=OPENROUTER_BASE_URL, api_key=settings.OPENROUTER_API_KEY, max_retries=0)
        self._provider = OpenRouterProvider(openai_client=client)

    def create_model(self, model_name: str) -> Model:
        return OpenAIChatModel(model_name, provider=self._provider)


class AnthropicLLMProvider(LLMProvider):
    def __init__(self, settings: Settings) -> None:
        client = AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY, max_retries=0)
        self._provider = AnthropicProvider(anthropic_client=client)

    def create_model(self, model_name: str) -> Model:
        return AnthropicModel(model_name, provider=self._provider)


ProviderFactory = Callable[[Settings], LLMProvider]


class LLMProviderRegistry:
    """Keeps track of available LLM providers by name."""

    def __init__(self) -> None:
        self._providers: dict[str, ProviderFactory] = {}
        self.register("openrouter", lambda settings: OpenRouterLLMProvider(settings))
        self.register("anthropic", lambda settings: AnthropicLLMProvider(settings))

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._providers[name] = factory

    def build(self, name: str, settings: Settings) -> LLMProvider:
        if name not in self._providers:
            raise KeyError(f"Unknown LLM provider: {name}")
        return self._providers[name](settings)


SleepFn = Callable[[float], Awaitable[None]]


class NarratorBackend:
    """Sends one model request, retrying only while the backend is overloaded.

    Attempt ``n`` (1-based) that fails with an overloaded status waits
    ``base_delay * 2 ** n`` seconds before the next attempt. Every other
    HTTP status fails at once.
    """

    def __init__(
        self,
        model: Model,
        *,
        model_settings: ModelSettings | None = None,
        attempts: int = 3,
        base_delay: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.model = model
        self.model_settings = model_settings
        self.attempts = attempts
        self.base_delay = base_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, registry: LLMProviderRegistry | None = None) -> "NarratorBackend":
        provider = (registry or LLMProviderRegistry()).build(settings.LLM_PROVIDER, settings)
        return cls(
            provider.create_model(settings.NARRATOR_MODEL_NAME),
            model_settings=ModelSettings(
                max_tokens=settings.NARRATOR_MAX_TOKENS,
                timeout=float(settings.LLM_TIMEOUT_SECONDS_NARRATOR),
            ),
            attempts=settings.LLM_RETRY_ATTEMPTS,
            base_delay=settings.LLM_RETRY_BASE_DELAY_SECONDS,
        )

    @get_tracer(__name__).start_as_current_span("narrator request")
    async def request(
        self,
        messages: Sequence[ModelMessage],
        *,
        tools: Sequence[ToolDefinition] = (),
    ) -> ModelResponse:
        parameters = ModelRequestParameters(function_tools=list(tools))
        for attempt in range(1, self.attempts + 1):
            try:
                return await model_request(
                    self.model,
                    list(messages),
                    model_settings=self.model_settings,
                    model_request_parameters=parameters,
                )
            except ModelHTTPError as exc:
                if exc.status_code not in OVERLOADED_STATUS_CODES:
                    raise ModelBackendError(
                        f"model backend failed: {exc.status_code}", status_code=exc.status_code
                    ) from exc
                if attempt == self.attempts:
                    raise ModelBackendOverloadedError(
                        f"model backend overloaded after {attempt} attempts", status_code=exc.status_code
                    ) from exc
                delay = self.base_delay * 2**attempt
                logger.warning("Model backend overloaded (%s), retrying in %.1fs", exc.status_code, delay)
                await self._sleep(delay)
            except CONNECTION_ERRORS as exc:
                raise ModelBackendError(f"model backend unreachable: {exc!r}") from exc
        raise AssertionError("unreachable")  # pragma: no cover
