"""
Asynchronous LLM clients used by the AI-backed analyzer and regenerator.

Each client turns a prompt into an :class:`LLMResponse` carrying the token
usage reported by the provider, which is what the cost optimizer tracks.
"""

import logging
import math
from typing import Any, Callable, List, Optional, Union

import anthropic
import openai

from ..core.errors import LLMServiceError
from ..core.interfaces.protocols import LLMClient
from ..core.models.llm import LLMResponse
from ..utils.config_types import LLMSettings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert test engineer repairing automated API tests "
    "that broke after the API changed."
)
DEFAULT_ANTHROPIC_MODEL = "claude-3-haiku-20240307"


class OpenAIClient:
    """Chat-completions client backed by ``openai.AsyncOpenAI``."""

    def __init__(self, settings: LLMSettings, client: Optional[Any] = None):
        self.settings = settings
        self.model = settings.model
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.settings.api_key, timeout=self.settings.timeout_seconds
            )
        return self._client

    async def complete(
        self, prompt: str, max_tokens: int, temperature: float
    ) -> LLMResponse:
        try:
            completion = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.OpenAIError as e:
            logger.error(f"Error making request with OpenAI API: {e}")
            raise LLMServiceError(
                "OpenAI request failed",
                context={"model": self.model},
                original_exception=e,
            ) from e

        content = ""
        if completion.choices and completion.choices[0].message:
            content = completion.choices[0].message.content or ""
        usage = completion.usage
        return LLMResponse(
            content=content,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            model=self.model,
        )


class AnthropicClient:
    """Messages client backed by ``anthropic.AsyncAnthropic``."""

    def __init__(self, settings: LLMSettings, client: Optional[Any] = None):
        self.settings = settings
        self.model = (
            settings.model if settings.model.startswith("claude") else DEFAULT_ANTHROPIC_MODEL
        )
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.settings.api_key, timeout=self.settings.timeout_seconds
            )
        return self._client

    async def complete(
        self, prompt: str, max_tokens: int, temperature: float
    ) -> LLMResponse:
        try:
            message = await self._get_client().messages.create(
                model=self.model,
                system=SYSTEM_PROMPT,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.AnthropicError as e:
            logger.error(f"Error making request with Anthropic API: {e}")
            raise LLMServiceError(
                "Anthropic request failed",
                context={"model": self.model},
                original_exception=e,
            ) from e

        content = ""
        if message.content and isinstance(message.content, list):
            content = getattr(message.content[0], "text", "") or ""
        return LLMResponse(
            content=content,
            prompt_tokens=message.usage.input_tokens,
            completion_tokens=message.usage.output_tokens,
            model=self.model,
        )


class MockLLMClient:
    """
    Offline client returning canned responses.

    ``responses`` is either a list consumed in order (the last one repeats)
    or a callable mapping the prompt to a response string. Token usage is
    estimated at four characters per token.
    """

    def __init__(
        self,
        responses: Union[List[str], Callable[[str], str], None] = None,
        model: str = "mock",
    ):
        self.model = model
        self._responses = responses if responses is not None else [""]
        self.prompts: List[str] = []

    async def complete(
        self, prompt: str, max_tokens: int, temperature: float
    ) -> LLMResponse:
        self.prompts.append(prompt)
        if callable(self._responses):
            content = self._responses(prompt)
        else:
            index = min(len(self.prompts) - 1, len(self._responses) - 1)
            content = self._responses[index]
        return LLMResponse(
            content=content,
            prompt_tokens=math.ceil(len(prompt) / 4),
            completion_tokens=min(max_tokens, math.ceil(len(content) / 4)),
            model=self.model,
        )


def create_llm_client(settings: LLMSettings) -> LLMClient:
    """Select a client implementation by ``settings.provider``."""
    if settings.provider == "anthropic":
        logger.info("Using Anthropic client for LLM requests.")
        return AnthropicClient(settings)
    if settings.provider == "mock":
        logger.info("Using mock LLM client.")
        return MockLLMClient(model=settings.model)
    logger.info("Using OpenAI client for LLM requests.")
    return OpenAIClient(settings)
