"""Completion service contract and its pydantic-ai implementation."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Union

from pydantic import BaseModel, Field
from pydantic_ai import Agent, ImageUrl
from pydantic_ai.models import Model

from .constants import DEFAULT_COMPLETION_MODEL, DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE
from .errors import CompletionServiceError

logger = logging.getLogger(__name__)


class CompletionOptions(BaseModel):
    """Per-call settings for a completion request."""

    model: str = DEFAULT_COMPLETION_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    reasoning_effort: Optional[str] = None
    text_verbosity: Optional[str] = None
    images: List[str] = Field(default_factory=list)


class CompletionService(Protocol):
    """Narrow contract for the external text/image completion provider."""

    async def complete(self, prompt: str, options: CompletionOptions) -> str:
        """Return the completion text or raise ``CompletionServiceError``."""


class PydanticAICompletionService:
    """Completion service backed by a ``pydantic_ai.Agent``.

    Args:
        model: Optional model (name or ``pydantic_ai`` model instance) used for
            every call. When omitted, the model named in each call's options is used.
        system_prompt: Optional system prompt prepended to every request.
    """

    def __init__(
        self,
        model: Union[Model, str, None] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        self._model = model
        self._system_prompt = system_prompt

    def build_model_settings(self, options: CompletionOptions) -> Dict[str, Any]:
        settings: Dict[str, Any] = {
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.reasoning_effort:
            settings["openai_reasoning_effort"] = options.reasoning_effort
        if options.text_verbosity:
            settings["openai_text_verbosity"] = options.text_verbosity
        return settings

    def build_user_prompt(self, prompt: str, options: CompletionOptions) -> Any:
        if not options.images:
            return prompt
        return [prompt, *(ImageUrl(url=url) for url in options.images)]

    async def complete(self, prompt: str, options: CompletionOptions) -> str:
        model = self._model or options.model
        try:
            agent_kwargs: Dict[str, Any] = {"output_type": str}
            if self._system_prompt:
                agent_kwargs["system_prompt"] = self._system_prompt
            agent = Agent(model, **agent_kwargs)
            result = await agent.run(
                self.build_user_prompt(prompt, options),
                model_settings=self.build_model_settings(options),
            )
        except Exception as e:
            logger.error(f"Completion request failed for model {options.model}: {e}")
            raise CompletionServiceError(
                f"Completion request failed: {e}", {"model": options.model}
            ) from e

        logger.debug(
            f"Completion succeeded for model {options.model} "
            f"({len(options.images)} images, {len(prompt)} prompt chars)"
        )
        return result.output
