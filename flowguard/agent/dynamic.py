"""Metadata-driven agent that delegates its work to the completion service."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..completion import CompletionOptions, CompletionService
from ..config import CompletionConfig
from ..constants import (
    DEFAULT_REASONING_EFFORT,
    DEGRADED_RESPONSE_CONFIDENCE,
    STRUCTURED_RESPONSE_CONFIDENCE,
    UNPARSED_RESPONSE_CONFIDENCE,
)
from ..contracts import utcnow
from ..errors import CompletionServiceError
from .base import BaseAgent
from .memory import AgentMemory

logger = logging.getLogger(__name__)

_ANALYSIS_RE = re.compile(
    r"(?:Analysis|Summary|Findings):\s*(.+?)(?=\n\n|\nRecommendations?:|$)",
    re.IGNORECASE | re.DOTALL,
)
_RECOMMENDATIONS_RE = re.compile(
    r"Recommendations?:\s*(.+?)(?=\n\n|$)", re.IGNORECASE | re.DOTALL
)
_LIST_ITEM_RE = re.compile(r"\n\s*(?:[-•*]|\d+[.)])\s*")
_CONFIDENCE_RE = re.compile(r"confidence[:\s]+(\d+\.?\d*)\s*%?", re.IGNORECASE)

_MEDIA_KEYS = ("images", "image_urls", "voice_transcript", "transcription")


class AIConfig(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    reasoning_effort: Optional[str] = None
    text_verbosity: Optional[str] = None


class DynamicAgentConfig(BaseModel):
    """Configuration blob that fully describes a dynamic agent."""

    analysis_prompt: Optional[str] = None
    ai_config: AIConfig = Field(default_factory=AIConfig)
    required_inputs: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


def normalize_confidence(value: Any, default: float) -> float:
    """Coerce ``value`` into ``[0, 1]``, treating numbers above 1 as percentages."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    if confidence > 1:
        confidence = confidence / 100
    return min(1.0, max(0.0, confidence))


def _split_recommendations(text: str) -> List[str]:
    items = _LIST_ITEM_RE.split("\n" + text.strip())
    return [item.strip() for item in items if item.strip()]


def parse_ai_response(ai_response: str, agent_type: str = "agent") -> Dict[str, Any]:
    """Parse completion text into ``analysis``, ``recommendations`` and ``confidence``.

    JSON objects or arrays are merged directly. Anything else is scanned for
    ``Analysis:``/``Recommendations:`` sections and a ``confidence: NN%``
    mention. If parsing fails the raw text becomes the analysis.
    """
    try:
        stripped = ai_response.strip()
        if stripped.startswith("{") or stripped.startswith("["):
            parsed = json.loads(stripped)
            if isinstance(parsed, list):
                return {
                    "analysis": ai_response,
                    "recommendations": [],
                    "confidence": STRUCTURED_RESPONSE_CONFIDENCE,
                    "items": parsed,
                    "raw_response": ai_response,
                }
            return {
                **parsed,
                "analysis": parsed.get("analysis") or parsed.get("content") or ai_response,
                "recommendations": parsed.get("recommendations")
                or parsed.get("actions")
                or [],
                "confidence": normalize_confidence(
                    parsed.get("confidence", STRUCTURED_RESPONSE_CONFIDENCE),
                    STRUCTURED_RESPONSE_CONFIDENCE,
                ),
                "raw_response": ai_response,
            }

        result: Dict[str, Any] = {
            "analysis": "",
            "recommendations": [],
            "confidence": STRUCTURED_RESPONSE_CONFIDENCE,
            "raw_response": ai_response,
        }

        analysis_match = _ANALYSIS_RE.search(ai_response)
        if analysis_match:
            result["analysis"] = analysis_match.group(1).strip()
        else:
            result["analysis"] = ai_response.split("\n\n")[0].strip()

        recs_match = _RECOMMENDATIONS_RE.search(ai_response)
        if recs_match:
            result["recommendations"] = _split_recommendations(recs_match.group(1))

        conf_match = _CONFIDENCE_RE.search(ai_response)
        if conf_match:
            result["confidence"] = normalize_confidence(
                conf_match.group(1), STRUCTURED_RESPONSE_CONFIDENCE
            )

        logger.debug(
            f"Parsed {agent_type} response: analysis={bool(result['analysis'])}, "
            f"recommendations={len(result['recommendations'])}, "
            f"confidence={result['confidence']}"
        )
        return result

    except Exception as e:
        logger.warning(f"Failed to parse {agent_type} response, using raw text: {e}")
        return {
            "analysis": ai_response,
            "recommendations": [],
            "confidence": UNPARSED_RESPONSE_CONFIDENCE,
            "raw_response": ai_response,
        }


class DynamicAgent(BaseAgent):
    """Generic agent parameterized entirely by its ``DynamicAgentConfig``.

    Completion failures never escape ``execute``: they become a degraded
    result with ``confidence=0.1`` and ``error=True`` so the workflow can
    carry on.
    """

    agent_type = "dynamic"

    def __init__(
        self,
        agent_type: str,
        config: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
        completion: Optional[CompletionService] = None,
        memory: Optional[AgentMemory] = None,
        defaults: Optional[CompletionConfig] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = DynamicAgentConfig.model_validate(config or {})
        super().__init__(
            {**(config or {}), "required_inputs": self.settings.required_inputs},
            agent_id=agent_id,
            log=log or logger,
        )
        self.agent_type = agent_type
        self.completion = completion
        self.memory = memory if memory is not None else AgentMemory()
        self.defaults = defaults or CompletionConfig()

    # ------------------------------------------------------------------
    def completion_options(self, inputs: Dict[str, Any]) -> CompletionOptions:
        ai = self.settings.ai_config
        return CompletionOptions(
            model=ai.model or self.defaults.model,
            temperature=(
                ai.temperature if ai.temperature is not None else self.defaults.temperature
            ),
            max_tokens=ai.max_tokens or self.defaults.max_tokens,
            reasoning_effort=ai.reasoning_effort or self.defaults.reasoning_effort,
            text_verbosity=ai.text_verbosity,
            images=self.media_references(inputs),
        )

    @staticmethod
    def media_references(inputs: Dict[str, Any]) -> List[str]:
        refs: List[str] = []
        for key in ("image_urls", "images"):
            value = inputs.get(key) or []
            if isinstance(value, str):
                value = [value]
            refs.extend(i for i in value if isinstance(i, str))
        return list(dict.fromkeys(refs))

    def build_prompt(self, inputs: Dict[str, Any]) -> str:
        """Merge the configured template with live workflow context."""
        template = self.settings.analysis_prompt or f"Process inputs for {self.agent_type}"
        sections = [template.strip()]

        transcript = inputs.get("voice_transcript") or inputs.get("transcription")
        if transcript:
            sections.append(f"Voice transcript:\n{transcript}")

        context = {k: v for k, v in inputs.items() if k not in _MEDIA_KEYS}
        if context:
            sections.append(
                "Workflow context:\n" + json.dumps(context, default=str, indent=2)
            )

        previous = self.memory.get_from_memory("previous_step_data")
        if previous:
            sections.append(
                "Previous analysis:\n" + json.dumps(previous, default=str, indent=2)
            )

        history = self.memory.conversation_history
        if history:
            lines = [f"[{e.step}] {e.role}: {e.content}" for e in history]
            sections.append("Conversation history:\n" + "\n".join(lines))

        images = self.media_references(inputs)
        if images:
            sections.append(f"Attached images: {len(images)}")

        return "\n\n".join(sections)

    # ------------------------------------------------------------------
    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        prompt = self.build_prompt(inputs)
        self.memory.add_conversation_entry(
            "system", f"Processing inputs for {self.agent_type}", "agent-processing"
        )
        self.memory.add_to_memory("last_inputs", inputs)
        options = self.completion_options(inputs)

        try:
            if self.completion is None:
                raise CompletionServiceError("No completion service configured")
            self._logger.info(
                f"Executing dynamic agent {self.id} ({self.agent_type}) with model "
                f"{options.model}, images={len(options.images)}"
            )
            self.api_calls += 1
            response = await self.completion.complete(prompt, options)
            agent_result = parse_ai_response(response, self.agent_type)
            self._logger.info(
                f"Completion for {self.id} finished with confidence "
                f"{agent_result.get('confidence')}"
            )
        except Exception as e:
            self._logger.error(f"Completion for {self.id} ({self.agent_type}) failed: {e}")
            agent_result = {
                "analysis": f"Error processing {self.agent_type}: {e}",
                "recommendations": [],
                "confidence": DEGRADED_RESPONSE_CONFIDENCE,
                "error": True,
            }

        self.memory.add_to_memory("last_result", agent_result)
        self.memory.add_to_memory("previous_step_data", agent_result)
        self.memory.add_conversation_entry(
            "assistant", f"Completed {self.agent_type} analysis", "agent-complete"
        )

        return {
            "agent_type": self.agent_type,
            "processed_at": utcnow().isoformat(),
            "recommendations": [],
            "metadata": {
                "model": options.model,
                "reasoning_effort": options.reasoning_effort or DEFAULT_REASONING_EFFORT,
                "input_keys": sorted(inputs.keys()),
                "memory_state": self.memory.metadata.model_dump(mode="json"),
            },
            **agent_result,
        }
