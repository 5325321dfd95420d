"""Base class for all workflow agents."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from ..constants import DEFAULT_CONFIDENCE
from ..contracts import utcnow
from ..errors import AgentNotImplementedError, ValidationError

logger = logging.getLogger(__name__)


class BaseAgent:
    """Unit of work in a workflow graph.

    Subclasses supply ``execute``; everything else has a usable default.
    ``process`` is the only entry point the engine calls.
    """

    agent_type: str = "base"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.config: Dict[str, Any] = dict(config or {})
        self.id = agent_id or self.config.get("id") or type(self).__name__
        self.initialized = False
        self.api_calls = 0
        self._logger = log or logger

    @property
    def required_inputs(self) -> List[str]:
        return list(self.config.get("required_inputs") or [])

    # ------------------------------------------------------------------
    # Lifecycle
    async def initialize(self) -> None:
        """Run one-time setup before first use. Safe to call repeatedly."""
        if self.initialized:
            return
        await self.on_initialize()
        self.initialized = True

    async def on_initialize(self) -> None:
        """Hook for subclass initialization."""

    async def cleanup(self) -> None:
        self.initialized = False

    # ------------------------------------------------------------------
    # Capability contract
    def validate_inputs(self, inputs: Mapping[str, Any]) -> None:
        """Raise ``ValidationError`` naming any missing required input keys."""
        missing = [key for key in self.required_inputs if key not in inputs]
        if missing:
            raise ValidationError(
                f"Missing required inputs: {', '.join(missing)}",
                missing=missing,
                details={"agent_id": self.id, "provided": sorted(inputs.keys())},
            )

    async def execute(self, inputs: Dict[str, Any]) -> Any:
        raise AgentNotImplementedError(
            f"{type(self).__name__} must implement execute() method",
            {"agent_id": self.id},
        )

    def format_output(self, raw_result: Any) -> Any:
        return raw_result

    def calculate_confidence(self, result: Any, inputs: Mapping[str, Any]) -> float:
        """Confidence score in ``[0, 1]``; defaults to ``result['confidence']``."""
        confidence = None
        if isinstance(result, Mapping):
            confidence = result.get("confidence")
        if confidence is None:
            return DEFAULT_CONFIDENCE
        return min(1.0, max(0.0, float(confidence)))

    async def handle_error(self, error: Exception, inputs: Mapping[str, Any]) -> None:
        """Hook invoked before an error propagates out of ``process``.

        The default only logs; subclasses may add fallback behaviour but the
        error is re-raised either way.
        """
        self._logger.error(
            f"Agent error handler invoked for {self.id} ({type(self).__name__}): "
            f"{type(error).__name__}: {error} (input keys: {sorted(inputs.keys())})"
        )

    # ------------------------------------------------------------------
    async def process(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Initialize, validate, execute and format, then attach metadata."""
        start = time.perf_counter()
        try:
            await self.initialize()
            self.validate_inputs(inputs)

            self._logger.debug(
                f"Agent {self.id} processing inputs: {sorted(inputs.keys())}"
            )
            raw_result = await self.execute(inputs)
            formatted = self.format_output(raw_result)
            if not isinstance(formatted, dict):
                formatted = {"output": formatted}

            return {
                **formatted,
                "agent_id": self.id,
                "timestamp": utcnow().isoformat(),
                "confidence": self.calculate_confidence(raw_result, inputs),
                "processing_time": round((time.perf_counter() - start) * 1000, 3),
            }
        except Exception as error:
            self._logger.error(f"Agent {self.id} processing failed: {error}")
            await self.handle_error(error, inputs)
            raise

    # ------------------------------------------------------------------
    def get_capabilities(self) -> List[str]:
        return ["Basic processing"]

    def get_version(self) -> str:
        return "1.0.0"

    def get_metadata(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.agent_type,
            "config": self.config,
            "capabilities": self.get_capabilities(),
            "version": self.get_version(),
        }
