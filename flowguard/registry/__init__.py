"""Agent type registry and per-execution agent pools."""

from __future__ import annotations

import importlib
import logging
from typing import Dict, List, Optional, Type

from ..agent.aggregator import DataAggregatorAgent
from ..agent.base import BaseAgent
from ..agent.dynamic import DynamicAgent
from ..agent.memory import AgentMemory
from ..completion import CompletionService
from ..config import CompletionConfig, FlowguardConfig
from ..contracts import AgentSpec

logger = logging.getLogger(__name__)


def load_agent_class(reference: str) -> Type[BaseAgent]:
    """Import an agent class from a ``"package.module:ClassName"`` reference."""
    module_name, sep, class_name = reference.partition(":")
    if not sep or not module_name or not class_name:
        raise ValueError(
            f"Invalid agent reference '{reference}', expected 'package.module:ClassName'"
        )
    try:
        module = importlib.import_module(module_name)
        agent_class = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Failed to load agent class '{reference}': {e}") from e

    if not isinstance(agent_class, type) or not issubclass(agent_class, BaseAgent):
        raise ValueError(f"'{reference}' is not a BaseAgent subclass")
    return agent_class


class AgentRegistry:
    """Maps agent type identifiers to agent classes and builds instances.

    Types without a registered class fall back to ``DynamicAgent``; those
    instances get a fresh ``AgentMemory`` and are cached by node id so later
    lookups within the same execution see the same memory. A registry is
    meant to be ``fork()``-ed per execution: forks share the type map but
    keep private instance caches.
    """

    def __init__(
        self,
        completion: Optional[CompletionService] = None,
        defaults: Optional[CompletionConfig] = None,
    ) -> None:
        self._types: Dict[str, Type[BaseAgent]] = {}
        self._instances: Dict[str, BaseAgent] = {}
        self.completion = completion
        self.defaults = defaults or CompletionConfig()

    def register_agent(self, agent_type: str, agent_class: Type[BaseAgent]) -> None:
        """Register ``agent_class`` for ``agent_type``; the last registration wins."""
        if agent_type in self._types:
            logger.debug(f"Overwriting registration for agent type {agent_type}")
        self._types[agent_type] = agent_class

    def has_agent(self, agent_type: str) -> bool:
        return agent_type in self._types

    def get_agent_class(self, agent_type: str) -> Optional[Type[BaseAgent]]:
        return self._types.get(agent_type)

    def registered_types(self) -> List[str]:
        return sorted(self._types)

    def create_agent(
        self,
        spec: AgentSpec,
        completion: Optional[CompletionService] = None,
        log: Optional[logging.Logger] = None,
    ) -> BaseAgent:
        agent_class = self._types.get(spec.type)
        if agent_class is not None:
            logger.debug(f"Creating static agent {spec.id} of type {spec.type}")
            return agent_class(spec.config, agent_id=spec.id, log=log)

        cached = self._instances.get(spec.id)
        if cached is not None:
            return cached

        logger.debug(f"Creating dynamic agent {spec.id} of type {spec.type}")
        agent = DynamicAgent(
            spec.type,
            spec.config,
            agent_id=spec.id,
            completion=completion or self.completion,
            memory=AgentMemory(),
            defaults=self.defaults,
            log=log,
        )
        self._instances[spec.id] = agent
        return agent

    def get_agent_instance(self, agent_id: str) -> Optional[BaseAgent]:
        return self._instances.get(agent_id)

    def clear_instances(self) -> None:
        """Drop every cached instance along with its memory."""
        self._instances.clear()

    async def release_instances(self) -> None:
        """Run ``cleanup`` on every cached instance, then drop them all."""
        for agent_id, agent in list(self._instances.items()):
            try:
                await agent.cleanup()
            except Exception as e:
                logger.error(f"Cleanup of agent {agent_id} failed: {e}")
        self.clear_instances()

    def fork(self) -> "AgentRegistry":
        """Return a registry sharing this type map with an empty instance cache."""
        forked = AgentRegistry(completion=self.completion, defaults=self.defaults)
        forked._types = self._types
        return forked


def default_registry(
    config: Optional[FlowguardConfig] = None,
    completion: Optional[CompletionService] = None,
) -> AgentRegistry:
    """Registry with the built-in agent types plus those named in ``config.agents``."""
    config = config or FlowguardConfig()
    registry = AgentRegistry(completion=completion, defaults=config.completion)
    registry.register_agent(DataAggregatorAgent.agent_type, DataAggregatorAgent)
    for agent_type, reference in config.agents.items():
        registry.register_agent(agent_type, load_agent_class(reference))
    return registry


__all__ = ["AgentRegistry", "default_registry", "load_agent_class"]
