"""Agent implementations and their per-execution memory."""

from .aggregator import DataAggregatorAgent, evaluate_formula
from .base import BaseAgent
from .dynamic import DynamicAgent, DynamicAgentConfig, parse_ai_response
from .memory import AgentMemory, ConversationEntry

__all__ = [
    "AgentMemory",
    "BaseAgent",
    "ConversationEntry",
    "DataAggregatorAgent",
    "DynamicAgent",
    "DynamicAgentConfig",
    "evaluate_formula",
    "parse_ai_response",
]
