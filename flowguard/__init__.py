"""Flowguard: checkpointed execution of agent workflow graphs."""

from .agent import AgentMemory, BaseAgent, DataAggregatorAgent, DynamicAgent
from .completion import CompletionOptions, CompletionService, PydanticAICompletionService
from .contracts import AgentSpec, Connection, DataMapping, ExecutionConfig, WorkflowDefinition
from .execution import Execution, ExecutionEngine, ExecutionStateMachine, ExecutionStatus
from .persistence import get_repository
from .registry import AgentRegistry, default_registry
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "AgentMemory",
    "AgentRegistry",
    "AgentSpec",
    "BaseAgent",
    "CompletionOptions",
    "CompletionService",
    "Connection",
    "DataAggregatorAgent",
    "DataMapping",
    "DynamicAgent",
    "Execution",
    "ExecutionConfig",
    "ExecutionEngine",
    "ExecutionStateMachine",
    "ExecutionStatus",
    "PydanticAICompletionService",
    "WorkflowDefinition",
    "default_registry",
    "get_repository",
    "get_transport",
]
