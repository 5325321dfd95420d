"""Shared fakes and fixtures for flowguard tests."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

import flowguard.persistence as persistence
from flowguard.agent.aggregator import DataAggregatorAgent
from flowguard.agent.base import BaseAgent
from flowguard.completion import CompletionOptions
from flowguard.config import FlowguardConfig, RetryConfig
from flowguard.contracts import AgentSpec, Connection, ExecutionConfig, WorkflowDefinition
from flowguard.errors import CompletionServiceError, ValidationError
from flowguard.execution import ExecutionEngine
from flowguard.persistence import InMemoryExecutionRepository
from flowguard.registry import AgentRegistry
from flowguard.transports.inmemory import InMemoryTransport


class RecordingAgent(BaseAgent):
    """Static agent driven entirely by its config.

    ``fail_with``: ``"validation"`` or ``"runtime"`` makes every call raise.
    ``fail_times``: raise ``RuntimeError`` for the first N calls.
    ``delay``: seconds to sleep inside ``execute``.
    """

    agent_type = "recording"

    def __init__(self, config=None, **kwargs):
        super().__init__(config, **kwargs)
        self.calls = 0

    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        delay = self.config.get("delay")
        if delay:
            await asyncio.sleep(delay)
        fail_with = self.config.get("fail_with")
        if fail_with == "validation":
            raise ValidationError(f"{self.id} rejected its inputs", missing=["thing"])
        if fail_with == "runtime":
            raise RuntimeError(f"{self.id} exploded")
        if self.calls <= self.config.get("fail_times", 0):
            raise RuntimeError(f"{self.id} flaked on call {self.calls}")
        return {
            "value": self.config.get("value", self.id),
            "seen": sorted(inputs.keys()),
            "inputs": inputs,
            "confidence": self.config.get("confidence", 0.9),
        }


class FakeCompletion:
    """In-process completion service recording every request."""

    def __init__(self, response: str = "Analysis: all good", error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt: str, options: CompletionOptions) -> str:
        self.calls.append({"prompt": prompt, "options": options})
        if self.error is not None:
            raise self.error
        return self.response


def build_workflow(
    agents,
    connections=None,
    workflow_id: str = "wf",
    **kwargs,
) -> WorkflowDefinition:
    """Build a definition from ``(id, type, config)`` tuples or ``AgentSpec``s."""
    specs = [
        a if isinstance(a, AgentSpec) else AgentSpec(id=a[0], type=a[1], config=a[2] if len(a) > 2 else {})
        for a in agents
    ]
    conns = [
        c if isinstance(c, Connection) else Connection(from_node=c[0], to_node=c[1])
        for c in (connections or [])
    ]
    return WorkflowDefinition(id=workflow_id, agents=specs, connections=conns, **kwargs)


@pytest.fixture(autouse=True)
def reset_repository_singleton():
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def registry():
    reg = AgentRegistry()
    reg.register_agent(RecordingAgent.agent_type, RecordingAgent)
    reg.register_agent(DataAggregatorAgent.agent_type, DataAggregatorAgent)
    return reg


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def engine(repository, registry, completion, transport):
    config = FlowguardConfig(retry=RetryConfig(base_delay_ms=0, max_delay_ms=0))
    return ExecutionEngine(
        repository,
        registry=registry,
        completion=completion,
        transport=transport,
        config=config,
    )


@pytest.fixture
def workflow_factory():
    return build_workflow


@pytest.fixture
def two_node_workflow():
    return build_workflow(
        [("A", "recording"), ("B", "recording")],
        [("A", "B")],
        entry_point="A",
        finish_point="B",
        execution_config=ExecutionConfig(max_retries=0),
    )


@pytest.fixture
def failing_completion():
    return FakeCompletion(error=CompletionServiceError("provider unavailable"))


@pytest.fixture
def fake_completion():
    """The ``FakeCompletion`` class, for tests that need custom responses."""
    return FakeCompletion
