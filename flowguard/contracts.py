"""Workflow definition contracts and execution events."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_EXECUTION_TIMEOUT_MS, DEFAULT_MAX_RETRIES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentSpec(BaseModel):
    """Defines one node of a workflow graph."""

    id: str
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    requires_approval: bool = False
    output_key: Optional[str] = None

    @property
    def result_key(self) -> str:
        """Key under which the node result is merged into ``current_state``."""
        return self.output_key or self.id


class DataMapping(BaseModel):
    """Copy a dotted path of the state into a dotted path of the node inputs."""

    source_key: str
    target_key: str


class Connection(BaseModel):
    """Directed edge between two agent nodes."""

    from_node: str = Field(alias="from")
    to_node: str = Field(alias="to")
    data_mapping: Optional[DataMapping] = None
    condition: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ExecutionConfig(BaseModel):
    timeout_ms: int = DEFAULT_EXECUTION_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    enable_checkpoints: bool = True


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class WorkflowDefinition(BaseModel):
    """Static graph of agents, connections and execution configuration.

    A definition is immutable per ``version``; executions capture a copy of it
    when they are created so later edits never change in-flight runs.
    """

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    agents: List[AgentSpec] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    entry_point: Optional[str] = None
    finish_point: Optional[str] = None
    execution_config: ExecutionConfig = ExecutionConfig()
    version: int = 1
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def is_executable(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    def agent_spec(self, node_id: str) -> Optional[AgentSpec]:
        """Return the agent spec for ``node_id`` if declared."""
        return next((a for a in self.agents if a.id == node_id), None)

    @property
    def resolved_entry_point(self) -> Optional[str]:
        if self.entry_point:
            return self.entry_point
        return self.agents[0].id if self.agents else None

    @property
    def resolved_finish_point(self) -> Optional[str]:
        if self.finish_point:
            return self.finish_point
        return self.agents[-1].id if self.agents else None

    def edges(self) -> List[Connection]:
        """Declared connections, or a linear chain when none are declared."""
        if self.connections:
            return list(self.connections)
        return [
            Connection(from_node=a.id, to_node=b.id)
            for a, b in zip(self.agents, self.agents[1:])
        ]

    def outbound(self, node_id: str) -> List[Connection]:
        """Outbound connections of ``node_id`` in declaration order."""
        return [c for c in self.edges() if c.from_node == node_id]


class ExecutionEvent(BaseModel):
    """Notification published whenever an execution changes."""

    event: str
    execution_id: str
    workflow_id: str
    status: str
    node: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ExecutionEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
