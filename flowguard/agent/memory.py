"""Per-agent working memory scoped to a single execution."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from ..contracts import utcnow


class ConversationEntry(BaseModel):
    role: str
    content: str
    step: str = "unknown"
    timestamp: datetime = Field(default_factory=utcnow)


class MemoryMetadata(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    total_interactions: int = 0


class AgentMemory(BaseModel):
    """Mutable state owned by exactly one agent instance.

    ``conversation_history`` is append-only; ``step_data`` keeps the last value
    written for each key. The memory lives as long as the agent instance, which
    the engine drops when the execution reaches a terminal status.
    """

    conversation_history: List[ConversationEntry] = Field(default_factory=list)
    step_data: Dict[str, Any] = Field(default_factory=dict)
    persistent_context: Dict[str, Any] = Field(default_factory=dict)
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)

    def add_to_memory(self, key: str, data: Any) -> None:
        """Store ``data`` under ``key``, replacing any earlier value."""
        self.step_data[key] = data
        self.metadata.last_updated = utcnow()
        self.metadata.total_interactions += 1

    def get_from_memory(self, key: str, default: Any = None) -> Any:
        return self.step_data.get(key, default)

    def add_conversation_entry(
        self, role: str, content: str, step: str = "unknown"
    ) -> ConversationEntry:
        entry = ConversationEntry(role=role, content=content, step=step)
        self.conversation_history.append(entry)
        return entry

    def snapshot(self) -> Dict[str, Any]:
        """Return a detached, JSON-compatible copy of the memory."""
        return self.model_dump(mode="json")
