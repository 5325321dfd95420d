"""Static validation of workflow definitions."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional

from ..contracts import WorkflowDefinition
from ..errors import WorkflowDefinitionError
from .router import WorkflowRouter

logger = logging.getLogger(__name__)


def find_cycle(definition: WorkflowDefinition) -> Optional[List[str]]:
    """Return the nodes of one cycle in the connection graph, if any."""
    adjacency: Dict[str, List[str]] = {a.id: [] for a in definition.agents}
    for connection in definition.edges():
        adjacency.setdefault(connection.from_node, []).append(connection.to_node)

    visiting: List[str] = []
    done = set()

    def visit(node: str) -> Optional[List[str]]:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done:
            return None
        visiting.append(node)
        for target in adjacency.get(node, []):
            cycle = visit(target)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node)
        return None

    for node in adjacency:
        cycle = visit(node)
        if cycle:
            return cycle
    return None


def validate_workflow(
    definition: WorkflowDefinition, router: Optional[WorkflowRouter] = None
) -> List[str]:
    """Return every problem found in ``definition``; an empty list means valid."""
    router = router or WorkflowRouter()
    errors: List[str] = []

    if not definition.id:
        errors.append("Missing workflow ID")
    if not definition.agents:
        errors.append("Workflow must declare at least one agent")

    for index, agent in enumerate(definition.agents):
        if not agent.id:
            errors.append(f"Agent {index}: Missing ID")
        if not agent.type:
            errors.append(f"Agent {index}: Missing type")

    counts = Counter(a.id for a in definition.agents if a.id)
    for agent_id, count in counts.items():
        if count > 1:
            errors.append(f"Duplicate agent ID '{agent_id}'")

    known = set(counts)
    for index, connection in enumerate(definition.connections):
        if connection.from_node not in known:
            errors.append(
                f"Connection {index}: Unknown source agent '{connection.from_node}'"
            )
        if connection.to_node not in known:
            errors.append(
                f"Connection {index}: Unknown target agent '{connection.to_node}'"
            )
        if connection.condition:
            try:
                router.compile_condition(connection.condition)
            except WorkflowDefinitionError as e:
                errors.append(f"Connection {index}: {e.message}")

    if definition.entry_point and definition.entry_point not in known:
        errors.append(f"Unknown entry point '{definition.entry_point}'")
    if definition.finish_point and definition.finish_point not in known:
        errors.append(f"Unknown finish point '{definition.finish_point}'")

    cycle = find_cycle(definition)
    if cycle:
        errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")

    if errors:
        logger.error(
            f"Workflow {definition.id} failed validation with {len(errors)} errors: {errors}"
        )
    else:
        logger.debug(f"Workflow {definition.id} passed validation")
    return errors


def ensure_valid(
    definition: WorkflowDefinition, router: Optional[WorkflowRouter] = None
) -> None:
    """Raise ``WorkflowDefinitionError`` if ``definition`` has any problem."""
    errors = validate_workflow(definition, router)
    if errors:
        raise WorkflowDefinitionError(
            f"Workflow {definition.id} is invalid: {'; '.join(errors)}", errors
        )
