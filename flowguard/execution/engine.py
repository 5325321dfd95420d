"""Asynchronous orchestrator that drives executions through a workflow graph."""

from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from ..agent.base import BaseAgent
from ..completion import CompletionService
from ..config import FlowguardConfig
from ..constants import EXECUTION_EVENTS_TOPIC, REJECTION_DECISIONS
from ..contracts import AgentSpec, ExecutionEvent, WorkflowDefinition
from ..errors import (
    AgentNotImplementedError,
    ErrorKind,
    ExecutionNotFoundError,
    ExecutionTimeoutError,
    InvalidStateError,
    RoutingError,
    ValidationError,
    WorkflowNotFoundError,
    error_kind_of,
)
from ..persistence.repository import ExecutionRepository
from ..registry import AgentRegistry, default_registry
from ..transports.base import BaseTransport
from ..utils.retry import retry_delay_ms, schedule_retry
from .graph import ensure_valid
from .models import (
    Execution,
    ExecutionMetrics,
    ExecutionStatus,
    ExecutionSummary,
    Intervention,
    NodeOutcome,
    WorkflowStats,
)
from .router import WorkflowRouter
from .state import Clock, ExecutionStateMachine

_NOT_RETRIED = (ValidationError, AgentNotImplementedError)


class ExecutionEngine:
    """Runs executions one node at a time and owns all of their bookkeeping.

    Every mutation of an execution happens under a per-execution
    ``asyncio.Lock`` and is saved to the repository before an event is
    published. Agent calls run outside the lock, so ``cancel`` and ``pause``
    take effect at the next node boundary. Different executions share
    nothing but the repository, the transport and the agent type map.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        registry: Optional[AgentRegistry] = None,
        completion: Optional[CompletionService] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[FlowguardConfig] = None,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repository = repository
        self.config = config or FlowguardConfig()
        self.completion = completion
        self.registry = registry or default_registry(self.config, completion)
        self.transport = transport
        self.state_machine = ExecutionStateMachine(clock)
        self.router = WorkflowRouter()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._live: Dict[str, Execution] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_claims: Dict[str, int] = {}
        self._pools: Dict[str, AgentRegistry] = {}
        self._stepping: Set[str] = set()

    # ------------------------------------------------------------------
    # Internal helpers
    def _claim(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        self._lock_claims[execution_id] = self._lock_claims.get(execution_id, 0) + 1
        return lock

    def _unclaim(self, execution_id: str) -> None:
        """Drop one claim; the lock goes away once nobody holds or awaits it."""
        remaining = self._lock_claims[execution_id] - 1
        if remaining:
            self._lock_claims[execution_id] = remaining
            return
        del self._lock_claims[execution_id]
        del self._locks[execution_id]

    @asynccontextmanager
    async def _locked(self, execution_id: str) -> AsyncIterator[None]:
        lock = self._claim(execution_id)
        try:
            async with lock:
                yield
        finally:
            self._unclaim(execution_id)

    def _pool(self, execution_id: str) -> AgentRegistry:
        pool = self._pools.get(execution_id)
        if pool is None:
            pool = self.registry.fork()
            self._pools[execution_id] = pool
        return pool

    async def _get(self, execution_id: str) -> Execution:
        execution = self._live.get(execution_id)
        if execution is not None:
            return execution
        execution = await self.repository.load_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if not execution.is_terminal:
            self._live[execution_id] = execution
        return execution

    async def _save(self, execution: Execution) -> None:
        await self.repository.save_execution(execution)

    async def _publish(
        self,
        event: str,
        execution: Execution,
        node: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.transport is None:
            return
        message = ExecutionEvent(
            event=event,
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=execution.status.value,
            node=node,
            timestamp=self.state_machine.now(),
            data=data or {},
        )
        try:
            await self.transport.publish(EXECUTION_EVENTS_TOPIC, message)
        except Exception as e:
            self._logger.error(
                f"Failed to publish {event} for execution {execution.execution_id}: {e}"
            )

    async def _finalize(self, execution: Execution) -> None:
        """Release per-execution resources and fold the run into workflow stats."""
        pool = self._pools.pop(execution.execution_id, None)
        if pool is not None:
            await pool.release_instances()
        self._live.pop(execution.execution_id, None)

        if execution.status == ExecutionStatus.CANCELLED:
            return
        stats = await self.repository.get_workflow_stats(execution.workflow_id)
        stats = stats or WorkflowStats(workflow_id=execution.workflow_id)
        stats.record(
            execution.duration,
            succeeded=execution.status == ExecutionStatus.COMPLETED,
            executed_at=execution.completed_at or self.state_machine.now(),
            error=execution.error_message,
        )
        await self.repository.save_workflow_stats(stats)

    async def _persist_transition(
        self,
        event: str,
        execution: Execution,
        node: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._save(execution)
        await self._publish(event, execution, node, data)
        if execution.is_terminal:
            await self._finalize(execution)

    @staticmethod
    def _snapshot(execution: Execution) -> Execution:
        return execution.model_copy(deep=True)

    @staticmethod
    def _definition(execution: Execution) -> WorkflowDefinition:
        if execution.config_snapshot is None:
            raise InvalidStateError(
                f"Execution {execution.execution_id} has no workflow snapshot",
                status=execution.status.value,
                operation="step",
            )
        return execution.config_snapshot

    @staticmethod
    def _rejected_intervention(execution: Execution) -> Optional[Intervention]:
        if not execution.human_interventions:
            return None
        latest = execution.human_interventions[-1]
        if latest.is_open or not latest.decision:
            return None
        if latest.decision.strip().lower() in REJECTION_DECISIONS:
            return latest
        return None

    # ------------------------------------------------------------------
    # Creation and lifecycle
    async def create_execution(
        self,
        workflow_id: str,
        initial_state: Optional[Dict[str, Any]] = None,
        initiated_by: str = "system",
        tenant_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """Create a pending execution bound to the current workflow version."""
        workflow = await self.repository.load_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.is_executable():
            raise InvalidStateError(
                f"Workflow {workflow_id} is {workflow.status.value} and cannot be executed",
                status=workflow.status.value,
                operation="create execution",
            )
        ensure_valid(workflow, self.router)

        now = self.state_machine.now()
        state = copy.deepcopy(initial_state or {})
        execution = Execution(
            workflow_id=workflow_id,
            initial_state=state,
            current_state=copy.deepcopy(state),
            metrics=ExecutionMetrics(total_nodes=len(workflow.agents)),
            initiated_by=initiated_by,
            tenant_id=tenant_id,
            context=dict(context or {}),
            config_snapshot=workflow,
            current_node=workflow.resolved_entry_point,
            created_at=now,
            updated_at=now,
        )
        self._live[execution.execution_id] = execution
        await self._persist_transition("created", execution)
        self._logger.info(
            f"Created execution {execution.execution_id} for workflow {workflow_id} "
            f"v{workflow.version} ({len(workflow.agents)} nodes)"
        )
        return self._snapshot(execution)

    async def start(self, execution_id: str) -> Execution:
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            self.state_machine.start(execution)
            self._logger.info(
                f"Started execution {execution_id} at node {execution.current_node}"
            )
            await self._persist_transition("started", execution, execution.current_node)
            return self._snapshot(execution)

    async def step(self, execution_id: str) -> Execution:
        """Run the current node of a running execution and route to the next one."""
        if execution_id in self._stepping:
            raise InvalidStateError(
                f"Execution {execution_id} is already running a step",
                operation="step",
            )
        self._stepping.add(execution_id)
        # The claim spans the agent call so the lock outlives both critical sections.
        lock = self._claim(execution_id)
        try:
            return await self._step(execution_id, lock)
        finally:
            self._unclaim(execution_id)
            self._stepping.discard(execution_id)

    async def _step(self, execution_id: str, lock: asyncio.Lock) -> Execution:
        async with lock:
            execution = await self._get(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                raise InvalidStateError(
                    f"Cannot step execution {execution_id} in status "
                    f"{execution.status.value}",
                    status=execution.status.value,
                    operation="step",
                )
            definition = self._definition(execution)
            node = execution.current_node

            rejected = self._rejected_intervention(execution)
            if rejected is not None:
                self.state_machine.fail(
                    execution,
                    f"Intervention {rejected.intervention_id} rejected by "
                    f"{rejected.approved_by}",
                    node=rejected.node,
                    kind=ErrorKind.INVALID_STATE,
                )
                await self._persist_transition("failed", execution, rejected.node)
                return self._snapshot(execution)

            timeout_ms = definition.execution_config.timeout_ms
            remaining_ms = timeout_ms - self.state_machine.running_ms(execution)
            if remaining_ms <= 0:
                error = ExecutionTimeoutError(
                    f"Execution {execution_id} exceeded timeout of {timeout_ms}ms",
                    {"timeout_ms": timeout_ms},
                )
                self._logger.error(str(error))
                self.state_machine.fail(execution, error, node=node)
                await self._persist_transition("failed", execution, node)
                return self._snapshot(execution)

            if node is None:
                self.state_machine.complete(
                    execution, copy.deepcopy(execution.current_state)
                )
                await self._persist_transition("completed", execution)
                return self._snapshot(execution)

            spec = definition.agent_spec(node)
            if spec is None:
                self.state_machine.fail(
                    execution,
                    f"Node {node} is not declared in workflow {definition.id}",
                    node=node,
                    kind=ErrorKind.DEFINITION,
                )
                await self._persist_transition("failed", execution, node)
                return self._snapshot(execution)

            inputs = self.router.resolve_inputs(definition, node, execution.current_state)
            pool = self._pool(execution_id)

        outcome = await self._invoke_node(
            execution_id, definition, spec, inputs, pool, remaining_ms
        )

        async with lock:
            if execution.is_terminal:
                self._logger.warning(
                    f"Discarding result of node {node}: execution {execution_id} "
                    f"is already {execution.status.value}"
                )
                return self._snapshot(execution)
            await self._apply_outcome(execution, definition, spec, outcome)
            return self._snapshot(execution)

    async def _invoke_node(
        self,
        execution_id: str,
        definition: WorkflowDefinition,
        spec: AgentSpec,
        inputs: Dict[str, Any],
        pool: AgentRegistry,
        remaining_ms: float,
    ) -> NodeOutcome:
        """Call the agent for ``spec`` with retries; never raises."""
        try:
            agent: BaseAgent = pool.create_agent(
                spec, completion=self.completion, log=self._logger
            )
        except Exception as e:
            self._logger.error(
                f"Could not create agent {spec.id} of type {spec.type} for "
                f"execution {execution_id}: {e}"
            )
            return NodeOutcome(
                node=spec.id,
                ok=False,
                error_kind=error_kind_of(e),
                error_message=str(e),
                attempts=0,
            )

        max_retries = max(0, definition.execution_config.max_retries)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + remaining_ms / 1000
        api_calls_before = agent.api_calls
        attempts = 0

        def failed(kind: ErrorKind, message: str) -> NodeOutcome:
            return NodeOutcome(
                node=spec.id,
                ok=False,
                error_kind=kind,
                error_message=message,
                attempts=attempts,
                api_calls=agent.api_calls - api_calls_before,
            )

        while True:
            attempts += 1
            budget = deadline - loop.time()
            timeout_message = (
                f"Execution {execution_id} exceeded timeout of "
                f"{definition.execution_config.timeout_ms}ms while running node {spec.id}"
            )
            if budget <= 0:
                return failed(ErrorKind.TIMEOUT, timeout_message)
            try:
                self._logger.debug(
                    f"Execution {execution_id} invoking {spec.id} (attempt {attempts})"
                )
                result = await asyncio.wait_for(
                    agent.process(copy.deepcopy(inputs)), timeout=budget
                )
            except asyncio.TimeoutError:
                self._logger.error(timeout_message)
                return failed(ErrorKind.TIMEOUT, timeout_message)
            except _NOT_RETRIED as e:
                return failed(e.kind, str(e))
            except Exception as e:
                if attempts > max_retries:
                    self._logger.error(
                        f"Node {spec.id} of execution {execution_id} failed after "
                        f"{attempts} attempts: {e}"
                    )
                    return failed(error_kind_of(e), str(e))
                delay = retry_delay_ms(
                    attempts,
                    self.config.retry,
                    remaining_ms=(deadline - loop.time()) * 1000,
                )
                self._logger.warning(
                    f"Node {spec.id} of execution {execution_id} failed "
                    f"(attempt {attempts}/{max_retries + 1}): {e}; retrying in {delay:.0f}ms"
                )
                await schedule_retry(delay)
                continue

            return NodeOutcome(
                node=spec.id,
                ok=True,
                result=result,
                attempts=attempts,
                api_calls=agent.api_calls - api_calls_before,
            )

    async def _apply_outcome(
        self,
        execution: Execution,
        definition: WorkflowDefinition,
        spec: AgentSpec,
        outcome: NodeOutcome,
    ) -> None:
        sm = self.state_machine
        node = spec.id
        checkpoints = definition.execution_config.enable_checkpoints

        if not outcome.ok:
            sm.record_node(
                execution, False, agent_calls=outcome.attempts, api_calls=outcome.api_calls
            )
            if checkpoints:
                sm.add_checkpoint(
                    execution,
                    node,
                    message=f"Node {node} failed: {outcome.error_message}",
                    metadata={
                        "status": "failed",
                        "error_kind": (outcome.error_kind or ErrorKind.AGENT_ERROR).value,
                        "attempts": outcome.attempts,
                    },
                )
            sm.fail(execution, outcome.error_message, node=node, kind=outcome.error_kind)
            self._logger.error(
                f"Execution {execution.execution_id} failed at node {node}: "
                f"{outcome.error_message}"
            )
            await self._persist_transition(
                "failed", execution, node, {"error": outcome.error_message}
            )
            return

        result = outcome.result or {}
        execution.current_state[spec.result_key] = result
        sm.record_node(
            execution, True, agent_calls=outcome.attempts, api_calls=outcome.api_calls
        )
        if checkpoints:
            sm.add_checkpoint(
                execution,
                node,
                message=f"Node {node} completed",
                metadata={
                    "status": "completed",
                    "result_key": spec.result_key,
                    "result_keys": sorted(result.keys()),
                    "confidence": result.get("confidence"),
                    "degraded": bool(result.get("error")),
                    "attempts": outcome.attempts,
                    "processing_time": result.get("processing_time"),
                },
            )
        self._logger.info(
            f"Execution {execution.execution_id} completed node {node} "
            f"(confidence {result.get('confidence')}, attempts {outcome.attempts})"
        )

        try:
            next_node = self.router.next_node(definition, node, execution.current_state)
        except RoutingError as e:
            self._logger.error(f"Execution {execution.execution_id}: {e}")
            sm.fail(execution, e, node=node)
            await self._persist_transition("failed", execution, node)
            return

        execution.current_node = next_node
        await self._save(execution)
        await self._publish("node_completed", execution, node, {"next": next_node})

        if spec.requires_approval:
            intervention = sm.pause(
                execution,
                reason=f"Approval required after {node}",
                requested_by="system",
                gate=True,
                node=node,
                metadata={"result_key": spec.result_key},
            )
            self._logger.info(
                f"Execution {execution.execution_id} paused for intervention "
                f"{intervention.intervention_id} after {node}"
            )
            await self._persist_transition(
                "paused",
                execution,
                node,
                {"intervention_id": intervention.intervention_id},
            )
        elif next_node is None and execution.status == ExecutionStatus.RUNNING:
            sm.complete(execution, copy.deepcopy(execution.current_state))
            await self._persist_transition("completed", execution, node)

    async def run(self, execution_id: str) -> Execution:
        """Step until the execution is terminal or paused, starting it if pending."""
        execution = await self.get_execution(execution_id)
        if execution.status == ExecutionStatus.PENDING:
            execution = await self.start(execution_id)
        while execution.status == ExecutionStatus.RUNNING:
            execution = await self.step(execution_id)
        return execution

    async def execute_workflow(
        self,
        workflow_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        initiated_by: str = "system",
        tenant_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Execution:
        """Create, start and run an execution of ``workflow_id``."""
        execution = await self.create_execution(
            workflow_id,
            initial_state=inputs,
            initiated_by=initiated_by,
            tenant_id=tenant_id,
            context=context,
        )
        await self.start(execution.execution_id)
        return await self.run(execution.execution_id)

    async def pause(
        self,
        execution_id: str,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
        gate: bool = False,
    ) -> Execution:
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            intervention = self.state_machine.pause(
                execution,
                reason=reason,
                requested_by=requested_by,
                gate=gate,
                node=execution.current_node,
            )
            data: Dict[str, Any] = {"reason": reason}
            if intervention is not None:
                data["intervention_id"] = intervention.intervention_id
            self._logger.info(f"Paused execution {execution_id}: {reason}")
            await self._persist_transition("paused", execution, execution.current_node, data)
            return self._snapshot(execution)

    async def resume(self, execution_id: str) -> Execution:
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            self.state_machine.resume(execution)
            self._logger.info(f"Resumed execution {execution_id}")
            await self._persist_transition("resumed", execution, execution.current_node)
            return self._snapshot(execution)

    async def continue_execution(self, execution_id: str) -> Execution:
        """Resume a paused execution and run it further."""
        await self.resume(execution_id)
        return await self.run(execution_id)

    async def complete(
        self, execution_id: str, result: Optional[Dict[str, Any]] = None
    ) -> Execution:
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            self.state_machine.complete(execution, result)
            await self._persist_transition("completed", execution)
            return self._snapshot(execution)

    async def fail(self, execution_id: str, error: Any) -> Execution:
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            self.state_machine.fail(execution, error, node=execution.current_node)
            self._logger.error(f"Execution {execution_id} failed: {error}")
            await self._persist_transition("failed", execution, execution.current_node)
            return self._snapshot(execution)

    async def cancel(self, execution_id: str) -> Execution:
        """Cancel the execution; an in-flight node finishes but its result is dropped."""
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            node = execution.current_node
            self.state_machine.cancel(execution)
            self._logger.info(f"Cancelled execution {execution_id} before node {node}")
            await self._persist_transition("cancelled", execution, node)
            return self._snapshot(execution)

    async def submit_decision(
        self,
        execution_id: str,
        intervention_id: str,
        decision: str,
        approved_by: str,
        comments: Optional[str] = None,
    ) -> Intervention:
        async with self._locked(execution_id):
            execution = await self._get(execution_id)
            intervention = self.state_machine.submit_decision(
                execution, intervention_id, decision, approved_by, comments
            )
            self._logger.info(
                f"Decision '{decision}' by {approved_by} recorded for intervention "
                f"{intervention_id} of execution {execution_id}"
            )
            await self._persist_transition(
                "decision_submitted",
                execution,
                intervention.node,
                {"intervention_id": intervention_id, "decision": decision},
            )
            return intervention.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Queries
    async def get_execution(self, execution_id: str) -> Execution:
        execution = self._live.get(execution_id)
        if execution is None:
            execution = await self.repository.load_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return self._snapshot(execution)

    async def get_summary(self, execution_id: str) -> ExecutionSummary:
        execution = await self.get_execution(execution_id)
        return ExecutionSummary(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            status=execution.status,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            duration=execution.duration,
            initiated_by=execution.initiated_by,
            metrics=execution.metrics,
            current_node=execution.current_node,
            error_message=execution.error_message,
        )

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[Execution]:
        return await self.repository.list_executions(workflow_id=workflow_id, status=status)

    async def get_workflow_stats(self, workflow_id: str) -> Optional[WorkflowStats]:
        return await self.repository.get_workflow_stats(workflow_id)
