"""End-to-end behaviour of the execution engine over in-memory backends."""

import pytest

from flowguard.config import FlowguardConfig, RetryConfig
from flowguard.contracts import AgentSpec, Connection, DataMapping, ExecutionConfig, WorkflowStatus
from flowguard.errors import ExecutionNotFoundError, InvalidStateError, WorkflowNotFoundError
from flowguard.execution import ExecutionEngine
from flowguard.execution.models import ExecutionStatus
from flowguard.persistence import InMemoryExecutionRepository


def _events(transport):
    return [(e.event, e.node) for e in transport.pending("executions")]


@pytest.mark.asyncio
async def test_two_successful_nodes_complete(engine, repository, transport, two_node_workflow):
    await repository.save_workflow(two_node_workflow)

    execution = await engine.execute_workflow("wf", {"site": "north"}, initiated_by="alice")

    assert execution.status is ExecutionStatus.COMPLETED
    assert execution.metrics.completed_nodes == 2
    assert execution.metrics.failed_nodes == 0
    assert execution.metrics.agent_calls == 2
    assert [c.node for c in execution.checkpoints] == ["A", "B"]
    assert execution.checkpoints[0].timestamp <= execution.checkpoints[1].timestamp
    assert execution.current_state["site"] == "north"
    assert execution.current_state["B"]["seen"] == ["A", "site"]
    assert execution.final_result == execution.current_state
    assert execution.initial_state == {"site": "north"}
    assert execution.duration is not None and execution.duration >= 0
    assert execution.current_node is None
    assert execution.initiated_by == "alice"

    stored = await repository.load_execution(execution.execution_id)
    assert stored.status is ExecutionStatus.COMPLETED

    assert _events(transport) == [
        ("created", None),
        ("started", "A"),
        ("node_completed", "A"),
        ("node_completed", "B"),
        ("completed", "B"),
    ]

    stats = await engine.get_workflow_stats("wf")
    assert stats.execution_count == 1
    assert stats.success_rate == 1.0


@pytest.mark.asyncio
async def test_validation_error_fails_without_retry(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [("A", "recording"), ("B", "recording", {"fail_with": "validation"})],
            [("A", "B")],
            execution_config=ExecutionConfig(max_retries=3),
        )
    )

    execution = await engine.execute_workflow("wf")

    assert execution.status is ExecutionStatus.FAILED
    assert execution.metrics.completed_nodes == 1
    assert execution.metrics.failed_nodes == 1
    assert execution.metrics.agent_calls == 2
    assert "B rejected its inputs" in execution.error_message
    assert execution.error_details.type == "validation"
    assert execution.error_details.node == "B"
    assert [(c.node, c.metadata["status"]) for c in execution.checkpoints] == [
        ("A", "completed"),
        ("B", "failed"),
    ]
    assert "B" not in execution.current_state
    assert execution.final_result is None

    stats = await engine.get_workflow_stats("wf")
    assert stats.success_rate == 0.0
    assert stats.last_error == execution.error_message


@pytest.mark.asyncio
async def test_failure_checkpoint_respects_checkpoint_setting(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [("A", "recording", {"fail_with": "runtime"})],
            execution_config=ExecutionConfig(max_retries=0, enable_checkpoints=False),
        )
    )
    execution = await engine.execute_workflow("wf")
    assert execution.status is ExecutionStatus.FAILED
    assert execution.checkpoints == []
    assert execution.error_details.type == "agent_error"


@pytest.mark.asyncio
async def test_approval_gate_pauses_until_decision(engine, repository, transport, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [AgentSpec(id="A", type="recording", requires_approval=True), ("B", "recording")],
            [("A", "B")],
        )
    )

    execution = await engine.execute_workflow("wf")
    assert execution.status is ExecutionStatus.PAUSED
    assert execution.current_node == "B"
    assert execution.metrics.completed_nodes == 1
    (intervention,) = execution.human_interventions
    assert intervention.is_open
    assert intervention.node == "A"

    with pytest.raises(InvalidStateError):
        await engine.resume(execution.execution_id)

    decided = await engine.submit_decision(
        execution.execution_id, intervention.intervention_id, "approve", "alice", "looks fine"
    )
    assert decided.decision == "approve"
    assert decided.approved_by == "alice"
    assert decided.completed_at is not None

    resumed = await engine.resume(execution.execution_id)
    assert resumed.status is ExecutionStatus.RUNNING

    finished = await engine.run(execution.execution_id)
    assert finished.status is ExecutionStatus.COMPLETED
    assert [c.node for c in finished.checkpoints] == ["A", "B"]
    assert finished.human_interventions[0].comments == "looks fine"
    assert [name for name, _ in _events(transport)] == [
        "created",
        "started",
        "node_completed",
        "paused",
        "decision_submitted",
        "resumed",
        "node_completed",
        "completed",
    ]


@pytest.mark.asyncio
async def test_rejected_intervention_fails_next_step(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [AgentSpec(id="A", type="recording", requires_approval=True), ("B", "recording")],
            [("A", "B")],
        )
    )
    execution = await engine.execute_workflow("wf")
    intervention = execution.human_interventions[0]

    await engine.submit_decision(
        execution.execution_id, intervention.intervention_id, "Reject", "bob"
    )
    failed = await engine.continue_execution(execution.execution_id)

    assert failed.status is ExecutionStatus.FAILED
    assert failed.error_message == (
        f"Intervention {intervention.intervention_id} rejected by bob"
    )
    assert failed.error_details.type == "invalid_state"
    assert failed.metrics.completed_nodes == 1
    assert "B" not in failed.current_state


@pytest.mark.asyncio
async def test_decision_for_unknown_intervention_is_rejected(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory([AgentSpec(id="A", type="recording", requires_approval=True)])
    )
    execution = await engine.execute_workflow("wf")
    with pytest.raises(InvalidStateError):
        await engine.submit_decision(execution.execution_id, "nope", "approve", "alice")


@pytest.mark.asyncio
async def test_completion_failure_degrades_but_continues(
    repository, registry, transport, failing_completion, workflow_factory
):
    engine = ExecutionEngine(
        repository,
        registry=registry,
        completion=failing_completion,
        transport=transport,
        config=FlowguardConfig(retry=RetryConfig(base_delay_ms=0, max_delay_ms=0)),
    )
    await repository.save_workflow(
        workflow_factory(
            [("review", "site_review", {"analysis_prompt": "Assess the site"}), ("B", "recording")],
            [("review", "B")],
        )
    )

    execution = await engine.execute_workflow("wf", {"notes": "cracked slab"})

    assert execution.status is ExecutionStatus.COMPLETED
    review = execution.current_state["review"]
    assert review["error"] is True
    assert review["confidence"] == pytest.approx(0.1)
    assert execution.checkpoints[0].metadata["degraded"] is True
    assert execution.metrics.completed_nodes == 2
    assert execution.metrics.api_calls == 1
    assert len(failing_completion.calls) == 1
    assert "Assess the site" in failing_completion.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_cancel_between_nodes(engine, repository, two_node_workflow):
    await repository.save_workflow(two_node_workflow)
    created = await engine.create_execution("wf")
    await engine.start(created.execution_id)
    after_a = await engine.step(created.execution_id)
    assert after_a.current_node == "B"

    cancelled = await engine.cancel(created.execution_id)

    assert cancelled.status is ExecutionStatus.CANCELLED
    assert cancelled.metrics.completed_nodes == 1
    assert [c.node for c in cancelled.checkpoints] == ["A"]
    assert cancelled.duration is not None
    assert cancelled.completed_at is not None
    assert await engine.get_workflow_stats("wf") is None

    with pytest.raises(InvalidStateError):
        await engine.step(created.execution_id)
    with pytest.raises(InvalidStateError):
        await engine.cancel(created.execution_id)
    stored = await engine.get_execution(created.execution_id)
    assert stored.status is ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_before_start_has_zero_duration(engine, repository, two_node_workflow):
    await repository.save_workflow(two_node_workflow)
    created = await engine.create_execution("wf")
    cancelled = await engine.cancel(created.execution_id)
    assert cancelled.duration == 0.0
    assert cancelled.started_at is None


@pytest.mark.asyncio
async def test_external_pause_and_resume(engine, repository, two_node_workflow):
    await repository.save_workflow(two_node_workflow)
    created = await engine.create_execution("wf")
    await engine.start(created.execution_id)
    await engine.step(created.execution_id)

    paused = await engine.pause(created.execution_id, reason="maintenance", requested_by="ops")
    assert paused.status is ExecutionStatus.PAUSED
    assert paused.human_interventions == []
    assert (await engine.run(created.execution_id)).status is ExecutionStatus.PAUSED
    with pytest.raises(InvalidStateError):
        await engine.step(created.execution_id)

    finished = await engine.continue_execution(created.execution_id)
    assert finished.status is ExecutionStatus.COMPLETED
    assert finished.paused_ms >= 0


@pytest.mark.asyncio
async def test_data_mapping_and_conditional_routing(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [
                ("A", "recording", {"value": 42, "confidence": 0.6}),
                ("high", "recording"),
                ("low", "recording"),
            ],
            [
                Connection(from_node="A", to_node="high", condition="A.confidence >= 0.8"),
                Connection(
                    from_node="A",
                    to_node="low",
                    data_mapping=DataMapping(source_key="A.value", target_key="reading.value"),
                ),
            ],
            finish_point="low",
        )
    )

    execution = await engine.execute_workflow("wf")

    assert execution.status is ExecutionStatus.COMPLETED
    assert "high" not in execution.current_state
    assert execution.current_state["low"]["inputs"]["reading"] == {"value": 42}
    assert "reading" not in execution.current_state
    assert execution.metrics.completed_nodes == 2
    assert execution.metrics.total_nodes == 3


@pytest.mark.asyncio
async def test_hyphenated_node_ids_route_on_their_results(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [
                ("visual-inspection", "recording", {"value": "pitting", "confidence": 0.9}),
                ("corrosion-assessment", "recording"),
                ("manual-review", "recording"),
            ],
            [
                Connection(
                    from_node="visual-inspection",
                    to_node="manual-review",
                    condition="!(visual-inspection.confidence > 0.5)",
                ),
                Connection(
                    from_node="visual-inspection",
                    to_node="corrosion-assessment",
                    condition="visual-inspection.confidence > 0.5",
                    data_mapping=DataMapping(
                        source_key="visual-inspection.value", target_key="finding"
                    ),
                ),
            ],
        )
    )

    execution = await engine.execute_workflow("wf")

    assert execution.status is ExecutionStatus.COMPLETED
    assert "manual-review" not in execution.current_state
    assert execution.current_state["corrosion-assessment"]["inputs"]["finding"] == "pitting"
    assert execution.metrics.completed_nodes == 2


@pytest.mark.asyncio
async def test_unmatched_conditions_fail_execution(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [("A", "recording", {"confidence": 0.2}), ("B", "recording")],
            [Connection(from_node="A", to_node="B", condition="A.confidence > 0.5")],
        )
    )
    execution = await engine.execute_workflow("wf")
    assert execution.status is ExecutionStatus.FAILED
    assert execution.error_details.type == "definition"
    assert execution.metrics.completed_nodes == 1


@pytest.mark.asyncio
async def test_output_key_renames_result(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory([AgentSpec(id="A", type="recording", output_key="inspection")])
    )
    execution = await engine.execute_workflow("wf")
    assert "inspection" in execution.current_state
    assert "A" not in execution.current_state
    assert execution.checkpoints[0].metadata["result_key"] == "inspection"


@pytest.mark.asyncio
async def test_invalid_and_missing_workflows_are_rejected(engine, repository, workflow_factory):
    with pytest.raises(WorkflowNotFoundError):
        await engine.create_execution("missing")
    with pytest.raises(ExecutionNotFoundError):
        await engine.get_execution("missing")

    await repository.save_workflow(
        workflow_factory([("A", "recording")], status=WorkflowStatus.INACTIVE)
    )
    with pytest.raises(InvalidStateError):
        await engine.create_execution("wf")


@pytest.mark.asyncio
async def test_terminal_executions_reject_further_writes(engine, repository, two_node_workflow):
    await repository.save_workflow(two_node_workflow)
    execution = await engine.execute_workflow("wf")

    for operation in (engine.cancel, engine.resume, engine.start, engine.fail):
        args = (execution.execution_id, "boom") if operation == engine.fail else (execution.execution_id,)
        with pytest.raises(InvalidStateError):
            await operation(*args)

    stored = await engine.get_execution(execution.execution_id)
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.error_message is None


class FlakySaveRepository(InMemoryExecutionRepository):
    def __init__(self):
        super().__init__()
        self.fail_saves = False

    async def save_execution(self, execution):
        if self.fail_saves:
            raise ConnectionError("database unavailable")
        await super().save_execution(execution)


@pytest.mark.asyncio
async def test_save_failures_surface_to_the_caller(registry, transport, two_node_workflow):
    repository = FlakySaveRepository()
    engine = ExecutionEngine(repository, registry=registry, transport=transport)
    await repository.save_workflow(two_node_workflow)
    created = await engine.create_execution("wf")

    repository.fail_saves = True
    with pytest.raises(ConnectionError):
        await engine.start(created.execution_id)

    live = await engine.get_execution(created.execution_id)
    assert live.status is ExecutionStatus.RUNNING
    stored = await repository.load_execution(created.execution_id)
    assert stored.status is ExecutionStatus.PENDING
    assert [e.event for e in transport.pending("executions")] == ["created"]


@pytest.mark.asyncio
async def test_summary_and_listing(engine, repository, two_node_workflow):
    await repository.save_workflow(two_node_workflow)
    done = await engine.execute_workflow("wf")
    pending = await engine.create_execution("wf", initiated_by="bob")

    summary = await engine.get_summary(done.execution_id)
    assert summary.status is ExecutionStatus.COMPLETED
    assert summary.metrics.completed_nodes == 2

    listed = await engine.list_executions(workflow_id="wf")
    assert [e.execution_id for e in listed] == [done.execution_id, pending.execution_id]
    only_pending = await engine.list_executions(status=ExecutionStatus.PENDING)
    assert [e.initiated_by for e in only_pending] == ["bob"]
