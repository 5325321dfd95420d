"""Several executions driven by one engine at the same time."""

import asyncio

import pytest

from flowguard.errors import InvalidStateError
from flowguard.execution.models import ExecutionStatus


@pytest.mark.asyncio
async def test_parallel_executions_are_isolated(engine, repository, workflow_factory):
    await repository.save_workflow(
        workflow_factory(
            [("A", "recording", {"delay": 0.01}), ("B", "recording", {"delay": 0.01})],
            [("A", "B")],
        )
    )

    executions = await asyncio.gather(
        *(engine.execute_workflow("wf", {"run": i}) for i in range(5))
    )

    assert {e.status for e in executions} == {ExecutionStatus.COMPLETED}
    assert len({e.execution_id for e in executions}) == 5
    for i, execution in enumerate(executions):
        assert execution.current_state["run"] == i
        assert execution.current_state["B"]["inputs"]["run"] == i
        assert execution.metrics.completed_nodes == 2

    stats = await engine.get_workflow_stats("wf")
    assert stats.execution_count == 5
    assert stats.success_rate == pytest.approx(1.0)
    assert engine._locks == {}
    assert engine._lock_claims == {}
    assert engine._live == {}
    assert engine._pools == {}


@pytest.mark.asyncio
async def test_dynamic_agents_are_not_shared_between_executions(
    engine, repository, completion, workflow_factory
):
    await repository.save_workflow(workflow_factory([("notes", "field_notes")]))

    await asyncio.gather(
        engine.execute_workflow("wf", {"site": "north"}),
        engine.execute_workflow("wf", {"site": "south"}),
    )

    prompts = [call["prompt"] for call in completion.calls]
    assert len(prompts) == 2
    assert not any("Previous analysis" in prompt for prompt in prompts)
    assert engine._pools == {}


@pytest.mark.asyncio
async def test_concurrent_step_on_same_execution_is_rejected(
    engine, repository, workflow_factory
):
    await repository.save_workflow(
        workflow_factory([("A", "recording", {"delay": 0.1}), ("B", "recording")], [("A", "B")])
    )
    created = await engine.create_execution("wf")
    await engine.start(created.execution_id)

    first = asyncio.create_task(engine.step(created.execution_id))
    await asyncio.sleep(0.02)
    with pytest.raises(InvalidStateError):
        await engine.step(created.execution_id)

    stepped = await first
    assert stepped.current_node == "B"
    assert stepped.metrics.completed_nodes == 1
    assert engine._locks == {}


@pytest.mark.asyncio
async def test_cancel_during_node_discards_its_result(
    engine, repository, transport, workflow_factory
):
    await repository.save_workflow(
        workflow_factory([("A", "recording", {"delay": 0.1}), ("B", "recording")], [("A", "B")])
    )
    created = await engine.create_execution("wf")
    await engine.start(created.execution_id)

    running = asyncio.create_task(engine.step(created.execution_id))
    await asyncio.sleep(0.02)
    cancelled = await engine.cancel(created.execution_id)
    assert cancelled.status is ExecutionStatus.CANCELLED

    after = await running
    assert after.status is ExecutionStatus.CANCELLED
    assert after.metrics.completed_nodes == 0
    assert "A" not in after.current_state
    assert after.checkpoints == []

    stored = await repository.load_execution(created.execution_id)
    assert stored.status is ExecutionStatus.CANCELLED
    assert [e.event for e in transport.pending("executions")][-1] == "cancelled"
    assert engine._locks == {}
    assert engine._lock_claims == {}
