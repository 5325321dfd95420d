from datetime import datetime, timedelta, timezone

import pytest

from flowguard.errors import ErrorKind, ExecutionTimeoutError, InvalidStateError
from flowguard.execution.models import Execution, ExecutionMetrics, ExecutionStatus
from flowguard.execution.state import ExecutionStateMachine


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, ms: float) -> None:
        self.now += timedelta(milliseconds=ms)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sm(clock):
    return ExecutionStateMachine(clock)


def _execution(total_nodes: int = 2) -> Execution:
    return Execution(workflow_id="wf", metrics=ExecutionMetrics(total_nodes=total_nodes))


def test_start_sets_running_and_started_at(sm, clock):
    ex = _execution()
    sm.start(ex)
    assert ex.status == ExecutionStatus.RUNNING
    assert ex.started_at == clock.now


def test_start_twice_is_rejected_and_state_unchanged(sm):
    ex = _execution()
    sm.start(ex)
    before = ex.model_copy(deep=True)
    with pytest.raises(InvalidStateError) as exc:
        sm.start(ex)
    assert exc.value.operation == "start"
    assert exc.value.status == "running"
    assert ex == before


@pytest.mark.parametrize(
    "operation",
    [
        lambda sm, ex: sm.resume(ex),
        lambda sm, ex: sm.pause(ex),
        lambda sm, ex: sm.complete(ex, {}),
    ],
)
def test_invalid_transitions_from_pending(sm, operation):
    ex = _execution()
    with pytest.raises(InvalidStateError):
        operation(sm, ex)
    assert ex.status == ExecutionStatus.PENDING


def test_complete_sets_duration_once(sm, clock):
    ex = _execution()
    sm.start(ex)
    clock.advance(250)
    sm.complete(ex, {"done": True})
    assert ex.status == ExecutionStatus.COMPLETED
    assert ex.final_result == {"done": True}
    assert ex.duration == pytest.approx(250)
    assert ex.completed_at == clock.now

    clock.advance(1000)
    with pytest.raises(InvalidStateError):
        sm.fail(ex, "late failure")
    assert ex.duration == pytest.approx(250)
    assert ex.status == ExecutionStatus.COMPLETED
    assert ex.error_message is None


def test_terminal_rejects_checkpoints_and_metrics(sm):
    ex = _execution()
    sm.start(ex)
    sm.cancel(ex)
    with pytest.raises(InvalidStateError):
        sm.add_checkpoint(ex, "A", "late")
    with pytest.raises(InvalidStateError):
        sm.record_node(ex, True)
    assert ex.checkpoints == []
    assert ex.metrics.completed_nodes == 0


def test_cancel_from_pending_sets_zero_duration(sm):
    ex = _execution()
    sm.cancel(ex)
    assert ex.status == ExecutionStatus.CANCELLED
    assert ex.duration == 0.0


def test_fail_records_error_kind_and_node(sm):
    ex = _execution()
    sm.start(ex)
    sm.fail(ex, ExecutionTimeoutError("too slow"), node="B")
    assert ex.status == ExecutionStatus.FAILED
    assert ex.error_message == "too slow"
    assert ex.error_details.type == ErrorKind.TIMEOUT.value
    assert ex.error_details.node == "B"


def test_pause_and_resume_accumulate_paused_time(sm, clock):
    ex = _execution()
    ex.context["pause_reason"] = "caller owned"
    sm.start(ex)
    clock.advance(100)
    sm.pause(ex, reason="operator request")
    assert ex.status == ExecutionStatus.PAUSED
    assert ex.pause_reason == "operator request"
    assert ex.context["pause_reason"] == "caller owned"
    clock.advance(5000)
    assert sm.running_ms(ex) == pytest.approx(100)
    sm.resume(ex)
    assert ex.status == ExecutionStatus.RUNNING
    assert ex.paused_at is None
    assert ex.paused_ms == pytest.approx(5000)
    assert ex.pause_reason is None
    assert ex.context == {"pause_reason": "caller owned"}
    clock.advance(50)
    assert sm.running_ms(ex) == pytest.approx(150)


def test_resume_with_open_intervention_fails(sm):
    ex = _execution()
    sm.start(ex)
    intervention = sm.pause(ex, gate=True, node="A", requested_by="system")
    assert intervention is not None
    assert ex.open_intervention() is intervention

    with pytest.raises(InvalidStateError):
        sm.resume(ex)
    assert ex.status == ExecutionStatus.PAUSED

    sm.submit_decision(ex, intervention.intervention_id, "approve", "alice", "looks fine")
    assert intervention.completed_at is not None
    assert intervention.approved_by == "alice"
    sm.resume(ex)
    assert ex.status == ExecutionStatus.RUNNING


def test_submit_decision_requires_matching_open_intervention(sm):
    ex = _execution()
    sm.start(ex)
    with pytest.raises(InvalidStateError):
        sm.submit_decision(ex, "nope", "approve", "alice")

    intervention = sm.pause(ex, gate=True)
    with pytest.raises(InvalidStateError):
        sm.submit_decision(ex, "other-id", "approve", "alice")
    sm.submit_decision(ex, intervention.intervention_id, "approve", "alice")
    with pytest.raises(InvalidStateError):
        sm.submit_decision(ex, intervention.intervention_id, "reject", "bob")
    assert intervention.decision == "approve"


def test_gate_can_open_on_externally_paused_execution(sm, clock):
    ex = _execution()
    sm.start(ex)
    sm.pause(ex, reason="operator")
    paused_at = ex.paused_at
    clock.advance(10)
    intervention = sm.pause(ex, gate=True, node="A")
    assert ex.paused_at == paused_at
    assert ex.open_intervention() is intervention
    with pytest.raises(InvalidStateError):
        sm.pause(ex, gate=True)


def test_checkpoints_are_monotonic(sm, clock):
    ex = _execution()
    sm.start(ex)
    first = sm.add_checkpoint(ex, "A", "done")
    clock.advance(-1000)
    second = sm.add_checkpoint(ex, "B", "done")
    assert second.timestamp >= first.timestamp
    assert [c.node for c in ex.checkpoints] == ["A", "B"]


def test_node_accounting_never_exceeds_total(sm):
    ex = _execution(total_nodes=2)
    sm.start(ex)
    sm.record_node(ex, True, agent_calls=1, api_calls=2)
    sm.record_node(ex, False, agent_calls=3)
    with pytest.raises(InvalidStateError):
        sm.record_node(ex, True)
    m = ex.metrics
    assert (m.completed_nodes, m.failed_nodes, m.agent_calls, m.api_calls) == (1, 1, 4, 2)
    assert m.completed_nodes + m.failed_nodes <= m.total_nodes
