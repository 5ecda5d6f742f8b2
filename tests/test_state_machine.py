from datetime import datetime, timedelta

from hyperfleet_controller.models import ClaimPhase
from hyperfleet_controller.state_machine import (
    Action,
    ClaimSnapshot,
    Observation,
    can_transition,
    decide,
    needs_observation,
)


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _snapshot(phase: ClaimPhase, **kwargs) -> ClaimSnapshot:
    values = {
        "phase": phase.value,
        "has_vm": phase != ClaimPhase.PENDING,
        "has_finalizer": True,
        "deletion_requested": False,
    }
    values.update(kwargs)
    return ClaimSnapshot(**values)


def test_valid_transitions():
    assert can_transition(ClaimPhase.PENDING.value, ClaimPhase.PROVISIONING.value)
    assert can_transition(
        ClaimPhase.PROVISIONING.value, ClaimPhase.BOOTSTRAPPING.value
    )
    assert can_transition(ClaimPhase.READY.value, ClaimPhase.TERMINATING.value)
    assert can_transition(ClaimPhase.FAILED.value, ClaimPhase.TERMINATING.value)


def test_backward_transition_rejected():
    assert not can_transition(ClaimPhase.READY.value, ClaimPhase.PROVISIONING.value)
    assert not can_transition(ClaimPhase.TERMINATING.value, ClaimPhase.READY.value)


def test_idempotent_transition_allowed():
    assert can_transition(ClaimPhase.READY.value, ClaimPhase.READY.value)


def test_pending_without_vm_provisions_and_adds_finalizer():
    decision = decide(_snapshot(ClaimPhase.PENDING, has_finalizer=False), None, NOW)
    assert decision.next_phase == ClaimPhase.PENDING.value
    assert decision.actions == (Action.ADD_FINALIZER, Action.PROVISION)


def test_pending_with_vm_never_provisions_again():
    decision = decide(_snapshot(ClaimPhase.PENDING, has_vm=True), None, NOW)
    assert decision.next_phase == ClaimPhase.PROVISIONING.value
    assert Action.PROVISION not in decision.actions


def test_deletion_moves_any_phase_to_terminating():
    for phase in (ClaimPhase.PENDING, ClaimPhase.READY, ClaimPhase.FAILED):
        decision = decide(_snapshot(phase, deletion_requested=True), None, NOW)
        assert decision.next_phase == ClaimPhase.TERMINATING.value
        assert decision.actions == (Action.TERMINATE,)


def test_ownership_failure_waits_for_operator_even_when_deleted():
    snapshot = _snapshot(
        ClaimPhase.FAILED, ownership_failed=True, deletion_requested=True
    )
    decision = decide(snapshot, None, NOW)
    assert decision.next_phase == ClaimPhase.FAILED.value
    assert decision.actions == ()
    assert decision.reason == "AwaitingOperator"


def test_stopped_vm_moves_to_terminating():
    for state in ("stopped", "shutdown", "missing"):
        decision = decide(_snapshot(ClaimPhase.READY), Observation(state), NOW)
        assert decision.next_phase == ClaimPhase.TERMINATING.value
        assert decision.reason == "VMShutdown"


def test_running_vm_moves_provisioning_to_bootstrapping():
    decision = decide(_snapshot(ClaimPhase.PROVISIONING), Observation("running"), NOW)
    assert decision.next_phase == ClaimPhase.BOOTSTRAPPING.value
    assert Action.OBSERVE_LATER in decision.actions


def test_agent_running_moves_bootstrapping_to_ready():
    snapshot = _snapshot(ClaimPhase.BOOTSTRAPPING, agent_stage="running")
    decision = decide(snapshot, Observation("running"), NOW)
    assert decision.next_phase == ClaimPhase.READY.value


def test_agent_completed_moves_ready_to_draining():
    snapshot = _snapshot(ClaimPhase.READY, agent_stage="completed")
    decision = decide(snapshot, Observation("running"), NOW)
    assert decision.next_phase == ClaimPhase.DRAINING.value


def test_no_signal_keeps_phase_and_observes_later():
    decision = decide(_snapshot(ClaimPhase.BOOTSTRAPPING), Observation("running"), NOW)
    assert decision.next_phase == ClaimPhase.BOOTSTRAPPING.value
    assert decision.actions == (Action.OBSERVE_LATER,)


def test_provisioning_timeout_terminates():
    snapshot = _snapshot(
        ClaimPhase.BOOTSTRAPPING, provisioning_deadline=NOW - timedelta(seconds=1)
    )
    decision = decide(snapshot, Observation("running"), NOW)
    assert decision.next_phase == ClaimPhase.TERMINATING.value
    assert decision.reason == "ProvisioningTimeout"


def test_lifetime_exceeded_terminates_ready_claim():
    snapshot = _snapshot(
        ClaimPhase.READY,
        provisioning_deadline=NOW - timedelta(hours=2),
        lifetime_deadline=NOW - timedelta(seconds=1),
    )
    decision = decide(snapshot, Observation("running"), NOW)
    assert decision.reason == "LifetimeExceeded"


def test_needs_observation_only_for_live_vms():
    assert needs_observation(_snapshot(ClaimPhase.READY))
    assert not needs_observation(_snapshot(ClaimPhase.PENDING))
    assert not needs_observation(_snapshot(ClaimPhase.TERMINATING))
    assert not needs_observation(_snapshot(ClaimPhase.READY, deletion_requested=True))
