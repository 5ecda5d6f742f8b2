from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from hyperfleet_controller.models import ClaimPhase


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    ClaimPhase.PENDING.value: {
        ClaimPhase.PROVISIONING.value,
        ClaimPhase.TERMINATING.value,
        ClaimPhase.FAILED.value,
    },
    ClaimPhase.PROVISIONING.value: {
        ClaimPhase.BOOTSTRAPPING.value,
        ClaimPhase.READY.value,
        ClaimPhase.DRAINING.value,
        ClaimPhase.TERMINATING.value,
        ClaimPhase.FAILED.value,
    },
    ClaimPhase.BOOTSTRAPPING.value: {
        ClaimPhase.READY.value,
        ClaimPhase.DRAINING.value,
        ClaimPhase.TERMINATING.value,
        ClaimPhase.FAILED.value,
    },
    ClaimPhase.READY.value: {
        ClaimPhase.DRAINING.value,
        ClaimPhase.TERMINATING.value,
        ClaimPhase.FAILED.value,
    },
    ClaimPhase.DRAINING.value: {
        ClaimPhase.TERMINATING.value,
        ClaimPhase.FAILED.value,
    },
    ClaimPhase.TERMINATING.value: {ClaimPhase.FAILED.value},
    ClaimPhase.FAILED.value: {ClaimPhase.TERMINATING.value},
}

# Power states that mean the VM is done with its job.
STOPPED_POWER_STATES = {"stopped", "shutdown", "missing"}
OBSERVED_PHASES = {
    ClaimPhase.PROVISIONING.value,
    ClaimPhase.BOOTSTRAPPING.value,
    ClaimPhase.READY.value,
    ClaimPhase.DRAINING.value,
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


class Action(str, Enum):
    ADD_FINALIZER = "add_finalizer"
    PROVISION = "provision"
    TERMINATE = "terminate"
    OBSERVE_LATER = "observe_later"


@dataclass(frozen=True)
class ClaimSnapshot:
    phase: str
    has_vm: bool
    has_finalizer: bool
    deletion_requested: bool
    ownership_failed: bool = False
    agent_stage: str | None = None
    provisioning_deadline: datetime | None = None
    lifetime_deadline: datetime | None = None


@dataclass(frozen=True)
class Observation:
    power_state: str
    ip_address: str | None = None
    node: str | None = None


@dataclass(frozen=True)
class Decision:
    next_phase: str
    actions: tuple[Action, ...]
    reason: str


def needs_observation(claim: ClaimSnapshot) -> bool:
    return (
        claim.has_vm
        and not claim.deletion_requested
        and claim.phase in OBSERVED_PHASES
    )


def _expired(deadline: datetime | None, now: datetime) -> bool:
    return deadline is not None and now >= deadline


def decide(
    claim: ClaimSnapshot, observation: Observation | None, now: datetime
) -> Decision:
    """Compute the next phase and the side effects for one reconcile pass.

    Pure: the caller supplies the persisted claim state, the latest VM
    observation (if one was taken) and the current time, and executes the
    returned actions itself.
    """
    phase = claim.phase

    if phase == ClaimPhase.FAILED.value and claim.ownership_failed:
        return Decision(phase, (), "AwaitingOperator")

    if claim.deletion_requested:
        return Decision(
            ClaimPhase.TERMINATING.value, (Action.TERMINATE,), "DeletionRequested"
        )
    if phase == ClaimPhase.TERMINATING.value:
        return Decision(phase, (Action.TERMINATE,), "Terminating")
    if phase == ClaimPhase.FAILED.value:
        return Decision(phase, (), "Failed")

    prelude: tuple[Action, ...] = ()
    if not claim.has_finalizer:
        prelude = (Action.ADD_FINALIZER,)

    if phase == ClaimPhase.PENDING.value:
        if claim.has_vm:
            return Decision(
                ClaimPhase.PROVISIONING.value,
                prelude + (Action.OBSERVE_LATER,),
                "VMAlreadyProvisioned",
            )
        return Decision(phase, prelude + (Action.PROVISION,), "Provisioning")

    if observation is not None and observation.power_state in STOPPED_POWER_STATES:
        return Decision(
            ClaimPhase.TERMINATING.value, (Action.TERMINATE,), "VMShutdown"
        )

    if phase in {
        ClaimPhase.PROVISIONING.value,
        ClaimPhase.BOOTSTRAPPING.value,
    } and _expired(claim.provisioning_deadline, now):
        return Decision(
            ClaimPhase.TERMINATING.value, (Action.TERMINATE,), "ProvisioningTimeout"
        )
    if phase in {
        ClaimPhase.READY.value,
        ClaimPhase.DRAINING.value,
    } and _expired(claim.lifetime_deadline, now):
        return Decision(
            ClaimPhase.TERMINATING.value, (Action.TERMINATE,), "LifetimeExceeded"
        )

    next_phase = phase
    reason = "AwaitingSignal"
    if (
        next_phase == ClaimPhase.PROVISIONING.value
        and observation is not None
        and observation.power_state == "running"
    ):
        next_phase = ClaimPhase.BOOTSTRAPPING.value
        reason = "VMRunning"
    if next_phase == ClaimPhase.BOOTSTRAPPING.value and claim.agent_stage in {
        "running",
        "completed",
    }:
        next_phase = ClaimPhase.READY.value
        reason = "RunnerOnline"
    if next_phase == ClaimPhase.READY.value and claim.agent_stage == "completed":
        next_phase = ClaimPhase.DRAINING.value
        reason = "JobCompleted"

    return Decision(next_phase, prelude + (Action.OBSERVE_LATER,), reason)
