import json
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from hyperfleet_controller.models import (
    Event,
    HypervisorCluster,
    HypervisorMachineTemplate,
    MachineClaim,
    Secret,
)
from hyperfleet_controller.state_machine import can_transition


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, claim_uid: str | None = None
) -> None:
    session.add(
        Event(
            claim_uid=claim_uid,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def get_cluster(
    session: Session, namespace: str, name: str
) -> HypervisorCluster | None:
    return session.scalar(
        select(HypervisorCluster).where(
            HypervisorCluster.namespace == namespace, HypervisorCluster.name == name
        )
    )


def list_clusters(session: Session) -> list[HypervisorCluster]:
    return list(session.scalars(select(HypervisorCluster)))


def get_template(
    session: Session, namespace: str, name: str
) -> HypervisorMachineTemplate | None:
    return session.scalar(
        select(HypervisorMachineTemplate).where(
            HypervisorMachineTemplate.namespace == namespace,
            HypervisorMachineTemplate.name == name,
        )
    )


def list_templates(
    session: Session, namespace: str | None = None, cluster_name: str | None = None
) -> list[HypervisorMachineTemplate]:
    query = select(HypervisorMachineTemplate)
    if namespace:
        query = query.where(HypervisorMachineTemplate.namespace == namespace)
    if cluster_name:
        query = query.where(HypervisorMachineTemplate.cluster_name == cluster_name)
    return list(session.scalars(query))


def get_secret(session: Session, namespace: str, name: str) -> Secret | None:
    return session.scalar(
        select(Secret).where(Secret.namespace == namespace, Secret.name == name)
    )


def get_claim(session: Session, uid: str) -> MachineClaim | None:
    return session.get(MachineClaim, uid)


def get_claim_by_name(
    session: Session, namespace: str, name: str
) -> MachineClaim | None:
    return session.scalar(
        select(MachineClaim).where(
            MachineClaim.namespace == namespace, MachineClaim.name == name
        )
    )


def list_claims(
    session: Session,
    namespace: str | None = None,
    phase: str | None = None,
    pool_name: str | None = None,
    template_name: str | None = None,
) -> list[MachineClaim]:
    query = select(MachineClaim)
    if namespace:
        query = query.where(MachineClaim.namespace == namespace)
    if phase:
        query = query.where(MachineClaim.phase == phase)
    if pool_name:
        query = query.where(MachineClaim.pool_name == pool_name)
    if template_name:
        query = query.where(MachineClaim.template_name == template_name)
    return list(session.scalars(query.order_by(MachineClaim.created_at.desc())))


def list_claims_with_vm(
    session: Session, exclude_phases: set[str]
) -> list[MachineClaim]:
    query = select(MachineClaim).where(
        MachineClaim.vm_id.is_not(None), MachineClaim.phase.not_in(exclude_phases)
    )
    return list(session.scalars(query))


def set_condition(
    conditions: list[dict],
    type_: str,
    status: bool,
    reason: str,
    message: str = "",
) -> list[dict]:
    """Return a copy of ``conditions`` with ``type_`` upserted.

    The transition time only moves when the status flips, so repeated
    failures with the same outcome keep the original timestamp.
    """
    status_text = "True" if status else "False"
    now = now_utc().isoformat()
    updated: list[dict] = []
    found = False
    for condition in conditions or []:
        if condition.get("type") != type_:
            updated.append(condition)
            continue
        found = True
        transition_time = condition.get("last_transition_time") or now
        if condition.get("status") != status_text:
            transition_time = now
        updated.append(
            {
                "type": type_,
                "status": status_text,
                "reason": reason,
                "message": message,
                "last_transition_time": transition_time,
            }
        )
    if not found:
        updated.append(
            {
                "type": type_,
                "status": status_text,
                "reason": reason,
                "message": message,
                "last_transition_time": now,
            }
        )
    return updated


def find_condition(conditions: list[dict], type_: str) -> dict | None:
    for condition in conditions or []:
        if condition.get("type") == type_:
            return condition
    return None


def condition_is_true(conditions: list[dict], type_: str) -> bool:
    condition = find_condition(conditions, type_)
    return condition is not None and condition.get("status") == "True"


def cas_claim_phase(
    session: Session,
    claim: MachineClaim,
    expected: str,
    target: str,
    last_error: str | None = None,
) -> bool:
    if claim.phase != expected:
        return False
    if not can_transition(expected, target):
        return False
    if target != claim.phase:
        claim.phase = target
        claim.phase_changed_at = now_utc()
    claim.updated_at = now_utc()
    if last_error:
        claim.last_error = last_error
    return True


def request_claim_deletion(session: Session, claim: MachineClaim) -> bool:
    """Mark the claim for deletion; remove it at once when nothing guards it.

    Returns True when the row was removed.
    """
    if claim.deletion_timestamp is None:
        claim.deletion_timestamp = now_utc()
        claim.updated_at = claim.deletion_timestamp
    return remove_claim_if_released(session, claim)


def remove_claim_if_released(session: Session, claim: MachineClaim) -> bool:
    if claim.deletion_timestamp is None or claim.finalizers:
        return False
    write_event(
        session,
        "claim.removed",
        {"namespace": claim.namespace, "name": claim.name},
        claim.uid,
    )
    session.delete(claim)
    return True
