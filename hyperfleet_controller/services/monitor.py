import logging
from dataclasses import dataclass
from typing import Protocol

from hyperfleet_controller.config import OperatorIdentity
from hyperfleet_controller.db import session_scope
from hyperfleet_controller.errors import ReconcileError, VMNotFoundError
from hyperfleet_controller.metrics import metrics
from hyperfleet_controller.models import ClaimPhase
from hyperfleet_controller.repositories import (
    get_cluster,
    get_template,
    list_claims_with_vm,
)
from hyperfleet_controller.services.ownership import validate_vm_ownership
from hyperfleet_controller.services.reconciler import ProviderSource
from hyperfleet_controller.state_machine import STOPPED_POWER_STATES, Observation


logger = logging.getLogger(__name__)

SKIPPED_PHASES = {ClaimPhase.TERMINATING.value, ClaimPhase.FAILED.value}


class ClaimQueue(Protocol):
    def add(self, key: str, observation: Observation | None = None) -> None: ...


@dataclass
class _Target:
    uid: str
    namespace: str
    name: str
    vm_id: str
    cluster_name: str | None


class VMStateMonitor:
    """Polls the power state of every provisioned VM.

    It only observes: claims whose VM has stopped or vanished are handed to
    the work queue with the observation attached, and the reconciler decides
    what to do with them.
    """

    def __init__(
        self,
        *,
        identity: OperatorIdentity,
        providers: ProviderSource,
        queue: ClaimQueue,
    ):
        self.identity = identity
        self.providers = providers
        self.queue = queue

    def _targets(self) -> list[_Target]:
        with session_scope() as session:
            targets = []
            for claim in list_claims_with_vm(session, SKIPPED_PHASES):
                cluster_name = claim.cluster_name
                if not cluster_name:
                    template = get_template(
                        session, claim.namespace, claim.template_name
                    )
                    cluster_name = template.cluster_name if template else None
                targets.append(
                    _Target(
                        claim.uid,
                        claim.namespace,
                        claim.name,
                        claim.vm_id or "",
                        cluster_name,
                    )
                )
            return targets

    def _observe(self, target: _Target) -> Observation | None:
        if not target.cluster_name:
            logger.warning(
                "monitor cannot resolve cluster claim=%s/%s",
                target.namespace,
                target.name,
            )
            return None
        with session_scope() as session:
            cluster = get_cluster(session, target.namespace, target.cluster_name)
            if cluster is None:
                logger.warning(
                    "monitor cluster missing claim=%s/%s cluster=%s",
                    target.namespace,
                    target.name,
                    target.cluster_name,
                )
                return None
            provider = self.providers.for_cluster(session, cluster)
        try:
            status = provider.get_vm_status(target.vm_id)
        except VMNotFoundError:
            return Observation(power_state="missing")
        validate_vm_ownership(self.identity, status)
        return Observation(
            power_state=status.power_state,
            ip_address=status.ip_address,
            node=status.node,
        )

    def tick(self) -> int:
        """Check every live VM once; return the number of claims enqueued."""
        enqueued = 0
        for target in self._targets():
            try:
                observation = self._observe(target)
            except ReconcileError as exc:
                # Ownership mismatches are left to the reconciler's own check.
                logger.warning(
                    "monitor status check failed claim=%s/%s vm_id=%s error=%s",
                    target.namespace,
                    target.name,
                    target.vm_id,
                    exc,
                )
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "monitor status check crashed claim=%s/%s: %s",
                    target.namespace,
                    target.name,
                    exc,
                )
                continue
            if observation is None:
                continue
            if observation.power_state in STOPPED_POWER_STATES:
                logger.info(
                    "vm stopped claim=%s/%s vm_id=%s power_state=%s",
                    target.namespace,
                    target.name,
                    target.vm_id,
                    observation.power_state,
                )
                self.queue.add(target.uid, observation)
                metrics.inc("monitor_enqueued_total")
                enqueued += 1
        return enqueued
