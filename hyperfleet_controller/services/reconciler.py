import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.orm import Session

from hyperfleet_controller.auth import new_callback_token
from hyperfleet_controller.config import OperatorIdentity, Settings
from hyperfleet_controller.db import session_scope
from hyperfleet_controller.errors import (
    ConfigurationError,
    ConnectivityError,
    CredentialError,
    OwnershipError,
    PermanentError,
    ReconcileError,
    TransientError,
    VMNotFoundError,
)
from hyperfleet_controller.metrics import metrics
from hyperfleet_controller.models import (
    CLAIM_FINALIZER,
    ClaimPhase,
    HypervisorCluster,
    HypervisorMachineTemplate,
    MachineClaim,
)
from hyperfleet_controller.providers.base import HypervisorProvider, VMSpec
from hyperfleet_controller.repositories import (
    cas_claim_phase,
    condition_is_true,
    find_condition,
    get_claim,
    get_cluster,
    get_secret,
    get_template,
    now_utc,
    remove_claim_if_released,
    request_claim_deletion,
    set_condition,
    write_event,
)
from hyperfleet_controller.services.credentials import (
    ClaimContext,
    CredentialGenerator,
    runner_name_for,
)
from hyperfleet_controller.services.ownership import (
    build_ownership_tags,
    validate_vm_ownership,
)
from hyperfleet_controller.services.rendering import (
    build_runner_config,
    render_cloud_init,
    validate_skeleton,
)
from hyperfleet_controller.state_machine import (
    Action,
    ClaimSnapshot,
    Decision,
    Observation,
    decide,
    needs_observation,
)


logger = logging.getLogger(__name__)

OWNERSHIP_CONDITION = "OwnershipVerified"


class ProviderSource(Protocol):
    def for_cluster(
        self, session: Session, cluster: HypervisorCluster
    ) -> HypervisorProvider: ...


@dataclass(frozen=True)
class ReconcilerConfig:
    observe_interval_sec: float = 15
    provisioning_timeout_sec: float = 900
    max_lifetime_sec: float = 21600
    delete_retry_initial_sec: float = 120
    delete_retry_max_sec: float = 900
    transient_retry_initial_sec: float = 5
    transient_retry_max_sec: float = 300
    callback_base_url: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcilerConfig":
        return cls(
            observe_interval_sec=settings.observe_interval_sec,
            provisioning_timeout_sec=settings.provisioning_timeout_sec,
            max_lifetime_sec=settings.max_lifetime_sec,
            delete_retry_initial_sec=settings.delete_retry_initial_sec,
            delete_retry_max_sec=settings.delete_retry_max_sec,
            transient_retry_initial_sec=settings.transient_retry_initial_sec,
            transient_retry_max_sec=settings.transient_retry_max_sec,
            callback_base_url=settings.callback_base_url,
        )


@dataclass
class ReconcileResult:
    requeue_after: float | None = None
    removed: bool = False


def backoff_delay(failures: int, initial: float, cap: float) -> float:
    return min(initial * (2 ** max(failures - 1, 0)), cap)


def snapshot_of(claim: MachineClaim) -> ClaimSnapshot:
    ownership = find_condition(claim.conditions, OWNERSHIP_CONDITION)
    return ClaimSnapshot(
        phase=claim.phase,
        has_vm=bool(claim.vm_id),
        has_finalizer=CLAIM_FINALIZER in (claim.finalizers or []),
        deletion_requested=claim.deletion_timestamp is not None,
        ownership_failed=ownership is not None and ownership.get("status") == "False",
        agent_stage=claim.agent_stage,
        provisioning_deadline=claim.provisioning_deadline,
        lifetime_deadline=claim.lifetime_deadline,
    )


def _template_secret_names(template: HypervisorMachineTemplate) -> list[str]:
    names = []
    for key in ("credentials_secret", "token_secret"):
        ref = (template.bootstrap or {}).get(key) or {}
        if ref.get("name"):
            names.append(ref["name"])
    return names


def config_fingerprint(session: Session, claim: MachineClaim) -> str:
    """Hash of every input a configuration error could have come from."""
    parts = [f"claim={claim.generation}"]
    template = get_template(session, claim.namespace, claim.template_name)
    if template is None:
        parts.append("template=-")
    else:
        parts.append(f"template={template.generation}")
        cluster = get_cluster(session, claim.namespace, template.cluster_name)
        parts.append(f"cluster={cluster.generation if cluster else '-'}")
        names = _template_secret_names(template)
        if cluster is not None:
            names.append(cluster.credentials_secret)
        for name in sorted(set(names)):
            secret = get_secret(session, claim.namespace, name)
            parts.append(f"secret/{name}={secret.resource_version if secret else '-'}")
    return hashlib.sha256(";".join(parts).encode("utf-8")).hexdigest()


@dataclass
class _ProvisionPlan:
    template: HypervisorMachineTemplate
    cluster: HypervisorCluster
    provider: HypervisorProvider
    context: ClaimContext
    secrets: dict[str, dict]


class ClaimReconciler:
    """Drives one MachineClaim per call toward its desired state.

    Each pass loads the claim, asks ``decide()`` what to do, and performs the
    side effects. Database sessions are closed before any provider or
    credential call so that a slow hypervisor never holds the store.
    """

    def __init__(
        self,
        *,
        identity: OperatorIdentity,
        providers: ProviderSource,
        credentials: CredentialGenerator,
        config: ReconcilerConfig | None = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.identity = identity
        self.providers = providers
        self.credentials = credentials
        self.config = config or ReconcilerConfig()
        self.clock = clock

    def reconcile(
        self, uid: str, observation: Observation | None = None
    ) -> ReconcileResult:
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult()
            if remove_claim_if_released(session, claim):
                return ReconcileResult(removed=True)

        now = self.clock()
        snapshot = snapshot_of(claim)
        newly_deleted = (
            snapshot.deletion_requested
            and claim.phase != ClaimPhase.TERMINATING.value
        )
        if (
            claim.next_retry_at is not None
            and now < claim.next_retry_at
            and observation is None
            and not newly_deleted
        ):
            return ReconcileResult(
                requeue_after=(claim.next_retry_at - now).total_seconds()
            )

        try:
            if observation is None and needs_observation(snapshot):
                observation = self._observe(claim)
            decision = decide(snapshot, observation, now)
            return self._apply(claim, decision, observation)
        except OwnershipError as exc:
            return self._fail_ownership(uid, exc)
        except TransientError as exc:
            return self._retry_transient(uid, exc)
        except ConfigurationError as exc:
            return self._block_on_configuration(uid, exc)
        except (PermanentError, CredentialError) as exc:
            return self._fail(uid, exc)

    def _provider_for_claim(
        self, session: Session, claim: MachineClaim
    ) -> HypervisorProvider:
        cluster_name = claim.cluster_name
        if not cluster_name:
            template = get_template(session, claim.namespace, claim.template_name)
            if template is None:
                raise ConfigurationError(
                    f"template {claim.namespace}/{claim.template_name} not found",
                    reason="TemplateNotFound",
                )
            cluster_name = template.cluster_name
        cluster = get_cluster(session, claim.namespace, cluster_name)
        if cluster is None:
            raise ConfigurationError(
                f"cluster {claim.namespace}/{cluster_name} not found",
                reason="ClusterNotFound",
            )
        return self.providers.for_cluster(session, cluster)

    def _observe(self, claim: MachineClaim) -> Observation:
        with session_scope() as session:
            provider = self._provider_for_claim(session, claim)
        try:
            status = provider.get_vm_status(claim.vm_id or "")
        except VMNotFoundError:
            logger.warning(
                "vm missing claim=%s/%s vm_id=%s",
                claim.namespace,
                claim.name,
                claim.vm_id,
            )
            return Observation(power_state="missing")
        except PermanentError as exc:
            # Rotated provider credentials must not strand a live VM.
            raise ConnectivityError(
                f"vm status check failed: {exc.detail}", reason="ProviderRejected"
            ) from exc
        validate_vm_ownership(self.identity, status)
        return Observation(
            power_state=status.power_state,
            ip_address=status.ip_address,
            node=status.node,
        )

    def _apply(
        self,
        claim: MachineClaim,
        decision: Decision,
        observation: Observation | None,
    ) -> ReconcileResult:
        if (
            Action.ADD_FINALIZER in decision.actions
            or decision.next_phase != claim.phase
            or observation is not None
        ):
            with session_scope() as session:
                db_claim = get_claim(session, claim.uid)
                if db_claim is None:
                    return ReconcileResult()
                if Action.ADD_FINALIZER in decision.actions:
                    db_claim.finalizers = [*db_claim.finalizers, CLAIM_FINALIZER]
                if observation is not None or db_claim.phase != decision.next_phase:
                    db_claim.failure_count = 0
                    db_claim.next_retry_at = None
                if observation is not None:
                    db_claim.vm_ip = observation.ip_address or db_claim.vm_ip
                    db_claim.vm_node = observation.node or db_claim.vm_node
                    db_claim.conditions = set_condition(
                        db_claim.conditions, "ProviderReachable", True, "Reachable"
                    )
                self._transition(
                    session, db_claim, decision.next_phase, decision.reason
                )

        if Action.PROVISION in decision.actions:
            return self._provision(claim.uid)
        if Action.TERMINATE in decision.actions:
            return self._terminate(claim.uid, decision.reason)
        if Action.OBSERVE_LATER in decision.actions:
            return ReconcileResult(requeue_after=self.config.observe_interval_sec)
        return ReconcileResult()

    def _transition(
        self, session: Session, claim: MachineClaim, target: str, reason: str
    ) -> None:
        current = claim.phase
        if current == target:
            return
        if not cas_claim_phase(session, claim, current, target):
            logger.error(
                "refusing phase change claim=%s/%s from=%s to=%s reason=%s",
                claim.namespace,
                claim.name,
                current,
                target,
                reason,
            )
            return
        write_event(
            session,
            "claim.phase_changed",
            {"from": current, "to": target, "reason": reason},
            claim.uid,
        )
        logger.info(
            "claim phase changed claim=%s/%s from=%s to=%s reason=%s",
            claim.namespace,
            claim.name,
            current,
            target,
            reason,
        )

    def _plan_provisioning(self, uid: str) -> _ProvisionPlan | None:
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None or claim.phase != ClaimPhase.PENDING.value or claim.vm_id:
                return None
            blocked_on = claim.config_blocked_on
            if blocked_on and blocked_on == config_fingerprint(session, claim):
                return None

            template = get_template(session, claim.namespace, claim.template_name)
            if template is None:
                raise ConfigurationError(
                    f"template {claim.namespace}/{claim.template_name} not found",
                    reason="TemplateNotFound",
                )
            if template.validation_status == "Invalid":
                condition = find_condition(template.conditions, "TemplateValid") or {}
                message = condition.get("message", "")
                raise PermanentError(
                    f"template {template.name} is invalid: {message}",
                    reason="TemplateInvalid",
                )
            cluster = get_cluster(session, claim.namespace, template.cluster_name)
            if cluster is None:
                raise ConfigurationError(
                    f"cluster {claim.namespace}/{template.cluster_name} not found",
                    reason="ClusterNotFound",
                )
            if not condition_is_true(cluster.conditions, "Ready"):
                raise ConnectivityError(
                    f"cluster {cluster.name} is not ready", reason="ClusterNotReady"
                )
            validate_skeleton(template.cloud_init)
            provider = self.providers.for_cluster(session, cluster)

            secrets: dict[str, dict] = {}
            for name in _template_secret_names(template):
                secret = get_secret(session, claim.namespace, name)
                if secret is not None:
                    secrets[name] = dict(secret.data or {})

            context = ClaimContext(
                namespace=claim.namespace,
                claim_name=claim.name,
                claim_uid=claim.uid,
                template_name=template.name,
                pool_name=claim.pool_name,
                workload=dict(claim.workload or {}),
                attestation=dict(template.attestation or {}),
                bootstrap=dict(template.bootstrap or {}),
            )
            return _ProvisionPlan(template, cluster, provider, context, secrets)

    def _provision(self, uid: str) -> ReconcileResult:
        plan = self._plan_provisioning(uid)
        if plan is None:
            return ReconcileResult()
        ctx = plan.context

        def read_secret(name: str, key: str) -> str | None:
            return plan.secrets.get(name, {}).get(key)

        # A missing registration scope fails before any join token is issued.
        bootstrap = self.credentials.bootstrap(ctx, read_secret)
        attestation = self.credentials.attestation(ctx)

        status_url = None
        callback_token = callback_hash = None
        if self.config.callback_base_url:
            callback_token, callback_hash = new_callback_token()
            status_url = (
                f"{self.config.callback_base_url.rstrip('/')}/v1/claims/{uid}/heartbeat"
            )
        runner_config = build_runner_config(
            attestation, bootstrap, status_url, callback_token
        )
        user_data = render_cloud_init(
            plan.template.cloud_init, attestation, bootstrap, runner_config
        )

        now = self.clock()
        ownership = build_ownership_tags(
            self.identity,
            cluster_name=plan.cluster.name,
            namespace=ctx.namespace,
            claim_name=ctx.claim_name,
            claim_uid=ctx.claim_uid,
            pool_name=ctx.pool_name,
            created_at=now,
        )
        tags = {**(plan.cluster.tags or {}), **ownership}
        spec = VMSpec(
            name=f"hf-{runner_name_for(ctx)}",
            cpu=plan.template.cpu,
            memory_mb=plan.template.memory_mb,
            disk_gb=plan.template.disk_gb,
            storage=plan.template.storage,
            network=plan.template.network,
            network_mode=plan.template.network_mode,
            user_data=user_data,
        )
        try:
            info = plan.provider.create_vm(plan.template.template_ref, spec, tags)
        except OwnershipError:
            raise
        except (PermanentError, TransientError) as exc:
            metrics.inc("vm_create_failures_total")
            raise TransientError(
                f"create_vm failed: {exc}", reason="ProvisioningFailed"
            ) from exc

        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                # Deleted mid-create with no guard; the monitor cannot see
                # this VM, so leave a loud trail.
                logger.error(
                    "claim vanished after vm create uid=%s vm_id=%s", uid, info.vm_id
                )
                write_event(
                    session, "claim.vm_orphaned", {"vm_id": info.vm_id}, uid
                )
                return ReconcileResult()
            claim.vm_id = info.vm_id
            claim.vm_node = info.node
            claim.vm_ip = info.ip_address
            claim.vm_mac = info.mac_address
            claim.cluster_name = plan.cluster.name
            claim.callback_token_hash = callback_hash
            claim.provisioning_deadline = now + timedelta(
                seconds=self.config.provisioning_timeout_sec
            )
            claim.lifetime_deadline = now + timedelta(
                seconds=self.config.max_lifetime_sec
            )
            claim.failure_count = 0
            claim.next_retry_at = None
            claim.config_blocked_on = None
            claim.last_error = None
            conditions = set_condition(
                claim.conditions, "ConfigValid", True, "Resolved"
            )
            conditions = set_condition(
                conditions,
                "CredentialsIssued",
                True,
                "Issued",
                f"runner token expires {bootstrap.expires_at.isoformat()}",
            )
            conditions = set_condition(
                conditions, "VMProvisioned", True, "Created", f"vm {info.vm_id}"
            )
            claim.conditions = set_condition(
                conditions, "ProviderReachable", True, "Reachable"
            )
            self._transition(
                session, claim, ClaimPhase.PROVISIONING.value, "VMCreated"
            )
            write_event(
                session,
                "claim.vm_created",
                {
                    "vm_id": info.vm_id,
                    "node": info.node,
                    "cluster": plan.cluster.name,
                    "runner_name": bootstrap.runner_name,
                },
                uid,
            )
        metrics.inc("claims_provisioned_total")
        return ReconcileResult(requeue_after=self.config.observe_interval_sec)

    def _terminate(self, uid: str, reason: str) -> ReconcileResult:
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult(removed=True)
            vm_id = claim.vm_id
            provider = self._provider_for_claim(session, claim) if vm_id else None

        if vm_id and provider is not None:
            try:
                status = provider.get_vm_status(vm_id)
            except VMNotFoundError:
                status = None
            except (TransientError, PermanentError) as exc:
                return self._delete_failed(uid, exc)
            if status is not None:
                validate_vm_ownership(self.identity, status)
                try:
                    provider.delete_vm(vm_id)
                except VMNotFoundError:
                    pass
                except (TransientError, PermanentError) as exc:
                    return self._delete_failed(uid, exc)
                metrics.inc("vm_deletes_total")
                logger.info(
                    "vm deleted claim_uid=%s vm_id=%s reason=%s", uid, vm_id, reason
                )

        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult(removed=True)
            if vm_id:
                claim.conditions = set_condition(
                    claim.conditions, "VMDeleted", True, "Deleted", f"vm {vm_id}"
                )
                write_event(
                    session, "claim.vm_deleted", {"vm_id": vm_id, "reason": reason}, uid
                )
            claim.vm_id = None
            claim.failure_count = 0
            claim.next_retry_at = None
            claim.finalizers = [f for f in claim.finalizers if f != CLAIM_FINALIZER]
            claim.updated_at = now_utc()
            removed = request_claim_deletion(session, claim)
        return ReconcileResult(removed=removed)

    def _delete_failed(self, uid: str, exc: ReconcileError) -> ReconcileResult:
        metrics.inc("vm_delete_failures_total")
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult()
            claim.failure_count += 1
            delay = backoff_delay(
                claim.failure_count,
                self.config.delete_retry_initial_sec,
                self.config.delete_retry_max_sec,
            )
            claim.next_retry_at = self.clock() + timedelta(seconds=delay)
            claim.last_error = f"delete_vm failed: {exc}"
            claim.conditions = set_condition(
                claim.conditions, "VMDeleted", False, "DeleteFailed", str(exc)
            )
            claim.updated_at = now_utc()
            write_event(
                session,
                "claim.delete_retry",
                {
                    "error": str(exc),
                    "attempt": claim.failure_count,
                    "retry_in_sec": delay,
                },
                uid,
            )
        logger.warning(
            "vm delete failed claim_uid=%s attempt=%s retry_in_sec=%s error=%s",
            uid,
            claim.failure_count,
            delay,
            exc,
        )
        return ReconcileResult(requeue_after=delay)

    def _fail_ownership(self, uid: str, exc: OwnershipError) -> ReconcileResult:
        metrics.inc("ownership_failures_total")
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult()
            claim.conditions = set_condition(
                claim.conditions, OWNERSHIP_CONDITION, False, exc.reason, exc.detail
            )
            self._transition(session, claim, ClaimPhase.FAILED.value, exc.reason)
            claim.last_error = exc.detail
            write_event(
                session,
                "claim.ownership_failed",
                {"vm_id": claim.vm_id, "error": exc.detail},
                uid,
            )
        logger.error(
            "ownership validation failed, vm left untouched claim_uid=%s error=%s",
            uid,
            exc.detail,
        )
        return ReconcileResult()

    def _fail(self, uid: str, exc: ReconcileError) -> ReconcileResult:
        condition = (
            "CredentialsIssued" if isinstance(exc, CredentialError) else "ConfigValid"
        )
        metrics.inc("claims_failed_total")
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult()
            claim.conditions = set_condition(
                claim.conditions, condition, False, exc.reason, exc.detail
            )
            self._transition(session, claim, ClaimPhase.FAILED.value, exc.reason)
            claim.last_error = exc.detail
            write_event(
                session,
                "claim.failed",
                {"reason": exc.reason, "error": exc.detail},
                uid,
            )
        logger.warning(
            "claim failed claim_uid=%s reason=%s error=%s", uid, exc.reason, exc.detail
        )
        return ReconcileResult()

    def _retry_transient(self, uid: str, exc: TransientError) -> ReconcileResult:
        condition = (
            "ProviderReachable"
            if isinstance(exc, ConnectivityError)
            else "VMProvisioned"
        )
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult()
            claim.failure_count += 1
            delay = backoff_delay(
                claim.failure_count,
                self.config.transient_retry_initial_sec,
                self.config.transient_retry_max_sec,
            )
            claim.next_retry_at = self.clock() + timedelta(seconds=delay)
            claim.last_error = exc.detail
            claim.conditions = set_condition(
                claim.conditions, condition, False, exc.reason, exc.detail
            )
            claim.updated_at = now_utc()
        logger.warning(
            "transient reconcile error claim_uid=%s reason=%s retry_in_sec=%s error=%s",
            uid,
            exc.reason,
            delay,
            exc.detail,
        )
        return ReconcileResult(requeue_after=delay)

    def _block_on_configuration(
        self, uid: str, exc: ConfigurationError
    ) -> ReconcileResult:
        with session_scope() as session:
            claim = get_claim(session, uid)
            if claim is None:
                return ReconcileResult()
            claim.conditions = set_condition(
                claim.conditions, "ConfigValid", False, exc.reason, exc.detail
            )
            claim.last_error = exc.detail
            claim.updated_at = now_utc()
            pending = claim.phase == ClaimPhase.PENDING.value
            if pending:
                claim.config_blocked_on = config_fingerprint(session, claim)
            else:
                claim.failure_count += 1
                delay = backoff_delay(
                    claim.failure_count,
                    self.config.transient_retry_initial_sec,
                    self.config.transient_retry_max_sec,
                )
                claim.next_retry_at = self.clock() + timedelta(seconds=delay)
            write_event(
                session,
                "claim.configuration_error",
                {"reason": exc.reason, "error": exc.detail},
                uid,
            )
        logger.warning(
            "configuration error claim_uid=%s reason=%s error=%s",
            uid,
            exc.reason,
            exc.detail,
        )
        if pending:
            return ReconcileResult()
        return ReconcileResult(requeue_after=delay)
