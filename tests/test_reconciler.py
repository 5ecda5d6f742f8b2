import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, cast

import yaml
from sqlalchemy import select

from hyperfleet_controller.clients.github import RegistrationToken
from hyperfleet_controller.clients.http import RequestFailure
from hyperfleet_controller.clients.identity import JoinToken
from hyperfleet_controller.config import OperatorIdentity, get_settings
from hyperfleet_controller.db import Base, SessionLocal, engine
from hyperfleet_controller.errors import (
    OwnershipError,
    PermanentError,
    TransientError,
    VMNotFoundError,
)
from hyperfleet_controller.models import (
    CLAIM_FINALIZER,
    ClaimPhase,
    Event,
    HypervisorCluster,
    HypervisorMachineTemplate,
    MachineClaim,
    Secret,
)
from hyperfleet_controller.providers.base import VMInfo, VMStatus
from hyperfleet_controller.providers.fake import (
    fake_hypervisor,
    reset_fake_hypervisors,
)
from hyperfleet_controller.providers.registry import ProviderRegistry
from hyperfleet_controller.repositories import find_condition, now_utc, set_condition
from hyperfleet_controller.services.credentials import CredentialGenerator
from hyperfleet_controller.services.ownership import build_ownership_tags
from hyperfleet_controller.services.reconciler import (
    ClaimReconciler,
    ReconcilerConfig,
    backoff_delay,
)
from hyperfleet_controller.state_machine import Observation


UID = "550e8400-e29b-41d4-a716-446655440000"
IDENTITY = OperatorIdentity(instance_id="op-test")
NOW = datetime(2026, 3, 1, 12, 0, 0)


class FakeProvider:
    def __init__(self):
        self.created = []
        self.deleted = []
        self.status_calls = []
        self.vms: dict[str, dict[str, str]] = {}
        self.power_state = "running"
        self.fail_delete = False
        self.create_error: Exception | None = None
        self.status_error: Exception | None = None

    def create_vm(self, template_ref, spec, tags):
        self.created.append((template_ref, spec, tags))
        if self.create_error:
            raise self.create_error
        vm_id = str(100 + len(self.created))
        self.vms[vm_id] = dict(tags)
        return VMInfo(vm_id=vm_id, node="pve1", name=spec.name)

    def get_vm_status(self, vm_id):
        self.status_calls.append(vm_id)
        if self.status_error:
            raise self.status_error
        if vm_id not in self.vms:
            raise VMNotFoundError(vm_id)
        return VMStatus(
            vm_id=vm_id, power_state=self.power_state, tags=self.vms[vm_id], node="pve1"
        )

    def delete_vm(self, vm_id):
        if self.fail_delete:
            raise TransientError("hypervisor busy")
        self.deleted.append(vm_id)
        self.vms.pop(vm_id, None)


class FakeProviders:
    def __init__(self, provider):
        self.provider = provider

    def for_cluster(self, _session, _cluster):
        return self.provider


@dataclass
class JoinCall:
    spiffe_id: str
    ttl_sec: int
    selectors: dict


class FakeIdentityServer:
    def __init__(self, error: Exception | None = None):
        self.calls: list[JoinCall] = []
        self.error = error

    def generate_join_token(self, spiffe_id, ttl_sec, selectors):
        self.calls.append(JoinCall(spiffe_id, ttl_sec, selectors))
        if self.error:
            raise self.error
        return JoinToken(token="join-xyz", expires_at=None)


class FakeCI:
    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.error = error

    def create_registration_token(
        self, credential, *, repository=None, organization=None
    ):
        self.calls.append((credential, repository, organization))
        if self.error:
            raise self.error
        return RegistrationToken(token="AABBCC", expires_at=None)


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_fake_hypervisors()


def _bootstrap_spec(**overrides) -> dict:
    spec = {
        "method": "runner-token",
        "platform": "github",
        "repository": "acme/widgets",
        "credentials_secret": {"name": "github-app", "key": "token"},
        "labels": ["linux", "ephemeral"],
    }
    spec.update(overrides)
    return {key: value for key, value in spec.items() if value is not None}


def _seed(
    *,
    claim: dict | None = None,
    template: dict | None = None,
    cluster_ready: bool = True,
    with_template: bool = True,
    provider: str = "fake",
) -> None:
    db = SessionLocal()
    db.add(
        Secret(
            uid="s1", namespace="default", name="github-app", data={"token": "ghp_x"}
        )
    )
    db.add(
        Secret(
            uid="s2",
            namespace="default",
            name="pve-creds",
            data={"token_id": "root@pam!hf", "token_secret": "secret"},
        )
    )
    conditions = []
    if cluster_ready:
        conditions = set_condition([], "Ready", True, "ConnectionSuccessful")
    db.add(
        HypervisorCluster(
            uid="c1",
            namespace="default",
            name="pve",
            provider=provider,
            endpoint="https://pve.test:8006",
            credentials_secret="pve-creds",
            nodes=["pve1"],
            tags={"env": "ci"},
            conditions=conditions,
        )
    )
    if with_template:
        template_values = {
            "uid": "t1",
            "namespace": "default",
            "name": "linux-runner",
            "cluster_name": "pve",
            "template_ref": "9000",
            "cpu": 2,
            "memory_mb": 4096,
            "attestation": {"method": "join-token"},
            "bootstrap": _bootstrap_spec(),
        }
        template_values.update(template or {})
        db.add(HypervisorMachineTemplate(**template_values))
    claim_values = {
        "uid": UID,
        "namespace": "default",
        "name": "runner-abc123",
        "template_name": "linux-runner",
        "pool_name": "linux-pool",
        "workload": {"platform": "github"},
        "phase": ClaimPhase.PENDING.value,
    }
    claim_values.update(claim or {})
    db.add(MachineClaim(**claim_values))
    db.commit()
    db.close()


def _owned_tags() -> dict[str, str]:
    return build_ownership_tags(
        IDENTITY,
        cluster_name="pve",
        namespace="default",
        claim_name="runner-abc123",
        claim_uid=UID,
        pool_name="linux-pool",
        created_at=NOW,
    )


def _reconciler(
    provider=None, *, ci=None, identity_server=None, providers=None
) -> ClaimReconciler:
    credentials = CredentialGenerator(
        identity_server=cast(Any, identity_server or FakeIdentityServer()),
        ci_platform=cast(Any, ci or FakeCI()),
        trust_domain="hyperfleet.local",
        clock=lambda: NOW,
    )
    return ClaimReconciler(
        identity=IDENTITY,
        providers=providers or FakeProviders(provider),
        credentials=credentials,
        config=ReconcilerConfig(),
    )


def _claim() -> MachineClaim | None:
    db = SessionLocal()
    claim = db.get(MachineClaim, UID)
    db.close()
    return claim


def _events(event_type: str) -> list[dict]:
    db = SessionLocal()
    rows = list(db.scalars(select(Event).where(Event.event_type == event_type)))
    db.close()
    return [json.loads(row.payload_json) for row in rows]


def _runner_config(user_data: str) -> dict:
    document = yaml.safe_load(user_data)
    content = document["write_files"][0]["content"]
    return json.loads(base64.b64decode(content))


def test_pending_claim_reconciled_twice_creates_one_vm():
    _seed()
    provider = FakeProvider()
    reconciler = _reconciler(provider)

    first = reconciler.reconcile(UID)
    second = reconciler.reconcile(UID)

    assert len(provider.created) == 1
    assert first.requeue_after == 15
    assert second.requeue_after == 15
    claim = _claim()
    assert claim is not None
    assert claim.vm_id == "101"
    assert claim.cluster_name == "pve"
    assert CLAIM_FINALIZER in claim.finalizers
    assert claim.phase == ClaimPhase.BOOTSTRAPPING.value
    assert claim.provisioning_deadline is not None
    assert find_condition(claim.conditions, "VMProvisioned")["status"] == "True"


def test_created_vm_carries_ownership_and_cluster_tags():
    _seed()
    provider = FakeProvider()
    _reconciler(provider).reconcile(UID)

    template_ref, spec, tags = provider.created[0]
    assert template_ref == "9000"
    assert spec.name == "hf-runner-abc123-550e8400"
    assert spec.cpu == 2
    assert tags["managed-by"] == "hyperfleet"
    assert tags["hyperfleet.io/operator-instance"] == "op-test"
    assert tags["hyperfleet.io/claim-uid"] == UID
    assert tags["hyperfleet.io/pool"] == "linux-pool"
    assert tags["env"] == "ci"


def test_cluster_tags_cannot_override_ownership_tags():
    _seed()
    db = SessionLocal()
    cluster = db.get(HypervisorCluster, "c1")
    cluster.tags = {"managed-by": "someone-else"}
    db.commit()
    db.close()
    provider = FakeProvider()

    _reconciler(provider).reconcile(UID)

    assert provider.created[0][2]["managed-by"] == "hyperfleet"


def test_rendered_config_carries_runner_and_spiffe_data():
    _seed()
    provider = FakeProvider()
    _reconciler(provider).reconcile(UID)

    config = _runner_config(provider.created[0][1].user_data)
    assert config["method"] == "runner-token"
    assert config["runner_token"] == "AABBCC"
    assert config["registration_url"] == "https://github.com/acme/widgets"
    assert config["runner_name"] == "runner-abc123-550e8400"
    assert config["labels"] == ["linux", "ephemeral"]
    assert config["spiffe"]["join_token"] == "join-xyz"
    assert "ghp_x" not in provider.created[0][1].user_data


def test_example_claim_identity_and_default_token_ttl():
    _seed()
    provider = FakeProvider()
    identity_server = FakeIdentityServer()
    _reconciler(provider, identity_server=identity_server).reconcile(UID)

    call = identity_server.calls[0]
    assert call.spiffe_id == f"spiffe://hyperfleet.local/default/runner-abc123/{UID}"
    assert call.ttl_sec == 3600
    assert call.selectors["pool"] == "linux-pool"
    config = _runner_config(provider.created[0][1].user_data)
    assert config["expires_at"] == "2026-03-01T13:00:00Z"


def test_missing_repository_and_organization_fails_without_vm_call():
    _seed(template={"bootstrap": _bootstrap_spec(repository=None)})
    provider = FakeProvider()
    ci = FakeCI()
    identity_server = FakeIdentityServer()

    result = _reconciler(provider, ci=ci, identity_server=identity_server).reconcile(
        UID
    )

    assert result.requeue_after is None
    assert provider.created == []
    assert ci.calls == []
    assert identity_server.calls == []
    claim = _claim()
    assert claim.phase == ClaimPhase.FAILED.value
    condition = find_condition(claim.conditions, "CredentialsIssued")
    assert condition["status"] == "False"
    assert condition["reason"] == "RegistrationScopeMissing"


def test_rejected_credential_exchange_fails_claim():
    _seed()
    provider = FakeProvider()
    failure = RequestFailure(
        method="POST",
        url="https://api.github.test",
        attempts=1,
        error_type="HTTPStatusError",
        detail="HTTP 401",
        status_code=401,
    )

    _reconciler(provider, ci=FakeCI(error=failure)).reconcile(UID)

    claim = _claim()
    assert claim.phase == ClaimPhase.FAILED.value
    assert "HTTP 401" in claim.last_error
    assert provider.created == []


def test_unreachable_identity_server_backs_off():
    _seed()
    provider = FakeProvider()
    failure = RequestFailure(
        method="POST",
        url="http://spire.test/v1/join-tokens",
        attempts=3,
        error_type="ConnectError",
        detail="connection refused",
    )

    result = _reconciler(
        provider, identity_server=FakeIdentityServer(error=failure)
    ).reconcile(UID)

    assert result.requeue_after == 5
    claim = _claim()
    assert claim.phase == ClaimPhase.PENDING.value
    assert claim.failure_count == 1
    assert find_condition(claim.conditions, "ProviderReachable")["status"] == "False"
    assert provider.created == []


def test_cluster_not_ready_blocks_provisioning():
    _seed(cluster_ready=False)
    provider = FakeProvider()

    result = _reconciler(provider).reconcile(UID)

    assert result.requeue_after == 5
    assert provider.created == []
    claim = _claim()
    condition = find_condition(claim.conditions, "ProviderReachable")
    assert condition["reason"] == "ClusterNotReady"


def test_invalid_template_fails_claim():
    _seed(template={"validation_status": "Invalid"})
    provider = FakeProvider()

    _reconciler(provider).reconcile(UID)

    assert _claim().phase == ClaimPhase.FAILED.value
    assert provider.created == []


def test_missing_template_blocks_until_it_appears():
    _seed(with_template=False)
    provider = FakeProvider()
    ci = FakeCI()
    reconciler = _reconciler(provider, ci=ci)

    assert reconciler.reconcile(UID).requeue_after is None
    claim = _claim()
    assert claim.phase == ClaimPhase.PENDING.value
    assert claim.config_blocked_on
    condition = find_condition(claim.conditions, "ConfigValid")
    assert condition["reason"] == "TemplateNotFound"

    reconciler.reconcile(UID)
    assert ci.calls == []

    db = SessionLocal()
    db.add(
        HypervisorMachineTemplate(
            uid="t1",
            namespace="default",
            name="linux-runner",
            cluster_name="pve",
            template_ref="9000",
            cpu=2,
            memory_mb=4096,
            attestation={"method": "join-token"},
            bootstrap=_bootstrap_spec(),
        )
    )
    db.commit()
    db.close()

    reconciler.reconcile(UID)
    assert len(provider.created) == 1
    assert _claim().config_blocked_on is None


def test_malformed_skeleton_blocks_before_credentials_are_issued():
    _seed(template={"cloud_init": "#cloud-config\nruncmd: [${not_a_placeholder}]\n"})
    provider = FakeProvider()
    ci = FakeCI()

    _reconciler(provider, ci=ci).reconcile(UID)

    assert ci.calls == []
    claim = _claim()
    assert claim.phase == ClaimPhase.PENDING.value
    condition = find_condition(claim.conditions, "ConfigValid")
    assert condition["reason"] == "MalformedTemplate"


def test_lost_write_after_create_adopts_existing_vm():
    _seed()
    registry = ProviderRegistry(get_settings(), IDENTITY)
    reconciler = _reconciler(providers=registry)

    reconciler.reconcile(UID)
    first_vm = _claim().vm_id

    db = SessionLocal()
    claim = db.get(MachineClaim, UID)
    claim.vm_id = None
    claim.phase = ClaimPhase.PENDING.value
    db.commit()
    db.close()

    reconciler.reconcile(UID)

    assert len(fake_hypervisor("https://pve.test:8006").vms) == 1
    assert _claim().vm_id == first_vm


def test_terminating_claim_without_vm_is_removed_without_provider_calls():
    _seed(
        claim={
            "phase": ClaimPhase.TERMINATING.value,
            "finalizers": [CLAIM_FINALIZER],
            "deletion_timestamp": now_utc(),
        }
    )
    provider = FakeProvider()

    result = _reconciler(provider).reconcile(UID)

    assert result.removed
    assert _claim() is None
    assert provider.status_calls == []
    assert provider.deleted == []


def test_deleted_claim_deletes_vm_once_after_ownership_check():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
            "deletion_timestamp": now_utc(),
        }
    )
    reconciler = _reconciler(provider)

    result = reconciler.reconcile(UID)
    reconciler.reconcile(UID)

    assert result.removed
    assert provider.status_calls == ["200"]
    assert provider.deleted == ["200"]
    assert _claim() is None
    assert _events("claim.vm_deleted")[0]["vm_id"] == "200"


def test_foreign_vm_is_never_deleted():
    provider = FakeProvider()
    provider.vms["200"] = {
        **_owned_tags(),
        "hyperfleet.io/operator-instance": "another-operator",
    }
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
            "deletion_timestamp": now_utc(),
        }
    )
    reconciler = _reconciler(provider)

    result = reconciler.reconcile(UID)
    again = reconciler.reconcile(UID)

    assert result.requeue_after is None
    assert again.requeue_after is None
    assert provider.deleted == []
    assert provider.status_calls == ["200"]
    claim = _claim()
    assert claim.phase == ClaimPhase.FAILED.value
    assert claim.last_error
    condition = find_condition(claim.conditions, "OwnershipVerified")
    assert condition["status"] == "False"
    assert "another-operator" in condition["message"]
    assert CLAIM_FINALIZER in claim.finalizers


def test_untagged_vm_fails_closed_on_observation():
    provider = FakeProvider()
    provider.vms["200"] = {}
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
        }
    )

    _reconciler(provider).reconcile(UID)

    assert _claim().phase == ClaimPhase.FAILED.value
    assert provider.deleted == []


def test_delete_failure_keeps_finalizer_and_backs_off():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    provider.fail_delete = True
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
            "deletion_timestamp": now_utc(),
        }
    )
    reconciler = _reconciler(provider)

    first = reconciler.reconcile(UID)

    assert first.requeue_after == 120
    claim = _claim()
    assert claim.phase == ClaimPhase.TERMINATING.value
    assert CLAIM_FINALIZER in claim.finalizers
    assert find_condition(claim.conditions, "VMDeleted")["status"] == "False"

    # Still inside the backoff window: nothing is retried.
    early = reconciler.reconcile(UID)
    assert 0 < early.requeue_after <= 120
    assert provider.status_calls == ["200"]

    db = SessionLocal()
    db.get(MachineClaim, UID).next_retry_at = None
    db.commit()
    db.close()

    second = reconciler.reconcile(UID)
    assert second.requeue_after == 240
    assert _claim().failure_count == 2


def test_backoff_delay_caps():
    assert backoff_delay(1, 120, 900) == 120
    assert backoff_delay(3, 120, 900) == 480
    assert backoff_delay(5, 120, 900) == 900


def test_stopped_vm_observation_removes_claim():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    provider.power_state = "stopped"
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
        }
    )

    result = _reconciler(provider).reconcile(UID, Observation("stopped"))

    assert result.removed
    assert provider.deleted == ["200"]
    assert _claim() is None
    reasons = [event["reason"] for event in _events("claim.phase_changed")]
    assert "VMShutdown" in reasons


def test_provisioning_timeout_terminates_vm():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    _seed(
        claim={
            "phase": ClaimPhase.BOOTSTRAPPING.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
            "provisioning_deadline": now_utc() - timedelta(seconds=1),
        }
    )

    result = _reconciler(provider).reconcile(UID)

    assert result.removed
    assert provider.deleted == ["200"]
    reasons = [event["reason"] for event in _events("claim.phase_changed")]
    assert "ProvisioningTimeout" in reasons


def test_heartbeat_stage_moves_bootstrapping_to_ready():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    _seed(
        claim={
            "phase": ClaimPhase.BOOTSTRAPPING.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
            "agent_stage": "running",
            "provisioning_deadline": now_utc() + timedelta(minutes=10),
        }
    )

    _reconciler(provider).reconcile(UID)

    assert _claim().phase == ClaimPhase.READY.value


def test_missing_claim_is_a_no_op():
    result = _reconciler(FakeProvider()).reconcile("does-not-exist")
    assert result.requeue_after is None
    assert not result.removed


def _clear_retry_window() -> None:
    db = SessionLocal()
    db.get(MachineClaim, UID).next_retry_at = None
    db.commit()
    db.close()


def test_name_collision_with_foreign_vm_fails_without_touching_it():
    _seed()
    provider = FakeProvider()
    provider.create_error = OwnershipError(
        "vm 130 is named hf-runner-abc123-550e8400 but belongs to another claim"
    )

    result = _reconciler(provider).reconcile(UID)

    assert result.requeue_after is None
    claim = _claim()
    assert claim.phase == ClaimPhase.FAILED.value
    assert claim.vm_id is None
    assert find_condition(claim.conditions, "OwnershipVerified")["status"] == "False"
    assert provider.deleted == []


def test_rejected_status_call_keeps_claim_live_until_vm_stops():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    provider.status_error = PermanentError("HTTP 401: invalid token")
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
        }
    )
    reconciler = _reconciler(provider)

    result = reconciler.reconcile(UID)

    assert result.requeue_after == 5
    claim = _claim()
    assert claim.phase == ClaimPhase.READY.value
    condition = find_condition(claim.conditions, "ProviderReachable")
    assert condition["status"] == "False"
    assert condition["reason"] == "ProviderRejected"

    provider.status_error = None
    provider.power_state = "stopped"
    result = reconciler.reconcile(UID, Observation("stopped"))

    assert result.removed
    assert provider.deleted == ["200"]


def test_healthy_observation_resets_backoff_before_first_delete():
    provider = FakeProvider()
    provider.vms["200"] = _owned_tags()
    provider.status_error = TransientError("status timed out")
    _seed(
        claim={
            "phase": ClaimPhase.READY.value,
            "vm_id": "200",
            "cluster_name": "pve",
            "finalizers": [CLAIM_FINALIZER],
            "failure_count": 2,
        }
    )
    reconciler = _reconciler(provider)

    reconciler.reconcile(UID)
    assert _claim().failure_count == 3

    provider.status_error = None
    _clear_retry_window()
    reconciler.reconcile(UID)
    claim = _claim()
    assert claim.failure_count == 0
    assert claim.next_retry_at is None
    assert find_condition(claim.conditions, "ProviderReachable")["status"] == "True"

    db = SessionLocal()
    db.get(MachineClaim, UID).deletion_timestamp = now_utc()
    db.commit()
    db.close()
    provider.fail_delete = True

    result = reconciler.reconcile(UID)

    assert result.requeue_after == 120
