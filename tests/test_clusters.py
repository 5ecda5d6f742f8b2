from hyperfleet_controller.config import OperatorIdentity, get_settings
from hyperfleet_controller.db import Base, SessionLocal, engine
from hyperfleet_controller.errors import ConnectivityError
from hyperfleet_controller.models import (
    HypervisorCluster,
    HypervisorMachineTemplate,
    Secret,
)
from hyperfleet_controller.providers.fake import FakeProvider, reset_fake_hypervisors
from hyperfleet_controller.providers.registry import (
    PROVIDER_FACTORIES,
    ProviderRegistry,
)
from hyperfleet_controller.repositories import find_condition, set_condition
from hyperfleet_controller.services.clusters import (
    reconcile_cluster,
    resync_clusters_once,
    validate_template,
)


IDENTITY = OperatorIdentity(instance_id="op-test")


class UnreachableProvider(FakeProvider):
    def test_connection(self):
        raise ConnectivityError("connect timeout to https://pve.test:8006")


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_fake_hypervisors()


def _seed(*, with_secret: bool = True, ready: bool = False, template_ref="9000"):
    db = SessionLocal()
    if with_secret:
        db.add(
            Secret(
                uid="s1",
                namespace="default",
                name="pve-creds",
                data={"username": "root@pam", "password": "pw"},
            )
        )
    db.add(
        HypervisorCluster(
            uid="c1",
            namespace="default",
            name="pve",
            provider="fake",
            endpoint="https://pve.test:8006",
            credentials_secret="pve-creds",
            nodes=["pve1", "pve2"],
            conditions=set_condition([], "Ready", True, "ConnectionSuccessful")
            if ready
            else [],
        )
    )
    db.add(
        HypervisorMachineTemplate(
            uid="t1",
            namespace="default",
            name="linux-runner",
            cluster_name="pve",
            template_ref=template_ref,
            cpu=2,
            memory_mb=2048,
        )
    )
    db.commit()
    db.close()


def _registry(factories=None) -> ProviderRegistry:
    return ProviderRegistry(get_settings(), IDENTITY, factories)


def _cluster() -> HypervisorCluster:
    db = SessionLocal()
    cluster = db.get(HypervisorCluster, "c1")
    db.close()
    return cluster


def _template() -> HypervisorMachineTemplate:
    db = SessionLocal()
    template = db.get(HypervisorMachineTemplate, "t1")
    db.close()
    return template


def test_reachable_cluster_becomes_ready():
    _seed()

    assert reconcile_cluster(_registry(), "default", "pve")

    cluster = _cluster()
    condition = find_condition(cluster.conditions, "Ready")
    assert condition["status"] == "True"
    assert condition["reason"] == "ConnectionSuccessful"
    assert cluster.connected_nodes == ["pve1", "pve2"]
    assert cluster.version == "fake-1.0"
    assert cluster.last_sync_time is not None


def test_missing_credentials_secret_marks_cluster_not_ready():
    _seed(with_secret=False)

    assert not reconcile_cluster(_registry(), "default", "pve")

    condition = find_condition(_cluster().conditions, "Ready")
    assert condition["status"] == "False"
    assert condition["reason"] == "CredentialsMissing"


def test_unreachable_cluster_marks_connection_failed():
    _seed(ready=True)
    factories = {**PROVIDER_FACTORIES, "fake": UnreachableProvider}

    assert not reconcile_cluster(_registry(factories), "default", "pve")

    condition = find_condition(_cluster().conditions, "Ready")
    assert condition["reason"] == "ConnectionFailed"
    assert "connect timeout" in condition["message"]


def test_template_on_ready_cluster_is_validated():
    _seed(ready=True)

    assert validate_template(_registry(), "default", "linux-runner")

    template = _template()
    assert template.validation_status == "Valid"
    assert template.template_available


def test_unknown_template_ref_is_invalid():
    _seed(ready=True, template_ref="1234")

    assert not validate_template(_registry(), "default", "linux-runner")

    template = _template()
    assert template.validation_status == "Invalid"
    condition = find_condition(template.conditions, "TemplateValid")
    assert condition["reason"] == "ValidationFailed"


def test_template_on_unready_cluster_keeps_validation_status():
    _seed(ready=False)

    assert not validate_template(_registry(), "default", "linux-runner")

    template = _template()
    assert template.validation_status is None
    condition = find_condition(template.conditions, "TemplateValid")
    assert condition["reason"] == "ClusterNotReady"


def test_resync_checks_clusters_before_templates():
    _seed()

    resync_clusters_once(_registry())

    assert find_condition(_cluster().conditions, "Ready")["status"] == "True"
    assert _template().validation_status == "Valid"
