import itertools
import threading
from dataclasses import dataclass, field

from hyperfleet_controller.config import OperatorIdentity
from hyperfleet_controller.errors import (
    OwnershipError,
    PermanentError,
    VMNotFoundError,
)
from hyperfleet_controller.providers.base import (
    ConnectionInfo,
    ProviderConfig,
    ProviderCredentials,
    VMInfo,
    VMSpec,
    VMStatus,
)
from hyperfleet_controller.services.ownership import CLAIM_UID_TAG


@dataclass
class FakeVM:
    vm_id: str
    name: str
    node: str | None
    template_ref: str
    user_data: str
    tags: dict[str, str]
    power_state: str = "running"


@dataclass
class FakeHypervisor:
    templates: set[str] = field(default_factory=lambda: {"9000"})
    vms: dict[str, FakeVM] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    ids: itertools.count = field(default_factory=lambda: itertools.count(100))


_hypervisors: dict[str, FakeHypervisor] = {}
_hypervisors_lock = threading.Lock()


def fake_hypervisor(endpoint: str) -> FakeHypervisor:
    with _hypervisors_lock:
        return _hypervisors.setdefault(endpoint, FakeHypervisor())


def reset_fake_hypervisors() -> None:
    with _hypervisors_lock:
        _hypervisors.clear()


class FakeProvider:
    """In-memory hypervisor for local development and end-to-end tests.

    State is shared per endpoint so that providers rebuilt by the registry
    keep seeing the same VMs.
    """

    def __init__(
        self,
        config: ProviderConfig,
        credentials: ProviderCredentials,
        identity: OperatorIdentity,
    ):
        self.config = config
        self.identity = identity
        self.hypervisor = fake_hypervisor(config.endpoint)

    def create_vm(
        self, template_ref: str, spec: VMSpec, tags: dict[str, str]
    ) -> VMInfo:
        with self.hypervisor.lock:
            for vm in self.hypervisor.vms.values():
                if vm.name == spec.name:
                    if vm.tags.get(CLAIM_UID_TAG) != tags.get(CLAIM_UID_TAG):
                        raise OwnershipError(
                            f"vm {vm.vm_id} is named {spec.name} but belongs to "
                            "another claim"
                        )
                    return VMInfo(vm_id=vm.vm_id, node=vm.node, name=vm.name)
            if template_ref not in self.hypervisor.templates:
                raise PermanentError(
                    f"template {template_ref} not found", reason="TemplateMissing"
                )
            vm_id = str(next(self.hypervisor.ids))
            node = spec.node or (self.config.nodes[0] if self.config.nodes else None)
            self.hypervisor.vms[vm_id] = FakeVM(
                vm_id=vm_id,
                name=spec.name,
                node=node,
                template_ref=template_ref,
                user_data=spec.user_data,
                tags={**self.identity.cluster_tags, **tags},
            )
            return VMInfo(vm_id=vm_id, node=node, name=spec.name)

    def delete_vm(self, vm_id: str) -> None:
        with self.hypervisor.lock:
            if self.hypervisor.vms.pop(vm_id, None) is None:
                raise VMNotFoundError(vm_id)

    def get_vm_status(self, vm_id: str) -> VMStatus:
        with self.hypervisor.lock:
            vm = self.hypervisor.vms.get(vm_id)
            if vm is None:
                raise VMNotFoundError(vm_id)
            return VMStatus(
                vm_id=vm_id,
                power_state=vm.power_state,
                tags=dict(vm.tags),
                node=vm.node,
            )

    def tag_vm(self, vm_id: str, tags: dict[str, str]) -> None:
        with self.hypervisor.lock:
            vm = self.hypervisor.vms.get(vm_id)
            if vm is None:
                raise VMNotFoundError(vm_id)
            vm.tags.update(tags)

    def validate_template(self, template_ref: str) -> None:
        if template_ref not in self.hypervisor.templates:
            raise PermanentError(f"template {template_ref} not found")

    def test_connection(self) -> ConnectionInfo:
        return ConnectionInfo(version="fake-1.0", nodes=list(self.config.nodes))

    def close(self) -> None:
        return None
