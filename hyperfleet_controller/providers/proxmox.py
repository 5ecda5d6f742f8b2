import logging
import time
from typing import Any

import httpx

from hyperfleet_controller.clients.http import (
    RequestFailure,
    RetryPolicy,
    request_with_retry,
)
from hyperfleet_controller.config import OperatorIdentity
from hyperfleet_controller.errors import (
    ConnectivityError,
    OwnershipError,
    PermanentError,
    TransientError,
    VMNotFoundError,
)
from hyperfleet_controller.providers.base import (
    ConnectionInfo,
    ProviderConfig,
    ProviderCredentials,
    VMInfo,
    VMSpec,
    VMStatus,
    decode_tags,
    encode_tags,
)
from hyperfleet_controller.services.ownership import (
    CLAIM_UID_TAG,
    OPERATOR_INSTANCE_TAG,
)


logger = logging.getLogger(__name__)

TASK_POLL_INTERVAL_SEC = 2.0
SNIPPETS_CONTENT = "snippets"


class ProxmoxProvider:
    """Proxmox VE implementation of the hypervisor provider interface.

    VMs are linked clones of a template VMID. Ownership tags are stored in
    the VM description and the rendered user data is attached through a
    ``cicustom`` snippet on the cluster's default storage.
    """

    def __init__(
        self,
        config: ProviderConfig,
        credentials: ProviderCredentials,
        identity: OperatorIdentity,
        retry: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        if not credentials.uses_token and not (
            credentials.username and credentials.password
        ):
            raise PermanentError(
                "proxmox credentials require token_id/token_secret "
                "or username/password",
                reason="CredentialsMissing",
            )
        self.config = config
        self.credentials = credentials
        self.identity = identity
        self.retry = retry or RetryPolicy(attempts=3, sleep_sec=2)
        headers = {}
        if credentials.uses_token:
            headers["Authorization"] = (
                f"PVEAPIToken={credentials.token_id}={credentials.token_secret}"
            )
        self.client = httpx.Client(
            base_url=f"{config.endpoint.rstrip('/')}/api2/json",
            timeout=config.timeout_sec,
            verify=not config.insecure_skip_verify,
            headers=headers,
            transport=transport,
        )
        self._logged_in = credentials.uses_token

    def _login(self) -> None:
        response = self._send(
            "POST",
            "/access/ticket",
            data={
                "username": self.credentials.username,
                "password": self.credentials.password,
            },
            authenticated=False,
        )
        data = response.json().get("data") or {}
        ticket = data.get("ticket")
        if not ticket:
            raise PermanentError(
                "proxmox login returned no ticket", reason="AuthFailed"
            )
        self.client.cookies.set("PVEAuthCookie", ticket)
        self.client.headers["CSRFPreventionToken"] = data.get(
            "CSRFPreventionToken", ""
        )
        self._logged_in = True

    def _send(
        self, method: str, path: str, authenticated: bool = True, **kwargs: Any
    ) -> httpx.Response:
        if authenticated and not self._logged_in:
            self._login()
        try:
            return request_with_retry(self.client, method, path, self.retry, **kwargs)
        except RequestFailure as exc:
            if exc.status_code is None:
                raise ConnectivityError(str(exc)) from exc
            if exc.transient:
                raise TransientError(str(exc)) from exc
            raise PermanentError(str(exc), reason="ProviderRejected") from exc

    def _data(self, method: str, path: str, **kwargs: Any) -> Any:
        return self._send(method, path, **kwargs).json().get("data")

    def _vm_resources(self) -> list[dict]:
        return self._data(
            "GET",
            "/cluster/resources",
            params={"type": "vm"},
            timeout=self.config.status_timeout_sec,
        ) or []

    def _locate(self, vm_id: str) -> dict:
        for resource in self._vm_resources():
            if str(resource.get("vmid")) == str(vm_id):
                return resource
        raise VMNotFoundError(vm_id)

    def _wait_for_task(self, node: str, upid: str | None) -> None:
        if not upid:
            return
        deadline = time.monotonic() + self.config.timeout_sec
        while time.monotonic() < deadline:
            status = self._data(
                "GET",
                f"/nodes/{node}/tasks/{upid}/status",
                timeout=self.config.status_timeout_sec,
            ) or {}
            if status.get("status") == "stopped":
                exit_status = status.get("exitstatus")
                if exit_status != "OK":
                    raise TransientError(f"proxmox task {upid} failed: {exit_status}")
                return
            time.sleep(TASK_POLL_INTERVAL_SEC)
        raise TransientError(f"proxmox task {upid} did not finish in time")

    def _upload_snippet(
        self, node: str, storage: str, filename: str, content: str
    ) -> str:
        self._send(
            "POST",
            f"/nodes/{node}/storage/{storage}/upload",
            data={"content": SNIPPETS_CONTENT},
            files={
                "filename": (filename, content.encode("utf-8"), "application/x-yaml")
            },
        )
        return f"{storage}:{SNIPPETS_CONTENT}/{filename}"

    def _owned_by_claim(self, vm_id: str, node: str, tags: dict[str, str]) -> bool:
        vm_config = self._data(
            "GET",
            f"/nodes/{node}/qemu/{vm_id}/config",
            timeout=self.config.status_timeout_sec,
        ) or {}
        existing = decode_tags(vm_config.get("description"))
        return bool(existing.get(CLAIM_UID_TAG)) and all(
            existing.get(key) == tags.get(key)
            for key in (CLAIM_UID_TAG, OPERATOR_INSTANCE_TAG)
        )

    def _configure_and_start(
        self, node: str, vm_id: str, spec: VMSpec, tags: dict[str, str]
    ) -> None:
        vm_config: dict[str, Any] = {
            "cores": spec.cpu,
            "memory": spec.memory_mb,
            "description": encode_tags(tags),
            "tags": self.identity.managed_by,
        }
        network = spec.network or self.config.default_network
        if network:
            vm_config["net0"] = f"virtio,bridge={network}"
        storage = spec.storage or self.config.default_storage
        if storage:
            vm_config["cicustom"] = "user=" + self._upload_snippet(
                node, storage, f"hf-{vm_id}-user.yaml", spec.user_data
            )
        self._send("POST", f"/nodes/{node}/qemu/{vm_id}/config", data=vm_config)
        if spec.disk_gb:
            self._send(
                "PUT",
                f"/nodes/{node}/qemu/{vm_id}/resize",
                data={"disk": "scsi0", "size": f"{spec.disk_gb}G"},
            )
        upid = self._data("POST", f"/nodes/{node}/qemu/{vm_id}/status/start")
        self._wait_for_task(node, upid)

    def _adopt(self, resource: dict, spec: VMSpec, tags: dict[str, str]) -> VMInfo:
        vm_id = str(resource["vmid"])
        node = resource.get("node")
        if not self._owned_by_claim(vm_id, node, tags):
            raise OwnershipError(
                f"vm {vm_id} is named {spec.name} but is not tagged for claim "
                f"{tags.get(CLAIM_UID_TAG)}"
            )
        if resource.get("status") != "running":
            logger.info(
                "finishing interrupted proxmox create name=%s vmid=%s",
                spec.name,
                vm_id,
            )
            self._configure_and_start(node, vm_id, spec, tags)
        else:
            logger.info(
                "adopting existing proxmox vm name=%s vmid=%s", spec.name, vm_id
            )
        return VMInfo(vm_id=vm_id, node=node, name=spec.name)

    def create_vm(
        self, template_ref: str, spec: VMSpec, tags: dict[str, str]
    ) -> VMInfo:
        merged_tags = {**self.identity.cluster_tags, **tags}
        resources = self._vm_resources()
        for resource in resources:
            if resource.get("name") == spec.name and not resource.get("template"):
                return self._adopt(resource, spec, merged_tags)

        template_node = None
        for resource in resources:
            if str(resource.get("vmid")) == str(template_ref):
                template_node = resource.get("node")
        if template_node is None:
            raise PermanentError(
                f"template {template_ref} not found", reason="TemplateMissing"
            )

        target = spec.node or (
            self.config.nodes[0] if self.config.nodes else template_node
        )
        new_id = str(self._data("GET", "/cluster/nextid"))
        # Tags ride on the clone so a half-built VM is still recognisable.
        upid = self._data(
            "POST",
            f"/nodes/{template_node}/qemu/{template_ref}/clone",
            data={
                "newid": new_id,
                "name": spec.name,
                "target": target,
                "full": 0,
                "description": encode_tags(merged_tags),
            },
        )
        self._wait_for_task(template_node, upid)
        try:
            self._configure_and_start(target, new_id, spec, merged_tags)
        except (TransientError, PermanentError):
            self._discard(new_id)
            raise
        return VMInfo(vm_id=new_id, node=target, name=spec.name)

    def _discard(self, vm_id: str) -> None:
        try:
            self.delete_vm(vm_id)
        except (TransientError, PermanentError, VMNotFoundError) as exc:
            logger.warning(
                "could not remove partial proxmox clone vmid=%s error=%s", vm_id, exc
            )

    def delete_vm(self, vm_id: str) -> None:
        resource = self._locate(vm_id)
        node = resource.get("node")
        if resource.get("status") == "running":
            upid = self._data("POST", f"/nodes/{node}/qemu/{vm_id}/status/stop")
            self._wait_for_task(node, upid)
        upid = self._data(
            "DELETE",
            f"/nodes/{node}/qemu/{vm_id}",
            params={"purge": 1, "destroy-unreferenced-disks": 1},
        )
        self._wait_for_task(node, upid)

    def get_vm_status(self, vm_id: str) -> VMStatus:
        resource = self._locate(vm_id)
        node = resource.get("node")
        current = self._data(
            "GET",
            f"/nodes/{node}/qemu/{vm_id}/status/current",
            timeout=self.config.status_timeout_sec,
        ) or {}
        vm_config = self._data(
            "GET",
            f"/nodes/{node}/qemu/{vm_id}/config",
            timeout=self.config.status_timeout_sec,
        ) or {}
        power_state = current.get("status") or "unknown"
        if current.get("qmpstatus") == "shutdown":
            power_state = "shutdown"
        return VMStatus(
            vm_id=str(vm_id),
            power_state=power_state,
            tags=decode_tags(vm_config.get("description")),
            node=node,
        )

    def tag_vm(self, vm_id: str, tags: dict[str, str]) -> None:
        resource = self._locate(vm_id)
        node = resource.get("node")
        vm_config = self._data("GET", f"/nodes/{node}/qemu/{vm_id}/config") or {}
        merged = {**decode_tags(vm_config.get("description")), **tags}
        self._send(
            "POST",
            f"/nodes/{node}/qemu/{vm_id}/config",
            data={"description": encode_tags(merged)},
        )

    def validate_template(self, template_ref: str) -> None:
        try:
            template_id = int(template_ref)
        except (TypeError, ValueError) as exc:
            raise PermanentError(
                f"proxmox template id must be an integer: {template_ref}"
            ) from exc
        if template_id <= 0:
            raise PermanentError("proxmox template id must be greater than 0")
        for resource in self._vm_resources():
            if str(resource.get("vmid")) == str(template_id):
                if not resource.get("template"):
                    raise PermanentError(f"vm {template_id} is not a template")
                return
        raise PermanentError(
            f"template {template_id} not found", reason="TemplateMissing"
        )

    def test_connection(self) -> ConnectionInfo:
        timeout = self.config.status_timeout_sec
        version = self._data("GET", "/version", timeout=timeout) or {}
        nodes = self._data("GET", "/nodes", timeout=timeout) or []
        online = sorted(
            node["node"]
            for node in nodes
            if node.get("status") == "online" and node.get("node")
        )
        return ConnectionInfo(
            version=str(version.get("version", "unknown")), nodes=online
        )

    def close(self) -> None:
        self.client.close()
