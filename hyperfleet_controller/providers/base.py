from dataclasses import dataclass, field
from typing import Protocol


TAG_LINE_PREFIX = "hf:"


@dataclass
class VMSpec:
    name: str
    cpu: int
    memory_mb: int
    user_data: str
    disk_gb: int | None = None
    storage: str | None = None
    network: str | None = None
    network_mode: str = "bridge"
    node: str | None = None


@dataclass
class VMInfo:
    vm_id: str
    node: str | None
    name: str
    ip_address: str | None = None
    mac_address: str | None = None


@dataclass
class VMStatus:
    vm_id: str
    power_state: str
    tags: dict[str, str] = field(default_factory=dict)
    node: str | None = None
    ip_address: str | None = None


@dataclass
class ConnectionInfo:
    version: str
    nodes: list[str]


@dataclass
class ProviderConfig:
    endpoint: str
    nodes: list[str]
    default_storage: str | None = None
    default_network: str | None = None
    insecure_skip_verify: bool = False
    timeout_sec: float = 300.0
    status_timeout_sec: float = 30.0


@dataclass
class ProviderCredentials:
    token_id: str | None = None
    token_secret: str | None = None
    username: str | None = None
    password: str | None = None

    @property
    def uses_token(self) -> bool:
        return bool(self.token_id and self.token_secret)


class HypervisorProvider(Protocol):
    def create_vm(
        self, template_ref: str, spec: VMSpec, tags: dict[str, str]
    ) -> VMInfo: ...

    def delete_vm(self, vm_id: str) -> None: ...

    def get_vm_status(self, vm_id: str) -> VMStatus: ...

    def tag_vm(self, vm_id: str, tags: dict[str, str]) -> None: ...

    def validate_template(self, template_ref: str) -> None: ...

    def test_connection(self) -> ConnectionInfo: ...

    def close(self) -> None: ...


def encode_tags(tags: dict[str, str]) -> str:
    """Serialise key/value tags into a free-text VM description.

    Hypervisors such as Proxmox only allow bare words as tags, so the
    key/value pairs ride in the description, one ``hf:key=value`` per line.
    """
    lines = ["Managed by HyperFleet. Lines starting with hf: are ownership tags."]
    lines.extend(
        f"{TAG_LINE_PREFIX}{key}={value}" for key, value in sorted(tags.items())
    )
    return "\n".join(lines)


def decode_tags(description: str | None) -> dict[str, str]:
    tags: dict[str, str] = {}
    for line in (description or "").splitlines():
        line = line.strip()
        if not line.startswith(TAG_LINE_PREFIX) or "=" not in line:
            continue
        key, value = line[len(TAG_LINE_PREFIX) :].split("=", 1)
        tags[key] = value
    return tags
