from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class Condition(BaseModel):
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: str | None = None


class ObjectMeta(BaseModel):
    namespace: str
    name: str
    uid: str
    generation: int
    resource_version: int
    created_at: datetime
    updated_at: datetime
    deletion_timestamp: datetime | None = None
    finalizers: list[str] = Field(default_factory=list)


class SecretWrite(BaseModel):
    data: dict[str, str] = Field(default_factory=dict)


class DNSSpec(BaseModel):
    domain: str | None = None
    servers: list[str] = Field(default_factory=list)
    register_vms: bool = False


class ClusterSpec(BaseModel):
    provider: Literal["proxmox", "fake"]
    endpoint: str = Field(pattern=r"^https?://")
    credentials_secret: str = Field(min_length=1)
    insecure_skip_verify: bool = False
    nodes: list[str] = Field(min_length=1)
    default_storage: str | None = None
    default_network: str | None = None
    dns: DNSSpec | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class ClusterStatus(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)
    connected_nodes: list[str] = Field(default_factory=list)
    version: str | None = None
    last_sync_time: datetime | None = None


class ClusterRead(BaseModel):
    metadata: ObjectMeta
    spec: ClusterSpec
    status: ClusterStatus


class AttestationSpec(BaseModel):
    method: Literal["join-token", "tpm"] = "join-token"
    trust_domain: str | None = None
    ttl_sec: int | None = Field(default=None, ge=60)
    tpm_device: str | None = None


class SecretKeyRef(BaseModel):
    name: str = Field(min_length=1)
    key: str = "token"


class TokenSecretRef(SecretKeyRef):
    expires_at_key: str = "expires_at"


class RunnerOverrides(BaseModel):
    version: str | None = None
    download_url: str | None = None
    install_path: str | None = None
    work_dir: str | None = None
    config_script: str | None = None
    run_script: str | None = None
    os: str | None = None
    arch: str | None = None


class BootstrapSpec(BaseModel):
    method: Literal["runner-token", "external-secrets"] = "runner-token"
    platform: Literal["github"] = "github"
    repository: str | None = Field(default=None, pattern=r"^[\w.-]+/[\w.-]+$")
    organization: str | None = None
    credentials_secret: SecretKeyRef | None = None
    token_secret: TokenSecretRef | None = None
    labels: list[str] = Field(default_factory=list)
    token_ttl_sec: int | None = Field(default=None, ge=60)
    runner: RunnerOverrides | None = None


class TemplateSpec(BaseModel):
    cluster_name: str = Field(min_length=1)
    template_ref: str = Field(min_length=1)
    cpu: int = Field(gt=0)
    memory_mb: int = Field(ge=128)
    disk_gb: int | None = Field(default=None, ge=1)
    storage: str | None = None
    network: str | None = None
    network_mode: str = "bridge"
    attestation: AttestationSpec = Field(default_factory=AttestationSpec)
    bootstrap: BootstrapSpec
    cloud_init: str | None = None


class TemplateStatus(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)
    template_available: bool = False
    validation_status: str | None = None
    last_validated: datetime | None = None


class TemplateRead(BaseModel):
    metadata: ObjectMeta
    spec: TemplateSpec
    status: TemplateStatus


class WorkloadSpec(BaseModel):
    type: str | None = None
    platform: str = "github"
    labels: list[str] = Field(default_factory=list)


class ClaimSpec(BaseModel):
    template_name: str = Field(min_length=1)
    pool_name: str | None = None
    workload: WorkloadSpec = Field(default_factory=WorkloadSpec)


class ClaimStatus(BaseModel):
    phase: str
    conditions: list[Condition] = Field(default_factory=list)
    vm_id: str | None = None
    vm_node: str | None = None
    vm_ip: str | None = None
    vm_mac: str | None = None
    cluster_name: str | None = None
    provisioning_deadline: datetime | None = None
    lifetime_deadline: datetime | None = None
    failure_count: int = 0
    next_retry_at: datetime | None = None
    agent_stage: str | None = None
    last_heartbeat: datetime | None = None
    last_error: str | None = None


class ClaimRead(BaseModel):
    metadata: ObjectMeta
    spec: ClaimSpec
    status: ClaimStatus


class EventRead(BaseModel):
    id: int
    timestamp: datetime
    event_type: str
    payload: dict


class HeartbeatRequest(BaseModel):
    stage: Literal["configured", "running", "completed", "failed"]
    message: str | None = None


class DeleteResponse(BaseModel):
    ok: bool = True
    removed: bool
