from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from hyperfleet_controller.db import Base


CLAIM_FINALIZER = "machineclaim.hyperfleet.io/finalizer"


class ClaimPhase(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    BOOTSTRAPPING = "Bootstrapping"
    READY = "Ready"
    DRAINING = "Draining"
    TERMINATING = "Terminating"
    FAILED = "Failed"


class HypervisorCluster(Base):
    __tablename__ = "hypervisor_clusters"
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_clusters_namespace_name"),
    )

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)
    credentials_secret: Mapped[str] = mapped_column(String(253), nullable=False)
    insecure_skip_verify: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    nodes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    default_storage: Mapped[str | None] = mapped_column(String(128))
    default_network: Mapped[str | None] = mapped_column(String(128))
    dns: Mapped[dict | None] = mapped_column(JSON)
    tags: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    connected_nodes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    version: Mapped[str | None] = mapped_column(String(64))
    last_sync_time: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}


class HypervisorMachineTemplate(Base):
    __tablename__ = "hypervisor_machine_templates"
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_templates_namespace_name"),
    )

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)

    cluster_name: Mapped[str] = mapped_column(String(253), nullable=False)
    template_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    cpu: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    disk_gb: Mapped[int | None] = mapped_column(Integer)
    storage: Mapped[str | None] = mapped_column(String(128))
    network: Mapped[str | None] = mapped_column(String(128))
    network_mode: Mapped[str] = mapped_column(
        String(32), default="bridge", nullable=False
    )
    attestation: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    bootstrap: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    cloud_init: Mapped[str | None] = mapped_column(Text)

    conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    template_available: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    validation_status: Mapped[str | None] = mapped_column(String(32))
    last_validated: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}


class MachineClaim(Base):
    __tablename__ = "machine_claims"
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_claims_namespace_name"),
    )

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)

    template_name: Mapped[str] = mapped_column(String(253), nullable=False)
    cluster_name: Mapped[str | None] = mapped_column(String(253))
    pool_name: Mapped[str | None] = mapped_column(String(253))
    workload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    phase: Mapped[str] = mapped_column(
        String(32), default=ClaimPhase.PENDING.value, nullable=False
    )
    conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    vm_id: Mapped[str | None] = mapped_column(String(64))
    vm_node: Mapped[str | None] = mapped_column(String(128))
    vm_ip: Mapped[str | None] = mapped_column(String(64))
    vm_mac: Mapped[str | None] = mapped_column(String(64))

    finalizers: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    deletion_timestamp: Mapped[datetime | None] = mapped_column(DateTime)

    phase_changed_at: Mapped[datetime | None] = mapped_column(DateTime)
    provisioning_deadline: Mapped[datetime | None] = mapped_column(DateTime)
    lifetime_deadline: Mapped[datetime | None] = mapped_column(DateTime)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime)
    config_blocked_on: Mapped[str | None] = mapped_column(String(256))

    agent_stage: Mapped[str | None] = mapped_column(String(32))
    last_heartbeat: Mapped[datetime | None] = mapped_column(DateTime)
    callback_token_hash: Mapped[str | None] = mapped_column(String(256))
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}


class Secret(Base):
    __tablename__ = "secrets"
    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_secrets_namespace_name"),
    )

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    namespace: Mapped[str] = mapped_column(String(253), nullable=False)
    name: Mapped[str] = mapped_column(String(253), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    resource_version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": resource_version}


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    claim_uid: Mapped[str | None] = mapped_column(String(64), index=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
