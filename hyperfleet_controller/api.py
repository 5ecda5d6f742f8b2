import json
import logging
import uuid

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from hyperfleet_controller.auth import secure_compare_token
from hyperfleet_controller.db import SessionLocal
from hyperfleet_controller.loops import enqueue_claim, request_cluster_resync
from hyperfleet_controller.metrics import metrics
from hyperfleet_controller.models import (
    CLAIM_FINALIZER,
    Event,
    HypervisorCluster,
    HypervisorMachineTemplate,
    MachineClaim,
    Secret,
)
from hyperfleet_controller.repositories import (
    get_claim,
    get_claim_by_name,
    get_cluster,
    get_secret,
    get_template,
    list_claims,
    list_clusters,
    list_templates,
    now_utc,
    request_claim_deletion,
    write_event,
)
from hyperfleet_controller.schemas import (
    ClaimRead,
    ClaimSpec,
    ClaimStatus,
    ClusterRead,
    ClusterSpec,
    ClusterStatus,
    DeleteResponse,
    EventRead,
    HeartbeatRequest,
    ObjectMeta,
    SecretWrite,
    TemplateRead,
    TemplateSpec,
    TemplateStatus,
)


logger = logging.getLogger(__name__)
router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    return authorization.split(" ", 1)[1]


def _meta(record, finalizers: list[str] | None = None, deletion=None) -> ObjectMeta:
    return ObjectMeta(
        namespace=record.namespace,
        name=record.name,
        uid=record.uid,
        generation=record.generation,
        resource_version=record.resource_version,
        created_at=record.created_at,
        updated_at=record.updated_at,
        deletion_timestamp=deletion,
        finalizers=list(finalizers or []),
    )


def _apply_spec(record, values: dict) -> bool:
    """Copy spec fields onto a record; bump generation when anything changed."""
    changed = False
    for field_name, value in values.items():
        if getattr(record, field_name) != value:
            setattr(record, field_name, value)
            changed = True
    if changed and record.created_at is not None:
        record.generation += 1
    return changed


def _enqueue_namespace_claims(db: Session, namespace: str) -> None:
    for claim in list_claims(db, namespace=namespace):
        enqueue_claim(claim.uid)


def _cluster_values(spec: ClusterSpec) -> dict:
    return {
        "provider": spec.provider,
        "endpoint": spec.endpoint,
        "credentials_secret": spec.credentials_secret,
        "insecure_skip_verify": spec.insecure_skip_verify,
        "nodes": list(spec.nodes),
        "default_storage": spec.default_storage,
        "default_network": spec.default_network,
        "dns": spec.dns.model_dump() if spec.dns else None,
        "tags": dict(spec.tags),
    }


def _cluster_read(cluster: HypervisorCluster) -> ClusterRead:
    return ClusterRead(
        metadata=_meta(cluster),
        spec=ClusterSpec(
            provider=cluster.provider,
            endpoint=cluster.endpoint,
            credentials_secret=cluster.credentials_secret,
            insecure_skip_verify=cluster.insecure_skip_verify,
            nodes=cluster.nodes,
            default_storage=cluster.default_storage,
            default_network=cluster.default_network,
            dns=cluster.dns,
            tags=cluster.tags,
        ),
        status=ClusterStatus(
            conditions=cluster.conditions,
            connected_nodes=cluster.connected_nodes,
            version=cluster.version,
            last_sync_time=cluster.last_sync_time,
        ),
    )


def _template_values(spec: TemplateSpec) -> dict:
    return {
        "cluster_name": spec.cluster_name,
        "template_ref": spec.template_ref,
        "cpu": spec.cpu,
        "memory_mb": spec.memory_mb,
        "disk_gb": spec.disk_gb,
        "storage": spec.storage,
        "network": spec.network,
        "network_mode": spec.network_mode,
        "attestation": spec.attestation.model_dump(exclude_none=True),
        "bootstrap": spec.bootstrap.model_dump(exclude_none=True),
        "cloud_init": spec.cloud_init,
    }


def _template_read(template: HypervisorMachineTemplate) -> TemplateRead:
    return TemplateRead(
        metadata=_meta(template),
        spec=TemplateSpec(
            cluster_name=template.cluster_name,
            template_ref=template.template_ref,
            cpu=template.cpu,
            memory_mb=template.memory_mb,
            disk_gb=template.disk_gb,
            storage=template.storage,
            network=template.network,
            network_mode=template.network_mode,
            attestation=template.attestation,
            bootstrap=template.bootstrap,
            cloud_init=template.cloud_init,
        ),
        status=TemplateStatus(
            conditions=template.conditions,
            template_available=template.template_available,
            validation_status=template.validation_status,
            last_validated=template.last_validated,
        ),
    )


def _claim_values(spec: ClaimSpec) -> dict:
    return {
        "template_name": spec.template_name,
        "pool_name": spec.pool_name,
        "workload": spec.workload.model_dump(exclude_none=True),
    }


def _claim_read(claim: MachineClaim) -> ClaimRead:
    return ClaimRead(
        metadata=_meta(claim, claim.finalizers, claim.deletion_timestamp),
        spec=ClaimSpec(
            template_name=claim.template_name,
            pool_name=claim.pool_name,
            workload=claim.workload,
        ),
        status=ClaimStatus(
            phase=claim.phase,
            conditions=claim.conditions,
            vm_id=claim.vm_id,
            vm_node=claim.vm_node,
            vm_ip=claim.vm_ip,
            vm_mac=claim.vm_mac,
            cluster_name=claim.cluster_name,
            provisioning_deadline=claim.provisioning_deadline,
            lifetime_deadline=claim.lifetime_deadline,
            failure_count=claim.failure_count,
            next_retry_at=claim.next_retry_at,
            agent_stage=claim.agent_stage,
            last_heartbeat=claim.last_heartbeat,
            last_error=claim.last_error,
        ),
    )


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, float]:
    return metrics.snapshot()


@router.put("/v1/namespaces/{namespace}/secrets/{name}")
def put_secret(
    namespace: str, name: str, req: SecretWrite, db: Session = Depends(get_db)
) -> dict[str, bool]:
    secret = get_secret(db, namespace, name)
    if secret is None:
        secret = Secret(uid=str(uuid.uuid4()), namespace=namespace, name=name)
        db.add(secret)
    secret.data = dict(req.data)
    secret.updated_at = now_utc()
    # Values never reach the event log.
    write_event(
        db,
        "secret.written",
        {"namespace": namespace, "name": name, "keys": sorted(req.data)},
    )
    db.commit()
    _enqueue_namespace_claims(db, namespace)
    request_cluster_resync()
    return {"ok": True}


@router.delete("/v1/namespaces/{namespace}/secrets/{name}")
def delete_secret(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> dict[str, bool]:
    secret = get_secret(db, namespace, name)
    if secret is None:
        raise HTTPException(status_code=404, detail="unknown secret")
    db.delete(secret)
    write_event(db, "secret.deleted", {"namespace": namespace, "name": name})
    db.commit()
    return {"ok": True}


@router.put("/v1/namespaces/{namespace}/clusters/{name}", response_model=ClusterRead)
def put_cluster(
    namespace: str, name: str, req: ClusterSpec, db: Session = Depends(get_db)
) -> ClusterRead:
    cluster = get_cluster(db, namespace, name)
    if cluster is None:
        cluster = HypervisorCluster(
            uid=str(uuid.uuid4()), namespace=namespace, name=name, generation=1
        )
        db.add(cluster)
    if _apply_spec(cluster, _cluster_values(req)):
        cluster.updated_at = now_utc()
        write_event(
            db,
            "cluster.spec_updated",
            {"namespace": namespace, "name": name, "generation": cluster.generation},
        )
    db.commit()
    request_cluster_resync()
    _enqueue_namespace_claims(db, namespace)
    return _cluster_read(cluster)


@router.get("/v1/namespaces/{namespace}/clusters", response_model=list[ClusterRead])
def get_clusters(namespace: str, db: Session = Depends(get_db)) -> list[ClusterRead]:
    return [
        _cluster_read(cluster)
        for cluster in list_clusters(db)
        if cluster.namespace == namespace
    ]


@router.get(
    "/v1/namespaces/{namespace}/clusters/{name}", response_model=ClusterRead
)
def get_cluster_endpoint(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> ClusterRead:
    cluster = get_cluster(db, namespace, name)
    if cluster is None:
        raise HTTPException(status_code=404, detail="unknown cluster")
    return _cluster_read(cluster)


@router.delete("/v1/namespaces/{namespace}/clusters/{name}")
def delete_cluster(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> dict[str, bool]:
    cluster = get_cluster(db, namespace, name)
    if cluster is None:
        raise HTTPException(status_code=404, detail="unknown cluster")
    if list_templates(db, namespace=namespace, cluster_name=name):
        raise HTTPException(
            status_code=409, detail="cluster is referenced by templates"
        )
    db.delete(cluster)
    write_event(db, "cluster.deleted", {"namespace": namespace, "name": name})
    db.commit()
    return {"ok": True}


@router.put(
    "/v1/namespaces/{namespace}/templates/{name}", response_model=TemplateRead
)
def put_template(
    namespace: str, name: str, req: TemplateSpec, db: Session = Depends(get_db)
) -> TemplateRead:
    bootstrap = req.bootstrap
    if bootstrap.method == "runner-token" and bootstrap.credentials_secret is None:
        raise HTTPException(
            status_code=400, detail="runner-token bootstrap needs credentials_secret"
        )
    if bootstrap.method == "external-secrets" and bootstrap.token_secret is None:
        raise HTTPException(
            status_code=400, detail="external-secrets bootstrap needs token_secret"
        )
    template = get_template(db, namespace, name)
    if template is None:
        template = HypervisorMachineTemplate(
            uid=str(uuid.uuid4()), namespace=namespace, name=name, generation=1
        )
        db.add(template)
    if _apply_spec(template, _template_values(req)):
        template.validation_status = None
        template.updated_at = now_utc()
        write_event(
            db,
            "template.spec_updated",
            {"namespace": namespace, "name": name, "generation": template.generation},
        )
    db.commit()
    request_cluster_resync()
    _enqueue_namespace_claims(db, namespace)
    return _template_read(template)


@router.get(
    "/v1/namespaces/{namespace}/templates", response_model=list[TemplateRead]
)
def get_templates(
    namespace: str,
    cluster_name: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[TemplateRead]:
    return [
        _template_read(template)
        for template in list_templates(
            db, namespace=namespace, cluster_name=cluster_name
        )
    ]


@router.get(
    "/v1/namespaces/{namespace}/templates/{name}", response_model=TemplateRead
)
def get_template_endpoint(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> TemplateRead:
    template = get_template(db, namespace, name)
    if template is None:
        raise HTTPException(status_code=404, detail="unknown template")
    return _template_read(template)


@router.delete("/v1/namespaces/{namespace}/templates/{name}")
def delete_template(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> dict[str, bool]:
    template = get_template(db, namespace, name)
    if template is None:
        raise HTTPException(status_code=404, detail="unknown template")
    if list_claims(db, namespace=namespace, template_name=name):
        raise HTTPException(status_code=409, detail="template is referenced by claims")
    db.delete(template)
    write_event(db, "template.deleted", {"namespace": namespace, "name": name})
    db.commit()
    return {"ok": True}


@router.put("/v1/namespaces/{namespace}/claims/{name}", response_model=ClaimRead)
def put_claim(
    namespace: str, name: str, req: ClaimSpec, db: Session = Depends(get_db)
) -> ClaimRead:
    claim = get_claim_by_name(db, namespace, name)
    if claim is None:
        claim = MachineClaim(
            uid=str(uuid.uuid4()),
            namespace=namespace,
            name=name,
            generation=1,
            finalizers=[CLAIM_FINALIZER],
        )
        db.add(claim)
        _apply_spec(claim, _claim_values(req))
        write_event(
            db,
            "claim.created",
            {"namespace": namespace, "name": name, "template": req.template_name},
            claim.uid,
        )
    else:
        if claim.deletion_timestamp is not None:
            raise HTTPException(status_code=409, detail="claim is being deleted")
        if claim.vm_id and claim.template_name != req.template_name:
            raise HTTPException(
                status_code=409, detail="template cannot change once a vm exists"
            )
        if _apply_spec(claim, _claim_values(req)):
            claim.updated_at = now_utc()
            write_event(
                db,
                "claim.spec_updated",
                {"generation": claim.generation},
                claim.uid,
            )
    db.commit()
    enqueue_claim(claim.uid)
    return _claim_read(claim)


@router.get("/v1/namespaces/{namespace}/claims", response_model=list[ClaimRead])
def get_claims(
    namespace: str,
    phase: str | None = Query(default=None),
    pool_name: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[ClaimRead]:
    claims = list_claims(db, namespace=namespace, phase=phase, pool_name=pool_name)
    return [_claim_read(claim) for claim in claims]


@router.get("/v1/namespaces/{namespace}/claims/{name}", response_model=ClaimRead)
def get_claim_endpoint(
    namespace: str, name: str, db: Session = Depends(get_db)
) -> ClaimRead:
    claim = get_claim_by_name(db, namespace, name)
    if claim is None:
        raise HTTPException(status_code=404, detail="unknown claim")
    return _claim_read(claim)


@router.get(
    "/v1/namespaces/{namespace}/claims/{name}/events",
    response_model=list[EventRead],
)
def get_claim_events(
    namespace: str,
    name: str,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[EventRead]:
    claim = get_claim_by_name(db, namespace, name)
    if claim is None:
        raise HTTPException(status_code=404, detail="unknown claim")
    events = db.scalars(
        select(Event)
        .where(Event.claim_uid == claim.uid)
        .order_by(Event.id.desc())
        .limit(limit)
    )
    return [
        EventRead(
            id=event.id,
            timestamp=event.timestamp,
            event_type=event.event_type,
            payload=json.loads(event.payload_json),
        )
        for event in events
    ]


@router.delete(
    "/v1/namespaces/{namespace}/claims/{name}", response_model=DeleteResponse
)
def delete_claim(
    namespace: str,
    name: str,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> DeleteResponse:
    claim = get_claim_by_name(db, namespace, name)
    if claim is None:
        raise HTTPException(status_code=404, detail="unknown claim")
    uid = claim.uid
    if force:
        logger.warning(
            "finalizers force-removed claim=%s/%s vm_id=%s",
            namespace,
            name,
            claim.vm_id,
        )
        write_event(
            db,
            "claim.finalizers_forced",
            {"finalizers": list(claim.finalizers), "vm_id": claim.vm_id},
            uid,
        )
        claim.finalizers = []
    else:
        write_event(db, "claim.deletion_requested", {}, uid)
    removed = request_claim_deletion(db, claim)
    db.commit()
    if not removed:
        enqueue_claim(uid)
    return DeleteResponse(removed=removed)


@router.post("/v1/claims/{uid}/heartbeat")
def claim_heartbeat(
    uid: str,
    req: HeartbeatRequest,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    token = _bearer_token(authorization)
    claim = get_claim(db, uid)
    if claim is None:
        raise HTTPException(status_code=404, detail="unknown claim")
    if not secure_compare_token(token, claim.callback_token_hash):
        raise HTTPException(status_code=401, detail="invalid callback token")
    claim.agent_stage = req.stage
    claim.last_heartbeat = now_utc()
    if req.stage == "failed" and req.message:
        claim.last_error = req.message
    write_event(
        db, "claim.heartbeat", {"stage": req.stage, "message": req.message}, uid
    )
    db.commit()
    enqueue_claim(uid)
    return {"ok": True}
