import logging

from hyperfleet_controller.db import session_scope
from hyperfleet_controller.errors import (
    ConfigurationError,
    PermanentError,
    ReconcileError,
)
from hyperfleet_controller.providers.base import ConnectionInfo, HypervisorProvider
from hyperfleet_controller.repositories import (
    condition_is_true,
    get_cluster,
    get_template,
    list_clusters,
    list_templates,
    now_utc,
    set_condition,
    write_event,
)
from hyperfleet_controller.services.reconciler import ProviderSource
from hyperfleet_controller.services.rendering import validate_skeleton


logger = logging.getLogger(__name__)

MIN_MEMORY_MB = 128


def reconcile_cluster(providers: ProviderSource, namespace: str, name: str) -> bool:
    """Check one cluster and record its Ready condition. Returns readiness."""
    provider: HypervisorProvider | None = None
    reason = "ConnectionSuccessful"
    message = ""
    info: ConnectionInfo | None = None
    with session_scope() as session:
        cluster = get_cluster(session, namespace, name)
        if cluster is None:
            return False
        try:
            provider = providers.for_cluster(session, cluster)
        except ConfigurationError as exc:
            reason = (
                "CredentialsMissing"
                if exc.reason == "CredentialsMissing"
                else "ConnectionFailed"
            )
            message = exc.detail

    if provider is not None:
        try:
            info = provider.test_connection()
            message = f"connected to {len(info.nodes)} node(s), version {info.version}"
        except ReconcileError as exc:
            reason = "ConnectionFailed"
            message = exc.detail

    ready = info is not None
    with session_scope() as session:
        cluster = get_cluster(session, namespace, name)
        if cluster is None:
            return False
        was_ready = condition_is_true(cluster.conditions, "Ready")
        cluster.conditions = set_condition(
            cluster.conditions, "Ready", ready, reason, message
        )
        if info is not None:
            cluster.connected_nodes = list(info.nodes)
            cluster.version = info.version
        cluster.last_sync_time = now_utc()
        cluster.updated_at = now_utc()
        if ready != was_ready:
            write_event(
                session,
                "cluster.ready_changed",
                {
                    "namespace": namespace,
                    "name": name,
                    "ready": ready,
                    "reason": reason,
                },
            )
    if ready:
        logger.info("cluster ready cluster=%s/%s %s", namespace, name, message)
    else:
        logger.warning(
            "cluster not ready cluster=%s/%s reason=%s error=%s",
            namespace,
            name,
            reason,
            message,
        )
    return ready


def _check_template_spec(template) -> None:
    if template.cpu <= 0:
        raise PermanentError(f"cpu must be > 0, got {template.cpu}")
    if template.memory_mb < MIN_MEMORY_MB:
        raise PermanentError(
            f"memory_mb must be >= {MIN_MEMORY_MB}, got {template.memory_mb}"
        )
    validate_skeleton(template.cloud_init)


def validate_template(providers: ProviderSource, namespace: str, name: str) -> bool:
    """Check a template against its cluster and record TemplateValid."""
    provider: HypervisorProvider | None = None
    reason = "ValidationSucceeded"
    message = ""
    with session_scope() as session:
        template = get_template(session, namespace, name)
        if template is None:
            return False
        template_ref = template.template_ref
        cluster = get_cluster(session, namespace, template.cluster_name)
        if cluster is None:
            reason = "ClusterNotFound"
            message = f"cluster {template.cluster_name} not found"
        elif not condition_is_true(cluster.conditions, "Ready"):
            reason = "ClusterNotReady"
            message = f"cluster {template.cluster_name} is not ready"
        else:
            try:
                _check_template_spec(template)
                provider = providers.for_cluster(session, cluster)
            except ReconcileError as exc:
                reason = "ValidationFailed"
                message = exc.detail

    if provider is not None:
        try:
            provider.validate_template(template_ref)
            message = f"template {template_ref} is available"
        except ReconcileError as exc:
            reason = "ValidationFailed"
            message = exc.detail

    valid = reason == "ValidationSucceeded"
    with session_scope() as session:
        template = get_template(session, namespace, name)
        if template is None:
            return False
        template.conditions = set_condition(
            template.conditions, "TemplateValid", valid, reason, message
        )
        template.template_available = valid
        # An unreachable cluster says nothing about the template itself.
        if reason in {"ValidationSucceeded", "ValidationFailed"}:
            template.validation_status = "Valid" if valid else "Invalid"
        template.last_validated = now_utc()
        template.updated_at = now_utc()
    logger.info(
        "template validated template=%s/%s valid=%s reason=%s",
        namespace,
        name,
        valid,
        reason,
    )
    return valid


def resync_clusters_once(providers: ProviderSource) -> None:
    with session_scope() as session:
        cluster_keys = [(c.namespace, c.name) for c in list_clusters(session)]
        template_keys = [(t.namespace, t.name) for t in list_templates(session)]
    for namespace, name in cluster_keys:
        reconcile_cluster(providers, namespace, name)
    for namespace, name in template_keys:
        validate_template(providers, namespace, name)
