import logging
import threading
import time

from hyperfleet_controller.clients.github import GitHubClient
from hyperfleet_controller.clients.http import RetryPolicy
from hyperfleet_controller.clients.identity import IdentityServerClient
from hyperfleet_controller.config import get_settings, operator_identity
from hyperfleet_controller.db import session_scope
from hyperfleet_controller.metrics import metrics
from hyperfleet_controller.providers.registry import ProviderRegistry
from hyperfleet_controller.repositories import list_claims
from hyperfleet_controller.services.clusters import resync_clusters_once
from hyperfleet_controller.services.credentials import CredentialGenerator
from hyperfleet_controller.services.monitor import VMStateMonitor
from hyperfleet_controller.services.reconciler import (
    ClaimReconciler,
    ReconcilerConfig,
)
from hyperfleet_controller.workqueue import WorkQueue


logger = logging.getLogger(__name__)

work_queue = WorkQueue()
cluster_resync_requested = threading.Event()


def enqueue_claim(uid: str) -> None:
    work_queue.add(uid)


def request_cluster_resync() -> None:
    cluster_resync_requested.set()


def enqueue_all_claims() -> int:
    with session_scope() as session:
        uids = [claim.uid for claim in list_claims(session)]
    for uid in uids:
        work_queue.add(uid)
    return len(uids)


def run_worker(
    queue: WorkQueue, reconciler: ClaimReconciler, stop_event: threading.Event
) -> None:
    while not stop_event.is_set():
        item = queue.get(timeout=1.0)
        if item is None:
            continue
        uid, observation = item
        try:
            result = reconciler.reconcile(uid, observation)
            if result.requeue_after is not None and not result.removed:
                queue.add_after(uid, result.requeue_after)
        except Exception as exc:  # noqa: BLE001
            logger.exception("reconcile crashed claim_uid=%s: %s", uid, exc)
            metrics.inc("reconcile_crashes_total")
            queue.add_after(uid, get_settings().transient_retry_max_sec)
        finally:
            queue.done(uid)
        metrics.set_gauge("workqueue_depth", queue.pending())


def _build_reconciler(registry: ProviderRegistry) -> ClaimReconciler:
    settings = get_settings()
    retry = RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec)
    github = GitHubClient(
        api_url=settings.github_api_url,
        retry=retry,
        timeout_sec=settings.github_timeout_sec,
    )
    identity_server = IdentityServerClient(
        base_url=settings.identity_server_url,
        retry=retry,
        auth_token=settings.identity_server_token,
    )
    credentials = CredentialGenerator(
        identity_server=identity_server,
        ci_platform=github,
        trust_domain=settings.spiffe_trust_domain,
        github_web_url=settings.github_web_url,
    )
    return ClaimReconciler(
        identity=registry.identity,
        providers=registry,
        credentials=credentials,
        config=ReconcilerConfig.from_settings(settings),
    )


def start_loops(stop_event: threading.Event) -> list[threading.Thread]:
    settings = get_settings()
    identity = operator_identity(settings)
    registry = ProviderRegistry(settings, identity)
    reconciler = _build_reconciler(registry)
    monitor = VMStateMonitor(identity=identity, providers=registry, queue=work_queue)

    def monitor_worker() -> None:
        while not stop_event.is_set():
            try:
                monitor.tick()
            except Exception as exc:  # noqa: BLE001
                logger.exception("monitor tick failed: %s", exc)
            stop_event.wait(settings.monitor_interval_sec)

    def resync_worker() -> None:
        while not stop_event.is_set():
            try:
                enqueue_all_claims()
            except Exception as exc:  # noqa: BLE001
                logger.exception("claim resync failed: %s", exc)
            stop_event.wait(settings.resync_interval_sec)

    def cluster_worker() -> None:
        while not stop_event.is_set():
            try:
                resync_clusters_once(registry)
            except Exception as exc:  # noqa: BLE001
                logger.exception("cluster resync failed: %s", exc)
            cluster_resync_requested.wait(settings.cluster_resync_interval_sec)
            cluster_resync_requested.clear()

    def stop_queue() -> None:
        stop_event.wait()
        cluster_resync_requested.set()
        work_queue.shutdown()
        registry.close()

    threads = [
        threading.Thread(
            target=run_worker,
            args=(work_queue, reconciler, stop_event),
            name=f"claim-worker-{index}",
            daemon=True,
        )
        for index in range(settings.worker_count)
    ]
    threads.append(
        threading.Thread(target=monitor_worker, name="vm-monitor", daemon=True)
    )
    threads.append(
        threading.Thread(target=resync_worker, name="claim-resync", daemon=True)
    )
    threads.append(
        threading.Thread(target=cluster_worker, name="cluster-resync", daemon=True)
    )
    threads.append(threading.Thread(target=stop_queue, name="shutdown", daemon=True))
    for thread in threads:
        thread.start()
    time.sleep(0.01)
    logger.info("background loops started workers=%s", settings.worker_count)
    return threads
