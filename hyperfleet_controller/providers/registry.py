import logging
import threading
from collections.abc import Callable

from sqlalchemy.orm import Session

from hyperfleet_controller.config import OperatorIdentity, Settings
from hyperfleet_controller.errors import ConfigurationError
from hyperfleet_controller.models import HypervisorCluster
from hyperfleet_controller.providers.base import (
    HypervisorProvider,
    ProviderConfig,
    ProviderCredentials,
)
from hyperfleet_controller.providers.fake import FakeProvider
from hyperfleet_controller.providers.proxmox import ProxmoxProvider
from hyperfleet_controller.repositories import get_secret


logger = logging.getLogger(__name__)

ProviderFactory = Callable[
    [ProviderConfig, ProviderCredentials, OperatorIdentity], HypervisorProvider
]

PROVIDER_FACTORIES: dict[str, ProviderFactory] = {
    "proxmox": ProxmoxProvider,
    "fake": FakeProvider,
}


def create_provider(
    name: str,
    config: ProviderConfig,
    credentials: ProviderCredentials,
    identity: OperatorIdentity,
    factories: dict[str, ProviderFactory] | None = None,
) -> HypervisorProvider:
    factory = (factories if factories is not None else PROVIDER_FACTORIES).get(name)
    if factory is None:
        raise ConfigurationError(
            f"unsupported hypervisor provider: {name}", reason="UnsupportedProvider"
        )
    return factory(config, credentials, identity)


def load_credentials(
    session: Session, cluster: HypervisorCluster
) -> tuple[ProviderCredentials, int]:
    secret = get_secret(session, cluster.namespace, cluster.credentials_secret)
    if secret is None:
        raise ConfigurationError(
            f"credentials secret {cluster.namespace}/{cluster.credentials_secret} "
            "not found",
            reason="CredentialsMissing",
        )
    data = secret.data or {}
    if data.get("token_id") and data.get("token_secret"):
        credentials = ProviderCredentials(
            token_id=data["token_id"], token_secret=data["token_secret"]
        )
    elif data.get("username") and data.get("password"):
        credentials = ProviderCredentials(
            username=data["username"], password=data["password"]
        )
    else:
        raise ConfigurationError(
            f"secret {secret.name} must hold token_id/token_secret "
            "or username/password",
            reason="CredentialsMissing",
        )
    return credentials, secret.resource_version


def provider_config(cluster: HypervisorCluster, settings: Settings) -> ProviderConfig:
    return ProviderConfig(
        endpoint=cluster.endpoint,
        nodes=list(cluster.nodes or []),
        default_storage=cluster.default_storage,
        default_network=cluster.default_network,
        insecure_skip_verify=cluster.insecure_skip_verify,
        timeout_sec=settings.provider_timeout_sec,
        status_timeout_sec=settings.provider_status_timeout_sec,
    )


class ProviderRegistry:
    """Builds and caches one provider per cluster spec and credential version."""

    def __init__(
        self,
        settings: Settings,
        identity: OperatorIdentity,
        factories: dict[str, ProviderFactory] | None = None,
    ):
        self.settings = settings
        self.identity = identity
        self.factories = factories if factories is not None else PROVIDER_FACTORIES
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[tuple[int, int], HypervisorProvider]] = {}
        self._retired: dict[str, HypervisorProvider] = {}

    def for_cluster(
        self, session: Session, cluster: HypervisorCluster
    ) -> HypervisorProvider:
        credentials, secret_version = load_credentials(session, cluster)
        version = (cluster.generation, secret_version)
        with self._lock:
            cached = self._cache.get(cluster.uid)
            if cached and cached[0] == version:
                return cached[1]
            provider = create_provider(
                cluster.provider,
                provider_config(cluster, self.settings),
                credentials,
                self.identity,
                self.factories,
            )
            # Workers may still hold the replaced provider until the next rebuild.
            retired = self._retired.pop(cluster.uid, None)
            if retired is not None:
                retired.close()
            if cached:
                self._retired[cluster.uid] = cached[1]
            self._cache[cluster.uid] = (version, provider)
            logger.info(
                "provider ready cluster=%s/%s provider=%s",
                cluster.namespace,
                cluster.name,
                cluster.provider,
            )
            return provider

    def close(self) -> None:
        with self._lock:
            for _, provider in self._cache.values():
                provider.close()
            for provider in self._retired.values():
                provider.close()
            self._cache.clear()
            self._retired.clear()
