from dataclasses import dataclass, field
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default="sqlite:///./hyperfleet.db")

    operator_instance_id: str | None = Field(default=None)
    cluster_tags: dict[str, str] = Field(default_factory=dict)

    worker_count: int = Field(default=4, ge=1)
    monitor_interval_sec: int = Field(default=30, ge=1)
    resync_interval_sec: int = Field(default=60, ge=1)
    cluster_resync_interval_sec: int = Field(default=300, ge=5)
    observe_interval_sec: int = Field(default=15, ge=1)

    provisioning_timeout_sec: int = Field(default=900, ge=30)
    max_lifetime_sec: int = Field(default=21600, ge=60)

    delete_retry_initial_sec: int = Field(default=120, ge=1)
    delete_retry_max_sec: int = Field(default=900, ge=1)
    transient_retry_initial_sec: int = Field(default=5, ge=1)
    transient_retry_max_sec: int = Field(default=300, ge=1)

    provider_timeout_sec: int = Field(default=300, ge=1)
    provider_status_timeout_sec: int = Field(default=30, ge=1)

    github_api_url: str = Field(default="https://api.github.com")
    github_web_url: str = Field(default="https://github.com")
    github_timeout_sec: int = Field(default=30, ge=1)

    identity_server_url: str = Field(default="http://localhost:8081")
    identity_server_token: str | None = Field(default=None)
    spiffe_trust_domain: str = Field(default="hyperfleet.local")

    callback_base_url: str | None = Field(default=None)

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: int = Field(default=2, ge=0)

    log_level: str = Field(default="INFO")
    disable_background_loops: bool = Field(default=False)


@dataclass(frozen=True)
class OperatorIdentity:
    instance_id: str
    managed_by: str = "hyperfleet"
    cluster_tags: dict[str, str] = field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def operator_identity(settings: Settings | None = None) -> OperatorIdentity:
    settings = settings or get_settings()
    if not settings.operator_instance_id:
        raise RuntimeError("OPERATOR_INSTANCE_ID is required")
    return OperatorIdentity(
        instance_id=settings.operator_instance_id,
        cluster_tags=dict(settings.cluster_tags),
    )
