from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CONFIG_PATH = "/etc/hyperfleet/runner-config.json"


class ConfigError(RuntimeError):
    pass


class RunnerSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    download_url: str = ""
    install_path: str = ""
    work_dir: str = ""
    config_script: str = ""
    run_script: str = ""
    os: str = ""
    arch: str = ""


class SpiffeSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    join_token: str = ""
    spiffe_id: str = ""
    enabled: bool = False


class StatusSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    token: str


class RunnerConfig(BaseModel):
    """The JSON document rendered into the VM by the controller.

    Unknown fields are ignored so that older agents keep booting when the
    controller adds new ones.
    """

    model_config = ConfigDict(extra="ignore")

    method: str
    platform: str = ""
    runner_token: str = ""
    registration_url: str = ""
    runner_name: str = ""
    labels: list[str] = Field(default_factory=list)
    expires_at: str = ""
    runner: RunnerSection = Field(default_factory=RunnerSection)
    spiffe: SpiffeSection = Field(default_factory=SpiffeSection)
    status: StatusSection | None = None


class AgentSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HYPERFLEET_BOOTSTRAP_", extra="ignore"
    )

    config_path: str = Field(default=DEFAULT_CONFIG_PATH)
    http_timeout_sec: int = Field(default=300, ge=1)
    status_timeout_sec: int = Field(default=10, ge=1)
    cleanup_delay_sec: int = Field(default=2, ge=0)
    command_timeout_sec: int = Field(default=30, ge=1)
    log_level: str = Field(default="INFO")


def load_runner_config(path: str) -> RunnerConfig:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read config file: {exc}") from exc
    try:
        return RunnerConfig.model_validate_json(raw)
    except ValidationError as exc:
        raise ConfigError(f"failed to parse config: {exc}") from exc
