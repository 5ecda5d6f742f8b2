import base64
import json
import textwrap
from datetime import datetime
from string import Template

import yaml

from hyperfleet_controller.errors import ConfigurationError
from hyperfleet_controller.services.credentials import AttestationData, BootstrapData


DEFAULT_CONFIG_PATH = "/etc/hyperfleet/runner-config.json"
AGENT_METHOD = "runner-token"

DEFAULT_CLOUD_INIT = textwrap.dedent(
    """\
    #cloud-config
    write_files:
      - path: ${config_path}
        permissions: '0600'
        encoding: b64
        content: ${runner_config_b64}
      - path: /etc/systemd/system/hyperfleet-bootstrap.service
        permissions: '0644'
        content: |
          [Unit]
          Description=HyperFleet bootstrap agent
          After=network-online.target
          Wants=network-online.target

          [Service]
          Type=oneshot
          ExecStart=/usr/local/bin/hyperfleet-bootstrap --config ${config_path}
          Restart=no

          [Install]
          WantedBy=multi-user.target
    runcmd:
      - [ systemctl, daemon-reload ]
      - [ systemctl, start, --no-block, hyperfleet-bootstrap.service ]
    """
)


def rfc3339(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.replace(microsecond=0).isoformat() + "Z"


def build_runner_config(
    attestation: AttestationData | None,
    bootstrap: BootstrapData,
    status_url: str | None = None,
    status_token: str | None = None,
) -> dict:
    """Build the JSON document the bootstrap agent reads at boot.

    Already-booted VMs cannot be updated, so fields may be added here but
    never renamed or removed.
    """
    document: dict = {
        "method": AGENT_METHOD,
        "platform": bootstrap.platform,
        "runner_token": bootstrap.runner_token,
        "registration_url": bootstrap.registration_url,
        "runner_name": bootstrap.runner_name,
        "labels": list(bootstrap.labels),
        "expires_at": rfc3339(bootstrap.expires_at),
        "runner": {
            "download_url": bootstrap.runner.download_url,
            "install_path": bootstrap.runner.install_path,
            "work_dir": bootstrap.runner.work_dir,
            "config_script": bootstrap.runner.config_script,
            "run_script": bootstrap.runner.run_script,
            "os": bootstrap.runner.os,
            "arch": bootstrap.runner.arch,
        },
    }
    if attestation is not None:
        document["spiffe"] = {
            "join_token": attestation.join_token or "",
            "spiffe_id": attestation.spiffe_id,
            "enabled": True,
        }
    if status_url and status_token:
        document["status"] = {"url": status_url, "token": status_token}
    return document


def placeholder_values(
    attestation: AttestationData | None,
    bootstrap: BootstrapData,
    runner_config: dict,
    config_path: str = DEFAULT_CONFIG_PATH,
) -> dict[str, str]:
    config_json = json.dumps(runner_config, sort_keys=True)
    return {
        "join_token": (attestation.join_token or "") if attestation else "",
        "spiffe_id": attestation.spiffe_id if attestation else "",
        "tpm_device": (attestation.tpm_device or "") if attestation else "",
        "runner_token": bootstrap.runner_token,
        "registration_url": bootstrap.registration_url,
        "runner_name": bootstrap.runner_name,
        "labels": ",".join(bootstrap.labels),
        "labels_json": json.dumps(bootstrap.labels),
        "expires_at": rfc3339(bootstrap.expires_at),
        "config_path": config_path,
        "runner_config_json": config_json,
        "runner_config_b64": base64.b64encode(config_json.encode("utf-8")).decode(
            "ascii"
        ),
    }


def render_cloud_init(
    skeleton: str | None,
    attestation: AttestationData | None,
    bootstrap: BootstrapData,
    runner_config: dict,
    config_path: str = DEFAULT_CONFIG_PATH,
) -> str:
    """Fill the template skeleton and check the result is usable cloud-init.

    Skeletons use ``${name}`` placeholders; a literal dollar sign is written
    as ``$$``.
    """
    values = placeholder_values(attestation, bootstrap, runner_config, config_path)
    try:
        rendered = Template(skeleton or DEFAULT_CLOUD_INIT).substitute(values)
    except KeyError as exc:
        raise ConfigurationError(
            f"cloud-init skeleton references unknown placeholder {exc.args[0]}",
            reason="MalformedTemplate",
        ) from exc
    except ValueError as exc:
        raise ConfigurationError(
            f"cloud-init skeleton is malformed: {exc}", reason="MalformedTemplate"
        ) from exc
    try:
        yaml.safe_load(rendered)
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"rendered cloud-init is not valid YAML: {exc}", reason="MalformedTemplate"
        ) from exc
    return rendered


PLACEHOLDERS = frozenset(
    {
        "join_token",
        "spiffe_id",
        "tpm_device",
        "runner_token",
        "registration_url",
        "runner_name",
        "labels",
        "labels_json",
        "expires_at",
        "config_path",
        "runner_config_json",
        "runner_config_b64",
    }
)


def validate_skeleton(skeleton: str | None) -> None:
    """Reject a skeleton that could never render, before any token is issued."""
    template = Template(skeleton or DEFAULT_CLOUD_INIT)
    if not template.is_valid():
        raise ConfigurationError(
            "cloud-init skeleton contains an invalid placeholder",
            reason="MalformedTemplate",
        )
    unknown = sorted(set(template.get_identifiers()) - PLACEHOLDERS)
    if unknown:
        raise ConfigurationError(
            "cloud-init skeleton references unknown placeholder(s): "
            + ", ".join(unknown),
            reason="MalformedTemplate",
        )
