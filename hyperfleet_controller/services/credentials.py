import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from hyperfleet_controller.clients.github import RegistrationToken, parse_rfc3339
from hyperfleet_controller.clients.http import RequestFailure
from hyperfleet_controller.clients.identity import JoinToken
from hyperfleet_controller.errors import (
    ConfigurationError,
    ConnectivityError,
    CredentialError,
    TransientError,
)
from hyperfleet_controller.repositories import now_utc


logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SEC = 3600
DEFAULT_TPM_DEVICE = "/dev/tpmrm0"
RUNNER_VERSION = "2.311.0"
RUNNER_RELEASE_URL = (
    "https://github.com/actions/runner/releases/download/"
    "v{version}/actions-runner-{os}-{arch}-{version}.tar.gz"
)
SUPPORTED_PLATFORMS = {"github"}


class IdentityServer(Protocol):
    def generate_join_token(
        self, spiffe_id: str, ttl_sec: int, selectors: dict[str, str]
    ) -> JoinToken: ...


class CIPlatform(Protocol):
    def create_registration_token(
        self,
        credential: str,
        *,
        repository: str | None = None,
        organization: str | None = None,
    ) -> RegistrationToken: ...


SecretReader = Callable[[str, str], str | None]


@dataclass
class ClaimContext:
    namespace: str
    claim_name: str
    claim_uid: str
    template_name: str
    pool_name: str | None
    workload: dict
    attestation: dict
    bootstrap: dict


@dataclass
class AttestationData:
    method: str
    spiffe_id: str
    selectors: dict[str, str]
    expires_at: datetime | None
    join_token: str | None = None
    tpm_device: str | None = None


@dataclass
class RunnerDownload:
    download_url: str
    install_path: str = "/opt/actions-runner"
    work_dir: str = "/tmp/runner-work"
    config_script: str = "config.sh"
    run_script: str = "run.sh"
    os: str = "linux"
    arch: str = "x64"


@dataclass
class BootstrapData:
    method: str
    platform: str
    runner_token: str
    registration_url: str
    runner_name: str
    expires_at: datetime
    runner: RunnerDownload
    labels: list[str] = field(default_factory=list)


def spiffe_id_for(trust_domain: str, ctx: ClaimContext) -> str:
    return f"spiffe://{trust_domain}/{ctx.namespace}/{ctx.claim_name}/{ctx.claim_uid}"


def runner_name_for(ctx: ClaimContext) -> str:
    return f"{ctx.claim_name}-{ctx.claim_uid[:8]}"


def runner_download_url(version: str, os_name: str, arch: str) -> str:
    return RUNNER_RELEASE_URL.format(version=version, os=os_name, arch=arch)


def merge_labels(*groups: list[str] | None) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for label in group or []:
            label = label.strip()
            if label and label not in merged:
                merged.append(label)
    return merged


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _ttl(spec: dict, key: str) -> int:
    return int(spec.get(key) or DEFAULT_TOKEN_TTL_SEC)


def _translate_request_failure(exc: RequestFailure, what: str) -> Exception:
    if exc.status_code is None:
        return ConnectivityError(f"{what} unreachable: {exc}")
    if exc.transient:
        return TransientError(f"{what} unavailable: {exc}")
    return CredentialError(f"{what} rejected the request: {exc.detail}")


class CredentialGenerator:
    """Produces AttestationData and BootstrapData for one claim.

    Methods are resolved through ``ATTESTATION_METHODS`` and
    ``BOOTSTRAP_METHODS``; adding a method means adding a table entry.
    """

    def __init__(
        self,
        *,
        identity_server: IdentityServer,
        ci_platform: CIPlatform,
        trust_domain: str,
        github_web_url: str = "https://github.com",
        clock: Callable[[], datetime] = now_utc,
    ):
        self.identity_server = identity_server
        self.ci_platform = ci_platform
        self.trust_domain = trust_domain
        self.github_web_url = github_web_url.rstrip("/")
        self.clock = clock

    def attestation(self, ctx: ClaimContext) -> AttestationData:
        method = ctx.attestation.get("method") or ""
        handler = ATTESTATION_METHODS.get(method)
        if handler is None:
            raise ConfigurationError(
                f"unsupported attestation method: {method or '<empty>'}"
            )
        return handler(self, ctx)

    def bootstrap(self, ctx: ClaimContext, read_secret: SecretReader) -> BootstrapData:
        method = ctx.bootstrap.get("method") or ""
        handler = BOOTSTRAP_METHODS.get(method)
        if handler is None:
            raise ConfigurationError(
                f"unsupported bootstrap method: {method or '<empty>'}"
            )
        return handler(self, ctx, read_secret)

    def registration_scope(self, ctx: ClaimContext) -> tuple[str | None, str | None]:
        repository = ctx.bootstrap.get("repository") or None
        organization = ctx.bootstrap.get("organization") or None
        if repository and organization:
            logger.warning(
                "both repository and organization configured, using repository "
                "claim=%s/%s repository=%s organization=%s",
                ctx.namespace,
                ctx.claim_name,
                repository,
                organization,
            )
            return repository, None
        if not repository and not organization:
            raise CredentialError(
                "bootstrap requires either repository or organization",
                reason="RegistrationScopeMissing",
            )
        return repository, organization

    def registration_url(self, repository: str | None, organization: str | None) -> str:
        return f"{self.github_web_url}/{repository or organization}"

    def runner_download(self, ctx: ClaimContext) -> RunnerDownload:
        overrides = ctx.bootstrap.get("runner") or {}
        os_name = overrides.get("os") or "linux"
        arch = overrides.get("arch") or "x64"
        version = overrides.get("version") or RUNNER_VERSION
        return RunnerDownload(
            download_url=overrides.get("download_url")
            or runner_download_url(version, os_name, arch),
            install_path=overrides.get("install_path") or "/opt/actions-runner",
            work_dir=overrides.get("work_dir") or "/tmp/runner-work",
            config_script=overrides.get("config_script") or "config.sh",
            run_script=overrides.get("run_script") or "run.sh",
            os=os_name,
            arch=arch,
        )

    def platform(self, ctx: ClaimContext) -> str:
        platform = (
            ctx.bootstrap.get("platform") or ctx.workload.get("platform") or "github"
        )
        if platform not in SUPPORTED_PLATFORMS:
            raise ConfigurationError(f"unsupported ci platform: {platform}")
        return platform


def _selectors(ctx: ClaimContext) -> dict[str, str]:
    return {
        "namespace": ctx.namespace,
        "claim": ctx.claim_name,
        "template": ctx.template_name,
        "pool": ctx.pool_name or "",
        "workload": (
            ctx.workload.get("type") or ctx.workload.get("platform") or "ci-runner"
        ),
    }


def _join_token_attestation(
    gen: CredentialGenerator, ctx: ClaimContext
) -> AttestationData:
    trust_domain = ctx.attestation.get("trust_domain") or gen.trust_domain
    spiffe_id = spiffe_id_for(trust_domain, ctx)
    selectors = _selectors(ctx)
    ttl_sec = _ttl(ctx.attestation, "ttl_sec")
    try:
        join = gen.identity_server.generate_join_token(spiffe_id, ttl_sec, selectors)
    except RequestFailure as exc:
        raise _translate_request_failure(exc, "identity server") from exc
    except ValueError as exc:
        raise CredentialError(
            f"identity server returned an invalid token: {exc}"
        ) from exc
    expires_at = _naive_utc(join.expires_at) or (
        gen.clock() + timedelta(seconds=ttl_sec)
    )
    return AttestationData(
        method="join-token",
        spiffe_id=spiffe_id,
        selectors=selectors,
        expires_at=expires_at,
        join_token=join.token,
    )


def _tpm_attestation(gen: CredentialGenerator, ctx: ClaimContext) -> AttestationData:
    trust_domain = ctx.attestation.get("trust_domain") or gen.trust_domain
    return AttestationData(
        method="tpm",
        spiffe_id=spiffe_id_for(trust_domain, ctx),
        selectors=_selectors(ctx),
        expires_at=None,
        tpm_device=ctx.attestation.get("tpm_device") or DEFAULT_TPM_DEVICE,
    )


def _required_secret(read_secret: SecretReader, ref: dict | None, what: str) -> str:
    if not ref or not ref.get("name"):
        raise ConfigurationError(f"{what} secret reference is missing")
    key = ref.get("key") or "token"
    value = read_secret(ref["name"], key)
    if not value:
        raise ConfigurationError(
            f"{what} secret {ref['name']} has no key {key}", reason="SecretMissing"
        )
    return value


def _runner_token_bootstrap(
    gen: CredentialGenerator, ctx: ClaimContext, read_secret: SecretReader
) -> BootstrapData:
    platform = gen.platform(ctx)
    repository, organization = gen.registration_scope(ctx)
    credential = _required_secret(
        read_secret, ctx.bootstrap.get("credentials_secret"), "ci credential"
    )
    try:
        issued = gen.ci_platform.create_registration_token(
            credential, repository=repository, organization=organization
        )
    except RequestFailure as exc:
        raise _translate_request_failure(exc, "ci platform") from exc
    except ValueError as exc:
        raise CredentialError(
            f"ci platform returned an invalid token: {exc}"
        ) from exc
    ttl_sec = _ttl(ctx.bootstrap, "token_ttl_sec")
    expires_at = _naive_utc(issued.expires_at) or (
        gen.clock() + timedelta(seconds=ttl_sec)
    )
    return BootstrapData(
        method="runner-token",
        platform=platform,
        runner_token=issued.token,
        registration_url=gen.registration_url(repository, organization),
        runner_name=runner_name_for(ctx),
        labels=merge_labels(ctx.bootstrap.get("labels"), ctx.workload.get("labels")),
        expires_at=expires_at,
        runner=gen.runner_download(ctx),
    )


def _external_secrets_bootstrap(
    gen: CredentialGenerator, ctx: ClaimContext, read_secret: SecretReader
) -> BootstrapData:
    platform = gen.platform(ctx)
    repository, organization = gen.registration_scope(ctx)
    ref = ctx.bootstrap.get("token_secret") or {}
    token = _required_secret(read_secret, ref, "registration token")
    expires_raw = read_secret(ref["name"], ref.get("expires_at_key") or "expires_at")
    try:
        expires_at = _naive_utc(parse_rfc3339(expires_raw))
    except ValueError as exc:
        raise CredentialError(
            f"registration token secret has a bad expiry: {exc}"
        ) from exc
    now = gen.clock()
    if expires_at is None:
        expires_at = now + timedelta(seconds=_ttl(ctx.bootstrap, "token_ttl_sec"))
    elif expires_at <= now:
        raise CredentialError(
            f"registration token in secret {ref['name']} expired at "
            f"{expires_at.isoformat()}",
            reason="TokenExpired",
        )
    return BootstrapData(
        method="external-secrets",
        platform=platform,
        runner_token=token,
        registration_url=gen.registration_url(repository, organization),
        runner_name=runner_name_for(ctx),
        labels=merge_labels(ctx.bootstrap.get("labels"), ctx.workload.get("labels")),
        expires_at=expires_at,
        runner=gen.runner_download(ctx),
    )


ATTESTATION_METHODS: dict[
    str, Callable[[CredentialGenerator, ClaimContext], AttestationData]
] = {
    "join-token": _join_token_attestation,
    "tpm": _tpm_attestation,
}

BOOTSTRAP_METHODS: dict[
    str, Callable[[CredentialGenerator, ClaimContext, SecretReader], BootstrapData]
] = {
    "runner-token": _runner_token_bootstrap,
    "external-secrets": _external_secrets_bootstrap,
}
