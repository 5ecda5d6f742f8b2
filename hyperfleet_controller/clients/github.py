from dataclasses import dataclass
from datetime import datetime

import httpx

from hyperfleet_controller.clients.http import RetryPolicy, request_with_retry


GITHUB_API_VERSION = "2022-11-28"
GITHUB_ACCEPT = "application/vnd.github+json"
REGISTRATION_TOKEN_PATH = "actions/runners/registration-token"


@dataclass
class RegistrationToken:
    token: str
    expires_at: datetime | None


def parse_rfc3339(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class GitHubClient:
    """Exchanges a long-lived credential for a runner registration token."""

    def __init__(
        self,
        api_url: str,
        retry: RetryPolicy,
        timeout_sec: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.retry = retry
        self.client = httpx.Client(timeout=timeout_sec, transport=transport)

    def registration_token_url(
        self, *, repository: str | None = None, organization: str | None = None
    ) -> str:
        if repository:
            return f"{self.api_url}/repos/{repository}/{REGISTRATION_TOKEN_PATH}"
        if organization:
            return f"{self.api_url}/orgs/{organization}/{REGISTRATION_TOKEN_PATH}"
        raise ValueError("repository or organization is required")

    def create_registration_token(
        self,
        credential: str,
        *,
        repository: str | None = None,
        organization: str | None = None,
    ) -> RegistrationToken:
        url = self.registration_token_url(
            repository=repository, organization=organization
        )
        response = request_with_retry(
            self.client,
            "POST",
            url,
            self.retry,
            headers={
                "Authorization": f"Bearer {credential}",
                "Accept": GITHUB_ACCEPT,
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
        )
        data = response.json()
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise ValueError("registration token response missing token")
        return RegistrationToken(
            token=token, expires_at=parse_rfc3339(data.get("expires_at"))
        )

    def close(self) -> None:
        self.client.close()
