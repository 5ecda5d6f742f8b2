from dataclasses import dataclass
from datetime import datetime

import httpx

from hyperfleet_controller.clients.github import parse_rfc3339
from hyperfleet_controller.clients.http import RetryPolicy, request_with_retry


@dataclass
class JoinToken:
    token: str
    expires_at: datetime | None


class IdentityServerClient:
    def __init__(
        self,
        base_url: str,
        retry: RetryPolicy,
        auth_token: str | None = None,
        timeout_sec: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_sec,
            headers=headers,
            transport=transport,
        )
        self.retry = retry

    def generate_join_token(
        self, spiffe_id: str, ttl_sec: int, selectors: dict[str, str]
    ) -> JoinToken:
        payload = {
            "spiffe_id": spiffe_id,
            "ttl": ttl_sec,
            "selectors": [
                {"type": "hyperfleet", "value": f"{key}:{value}"}
                for key, value in sorted(selectors.items())
                if value
            ],
        }
        response = request_with_retry(
            self.client, "POST", "/v1/join-tokens", self.retry, json=payload
        )
        data = response.json()
        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise ValueError("join token response missing token")
        return JoinToken(token=token, expires_at=parse_rfc3339(data.get("expires_at")))

    def close(self) -> None:
        self.client.close()
