import time
from dataclasses import dataclass
from typing import Any

import httpx


RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    sleep_sec: float


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} "
            f"({error_type}: {detail})"
        )

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code in RETRYABLE_STATUS_CODES


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    """Send a request, retrying connection errors and retryable statuses.

    Client errors other than those in ``RETRYABLE_STATUS_CODES`` fail on the
    first attempt.
    """
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempt = 0
    while attempt < retry.attempts:
        attempt += 1
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            body = (exc.response.text or "").strip()
            detail = (
                f"HTTP {status_code}: {body[:240]}" if body else f"HTTP {status_code}"
            )
            error_type = exc.__class__.__name__
            if status_code not in RETRYABLE_STATUS_CODES:
                break
        except httpx.RequestError as exc:
            error = exc
            status_code = None
            detail = str(exc) or exc.__class__.__name__
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=attempt,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
