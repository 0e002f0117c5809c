"""Shared plumbing for the vendor REST clients."""
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 8.0


class IntegrationError(Exception):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")


class IntegrationNotConfigured(IntegrationError):
    def __init__(self, provider: str, missing: str):
        super().__init__(provider, f"not configured (missing {missing})")


def retry_delay(response: httpx.Response, attempt: int) -> float:
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return min(float(retry_after), MAX_BACKOFF_SECONDS)
        except ValueError:
            pass
    return min(BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)


class RestClient:
    provider = "rest"
    base_url = ""
    timeout = 30.0

    def __init__(self, client: Optional[httpx.Client] = None, sleep=time.sleep):
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.timeout))
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def headers(self) -> dict:
        return {}

    def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, backing off on HTTP 429 up to MAX_ATTEMPTS times."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = {**self.headers(), **kwargs.pop("headers", {})}

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                response = self.client.request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as exc:
                raise IntegrationError(self.provider, f"request to {path} failed: {exc}")

            if response.status_code == 429 and attempt < MAX_ATTEMPTS:
                delay = retry_delay(response, attempt)
                logger.warning(
                    "%s rate limited on %s (attempt %d/%d), retrying in %.1fs",
                    self.provider, path, attempt, MAX_ATTEMPTS, delay,
                )
                self._sleep(delay)
                continue

            if response.is_error:
                raise IntegrationError(
                    self.provider,
                    f"API error ({response.status_code}) on {path}: {response.text[:500]}",
                    status_code=response.status_code,
                )
            return response

    def request_json(self, method: str, path: str, **kwargs):
        response = self.request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text
