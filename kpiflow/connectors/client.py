"""KPIFlow — Integration Proxy Client.

Fetches raw JSON for a metric through the integration proxy, which holds the
OAuth credentials for each connected account. Errors are classified into
auth-expired, rate-limited and generic data-source failures; none are retried
here because the next scheduled run is the retry.
"""

from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import httpx

from kpiflow.config import settings
from kpiflow.core.exceptions import AuthExpiredError, DataSourceError, RateLimitedError
from kpiflow.core.logging import get_logger
from kpiflow.core.metric_templates import ResolvedEndpoint

logger = get_logger("connectors.client")


class IntegrationClient:
    """Async HTTP client for the integration proxy."""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.integration_proxy_url).rstrip("/")
        self.secret_key = secret_key or settings.integration_secret_key
        self.timeout = timeout or settings.integration_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def fetch(
        self,
        provider: str,
        connection_id: str,
        endpoint: ResolvedEndpoint,
        params: Dict[str, Any] | None = None,
    ) -> Any:
        """Proxy one request to the provider and return the decoded JSON body."""
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Connection-Id": connection_id,
            "Provider-Config-Key": provider,
        }
        path = endpoint.path
        # Absolute endpoints (e.g. YouTube Analytics) override the provider base URL
        if path.startswith("http://") or path.startswith("https://"):
            parts = urlsplit(path)
            headers["Base-Url-Override"] = f"{parts.scheme}://{parts.netloc}"
            path = parts.path + (f"?{parts.query}" if parts.query else "")

        url = f"{self.base_url}/proxy{path if path.startswith('/') else '/' + path}"
        context = {"provider": provider, "endpoint": endpoint.path}

        client = await self._get_client()
        try:
            resp = await client.request(
                endpoint.method,
                url,
                params=params,
                json=endpoint.body if endpoint.method != "GET" else None,
                headers=headers,
            )
        except httpx.RequestError as e:
            raise DataSourceError(
                f"Could not reach {provider}: {e.__class__.__name__}", context=context
            ) from e

        if resp.status_code in (401, 403):
            raise AuthExpiredError(
                f"{provider} authorization expired or was revoked. Reconnect the integration.",
                status_code=resp.status_code,
                context=context,
            )
        if resp.status_code == 429:
            retry_after = resp.headers.get("retry-after")
            raise RateLimitedError(
                f"{provider} rate limit reached. Will retry on the next scheduled run.",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                context=context,
            )
        if resp.status_code >= 400:
            raise DataSourceError(
                f"{provider} returned HTTP {resp.status_code}: {_error_message(resp)}",
                status_code=resp.status_code,
                context=context,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise DataSourceError(
                f"{provider} returned a non-JSON response", status_code=resp.status_code, context=context
            ) from e

        logger.info(
            f"Fetched {provider} {endpoint.method} {endpoint.path}",
            extra={"status_code": resp.status_code},
        )
        return data


def _error_message(resp: httpx.Response) -> str:
    """Pull the most useful message out of an error body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
        if body.get("message"):
            return str(body["message"])
    return str(body)[:200]
