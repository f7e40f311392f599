"""Metricpipe — Nango Connector Client.

Handles authentication, retry logic and rate limiting for calls proxied
through Nango to third-party APIs (GitHub, PostHog, YouTube, Sheets, Linear).
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.logging import get_logger

logger = get_logger("nango.client")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds
GITHUB_STATS_RETRY_DELAYS = (2, 4, 6)  # seconds; GitHub computes stats lazily


class NangoAPIError(Exception):
    """Raised when Nango or the proxied provider returns an error."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


@dataclass
class FetchResult:
    data: Any
    status: int


def date_string(days_ago: int) -> str:
    """UTC date ``days_ago`` days back, as YYYY-MM-DD."""
    return (datetime.now(timezone.utc) - timedelta(days=days_ago)).strftime(
        "%Y-%m-%d"
    )


def resolve_endpoint(endpoint: str, params: Optional[Dict[str, str]] = None) -> str:
    """Substitute date tokens and ``{PARAM}`` placeholders in an endpoint."""
    resolved = endpoint.replace("28daysAgo", date_string(28)).replace(
        "today", date_string(0)
    )
    for key, value in (params or {}).items():
        resolved = resolved.replace(f"{{{key}}}", str(value))
    return resolved


def resolve_body(body: Any, params: Optional[Dict[str, str]] = None) -> Any:
    """Substitute ``{PARAM}`` placeholders inside a request body.

    String bodies are parsed as JSON after substitution when possible.
    """
    if body is None or not params:
        return json.loads(body) if isinstance(body, str) and _is_json(body) else body
    if isinstance(body, str):
        text = body
        for key, value in params.items():
            text = text.replace(f"{{{key}}}", json.dumps(str(value))[1:-1])
        return json.loads(text) if _is_json(text) else text
    text = json.dumps(body)
    for key, value in params.items():
        text = text.replace(f"{{{key}}}", json.dumps(str(value))[1:-1])
    return json.loads(text)


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
        return True
    except ValueError:
        return False


def _is_empty(data: Any) -> bool:
    return data is None or (isinstance(data, (dict, list)) and len(data) == 0)


class NangoClient:
    """Async HTTP client for the Nango proxy API."""

    def __init__(self, secret_key: str | None = None, base_url: str | None = None):
        self.secret_key = secret_key or settings.nango_secret_key
        self.base_url = (base_url or settings.nango_base_url).rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.connector_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        json_body: Any = None,
        headers: Dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a request with retry + rate-limit handling."""
        client = await self._get_client()

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = await client.request(
                    method, url, params=params, json=json_body, headers=headers
                )

                # Rate limited
                if resp.status_code == 429:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{MAX_RETRIES})"
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.HTTPStatusError as e:
                body = (
                    e.response.json()
                    if e.response.headers.get("content-type", "").startswith(
                        "application/json"
                    )
                    else {}
                )
                error = body.get("error", {}) if isinstance(body, dict) else {}
                error_msg = (
                    error.get("message", str(e))
                    if isinstance(error, dict)
                    else str(error)
                )

                if attempt < MAX_RETRIES and e.response.status_code >= 500:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(
                        f"Server error {e.response.status_code}. Retrying in {wait}s"
                    )
                    await asyncio.sleep(wait)
                    continue

                raise NangoAPIError(error_msg, e.response.status_code) from e

            except httpx.RequestError as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise NangoAPIError(
                    f"Connection failed after {MAX_RETRIES} retries: {e}"
                ) from e

        raise NangoAPIError("Max retries exhausted", 429)

    def _auth_headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise NangoAPIError("Nango secret key not configured")
        return {"Authorization": f"Bearer {self.secret_key}"}

    @staticmethod
    def _parse(resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # ── Proxy & Tokens ──

    async def proxy(
        self,
        provider_config_key: str,
        connection_id: str,
        endpoint: str,
        method: str = "GET",
        data: Any = None,
        headers: Dict[str, str] | None = None,
    ) -> FetchResult:
        """Call a provider endpoint through the Nango proxy."""
        request_headers = {
            **self._auth_headers(),
            "Connection-Id": connection_id,
            "Provider-Config-Key": provider_config_key,
            **(headers or {}),
        }
        path = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        resp = await self._request(
            method, f"{self.base_url}/proxy{path}", json_body=data, headers=request_headers
        )
        return FetchResult(data=self._parse(resp), status=resp.status_code)

    async def get_token(self, provider_config_key: str, connection_id: str) -> str:
        """Fetch the provider access token stored for a connection."""
        resp = await self._request(
            "GET",
            f"{self.base_url}/connection/{connection_id}",
            params={"provider_config_key": provider_config_key},
            headers=self._auth_headers(),
        )
        payload = self._parse(resp) or {}
        token = (payload.get("credentials") or {}).get("access_token", "")
        if not token:
            raise NangoAPIError("Failed to retrieve access token from Nango")
        return token

    # ── Universal Fetch ──

    async def fetch_data(
        self,
        integration_id: str,
        connection_id: str,
        endpoint: str,
        method: str = "GET",
        params: Dict[str, str] | None = None,
        body: Any = None,
    ) -> FetchResult:
        """Fetch raw data for a metric endpoint.

        Absolute URLs are called directly with the connection's token;
        relative paths go through the Nango proxy.
        """
        final_endpoint = resolve_endpoint(endpoint, params)
        final_body = resolve_body(body, params)

        if final_endpoint.startswith(("http://", "https://")):
            token = await self.get_token(integration_id, connection_id)
            resp = await self._request(
                method,
                final_endpoint,
                json_body=final_body,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
            )
            return FetchResult(data=self._parse(resp), status=resp.status_code)

        headers: Dict[str, str] = {}
        if "/graphql" in final_endpoint:
            # Linear rejects GraphQL requests without the CSRF preflight header
            headers["Content-Type"] = "application/json"
            headers["apollo-require-preflight"] = "true"

        result = await self.proxy(
            integration_id, connection_id, final_endpoint, method, final_body, headers
        )

        is_github_stats = integration_id == "github" and "/stats/" in final_endpoint
        if is_github_stats and (result.status == 202 or _is_empty(result.data)):
            for attempt, delay in enumerate(GITHUB_STATS_RETRY_DELAYS, 1):
                logger.info(
                    f"GitHub is computing statistics. Retry {attempt}/{len(GITHUB_STATS_RETRY_DELAYS)} in {delay}s",
                    extra={"endpoint": final_endpoint},
                )
                await asyncio.sleep(delay)
                result = await self.proxy(
                    integration_id, connection_id, final_endpoint, method, final_body
                )
                if result.status != 202 and not _is_empty(result.data):
                    break

        logger.info(
            f"Fetched {integration_id} data (status {result.status})",
            extra={"endpoint": final_endpoint, "status_code": result.status},
        )
        return result
