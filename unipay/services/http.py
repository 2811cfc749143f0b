"""
Provider HTTP client - thin httpx wrapper shared by every adapter.

Normalizes transport failures into NetworkError and non-2xx responses into
GatewayApiError carrying the parsed provider body. Empty bodies (204) parse
to ``None`` instead of failing.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from structlog import get_logger

from unipay.config import DEFAULT_HTTP_TIMEOUT
from unipay.exceptions import GatewayApiError, NetworkError
from unipay.observability.metrics import track_provider_request

logger = get_logger(__name__)

ErrorDescriber = Callable[[Any], str | None]


@dataclass(frozen=True)
class HttpResponse:
    """Status plus parsed body (JSON, text, or None when empty)."""

    status_code: int
    body: Any
    headers: Mapping[str, str]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def parse_body(response: httpx.Response) -> Any:
    """Parse a response body, tolerating empty and non-JSON bodies."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class GatewayHttpClient:
    """
    HTTP client bound to one gateway's base URL.

    When no ``client`` is injected a short-lived ``httpx.AsyncClient`` is
    opened per request. Injecting one enables connection reuse and lets
    tests supply an ``httpx.MockTransport``.
    A ``timeout`` given here overrides the client's own timeout per request.
    """

    def __init__(
        self,
        gateway: str,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        describe_error: ErrorDescriber | None = None,
    ) -> None:
        self.gateway = gateway
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout
        self._describe_error = describe_error

    def url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}{path}"

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        with track_provider_request(self.gateway, method) as tracker:
            if self._timeout is not None:
                kwargs["timeout"] = self._timeout
            response = await client.request(method, url, **kwargs)
            tracker.set_status_code(response.status_code)
        return response

    async def request(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        json: Any = None,
        data: Any = None,
        params: Mapping[str, Any] | None = None,
        raise_for_status: bool = True,
        error_message: str | None = None,
    ) -> HttpResponse:
        """
        Send a request to the provider.

        Args:
            method: HTTP method
            path: Path relative to the base URL (or an absolute URL)
            headers: Request headers (auth included by the caller)
            json: JSON body
            data: Form body (dict or pre-encoded string)
            params: Query parameters
            raise_for_status: Raise GatewayApiError on non-2xx
            error_message: Fallback message when the body carries none

        Returns:
            HttpResponse with the parsed body

        Raises:
            NetworkError: On DNS, connect, timeout or read failures
            GatewayApiError: On non-2xx responses when raise_for_status
        """
        url = self.url(path)
        kwargs: dict[str, Any] = {"headers": dict(headers or {})}
        if json is not None:
            kwargs["json"] = json
        if data is not None:
            if isinstance(data, (str, bytes)):
                kwargs["content"] = data
            else:
                kwargs["data"] = data
        if params is not None:
            kwargs["params"] = params

        try:
            if self._client is not None:
                response = await self._send(self._client, method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT) as client:
                    response = await self._send(client, method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning(
                "gateway_network_error",
                gateway=self.gateway,
                method=method,
                path=path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise NetworkError(f"Failed to reach {self.gateway} API", exc) from exc

        body = parse_body(response)
        result = HttpResponse(
            status_code=response.status_code, body=body, headers=response.headers
        )

        if raise_for_status and not result.ok:
            described = self._describe_error(body) if self._describe_error else None
            message = (
                described
                or error_message
                or f"{self.gateway} API error ({response.status_code})"
            )
            logger.error(
                "gateway_api_error",
                gateway=self.gateway,
                method=method,
                path=path,
                status=response.status_code,
                message=message,
            )
            raise GatewayApiError(
                message,
                self.gateway,
                raw_error=body,
                http_status=response.status_code,
            )

        return result
