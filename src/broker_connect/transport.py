"""Backend HTTP Transport.

Thin async wrapper over ``httpx.AsyncClient`` for the broker backend:
a bounded-timeout health probe plus JSON GET/POST helpers that convert
transport failures into ``UnreachableBackendError``.
"""

from typing import Any, Optional
import logging

import httpx

from src.broker_connect.exceptions import UnreachableBackendError

logger = logging.getLogger(__name__)


def is_json_response(response: httpx.Response) -> bool:
    """Check whether a response declares a JSON content type."""
    return "application/json" in response.headers.get("content-type", "")


def json_body(response: httpx.Response) -> Any:
    """Decode a JSON response body.

    Raises:
        ValueError: If the content type is not JSON or the body does not decode.
    """
    if not is_json_response(response):
        content_type = response.headers.get("content-type", "<none>")
        raise ValueError(f"Expected JSON response, got {content_type}")
    return response.json()


def error_text(response: httpx.Response) -> str:
    """Extract the server's error message from a response."""
    if is_json_response(response):
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
    return response.text.strip() or response.reason_phrase


class BackendClient:
    """Async client for the broker backend.

    Example:
        backend = BackendClient("http://localhost:3001")
        if await backend.check_health():
            resp = await backend.get("/api/brokers/connections/1")
    """

    def __init__(
        self,
        base_url: str,
        health_path: str = "/health",
        health_timeout: float = 3.0,
        request_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._health_path = health_path
        self._health_timeout = health_timeout
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=request_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def check_health(self) -> bool:
        """Probe the backend health endpoint within the health timeout."""
        try:
            resp = await self._client.get(self._health_path, timeout=self._health_timeout)
        except httpx.TimeoutException:
            logger.warning("Server health check timed out")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Server health check failed: {e}")
            return False
        return resp.is_success

    async def ensure_available(self, broker_id: Optional[str] = None) -> None:
        """Raise UnreachableBackendError unless the health probe passes."""
        if not await self.check_health():
            raise UnreachableBackendError(broker_id=broker_id)

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise UnreachableBackendError(f"GET {path} failed: {e}") from e

    async def post(self, path: str, payload: Optional[dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self._client.post(path, json=payload or {})
        except httpx.HTTPError as e:
            raise UnreachableBackendError(f"POST {path} failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
