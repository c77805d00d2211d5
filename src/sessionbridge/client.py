"""HTTP client for a running sessionbridge server.

Thin async wrapper over the control-plane endpoints, used by the CLI.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class BridgeClient:
    """Talks to the sessionbridge HTTP endpoint.

    Example usage::

        async with BridgeClient("http://localhost:8775") as client:
            session = await client.create_session(kind="local")
            result = await client.exec(session["sessionId"], "echo hi")
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8775",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        """Create the HTTP client and verify the server is reachable."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        try:
            resp = await self._client.get("/health")
            resp.raise_for_status()
            logger.info("Connected to sessionbridge at %s", self._base_url)
        except Exception as e:
            await self._client.aclose()
            self._client = None
            raise BridgeClientError(f"Failed to connect to {self._base_url}: {e}") from e

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from sessionbridge")

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def create_session(
        self,
        kind: str = "local",
        target: str | None = None,
        label: str | None = None,
        credentials: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": kind}
        if target:
            payload["target"] = target
        if label:
            payload["label"] = label
        if credentials:
            payload["credentials"] = credentials
        return await self._request("POST", "/session/create", payload)

    async def exec(
        self, session_id: str, command: str, timeout_ms: int | None = None
    ) -> dict[str, Any]:
        """Run a command. Failed, timed-out and cancelled runs are returned, not raised."""
        payload: dict[str, Any] = {"command": command}
        if timeout_ms:
            payload["timeout"] = timeout_ms
        return await self._request("POST", f"/session/{session_id}/exec", payload, allow=(500,))

    async def cancel(self, session_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/session/{session_id}/cancel")

    async def list_sessions(self) -> dict[str, Any]:
        return await self._request("GET", "/sessions")

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/session/{session_id}")

    async def rename(self, session_id: str, label: str) -> dict[str, Any]:
        return await self._request("PATCH", f"/session/{session_id}", {"label": label})

    async def close_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/session/{session_id}")

    async def close_all(self) -> dict[str, Any]:
        return await self._request("DELETE", "/sessions/all")

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        allow: tuple[int, ...] = (),
    ) -> dict[str, Any]:
        if self._client is None:
            raise BridgeClientError("Not connected to server")
        try:
            resp = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise BridgeClientError(f"HTTP request to {path} failed: {e}") from e
        if resp.is_success or resp.status_code in allow:
            return resp.json()
        try:
            detail = resp.json().get("error") or resp.text
        except ValueError:
            detail = resp.text
        raise BridgeClientError(f"{method} {path} -> {resp.status_code}: {detail}", status_code=resp.status_code)

    async def __aenter__(self) -> BridgeClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        await self.disconnect()


class BridgeClientError(Exception):
    """Raised when a request to the server fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
