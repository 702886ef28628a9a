"""HTTP client for the opencode agent runtime (`opencode serve`).

Thin async wrapper around the runtime's REST surface plus the raw line stream
behind its event endpoint. Decoding of stream lines lives in
mneme.core.events; reconnect policy lives in mneme.core.stream.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from mneme.core.utils import parse_model_spec

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Runtime answered with a non-success status."""

    def __init__(self, method: str, path: str, status_code: int, body: str = ""):
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body
        super().__init__(f"opencode API {method} {path}: {status_code} {body}".rstrip())


class ApiConnectionError(Exception):
    """Runtime is unreachable (refused, reset, timed out)."""

    pass


def build_prompt_body(text: str, model: str | None = None, agent: str | None = None) -> dict[str, Any]:
    """Request body for a prompt bound to one model and one agent.

    The binding travels with every message; the session never remembers it.
    """
    body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
    spec = parse_model_spec(model)
    if spec is not None:
        body["model"] = spec
    if agent:
        body["agent"] = agent
    return body


class OpencodeClient:
    """Async client for one runtime base URL.

    USAGE:
        async with OpencodeClient("http://127.0.0.1:4097") as client:
            session = await client.create_session("mneme auto")
            await client.prompt_async(session["id"], build_prompt_body("hi"))
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> OpencodeClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    async def request(self, method: str, path: str, body: Any = None) -> Any:
        """Send one request and decode the response.

        Returns parsed JSON, text for other content types, or None for 204.

        Raises:
            ApiError: Non-2xx response
            ApiConnectionError: Transport failure
        """
        try:
            response = await self._http.request(method, path, json=body)
        except httpx.TransportError as e:
            raise ApiConnectionError(f"{method} {path}: {e}") from e

        if response.status_code >= 400:
            raise ApiError(method, path, response.status_code, response.text[:500])
        if response.status_code == 204 or not response.content:
            return None
        if "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return response.text

    # --- Health & config ---

    async def health(self) -> dict[str, Any] | None:
        return await self.request("GET", "/global/health")

    async def providers(self) -> dict[str, Any]:
        """Provider catalogue: {"providers": [{"id", "models": {...}}], "default": {...}}."""
        return await self.request("GET", "/config/providers") or {}

    # --- Sessions ---

    async def list_sessions(self) -> list[dict[str, Any]]:
        return await self.request("GET", "/session") or []

    async def create_session(self, title: str | None = None) -> dict[str, Any]:
        body = {"title": title} if title else {}
        return await self.request("POST", "/session", body)

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/session/{session_id}")

    async def delete_session(self, session_id: str) -> None:
        await self.request("DELETE", f"/session/{session_id}")

    async def messages(self, session_id: str) -> list[dict[str, Any]]:
        """Ordered message history: [{"info": {...}, "parts": [...]}, ...]."""
        return await self.request("GET", f"/session/{session_id}/message") or []

    async def session_status(self) -> dict[str, Any]:
        """Status of every session keyed by id: {id: {"type": "busy"|"idle"|...}}."""
        return await self.request("GET", "/session/status") or {}

    async def abort(self, session_id: str) -> Any:
        return await self.request("POST", f"/session/{session_id}/abort")

    async def prompt(self, session_id: str, body: dict[str, Any]) -> Any:
        """Send a prompt and wait for the full response."""
        return await self.request("POST", f"/session/{session_id}/message", body)

    async def prompt_async(self, session_id: str, body: dict[str, Any]) -> None:
        """Send a prompt; the runtime answers immediately and streams progress."""
        await self.request("POST", f"/session/{session_id}/prompt_async", body)

    # --- Events ---

    async def stream_lines(self, path: str = "/event") -> AsyncIterator[str]:
        """Yield raw lines from the event endpoint until the server closes it.

        Raises:
            ApiError: Subscription refused
            ApiConnectionError: Transport failure while connecting or reading
        """
        timeout = httpx.Timeout(self._http.timeout.connect, read=None)
        try:
            async with self._http.stream(
                "GET", path, headers={"Accept": "text/event-stream"}, timeout=timeout
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ApiError("GET", path, response.status_code, response.text[:500])
                async for line in response.aiter_lines():
                    yield line
        except httpx.TransportError as e:
            raise ApiConnectionError(f"event stream {path}: {e}") from e
