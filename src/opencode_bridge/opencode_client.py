"""OpenCode HTTP API clients.

Two API generations are exposed side by side. They share one HTTP transport
and a base URL, nothing else.
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

logger = logging.getLogger(__name__)


def _text_parts(text: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": text}]


class OpenCodeClient:
    """Client for OpenCode's session-oriented HTTP API."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=None)

    async def close(self):
        if not self.client.is_closed:
            await self.client.aclose()

    async def health_check(self) -> dict[str, Any]:
        """Check server health and version."""
        response = await self.client.get(f"{self.base_url}/global/health")
        response.raise_for_status()
        return response.json()

    # Session APIs
    async def list_sessions(self) -> list[dict[str, Any]]:
        """List all sessions."""
        response = await self.client.get(f"{self.base_url}/session")
        response.raise_for_status()
        return response.json()

    async def create_session(self, parent_id: Optional[str] = None, title: Optional[str] = None) -> dict[str, Any]:
        """Create a new session."""
        body: dict[str, Any] = {}
        if parent_id:
            body["parentID"] = parent_id
        if title:
            body["title"] = title
        response = await self.client.post(f"{self.base_url}/session", json=body)
        response.raise_for_status()
        return response.json()

    async def get_session(self, session_id: str) -> dict[str, Any]:
        response = await self.client.get(f"{self.base_url}/session/{session_id}")
        response.raise_for_status()
        return response.json()

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and all its data."""
        response = await self.client.delete(f"{self.base_url}/session/{session_id}")
        response.raise_for_status()
        return True

    async def abort_session(self, session_id: str) -> bool:
        """Abort a running session."""
        response = await self.client.post(f"{self.base_url}/session/{session_id}/abort")
        response.raise_for_status()
        return True

    async def get_session_status(self) -> dict[str, Any]:
        """Get session status for all sessions."""
        response = await self.client.get(f"{self.base_url}/session/status")
        response.raise_for_status()
        return response.json()

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> bool:
        """Answer a permission request with "once", "always" or "reject"."""
        resp = await self.client.post(
            f"{self.base_url}/session/{session_id}/permissions/{permission_id}",
            json={"response": response},
        )
        resp.raise_for_status()
        return True

    # Message APIs
    async def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """List messages in a session."""
        params = {}
        if limit:
            params["limit"] = limit
        response = await self.client.get(f"{self.base_url}/session/{session_id}/message", params=params)
        response.raise_for_status()
        return response.json()

    async def send_message(
        self,
        session_id: str,
        message: str,
        provider_id: Optional[str] = None,
        model_id: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> dict[str, Any]:
        """Send a message and wait for the full response."""
        body: dict[str, Any] = {"parts": _text_parts(message)}
        if provider_id and model_id:
            body["model"] = {"providerID": provider_id, "modelID": model_id}
        if agent:
            body["agent"] = agent

        response = await self.client.post(f"{self.base_url}/session/{session_id}/message", json=body)
        if response.status_code == 204:
            return {"info": {}, "parts": []}
        response.raise_for_status()
        return response.json()

    async def send_prompt_async(self, session_id: str, prompt: str) -> None:
        """Send a prompt without waiting for the reply (204 on success)."""
        response = await self.client.post(
            f"{self.base_url}/session/{session_id}/prompt_async",
            json={"parts": _text_parts(prompt)},
        )
        response.raise_for_status()

    async def is_server_running(self) -> bool:
        """Check if OpenCode server is answering."""
        try:
            response = await self.client.get(f"{self.base_url}/session")
            return response.status_code < 500
        except httpx.HTTPError:
            return False


class OpenCodeClientV2:
    """Client for OpenCode's request-oriented API (questions, permissions, events)."""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=None)

    async def close(self):
        if not self.client.is_closed:
            await self.client.aclose()

    # Question APIs
    async def list_questions(self) -> list[dict[str, Any]]:
        """List pending question requests."""
        response = await self.client.get(f"{self.base_url}/question")
        response.raise_for_status()
        return response.json()

    async def reply_question(self, request_id: str, answers: list[list[str]]) -> bool:
        """Answer a question request, one list of labels per question."""
        response = await self.client.post(
            f"{self.base_url}/question/{request_id}/reply",
            json={"answers": answers},
        )
        response.raise_for_status()
        return True

    async def reject_question(self, request_id: str) -> bool:
        response = await self.client.post(f"{self.base_url}/question/{request_id}/reject")
        response.raise_for_status()
        return True

    # Permission APIs
    async def list_permissions(self) -> list[dict[str, Any]]:
        """List pending permission requests."""
        response = await self.client.get(f"{self.base_url}/permission")
        response.raise_for_status()
        return response.json()

    async def reply_permission(self, request_id: str, reply: str, message: Optional[str] = None) -> bool:
        """Reply "once", "always" or "reject" to a permission request."""
        body: dict[str, Any] = {"reply": reply}
        if message:
            body["message"] = message
        response = await self.client.post(f"{self.base_url}/permission/{request_id}/reply", json=body)
        response.raise_for_status()
        return True

    # Session APIs
    async def prompt_async(
        self,
        session_id: str,
        parts: list[dict[str, Any]],
        agent: Optional[str] = None,
        model: Optional[dict[str, str]] = None,
    ) -> None:
        """Queue a prompt made of arbitrary parts."""
        body: dict[str, Any] = {"parts": parts}
        if agent:
            body["agent"] = agent
        if model:
            body["model"] = model
        response = await self.client.post(f"{self.base_url}/session/{session_id}/prompt_async", json=body)
        response.raise_for_status()

    async def subscribe_events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield server-sent events until the server closes the stream."""
        async with self.client.stream("GET", f"{self.base_url}/event") as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = line[5:].strip()
                if not payload:
                    continue
                try:
                    yield json.loads(payload)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed event: {payload[:200]}")


def build_clients(base_url: str) -> tuple[OpenCodeClient, OpenCodeClientV2]:
    """Create both API clients for a ready server.

    Request timeouts are disabled because the server holds long-lived
    operations open.
    """
    transport = httpx.AsyncClient(timeout=None)
    return OpenCodeClient(base_url, transport), OpenCodeClientV2(base_url, transport)
