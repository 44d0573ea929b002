"""
External Sync Sink

Destination for queued actions when the runtime runs in forward mode (in
front of an upstream LMS). Implementations must be idempotent per action:
the processor may deliver an entry more than once when a response is lost.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from app.exceptions import SinkError

logger = logging.getLogger(__name__)


class ExternalSyncSink(ABC):
    """Receives initialize / commit / terminate actions for one session."""

    @abstractmethod
    async def apply_initialize(
        self, session_id: str, package_id: str, payload: Dict[str, Any]
    ) -> None:
        ...

    @abstractmethod
    async def apply_commit(
        self, session_id: str, package_id: str, payload: Dict[str, Any]
    ) -> None:
        ...

    @abstractmethod
    async def apply_terminate(
        self, session_id: str, package_id: str, payload: Dict[str, Any]
    ) -> None:
        ...

    async def aclose(self) -> None:
        """Release transport resources; no-op by default."""


class HttpSyncSink(ExternalSyncSink):
    """POSTs each action as JSON to ``<base_url>/<action>``.

    Any transport failure or non-2xx answer surfaces as ``SinkError`` so the
    processor can count a retry.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def _post(
        self, action: str, session_id: str, package_id: str, payload: Dict[str, Any]
    ) -> None:
        body = {
            "sessionId": session_id,
            "packageId": package_id,
            "action": action,
            "data": payload or {},
        }
        try:
            response = await self._client.post(f"/{action}", json=body)
        except httpx.HTTPError as e:
            raise SinkError(
                f"Sync sink unreachable for {action}: {e}", endpoint=action
            ) from e
        if response.is_error:
            raise SinkError(
                f"Sync sink rejected {action} for session {session_id} "
                f"with HTTP {response.status_code}",
                status_code=response.status_code,
                endpoint=action,
            )
        logger.debug("Forwarded %s for session %s", action, session_id)

    async def apply_initialize(self, session_id, package_id, payload):
        await self._post("initialize", session_id, package_id, payload)

    async def apply_commit(self, session_id, package_id, payload):
        await self._post("commit", session_id, package_id, payload)

    async def apply_terminate(self, session_id, package_id, payload):
        await self._post("terminate", session_id, package_id, payload)

    async def aclose(self) -> None:
        await self._client.aclose()
