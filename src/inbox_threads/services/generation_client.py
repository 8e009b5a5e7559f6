from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from inbox_threads.services.errors import TransportError

logger = logging.getLogger(__name__)


class LoggingTransport(httpx.AsyncBaseTransport):
    def __init__(self, inner: httpx.AsyncBaseTransport, *, log: logging.Logger | None = None) -> None:
        self.inner = inner
        self.log = log or logger

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        started = time.monotonic()
        self.log.info(
            "Outbound generation request",
            extra={"event": "generation_request_sent", "method": request.method, "url": str(request.url)},
        )
        try:
            response = await self.inner.handle_async_request(request)
        except Exception as exc:
            self.log.warning(
                "Generation request failed before a response arrived",
                extra={"event": "generation_request_failed", "url": str(request.url), "error": repr(exc)},
            )
            raise
        self.log.info(
            "Generation response headers received",
            extra={
                "event": "generation_response_received",
                "url": str(request.url),
                "status_code": response.status_code,
                "elapsed_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return response

    async def aclose(self) -> None:
        await self.inner.aclose()


class GenerationClient:
    def __init__(
        self,
        endpoint_url: str,
        *,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.timeout_seconds = max(1.0, timeout_seconds)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        inner = self._transport or httpx.AsyncHTTPTransport()
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=LoggingTransport(inner))

    @asynccontextmanager
    async def stream_reply(self, conversation_id: str, requester_display_name: str) -> AsyncIterator[AsyncIterator[str]]:
        """Open the generation stream and yield its decoded text chunks.

        Leaving the context closes the response, which aborts the transfer.
        """
        if not self.endpoint_url:
            raise TransportError("generation endpoint is not configured")

        payload = {"conversationId": conversation_id, "requesterDisplayName": requester_display_name}
        async with self._client() as client:
            try:
                async with client.stream("POST", self.endpoint_url, json=payload) as response:
                    if not response.is_success:
                        await response.aread()
                        raise TransportError(
                            f"Failed to generate reply: {response.reason_phrase or 'error'}",
                            status_code=response.status_code,
                        )
                    if response.status_code == 204:
                        raise TransportError("No response body from AI generation", status_code=204)
                    yield response.aiter_text()
            except httpx.HTTPError as exc:
                raise TransportError(f"generation transport failure: {exc!r}") from exc
