"""Assemble a streamed AI reply into an editable draft.

Each conversation owns one ``GenerationSession``. A session runs at most one
stream at a time, accumulates text in its ``DraftBuffer`` and publishes every
change to an optional listener. ``cancel()`` aborts the transport right away
and keeps whatever text has arrived.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Iterable, Optional

from inbox_threads.services.display_name import DEFAULT_MIN_LENGTH, DEFAULT_RESERVED_NAMES, validate_display_name
from inbox_threads.services.errors import (
    GenerationError,
    GenerationInProgressError,
    ProtocolError,
    TransportError,
)
from inbox_threads.services.notifications import schedule_notification
from inbox_threads.services.stream_frames import BlockBuffer, FrameKind, StreamFrame, decode_block

if TYPE_CHECKING:
    from inbox_threads.services.generation_client import GenerationClient
    from inbox_threads.services.notifications import NotificationService

logger = logging.getLogger(__name__)

DraftListener = Callable[[str], None]


class SessionState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


ACTIVE_STATES = frozenset({SessionState.REQUESTING, SessionState.STREAMING})
TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ERRORED, SessionState.CANCELLED})


@dataclass
class DraftBuffer:
    text: str = ""
    in_progress: bool = False
    corrections: list[dict[str, Any]] = field(default_factory=list)

    def append(self, chunk: str) -> None:
        self.text += chunk

    def replace(self, full_text: str) -> None:
        self.text = full_text


class GenerationSession:
    def __init__(
        self,
        conversation_id: str,
        client: "GenerationClient",
        *,
        notifier: Optional["NotificationService"] = None,
        min_name_length: int = DEFAULT_MIN_LENGTH,
        reserved_names: Iterable[str] = DEFAULT_RESERVED_NAMES,
    ) -> None:
        self.conversation_id = conversation_id
        self.client = client
        self.notifier = notifier
        self.min_name_length = min_name_length
        self.reserved_names = tuple(reserved_names)
        self.state = SessionState.IDLE
        self.buffer = DraftBuffer()
        self.error: Optional[str] = None
        self._listener: Optional[DraftListener] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def text(self) -> str:
        return self.buffer.text

    @property
    def in_progress(self) -> bool:
        return self.buffer.in_progress

    def snapshot(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "state": self.state.value,
            "in_progress": self.buffer.in_progress,
            "text": self.buffer.text,
            "error": self.error,
        }

    @asynccontextmanager
    async def _claim(self) -> AsyncIterator[None]:
        if self.buffer.in_progress:
            raise GenerationInProgressError(
                f"a reply is already being generated for conversation {self.conversation_id}"
            )
        self.buffer.in_progress = True
        try:
            yield
        finally:
            self.buffer.in_progress = False
            self._stream_task = None

    async def generate(self, requester_display_name: str | None, *, on_update: Optional[DraftListener] = None) -> str:
        """Stream a new draft; return the text held when the session ends.

        Raises ``ValidationError`` before any request when the display name
        is unusable, ``TransportError`` or ``GenerationError`` on failure.
        Cancellation is not an error: the partial text is returned.
        """
        display_name = validate_display_name(
            requester_display_name,
            min_length=self.min_name_length,
            reserved_names=self.reserved_names,
        )

        failure: Optional[Exception] = None
        async with self._claim():
            self.buffer.text = ""
            self.buffer.corrections = []
            self.error = None
            self._cancel_requested = False
            self._listener = on_update
            self.state = SessionState.REQUESTING
            self._publish()

            self._stream_task = asyncio.create_task(self._consume(display_name))
            try:
                await self._stream_task
            except asyncio.CancelledError:
                if not self._cancel_requested:
                    self._stream_task.cancel()
                    self.state = SessionState.CANCELLED
                    raise
            except (TransportError, GenerationError) as exc:
                failure = exc
                self.state = SessionState.ERRORED
                self.error = str(exc)
                logger.error(
                    "Reply generation failed",
                    extra={"event": "generation_errored", "conversation_id": self.conversation_id, "error": repr(exc)},
                )
            finally:
                self._listener = None

            if failure is None and self._cancel_requested:
                self.state = SessionState.CANCELLED
            elif failure is None:
                self.state = SessionState.COMPLETED
                logger.info(
                    "Reply generation completed",
                    extra={
                        "event": "generation_completed",
                        "conversation_id": self.conversation_id,
                        "characters": len(self.buffer.text),
                    },
                )

        # The claim is released before the notification is handed off.
        self._notify_terminal()
        if failure is not None:
            raise failure
        return self.buffer.text

    def cancel(self) -> bool:
        """Abort the running stream. Returns False when nothing was running."""
        if self._cancel_requested or self.state not in ACTIVE_STATES:
            return False
        self._cancel_requested = True
        self.state = SessionState.CANCELLED
        if self._stream_task is not None and not self._stream_task.done():
            self._stream_task.cancel()
        logger.info(
            "Reply generation cancelled",
            extra={
                "event": "generation_cancelled",
                "conversation_id": self.conversation_id,
                "characters": len(self.buffer.text),
            },
        )
        return True

    async def _consume(self, display_name: str) -> None:
        if self._cancel_requested:
            return
        blocks = BlockBuffer()
        async with self.client.stream_reply(self.conversation_id, display_name) as chunks:
            if self._cancel_requested:
                return
            self.state = SessionState.STREAMING
            async for chunk in chunks:
                if not self._apply_blocks(blocks.feed(chunk)):
                    return
            self._apply_blocks(blocks.flush())

    def _apply_blocks(self, raw_blocks: list[str]) -> bool:
        for raw in raw_blocks:
            try:
                frames = decode_block(raw)
            except ProtocolError as exc:
                logger.warning(
                    "Skipping malformed stream frame",
                    extra={"event": "generation_frame_skipped", "conversation_id": self.conversation_id, "error": str(exc)},
                )
                continue
            for frame in frames:
                if self._cancel_requested:
                    return False
                self._apply_frame(frame)
        return not self._cancel_requested

    def _apply_frame(self, frame: StreamFrame) -> None:
        if frame.kind is FrameKind.CONTENT:
            self.buffer.append(frame.payload)
            self._publish()
        elif frame.kind is FrameKind.FULL_REPLACEMENT:
            self.buffer.replace(frame.payload)
            self._publish()
        elif frame.kind is FrameKind.ADMIN_NAME_CORRECTION:
            # Observed only; already-buffered text is left as it is.
            self.buffer.corrections.append(frame.payload)
            logger.info(
                "Backend corrected the admin name",
                extra={
                    "event": "generation_admin_name_corrected",
                    "conversation_id": self.conversation_id,
                    "original": frame.payload.get("original"),
                    "replacement": frame.payload.get("replacement"),
                },
            )
        elif frame.kind is FrameKind.ERROR:
            raise GenerationError(frame.payload)
        elif frame.kind is FrameKind.DONE:
            logger.debug("Backend reported generation done", extra={"event": "generation_done_event"})

    def _publish(self) -> None:
        if self._listener is not None:
            self._listener(self.buffer.text)

    def _notify_terminal(self) -> None:
        if self.notifier is None:
            return
        schedule_notification(
            self.notifier,
            event_type=f"generation_{self.state.value}",
            summary=f"Reply generation {self.state.value}",
            context={"conversation_id": self.conversation_id, "characters": len(self.buffer.text)},
        )


class SessionRegistry:
    def __init__(self, factory: Callable[[str], GenerationSession], *, max_sessions: int = 256) -> None:
        self._factory = factory
        self.max_sessions = max(1, max_sessions)
        self._sessions: OrderedDict[str, GenerationSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, conversation_id: str) -> GenerationSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = self._factory(conversation_id)
            self._sessions[conversation_id] = session
            self._evict(keep=conversation_id)
        self._sessions.move_to_end(conversation_id)
        return session

    def find(self, conversation_id: str) -> Optional[GenerationSession]:
        return self._sessions.get(conversation_id)

    def _evict(self, *, keep: str) -> None:
        excess = len(self._sessions) - self.max_sessions
        if excess <= 0:
            return
        idle = [cid for cid, session in self._sessions.items() if cid != keep and not session.in_progress]
        for conversation_id in idle[:excess]:
            del self._sessions[conversation_id]
            logger.debug(
                "Evicted generation session",
                extra={"event": "generation_session_evicted", "conversation_id": conversation_id},
            )
