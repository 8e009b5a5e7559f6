from __future__ import annotations

from dataclasses import dataclass


class ThreadEngineError(Exception):
    """Base class for errors raised by the thread engine."""


class ValidationError(ThreadEngineError):
    pass


@dataclass
class TransportError(ThreadEngineError):
    message: str
    status_code: int | None = None

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (HTTP {self.status_code})"


class ProtocolError(ThreadEngineError):
    pass


class GenerationError(ThreadEngineError):
    pass


class GenerationInProgressError(ThreadEngineError):
    pass


class PersistenceError(ThreadEngineError):
    pass
