from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from inbox_threads.config import get_settings
from inbox_threads.services.errors import GenerationError, TransportError, ValidationError
from inbox_threads.services.generation_client import GenerationClient
from inbox_threads.services.logging_config import configure_logging
from inbox_threads.services.stream_assembler import GenerationSession, SessionState

EXIT_CODES = {
    SessionState.COMPLETED: 0,
    SessionState.ERRORED: 1,
    SessionState.CANCELLED: 130,
}


class _Printer:
    """Write only the part of the draft that has not been printed yet."""

    def __init__(self) -> None:
        self.shown = ""

    def __call__(self, text: str) -> None:
        if text.startswith(self.shown):
            sys.stdout.write(text[len(self.shown) :])
        else:
            sys.stdout.write("\n--- draft replaced ---\n" + text)
        sys.stdout.flush()
        self.shown = text


async def _run(conversation_id: str, requester: str) -> tuple[int, dict[str, Any]]:
    settings = get_settings()
    configure_logging(settings.log_level)

    session = GenerationSession(
        conversation_id,
        GenerationClient(settings.generation_endpoint_url, timeout_seconds=settings.generation_timeout_seconds),
        min_name_length=settings.display_name_min_length,
        reserved_names=settings.reserved_display_names,
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel)
    except NotImplementedError:
        pass

    try:
        await session.generate(requester, on_update=_Printer())
    except ValidationError as exc:
        return 2, {"state": SessionState.IDLE.value, "error": str(exc)}
    except (TransportError, GenerationError) as exc:
        return EXIT_CODES[SessionState.ERRORED], {**session.snapshot(), "error": str(exc)}
    finally:
        sys.stdout.write("\n")

    return EXIT_CODES.get(session.state, 1), session.snapshot()


def main() -> int:
    parser = argparse.ArgumentParser(description="Stream an AI reply draft for a conversation to stdout.")
    parser.add_argument("--conversation-id", required=True, help="Conversation to draft a reply for.")
    parser.add_argument("--requester", required=True, help="Display name used to sign the reply.")
    parser.add_argument("--json", action="store_true", help="Print the final session snapshot as JSON.")
    args = parser.parse_args()

    code, payload = asyncio.run(_run(args.conversation_id, args.requester))
    if args.json or code != 0:
        print(json.dumps(payload, indent=2, sort_keys=True), file=sys.stderr if code else sys.stdout)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
