import hmac
import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from inbox_threads.config import get_settings
from inbox_threads.services.display_name import validate_display_name
from inbox_threads.services.errors import (
    GenerationError,
    GenerationInProgressError,
    PersistenceError,
    TransportError,
    ValidationError,
)
from inbox_threads.services.generation_client import GenerationClient
from inbox_threads.services.logging_config import configure_logging
from inbox_threads.services.notifications import NotificationService, schedule_notification
from inbox_threads.services.reply_service import record_assignment, record_tag_change, send_reply
from inbox_threads.services.store import Store
from inbox_threads.services.stream_assembler import GenerationSession, SessionRegistry
from inbox_threads.services.thread_view import build_thread_view
from inbox_threads.webhooks.inbound_email import handle_inbound_email

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

store = Store(settings.database_file, mail_domain=settings.mail_domain)
notifier = NotificationService(settings)
generation_client = GenerationClient(
    settings.generation_endpoint_url,
    timeout_seconds=settings.generation_timeout_seconds,
)
sessions = SessionRegistry(
    lambda conversation_id: GenerationSession(
        conversation_id,
        generation_client,
        notifier=notifier,
        min_name_length=settings.display_name_min_length,
        reserved_names=settings.reserved_display_names,
    ),
    max_sessions=settings.draft_session_limit,
)

app = FastAPI(title="Inbox Thread Engine", version="0.1.0")


class ConversationIn(BaseModel):
    requester_email: str
    requester_name: str = ""
    message: str


class ReplyIn(BaseModel):
    content: str
    sender_email: str


class AssignmentIn(BaseModel):
    assigned_to: Optional[str] = None
    sender_email: Optional[str] = None


class TagChangeIn(BaseModel):
    tag_id: Optional[str] = None
    old_tag_id: Optional[str] = None
    sender_email: Optional[str] = None


class DraftIn(BaseModel):
    requester_display_name: Optional[str] = None


def _require_conversation(conversation_id: str) -> None:
    if store.get_conversation(conversation_id) is None:
        raise HTTPException(status_code=404, detail="conversation not found")


@app.on_event("startup")
def startup() -> None:
    store.init_db()
    logger.info("Application startup complete", extra={"event": "startup_complete"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "env": settings.app_env}


@app.post("/conversations")
def create_conversation(body: ConversationIn) -> JSONResponse:
    conversation = store.create_conversation(body.requester_email, body.requester_name, body.message)
    return JSONResponse(conversation.to_dict(), status_code=201)


@app.get("/conversations/{conversation_id}/thread")
def get_thread(conversation_id: str) -> JSONResponse:
    _require_conversation(conversation_id)
    return JSONResponse({"conversation_id": conversation_id, "items": build_thread_view(store.list_replies(conversation_id))})


@app.post("/conversations/{conversation_id}/replies")
async def post_reply(conversation_id: str, body: ReplyIn) -> JSONResponse:
    _require_conversation(conversation_id)
    try:
        record = await send_reply(store, conversation_id, body.content, sender_email=body.sender_email, notifier=notifier)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except PersistenceError as exc:
        logger.error("Reply could not be stored", extra={"event": "reply_store_failed", "error": repr(exc)})
        raise HTTPException(status_code=500, detail="reply could not be saved") from exc
    return JSONResponse(record.to_dict(), status_code=201)


@app.post("/conversations/{conversation_id}/events/assignment")
def post_assignment(conversation_id: str, body: AssignmentIn) -> JSONResponse:
    _require_conversation(conversation_id)
    record = record_assignment(store, conversation_id, assigned_to=body.assigned_to, sender_email=body.sender_email)
    return JSONResponse(record.to_dict(), status_code=201)


@app.post("/conversations/{conversation_id}/events/tag")
def post_tag_change(conversation_id: str, body: TagChangeIn) -> JSONResponse:
    _require_conversation(conversation_id)
    record = record_tag_change(
        store,
        conversation_id,
        tag_id=body.tag_id,
        old_tag_id=body.old_tag_id,
        sender_email=body.sender_email,
    )
    return JSONResponse(record.to_dict(), status_code=201)


@app.post("/conversations/{conversation_id}/draft")
async def generate_draft(conversation_id: str, body: DraftIn) -> JSONResponse:
    _require_conversation(conversation_id)
    try:
        validate_display_name(
            body.requester_display_name,
            min_length=settings.display_name_min_length,
            reserved_names=settings.reserved_display_names,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    session = sessions.get(conversation_id)
    try:
        await session.generate(body.requester_display_name)
    except GenerationInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (TransportError, GenerationError):
        return JSONResponse(session.snapshot(), status_code=502)
    return JSONResponse(session.snapshot())


@app.get("/conversations/{conversation_id}/draft")
def get_draft(conversation_id: str) -> JSONResponse:
    session = sessions.find(conversation_id)
    if session is None:
        raise HTTPException(status_code=404, detail="no draft for this conversation")
    return JSONResponse(session.snapshot())


@app.post("/conversations/{conversation_id}/draft/cancel")
def cancel_draft(conversation_id: str) -> JSONResponse:
    session = sessions.find(conversation_id)
    if session is None:
        raise HTTPException(status_code=404, detail="no draft for this conversation")
    cancelled = session.cancel()
    return JSONResponse({"cancelled": cancelled, **session.snapshot()})


@app.post("/webhooks/inbound-email")
async def inbound_email_webhook(request: Request, x_inbound_secret: str = Header(default="")) -> JSONResponse:
    if settings.inbound_webhook_secret and not hmac.compare_digest(settings.inbound_webhook_secret, x_inbound_secret):
        logger.warning("Rejected inbound email webhook secret", extra={"event": "inbound_webhook_unauthorized"})
        raise HTTPException(status_code=401, detail="invalid webhook secret")

    try:
        payload = await request.json()
    except Exception as exc:
        logger.warning("Invalid inbound email payload", extra={"event": "inbound_webhook_invalid_json"})
        raise HTTPException(status_code=400, detail="invalid JSON payload") from exc

    try:
        result = await handle_inbound_email(payload, settings, store, notifier)
    except PersistenceError as exc:
        schedule_notification(
            notifier,
            event_type="inbound_processing_error",
            summary="Inbound email reply could not be stored",
            context={"error": repr(exc)},
        )
        raise HTTPException(status_code=500, detail="inbound email processing error") from exc

    logger.info("Inbound email processed", extra={"event": "inbound_webhook_processed", "result": result})
    if result["status"] == "rejected":
        return JSONResponse(result, status_code=400)
    if result["status"] == "not_found":
        return JSONResponse(result, status_code=404)
    return JSONResponse(result)
