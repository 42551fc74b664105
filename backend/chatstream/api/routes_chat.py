"""Chat endpoints: message submission, token streaming, reset and history."""

import logging
import uuid
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..chat.orchestrator import StreamOrchestrator
from ..chat.services import ChatServices, get_chat_services
from ..chat.turns import dump_turns, visible_turns
from ..core import sse
from ..core.config import settings
from ..core.errors import ConversationBusyError, ValidationError
from ..core.rate_limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter()


class ChatMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    is_temporary: bool = Field(default=False, alias="isTemporary")


class ChatMessageResponse(BaseModel):
    success: bool = True
    conversation_id: str = Field(serialization_alias="conversationId")


class ChatResetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    was_temporary: bool = Field(default=False, alias="wasTemporary")


def _optional_user_id(request: Request) -> uuid.UUID | None:
    raw_user_id = getattr(request.state, "user_id", None)
    if not raw_user_id:
        return None
    try:
        return uuid.UUID(str(raw_user_id))
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session") from exc


async def _single_event(event: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
    yield event


@router.post("/message", summary="Append a user message to the active conversation")
@limiter.limit(settings.RATE_LIMIT_CHAT_MESSAGE)
async def chat_message(
    request: Request,
    payload: ChatMessageRequest,
    services: ChatServices = Depends(get_chat_services),
) -> Dict[str, Any]:
    """Bind a conversation if needed and record the user's turn."""

    owner_id = _optional_user_id(request)
    context = services.binder.resolve_active(
        request.session, temporary=payload.is_temporary, owner_id=owner_id
    )
    if services.orchestrator.is_streaming(context.conversation_id):
        raise ConversationBusyError(context.conversation_id)

    await services.coordinator.append_user_turn(context, payload.message)
    response = ChatMessageResponse(conversation_id=context.conversation_id)
    return response.model_dump(by_alias=True)


@router.api_route("/stream", methods=["GET", "POST"], summary="Stream the assistant reply over SSE")
@limiter.limit(settings.RATE_LIMIT_CHAT_STREAM)
async def chat_stream(
    request: Request,
    services: ChatServices = Depends(get_chat_services),
) -> StreamingResponse:
    """Generate a reply for the session's conversation and stream it token by token."""

    owner_id = _optional_user_id(request)
    context = services.binder.current(request.session, owner_id)
    if context is None:
        logger.warning("Stream requested without a bound conversation")
        return sse.stream(_single_event({"error": "No active conversation"}))

    orchestrator: StreamOrchestrator = services.orchestrator
    turns = await services.coordinator.current_turns(context)
    try:
        run = orchestrator.open(context, turns)
    except ValidationError as exc:
        logger.warning("Cannot stream conversation %s: %s", context.conversation_id, exc.message)
        return sse.stream(_single_event({"error": exc.message}))
    return sse.stream(run.events())


@router.post("/reset", summary="Finalize the active conversation and start a new one")
async def chat_reset(
    request: Request,
    payload: ChatResetRequest | None = None,
    services: ChatServices = Depends(get_chat_services),
) -> Dict[str, Any]:
    was_temporary = payload.was_temporary if payload is not None else False
    new_id = await services.binder.reset(
        request.session, was_temporary=was_temporary, owner_id=_optional_user_id(request)
    )
    return {"success": True, "newConversationId": new_id}


@router.get("/history", summary="List past conversations grouped by recency")
async def chat_history(
    request: Request,
    services: ChatServices = Depends(get_chat_services),
) -> Dict[str, Any]:
    owner_id = _optional_user_id(request)
    active = services.binder.current(request.session, owner_id)
    active_id = active.conversation_id if active is not None and not active.temporary else None

    grouped = await services.history.list_for(owner_id, active_id=active_id)
    return {
        "success": True,
        "history": {name: [entry.as_dict() for entry in entries] for name, entries in grouped.items()},
    }


@router.get("/conversations/{conversation_id}", summary="Load a conversation and make it active")
async def chat_conversation(
    conversation_id: str,
    request: Request,
    services: ChatServices = Depends(get_chat_services),
) -> Dict[str, Any]:
    """Return the visible turns of a conversation and rebind the session to it."""

    owner_id = _optional_user_id(request)
    turns = await services.coordinator.load(conversation_id, owner_id)

    bound = services.binder.current(request.session, owner_id)
    temporary = bound is not None and bound.conversation_id == conversation_id and bound.temporary
    services.binder.bind(request.session, conversation_id, temporary=temporary, owner_id=owner_id)

    return {
        "success": True,
        "conversationId": conversation_id,
        "chatHistory": dump_turns(visible_turns(turns)),
    }
