"""Chat router providing the streaming turn endpoint and conversation management.

This module provides:
    - POST   /api/chat: Send a user turn, stream the assistant reply
    - DELETE /api/chat?id=...|?deleteAll=true: Delete one or all conversations
    - GET    /api/chat/{id}: Conversation with ordered turns
    - PATCH  /api/chat/{id}/visibility: Change visibility (owner only)
    - PATCH  /api/chat/{id}/model: Change the conversation's model (owner only)
    - DELETE /api/chat/turns/{turn_id}/trailing: Delete a turn and all later turns
    - GET    /api/history: The caller's conversations with nested turns
    - GET    /api/models: Configured chat models

The POST body is streamed in the data stream format described in
``app.chat.sink``.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from app.ai_provider.base import ImagePart, LLMMessage
from app.ai_provider.resolver import ProviderResolver, get_resolver
from app.auth import current_user_id
from app.errors import ChatlineError, StoreFault, to_http_exception

from .orchestrator import StreamOrchestrator, get_orchestrator
from .schemas import (
    ChatRequest,
    ConversationView,
    HistoryMessage,
    ModelsResponse,
    ModelUpdate,
    ModelView,
    Role,
    VisibilityUpdate,
)
from .sink import MEDIA_TYPE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


def require_orchestrator() -> StreamOrchestrator:
    orchestrator = get_orchestrator()
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    return orchestrator


def require_resolver() -> ProviderResolver:
    resolver = get_resolver()
    if resolver is None:
        raise HTTPException(status_code=503, detail="Model registry not initialized")
    return resolver


def _http_error(error: ChatlineError) -> HTTPException:
    if isinstance(error, StoreFault):
        logger.error("Store fault during %s (%s): %s", error.operation, error.entity_id, error.cause)
    return to_http_exception(error)


def to_llm_message(message: HistoryMessage) -> LLMMessage:
    """Convert a client history message, keeping image attachments as image parts."""
    images = [
        ImagePart(url=a.url, content_type=a.content_type)
        for a in message.attachments
        if a.content_type.startswith("image/")
    ]
    return LLMMessage(role=message.role, content=message.content, images=images)


@router.post("/chat")
async def post_chat(
    body: ChatRequest,
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> StreamingResponse:
    """Handle one user turn and stream the model's reply.

    The last message of ``messages`` is the new user turn; earlier user and
    assistant messages form the history sent to the model.

    Raises:
        HTTPException 400: No user message, or an attachment could not be activated.
        HTTPException 401: Unauthenticated, or the conversation belongs to someone else.
        HTTPException 404: Unknown model id.
    """
    if not body.messages or body.messages[-1].role != Role.USER.value:
        raise HTTPException(status_code=400, detail="No user message found")
    new_message = body.messages[-1]
    if not new_message.content.strip():
        raise HTTPException(status_code=400, detail="No user message found")

    history = [
        to_llm_message(m)
        for m in body.messages[:-1]
        if m.role in (Role.USER.value, Role.ASSISTANT.value)
    ]

    try:
        turn = await orchestrator.handle_turn(
            conversation_id=body.id,
            owner_id=user_id,
            history=history,
            new_user_message=new_message.content,
            model_id=body.model_id,
            attachment_refs=body.attachment_ids,
        )
    except ChatlineError as e:
        raise _http_error(e)

    return StreamingResponse(
        turn.body(),
        media_type=MEDIA_TYPE,
        headers={"X-Vercel-AI-Data-Stream": "v1"},
    )


@router.delete("/chat")
async def delete_chat(
    id: Optional[str] = Query(None),
    delete_all: bool = Query(False, alias="deleteAll"),
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> dict:
    """Delete one conversation (``?id=``) or all of the caller's (``?deleteAll=true``)."""
    try:
        if delete_all:
            count = await orchestrator.delete_all_conversations(user_id)
            return {"message": "All chats deleted", "deleted_count": count}
        if not id:
            raise HTTPException(status_code=400, detail="Missing conversation id")
        await orchestrator.delete_conversation(id, user_id)
    except ChatlineError as e:
        raise _http_error(e)
    return {"message": "Chat deleted"}


@router.get("/chat/{conversation_id}", response_model=ConversationView)
async def get_chat(
    conversation_id: str,
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> ConversationView:
    try:
        return await orchestrator.get_conversation(conversation_id, user_id)
    except ChatlineError as e:
        raise _http_error(e)


@router.patch("/chat/{conversation_id}/visibility")
async def patch_visibility(
    conversation_id: str,
    body: VisibilityUpdate,
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> dict:
    try:
        conversation = await orchestrator.update_visibility(
            conversation_id, user_id, body.visibility
        )
    except ChatlineError as e:
        raise _http_error(e)
    return {"id": conversation.id, "visibility": conversation.visibility.value}


@router.patch("/chat/{conversation_id}/model")
async def patch_model(
    conversation_id: str,
    body: ModelUpdate,
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> dict:
    try:
        conversation = await orchestrator.update_model(conversation_id, user_id, body.model_id)
    except ChatlineError as e:
        raise _http_error(e)
    return {"id": conversation.id, "modelId": conversation.model_identifier}


@router.delete("/chat/turns/{turn_id}/trailing")
async def delete_trailing(
    turn_id: str,
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> dict:
    """Delete ``turn_id`` and every later turn of its conversation."""
    try:
        count = await orchestrator.delete_trailing_turns(turn_id, user_id)
    except ChatlineError as e:
        raise _http_error(e)
    return {"deleted_count": count}


@router.get("/history", response_model=List[ConversationView])
async def get_history(
    user_id: str = Depends(current_user_id),
    orchestrator: StreamOrchestrator = Depends(require_orchestrator),
) -> List[ConversationView]:
    try:
        return await orchestrator.list_history(user_id)
    except ChatlineError as e:
        raise _http_error(e)


@router.get("/models", response_model=ModelsResponse)
async def list_models(resolver: ProviderResolver = Depends(require_resolver)) -> ModelsResponse:
    return ModelsResponse(
        models=[
            ModelView(id=m.id, label=m.label, description=m.description)
            for m in resolver.models
        ],
        default_model_id=resolver.default_model_id,
    )
