"""Pydantic schemas for conversations, turns and the chat HTTP API.

Record models (Conversation, Turn) are what the persistence store reads and
writes. Request models mirror the JSON the web client posts; they accept the
client's camelCase keys (``modelId``, ``attachmentIds``) as aliases.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.attachments.schemas import AttachmentResponse
from app.clock import utcnow


class Role(str, Enum):
    """Author of a turn."""
    USER = "user"
    ASSISTANT = "assistant"


class Visibility(str, Enum):
    """Who may read a conversation besides its owner."""
    PRIVATE = "private"
    PUBLIC = "public"


DEFAULT_CONVERSATION_TITLE = "New Conversation"


class Conversation(BaseModel):
    """A conversation owned by exactly one user."""
    id: str
    owner_id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    model_identifier: str
    visibility: Visibility = Visibility.PRIVATE
    created_at: datetime = Field(default_factory=utcnow)


class Turn(BaseModel):
    """A single user or assistant message within a conversation.

    ``content`` is always the fully materialized text; streaming partials are
    never stored.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class HistoryAttachment(BaseModel):
    """Attachment reference carried on a client-side history message."""
    url: str
    name: str = ""
    content_type: str = Field(default="", alias="contentType")

    model_config = ConfigDict(populate_by_name=True)


class HistoryMessage(BaseModel):
    """One message of the client-held history."""
    role: str
    content: str = ""
    attachments: List[HistoryAttachment] = Field(
        default_factory=list, alias="experimental_attachments"
    )

    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(BaseModel):
    """POST /api/chat body."""
    id: str = Field(..., min_length=1)
    messages: List[HistoryMessage] = Field(default_factory=list)
    model_id: Optional[str] = Field(default=None, alias="modelId")
    attachment_ids: List[str] = Field(default_factory=list, alias="attachmentIds")

    model_config = ConfigDict(populate_by_name=True)


class VisibilityUpdate(BaseModel):
    visibility: Visibility


class ModelUpdate(BaseModel):
    model_id: str = Field(..., alias="modelId")

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class TurnView(Turn):
    """A turn together with its active attachments."""
    attachments: List[AttachmentResponse] = Field(default_factory=list)


class ConversationView(Conversation):
    """A conversation with its ordered turns, as returned by history reads."""
    turns: List[TurnView] = Field(default_factory=list)


class ModelView(BaseModel):
    id: str
    label: str
    description: str


class ModelsResponse(BaseModel):
    models: List[ModelView]
    default_model_id: str
