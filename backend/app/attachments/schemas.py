"""Pydantic schemas for attachments.

This module defines the data models for uploaded attachments:
- AttachmentStatus: lifecycle states (pending, active, deleted)
- Attachment: the metadata record kept in the persistence store
- AttachmentResponse: API response after upload / in history reads
- ValidationResult: outcome of validating a declared upload

Attachment bytes live in the blob store under ``storage_key``; the record
points at them. ``ALLOWED_CONTENT_TYPES`` is the explicit allow-list mapping a
MIME type to the file extensions accepted for it.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.clock import utcnow


class AttachmentStatus(str, Enum):
    """Attachment lifecycle states.

    Transitions move forward only:
    - PENDING -> ACTIVE   (associated with a turn)
    - PENDING -> DELETED  (user delete or reclaimed as abandoned)
    - ACTIVE  -> DELETED  (user delete or cascade)
    """
    PENDING = "pending"
    ACTIVE = "active"
    DELETED = "deleted"


ALLOWED_TRANSITIONS: Dict[AttachmentStatus, List[AttachmentStatus]] = {
    AttachmentStatus.PENDING: [AttachmentStatus.ACTIVE, AttachmentStatus.DELETED],
    AttachmentStatus.ACTIVE: [AttachmentStatus.DELETED],
    AttachmentStatus.DELETED: [],
}


class Attachment(BaseModel):
    """Metadata for an uploaded attachment.

    ``turn_id`` is set if and only if the status is ACTIVE.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique attachment ID")
    owner_id: str = Field(..., description="User ID who uploaded the file")
    name: str = Field(..., description="Sanitized filename")
    content_type: str = Field(..., description="Validated MIME type")
    storage_key: str = Field(..., description="Blob store key (never changes)")
    size_bytes: int = Field(0, description="File size in bytes")
    status: AttachmentStatus = Field(AttachmentStatus.PENDING, description="Lifecycle state")
    turn_id: Optional[str] = Field(None, description="Turn this attachment belongs to")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


class AttachmentResponse(BaseModel):
    """Response after a successful upload, also embedded in history reads."""
    id: str = Field(..., description="Attachment ID")
    url: str = Field(..., description="Time-limited retrieval URL")
    name: str = Field(..., description="Sanitized filename")
    content_type: str = Field(..., alias="contentType", description="MIME type")

    model_config = ConfigDict(populate_by_name=True)


class ValidationResult(BaseModel):
    """Outcome of validating an upload's declared metadata.

    ``sanitized_name`` is always populated so error messages can use it.
    """
    is_valid: bool
    sanitized_name: str
    content_type: Optional[str] = None
    error: Optional[str] = None


# File size limit: 10MB
MAX_FILE_SIZE_BYTES = 10 * 1024 * 1024

# Maximum sanitized filename length
MAX_FILENAME_LENGTH = 255

ALLOWED_CONTENT_TYPES: Dict[str, List[str]] = {
    "image/jpeg": [".jpg", ".jpeg"],
    "image/png": [".png"],
    "image/gif": [".gif"],
    "image/webp": [".webp"],
    "application/pdf": [".pdf"],
    "text/plain": [".txt"],
    "text/markdown": [".md"],
    "text/javascript": [".js", ".jsx"],
    "text/typescript": [".ts", ".tsx"],
    "text/python": [".py"],
    "application/json": [".json"],
    "text/csv": [".csv"],
}
