"""FastAPI router for attachment endpoints.

    - POST   /api/files/upload: Upload an attachment (multipart ``file``, optional ``turnId``)
    - DELETE /api/files?id=...: Delete an attachment
    - GET    /api/files/blob/{key}: Signed download for the local blob store
"""
import logging
import mimetypes
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response

from app.auth import current_user_id
from app.blobs.local import LocalBlobStore
from app.chat.orchestrator import get_orchestrator
from app.errors import ChatlineError, StoreFault, to_http_exception

from .schemas import AttachmentResponse
from .service import AttachmentLifecycleManager, get_attachment_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["files"])


def require_manager() -> AttachmentLifecycleManager:
    manager = get_attachment_manager()
    if manager is None:
        raise HTTPException(status_code=503, detail="Attachment service not initialized")
    return manager


def _http_error(error: ChatlineError) -> HTTPException:
    if isinstance(error, StoreFault):
        logger.error("Store fault during %s (%s): %s", error.operation, error.entity_id, error.cause)
    return to_http_exception(error)


@router.post("/upload", response_model=AttachmentResponse)
async def upload_file(
    file: UploadFile = File(...),
    turn_id: Optional[str] = Form(None, alias="turnId"),
    user_id: str = Depends(current_user_id),
    manager: AttachmentLifecycleManager = Depends(require_manager),
) -> AttachmentResponse:
    """Upload an attachment.

    Supported file types: jpeg, png, gif, webp, pdf, txt, md, js/jsx,
    ts/tsx, py, json, csv, up to the configured size cap (10MB by default).
    The attachment stays pending until a chat turn references it, unless
    ``turnId`` names an existing turn of the caller to attach it to.

    Returns:
        AttachmentResponse with the id and a time-limited retrieval URL.

    Raises:
        HTTPException 400: Validation failed or the turn could not take it.
        HTTPException 401: Unauthenticated, or the turn belongs to someone else.
    """
    content = await file.read()
    try:
        attachment = await manager.upload(
            content,
            file.filename or "unnamed",
            file.content_type or "application/octet-stream",
            user_id,
        )
        if turn_id:
            orchestrator = get_orchestrator()
            if orchestrator is None:
                raise HTTPException(status_code=503, detail="Chat service not initialized")
            await orchestrator.attach_to_turn(turn_id, user_id, [attachment.id])
        return await manager.to_response(attachment)
    except ChatlineError as e:
        raise _http_error(e)


@router.delete("")
async def delete_file(
    id: str = Query(...),
    user_id: str = Depends(current_user_id),
    manager: AttachmentLifecycleManager = Depends(require_manager),
) -> dict:
    """Delete an attachment's object and mark it deleted.

    Raises:
        HTTPException 401: Not the owner.
        HTTPException 404: Unknown attachment.
    """
    try:
        await manager.delete(id, user_id)
    except ChatlineError as e:
        raise _http_error(e)
    return {"message": "File deleted"}


@router.get("/blob/{key:path}")
async def download_blob(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    manager: AttachmentLifecycleManager = Depends(require_manager),
) -> Response:
    """Serve an object from the local blob store through a signed URL.

    Raises:
        HTTPException 403: Signature invalid or expired.
        HTTPException 404: Not a local blob store, or the object is gone.
    """
    store = manager.blob_store
    if not isinstance(store, LocalBlobStore):
        raise HTTPException(status_code=404, detail="Not Found")
    if not store.verify(key, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired signature")
    try:
        data = await store.get(key)
    except ChatlineError as e:
        raise _http_error(e)
    if data is None:
        raise HTTPException(status_code=404, detail="File not found")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
