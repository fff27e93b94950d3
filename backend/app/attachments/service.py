"""Attachment lifecycle manager.

Tracks uploaded attachments through ``pending -> active -> deleted`` while
keeping the blob store object and the metadata record consistent:

- upload:   object is written first, then the pending record.
- activate: compare-and-set pending -> active, binding the turn id.
- delete:   object is deleted first, then compare-and-set to deleted. If the
            object delete fails the record is left untouched, so the call can
            simply be retried.
- reclaim:  abandoned pending uploads older than a threshold are deleted the
            same way; one failing item never aborts the sweep.
- purge:    deleted records older than a threshold are hard-deleted.

Usage:
    manager = AttachmentLifecycleManager(store, blob_store)
    attachment = await manager.upload(data, "a.png", "image/png", owner_id)
    await manager.activate([attachment.id], turn_id, owner_id)
"""
import logging
import re
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from app.blobs.base import BlobStore
from app.clock import utcnow
from app.errors import (
    AttachmentActivationError,
    AttachmentValidationError,
    ChatlineError,
    InvalidTransitionError,
    NotFoundError,
    StoreFault,
    UnauthorizedError,
)
from app.storage.base import AttachmentRepository

from .schemas import (
    ALLOWED_CONTENT_TYPES,
    ALLOWED_TRANSITIONS,
    MAX_FILE_SIZE_BYTES,
    Attachment,
    AttachmentResponse,
    AttachmentStatus,
)
from .validator import get_file_extension, validate_attachment

logger = logging.getLogger(__name__)

DEFAULT_URL_EXPIRY_SECONDS = 3600

# Owner ids become a path segment of the storage key.
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def is_valid_transition(current: AttachmentStatus, target: AttachmentStatus) -> bool:
    """Whether ``current -> target`` is allowed by the status lattice."""
    return target in ALLOWED_TRANSITIONS.get(current, [])


class AttachmentLifecycleManager:
    """Validates, stores and tracks attachments.

    Args:
        store: Repository holding attachment records.
        blob_store: Where attachment bytes are kept.
        max_size_bytes: Upload size cap.
        allowed_content_types: MIME type -> permitted extensions.
        key_prefix: Leading path segment of every storage key.
        url_expiry_seconds: Lifetime of retrieval URLs.
    """

    def __init__(
        self,
        store: AttachmentRepository,
        blob_store: BlobStore,
        max_size_bytes: int = MAX_FILE_SIZE_BYTES,
        allowed_content_types: Optional[Dict[str, List[str]]] = None,
        key_prefix: str = "uploads",
        url_expiry_seconds: int = DEFAULT_URL_EXPIRY_SECONDS,
    ) -> None:
        self._store = store
        self._blobs = blob_store
        self._max_size_bytes = max_size_bytes
        self._allowed = allowed_content_types or ALLOWED_CONTENT_TYPES
        self._key_prefix = key_prefix.strip("/")
        self._url_expiry_seconds = url_expiry_seconds

    @property
    def blob_store(self) -> BlobStore:
        return self._blobs

    # -----------------------------------------------------------------------
    # Upload
    # -----------------------------------------------------------------------

    def _new_storage_key(self, owner_id: str, sanitized_name: str) -> str:
        owner_segment = _UNSAFE_KEY_CHARS.sub("_", owner_id)
        return f"{self._key_prefix}/{owner_segment}/{uuid.uuid4()}{get_file_extension(sanitized_name)}"

    async def upload(
        self,
        data: bytes,
        declared_name: str,
        declared_content_type: str,
        owner_id: str,
    ) -> Attachment:
        """Validate and store an upload as a pending attachment.

        Args:
            data: File content.
            declared_name: Filename as sent by the client.
            declared_content_type: MIME type as sent by the client.
            owner_id: Uploading user.

        Returns:
            The pending Attachment record.

        Raises:
            AttachmentValidationError: Size, content type or extension rejected.
                Nothing is written in that case.
            StoreFault: Blob or record write failed.
        """
        result = validate_attachment(
            declared_name,
            len(data),
            declared_content_type,
            max_size_bytes=self._max_size_bytes,
            allowed=self._allowed,
        )
        if not result.is_valid:
            logger.info(
                "Rejected upload %s from %s: %s", result.sanitized_name, owner_id, result.error
            )
            raise AttachmentValidationError(result.error or "Invalid file", result.sanitized_name)

        storage_key = self._new_storage_key(owner_id, result.sanitized_name)
        await self._blobs.put(storage_key, data, result.content_type)

        now = utcnow()
        attachment = Attachment(
            owner_id=owner_id,
            name=result.sanitized_name,
            content_type=result.content_type,
            storage_key=storage_key,
            size_bytes=len(data),
            status=AttachmentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._store.create_attachment(attachment)
        except StoreFault:
            # The record never existed; drop the orphaned object if we can.
            try:
                await self._blobs.delete(storage_key)
            except StoreFault as cleanup_error:
                logger.warning(
                    "Orphaned blob %s after failed record write: %s", storage_key, cleanup_error
                )
            raise

        logger.info(
            "Attachment uploaded: %s (%s, %d bytes) by %s",
            attachment.id, attachment.name, attachment.size_bytes, owner_id,
        )
        return attachment

    # -----------------------------------------------------------------------
    # Activation
    # -----------------------------------------------------------------------

    async def activate(self, attachment_ids: List[str], turn_id: str, owner_id: str) -> None:
        """Associate pending attachments with a turn.

        Every id is attempted. Ids that are unknown, owned by someone else or
        not pending are left unchanged and reported together afterwards.

        Raises:
            AttachmentActivationError: At least one id could not be activated.
        """
        invalid: List[str] = []
        for attachment_id in dict.fromkeys(attachment_ids):
            attachment = await self._store.get_attachment(attachment_id)
            if (
                attachment is None
                or attachment.owner_id != owner_id
                or attachment.status != AttachmentStatus.PENDING
            ):
                invalid.append(attachment_id)
                continue

            swapped = await self._store.compare_and_set_status(
                attachment_id, AttachmentStatus.PENDING, AttachmentStatus.ACTIVE, turn_id=turn_id
            )
            if not swapped:
                invalid.append(attachment_id)

        if invalid:
            logger.warning(
                "Activation for turn %s rejected %d of %d attachment(s): %s",
                turn_id, len(invalid), len(attachment_ids), invalid,
            )
            raise AttachmentActivationError(invalid)

        logger.info("Activated %d attachment(s) for turn %s", len(attachment_ids), turn_id)

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    async def _get_owned(self, attachment_id: str, owner_id: str) -> Attachment:
        attachment = await self._store.get_attachment(attachment_id)
        if attachment is None:
            raise NotFoundError("Attachment not found")
        if attachment.owner_id != owner_id:
            raise UnauthorizedError()
        return attachment

    async def _retire(self, attachment: Attachment) -> bool:
        """Delete the object, then flip the record to deleted.

        If an activation lands between the read and the swap, the record is
        retired from active instead, since its object is already gone.

        Returns False when the record was deleted (or removed) by another caller.
        """
        await self._blobs.delete(attachment.storage_key)
        if await self._store.compare_and_set_status(
            attachment.id, attachment.status, AttachmentStatus.DELETED
        ):
            return True

        current = await self._store.get_attachment(attachment.id)
        if current is not None and current.status == AttachmentStatus.ACTIVE:
            logger.warning(
                "Attachment %s was activated while being retired; deleting it", attachment.id
            )
            return await self._store.compare_and_set_status(
                attachment.id, AttachmentStatus.ACTIVE, AttachmentStatus.DELETED
            )
        return False

    async def transition_status(
        self,
        attachment_id: str,
        owner_id: str,
        target: AttachmentStatus,
        turn_id: Optional[str] = None,
    ) -> Attachment:
        """Move an attachment to ``target`` if the lattice allows it.

        Raises:
            NotFoundError: Unknown id.
            UnauthorizedError: Not owned by ``owner_id``.
            InvalidTransitionError: The transition is not allowed, or the
                record changed concurrently.
            ValueError: Activating without a turn id.
        """
        attachment = await self._get_owned(attachment_id, owner_id)
        source = attachment.status

        if not is_valid_transition(source, target):
            raise InvalidTransitionError(source.value, target.value)

        if target == AttachmentStatus.ACTIVE:
            if not turn_id:
                raise ValueError("turn_id is required when activating an attachment")
            swapped = await self._store.compare_and_set_status(
                attachment_id, source, target, turn_id=turn_id
            )
        else:
            swapped = await self._retire(attachment)

        if not swapped:
            current = await self._store.get_attachment(attachment_id)
            current_status = current.status.value if current else "missing"
            raise InvalidTransitionError(current_status, target.value)

        logger.info("Attachment %s: %s -> %s", attachment_id, source.value, target.value)
        return await self._get_owned(attachment_id, owner_id)

    async def delete(self, attachment_id: str, owner_id: str) -> None:
        """Delete an attachment's object and mark the record deleted.

        Deleting an already-deleted attachment succeeds without side effects.

        Raises:
            NotFoundError: Unknown id.
            UnauthorizedError: Not owned by ``owner_id``.
            StoreFault: Object delete failed; the record is unchanged.
        """
        attachment = await self._get_owned(attachment_id, owner_id)
        if attachment.status == AttachmentStatus.DELETED:
            logger.debug("Attachment %s already deleted", attachment_id)
            return

        if not await self._retire(attachment):
            logger.debug("Attachment %s deleted concurrently", attachment_id)
            return
        logger.info("Attachment deleted: %s (%s)", attachment_id, attachment.storage_key)

    # -----------------------------------------------------------------------
    # Maintenance
    # -----------------------------------------------------------------------

    async def reclaim_abandoned(self, older_than: timedelta) -> int:
        """Delete pending attachments created before ``now - older_than``.

        Returns:
            Number of attachments moved to deleted.
        """
        cutoff = utcnow() - older_than
        candidates = await self._store.list_attachments_older_than(
            AttachmentStatus.PENDING, cutoff, field="created_at"
        )

        reclaimed = 0
        for attachment in candidates:
            try:
                if await self._retire(attachment):
                    reclaimed += 1
            except ChatlineError as e:
                logger.error("Failed to reclaim attachment %s: %s", attachment.id, e)

        if candidates:
            logger.info("Reclaimed %d of %d abandoned attachment(s)", reclaimed, len(candidates))
        return reclaimed

    async def purge_deleted(self, older_than: timedelta) -> int:
        """Hard-delete records deleted before ``now - older_than``.

        Returns:
            Number of records removed.
        """
        cutoff = utcnow() - older_than
        deleted = await self._store.list_attachments_older_than(
            AttachmentStatus.DELETED, cutoff, field="updated_at"
        )
        if not deleted:
            return 0
        count = await self._store.purge_attachments([a.id for a in deleted])
        logger.info("Purged %d deleted attachment record(s)", count)
        return count

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_owner_attachments(
        self, owner_id: str, status: Optional[AttachmentStatus] = None
    ) -> List[Attachment]:
        return await self._store.list_attachments_by_owner(owner_id, status)

    async def get_turn_attachments(self, turn_ids: List[str]) -> List[Attachment]:
        """Active attachments of the given turns, oldest first."""
        return await self._store.list_attachments_by_turns(turn_ids, AttachmentStatus.ACTIVE)

    async def retrieval_url(self, attachment: Attachment) -> str:
        return await self._blobs.retrieval_url(attachment.storage_key, self._url_expiry_seconds)

    async def to_response(self, attachment: Attachment) -> AttachmentResponse:
        return AttachmentResponse(
            id=attachment.id,
            url=await self.retrieval_url(attachment),
            name=attachment.name,
            content_type=attachment.content_type,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_manager: Optional[AttachmentLifecycleManager] = None


def get_attachment_manager() -> Optional[AttachmentLifecycleManager]:
    """Return the global AttachmentLifecycleManager, or None if not yet initialised."""
    return _manager


def set_attachment_manager(manager: Optional[AttachmentLifecycleManager]) -> None:
    """Set (or replace) the global AttachmentLifecycleManager instance."""
    global _manager
    _manager = manager
