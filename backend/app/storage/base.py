"""Persistence port for conversations, turns and attachments.

The orchestrator and the attachment manager depend only on these abstract
repositories; a concrete store is injected at construction time. Any
implementation must provide:

- insertion-order tie breaking for turns with equal ``created_at``;
- an atomic compare-and-set on attachment ``status``.

Implementations raise ``StoreFault`` for underlying storage failures.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.attachments.schemas import Attachment, AttachmentStatus
from app.chat.schemas import Conversation, Turn


class ConversationRepository(ABC):
    """Abstract repository for Conversation records."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def list_conversations(self, owner_id: str) -> List[Conversation]:
        """Conversations of an owner, newest first."""

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, updates: Dict[str, Any]
    ) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete one conversation. Returns False if it did not exist."""

    @abstractmethod
    async def delete_conversations_by_owner(self, owner_id: str) -> int:
        pass


class TurnRepository(ABC):
    """Abstract repository for Turn records."""

    @abstractmethod
    async def create_turn(self, turn: Turn) -> Turn:
        pass

    @abstractmethod
    async def get_turn(self, turn_id: str) -> Optional[Turn]:
        pass

    @abstractmethod
    async def list_turns(self, conversation_id: str) -> List[Turn]:
        """Turns ordered by created_at, then insertion order."""

    @abstractmethod
    async def list_turns_since(
        self, conversation_id: str, since: datetime, from_turn_id: Optional[str] = None
    ) -> List[Turn]:
        """Turns with created_at >= since; see ``delete_turns_since`` for ``from_turn_id``."""

    @abstractmethod
    async def list_turns_by_owner(self, owner_id: str) -> List[Turn]:
        pass

    @abstractmethod
    async def delete_turns(self, conversation_id: str) -> int:
        pass

    @abstractmethod
    async def delete_turns_since(
        self, conversation_id: str, since: datetime, from_turn_id: Optional[str] = None
    ) -> int:
        """Delete turns with created_at >= since.

        When ``from_turn_id`` is given, turns at exactly ``since`` that were
        inserted before that turn are kept.
        """

    @abstractmethod
    async def delete_turns_by_owner(self, owner_id: str) -> int:
        pass


class AttachmentRepository(ABC):
    """Abstract repository for Attachment records."""

    @abstractmethod
    async def create_attachment(self, attachment: Attachment) -> Attachment:
        pass

    @abstractmethod
    async def get_attachment(self, attachment_id: str) -> Optional[Attachment]:
        pass

    @abstractmethod
    async def list_attachments_by_owner(
        self, owner_id: str, status: Optional[AttachmentStatus] = None
    ) -> List[Attachment]:
        pass

    @abstractmethod
    async def list_attachments_by_turns(
        self, turn_ids: List[str], status: Optional[AttachmentStatus] = None
    ) -> List[Attachment]:
        pass

    @abstractmethod
    async def list_attachments_older_than(
        self, status: AttachmentStatus, cutoff: datetime, field: str = "created_at"
    ) -> List[Attachment]:
        """Attachments in ``status`` whose ``field`` (created_at/updated_at) < cutoff."""

    @abstractmethod
    async def compare_and_set_status(
        self,
        attachment_id: str,
        expected: AttachmentStatus,
        target: AttachmentStatus,
        turn_id: Optional[str] = None,
    ) -> bool:
        """Atomically move ``expected`` -> ``target``.

        Sets ``turn_id`` when the target is ACTIVE and clears it otherwise.
        Returns False when the record is missing or not in ``expected``.
        """

    @abstractmethod
    async def purge_attachments(self, attachment_ids: List[str]) -> int:
        """Hard-delete records. Only used for already-deleted attachments."""


class PersistenceStore(ConversationRepository, TurnRepository, AttachmentRepository):
    """The full persistence port over all three record kinds."""

    async def close(self) -> None:
        """Release underlying resources."""
