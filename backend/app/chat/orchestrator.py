"""Stream orchestrator: drives one conversational turn end to end.

A turn runs as a fixed pipeline:

    received -> conversation-resolved -> user-turn-persisted
             -> attachments-activated -> generating
             -> assistant-turn-persisted | generation-failed

``handle_turn`` performs everything up to and including attachment
activation before returning, so errors in those steps become ordinary HTTP
errors. The returned ``TurnStream`` owns the rest: its ``body()`` generator
reads the provider exactly once, forwards each delta through a ``TurnSink``
and persists the assistant turn only after the provider stream completes.

Usage:
    orchestrator = StreamOrchestrator(store, resolver, attachment_manager)
    turn = await orchestrator.handle_turn(conv_id, user_id, history, "Hello", "llama3.3", [])
    return StreamingResponse(turn.body(), media_type=MEDIA_TYPE)
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

from app.ai_provider.base import ImagePart, LLMMessage, ModelStreamProvider
from app.ai_provider.prompts import DEFAULT_SYSTEM_PROMPT
from app.ai_provider.resolver import ProviderResolver
from app.ai_provider.title import generate_title
from app.attachments.schemas import AttachmentStatus
from app.attachments.service import AttachmentLifecycleManager
from app.clock import utcnow
from app.config import ChatModelConfig
from app.errors import (
    ClientError,
    NotFoundError,
    ProviderFault,
    StoreFault,
    UnauthorizedError,
)
from app.storage.base import PersistenceStore

from .schemas import (
    Conversation,
    ConversationView,
    Role,
    Turn,
    TurnView,
    Visibility,
)
from .sink import TurnSink, encode_error, encode_finish, encode_user_message_id

logger = logging.getLogger(__name__)

DEFAULT_TITLE_TIMEOUT_SECONDS = 5.0

SAVE_FAILED_MESSAGE = "The response could not be saved"


class TurnState(str, Enum):
    """Lifecycle of a single turn."""
    RECEIVED = "received"
    CONVERSATION_RESOLVED = "conversation-resolved"
    USER_TURN_PERSISTED = "user-turn-persisted"
    ATTACHMENTS_ACTIVATED = "attachments-activated"
    GENERATING = "generating"
    ASSISTANT_TURN_PERSISTED = "assistant-turn-persisted"
    GENERATION_FAILED = "generation-failed"


class TurnStream:
    """The streaming half of a turn.

    Attributes:
        conversation: The resolved conversation.
        user_turn: The persisted user turn.
        assistant_turn: The persisted assistant turn, once stored.
        state: Current lifecycle state.
    """

    def __init__(
        self,
        store: PersistenceStore,
        provider: ModelStreamProvider,
        model: ChatModelConfig,
        conversation: Conversation,
        user_turn: Turn,
        messages: List[LLMMessage],
        system_prompt: Optional[str],
    ) -> None:
        self._store = store
        self._provider = provider
        self._model = model
        self._messages = messages
        self._system_prompt = system_prompt
        self.conversation = conversation
        self.user_turn = user_turn
        self.assistant_turn: Optional[Turn] = None
        self.state = TurnState.ATTACHMENTS_ACTIVATED

    async def _persist_assistant_turn(self, content: str) -> Turn:
        turn = Turn(
            conversation_id=self.conversation.id,
            role=Role.ASSISTANT,
            content=content,
            created_at=utcnow(),
        )
        return await self._store.create_turn(turn)

    async def body(self) -> AsyncIterator[str]:
        """Yield the encoded response lines for this turn.

        The provider iterator is closed on every exit path, including caller
        disconnect. No assistant turn is written unless the provider stream
        completed normally.
        """
        yield encode_user_message_id(self.user_turn.id)

        self.state = TurnState.GENERATING
        sink = TurnSink()
        try:
            async with aclosing(
                self._provider.stream(
                    self._model.api_identifier, self._messages, self._system_prompt
                )
            ) as deltas:
                async for delta in deltas:
                    if delta:
                        yield sink.write(delta)
        except ProviderFault as e:
            self.state = TurnState.GENERATION_FAILED
            logger.error(
                "Generation failed for conversation %s after %d delta(s): %s",
                self.conversation.id, sink.delta_count, e,
            )
            yield encode_error(e.message)
            return
        except (asyncio.CancelledError, GeneratorExit):
            self.state = TurnState.GENERATION_FAILED
            logger.info(
                "Stream for conversation %s cancelled after %d delta(s)",
                self.conversation.id, sink.delta_count,
            )
            raise

        try:
            # The provider has finished; a disconnect from here on must not lose the reply.
            self.assistant_turn = await asyncio.shield(self._persist_assistant_turn(sink.text))
        except StoreFault as e:
            self.state = TurnState.GENERATION_FAILED
            logger.error("Failed to persist assistant turn for %s: %s", self.conversation.id, e)
            yield encode_error(SAVE_FAILED_MESSAGE)
            return

        self.state = TurnState.ASSISTANT_TURN_PERSISTED
        logger.info(
            "Turn complete for conversation %s: user=%s assistant=%s (%d chars)",
            self.conversation.id, self.user_turn.id, self.assistant_turn.id, len(sink.text),
        )
        yield encode_finish()


class StreamOrchestrator:
    """Coordinates conversations, turns, attachments and the model stream.

    Args:
        store: Persistence port for conversations and turns.
        resolver: Model registry and provider lookup.
        attachments: Attachment lifecycle manager.
        system_prompt: System instruction sent with every chat request.
        title_timeout_seconds: Upper bound on title generation.
    """

    def __init__(
        self,
        store: PersistenceStore,
        resolver: ProviderResolver,
        attachments: AttachmentLifecycleManager,
        system_prompt: Optional[str] = None,
        title_timeout_seconds: float = DEFAULT_TITLE_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._attachments = attachments
        self._system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self._title_timeout_seconds = title_timeout_seconds

    # -----------------------------------------------------------------------
    # Turn handling
    # -----------------------------------------------------------------------

    async def handle_turn(
        self,
        conversation_id: str,
        owner_id: str,
        history: List[LLMMessage],
        new_user_message: str,
        model_id: Optional[str] = None,
        attachment_refs: Optional[List[str]] = None,
    ) -> TurnStream:
        """Run the synchronous steps of a turn and return its stream.

        Args:
            conversation_id: Client-chosen conversation id.
            owner_id: Authenticated caller.
            history: Earlier messages, oldest first.
            new_user_message: Text of the new user message.
            model_id: Requested model; the default model when None.
            attachment_refs: Pending attachment ids to bind to the new turn.

        Returns:
            TurnStream whose ``body()`` streams the reply.

        Raises:
            ClientError: Empty message.
            ModelNotFoundError: Unknown model id.
            UnauthorizedError: Conversation belongs to another user.
            AttachmentActivationError: A reference could not be activated.
                The user turn is already persisted in that case.
            StoreFault: Persistence failed.
        """
        if not new_user_message or not new_user_message.strip():
            raise ClientError("No user message found")

        model = self._resolver.find_model(model_id)
        provider = self._resolver.provider_for(model)

        conversation = await self._resolve_conversation(
            conversation_id, owner_id, new_user_message, model
        )

        user_turn = await self._store.create_turn(
            Turn(
                conversation_id=conversation.id,
                role=Role.USER,
                content=new_user_message,
                created_at=utcnow(),
            )
        )
        logger.info("User turn %s persisted in conversation %s", user_turn.id, conversation.id)

        images: List[ImagePart] = []
        if attachment_refs:
            await self._attachments.activate(attachment_refs, user_turn.id, owner_id)
            for attachment in await self._attachments.get_turn_attachments([user_turn.id]):
                if attachment.is_image:
                    images.append(
                        ImagePart(
                            url=await self._attachments.retrieval_url(attachment),
                            content_type=attachment.content_type,
                        )
                    )

        messages = list(history)
        messages.append(LLMMessage(role="user", content=new_user_message, images=images))

        return TurnStream(
            store=self._store,
            provider=provider,
            model=model,
            conversation=conversation,
            user_turn=user_turn,
            messages=messages,
            system_prompt=self._system_prompt,
        )

    async def _resolve_conversation(
        self,
        conversation_id: str,
        owner_id: str,
        first_message: str,
        model: ChatModelConfig,
    ) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            conversation = await asyncio.shield(
                self._create_conversation(conversation_id, owner_id, first_message, model)
            )
        if conversation.owner_id != owner_id:
            raise UnauthorizedError()
        return conversation

    async def _create_conversation(
        self,
        conversation_id: str,
        owner_id: str,
        first_message: str,
        model: ChatModelConfig,
    ) -> Conversation:
        title_model = self._resolver.title_model()
        title = await generate_title(
            self._resolver.provider_for(title_model),
            title_model.api_identifier,
            first_message,
            self._title_timeout_seconds,
        )
        conversation = Conversation(
            id=conversation_id,
            owner_id=owner_id,
            title=title,
            model_identifier=model.id,
            created_at=utcnow(),
        )
        try:
            return await self._store.create_conversation(conversation)
        except StoreFault:
            # A concurrent request may have created it between our read and write.
            existing = await self._store.get_conversation(conversation_id)
            if existing is None:
                raise
            logger.info("Conversation %s created concurrently; reusing it", conversation_id)
            return existing

    # -----------------------------------------------------------------------
    # Conversation management
    # -----------------------------------------------------------------------

    async def _get_owned(self, conversation_id: str, owner_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if conversation.owner_id != owner_id:
            raise UnauthorizedError()
        return conversation

    async def _delete_turn_attachments(self, turns: List[Turn], owner_id: str) -> None:
        """Delete active attachments of ``turns``; the first failure propagates."""
        if not turns:
            return
        attachments = await self._attachments.get_turn_attachments([t.id for t in turns])
        for attachment in attachments:
            await self._attachments.delete(attachment.id, owner_id)

    async def delete_conversation(self, conversation_id: str, owner_id: str) -> None:
        """Delete a conversation, its turns and their attachments.

        Raises:
            NotFoundError: Conversation does not exist.
            UnauthorizedError: Caller is not the owner.
            StoreFault: A delete failed; retrying the call is safe.
        """
        conversation = await self._get_owned(conversation_id, owner_id)
        turns = await self._store.list_turns(conversation.id)
        await self._delete_turn_attachments(turns, owner_id)
        deleted_turns = await self._store.delete_turns(conversation.id)
        await self._store.delete_conversation(conversation.id)
        logger.info(
            "Deleted conversation %s (%d turn(s)) for %s", conversation.id, deleted_turns, owner_id
        )

    async def delete_all_conversations(self, owner_id: str) -> int:
        """Delete every conversation the caller owns.

        Returns:
            Number of conversations deleted.
        """
        for attachment in await self._attachments.get_owner_attachments(
            owner_id, AttachmentStatus.ACTIVE
        ):
            await self._attachments.delete(attachment.id, owner_id)
        deleted_turns = await self._store.delete_turns_by_owner(owner_id)
        deleted = await self._store.delete_conversations_by_owner(owner_id)
        logger.info(
            "Deleted all conversations for %s: %d conversation(s), %d turn(s)",
            owner_id, deleted, deleted_turns,
        )
        return deleted

    async def delete_trailing_turns(self, turn_id: str, owner_id: str) -> int:
        """Delete a turn and every later turn of its conversation.

        Returns:
            Number of turns deleted.
        """
        turn = await self._store.get_turn(turn_id)
        if turn is None:
            raise NotFoundError("Turn not found")
        conversation = await self._get_owned(turn.conversation_id, owner_id)

        trailing = await self._store.list_turns_since(
            conversation.id, turn.created_at, from_turn_id=turn.id
        )
        await self._delete_turn_attachments(trailing, owner_id)
        deleted = await self._store.delete_turns_since(
            conversation.id, turn.created_at, from_turn_id=turn.id
        )
        logger.info("Deleted %d trailing turn(s) from %s in %s", deleted, turn_id, conversation.id)
        return deleted

    async def attach_to_turn(
        self, turn_id: str, owner_id: str, attachment_ids: List[str]
    ) -> None:
        """Activate pending attachments against an existing turn of the caller."""
        turn = await self._store.get_turn(turn_id)
        if turn is None:
            raise NotFoundError("Turn not found")
        await self._get_owned(turn.conversation_id, owner_id)
        await self._attachments.activate(attachment_ids, turn.id, owner_id)

    async def update_visibility(
        self, conversation_id: str, owner_id: str, visibility: Visibility
    ) -> Conversation:
        await self._get_owned(conversation_id, owner_id)
        updated = await self._store.update_conversation(
            conversation_id, {"visibility": visibility}
        )
        if updated is None:
            raise NotFoundError("Conversation not found")
        return updated

    async def update_model(
        self, conversation_id: str, owner_id: str, model_id: str
    ) -> Conversation:
        await self._get_owned(conversation_id, owner_id)
        model = self._resolver.find_model(model_id)
        updated = await self._store.update_conversation(
            conversation_id, {"model_identifier": model.id}
        )
        if updated is None:
            raise NotFoundError("Conversation not found")
        return updated

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def _turn_views(self, turns: List[Turn]) -> List[TurnView]:
        by_turn: Dict[str, list] = defaultdict(list)
        for attachment in await self._attachments.get_turn_attachments([t.id for t in turns]):
            by_turn[attachment.turn_id].append(await self._attachments.to_response(attachment))
        return [TurnView(**t.model_dump(), attachments=by_turn.get(t.id, [])) for t in turns]

    async def get_conversation(self, conversation_id: str, viewer_id: str) -> ConversationView:
        """Return a conversation with its ordered turns.

        Private conversations are visible to their owner only.
        """
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if conversation.visibility == Visibility.PRIVATE and conversation.owner_id != viewer_id:
            raise UnauthorizedError()
        turns = await self._store.list_turns(conversation_id)
        return ConversationView(
            **conversation.model_dump(), turns=await self._turn_views(turns)
        )

    async def list_history(self, owner_id: str) -> List[ConversationView]:
        """The caller's conversations, newest first, each with ordered turns."""
        conversations = await self._store.list_conversations(owner_id)
        if not conversations:
            return []
        turns = await self._store.list_turns_by_owner(owner_id)
        views = await self._turn_views(turns)

        by_conversation: Dict[str, List[TurnView]] = defaultdict(list)
        for view in views:
            by_conversation[view.conversation_id].append(view)

        return [
            ConversationView(**c.model_dump(), turns=by_conversation.get(c.id, []))
            for c in conversations
        ]


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_orchestrator: Optional[StreamOrchestrator] = None


def get_orchestrator() -> Optional[StreamOrchestrator]:
    """Return the global StreamOrchestrator, or None if not yet initialised."""
    return _orchestrator


def set_orchestrator(orchestrator: Optional[StreamOrchestrator]) -> None:
    """Set (or replace) the global StreamOrchestrator instance."""
    global _orchestrator
    _orchestrator = orchestrator
