"""Tests for the StreamOrchestrator turn pipeline and conversation management."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from conftest import PNG_BYTES, collect, parse_stream

from app.ai_provider.base import LLMMessage
from app.attachments.schemas import AttachmentStatus
from app.chat.orchestrator import StreamOrchestrator, TurnState
from app.chat.schemas import DEFAULT_CONVERSATION_TITLE, Conversation, Role, Turn, Visibility
from app.clock import utcnow
from app.errors import (
    AttachmentActivationError,
    ClientError,
    ModelNotFoundError,
    NotFoundError,
    StoreFault,
    UnauthorizedError,
)


async def run_turn(orchestrator, conversation_id="c1", owner_id="U1", message="Hello", **kwargs):
    turn = await orchestrator.handle_turn(conversation_id, owner_id, [], message, **kwargs)
    lines = await collect(turn.body())
    return turn, parse_stream(lines)


class TestHandleTurn:
    """Tests for the happy path of a single turn."""

    @pytest.mark.asyncio
    async def test_new_conversation_hello_hi_there(self, orchestrator, store):
        """A brand-new conversation gets a title, a user turn and an assistant turn."""
        turn, events = await run_turn(orchestrator)

        conversation = await store.get_conversation("c1")
        assert conversation is not None
        assert conversation.title == "Friendly Greeting"
        assert conversation.owner_id == "U1"
        assert conversation.model_identifier == "llama3.3"

        turns = await store.list_turns("c1")
        assert [(t.role, t.content) for t in turns] == [
            (Role.USER, "Hello"),
            (Role.ASSISTANT, "Hi there"),
        ]
        assert turn.state == TurnState.ASSISTANT_TURN_PERSISTED
        assert turn.assistant_turn.id == turns[1].id

    @pytest.mark.asyncio
    async def test_stream_events_in_order(self, orchestrator):
        """The stream announces the user turn id, forwards deltas, then finishes."""
        turn, events = await run_turn(orchestrator)

        assert events[0] == ("2", [{"type": "user-message-id", "content": turn.user_turn.id}])
        assert events[1:3] == [("0", "Hi"), ("0", " there")]
        assert events[3] == ("d", {"finishReason": "stop"})
        assert len(events) == 4

    @pytest.mark.asyncio
    async def test_persisted_content_equals_forwarded_deltas(self, store, resolver, manager, provider):
        """The assistant turn is exactly the concatenation of every forwarded delta."""
        provider.deltas = ["The", " quick", " brown", "", " fox", "\n", "jumps ", "✓"]
        orchestrator = StreamOrchestrator(store, resolver, manager)

        turn, events = await run_turn(orchestrator)

        forwarded = "".join(value for code, value in events if code == "0")
        assert turn.assistant_turn.content == forwarded
        assert forwarded == "The quick brown fox\njumps ✓"

    @pytest.mark.asyncio
    async def test_existing_conversation_is_reused(self, orchestrator, store, provider):
        """A second turn reuses the conversation and does not regenerate the title."""
        await run_turn(orchestrator)
        await run_turn(orchestrator, message="And again")

        assert len(provider.complete_calls) == 1
        turns = await store.list_turns("c1")
        assert [t.role for t in turns] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_history_and_new_message_sent_to_provider(self, orchestrator, provider):
        """The provider receives the history followed by the new user message."""
        history = [
            LLMMessage(role="user", content="Earlier"),
            LLMMessage(role="assistant", content="Reply"),
        ]
        turn = await orchestrator.handle_turn("c1", "U1", history, "Now", "llama3.3")
        await collect(turn.body())

        call = provider.stream_calls[0]
        assert call["model"] == "llama3.3-api"
        assert [m.content for m in call["messages"]] == ["Earlier", "Reply", "Now"]
        assert call["system"]

    @pytest.mark.asyncio
    async def test_user_turn_persisted_before_streaming(self, orchestrator, store):
        """The user turn exists as soon as handle_turn returns."""
        turn = await orchestrator.handle_turn("c1", "U1", [], "Hello")

        turns = await store.list_turns("c1")
        assert [t.id for t in turns] == [turn.user_turn.id]
        assert turn.state == TurnState.ATTACHMENTS_ACTIVATED


class TestPreconditions:
    """Tests for request validation before anything is persisted."""

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, orchestrator, store):
        with pytest.raises(ClientError):
            await orchestrator.handle_turn("c1", "U1", [], "   ")
        assert await store.get_conversation("c1") is None

    @pytest.mark.asyncio
    async def test_unknown_model_rejected(self, orchestrator, store):
        with pytest.raises(ModelNotFoundError) as exc_info:
            await orchestrator.handle_turn("c1", "U1", [], "Hello", "gpt-unknown")
        assert exc_info.value.status_code == 404
        assert await store.get_conversation("c1") is None

    @pytest.mark.asyncio
    async def test_other_owners_conversation_rejected(self, orchestrator, store):
        await run_turn(orchestrator, owner_id="U1")

        with pytest.raises(UnauthorizedError):
            await orchestrator.handle_turn("c1", "U2", [], "Hijack")
        assert len(await store.list_turns("c1")) == 2


class TestTitleGeneration:
    """Tests for title fallback behaviour."""

    @pytest.mark.asyncio
    async def test_title_timeout_falls_back(self, store, resolver, manager, provider):
        provider.title_delay = 1.0
        orchestrator = StreamOrchestrator(store, resolver, manager, title_timeout_seconds=0.05)

        await run_turn(orchestrator)

        conversation = await store.get_conversation("c1")
        assert conversation.title == DEFAULT_CONVERSATION_TITLE
        assert len(await store.list_turns("c1")) == 2

    @pytest.mark.asyncio
    async def test_title_provider_error_falls_back(self, orchestrator, store, provider):
        provider.title_error = True

        await run_turn(orchestrator)

        conversation = await store.get_conversation("c1")
        assert conversation.title == DEFAULT_CONVERSATION_TITLE

    @pytest.mark.asyncio
    async def test_title_uses_title_model(self, orchestrator, provider):
        await run_turn(orchestrator)
        assert provider.complete_calls[0]["model"] == "vision-api"


class TestGenerationFailure:
    """Tests for provider errors and cancellation."""

    @pytest.mark.asyncio
    async def test_provider_error_keeps_user_turn(self, orchestrator, store, provider):
        """A provider fault ends the stream with an error event and stores no reply."""
        provider.fail_at = 1

        turn, events = await run_turn(orchestrator)

        assert events[1] == ("0", "Hi")
        assert events[-1][0] == "3"
        assert "boom" in events[-1][1]
        assert not any(code == "d" for code, _ in events)

        turns = await store.list_turns("c1")
        assert [(t.role, t.content) for t in turns] == [(Role.USER, "Hello")]
        assert turn.state == TurnState.GENERATION_FAILED
        assert turn.assistant_turn is None

    @pytest.mark.asyncio
    async def test_provider_error_before_first_delta(self, orchestrator, store, provider):
        provider.fail_at = 0

        turn, events = await run_turn(orchestrator)

        assert [code for code, _ in events] == ["2", "3"]
        assert len(await store.list_turns("c1")) == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_appends_turns(self, orchestrator, store, provider):
        provider.fail_at = 0
        await run_turn(orchestrator)
        provider.fail_at = None
        await run_turn(orchestrator)

        turns = await store.list_turns("c1")
        assert [t.role for t in turns] == [Role.USER, Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_caller_disconnect_closes_provider(self, orchestrator, store, provider):
        """Closing the body mid-stream closes the provider and stores no reply."""
        provider.hang_after = 1
        turn = await orchestrator.handle_turn("c1", "U1", [], "Hello")
        body = turn.body()

        await body.__anext__()  # user-message-id
        assert await body.__anext__() == '0:"Hi"\n'
        await body.aclose()

        assert provider.closed is True
        assert turn.state == TurnState.GENERATION_FAILED
        turns = await store.list_turns("c1")
        assert [t.role for t in turns] == [Role.USER]

    @pytest.mark.asyncio
    async def test_task_cancellation_stores_no_reply(self, orchestrator, store, provider):
        provider.hang_after = 1
        turn = await orchestrator.handle_turn("c1", "U1", [], "Hello")
        received = []

        async def consume():
            async for line in turn.body():
                received.append(line)

        task = asyncio.create_task(consume())
        while len(received) < 2:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert provider.closed is True
        assert turn.state == TurnState.GENERATION_FAILED
        assert len(await store.list_turns("c1")) == 1

    @pytest.mark.asyncio
    async def test_assistant_persist_failure_reports_error(self, orchestrator, store):
        turn = await orchestrator.handle_turn("c1", "U1", [], "Hello")

        with patch.object(
            store, "create_turn",
            AsyncMock(side_effect=StoreFault("turn.create", "x", RuntimeError("disk full"))),
        ):
            events = parse_stream(await collect(turn.body()))

        assert events[-1][0] == "3"
        assert turn.state == TurnState.GENERATION_FAILED
        assert len(await store.list_turns("c1")) == 1


class TestConcurrentTurns:
    """Tests for double-submits on the same conversation."""

    @pytest.mark.asyncio
    async def test_double_submit_new_conversation(self, orchestrator, store):
        first, second = await asyncio.gather(
            orchestrator.handle_turn("c1", "U1", [], "One"),
            orchestrator.handle_turn("c1", "U1", [], "Two"),
        )
        await collect(first.body())
        await collect(second.body())

        turns = await store.list_turns("c1")
        assert sorted(t.content for t in turns if t.role == Role.USER) == ["One", "Two"]
        assert len([t for t in turns if t.role == Role.ASSISTANT]) == 2
        assert len(await store.list_conversations("U1")) == 1


class TestAttachments:
    """Tests for attachment activation during a turn."""

    @pytest.mark.asyncio
    async def test_attachment_activated_before_streaming(self, orchestrator, manager, provider):
        attachment = await manager.upload(PNG_BYTES, "a.png", "image/png", "U1")

        turn = await orchestrator.handle_turn(
            "c1", "U1", [], "What is this?", attachment_refs=[attachment.id]
        )

        activated = await manager.get_turn_attachments([turn.user_turn.id])
        assert [a.id for a in activated] == [attachment.id]
        assert activated[0].status == AttachmentStatus.ACTIVE

        await collect(turn.body())
        new_message = provider.stream_calls[0]["messages"][-1]
        assert len(new_message.images) == 1
        assert new_message.images[0].content_type == "image/png"
        assert "/api/files/blob/" in new_message.images[0].url

    @pytest.mark.asyncio
    async def test_invalid_attachment_fails_turn(self, orchestrator, manager, store, provider):
        attachment = await manager.upload(PNG_BYTES, "a.png", "image/png", "U2")

        with pytest.raises(AttachmentActivationError) as exc_info:
            await orchestrator.handle_turn(
                "c1", "U1", [], "Look", attachment_refs=[attachment.id, "missing"]
            )

        assert exc_info.value.status_code == 400
        assert set(exc_info.value.invalid_ids) == {attachment.id, "missing"}
        assert provider.stream_calls == []
        assert (await store.get_attachment(attachment.id)).status == AttachmentStatus.PENDING


class TestDeletion:
    """Tests for conversation and turn deletion."""

    @pytest.mark.asyncio
    async def test_delete_conversation(self, orchestrator, store):
        await run_turn(orchestrator)

        await orchestrator.delete_conversation("c1", "U1")

        assert await store.get_conversation("c1") is None
        assert await store.list_turns("c1") == []

    @pytest.mark.asyncio
    async def test_delete_conversation_requires_owner(self, orchestrator, store):
        await run_turn(orchestrator)

        with pytest.raises(UnauthorizedError):
            await orchestrator.delete_conversation("c1", "U2")
        assert await store.get_conversation("c1") is not None

    @pytest.mark.asyncio
    async def test_delete_missing_conversation(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.delete_conversation("nope", "U1")

    @pytest.mark.asyncio
    async def test_delete_cascades_to_attachments(self, orchestrator, manager, store, blob_store):
        attachment = await manager.upload(PNG_BYTES, "a.png", "image/png", "U1")
        turn = await orchestrator.handle_turn(
            "c1", "U1", [], "Look", attachment_refs=[attachment.id]
        )
        await collect(turn.body())

        await orchestrator.delete_conversation("c1", "U1")

        record = await store.get_attachment(attachment.id)
        assert record.status == AttachmentStatus.DELETED
        assert not await blob_store.exists(attachment.storage_key)

    @pytest.mark.asyncio
    async def test_delete_retry_after_partial_failure(self, orchestrator, store):
        """A failed conversation delete after turns are gone can simply be retried."""
        await run_turn(orchestrator)

        with patch.object(
            store, "delete_conversation",
            AsyncMock(side_effect=StoreFault("conversation.delete", "c1", RuntimeError("io"))),
        ):
            with pytest.raises(StoreFault):
                await orchestrator.delete_conversation("c1", "U1")

        assert await store.list_turns("c1") == []
        assert await store.get_conversation("c1") is not None

        await orchestrator.delete_conversation("c1", "U1")
        assert await store.get_conversation("c1") is None

    @pytest.mark.asyncio
    async def test_delete_all_conversations(self, orchestrator, store):
        await run_turn(orchestrator, conversation_id="c1")
        await run_turn(orchestrator, conversation_id="c2")
        await run_turn(orchestrator, conversation_id="c3", owner_id="U2")

        count = await orchestrator.delete_all_conversations("U1")

        assert count == 2
        assert await store.list_conversations("U1") == []
        assert len(await store.list_conversations("U2")) == 1
        assert len(await store.list_turns("c3")) == 2

    @pytest.mark.asyncio
    async def test_delete_trailing_turns(self, orchestrator, store):
        now = utcnow()
        await store.create_conversation(
            Conversation(id="c1", owner_id="U1", model_identifier="llama3.3", created_at=now)
        )
        turns = [
            Turn(conversation_id="c1", role=role, content=f"t{i}",
                 created_at=now + timedelta(seconds=i))
            for i, role in enumerate([Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT])
        ]
        for t in turns:
            await store.create_turn(t)

        deleted = await orchestrator.delete_trailing_turns(turns[2].id, "U1")

        assert deleted == 2
        assert [t.content for t in await store.list_turns("c1")] == ["t0", "t1"]

    @pytest.mark.asyncio
    async def test_delete_trailing_turns_requires_owner(self, orchestrator, store):
        turn, _ = await run_turn(orchestrator)

        with pytest.raises(UnauthorizedError):
            await orchestrator.delete_trailing_turns(turn.user_turn.id, "U2")
        with pytest.raises(NotFoundError):
            await orchestrator.delete_trailing_turns("missing", "U1")


class TestConversationSettings:
    """Tests for visibility, model changes and reads."""

    @pytest.mark.asyncio
    async def test_update_visibility(self, orchestrator):
        await run_turn(orchestrator)

        updated = await orchestrator.update_visibility("c1", "U1", Visibility.PUBLIC)
        assert updated.visibility == Visibility.PUBLIC

        with pytest.raises(UnauthorizedError):
            await orchestrator.update_visibility("c1", "U2", Visibility.PRIVATE)

    @pytest.mark.asyncio
    async def test_update_model(self, orchestrator):
        await run_turn(orchestrator)

        updated = await orchestrator.update_model("c1", "U1", "llama3.2-vision")
        assert updated.model_identifier == "llama3.2-vision"

        with pytest.raises(ModelNotFoundError):
            await orchestrator.update_model("c1", "U1", "nope")

    @pytest.mark.asyncio
    async def test_private_conversation_hidden_from_others(self, orchestrator):
        await run_turn(orchestrator)

        with pytest.raises(UnauthorizedError):
            await orchestrator.get_conversation("c1", "U2")

        await orchestrator.update_visibility("c1", "U1", Visibility.PUBLIC)
        view = await orchestrator.get_conversation("c1", "U2")
        assert [t.content for t in view.turns] == ["Hello", "Hi there"]

    @pytest.mark.asyncio
    async def test_list_history_nests_turns_and_attachments(self, orchestrator, manager):
        attachment = await manager.upload(PNG_BYTES, "a.png", "image/png", "U1")
        turn = await orchestrator.handle_turn(
            "c1", "U1", [], "Look", attachment_refs=[attachment.id]
        )
        await collect(turn.body())
        await run_turn(orchestrator, conversation_id="c2")

        history = await orchestrator.list_history("U1")

        assert {c.id for c in history} == {"c1", "c2"}
        c1 = next(c for c in history if c.id == "c1")
        assert [t.content for t in c1.turns] == ["Look", "Hi there"]
        assert [a.id for a in c1.turns[0].attachments] == [attachment.id]
        assert c1.turns[1].attachments == []
        assert await orchestrator.list_history("U3") == []
