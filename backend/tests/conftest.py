"""Shared test fixtures and fakes for backend tests."""
import asyncio
import json
from typing import List, Optional

import pytest

from app.ai_provider.base import LLMMessage, ModelStreamProvider
from app.ai_provider.resolver import ProviderResolver
from app.attachments.service import AttachmentLifecycleManager
from app.blobs.local import LocalBlobStore
from app.chat.orchestrator import StreamOrchestrator
from app.config import ChatModelConfig
from app.errors import ProviderFault
from app.storage.duckdb_store import DuckDBStore

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 1016


class FakeProvider(ModelStreamProvider):
    """Scripted ModelStreamProvider.

    Args:
        deltas: Text deltas the stream yields, in order.
        fail_at: Raise ProviderFault before yielding the delta at this index
                 (``len(deltas)`` fails after the last delta).
        hang_after: Block forever after yielding this many deltas.
        title: Reply returned by ``complete``.
        title_delay: Seconds ``complete`` sleeps before answering.
        title_error: Raise ProviderFault from ``complete``.
    """

    def __init__(
        self,
        deltas: Optional[List[str]] = None,
        fail_at: Optional[int] = None,
        hang_after: Optional[int] = None,
        title: str = "Friendly Greeting",
        title_delay: float = 0.0,
        title_error: bool = False,
    ) -> None:
        self.deltas = list(deltas if deltas is not None else ["Hi", " there"])
        self.fail_at = fail_at
        self.hang_after = hang_after
        self.title = title
        self.title_delay = title_delay
        self.title_error = title_error
        self.stream_calls: List[dict] = []
        self.complete_calls: List[dict] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    async def stream(self, model, messages: List[LLMMessage], system=None):
        self.stream_calls.append({"model": model, "messages": messages, "system": system})
        try:
            for index, delta in enumerate(self.deltas):
                if self.fail_at == index:
                    raise ProviderFault("boom", self.name)
                if self.hang_after == index:
                    await asyncio.Event().wait()
                await asyncio.sleep(0)
                yield delta
            if self.fail_at is not None and self.fail_at >= len(self.deltas):
                raise ProviderFault("boom", self.name)
        finally:
            self.closed = True

    async def complete(self, model, messages, system=None, max_tokens=256) -> str:
        self.complete_calls.append({"model": model, "messages": messages, "system": system})
        if self.title_delay:
            await asyncio.sleep(self.title_delay)
        if self.title_error:
            raise ProviderFault("title failed", self.name)
        return self.title

    async def health_check(self) -> bool:
        return True


def make_models() -> List[ChatModelConfig]:
    return [
        ChatModelConfig(id="llama3.3", label="Llama 3.3", api_identifier="llama3.3-api"),
        ChatModelConfig(id="llama3.2-vision", label="Llama 3.2 Vision", api_identifier="vision-api"),
    ]


def parse_stream(lines: List[str]) -> List[tuple]:
    """Split data stream lines into (code, decoded value) pairs."""
    parsed = []
    for chunk in lines:
        for line in chunk.splitlines():
            if not line:
                continue
            code, _, payload = line.partition(":")
            parsed.append((code, json.loads(payload)))
    return parsed


async def collect(body) -> List[str]:
    return [line async for line in body]


@pytest.fixture
def store():
    """Fresh in-memory DuckDB store."""
    return DuckDBStore(":memory:")


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"), secret_key="test-secret")


@pytest.fixture
def manager(store, blob_store):
    return AttachmentLifecycleManager(store, blob_store)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def resolver(provider):
    return ProviderResolver(
        models=make_models(),
        providers={"openai": provider},
        default_model_id="llama3.3",
        title_model_id="llama3.2-vision",
    )


@pytest.fixture
def orchestrator(store, resolver, manager):
    return StreamOrchestrator(store, resolver, manager, title_timeout_seconds=0.5)
