"""Conversation title generation.

A title is a single completion from the title model. Any failure or a reply
slower than the timeout yields the default title; title generation never
fails a chat request.
"""
import asyncio
import logging

from app.chat.schemas import DEFAULT_CONVERSATION_TITLE
from app.errors import ProviderFault

from .base import ModelStreamProvider
from .prompts import TITLE_SYSTEM_PROMPT, build_title_messages

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 80


def clean_title(raw: str) -> str:
    """Normalise a model-produced title.

    Keeps the first non-empty line, strips surrounding quotes and caps the
    length. Returns the default title when nothing usable remains.
    """
    lines = [line.strip() for line in raw.splitlines() if line.strip()]
    if not lines:
        return DEFAULT_CONVERSATION_TITLE
    title = lines[0].strip("\"'` ").strip()
    if not title:
        return DEFAULT_CONVERSATION_TITLE
    return title[:MAX_TITLE_LENGTH].rstrip()


async def generate_title(
    provider: ModelStreamProvider,
    model: str,
    first_message: str,
    timeout_seconds: float,
) -> str:
    """Ask the title model for a short title for ``first_message``.

    Args:
        provider: Provider serving the title model.
        model: Provider-side identifier of the title model.
        first_message: Text of the opening user message.
        timeout_seconds: Upper bound on the wait.

    Returns:
        The cleaned title, or the default title on failure or timeout.
    """
    try:
        raw = await asyncio.wait_for(
            provider.complete(
                model,
                build_title_messages(first_message),
                system=TITLE_SYSTEM_PROMPT,
                max_tokens=64,
            ),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning("Title generation timed out after %ss", timeout_seconds)
        return DEFAULT_CONVERSATION_TITLE
    except ProviderFault as e:
        logger.warning("Title generation failed: %s", e)
        return DEFAULT_CONVERSATION_TITLE

    return clean_title(raw)
