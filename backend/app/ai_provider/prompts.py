"""Prompt templates for chat and title generation."""
from typing import List

from .base import LLMMessage

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly assistant. Keep your responses concise and helpful. "
    "When the user shares images, describe what is relevant to their question."
)

TITLE_SYSTEM_PROMPT = """You will generate a short title based on the first message a user begins a conversation with.

<rules>
- Keep the title under 80 characters.
- Summarise the topic of the message, not its wording.
- Do not use quotes or colons.
- Reply with the title only.
</rules>"""


def build_title_messages(first_message: str) -> List[LLMMessage]:
    """Wrap the opening user message for a title request."""
    return [LLMMessage(role="user", content=f"<message>\n{first_message}\n</message>")]
