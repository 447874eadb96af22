"""AI reply generation with a bounded wait and a static fallback."""

import asyncio
from typing import Optional

from app.logging_config import get_logger
from app.services.llm import LLMProvider

logger = get_logger("reply_generator")

ELLIPSIS = "..."


def truncate_reply(text: str, max_length: int) -> str:
    """Clamp `text` to `max_length` characters, ending in "..." when cut."""
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text
    if max_length <= len(ELLIPSIS):
        return text[:max_length]
    return text[: max_length - len(ELLIPSIS)] + ELLIPSIS


def build_messages(
    prompt: str,
    max_length: int,
    context: Optional[list[dict]] = None,
    user_message: Optional[str] = None,
) -> list[dict]:
    messages = [
        {
            "role": "system",
            "content": f"{prompt}\n\nReply in plain text, at most {max_length} characters.",
        }
    ]
    history = list(context or [])
    messages.extend(history)
    if user_message and not (history and history[-1] == {"role": "user", "content": user_message}):
        messages.append({"role": "user", "content": user_message})
    return messages


class ReplyGenerator:
    def __init__(
        self,
        provider: Optional[LLMProvider],
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 15.0,
    ):
        self.provider = provider
        self.model = model
        self.timeout_seconds = timeout_seconds

    async def generate(
        self,
        prompt: str,
        fallback: str,
        max_length: int,
        *,
        context: Optional[list[dict]] = None,
        user_message: Optional[str] = None,
    ) -> str:
        """Return generated text, or `fallback` when generation fails for any reason.

        The result is always at most `max_length` characters.
        """
        text = ""
        if self.provider is None:
            logger.warning("No LLM provider configured, using fallback reply")
        else:
            messages = build_messages(prompt, max_length, context, user_message)
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.provider.generate,
                        messages,
                        model=self.model,
                        timeout_seconds=self.timeout_seconds,
                    ),
                    timeout=self.timeout_seconds,
                )
                text = (response.content or "").strip()
                if not text:
                    logger.info("Empty generation result, using fallback")
            except asyncio.TimeoutError:
                logger.warning(
                    "Reply generation timed out, using fallback",
                    extra={"context": {"timeout_seconds": self.timeout_seconds}},
                )
            except Exception as e:
                logger.warning(
                    "Reply generation failed, using fallback",
                    extra={"context": {"error": str(e)[:300]}},
                )

        return truncate_reply(text or fallback, max_length)
