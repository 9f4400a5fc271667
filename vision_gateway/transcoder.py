"""
Conversation transcoding into each vendor's native message shape.

The image is always attached to the most recent user turn and never to an
earlier one. Earlier turns are sent as plain text in their original order.
"""

import logging
from dataclasses import dataclass, field
from typing import Sequence

from .models import ConversationTurn, ImagePayload

logger = logging.getLogger(__name__)


@dataclass
class Transcript:
    """Vendor-native message list plus a separate system instruction, if any."""
    messages: list[dict] = field(default_factory=list)
    system: str | None = None


class ConversationTranscoder:
    """
    Base transcoder.

    Subclasses supply the vendor's text message, multimodal message and
    system-instruction handling.
    """

    name: str = "base"

    def transcode(
        self,
        history: Sequence[ConversationTurn],
        image: ImagePayload,
        prompt: str,
        system_prompt: str | None = None,
    ) -> Transcript:
        """
        Build the vendor message list.

        Args:
            history: Prior turns, oldest first; the last one is the active user turn
            image: Image for the active user turn
            prompt: Text used when there is no history yet
            system_prompt: Optional system instruction

        Returns:
            Transcript with the vendor messages
        """
        messages: list[dict] = []
        if not history:
            messages.append(self.multimodal_message(prompt, image))
        else:
            for turn in history[:-1]:
                messages.append(self.text_message(turn))
            last = history[-1]
            if last.role == "user":
                messages.append(self.multimodal_message(last.content, image))
            else:
                logger.warning(
                    "%s: last history turn is '%s', image not attached",
                    self.name, last.role,
                )
        return self.apply_system(messages, system_prompt)

    def text_message(self, turn: ConversationTurn) -> dict:
        return {"role": turn.role, "content": turn.content}

    def multimodal_message(self, text: str, image: ImagePayload) -> dict:
        raise NotImplementedError

    def apply_system(self, messages: list[dict], system_prompt: str | None) -> Transcript:
        return Transcript(messages=messages, system=system_prompt or None)


class OpenAITranscoder(ConversationTranscoder):
    """System instruction is prepended as a ``system`` message."""

    name = "openai"

    def multimodal_message(self, text: str, image: ImagePayload) -> dict:
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": text},
                {"type": "image_url", "image_url": {"url": image.data_url}},
            ],
        }

    def apply_system(self, messages: list[dict], system_prompt: str | None) -> Transcript:
        if system_prompt:
            messages = [{"role": "system", "content": system_prompt}, *messages]
        return Transcript(messages=messages)


class AnthropicTranscoder(ConversationTranscoder):
    """System instruction travels in the top-level ``system`` field."""

    name = "anthropic"

    def multimodal_message(self, text: str, image: ImagePayload) -> dict:
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": text},
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image.media_type,
                        "data": image.data,
                    },
                },
            ],
        }


class GoogleTranscoder(ConversationTranscoder):
    """
    Gemini ``contents``: assistant turns use role ``model`` and there is no
    system role, so the instruction is prefixed to the first user message.
    """

    name = "google"

    def text_message(self, turn: ConversationTurn) -> dict:
        role = "model" if turn.role == "assistant" else "user"
        return {"role": role, "parts": [{"text": turn.content}]}

    def multimodal_message(self, text: str, image: ImagePayload) -> dict:
        return {
            "role": "user",
            "parts": [
                {"text": text},
                {"inline_data": {"mime_type": image.media_type, "data": image.data}},
            ],
        }

    def apply_system(self, messages: list[dict], system_prompt: str | None) -> Transcript:
        if not system_prompt:
            return Transcript(messages=messages)
        for message in messages:
            if message["role"] == "user":
                first_part = message["parts"][0]
                first_part["text"] = f"{system_prompt}\n\n{first_part['text']}"
                return Transcript(messages=messages)
        messages.insert(0, {"role": "user", "parts": [{"text": system_prompt}]})
        return Transcript(messages=messages)
