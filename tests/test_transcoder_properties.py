"""
Property-based tests for conversation transcoding.

Feature: vision-gateway
Property 11: 图片只附加到最新的用户轮次
"""

from hypothesis import given, strategies as st, settings

from vision_gateway.models import ConversationTurn, ImagePayload
from vision_gateway.transcoder import (
    AnthropicTranscoder,
    GoogleTranscoder,
    OpenAITranscoder,
)


IMAGE = ImagePayload(data="iVBORw0KGgo=", media_type="image/png")


def carries_image(message: dict) -> bool:
    parts = message.get("content") if "content" in message else message.get("parts")
    if not isinstance(parts, list):
        return False
    return any(
        part.get("type") in ("image_url", "image") or "inline_data" in part
        for part in parts
    )


def message_text(message: dict) -> str:
    if "parts" in message:
        return "".join(part.get("text", "") for part in message["parts"])
    content = message["content"]
    if isinstance(content, str):
        return content
    return "".join(part.get("text", "") for part in content if part.get("type") == "text")


@st.composite
def user_terminated_history(draw):
    contents = draw(st.lists(st.text(min_size=1, max_size=30), min_size=1, max_size=9))
    count = len(contents) if len(contents) % 2 == 1 else len(contents) - 1
    return [
        ConversationTurn(role="user" if i % 2 == 0 else "assistant", content=contents[i])
        for i in range(count)
    ]


class TestSingleTurn:

    def test_single_user_turn_yields_one_multimodal_message(self):
        history = [ConversationTurn("user", "what is this chart?")]

        transcript = AnthropicTranscoder().transcode(history, IMAGE, prompt="unused")

        assert len(transcript.messages) == 1
        message = transcript.messages[0]
        assert message["role"] == "user"
        assert message["content"][0] == {"type": "text", "text": "what is this chart?"}
        assert message["content"][1]["source"] == {
            "type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo=",
        }

    def test_empty_history_uses_prompt(self):
        transcript = OpenAITranscoder().transcode([], IMAGE, prompt="Analyze this chart")

        assert transcript.messages == [{
            "role": "user",
            "content": [
                {"type": "text", "text": "Analyze this chart"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw0KGgo="}},
            ],
        }]


class TestImageOnLatestUserTurn:
    """
    Property 11: 图片只附加到最新的用户轮次

    Exactly the last message carries the image; earlier turns are plain text
    in their original order.
    """

    def test_three_turn_history(self):
        history = [
            ConversationTurn("user", "q1"),
            ConversationTurn("assistant", "a1"),
            ConversationTurn("user", "q2"),
        ]

        messages = AnthropicTranscoder().transcode(history, IMAGE, prompt="unused").messages

        assert messages[0] == {"role": "user", "content": "q1"}
        assert messages[1] == {"role": "assistant", "content": "a1"}
        assert [carries_image(m) for m in messages] == [False, False, True]
        assert message_text(messages[2]) == "q2"

    @settings(max_examples=100)
    @given(
        history=user_terminated_history(),
        transcoder=st.sampled_from([OpenAITranscoder(), AnthropicTranscoder(), GoogleTranscoder()]),
    )
    def test_only_last_message_carries_image(self, history, transcoder):
        messages = transcoder.transcode(history, IMAGE, prompt="unused").messages

        assert len(messages) == len(history)
        assert [carries_image(m) for m in messages] == [False] * (len(history) - 1) + [True]
        assert [message_text(m) for m in messages] == [turn.content for turn in history]


class TestSystemInstruction:

    def test_openai_prepends_system_message(self):
        transcript = OpenAITranscoder().transcode(
            [ConversationTurn("user", "q")], IMAGE, prompt="unused", system_prompt="You are an analyst",
        )

        assert transcript.messages[0] == {"role": "system", "content": "You are an analyst"}
        assert carries_image(transcript.messages[1])
        assert transcript.system is None

    def test_anthropic_keeps_system_separate(self):
        transcript = AnthropicTranscoder().transcode(
            [ConversationTurn("user", "q")], IMAGE, prompt="unused", system_prompt="You are an analyst",
        )

        assert transcript.system == "You are an analyst"
        assert len(transcript.messages) == 1

    def test_google_folds_system_into_first_user_message(self):
        history = [
            ConversationTurn("user", "q1"),
            ConversationTurn("assistant", "a1"),
            ConversationTurn("user", "q2"),
        ]

        messages = GoogleTranscoder().transcode(
            history, IMAGE, prompt="unused", system_prompt="SYS",
        ).messages

        assert messages[0] == {"role": "user", "parts": [{"text": "SYS\n\nq1"}]}
        assert messages[1] == {"role": "model", "parts": [{"text": "a1"}]}
        assert messages[2]["parts"][0] == {"text": "q2"}
        assert messages[2]["parts"][1] == {"inline_data": {"mime_type": "image/png", "data": "iVBORw0KGgo="}}


class TestNonUserFinalTurn:

    def test_image_is_not_attached_when_last_turn_is_assistant(self):
        history = [ConversationTurn("user", "q1"), ConversationTurn("assistant", "a1")]

        messages = AnthropicTranscoder().transcode(history, IMAGE, prompt="unused").messages

        assert messages == [{"role": "user", "content": "q1"}]
