"""
Incremental decoders for line-oriented vendor streaming responses.

Both streaming vendors frame events as ``data: <json>`` lines. A decoder keeps
a line buffer across network chunks, holds back the trailing partial line,
and turns each complete event into zero or one text fragment. Lines that do
not parse are skipped. Usage seen in any event overwrites what was captured
before it.
"""

import codecs
import json
import logging
from typing import AsyncIterator, Iterable

from .models import TokenUsage

logger = logging.getLogger(__name__)


class StreamEventError(Exception):
    """Raised when the vendor reports an error inside the stream itself."""

    def __init__(self, message: str, raw: dict | None = None):
        self.message = message
        self.raw = raw
        super().__init__(message)


class StreamDecoder:
    """
    Base incremental decoder.

    Subclasses implement ``handle_event`` to map a parsed event to a text
    fragment and to capture usage or the end of the stream.
    """

    PREFIX = "data: "
    TERMINATOR: str | None = None

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: list[str] = []
        self.usage: TokenUsage | None = None
        self.error: StreamEventError | None = None
        self.done = False

    @property
    def text(self) -> str:
        """Text assembled from every fragment emitted so far."""
        return "".join(self._parts)

    def feed(self, chunk: bytes | str) -> list[str]:
        """
        Append a network chunk and return the fragments it completes.

        The last line of the buffer is held back until a newline arrives
        or ``finish`` is called.
        """
        if self.done:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._process_lines(lines)

    def finish(self) -> list[str]:
        """Flush the held-back line once the feed has ended."""
        if self.done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._process_lines([tail]) if tail else []

    def _process_lines(self, lines: Iterable[str]) -> list[str]:
        fragments = []
        for line in lines:
            fragment = self._process_line(line.rstrip("\r"))
            if fragment:
                self._parts.append(fragment)
                fragments.append(fragment)
            if self.done:
                break
        return fragments

    def _process_line(self, line: str) -> str | None:
        if not line.startswith(self.PREFIX):
            return None
        data = line[len(self.PREFIX):].strip()
        if self.TERMINATOR is not None and data == self.TERMINATOR:
            self.done = True
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream line: %s", data[:100])
            return None
        if not isinstance(event, dict):
            return None
        try:
            return self.handle_event(event)
        except (KeyError, IndexError, TypeError, AttributeError):
            return None

    def handle_event(self, event: dict) -> str | None:
        raise NotImplementedError

    def _set_usage(self, input_tokens: int | None, output_tokens: int | None) -> None:
        current = self.usage or TokenUsage(input_tokens=0, output_tokens=0)
        self.usage = TokenUsage(
            input_tokens=input_tokens if input_tokens is not None else current.input_tokens,
            output_tokens=output_tokens if output_tokens is not None else current.output_tokens,
        )


class OpenAIStreamDecoder(StreamDecoder):
    """
    Chat-completions chunks. With ``stream_options.include_usage`` the usage
    totals arrive in the terminal chunk, whose ``choices`` list is empty.
    """

    TERMINATOR = "[DONE]"

    def handle_event(self, event: dict) -> str | None:
        error = event.get("error")
        if isinstance(error, dict):
            self.error = StreamEventError(
                error.get("message") or error.get("type") or "Stream error",
                raw=event,
            )
            self.done = True
            return None
        usage = event.get("usage")
        if usage:
            self._set_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"))
        choices = event.get("choices") or []
        if not choices:
            return None
        return (choices[0].get("delta") or {}).get("content")


class AnthropicStreamDecoder(StreamDecoder):
    """
    Messages API events. ``event:`` lines are ignored; the JSON ``type`` field
    carries the same information.
    """

    def handle_event(self, event: dict) -> str | None:
        event_type = event.get("type")
        if event_type == "content_block_delta":
            return event["delta"].get("text")
        if event_type == "message_start":
            usage = (event.get("message") or {}).get("usage")
            if usage:
                self._set_usage(usage.get("input_tokens"), usage.get("output_tokens"))
        elif event_type == "message_delta":
            usage = event.get("usage")
            if usage:
                self._set_usage(usage.get("input_tokens"), usage.get("output_tokens"))
        elif event_type == "message_stop":
            self.done = True
        elif event_type == "error":
            error = event.get("error") or {}
            self.error = StreamEventError(
                error.get("message") or error.get("type") or "Stream error",
                raw=event,
            )
            self.done = True
        return None


async def iter_fragments(
    decoder: StreamDecoder,
    chunks: AsyncIterator[bytes],
) -> AsyncIterator[str]:
    """
    Drive ``decoder`` over an async byte feed, yielding fragments in arrival order.

    Transport errors raised by ``chunks`` propagate unchanged; fragments
    already yielded are not retracted. An error event reported inside the
    stream is raised after the fragments that preceded it.
    """
    async for chunk in chunks:
        for fragment in decoder.feed(chunk):
            yield fragment
        if decoder.done:
            break
    else:
        for fragment in decoder.finish():
            yield fragment
    if decoder.error is not None:
        raise decoder.error
