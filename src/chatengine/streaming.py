"""Incremental decoder for server-sent-event style completion streams.

Raw byte chunks are decoded as UTF-8 (multi-byte sequences may straddle chunk
boundaries), split into newline-delimited frames, stripped of the fixed
``data: `` prefix and parsed as JSON. Each parseable frame that announces a
role or carries text yields one immutable ``DeltaEvent``; the stream ends with
a single ``is_final`` event.

Two framing modes are supported and must be chosen by the backend:

- DELTA: ``choices[0].delta.{role,content}`` (or ``choices[0].text`` for
  prompt completions) carries only the newly produced text.
- FULL_REPLACEMENT: ``message.content.parts[0]`` carries the whole message so
  far; the fragment is the suffix beyond the previously seen text.

Malformed frames are logged and dropped; they never abort the stream. Once the
``[DONE]`` sentinel is seen, everything after it is ignored.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Optional

from .metrics import stream_frames_total
from .models import Role

logger = logging.getLogger("chatengine.streaming")

__all__ = [
    "DONE_SENTINEL",
    "FRAME_PREFIX_LENGTH",
    "DeltaEvent",
    "FramingMode",
    "StreamDecoder",
]

FRAME_PREFIX_LENGTH = len("data: ")
DONE_SENTINEL = "[DONE]"


class FramingMode(str, Enum):
    """How text is carried across frames."""

    DELTA = "delta"
    FULL_REPLACEMENT = "full_replacement"


@dataclass(frozen=True)
class DeltaEvent:
    """One decoded stream update.

    Attributes:
        fragment: Newly produced text ("" for role announcements and the final event)
        role: Sticky role in effect for this frame, if any has been announced
        is_final: True only for the terminal event
        message_id: Server-assigned message id (full-replacement framing)
        conversation_id: Server-assigned conversation id (full-replacement framing)
    """

    fragment: str
    role: Optional[Role] = None
    is_final: bool = False
    message_id: Optional[str] = None
    conversation_id: Optional[str] = None


def _first_choice(record: dict) -> Optional[dict]:
    choices = record.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    return choice if isinstance(choice, dict) else None


class StreamDecoder:
    """Turns response body chunks into ``DeltaEvent`` values.

    A decoder instance serves exactly one response body. Use ``events()`` for
    pull-style async iteration, or ``feed()`` and ``close()`` to push chunks
    manually.

    Example:
        >>> decoder = StreamDecoder(FramingMode.DELTA)
        >>> [e.fragment for e in decoder.feed(b'data: {"choices":[{"delta":{"content":"Hi"}}]}\\n')]
        ['Hi']
        >>> decoder.feed(b"data: [DONE]\\n")
        []
        >>> decoder.close()[0].is_final
        True
    """

    def __init__(
        self,
        framing: FramingMode,
        prefix_length: int = FRAME_PREFIX_LENGTH,
        sentinel: str = DONE_SENTINEL,
    ):
        self.framing = FramingMode(framing)
        self.prefix_length = prefix_length
        self.sentinel = sentinel

        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._role: Optional[Role] = None
        self._full_text = ""
        self._message_id: Optional[str] = None
        self._conversation_id: Optional[str] = None
        self._terminated = False
        self._closed = False
        self._iterated = False

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    def full_text(self) -> str:
        """Accumulated text (full-replacement framing only)."""
        return self._full_text

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def terminated(self) -> bool:
        """True once the sentinel frame has been seen."""
        return self._terminated

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> list[DeltaEvent]:
        """Decode one body chunk.

        The trailing partial line is kept until the next chunk or ``close()``.

        Args:
            chunk: Raw bytes as delivered by the transport

        Returns:
            Events for the complete frames in this chunk
        """
        if self._terminated or self._closed:
            return []

        self._pending += self._text_decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return self._process_lines(lines)

    def close(self) -> list[DeltaEvent]:
        """Flush the trailing partial frame and emit the final event.

        Idempotent: calls after the first return an empty list.
        """
        if self._closed:
            return []

        events: list[DeltaEvent] = []
        if not self._terminated:
            tail = self._pending + self._text_decoder.decode(b"", final=True)
            if tail:
                events.extend(self._process_lines([tail]))
        self._pending = ""
        self._closed = True

        events.append(
            DeltaEvent(
                fragment="",
                role=self._role,
                is_final=True,
                message_id=self._message_id,
                conversation_id=self._conversation_id,
            )
        )
        logger.debug(
            "stream_closed",
            extra={
                "framing": self.framing.value,
                "terminated_by_sentinel": self._terminated,
            },
        )
        return events

    async def events(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[DeltaEvent]:
        """Drain ``chunks`` into events, ending with the final event.

        Raises:
            RuntimeError: If called a second time on the same decoder
        """
        if self._iterated:
            raise RuntimeError("StreamDecoder can only be consumed once")
        self._iterated = True

        async for chunk in chunks:
            for event in self.feed(chunk):
                yield event
            if self._terminated:
                break

        for event in self.close():
            yield event

    def _process_lines(self, lines: list[str]) -> list[DeltaEvent]:
        events: list[DeltaEvent] = []
        for line in lines:
            payload = line.rstrip("\r")[self.prefix_length:]

            if payload == self.sentinel:
                self._terminated = True
                stream_frames_total.labels(self.framing.value, "terminal").inc()
                break

            if not payload.strip():
                continue

            event = self._parse_frame(payload)
            if event is not None:
                events.append(event)
        return events

    def _parse_frame(self, payload: str) -> Optional[DeltaEvent]:
        try:
            record = json.loads(payload)
        except ValueError as e:
            stream_frames_total.labels(self.framing.value, "malformed").inc()
            logger.debug(
                "stream_frame_discarded",
                extra={"error": str(e), "frame_preview": payload[:200]},
            )
            return None

        if not isinstance(record, dict):
            stream_frames_total.labels(self.framing.value, "ignored").inc()
            return None

        if self.framing is FramingMode.DELTA:
            event = self._delta_event(record)
        else:
            event = self._full_replacement_event(record)

        outcome = "event" if event is not None else "ignored"
        stream_frames_total.labels(self.framing.value, outcome).inc()
        return event

    def _delta_event(self, record: dict) -> Optional[DeltaEvent]:
        choice = _first_choice(record)
        if choice is None:
            return None

        announced = False
        fragment: Any = None
        delta = choice.get("delta")
        if isinstance(delta, dict):
            role = delta.get("role")
            if isinstance(role, str) and role:
                self._role = Role.parse(role)
                announced = True
            fragment = delta.get("content")
        else:
            # Prompt completions carry plain text per choice
            fragment = choice.get("text")

        if not isinstance(fragment, str):
            fragment = ""
        if not fragment and not announced:
            return None
        return DeltaEvent(fragment=fragment, role=self._role)

    def _full_replacement_event(self, record: dict) -> Optional[DeltaEvent]:
        conversation_id = record.get("conversation_id")
        if isinstance(conversation_id, str) and conversation_id:
            self._conversation_id = conversation_id

        message = record.get("message")
        if not isinstance(message, dict):
            return None

        author = message.get("author")
        author_role = author.get("role") if isinstance(author, dict) else None
        # Only the assistant's own message is tracked
        if author_role != Role.ASSISTANT.value:
            return None

        content = message.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not parts or not isinstance(parts[0], str):
            return None

        announced = self._role is None
        self._role = Role.ASSISTANT

        message_id = message.get("id")
        if isinstance(message_id, str) and message_id:
            self._message_id = message_id

        full = parts[0]
        fragment = full[len(self._full_text):]
        self._full_text += fragment

        if not fragment and not announced:
            return None
        return DeltaEvent(
            fragment=fragment,
            role=self._role,
            message_id=self._message_id,
            conversation_id=self._conversation_id,
        )
