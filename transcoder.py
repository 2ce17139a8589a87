"""
Streaming response transcoder.

Re-frames an upstream server-sent-event byte stream for the downstream client:

- Reassembles lines split across arbitrary network chunks (including split
  multi-byte UTF-8 characters) using a carry-over buffer
- Splices the reasoning channel (``delta.reasoning_content``) into the visible
  ``delta.content`` between <think> markers, or drops it entirely
- Re-emits every data line as its own event-stream frame

The reasoning channel is tracked as an explicit two-state machine so the merge
rules can be tested without any transport:

    OPEN --reasoning--> REASONING_OPEN --content--> OPEN

A transcoder instance belongs to exactly one upstream call.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class ChannelState(Enum):
    """Whether an opened reasoning span is still awaiting its close marker."""

    OPEN = "open"
    REASONING_OPEN = "reasoning_open"


@dataclass(frozen=True)
class ReasoningMarkers:
    """Text wrapped around the reasoning span when it is merged into content."""

    open: str = "<think>\n"
    close: str = "</think>\n\n"


DEFAULT_MARKERS = ReasoningMarkers()


def merge_delta(
    state: ChannelState,
    reasoning: str | None,
    content: str | None,
    markers: ReasoningMarkers = DEFAULT_MARKERS,
) -> tuple[ChannelState, str | None]:
    """
    Transition function for the reasoning channel.

    Reasoning is applied before content, so a delta carrying both produces
    ``[open] + reasoning + close + content`` and ends in OPEN.

    Returns:
        (next_state, merged_text) where merged_text is None when the delta
        carried neither reasoning nor content
    """
    parts: list[str] = []

    if reasoning:
        if state is ChannelState.OPEN:
            parts.append(markers.open)
            state = ChannelState.REASONING_OPEN
        parts.append(reasoning)

    if content:
        if state is ChannelState.REASONING_OPEN:
            parts.append(markers.close)
            state = ChannelState.OPEN
        parts.append(content)

    return state, "".join(parts) if parts else None


def split_data_line(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def format_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


class StreamTranscoder:
    """
    Incremental SSE re-framer for a single upstream call.

    Usage:
        transcoder = StreamTranscoder(show_reasoning=True)
        for chunk in upstream_chunks:
            for frame in transcoder.feed(chunk):
                write(frame)
        for frame in transcoder.finish():
            write(frame)
    """

    def __init__(
        self,
        show_reasoning: bool = False,
        markers: ReasoningMarkers = DEFAULT_MARKERS,
    ):
        """
        Args:
            show_reasoning: Merge reasoning into content (True) or drop it (False)
            markers: Open/close text around merged reasoning
        """
        self.show_reasoning = show_reasoning
        self.markers = markers
        self.state = ChannelState.OPEN
        self.frames = 0  # Data frames parsed and re-serialized
        self.malformed_frames = 0  # Data lines forwarded verbatim after a parse failure
        self.done = False  # Termination sentinel seen
        self._carryover = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        # Envelope fields of the last parsed frame, reused for synthetic frames
        self._envelope: dict[str, Any] = {}

    @property
    def carryover(self) -> str:
        return self._carryover

    def feed(self, chunk: bytes) -> list[str]:
        """Consume one upstream chunk and return the frames it completes."""
        text = self._decoder.decode(chunk)
        if not text:
            return []

        lines = (self._carryover + text).split("\n")
        # Last fragment may be incomplete
        self._carryover = lines.pop()

        frames: list[str] = []
        for line in lines:
            frames.extend(self.process_line(line))
        return frames

    def finish(self) -> list[str]:
        """
        Flush at normal end of the upstream stream.

        A trailing line without a newline is emitted only if it is a complete
        frame (the sentinel or parseable JSON). An unterminated reasoning span
        is closed with a synthetic frame.
        """
        tail = (self._carryover + self._decoder.decode(b"", final=True)).rstrip("\r")
        self._carryover = ""

        frames: list[str] = []
        if tail:
            payload = split_data_line(tail)
            if payload is not None and self._is_complete_payload(payload):
                frames.extend(self.process_line(tail))
            else:
                logger.debug(f"Discarding incomplete trailing line: {tail[:80]!r}")

        if self.state is ChannelState.REASONING_OPEN:
            frames.append(self._close_reasoning())
        return frames

    def process_line(self, line: str) -> list[str]:
        """Transform one complete line into zero or more downstream frames."""
        line = line.rstrip("\r")
        if not line:
            # Frame separators are re-synthesized after each data line
            return []

        payload = split_data_line(line)
        if payload is None:
            # Comments, keep-alives, event:/id: fields
            return [line + "\n"]

        if payload.strip() == DONE_SENTINEL:
            frames: list[str] = []
            if self.state is ChannelState.REASONING_OPEN:
                frames.append(self._close_reasoning())
            self.done = True
            frames.append(line + "\n\n")
            return frames

        try:
            data = json.loads(payload)
        except ValueError:
            self.malformed_frames += 1
            logger.debug(f"Forwarding malformed frame unchanged: {line[:80]!r}")
            return [line + "\n\n"]

        self.frames += 1
        if isinstance(data, dict):
            self._remember_envelope(data)
            self._rewrite_delta(data)
        return [format_frame(data)]

    def _rewrite_delta(self, data: dict[str, Any]) -> None:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return

        reasoning = delta.pop("reasoning_content", None)
        content = delta.get("content")
        if not isinstance(reasoning, str):
            reasoning = None

        if self.show_reasoning:
            self.state, merged = merge_delta(
                self.state,
                reasoning,
                content if isinstance(content, str) else None,
                self.markers,
            )
            if merged is not None:
                delta["content"] = merged
        else:
            delta["content"] = content if isinstance(content, str) and content else ""

    def _remember_envelope(self, data: dict[str, Any]) -> None:
        for key in ("id", "object", "created", "model"):
            if key in data:
                self._envelope[key] = data[key]

    def _close_reasoning(self) -> str:
        self.state = ChannelState.OPEN
        frame = dict(self._envelope)
        frame["choices"] = [
            {"index": 0, "delta": {"content": self.markers.close}, "finish_reason": None}
        ]
        return format_frame(frame)

    @staticmethod
    def _is_complete_payload(payload: str) -> bool:
        if payload.strip() == DONE_SENTINEL:
            return True
        try:
            json.loads(payload)
        except ValueError:
            return False
        return True


async def transcode_stream(
    chunks: AsyncIterator[bytes], transcoder: StreamTranscoder
) -> AsyncGenerator[str, None]:
    """
    Drive a transcoder from an async byte source.

    Normal end flushes the transcoder. A transport error on the source ends
    the downstream stream immediately, without flushing.
    """
    try:
        async for chunk in chunks:
            for frame in transcoder.feed(chunk):
                yield frame
    except httpx.HTTPError as e:
        logger.error(f"Upstream stream error, closing downstream stream: {e}")
        return

    for frame in transcoder.finish():
        yield frame
