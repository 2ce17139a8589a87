"""Tests for the streaming response transcoder."""

import json
import random
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from transcoder import (
    DEFAULT_MARKERS,
    ChannelState,
    ReasoningMarkers,
    StreamTranscoder,
    merge_delta,
    split_data_line,
    transcode_stream,
)

OPEN = DEFAULT_MARKERS.open
CLOSE = DEFAULT_MARKERS.close


def sse(
    reasoning: str | None = None, content: str | None = None, **delta_extra: Any
) -> bytes:
    """Build one upstream frame."""
    delta: dict[str, Any] = dict(delta_extra)
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if content is not None:
        delta["content"] = content
    payload = {
        "id": "chatcmpl-upstream",
        "object": "chat.completion.chunk",
        "model": "deepseek-ai/deepseek-v3.1",
        "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
    }
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


DONE = b"data: [DONE]\n\n"


def run(transcoder: StreamTranscoder, chunks: list[bytes]) -> list[str]:
    frames: list[str] = []
    for chunk in chunks:
        frames.extend(transcoder.feed(chunk))
    frames.extend(transcoder.finish())
    return frames


def payloads(frames: list[str]) -> list[dict[str, Any]]:
    """Decode the JSON data frames, skipping the sentinel and non-data lines."""
    decoded = []
    for frame in frames:
        payload = split_data_line(frame.rstrip("\n"))
        if payload is None or payload == "[DONE]":
            continue
        decoded.append(json.loads(payload))
    return decoded


def contents(frames: list[str]) -> list[Any]:
    return [p["choices"][0]["delta"].get("content") for p in payloads(frames)]


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class TestMergeDelta:
    """Tests for the reasoning channel transition function."""

    def test_reasoning_opens_block(self) -> None:
        state, text = merge_delta(ChannelState.OPEN, "r1", None)
        assert state is ChannelState.REASONING_OPEN
        assert text == OPEN + "r1"

    def test_reasoning_continues_block(self) -> None:
        state, text = merge_delta(ChannelState.REASONING_OPEN, "r2", None)
        assert state is ChannelState.REASONING_OPEN
        assert text == "r2"

    def test_content_closes_block(self) -> None:
        state, text = merge_delta(ChannelState.REASONING_OPEN, None, "c1")
        assert state is ChannelState.OPEN
        assert text == CLOSE + "c1"

    def test_content_without_block(self) -> None:
        state, text = merge_delta(ChannelState.OPEN, None, "c1")
        assert state is ChannelState.OPEN
        assert text == "c1"

    def test_both_on_one_delta_from_open(self) -> None:
        """Reasoning is applied first, then content closes the block."""
        state, text = merge_delta(ChannelState.OPEN, "r", "c")
        assert state is ChannelState.OPEN
        assert text == OPEN + "r" + CLOSE + "c"

    def test_both_on_one_delta_while_reasoning(self) -> None:
        state, text = merge_delta(ChannelState.REASONING_OPEN, "r", "c")
        assert state is ChannelState.OPEN
        assert text == "r" + CLOSE + "c"

    def test_neither_keeps_state(self) -> None:
        for state in ChannelState:
            next_state, text = merge_delta(state, None, None)
            assert next_state is state
            assert text is None

    def test_empty_strings_are_absent(self) -> None:
        state, text = merge_delta(ChannelState.OPEN, "", "")
        assert state is ChannelState.OPEN
        assert text is None

    def test_custom_markers(self) -> None:
        markers = ReasoningMarkers(open="[", close="]")
        state, text = merge_delta(ChannelState.OPEN, "r", "c", markers)
        assert text == "[r]c"


class TestMergeEnabled:
    """Tests for show_reasoning=True."""

    def test_reasoning_then_content(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=True), [sse(reasoning="r1"), sse(content="c1")])

        assert "".join(contents(frames)) == OPEN + "r1" + CLOSE + "c1"
        assert len(payloads(frames)) == 2
        for payload in payloads(frames):
            assert "reasoning_content" not in payload["choices"][0]["delta"]

    def test_multiple_reasoning_frames_single_open_marker(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        frames = run(
            transcoder,
            [sse(reasoning="a"), sse(reasoning="b"), sse(content="x"), sse(content="y"), DONE],
        )

        assert contents(frames) == [OPEN + "a", "b", CLOSE + "x", "y"]
        assert transcoder.state is ChannelState.OPEN

    def test_role_only_delta_gets_no_content(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=True), [sse(role="assistant")])

        delta = payloads(frames)[0]["choices"][0]["delta"]
        assert delta == {"role": "assistant"}

    def test_reasoning_field_stripped_when_empty(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=True), [sse(reasoning="", content="hi")])

        delta = payloads(frames)[0]["choices"][0]["delta"]
        assert delta == {"content": "hi"}

    def test_unterminated_reasoning_closed_before_done(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        frames = run(transcoder, [sse(reasoning="thinking"), DONE])

        assert contents(frames) == [OPEN + "thinking", CLOSE]
        assert frames[-1] == "data: [DONE]\n\n"
        assert transcoder.state is ChannelState.OPEN

    def test_unterminated_reasoning_closed_at_end_of_stream(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        frames = run(transcoder, [sse(reasoning="thinking")])

        assert contents(frames) == [OPEN + "thinking", CLOSE]
        assert transcoder.state is ChannelState.OPEN

    def test_synthetic_close_reuses_envelope(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=True), [sse(reasoning="r"), DONE])

        closing = payloads(frames)[-1]
        assert closing["id"] == "chatcmpl-upstream"
        assert closing["model"] == "deepseek-ai/deepseek-v3.1"
        assert closing["choices"][0]["delta"] == {"content": CLOSE}


class TestMergeDisabled:
    """Tests for show_reasoning=False."""

    def test_reasoning_only_becomes_empty_content(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=False), [sse(reasoning="secret")])

        delta = payloads(frames)[0]["choices"][0]["delta"]
        assert delta == {"content": ""}

    def test_reasoning_and_content_keeps_content(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=False), [sse(reasoning="secret", content="answer")])

        delta = payloads(frames)[0]["choices"][0]["delta"]
        assert delta == {"content": "answer"}

    def test_state_never_changes(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=False)
        run(transcoder, [sse(reasoning="a"), sse(reasoning="b")])
        assert transcoder.state is ChannelState.OPEN

    def test_no_synthetic_frames(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=False), [sse(reasoning="a"), DONE])
        assert frames[-1] == "data: [DONE]\n\n"
        assert len(frames) == 2

    def test_null_content_becomes_empty(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=False), [sse(content=None, role="assistant")])

        delta = payloads(frames)[0]["choices"][0]["delta"]
        assert delta["content"] == ""


class TestFraming:
    """Tests for line reassembly and frame re-emission."""

    STREAM = b"".join(
        [
            sse(role="assistant"),
            sse(reasoning="Let me think about cafés 世界"),
            sse(reasoning=" some more"),
            sse(content="Bonjour, ça va? \U0001f600"),
            b": keep-alive\n\n",
            sse(content=" done"),
            DONE,
        ]
    )

    @pytest.mark.parametrize("show_reasoning", [True, False])
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 16, 64])
    def test_chunk_boundary_invariance(self, show_reasoning: bool, size: int) -> None:
        """Any chunking yields the same frames as one chunk."""
        expected = run(StreamTranscoder(show_reasoning=show_reasoning), [self.STREAM])
        actual = run(StreamTranscoder(show_reasoning=show_reasoning), split_every(self.STREAM, size))
        assert actual == expected

    @pytest.mark.parametrize("seed", range(10))
    def test_random_partitions(self, seed: int) -> None:
        rng = random.Random(seed)
        cuts = sorted(rng.sample(range(1, len(self.STREAM)), 20))
        bounds = [0, *cuts, len(self.STREAM)]
        chunks = [self.STREAM[a:b] for a, b in zip(bounds, bounds[1:])]

        expected = run(StreamTranscoder(show_reasoning=True), [self.STREAM])
        assert run(StreamTranscoder(show_reasoning=True), chunks) == expected

    def test_multibyte_text_survives_byte_splits(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=True), split_every(self.STREAM, 1))
        text = "".join(c for c in contents(frames) if c)
        assert "世界" in text
        assert "\U0001f600" in text

    def test_partial_line_held_back(self) -> None:
        transcoder = StreamTranscoder()
        frame = sse(content="hello")

        assert transcoder.feed(frame[:10]) == []
        assert transcoder.carryover == frame[:10].decode()
        assert len(transcoder.feed(frame[10:])) == 1

    def test_done_split_across_chunks(self) -> None:
        transcoder = StreamTranscoder()
        assert transcoder.feed(b"data: [DO") == []
        assert transcoder.feed(b"NE]\n\n") == ["data: [DONE]\n\n"]
        assert transcoder.done is True

    def test_termination_round_trip(self) -> None:
        """N content frames plus the sentinel give N frames plus the sentinel."""
        n = 5
        chunks = [sse(content=f"t{i}") for i in range(n)] + [DONE]
        frames = run(StreamTranscoder(show_reasoning=True), chunks)

        assert len(frames) == n + 1
        assert contents(frames) == [f"t{i}" for i in range(n)]
        assert frames[-1] == "data: [DONE]\n\n"

    def test_every_data_frame_ends_with_blank_line(self) -> None:
        frames = run(StreamTranscoder(show_reasoning=True), [self.STREAM])
        for frame in frames:
            if frame.startswith("data:"):
                assert frame.endswith("\n\n")

    def test_crlf_line_endings(self) -> None:
        stream = sse(content="a").replace(b"\n", b"\r\n") + b"data: [DONE]\r\n\r\n"
        frames = run(StreamTranscoder(), [stream])

        assert contents(frames) == ["a"]
        assert frames[-1] == "data: [DONE]\n\n"

    def test_data_prefix_without_space(self) -> None:
        frames = run(StreamTranscoder(), [b'data:{"choices":[{"delta":{"content":"x"}}]}\n\n'])
        assert contents(frames) == ["x"]

    def test_comment_lines_pass_through(self) -> None:
        frames = run(StreamTranscoder(), [b": keep-alive\n\n"])
        assert frames == [": keep-alive\n"]

    def test_event_field_passes_through(self) -> None:
        frames = run(StreamTranscoder(), [b"event: message\n" + sse(content="x")])
        assert frames[0] == "event: message\n"
        assert contents(frames) == ["x"]

    def test_payload_without_choices_reserialized(self) -> None:
        usage = {"id": "x", "choices": [], "usage": {"total_tokens": 3}}
        frames = run(StreamTranscoder(), [f"data: {json.dumps(usage)}\n\n".encode()])

        assert payloads(frames) == [usage]


class TestFailOpen:
    """Tests for malformed upstream frames."""

    def test_malformed_line_forwarded_verbatim(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        frames = run(transcoder, [b"data: {not valid json\n\n", sse(content="ok"), DONE])

        assert frames[0] == "data: {not valid json\n\n"
        assert contents(frames[1:]) == ["ok"]
        assert frames[-1] == "data: [DONE]\n\n"
        assert transcoder.malformed_frames == 1
        assert transcoder.frames == 1

    def test_malformed_line_does_not_touch_state(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        frames = run(transcoder, [sse(reasoning="r"), b"data: {oops\n\n", sse(content="c")])

        assert frames[1] == "data: {oops\n\n"
        assert contents([frames[0], frames[2]]) == [OPEN + "r", CLOSE + "c"]


class TestFinish:
    """Tests for end-of-stream flushing."""

    def test_trailing_partial_frame_discarded(self) -> None:
        transcoder = StreamTranscoder()
        frames = run(transcoder, [sse(content="a"), b'data: {"choices": [{"del'])

        assert contents(frames) == ["a"]
        assert len(frames) == 1
        assert transcoder.carryover == ""

    def test_trailing_complete_frame_emitted(self) -> None:
        frames = run(StreamTranscoder(), [sse(content="a"), sse(content="b").rstrip(b"\n")])
        assert contents(frames) == ["a", "b"]

    def test_trailing_done_without_newline(self) -> None:
        frames = run(StreamTranscoder(), [sse(content="a"), b"data: [DONE]"])
        assert frames[-1] == "data: [DONE]\n\n"

    def test_trailing_non_data_line_discarded(self) -> None:
        frames = run(StreamTranscoder(), [sse(content="a"), b": ping"])
        assert len(frames) == 1


async def _source(chunks: list[bytes], error: Exception | None = None) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


class TestTranscodeStream:
    """Tests for the async driver."""

    @pytest.mark.asyncio
    async def test_relays_and_flushes(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        frames = [
            frame
            async for frame in transcode_stream(
                _source([sse(reasoning="r")[:7], sse(reasoning="r")[7:]]), transcoder
            )
        ]

        # Flush at normal end closes the open reasoning block
        assert contents(frames) == [OPEN + "r", CLOSE]

    @pytest.mark.asyncio
    async def test_transport_error_ends_stream_without_flush(self) -> None:
        transcoder = StreamTranscoder(show_reasoning=True)
        source = _source(
            [sse(reasoning="r"), b'data: {"partial'],
            error=httpx.ReadError("connection reset"),
        )
        frames = [frame async for frame in transcode_stream(source, transcoder)]

        assert contents(frames) == [OPEN + "r"]
        assert transcoder.state is ChannelState.REASONING_OPEN
