from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Iterable

import httpx
import pytest

from src.relay.adapters import AnthropicAdapter, BaseAdapter, GeminiAdapter, OpenAIAdapter
from src.relay.transcoder import StreamTranscoder
from src.relay.types import StreamContext, UsageRecord


class FakeUpstream:
    def __init__(
        self,
        chunks: Iterable[bytes],
        *,
        error: BaseException | None = None,
        hang: bool = False,
    ) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.hang = hang
        self.reads = 0
        self.closed = False
        self.read_after_close = False

    async def _iterate(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            if self.closed:
                self.read_after_close = True
                return
            self.reads += 1
            yield chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def aclose(self) -> None:
        self.closed = True


class MemoryRecorder:
    def __init__(self, *, fail: bool = False) -> None:
        self.records: list[UsageRecord] = []
        self.fail = fail

    async def record(self, record: UsageRecord) -> None:
        self.records.append(record)
        if self.fail:
            raise RuntimeError("usage store unavailable")


def sse(payload: Any) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def parse_frames(raw: bytes) -> list[Any]:
    frames: list[Any] = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block:
            continue
        assert block.startswith("data: ")
        data = block[6:]
        frames.append(data if data == "[DONE]" else json.loads(data))
    return frames


def make_context(provider: str = "openai", model: str = "client-model") -> StreamContext:
    return StreamContext(user_id="user-1", provider_id=provider, model=model, chat_id="chat-9", req_id="req-1")


def openai_chunk(text: str, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": "chatcmpl-x",
        "object": "chat.completion.chunk",
        "model": "gpt-4o-mini-2024-07-18",
        "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
    }
    payload.update(extra)
    return payload


def anthropic_delta(text: str, output_tokens: int) -> dict[str, Any]:
    return {
        "type": "content_block_delta",
        "index": 0,
        "delta": {"type": "text_delta", "text": text},
        "usage": {"output_tokens": output_tokens},
    }


async def run_transcoder(
    upstream: FakeUpstream,
    adapter: BaseAdapter,
    *,
    recorder: MemoryRecorder | None = None,
    timeout: float = 5.0,
) -> tuple[list[Any], MemoryRecorder, StreamTranscoder]:
    recorder = recorder or MemoryRecorder()
    transcoder = StreamTranscoder(upstream, adapter, make_context(adapter.style), recorder, timeout=timeout)
    raw = b"".join([frame async for frame in transcoder.stream()])
    assert transcoder.record_task is not None
    await transcoder.record_task
    return parse_frames(raw), recorder, transcoder


def contents(frames: list[Any]) -> list[str]:
    return [
        frame["delta"]["content"]
        for frame in frames
        if isinstance(frame, dict) and "content" in frame.get("delta", {})
    ]


def test_openai_stream_success_records_final_usage() -> None:
    upstream = FakeUpstream(
        [
            sse(openai_chunk("Hel")),
            sse(openai_chunk("lo")),
            sse(
                {
                    "model": "gpt-4o-mini-2024-07-18",
                    "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
                }
            ),
            sse({"choices": [], "usage": {"prompt_tokens": 11, "completion_tokens": 2, "total_tokens": 13}}),
            sse("[DONE]"),
        ]
    )

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter()))

    assert contents(frames) == ["Hel", "lo"]
    terminal = frames[-2]
    assert terminal["done"] is True
    assert terminal["finish_reason"] == "stop"
    assert terminal["usage"] == {"prompt_tokens": 11, "completion_tokens": 2, "total_tokens": 13}
    assert frames[-1] == "[DONE]"
    (record,) = recorder.records
    assert record.status == "success"
    assert (record.prompt_tokens, record.completion_tokens) == (11, 2)
    assert record.model == "gpt-4o-mini-2024-07-18"
    assert record.chat_id == "chat-9"
    assert upstream.closed


def test_anthropic_incremental_usage_is_additive() -> None:
    upstream = FakeUpstream(
        [
            b"event: message_start\n"
            + sse(
                {
                    "type": "message_start",
                    "message": {
                        "id": "msg_1",
                        "role": "assistant",
                        "model": "claude-3-5-haiku-20241022",
                        "usage": {"input_tokens": 12, "output_tokens": 0},
                    },
                }
            ),
            b"event: content_block_delta\n" + sse(anthropic_delta("a", 5)),
            b"event: content_block_delta\n" + sse(anthropic_delta("b", 7)),
            b"event: content_block_delta\n" + sse(anthropic_delta("c", 3)),
            b"event: message_delta\n" + sse({"type": "message_delta", "delta": {"stop_reason": "end_turn"}}),
            b"event: message_stop\n" + sse({"type": "message_stop"}),
        ]
    )

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, AnthropicAdapter()))

    assert contents(frames) == ["a", "b", "c"]
    (record,) = recorder.records
    assert record.prompt_tokens == 12
    assert record.completion_tokens == 15
    assert record.model == "claude-3-5-haiku-20241022"
    assert frames[-2]["finish_reason"] == "stop"


def test_gemini_cumulative_usage_overwrites() -> None:
    def frame(text: str, completion: int, finish: str | None = None) -> bytes:
        candidate: dict[str, Any] = {"content": {"role": "model", "parts": [{"text": text}]}}
        if finish:
            candidate["finishReason"] = finish
        return sse(
            {
                "candidates": [candidate],
                "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": completion},
                "modelVersion": "gemini-2.0-flash",
            }
        )

    upstream = FakeUpstream([frame("Hi", 4), frame(" there", 9, "STOP")])

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, GeminiAdapter()))

    assert contents(frames) == ["Hi", " there"]
    (record,) = recorder.records
    assert record.prompt_tokens == 10
    assert record.completion_tokens == 9
    assert record.status == "success"


@pytest.mark.parametrize("count", [1, 10, 1000])
def test_outbound_order_matches_upstream(count: int) -> None:
    upstream = FakeUpstream([sse(openai_chunk(str(index))) for index in range(count)] + [sse("[DONE]")])

    frames, _, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter()))

    assert contents(frames) == [str(index) for index in range(count)]


def test_frames_split_across_arbitrary_chunks() -> None:
    raw = b"".join(sse(openai_chunk(f"part-{index}")) for index in range(20)) + sse("[DONE]")
    upstream = FakeUpstream([raw[offset : offset + 7] for offset in range(0, len(raw), 7)])

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter()))

    assert contents(frames) == [f"part-{index}" for index in range(20)]
    assert recorder.records[0].malformed_frames == 0


def test_malformed_frame_is_dropped_and_stream_continues() -> None:
    upstream = FakeUpstream(
        [
            sse(openai_chunk("one")),
            b"data: {not json\n\n",
            sse('"just a string"'),
            sse(openai_chunk("two")),
            sse("[DONE]"),
        ]
    )

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter()))

    assert contents(frames) == ["one", "two"]
    (record,) = recorder.records
    assert record.status == "success"
    assert record.malformed_frames == 2


def test_end_marker_stops_reading_before_transport_closes() -> None:
    upstream = FakeUpstream(
        [sse(openai_chunk("a")), sse("[DONE]"), sse(openai_chunk("late"))],
        hang=True,
    )

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter(), timeout=1.0))

    assert contents(frames) == ["a"]
    assert upstream.reads == 2
    assert upstream.closed
    assert recorder.records[0].status == "success"


def test_mid_stream_failure_records_partial_usage_and_error_frame() -> None:
    upstream = FakeUpstream(
        [
            sse(anthropic_delta("x", 4)),
            sse(anthropic_delta("y", 6)),
        ],
        error=httpx.ReadError("connection reset"),
    )

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, AnthropicAdapter()))

    assert contents(frames) == ["x", "y"]
    assert frames[-1]["error"]["code"] == "upstream_stream_error"
    assert frames[-1]["done"] is True
    (record,) = recorder.records
    assert record.status == "error"
    assert record.completion_tokens == 10
    assert "connection reset" in (record.error or "")


def test_in_band_error_event_terminates_with_error_frame() -> None:
    upstream = FakeUpstream(
        [
            sse(anthropic_delta("x", 1)),
            sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}),
            sse(anthropic_delta("never", 1)),
        ]
    )

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, AnthropicAdapter()))

    assert contents(frames) == ["x"]
    assert frames[-1]["error"] == {
        "message": "Overloaded",
        "type": "overloaded_error",
        "code": "upstream_error_event",
    }
    assert recorder.records[0].status == "error"
    assert upstream.reads == 2


def test_truncated_anthropic_stream_is_an_error() -> None:
    upstream = FakeUpstream([sse(anthropic_delta("x", 1))])

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, AnthropicAdapter()))

    assert frames[-1]["error"]["code"] == "upstream_truncated"
    assert recorder.records[0].status == "error"


def test_timeout_is_reported_as_upstream_error() -> None:
    upstream = FakeUpstream([sse(openai_chunk("slow"))], hang=True)

    frames, recorder, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter(), timeout=0.05))

    assert contents(frames) == ["slow"]
    assert frames[-1]["error"]["type"] == "timeout"
    assert frames[-1]["error"]["code"] == "upstream_timeout"
    (record,) = recorder.records
    assert record.status == "error"
    assert upstream.closed


def test_client_disconnect_after_two_of_five_frames() -> None:
    async def scenario() -> tuple[FakeUpstream, MemoryRecorder, list[bytes]]:
        upstream = FakeUpstream([sse(anthropic_delta(f"t{index}", 3)) for index in range(5)])
        recorder = MemoryRecorder()
        transcoder = StreamTranscoder(upstream, AnthropicAdapter(), make_context("claude"), recorder)
        stream = transcoder.stream()
        received = [await anext(stream), await anext(stream)]
        await stream.aclose()
        assert transcoder.record_task is not None
        await transcoder.record_task
        return upstream, recorder, received

    upstream, recorder, received = asyncio.run(scenario())

    assert [frame["delta"]["content"] for frame in parse_frames(b"".join(received))] == ["t0", "t1"]
    (record,) = recorder.records
    assert record.status == "cancelled"
    assert record.completion_tokens == 6
    assert upstream.closed
    assert upstream.reads == 2
    assert not upstream.read_after_close


def test_task_cancellation_while_waiting_for_upstream() -> None:
    async def scenario() -> tuple[FakeUpstream, MemoryRecorder]:
        upstream = FakeUpstream([sse(openai_chunk("first"))], hang=True)
        recorder = MemoryRecorder()
        transcoder = StreamTranscoder(upstream, OpenAIAdapter(), make_context(), recorder)

        async def consume() -> None:
            async for _ in transcoder.stream():
                pass

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert transcoder.record_task is not None
        await transcoder.record_task
        return upstream, recorder

    upstream, recorder = asyncio.run(scenario())

    assert recorder.records[0].status == "cancelled"
    assert upstream.closed


def test_finalize_happens_exactly_once_per_termination_path() -> None:
    async def graceful() -> MemoryRecorder:
        _, recorder, transcoder = await run_transcoder(
            FakeUpstream([sse(openai_chunk("a")), sse("[DONE]")]), OpenAIAdapter()
        )
        assert transcoder.usage.finalize("success") is None
        return recorder

    async def upstream_error() -> MemoryRecorder:
        _, recorder, transcoder = await run_transcoder(
            FakeUpstream([sse(openai_chunk("a"))], error=httpx.RemoteProtocolError("peer closed")),
            OpenAIAdapter(),
        )
        assert transcoder.usage.finalize("error") is None
        return recorder

    async def client_cancel() -> MemoryRecorder:
        recorder = MemoryRecorder()
        transcoder = StreamTranscoder(
            FakeUpstream([sse(openai_chunk("a")), sse(openai_chunk("b"))]),
            OpenAIAdapter(),
            make_context(),
            recorder,
        )
        stream = transcoder.stream()
        await anext(stream)
        await stream.aclose()
        await stream.aclose()
        assert transcoder.record_task is not None
        await transcoder.record_task
        return recorder

    async def run_all() -> dict[str, list[int]]:
        counts: dict[str, list[int]] = {"success": [], "error": [], "cancelled": []}
        for _ in range(100):
            for status, path in (("success", graceful), ("error", upstream_error), ("cancelled", client_cancel)):
                recorder = await path()
                assert [record.status for record in recorder.records] == [status]
                counts[status].append(len(recorder.records))
        return counts

    counts = asyncio.run(run_all())

    assert all(value == [1] * 100 for value in counts.values())


def test_recorder_failure_is_logged_not_surfaced(caplog: pytest.LogCaptureFixture) -> None:
    upstream = FakeUpstream([sse(openai_chunk("ok")), sse("[DONE]")])
    recorder = MemoryRecorder(fail=True)

    with caplog.at_level(logging.ERROR, logger="src.relay.transcoder"):
        frames, recorder, _ = asyncio.run(run_transcoder(upstream, OpenAIAdapter(), recorder=recorder))

    assert frames[-1] == "[DONE]"
    assert len(recorder.records) == 1
    assert any("relay.usage record failed" in message for message in caplog.messages)
