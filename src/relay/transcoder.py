"""Streaming translation of one upstream response into the client schema.

A transcoder is a single forward pass over the upstream bytes: the outbound
consumer pulls frames, and only then is the next upstream chunk read, so a slow
client suspends the upstream read instead of growing a buffer. Exactly one
usage record is produced per transcoder whichever way the stream ends.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Iterator
from typing import Any, Protocol

import httpx

from .adapters import BaseAdapter
from .errors import UpstreamStreamError
from .recorder import UsageRecorder
from .sse import DONE_FRAME, SSEDecoder, SSEEvent, encode_frame
from .types import RecordStatus, StreamContext, UsageRecord
from .usage import UsageAccumulator

logger = logging.getLogger(__name__)

DEFAULT_STREAM_TIMEOUT_SECONDS = 60.0

# keeps fire-and-forget recorder tasks referenced until they finish
_background_tasks: set[asyncio.Task[None]] = set()


class UpstreamBody(Protocol):
    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


def _log_stream_event(level: int, *, event: str, ctx: StreamContext, detail: str | None = None) -> None:
    message = (
        f"{event} req_id={ctx.req_id} provider={ctx.provider_id} model={ctx.model} "
        f"prompt={ctx.prompt_tokens} completion={ctx.completion_tokens}"
    )
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class StreamTranscoder:
    def __init__(
        self,
        upstream: UpstreamBody,
        adapter: BaseAdapter,
        context: StreamContext,
        recorder: UsageRecorder,
        *,
        timeout: float = DEFAULT_STREAM_TIMEOUT_SECONDS,
    ) -> None:
        self.upstream = upstream
        self.adapter = adapter
        self.context = context
        self.usage = UsageAccumulator(context)
        self.recorder = recorder
        self.timeout = timeout
        self.record_task: asyncio.Task[None] | None = None
        self._stream_id = f"chatcmpl-{uuid.uuid4().hex[:12]}"
        self._finish_reason: str | None = None
        self._ended = False
        self._closed = False

    async def stream(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        decoder = SSEDecoder()
        chunks = self.upstream.aiter_bytes()
        try:
            while not self._ended:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise self._timeout_error()
                try:
                    chunk = await asyncio.wait_for(anext(chunks), remaining)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise self._timeout_error() from None
                for frame in self._translate(decoder.feed(chunk)):
                    yield frame
            if not self._ended:
                for frame in self._translate(decoder.flush()):
                    yield frame
            if not self._ended and not self.adapter.eof_is_terminal:
                raise UpstreamStreamError(
                    "upstream closed before the end of the stream",
                    error_type="provider_server_error",
                    code="upstream_truncated",
                )
            await self._close_upstream()
            self._finalize("success")
            yield encode_frame(self._terminal_payload())
            yield DONE_FRAME
        except UpstreamStreamError as exc:
            await self._close_upstream()
            self._finalize("error", error=str(exc))
            yield encode_frame(self._error_payload(exc.message, exc.error_type, exc.code))
        except httpx.HTTPError as exc:
            await self._close_upstream()
            detail = str(exc) or type(exc).__name__
            self._finalize("error", error=detail)
            yield encode_frame(self._error_payload(detail, "provider_server_error", "upstream_stream_error"))
        except (asyncio.CancelledError, GeneratorExit):
            await self._close_upstream()
            if not self.usage.finalized:
                self._finalize("cancelled")
            raise
        except Exception as exc:
            logger.exception("relay.stream unexpected failure req_id=%s", self.context.req_id)
            await self._close_upstream()
            detail = str(exc) or type(exc).__name__
            self._finalize("error", error=detail)
            yield encode_frame(self._error_payload(detail, "internal_error", "relay_internal_error"))
        finally:
            await self._close_upstream()

    def _translate(self, events: list[SSEEvent]) -> Iterator[bytes]:
        for event in events:
            step = self.adapter.decode(event.data, self.usage)
            for delta in step.deltas:
                yield encode_frame(self._chunk_payload(delta))
            if step.finish_reason is not None:
                self._finish_reason = step.finish_reason
            if step.error is not None:
                error = step.error
                raise UpstreamStreamError(
                    str(error.get("message") or "upstream reported an error"),
                    error_type=str(error.get("type") or "provider_error"),
                    code="upstream_error_event",
                )
            if step.done:
                self._ended = True
                return

    def _chunk_payload(self, delta: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": self._stream_id,
            "object": "chat.completion.chunk",
            "model": self.context.model,
            "delta": delta,
            "finish_reason": None,
        }

    def _terminal_payload(self) -> dict[str, Any]:
        ctx = self.context
        return {
            "id": self._stream_id,
            "object": "chat.completion.chunk",
            "model": ctx.model,
            "delta": {},
            "finish_reason": self._finish_reason or "stop",
            "done": True,
            "usage": {
                "prompt_tokens": ctx.prompt_tokens,
                "completion_tokens": ctx.completion_tokens,
                "total_tokens": ctx.prompt_tokens + ctx.completion_tokens,
            },
        }

    def _error_payload(self, message: str, error_type: str, code: str) -> dict[str, Any]:
        return {
            "id": self._stream_id,
            "object": "chat.completion.chunk",
            "model": self.context.model,
            "error": {"message": message, "type": error_type, "code": code},
            "done": True,
        }

    def _timeout_error(self) -> UpstreamStreamError:
        return UpstreamStreamError(
            f"upstream exceeded the {self.timeout:g}s request ceiling",
            error_type="timeout",
            code="upstream_timeout",
        )

    async def _close_upstream(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.upstream.aclose()
        except (httpx.HTTPError, OSError, RuntimeError) as exc:
            logger.debug("relay.stream upstream close failed req_id=%s detail=%s", self.context.req_id, exc)

    def _finalize(self, status: RecordStatus, *, error: str | None = None) -> None:
        record = self.usage.finalize(status, error=error)
        if record is None:
            return
        level = logging.INFO if status == "success" else logging.WARNING
        _log_stream_event(level, event=f"relay.stream {status}", ctx=self.context, detail=error)
        self.record_task = submit_record(self.recorder, record)


def submit_record(recorder: UsageRecorder, record: UsageRecord) -> asyncio.Task[None]:
    """Hands ``record`` to the recorder without blocking the caller."""

    task = asyncio.get_running_loop().create_task(_deliver(recorder, record))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def _deliver(recorder: UsageRecorder, record: UsageRecord) -> None:
    started = time.perf_counter()
    try:
        await recorder.record(record)
    except Exception:
        logger.exception(
            "relay.usage record failed req_id=%s user=%s provider=%s",
            record.req_id,
            record.user_id,
            record.provider_id,
        )
        return
    logger.debug(
        "relay.usage recorded req_id=%s elapsed_ms=%d",
        record.req_id,
        int((time.perf_counter() - started) * 1000),
    )
