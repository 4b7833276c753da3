import logging
import time

from .types import RecordStatus, StreamContext, UsageMode, UsageRecord

logger = logging.getLogger(__name__)


class UsageAccumulator:
    """Token accounting for one proxied stream.

    Adapters report usage through ``record_usage``. Incremental providers add
    their deltas, cumulative providers overwrite the running totals. Counters
    never decrease, so a cumulative report lower than the current value is
    ignored.
    """

    def __init__(self, context: StreamContext) -> None:
        self.context = context

    @property
    def finalized(self) -> bool:
        return self.context.finalized

    def record_usage(
        self,
        prompt_tokens: int | None,
        completion_tokens: int | None,
        mode: UsageMode,
    ) -> None:
        if self.context.finalized:
            return
        ctx = self.context
        if mode == "increment":
            if isinstance(prompt_tokens, int) and prompt_tokens > 0:
                ctx.prompt_tokens += prompt_tokens
            if isinstance(completion_tokens, int) and completion_tokens > 0:
                ctx.completion_tokens += completion_tokens
            return
        if mode != "overwrite":
            raise ValueError(f"unknown usage mode '{mode}'")
        if isinstance(prompt_tokens, int) and prompt_tokens > ctx.prompt_tokens:
            ctx.prompt_tokens = prompt_tokens
        if isinstance(completion_tokens, int) and completion_tokens > ctx.completion_tokens:
            ctx.completion_tokens = completion_tokens

    def observe_model(self, model: object) -> None:
        if self.context.model_from_upstream or self.context.finalized:
            return
        if isinstance(model, str) and model.strip():
            self.context.model = model.strip()
            self.context.model_from_upstream = True

    def note_malformed(self) -> int:
        self.context.malformed_frames += 1
        return self.context.malformed_frames

    def finalize(self, status: RecordStatus, *, error: str | None = None) -> UsageRecord | None:
        ctx = self.context
        if ctx.finalized:
            logger.warning(
                "relay.usage finalize ignored req_id=%s status=%s reason=already-finalized",
                ctx.req_id,
                status,
            )
            return None
        ctx.finalized = True
        return UsageRecord(
            req_id=ctx.req_id,
            user_id=ctx.user_id,
            provider_id=ctx.provider_id,
            model=ctx.model,
            chat_id=ctx.chat_id,
            prompt_tokens=ctx.prompt_tokens,
            completion_tokens=ctx.completion_tokens,
            status=status,
            error=error,
            malformed_frames=ctx.malformed_frames,
            latency_ms=max(int((time.perf_counter() - ctx.started_at) * 1000), 0),
        )
