import json
import logging
from typing import Any, ClassVar

from ..types import AdapterStep, UsageMode
from ..usage import UsageAccumulator

logger = logging.getLogger(__name__)

_LOG_PAYLOAD_LIMIT = 200


class BaseAdapter:
    """Translates one upstream SSE grammar into normalized deltas.

    Adapters hold no per-request state; everything request-scoped lives on the
    accumulator handed to ``decode``.
    """

    style: ClassVar[str] = ""
    usage_mode: ClassVar[UsageMode] = "overwrite"
    end_marker: ClassVar[str | None] = None
    # whether the upstream closing without an end marker counts as completion
    eof_is_terminal: ClassVar[bool] = True

    def decode(self, payload: str, usage: UsageAccumulator) -> AdapterStep:
        stripped = payload.strip()
        if not stripped:
            return AdapterStep()
        if self.end_marker is not None and stripped == self.end_marker:
            return AdapterStep(done=True)
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return self._malformed(stripped, usage, "invalid json")
        if not isinstance(event, dict):
            return self._malformed(stripped, usage, "not an object")
        try:
            step = self.translate(event)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            return self._malformed(stripped, usage, str(exc) or type(exc).__name__)
        usage.observe_model(step.model)
        if step.prompt_tokens is not None or step.completion_tokens is not None:
            usage.record_usage(step.prompt_tokens, step.completion_tokens, self.usage_mode)
        return step

    def translate(self, event: dict[str, Any]) -> AdapterStep:
        raise NotImplementedError

    def _malformed(self, payload: str, usage: UsageAccumulator, reason: str) -> AdapterStep:
        count = usage.note_malformed()
        logger.warning(
            "relay.frame dropped req_id=%s provider=%s reason=%s count=%d payload=%r",
            usage.context.req_id,
            usage.context.provider_id,
            reason,
            count,
            payload[:_LOG_PAYLOAD_LIMIT],
        )
        return AdapterStep()

    @staticmethod
    def _error_step(error_info: Any, default_type: str) -> AdapterStep:
        payload = dict(error_info) if isinstance(error_info, dict) else {}
        if isinstance(error_info, str) and error_info:
            payload["message"] = error_info
        payload.setdefault("message", "upstream reported an error")
        payload.setdefault("type", default_type)
        return AdapterStep(error=payload)


from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter
from .openai import OpenAIAdapter


class AdapterRegistry:
    _ADAPTER_FACTORIES: dict[str, type[BaseAdapter]] = {
        "openai": OpenAIAdapter,
        "claude": AnthropicAdapter,
        "anthropic": AnthropicAdapter,
        "gemini": GeminiAdapter,
    }

    def __init__(self) -> None:
        self._instances: dict[str, BaseAdapter] = {}

    def get(self, style: str) -> BaseAdapter:
        normalized = (style or "").strip().lower()
        factory = self._ADAPTER_FACTORIES.get(normalized)
        if factory is None:
            display = normalized or "<missing>"
            raise ValueError(f"Unknown provider style '{display}'")
        adapter = self._instances.get(normalized)
        if adapter is None:
            adapter = factory()
            self._instances[normalized] = adapter
        return adapter


__all__ = [
    "BaseAdapter",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    "AdapterRegistry",
]
