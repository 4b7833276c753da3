from __future__ import annotations

from typing import Any

from ..types import AdapterStep
from . import BaseAdapter

_DELTA_FIELDS = ("role", "content", "tool_calls", "function_call", "reasoning_content")


class OpenAIAdapter(BaseAdapter):
    """Chat-completion chunks as emitted by OpenAI and compatible servers.

    ``usage`` usually arrives on a final choice-less chunk when the client asks
    for ``stream_options.include_usage``; some deployments repeat it on every
    chunk and others never send it. The values are running totals.
    """

    style = "openai"
    usage_mode = "overwrite"
    end_marker = "[DONE]"
    eof_is_terminal = True

    def translate(self, event: dict[str, Any]) -> AdapterStep:
        if "error" in event and not event.get("choices"):
            return self._error_step(event.get("error"), "provider_error")

        step = AdapterStep(model=event.get("model"))
        usage_payload = event.get("usage")
        if isinstance(usage_payload, dict):
            step.prompt_tokens = usage_payload.get("prompt_tokens")
            step.completion_tokens = usage_payload.get("completion_tokens")
        elif usage_payload is not None:
            raise TypeError("usage must be an object")

        choices = event.get("choices") or []
        if not isinstance(choices, list):
            raise TypeError("choices must be a list")
        for choice in choices:
            if not isinstance(choice, dict):
                raise TypeError("choice entries must be objects")
            delta = choice.get("delta")
            if isinstance(delta, dict):
                normalized = {
                    key: delta[key] for key in _DELTA_FIELDS if delta.get(key) not in (None, "")
                }
                if normalized:
                    index = choice.get("index")
                    if isinstance(index, int) and index:
                        normalized["index"] = index
                    step.deltas.append(normalized)
            finish = choice.get("finish_reason")
            if isinstance(finish, str) and finish:
                step.finish_reason = finish
        return step
