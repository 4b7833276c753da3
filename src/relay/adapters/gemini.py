from __future__ import annotations

import json
from typing import Any

from ..types import AdapterStep
from . import BaseAdapter

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "MALFORMED_FUNCTION_CALL": "stop",
    "OTHER": "stop",
}


class GeminiAdapter(BaseAdapter):
    """``streamGenerateContent?alt=sse`` frames.

    Every frame repeats ``usageMetadata`` as a running total and there is no
    end sentinel: the stream is complete when the upstream closes.
    """

    style = "gemini"
    usage_mode = "overwrite"
    end_marker = None
    eof_is_terminal = True

    def translate(self, event: dict[str, Any]) -> AdapterStep:
        if "error" in event and "candidates" not in event:
            return self._error_step(event.get("error"), "provider_error")

        step = AdapterStep(model=event.get("modelVersion"))
        metadata = event.get("usageMetadata")
        if isinstance(metadata, dict):
            step.prompt_tokens = metadata.get("promptTokenCount")
            step.completion_tokens = self._completion_tokens(metadata)

        candidates = event.get("candidates") or []
        if not isinstance(candidates, list):
            raise TypeError("candidates must be a list")
        if not candidates:
            return step
        candidate = candidates[0]
        if not isinstance(candidate, dict):
            raise TypeError("candidate entries must be objects")
        content = candidate.get("content") or {}
        parts = content.get("parts") or []
        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        for part in parts:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str) and text and not part.get("thought"):
                text_parts.append(text)
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                tool_calls.append(
                    {
                        "index": len(tool_calls),
                        "type": "function",
                        "function": {
                            "name": function_call.get("name"),
                            "arguments": json.dumps(function_call.get("args") or {}),
                        },
                    }
                )
        if text_parts:
            step.deltas.append({"content": "".join(text_parts)})
        if tool_calls:
            step.deltas.append({"tool_calls": tool_calls})
        finish = candidate.get("finishReason")
        if isinstance(finish, str) and finish and finish != "FINISH_REASON_UNSPECIFIED":
            step.finish_reason = _FINISH_REASONS.get(finish, finish.lower())
        return step

    @staticmethod
    def _completion_tokens(metadata: dict[str, Any]) -> int | None:
        # thinking models bill their hidden reasoning separately from the answer
        counts = [
            value
            for value in (metadata.get("candidatesTokenCount"), metadata.get("thoughtsTokenCount"))
            if isinstance(value, int) and not isinstance(value, bool)
        ]
        return sum(counts) if counts else None
