from __future__ import annotations

from typing import Any

from ..types import AdapterStep
from . import BaseAdapter


class AnthropicAdapter(BaseAdapter):
    style = "claude"
    usage_mode = "increment"
    end_marker = None
    eof_is_terminal = False

    @staticmethod
    def _map_stop_reason(raw: str | None) -> str | None:
        if raw is None:
            return None
        if raw == "tool_use":
            return "tool_calls"
        if raw in {"max_tokens", "message_limit"}:
            return "length"
        if raw in {"end_turn", "stop_sequence"}:
            return "stop"
        if raw == "refusal":
            return "content_filter"
        return raw

    def translate(self, event: dict[str, Any]) -> AdapterStep:
        event_type = event.get("type")
        if not isinstance(event_type, str):
            raise ValueError("event type missing")

        if event_type == "message_start":
            message = event.get("message")
            if not isinstance(message, dict):
                raise TypeError("message_start requires a message object")
            step = AdapterStep(model=message.get("model"))
            message_usage = message.get("usage")
            if isinstance(message_usage, dict):
                step.prompt_tokens = message_usage.get("input_tokens")
            role = message.get("role")
            step.deltas.append({"role": role if isinstance(role, str) and role else "assistant"})
            return step

        step = self._translate_event(event_type, event)
        # output tokens are reported as increments on deltas and on message_delta
        step.completion_tokens = self._output_tokens(event)
        return step

    def _translate_event(self, event_type: str, event: dict[str, Any]) -> AdapterStep:
        if event_type == "content_block_start":
            block = event.get("content_block")
            if not isinstance(block, dict):
                raise TypeError("content_block_start requires a content_block object")
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, str) and text:
                    return AdapterStep(deltas=[{"content": text}])
            elif block_type == "tool_use":
                return AdapterStep(
                    deltas=[
                        {
                            "tool_calls": [
                                {
                                    "index": event.get("index", 0),
                                    "id": block.get("id"),
                                    "type": "function",
                                    "function": {"name": block.get("name"), "arguments": ""},
                                }
                            ]
                        }
                    ]
                )
            return AdapterStep()

        if event_type == "content_block_delta":
            block_delta = event.get("delta")
            if not isinstance(block_delta, dict):
                raise TypeError("content_block_delta requires a delta object")
            delta_type = block_delta.get("type")
            if delta_type == "text_delta":
                text = block_delta.get("text")
                if isinstance(text, str) and text:
                    return AdapterStep(deltas=[{"content": text}])
            elif delta_type == "input_json_delta":
                partial = block_delta.get("partial_json")
                if isinstance(partial, str) and partial:
                    return AdapterStep(
                        deltas=[
                            {
                                "tool_calls": [
                                    {"index": event.get("index", 0), "function": {"arguments": partial}}
                                ]
                            }
                        ]
                    )
            return AdapterStep()

        if event_type == "message_delta":
            delta_payload = event.get("delta")
            finish = None
            if isinstance(delta_payload, dict):
                stop_candidate = delta_payload.get("stop_reason")
                if isinstance(stop_candidate, str):
                    finish = self._map_stop_reason(stop_candidate)
            return AdapterStep(finish_reason=finish)

        if event_type == "message_stop":
            return AdapterStep(done=True)

        if event_type == "error":
            return self._error_step(event.get("error"), "provider_error")

        # ping, content_block_stop and unknown future events carry nothing for the client
        return AdapterStep()

    @staticmethod
    def _output_tokens(event: dict[str, Any]) -> Any:
        usage_payload = event.get("usage")
        if not isinstance(usage_payload, dict):
            delta_payload = event.get("delta")
            if isinstance(delta_payload, dict):
                usage_payload = delta_payload.get("usage")
        if isinstance(usage_payload, dict):
            return usage_payload.get("output_tokens")
        return None
