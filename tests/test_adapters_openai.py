import json
from typing import Any

import pytest

from src.relay.adapters import AdapterRegistry, OpenAIAdapter
from src.relay.types import StreamContext
from src.relay.usage import UsageAccumulator


def make_usage() -> UsageAccumulator:
    return UsageAccumulator(StreamContext(user_id="u", provider_id="openai", model="gpt-4o", req_id="r"))


def decode(adapter: OpenAIAdapter, usage: UsageAccumulator, payload: Any) -> Any:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return adapter.decode(data, usage)


def test_content_delta_is_forwarded() -> None:
    usage = make_usage()

    step = decode(
        OpenAIAdapter(),
        usage,
        {"model": "gpt-4o-2024-08-06", "choices": [{"index": 0, "delta": {"role": "assistant", "content": "Hi"}}]},
    )

    assert step.deltas == [{"role": "assistant", "content": "Hi"}]
    assert not step.done
    assert usage.context.model == "gpt-4o-2024-08-06"


def test_empty_delta_produces_no_frames() -> None:
    step = decode(OpenAIAdapter(), make_usage(), {"choices": [{"index": 0, "delta": {"content": ""}}]})

    assert step.deltas == []


def test_tool_call_delta_and_finish_reason() -> None:
    tool_call = {"index": 0, "id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": ""}}

    step = decode(
        OpenAIAdapter(),
        make_usage(),
        {"choices": [{"index": 0, "delta": {"tool_calls": [tool_call]}, "finish_reason": "tool_calls"}]},
    )

    assert step.deltas == [{"tool_calls": [tool_call]}]
    assert step.finish_reason == "tool_calls"


def test_usage_missing_on_most_frames_then_final_totals() -> None:
    adapter = OpenAIAdapter()
    usage = make_usage()

    decode(adapter, usage, {"choices": [{"index": 0, "delta": {"content": "a"}}]})
    decode(adapter, usage, {"choices": [{"index": 0, "delta": {"content": "b"}}], "usage": None})
    decode(adapter, usage, {"choices": [], "usage": {"prompt_tokens": 21, "completion_tokens": 2}})

    assert (usage.context.prompt_tokens, usage.context.completion_tokens) == (21, 2)


def test_interleaved_usage_is_not_double_counted() -> None:
    adapter = OpenAIAdapter()
    usage = make_usage()

    for completion in (1, 2, 3):
        decode(
            adapter,
            usage,
            {
                "choices": [{"index": 0, "delta": {"content": "x"}}],
                "usage": {"prompt_tokens": 8, "completion_tokens": completion},
            },
        )

    assert (usage.context.prompt_tokens, usage.context.completion_tokens) == (8, 3)


def test_done_sentinel_ends_stream() -> None:
    step = OpenAIAdapter().decode(" [DONE] ", make_usage())

    assert step.done
    assert step.deltas == []


def test_in_band_error_payload() -> None:
    step = decode(OpenAIAdapter(), make_usage(), {"error": {"message": "rate limited", "type": "rate_limit"}})

    assert step.error == {"message": "rate limited", "type": "rate_limit"}


@pytest.mark.parametrize(
    "payload",
    [
        "{broken",
        "[1, 2]",
        json.dumps({"choices": "nope"}),
        json.dumps({"choices": ["nope"]}),
        json.dumps({"choices": [], "usage": 3}),
    ],
)
def test_malformed_payloads_are_counted_and_dropped(payload: str) -> None:
    usage = make_usage()

    step = OpenAIAdapter().decode(payload, usage)

    assert step.deltas == []
    assert not step.done
    assert step.error is None
    assert usage.context.malformed_frames == 1


def test_registry_selects_adapter_by_style() -> None:
    registry = AdapterRegistry()

    assert isinstance(registry.get("openai"), OpenAIAdapter)
    assert registry.get(" OpenAI ") is registry.get("openai")
    assert registry.get("anthropic") is not None
    with pytest.raises(ValueError, match="Unknown provider style 'mistral'"):
        registry.get("mistral")
    with pytest.raises(ValueError, match="<missing>"):
        registry.get("")


def test_dropped_frame_leaves_usage_and_model_untouched() -> None:
    usage = make_usage()

    step = OpenAIAdapter().decode(
        json.dumps({"model": "x", "usage": {"prompt_tokens": 50, "completion_tokens": 30}, "choices": "bad"}),
        usage,
    )

    assert step.deltas == []
    assert usage.context.malformed_frames == 1
    assert (usage.context.prompt_tokens, usage.context.completion_tokens) == (0, 0)
    assert usage.context.model == "gpt-4o"
