import time
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

UsageMode = Literal["increment", "overwrite"]
RecordStatus = Literal["success", "error", "cancelled"]


@dataclass
class StreamContext:
    user_id: str
    provider_id: str
    model: str
    chat_id: str | None = None
    req_id: str = ""
    started_at: float = field(default_factory=time.perf_counter)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    malformed_frames: int = 0
    model_from_upstream: bool = False
    finalized: bool = False


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    req_id: str
    ts: float = Field(default_factory=time.time)
    user_id: str
    provider_id: str
    model: str
    chat_id: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    status: RecordStatus
    error: Optional[str] = None
    malformed_frames: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(slots=True)
class AdapterStep:
    """Outcome of translating a single upstream event.

    Usage and model are carried on the step and applied to the accumulator only
    once the whole event has been translated.
    """

    deltas: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str | None = None
    done: bool = False
    error: dict[str, Any] | None = None
    prompt_tokens: Any = None
    completion_tokens: Any = None
    model: Any = None


class ClientRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    stream: Optional[bool] = None
