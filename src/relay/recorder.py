"""Usage recording with optional OpenTelemetry export.

Every finalized stream produces one JSONL line under the usage directory, and
per-user token totals are rebuilt from those files when the logger starts.
Set ``RELAY_METRICS_EXPORT_MODE`` to ``prom`` (default), ``otel`` or ``both``;
a truthy ``RELAY_OTEL_METRICS_EXPORT`` is a shorthand for ``both``.
"""

from __future__ import annotations

import asyncio
import glob
import json
import logging
import os
import threading
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any, ClassVar, Optional, Protocol

from .types import UsageRecord

if TYPE_CHECKING:  # pragma: no cover
    from opentelemetry.sdk.metrics.export import MetricReader  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

_MODE_ENV = "RELAY_METRICS_EXPORT_MODE"
_OTEL_FLAG_ENV = "RELAY_OTEL_METRICS_EXPORT"
_MODES = ("prom", "otel", "both")
_PROM_FILE = "prometheus.prom"
_USAGE_GLOB = "usage-*.jsonl"


class UsageRecorder(Protocol):
    async def record(self, record: UsageRecord) -> None: ...


def _metrics_mode_from_env() -> str:
    mode = os.environ.get(_MODE_ENV, "").strip().lower()
    if mode in _MODES:
        return mode
    if os.environ.get(_OTEL_FLAG_ENV, "").strip().lower() in {"1", "true", "yes", "on"}:
        return "both"
    return "prom"


def _spent_tokens(entry: dict[str, Any]) -> int:
    return sum(
        value
        for value in (entry.get("prompt_tokens"), entry.get("completion_tokens"))
        if isinstance(value, int) and value > 0
    )


class _PromUsage:
    __slots__ = ("_dir", "_lock", "_records", "_tokens")

    def __init__(self, dirpath: str) -> None:
        self._dir = dirpath
        self._lock = threading.Lock()
        self._records: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._tokens: defaultdict[tuple[str, str], int] = defaultdict(int)

    def record(self, record: UsageRecord) -> None:
        with self._lock:
            self._records[(record.provider_id, record.status)] += 1
            self._tokens[(record.provider_id, "prompt")] += record.prompt_tokens
            self._tokens[(record.provider_id, "completion")] += record.completion_tokens
            self._write_locked()

    def render(self) -> str:
        with self._lock:
            return self._render_locked()

    def _render_locked(self) -> str:
        lines: list[str] = [
            "# HELP relay_usage_records_total Finalized proxied streams",
            "# TYPE relay_usage_records_total counter",
        ]
        for (provider, status), value in sorted(self._records.items()):
            lines.append(f'relay_usage_records_total{{provider="{provider}",status="{status}"}} {value}')
        lines.append("# HELP relay_tokens_total Tokens accounted across proxied streams")
        lines.append("# TYPE relay_tokens_total counter")
        for (provider, kind), value in sorted(self._tokens.items()):
            lines.append(f'relay_tokens_total{{provider="{provider}",kind="{kind}"}} {value}')
        return "\n".join(lines) + "\n"

    def _write_locked(self) -> None:
        os.makedirs(self._dir, exist_ok=True)
        prom_path = os.path.join(self._dir, _PROM_FILE)
        tmp_path = f"{prom_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            handle.write(self._render_locked())
        os.replace(tmp_path, prom_path)


class _OtelUsage:
    __slots__ = ("_reader", "_provider", "_records_counter", "_tokens_counter", "_shutdown")

    def __init__(self, reader: Optional["MetricReader"] = None):
        from opentelemetry.sdk.metrics import MeterProvider  # type: ignore[import-not-found]
        from opentelemetry.sdk.metrics.export import InMemoryMetricReader
        from opentelemetry.sdk.resources import Resource  # type: ignore[import-not-found]

        self._reader = reader or InMemoryMetricReader()
        # owned provider; the global one can only be installed once per process
        self._provider = MeterProvider(
            resource=Resource.create({"service.name": "llm-relay"}),
            metric_readers=[self._reader],
        )
        meter = self._provider.get_meter("relay.usage")
        self._records_counter = meter.create_counter(
            "usage_records_total", description="Finalized proxied streams."
        )
        self._tokens_counter = meter.create_counter(
            "tokens_total", description="Tokens accounted across proxied streams."
        )
        self._shutdown = False

    def record(self, record: UsageRecord) -> None:
        attrs: dict[str, Any] = {"provider": record.provider_id, "status": record.status}
        self._records_counter.add(1, attributes=attrs)
        self._tokens_counter.add(record.prompt_tokens, attributes={"provider": record.provider_id, "kind": "prompt"})
        self._tokens_counter.add(
            record.completion_tokens, attributes={"provider": record.provider_id, "kind": "completion"}
        )

    async def flush(self) -> None:
        if self._shutdown:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._provider.force_flush)

    def shutdown(self) -> None:
        if self._shutdown:
            return
        self._provider.shutdown()
        self._shutdown = True


class UsageLogger:
    """Append-only usage sink shared by all requests of the process."""

    _otel_lock: ClassVar[threading.Lock] = threading.Lock()
    _otel_instance: ClassVar[Optional[_OtelUsage]] = None
    _otel_unavailable: ClassVar[bool] = False
    _custom_reader: ClassVar[Optional["MetricReader"]] = None

    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        mode = _metrics_mode_from_env()
        self._prom = _PromUsage(self.dir) if mode in ("prom", "both") else None
        self._otel = self._shared_otel() if mode in ("otel", "both") else None
        self._user_tokens = self._load_user_totals()

    @classmethod
    def configure_metric_reader(cls, reader: Optional["MetricReader"]) -> None:
        """Replaces the OpenTelemetry reader used by loggers created afterwards."""

        with cls._otel_lock:
            if cls._otel_instance is not None:
                cls._otel_instance.shutdown()
            cls._otel_instance = None
            cls._otel_unavailable = False
            cls._custom_reader = reader

    @classmethod
    def _shared_otel(cls) -> Optional[_OtelUsage]:
        with cls._otel_lock:
            if cls._otel_instance is None and not cls._otel_unavailable:
                try:
                    cls._otel_instance = _OtelUsage(cls._custom_reader)
                except ImportError:
                    logger.warning("relay.usage otel export disabled reason=opentelemetry-sdk-missing")
                    cls._otel_unavailable = True
            return cls._otel_instance

    def _load_user_totals(self) -> defaultdict[str, int]:
        totals: defaultdict[str, int] = defaultdict(int)
        skipped = 0
        for path in sorted(glob.glob(os.path.join(self.dir, _USAGE_GLOB))):
            with open(path, "r", encoding="utf-8") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        skipped += 1
                        continue
                    if not isinstance(entry, dict) or not isinstance(entry.get("user_id"), str):
                        skipped += 1
                        continue
                    totals[entry["user_id"]] += _spent_tokens(entry)
        if skipped:
            logger.warning("relay.usage replay skipped=%d dir=%s", skipped, self.dir)
        return totals

    def _file(self) -> str:
        return os.path.join(self.dir, f"usage-{time.strftime('%Y%m%d')}.jsonl")

    def user_total(self, user_id: str) -> int:
        return self._user_tokens.get(user_id, 0)

    def render_prometheus(self) -> str:
        if self._prom is None:
            return ""
        return self._prom.render()

    async def record(self, record: UsageRecord) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n")
            self._user_tokens[record.user_id] += record.total_tokens
        if self._otel is not None:
            self._otel.record(record)
        if self._prom is not None:
            self._prom.record(record)

    async def flush(self) -> None:
        if self._otel is not None:
            await self._otel.flush()
