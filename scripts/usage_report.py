import argparse
import datetime
import json
import math
import pathlib
import statistics
from collections import Counter, defaultdict
from typing import Sequence

USAGE_DIR = pathlib.Path("usage")
REPORT = pathlib.Path("reports/usage.md")

_STATUSES = ("success", "error", "cancelled")


def _normalize_int(value: object) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return 0
        return max(int(value), 0)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return 0
        if not math.isfinite(parsed):
            return 0
        return max(int(parsed), 0)
    return 0


def load_records(usage_dir: pathlib.Path | None = None) -> list[dict]:
    directory = usage_dir or USAGE_DIR
    records: list[dict] = []
    if not directory.exists():
        return records
    for path in sorted(directory.glob("usage-*.jsonl")):
        with path.open(encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    obj = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict):
                    records.append(obj)
    return records


def compute_p95(latencies: Sequence[object]) -> int:
    normalized = sorted(_normalize_int(value) for value in latencies)
    if not normalized:
        return 0
    if len(normalized) == 1:
        return normalized[0]
    try:
        return int(statistics.quantiles(normalized, n=20, method="inclusive")[18])
    except statistics.StatisticsError:
        index = min(len(normalized) - 1, math.ceil(0.95 * len(normalized)) - 1)
        return int(normalized[index])


def summarize(records: Sequence[dict]) -> dict:
    by_provider: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"prompt": 0, "completion": 0})
    by_user: Counter[str] = Counter()
    statuses: Counter[str] = Counter()
    latencies: list[object] = []
    malformed = 0
    for record in records:
        provider = str(record.get("provider_id") or "unknown")
        user = str(record.get("user_id") or "unknown")
        prompt = _normalize_int(record.get("prompt_tokens"))
        completion = _normalize_int(record.get("completion_tokens"))
        by_provider[provider]["prompt"] += prompt
        by_provider[provider]["completion"] += completion
        by_user[user] += prompt + completion
        statuses[str(record.get("status") or "unknown")] += 1
        malformed += _normalize_int(record.get("malformed_frames"))
        if "latency_ms" in record:
            latencies.append(record.get("latency_ms"))
    return {
        "count": len(records),
        "providers": dict(by_provider),
        "users": dict(by_user),
        "statuses": dict(statuses),
        "malformed_frames": malformed,
        "latency_p95": compute_p95(latencies),
    }


def write_report(report_path: pathlib.Path, summary: dict, timestamp: str) -> None:
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", encoding="utf-8") as handle:
        handle.write(f"# Usage Report ({timestamp})\n\n")
        handle.write(f"- Streams: {summary['count']}\n")
        for status in _STATUSES:
            handle.write(f"- {status.capitalize()}: {summary['statuses'].get(status, 0)}\n")
        handle.write(f"- Malformed frames dropped: {summary['malformed_frames']}\n")
        handle.write(f"- Latency p95: {summary['latency_p95']} ms\n\n")
        if summary["providers"]:
            handle.write("## Tokens by provider\n\n")
            handle.write("| provider | prompt | completion |\n|---|---|---|\n")
            for provider, tokens in sorted(summary["providers"].items()):
                handle.write(f"| {provider} | {tokens['prompt']} | {tokens['completion']} |\n")
            handle.write("\n")
        if summary["users"]:
            handle.write("## Tokens by user\n\n")
            for user, total in sorted(summary["users"].items(), key=lambda item: (-item[1], item[0])):
                handle.write(f"- {user}: {total}\n")


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Summarize relay usage records.")
    parser.add_argument("--usage-dir", type=pathlib.Path, default=None)
    parser.add_argument("--out", type=pathlib.Path, default=None)
    args = parser.parse_args(argv)
    summary = summarize(load_records(args.usage_dir))
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    write_report(args.out or REPORT, summary, timestamp)


if __name__ == "__main__":
    main()
