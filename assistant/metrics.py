"""Prometheus-format metrics for the assistant gateway.

Counters and histograms live in process memory behind one lock and are
rendered in the text exposition format at ``/metrics``.
"""

import threading
from collections import defaultdict

from fastapi import APIRouter, Response

_lock = threading.Lock()

LabelKey = tuple[tuple[str, str], ...]

_counters: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_sums: dict[str, dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
_histogram_counts: dict[str, dict[LabelKey, int]] = defaultdict(lambda: defaultdict(int))

LATENCY_BUCKETS = [0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
_histogram_buckets: dict[str, dict[LabelKey, list[int]]] = defaultdict(
    lambda: defaultdict(lambda: [0] * len(LATENCY_BUCKETS)),
)


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted(labels.items()))


def inc_counter(name: str, labels: dict[str, str], value: float = 1.0) -> None:
    with _lock:
        _counters[name][_key(labels)] += value


def observe_histogram(name: str, labels: dict[str, str], value: float) -> None:
    key = _key(labels)
    with _lock:
        _histogram_sums[name][key] += value
        _histogram_counts[name][key] += 1
        buckets = _histogram_buckets[name][key]
        for i, bound in enumerate(LATENCY_BUCKETS):
            if value <= bound:
                buckets[i] += 1
                break


def counter_value(name: str, labels: dict[str, str]) -> float:
    with _lock:
        return _counters.get(name, {}).get(_key(labels), 0.0)


def reset_metrics() -> None:
    with _lock:
        _counters.clear()
        _histogram_sums.clear()
        _histogram_counts.clear()
        _histogram_buckets.clear()


def _format_labels(label_pairs: LabelKey) -> str:
    if not label_pairs:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in label_pairs) + "}"


def render_metrics() -> str:
    lines: list[str] = []
    with _lock:
        for name, label_map in sorted(_counters.items()):
            lines.append(f"# TYPE {name} counter")
            for label_pairs, value in sorted(label_map.items()):
                lines.append(f"{name}{_format_labels(label_pairs)} {value}")

        for name in sorted(_histogram_sums):
            lines.append(f"# TYPE {name} histogram")
            for label_pairs in sorted(_histogram_sums[name]):
                cumulative = 0
                for i, bound in enumerate(LATENCY_BUCKETS):
                    cumulative += _histogram_buckets[name][label_pairs][i]
                    bucket = _key({**dict(label_pairs), "le": str(bound)})
                    lines.append(f"{name}_bucket{_format_labels(bucket)} {cumulative}")
                count = _histogram_counts[name][label_pairs]
                inf = _key({**dict(label_pairs), "le": "+Inf"})
                lines.append(f"{name}_bucket{_format_labels(inf)} {count}")
                lines.append(
                    f"{name}_sum{_format_labels(label_pairs)} {_histogram_sums[name][label_pairs]}"
                )
                lines.append(f"{name}_count{_format_labels(label_pairs)} {count}")

    lines.append("")
    return "\n".join(lines)


# -- Assistant helpers --


def record_turn(
    outcome: str,
    model: str,
    latency_s: float,
    streaming: bool = False,
    tokens: int = 0,
    function_calls: int = 0,
) -> None:
    labels = {"outcome": outcome, "model": model, "streaming": str(streaming).lower()}
    inc_counter("aia_chat_turns_total", labels)
    observe_histogram("aia_chat_turn_duration_seconds", {"model": model}, latency_s)
    if tokens > 0:
        inc_counter("aia_tokens_total", {"model": model}, float(tokens))
    if function_calls > 0:
        inc_counter("aia_function_calls_total", {"model": model}, float(function_calls))


def record_rate_limit_denial(reason: str) -> None:
    inc_counter("aia_rate_limit_denials_total", {"reason": reason})


def record_blocked_input(reason: str) -> None:
    inc_counter("aia_blocked_inputs_total", {"reason": reason})


def record_flagged_input() -> None:
    inc_counter("aia_flagged_inputs_total", {})


metrics_router = APIRouter()


@metrics_router.get("/metrics")
def prometheus_metrics() -> Response:
    return Response(content=render_metrics(), media_type="text/plain; charset=utf-8")
