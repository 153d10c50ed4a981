from collections import defaultdict
import re
from threading import Lock

_metrics_lock = Lock()
_counters: dict[str, dict[tuple[tuple[str, str], ...], int]] = defaultdict(dict)


def _label_key(labels: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, value: int = 1, **labels: str) -> None:
    key = _label_key(labels)
    with _metrics_lock:
        _counters[name][key] = _counters[name].get(key, 0) + int(value)


def counter_value(name: str, **labels: str) -> int:
    with _metrics_lock:
        return _counters.get(name, {}).get(_label_key(labels), 0)


def snapshot_metrics() -> dict[str, list[dict]]:
    with _metrics_lock:
        return {
            metric_name: [
                {"labels": dict(label_key), "value": value}
                for label_key, value in items.items()
            ]
            for metric_name, items in _counters.items()
        }


def reset_metrics() -> None:
    with _metrics_lock:
        _counters.clear()


def _exposition_name(name: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9_:]", "_", name)
    return f"marketplace_{clean}"


def _quote_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def prometheus_text() -> str:
    """Render every counter in the Prometheus text exposition format."""
    lines: list[str] = []
    with _metrics_lock:
        for raw_name in sorted(_counters):
            name = _exposition_name(raw_name)
            lines.append(f"# TYPE {name} counter")
            for label_key, value in sorted(_counters[raw_name].items()):
                labels = ",".join(f'{k}="{_quote_label(v)}"' for k, v in label_key)
                lines.append(f"{name}{{{labels}}} {value}" if labels else f"{name} {value}")
    return "\n".join(lines) + "\n"
