from __future__ import annotations

import copy
import threading
from typing import Any, Dict

_lock = threading.Lock()
_usage: Dict[str, Any] = {
    "calls": 0,
    "failures": 0,
    "providers": {},  # provider -> {models: {model: {...}}, totals: {...}}
}


def _empty_counters() -> Dict[str, Any]:
    return {"input_tokens": 0, "output_tokens": 0, "cached_tokens": 0, "cost": 0.0, "time_sec": 0.0, "calls": 0}


def _ensure_provider(provider: str) -> Dict[str, Any]:
    return _usage["providers"].setdefault(provider, {"models": {}, "totals": _empty_counters()})


def record_call(
    provider: str,
    model: str,
    input_tokens: int | None,
    output_tokens: int | None,
    time_sec: float | None,
    cached_tokens: int | None = None,
    cost: float | None = None,
) -> None:
    with _lock:
        _usage["calls"] += 1
        p = _ensure_provider(provider)
        m = p["models"].setdefault(model, _empty_counters())
        for bucket in (m, p["totals"]):
            bucket["calls"] += 1
            if input_tokens is not None:
                bucket["input_tokens"] += int(input_tokens)
            if output_tokens is not None:
                bucket["output_tokens"] += int(output_tokens)
            if cached_tokens is not None:
                bucket["cached_tokens"] += int(cached_tokens)
            if cost is not None:
                bucket["cost"] += float(cost)
            if time_sec is not None:
                bucket["time_sec"] += float(time_sec)


def record_failure(provider: str, model: str) -> None:
    with _lock:
        _usage["failures"] += 1
        p = _ensure_provider(provider)
        m = p["models"].setdefault(model, _empty_counters())
        m["failures"] = m.get("failures", 0) + 1


def snapshot(reset: bool = False) -> Dict[str, Any]:
    with _lock:
        data = copy.deepcopy(_usage)
        if reset:
            _usage["calls"] = 0
            _usage["failures"] = 0
            _usage["providers"] = {}
        return data
