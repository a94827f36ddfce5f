"""
Thread-safe in-memory metrics for the avatar worker.

Tracks:
  - Counters: tasks created, stage transitions, failures by kind
  - Gauges: active / waiting processing routines
  - Latency: provider poll phases (recognition, generation), per-phase samples
  - Recent errors: last 50 task failures for root-cause analysis

All data is ephemeral (resets on restart); the task table is the durable record.
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

# ── Latency samples (last 100 per phase) ─────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

# ── Error log (last 50 failures) ──────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'tasks.created', 'errors.RATE_LIMITED')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(phase: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[phase]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[phase] = samples[-MAX_SAMPLES:]


def record_error(task_id: str, kind: str, message: str, stage: str = ""):
    """Record a task failure; also bumps the errors.<kind> counter."""
    with _lock:
        _counters[f"errors.{kind}"] += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "task_id": task_id,
            "kind": kind,
            "stage": stage,
            "message": message[:300],
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def _percentiles(samples: List[float]) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
        "avg": sum(ordered) / n,
        "count": n,
    }


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()
    with _lock:
        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": {
                phase: _percentiles(samples)
                for phase, samples in _latency_samples.items()
                if samples
            },
            "recent_errors": list(_recent_errors[-10:]),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything (tests)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()
