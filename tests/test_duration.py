from __future__ import annotations

import asyncio
import time

from avatar_worker.pipeline import duration


def test_probe_rounds_duration(monkeypatch) -> None:
    seen = []

    def fake_read(source: str) -> float:
        seen.append(source)
        return 12.3456

    monkeypatch.setattr(duration, "_read_duration", fake_read)
    assert asyncio.run(duration.probe_duration("https://cdn.example.com/a.mp3")) == 12.35
    assert seen == ["https://cdn.example.com/a.mp3"]


def test_probe_resolves_local_refs(monkeypatch) -> None:
    seen = []
    monkeypatch.setattr(duration, "resolve_local_path", lambda ref: f"/srv/public/{ref.lstrip('/')}")
    monkeypatch.setattr(duration, "_read_duration", lambda source: seen.append(source) or 3.0)

    assert asyncio.run(duration.probe_duration("/uploads/a.mp3")) == 3.0
    assert seen == ["/srv/public/uploads/a.mp3"]


def test_probe_failure_degrades_to_none(monkeypatch) -> None:
    def broken(source: str) -> float:
        raise OSError("ffmpeg not found")

    monkeypatch.setattr(duration, "_read_duration", broken)
    assert asyncio.run(duration.probe_duration("https://cdn.example.com/a.mp3")) is None


def test_slow_probe_times_out(monkeypatch) -> None:
    monkeypatch.setattr(duration, "_read_duration", lambda source: time.sleep(0.5) or 9.0)
    assert asyncio.run(duration.probe_duration("https://cdn.example.com/a.mp3", timeout=0.05)) is None


def test_duration_limit() -> None:
    assert duration.is_duration_allowed(None)
    assert duration.is_duration_allowed(35.0)
    assert not duration.is_duration_allowed(35.01)
