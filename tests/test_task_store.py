from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from avatar_worker.pipeline.errors import TaskNotFoundError
from avatar_worker.pipeline.models import TaskStage, can_transition, is_terminal
from avatar_worker.pipeline.task_store import InMemoryTaskStore, _decode_mask_urls, _row_to_task, _to_row

BASE = {"user_id": "user-1", "image_url": "https://cdn.example.com/a.png", "audio_url": "https://cdn.example.com/a.mp3"}


def test_lease_is_exclusive() -> None:
    async def scenario():
        store = InMemoryTaskStore()
        task = await store.create(dict(BASE))
        first = await store.acquire_lease(task.id)
        second = await store.acquire_lease(task.id)
        await store.release_lease(task.id)
        third = await store.acquire_lease(task.id)
        return first, second, third, await store.list_leased()

    first, second, third, leased = asyncio.run(scenario())

    assert (first, second, third) == (True, False, True)
    assert len(leased) == 1


def test_missing_task_raises() -> None:
    async def scenario():
        store = InMemoryTaskStore()
        with pytest.raises(TaskNotFoundError):
            await store.get("nope")
        with pytest.raises(TaskNotFoundError):
            await store.update("nope", {"name": "x"})
        with pytest.raises(TaskNotFoundError):
            await store.acquire_lease("nope")

    asyncio.run(scenario())


def test_stage_log_tracks_stage_writes_only() -> None:
    async def scenario():
        store = InMemoryTaskStore()
        task = await store.create(dict(BASE))
        await store.update(task.id, {"stage": TaskStage.RECOGNITION_SUBMITTED, "recognition_task_id": "r"})
        await store.update(task.id, {"name": "renamed"})
        return store.stage_log[task.id]

    assert asyncio.run(scenario()) == [TaskStage.UPLOADING_ASSETS, TaskStage.RECOGNITION_SUBMITTED]


def test_list_by_owner_is_newest_first() -> None:
    now = datetime.now(timezone.utc)

    async def scenario():
        store = InMemoryTaskStore()
        await store.create({**BASE, "name": "old", "created_at": now - timedelta(minutes=5)})
        await store.create({**BASE, "name": "new", "created_at": now})
        await store.create({**BASE, "user_id": "user-2", "name": "other", "created_at": now})
        return await store.list_by_owner("user-1")

    assert [t.name for t in asyncio.run(scenario())] == ["new", "old"]


def test_rows_round_trip_enums_and_legacy_mask_strings() -> None:
    row = _to_row({"stage": TaskStage.FAILED, "updated_at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
    assert row == {"stage": "FAILED", "updated_at": "2024-01-01T00:00:00+00:00"}

    assert _decode_mask_urls('["m0", "m1"]') == ["m0", "m1"]
    assert _decode_mask_urls("not json") is None
    task = _row_to_task({"id": "t1", **BASE, "stage": "AWAITING_SUBJECT_SELECTION",
                         "mask_urls": '["m0"]', "processing": None})
    assert task.stage is TaskStage.AWAITING_SUBJECT_SELECTION
    assert task.mask_urls == ["m0"]
    assert task.processing is False


def test_stage_graph() -> None:
    assert can_transition(TaskStage.RECOGNITION_COMPLETED, TaskStage.AWAITING_SUBJECT_SELECTION)
    assert can_transition(TaskStage.GENERATION_PROCESSING, TaskStage.FAILED)
    assert not can_transition(TaskStage.UPLOADING_ASSETS, TaskStage.GENERATION_SUBMITTED)
    assert not can_transition(TaskStage.GENERATION_COMPLETED, TaskStage.FAILED)
    assert is_terminal(TaskStage.UPLOAD_FAILED)
    assert not is_terminal(TaskStage.AWAITING_SUBJECT_SELECTION)
