from __future__ import annotations

import asyncio

import pytest

from avatar_worker.pipeline.assets import AssetPreparer
from avatar_worker.pipeline.errors import UploadError
from avatar_worker.pipeline.task_store import InMemoryTaskStore

from conftest import FakeUploader


class BrokenShots:
    async def update_shot_audio(self, shot_id: str, audio_url: str) -> None:
        raise RuntimeError("shots table unavailable")


def test_public_urls_pass_through() -> None:
    uploader = FakeUploader()
    prepared = asyncio.run(AssetPreparer(uploader).prepare(
        "t1", "https://cdn.example.com/a.png", "http://cdn.example.com/a.mp3", shot_id="shot-1"
    ))

    assert prepared.image_url == "https://cdn.example.com/a.png"
    assert prepared.audio_url == "http://cdn.example.com/a.mp3"
    assert not prepared.image_uploaded and not prepared.audio_uploaded
    assert uploader.uploads == []


def test_local_audio_is_uploaded_and_shot_updated() -> None:
    uploader = FakeUploader()
    shots = InMemoryTaskStore()
    preparer = AssetPreparer(uploader, shots=shots, asset_root="/srv/public")

    prepared = asyncio.run(preparer.prepare(
        "t1", "https://cdn.example.com/a.png", "/uploads/voice.mp3", shot_id="shot-1"
    ))

    assert prepared.audio_uploaded
    assert prepared.audio_url == "https://cdn.example.com/digital-human/t1/voice.mp3"
    assert uploader.uploads == [("/srv/public/uploads/voice.mp3", "digital-human/t1")]
    assert shots.shots == {"shot-1": prepared.audio_url}


def test_shot_update_failure_is_not_fatal() -> None:
    preparer = AssetPreparer(FakeUploader(), shots=BrokenShots(), asset_root="/srv/public")
    prepared = asyncio.run(preparer.prepare("t1", "/uploads/a.png", "/uploads/a.mp3", shot_id="shot-1"))
    assert prepared.image_uploaded and prepared.audio_uploaded


def test_upload_failure_raises_upload_error() -> None:
    preparer = AssetPreparer(FakeUploader(fail=True), asset_root="/srv/public")
    with pytest.raises(UploadError, match="image") as info:
        asyncio.run(preparer.prepare("t1", "/uploads/a.png", "https://cdn.example.com/a.mp3"))
    assert isinstance(info.value.__cause__, OSError)
