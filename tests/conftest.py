"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from avatar_worker import metrics
from avatar_worker.pipeline.assets import AssetPreparer
from avatar_worker.pipeline.orchestrator import AvatarTaskService, PollPolicy
from avatar_worker.pipeline.runner import TaskRunner
from avatar_worker.pipeline.task_store import InMemoryTaskStore
from avatar_worker.pipeline.vision_client import (
    GenerationPoll,
    RecognitionPoll,
    RemoteJobStatus,
    SubjectDetection,
)

FAST_POLL = PollPolicy(interval=0, max_attempts=5)
VIDEO_URL = "https://cdn.example.com/out/video.mp4"


class FakeVisionClient:
    """
    Scripted stand-in for RemoteVisionClient.

    Poll scripts are consumed in order and the last entry repeats. An entry
    that is an exception is raised instead of returned. fail(method, exc)
    makes the next call of a submit/detect method raise.
    """

    def __init__(
        self,
        recognition: list | None = None,
        generation: list | None = None,
        detection: SubjectDetection | None = None,
    ) -> None:
        self.recognition_script = list(recognition or [RecognitionPoll(RemoteJobStatus.DONE, True)])
        self.generation_script = list(
            generation or [GenerationPoll(RemoteJobStatus.DONE, VIDEO_URL, True)]
        )
        self.detection = detection or SubjectDetection(True, ["https://cdn.example.com/mask-0.png"])
        self.calls: list[tuple[str, Any]] = []
        self.closed = False
        self._failures: dict[str, list[Exception]] = {}
        self._counters: dict[str, int] = {}

    def fail(self, method: str, exc: Exception) -> None:
        self._failures.setdefault(method, []).append(exc)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _record(self, method: str, arg: Any) -> None:
        self.calls.append((method, arg))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _next_id(self, prefix: str) -> str:
        self._counters[prefix] = self._counters.get(prefix, 0) + 1
        return f"{prefix}-{self._counters[prefix]}"

    @staticmethod
    def _step(script: list) -> Any:
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def submit_recognition(self, image_url: str) -> str:
        self._record("submit_recognition", image_url)
        return self._next_id("rec")

    async def query_recognition(self, job_id: str) -> RecognitionPoll:
        self._record("query_recognition", job_id)
        return self._step(self.recognition_script)

    async def detect_subjects(self, image_url: str) -> SubjectDetection:
        self._record("detect_subjects", image_url)
        return self.detection

    async def submit_generation(self, **kwargs: Any) -> str:
        self._record("submit_generation", kwargs)
        return self._next_id("gen")

    async def query_generation(self, job_id: str) -> GenerationPoll:
        self._record("query_generation", job_id)
        return self._step(self.generation_script)

    async def aclose(self) -> None:
        self.closed = True


class FakeUploader:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.uploads: list[tuple[str, str]] = []

    async def upload_file(self, path, prefix: str) -> str:
        if self.fail:
            raise OSError("bucket unavailable")
        self.uploads.append((str(path), prefix))
        return f"https://cdn.example.com/{prefix}/{Path(path).name}"


async def fixed_duration(audio_url: str) -> float:
    return 12.5


class ServiceBundle:
    def __init__(self, service: AvatarTaskService, store: InMemoryTaskStore,
                 client: FakeVisionClient, uploader: FakeUploader) -> None:
        self.service = service
        self.store = store
        self.client = client
        self.uploader = uploader


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture()
def make_service() -> Callable[..., ServiceBundle]:
    """Factory for a service wired to in-memory fakes; call it inside the event loop."""

    def _make(
        client: FakeVisionClient | None = None,
        uploader: FakeUploader | None = None,
        recognition_poll: PollPolicy = FAST_POLL,
        generation_poll: PollPolicy = FAST_POLL,
        duration_probe: Callable[[str], Any] = fixed_duration,
        store: InMemoryTaskStore | None = None,
    ) -> ServiceBundle:
        # Passing an existing store simulates a worker restart over the same table
        store = store or InMemoryTaskStore()
        client = client or FakeVisionClient()
        uploader = uploader or FakeUploader()
        service = AvatarTaskService(
            store,
            client,
            AssetPreparer(uploader, shots=store, asset_root="/srv/public"),
            runner=TaskRunner(max_concurrent=4),
            duration_probe=duration_probe,
            recognition_poll=recognition_poll,
            generation_poll=generation_poll,
        )
        return ServiceBundle(service, store, client, uploader)

    return _make


@pytest.fixture()
def wait_until() -> Callable[..., Any]:
    """Yield to the event loop until predicate() holds."""

    async def _wait(predicate: Callable[[], bool], attempts: int = 500) -> None:
        for _ in range(attempts):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError("condition was not reached")

    return _wait
