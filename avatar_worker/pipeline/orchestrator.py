"""
AvatarTaskService — avatar video pipeline orchestrator.

Drives one task through the provider's chained async jobs, persisting every
stage so a failed task can be resumed from its deepest checkpoint:

  Step 0: Asset prep        UPLOADING_ASSETS (re-host non-public inputs)
  Step 1: Recognition       RECOGNITION_SUBMITTED → RECOGNITION_PROCESSING → RECOGNITION_COMPLETED
  Step 2: Branch            multi-subject → detection → AWAITING_SUBJECT_SELECTION (parked)
                            single-subject → straight to Step 3
  Step 3: Generation        GENERATION_SUBMITTED → GENERATION_PROCESSING → GENERATION_COMPLETED

Any failure ends in FAILED (UPLOAD_FAILED for asset uploads) with a
classified message. Nothing is retried automatically: the owner calls
retry_task(), which picks the resume point from the references already
persisted on the task.

Each task has at most one processing routine, guarded by the store lease and
scheduled on the TaskRunner.
"""

import os
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .. import metrics
from .assets import AssetPreparer
from .duration import probe_duration
from .errors import (
    InvalidSelectionError,
    InvalidTaskStateError,
    NoSubjectError,
    PollingTimeoutError,
    RemoteTaskExpired,
    RemoteTaskNotFound,
    RunnerClosedError,
    TaskBusyError,
    TaskNotFoundError,
    classify_failure,
)
from .models import (
    AvatarTask,
    CreateTaskRequest,
    DEAD_REFERENCE_KINDS,
    FAILED_STAGES,
    RECOGNITION_CONFIRMED_STAGES,
    FailureKind,
    TaskStage,
    can_transition,
    is_terminal,
)
from .runner import TaskRunner
from .task_store import TaskStore
from .vision_client import RemoteJobStatus, RemoteVisionClient

logger = logging.getLogger(__name__)

NO_SUBJECT_MESSAGE = "No person or human-like subject detected in the image"
NO_SELECTABLE_SUBJECT_MESSAGE = "No selectable subjects detected in the image"
CANCELLED_MESSAGE = "Task cancelled"
INTERRUPTED_MESSAGE = "Processing was interrupted by a worker restart"

# How long a selection waits for the parking routine to hand back the lease
PARK_SETTLE_SECONDS = 5.0


@dataclass(frozen=True)
class PollPolicy:
    interval: float  # seconds between queries
    max_attempts: int


RECOGNITION_POLL = PollPolicy(
    interval=float(os.getenv("RECOGNITION_POLL_INTERVAL", "5")),
    max_attempts=int(os.getenv("RECOGNITION_MAX_POLLS", "60")),
)
GENERATION_POLL = PollPolicy(
    interval=float(os.getenv("GENERATION_POLL_INTERVAL", "20")),
    max_attempts=int(os.getenv("GENERATION_MAX_POLLS", "100")),
)

Step = Callable[[str], Awaitable[None]]


class AvatarTaskService:
    """
    Usage:
        service = AvatarTaskService(store, client, AssetPreparer(storage, store))

        task = await service.create_task(user_id, request)   # returns immediately
        ...
        await service.select_subject_and_continue(task.id, 1)  # multi-subject only
        await service.retry_task(task.id)                        # after a failure
    """

    def __init__(
        self,
        store: TaskStore,
        client: RemoteVisionClient,
        assets: AssetPreparer,
        runner: Optional[TaskRunner] = None,
        duration_probe: Callable[[str], Awaitable[Optional[float]]] = probe_duration,
        recognition_poll: PollPolicy = RECOGNITION_POLL,
        generation_poll: PollPolicy = GENERATION_POLL,
    ):
        self._store = store
        self._client = client
        self._assets = assets
        self._runner = runner or TaskRunner()
        self._probe = duration_probe
        self._recognition_poll = recognition_poll
        self._generation_poll = generation_poll

    @property
    def runner(self) -> TaskRunner:
        return self._runner

    async def close(self):
        """Close the provider client; call after the runner has shut down."""
        await self._client.aclose()

    # ═════════════════════════════════════════════════════════════════════
    # Exposed operations
    # ═════════════════════════════════════════════════════════════════════

    async def create_task(self, user_id: str, request: CreateTaskRequest) -> AvatarTask:
        """Persist a new task and start processing it in the background.

        The audio duration is probed by the routine, never before the record exists.
        """
        task = await self._store.create({
            "user_id": user_id,
            "shot_id": request.shot_id,
            "name": request.name,
            "image_url": request.image_url,
            "audio_url": request.audio_url,
            "prompt": request.prompt,
            "seed": request.seed,
            "pe_fast_mode": request.pe_fast_mode,
            "enable_multi_subject": request.enable_multi_subject,
            "stage": TaskStage.UPLOADING_ASSETS,
        })
        metrics.inc_counter("tasks.created")
        logger.info(
            f"[task {task.id}] Created for user {user_id} "
            f"(multi_subject={task.enable_multi_subject})"
        )

        await self._acquire(task.id)
        try:
            self._start(task.id, self._run_from_start)
        except RunnerClosedError as e:
            await self._record_failure(task.id, e)
            await self._release(task.id)
            raise
        return await self._store.get(task.id)

    async def get_task(self, task_id: str) -> AvatarTask:
        return await self._store.get(task_id)

    async def list_tasks(self, user_id: str) -> list[AvatarTask]:
        """All tasks of one owner, newest first."""
        return await self._store.list_by_owner(user_id)

    async def select_subject_and_continue(self, task_id: str, mask_index: int) -> AvatarTask:
        """
        Record the owner's subject choice and resume at generation.

        Raises:
            InvalidTaskStateError: Task is not awaiting a selection.
            InvalidSelectionError: mask_index is not a detected subject.
            TaskBusyError:         Another routine holds the task.
        """
        task = await self._store.get(task_id)
        self._check_selection(task, mask_index)

        if not await self._store.acquire_lease(task_id):
            # The routine that parked the task may still be releasing its lease
            if not self._runner.is_running(task_id):
                raise TaskBusyError(f"Task {task_id} is already being processed")
            await self._runner.wait(task_id, timeout=PARK_SETTLE_SECONDS)
            self._check_selection(await self._store.get(task_id), mask_index)
            await self._acquire(task_id)

        try:
            task = await self._store.update(task_id, {"selected_mask_index": mask_index})
            self._start(task_id, self._generate)
        except Exception:
            await self._release(task_id)
            raise

        logger.info(f"[task {task_id}] Subject {mask_index} selected, continuing to generation")
        return task

    async def retry_task(self, task_id: str) -> AvatarTask:
        """
        Resume a failed task from its deepest durable checkpoint.

        Raises:
            InvalidTaskStateError: Task is not in FAILED / UPLOAD_FAILED.
            TaskBusyError:         Another routine holds the task.
        """
        task = await self._store.get(task_id)
        if task.stage not in FAILED_STAGES:
            raise InvalidTaskStateError(
                f"Only failed tasks can be retried (stage={task.stage.value})"
            )

        await self._acquire(task_id)
        try:
            step, resume_fields = self._plan_recovery(task)
            task = await self._store.update(task_id, {
                "error_message": None,
                "failure_kind": None,
                **resume_fields,
            })
            self._start(task_id, step)
        except Exception:
            await self._release(task_id)
            raise

        metrics.inc_counter("tasks.retried")
        logger.info(f"[task {task_id}] Retrying from {task.stage.value} via {step.__name__}")
        return task

    async def cancel_task(self, task_id: str) -> AvatarTask:
        """Interrupt a task's routine (if any) and mark it FAILED / CANCELLED."""
        task = await self._store.get(task_id)
        if is_terminal(task.stage):
            raise InvalidTaskStateError(f"Task {task_id} already finished (stage={task.stage.value})")

        interrupted = await self._runner.cancel(task_id)
        task = await self._store.get(task_id)
        task = await self._store.update(task_id, {
            "stage": TaskStage.FAILED,
            "error_message": CANCELLED_MESSAGE,
            "failure_kind": FailureKind.CANCELLED,
            "failed_stage": task.stage,
            "processing": False,
        })
        metrics.record_error(task_id, FailureKind.CANCELLED.value, CANCELLED_MESSAGE, task.failed_stage.value)
        logger.info(f"[task {task_id}] Cancelled at {task.failed_stage.value} (routine_running={interrupted})")
        return task

    async def delete_task(self, task_id: str) -> None:
        """Delete unconditionally; an in-flight routine is cancelled first."""
        if await self._runner.cancel(task_id):
            logger.info(f"[task {task_id}] Routine cancelled for deletion")
        await self._store.delete(task_id)
        metrics.inc_counter("tasks.deleted")
        logger.info(f"[task {task_id}] Deleted")

    async def recover_interrupted(self) -> int:
        """
        Clear leases left behind by a previous worker process.

        Tasks that were mid-routine are marked FAILED / INTERRUPTED so their
        owner can retry them. Returns the number of tasks marked failed.
        """
        recovered = 0
        for task in await self._store.list_leased():
            if self._runner.is_running(task.id):
                continue

            if task.stage is TaskStage.AWAITING_SUBJECT_SELECTION or is_terminal(task.stage):
                await self._store.release_lease(task.id)
                continue

            await self._store.update(task.id, {
                "stage": TaskStage.FAILED,
                "error_message": INTERRUPTED_MESSAGE,
                "failure_kind": FailureKind.INTERRUPTED,
                "failed_stage": task.stage,
                "processing": False,
            })
            metrics.record_error(task.id, FailureKind.INTERRUPTED.value, INTERRUPTED_MESSAGE, task.stage.value)
            logger.warning(f"[task {task.id}] Interrupted at {task.stage.value}, marked FAILED")
            recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} interrupted task(s)")
        return recovered

    # ═════════════════════════════════════════════════════════════════════
    # Routine plumbing
    # ═════════════════════════════════════════════════════════════════════

    @staticmethod
    def _check_selection(task: AvatarTask, mask_index: int):
        if task.stage is not TaskStage.AWAITING_SUBJECT_SELECTION:
            raise InvalidTaskStateError(
                f"Task {task.id} is not awaiting subject selection (stage={task.stage.value})"
            )
        if not task.mask_urls:
            raise InvalidTaskStateError(f"Task {task.id} has no detected subjects")
        if not 0 <= mask_index < len(task.mask_urls):
            raise InvalidSelectionError(
                f"Mask index {mask_index} out of range (0–{len(task.mask_urls) - 1})"
            )

    async def _probe_duration(self, audio_url: str) -> Optional[float]:
        try:
            return await self._probe(audio_url)
        except Exception as e:
            logger.warning(f"Duration probe failed for {audio_url}: {e}")
            return None

    async def _acquire(self, task_id: str):
        if not await self._store.acquire_lease(task_id):
            raise TaskBusyError(f"Task {task_id} is already being processed")

    async def _release(self, task_id: str):
        try:
            await self._store.release_lease(task_id)
        except Exception as e:
            logger.error(f"[task {task_id}] Failed to release lease: {e}", exc_info=True)

    def _start(self, task_id: str, step: Step):
        """Schedule ``step`` as the task's routine; the caller already holds the lease."""

        async def routine():
            keep_lease = False
            try:
                await step(task_id)
            except asyncio.CancelledError:
                # On shutdown the lease stays set so startup recovery marks the task INTERRUPTED
                keep_lease = self._runner.closed
                logger.warning(
                    f"[task {task_id}] Processing {'interrupted by shutdown' if keep_lease else 'cancelled'}"
                )
                raise
            except Exception as e:
                await self._record_failure(task_id, e)
            finally:
                if not keep_lease:
                    await self._release(task_id)

        self._runner.start(task_id, routine)

    async def _set_stage(self, task_id: str, stage: TaskStage, **fields: Any) -> AvatarTask:
        """
        Advance the task along the stage graph.

        Failure writes and retry's resume-stage reset do not go through here;
        every routine step goes through it.
        """
        current = await self._store.get(task_id)
        if not can_transition(current.stage, stage):
            logger.error(f"[task {task_id}] Illegal transition {current.stage.value} → {stage.value}")
            raise InvalidTaskStateError(
                f"Illegal stage transition {current.stage.value} → {stage.value}"
            )

        task = await self._store.update(task_id, {"stage": stage, **fields})
        metrics.inc_counter(f"stage.{stage.value}")
        logger.info(f"[task {task_id}] → {stage.value}")
        return task

    async def _record_failure(self, task_id: str, exc: BaseException):
        """Classify ``exc`` and persist it as the task's terminal failure."""
        failure = classify_failure(exc)
        stage = TaskStage.UPLOAD_FAILED if failure.kind is FailureKind.UPLOAD else TaskStage.FAILED
        logger.error(f"[task {task_id}] Failed ({failure.kind.value}): {failure.message}", exc_info=exc)

        try:
            current = await self._store.get(task_id)
        except TaskNotFoundError:
            logger.warning(f"[task {task_id}] Task deleted before its failure could be recorded")
            return

        failed_stage = current.failed_stage if current.stage in FAILED_STAGES else current.stage
        await self._store.update(task_id, {
            "stage": stage,
            "error_message": failure.message,
            "failure_kind": failure.kind,
            "failed_stage": failed_stage,
        })
        metrics.record_error(task_id, failure.kind.value, failure.message, failed_stage.value if failed_stage else "")

    async def _poll(self, task_id: str, phase: str, query: Callable[[], Awaitable[Any]], policy: PollPolicy):
        """
        Query until the provider reports a terminal state.

        Pending results sleep ``policy.interval`` (the cancellation point);
        not_found / expired raise immediately; running out of attempts
        raises PollingTimeoutError.
        """
        started = time.monotonic()
        for attempt in range(1, policy.max_attempts + 1):
            result = await query()

            if result.status is RemoteJobStatus.DONE:
                metrics.record_latency(phase, (time.monotonic() - started) * 1000)
                logger.info(f"[task {task_id}] {phase} done after {attempt} poll(s)")
                return result
            if result.status is RemoteJobStatus.NOT_FOUND:
                raise RemoteTaskNotFound(f"{phase.capitalize()} task not found on provider")
            if result.status is RemoteJobStatus.EXPIRED:
                raise RemoteTaskExpired(f"{phase.capitalize()} task expired on provider")

            logger.debug(f"[task {task_id}] {phase} poll #{attempt}: pending")
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.interval)

        raise PollingTimeoutError(
            f"{phase.capitalize()} polling timed out after {policy.max_attempts} attempts"
        )

    # ═════════════════════════════════════════════════════════════════════
    # Pipeline steps
    # ═════════════════════════════════════════════════════════════════════

    async def _run_from_start(self, task_id: str):
        """Step 0 onwards: prepare assets, recognise, branch."""
        task = await self._store.get(task_id)

        prepared = await self._assets.prepare(task_id, task.image_url, task.audio_url, task.shot_id)
        logger.info(
            f"[task {task_id}] Assets ready (image_uploaded={prepared.image_uploaded}, "
            f"audio_uploaded={prepared.audio_uploaded})"
        )
        if prepared.image_uploaded or prepared.audio_uploaded:
            await self._store.update(task_id, {
                "image_url": prepared.image_url,
                "audio_url": prepared.audio_url,
            })

        if task.duration_seconds is None:
            duration = await self._probe_duration(prepared.audio_url)
            if duration is not None:
                await self._store.update(task_id, {"duration_seconds": duration})

        job_id = await self._client.submit_recognition(prepared.image_url)
        await self._set_stage(task_id, TaskStage.RECOGNITION_SUBMITTED, recognition_task_id=job_id)

        await self._await_recognition(task_id)
        await self._branch(task_id)

    async def _resume_recognition(self, task_id: str):
        """Recovery entry: re-poll the persisted recognition job, then branch."""
        await self._await_recognition(task_id)
        await self._branch(task_id)

    async def _await_recognition(self, task_id: str):
        task = await self._set_stage(task_id, TaskStage.RECOGNITION_PROCESSING)
        job_id = task.recognition_task_id

        result = await self._poll(
            task_id, "recognition",
            lambda: self._client.query_recognition(job_id),
            self._recognition_poll,
        )
        if not result.subject_found:
            raise NoSubjectError(NO_SUBJECT_MESSAGE)

        await self._set_stage(task_id, TaskStage.RECOGNITION_COMPLETED)

    async def _branch(self, task_id: str):
        """Step 2: single-subject goes straight to generation, multi-subject parks for a choice."""
        task = await self._store.get(task_id)

        if not task.enable_multi_subject:
            await self._generate(task_id)
            return

        if task.mask_urls:
            await self._set_stage(task_id, TaskStage.AWAITING_SUBJECT_SELECTION)
            logger.info(f"[task {task_id}] Reusing {len(task.mask_urls)} detected subjects")
            return

        detection = await self._client.detect_subjects(task.image_url)
        if not detection.subject_found or not detection.mask_urls:
            raise NoSubjectError(NO_SELECTABLE_SUBJECT_MESSAGE)

        await self._set_stage(
            task_id, TaskStage.AWAITING_SUBJECT_SELECTION,
            mask_urls=detection.mask_urls,
            selected_mask_index=None,
        )
        logger.info(
            f"[task {task_id}] {len(detection.mask_urls)} subjects found, waiting for user selection"
        )

    async def _generate(self, task_id: str):
        """Step 3: submit generation, then poll it to completion."""
        task = await self._store.get(task_id)

        mask_url = None
        if task.enable_multi_subject:
            mask_url = task.selected_mask_url
            if mask_url is None:
                raise InvalidTaskStateError(f"Task {task_id} has no selected subject")

        job_id = await self._client.submit_generation(
            image_url=task.image_url,
            audio_url=task.audio_url,
            mask_url=mask_url,
            prompt=task.prompt,
            seed=task.seed,
            pe_fast_mode=task.pe_fast_mode,
        )
        await self._set_stage(task_id, TaskStage.GENERATION_SUBMITTED, generation_task_id=job_id)
        await self._set_stage(task_id, TaskStage.GENERATION_PROCESSING)

        await self._await_generation(task_id)

    async def _await_generation(self, task_id: str):
        task = await self._store.get(task_id)
        job_id = task.generation_task_id

        result = await self._poll(
            task_id, "generation",
            lambda: self._client.query_generation(job_id),
            self._generation_poll,
        )

        await self._set_stage(
            task_id, TaskStage.GENERATION_COMPLETED,
            result_video_url=result.video_url,
            aigc_meta_tagged=result.aigc_meta_tagged,
        )
        metrics.inc_counter("tasks.completed")

    # ═════════════════════════════════════════════════════════════════════
    # Recovery planning
    # ═════════════════════════════════════════════════════════════════════

    def _plan_recovery(self, task: AvatarTask) -> tuple[Step, dict[str, Any]]:
        """
        Pick the resume step from what is already persisted.

        A reference whose last failure was not_found / expired is dead:
        it is re-submitted instead of re-polled.
        """
        dead_reference = task.failure_kind in DEAD_REFERENCE_KINDS

        if task.generation_task_id:
            if dead_reference:
                return self._generate, {
                    "stage": TaskStage.RECOGNITION_COMPLETED,
                    "generation_task_id": None,
                }
            return self._await_generation, {"stage": TaskStage.GENERATION_PROCESSING}

        if task.recognition_task_id and not dead_reference:
            if task.failed_stage in RECOGNITION_CONFIRMED_STAGES:
                return self._branch, {"stage": TaskStage.RECOGNITION_COMPLETED}
            return self._resume_recognition, {"stage": TaskStage.RECOGNITION_SUBMITTED}

        return self._run_from_start, {"stage": TaskStage.UPLOADING_ASSETS}
