"""
Task persistence for the avatar pipeline.

Two backends share one contract:
  - SupabaseTaskStore: production, rows in the `digital_human_tasks` table
    (service-role client, bypasses RLS).
  - InMemoryTaskStore: local development (TASK_STORE=memory) and tests.

Every write is a single-row update. The `processing` column is the per-task
lease: acquire_lease() flips it false → true in one conditional update so at
most one processing routine can own a task.
"""

import os
import json
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import uuid4

from supabase import create_client, Client

from .errors import TaskNotFoundError
from .models import AvatarTask, TaskStage
from .vision_client import CredentialsSource

logger = logging.getLogger(__name__)

AVATAR_TASKS_TABLE = os.getenv("AVATAR_TASKS_TABLE", "digital_human_tasks")
STUDIO_SHOTS_TABLE = os.getenv("STUDIO_SHOTS_TABLE", "studio_shots")
AI_PROVIDERS_TABLE = os.getenv("AI_PROVIDERS_TABLE", "ai_providers")


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Contracts ────────────────────────────────────────────────────────────────

class TaskStore(Protocol):
    async def create(self, fields: dict[str, Any]) -> AvatarTask: ...

    async def get(self, task_id: str) -> AvatarTask: ...

    async def update(self, task_id: str, fields: dict[str, Any]) -> AvatarTask: ...

    async def list_by_owner(self, user_id: str) -> list[AvatarTask]: ...

    async def delete(self, task_id: str) -> None: ...

    async def acquire_lease(self, task_id: str) -> bool: ...

    async def release_lease(self, task_id: str) -> None: ...

    async def list_leased(self) -> list[AvatarTask]: ...


class ShotStore(Protocol):
    async def update_shot_audio(self, shot_id: str, audio_url: str) -> None: ...


# ── Row conversion ───────────────────────────────────────────────────────────

def _decode_mask_urls(value: Any) -> Optional[list[str]]:
    """mask_urls is a JSON list; older rows hold it as a JSON-encoded string."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    return list(value) if isinstance(value, list) else None


def _row_to_task(row: dict) -> AvatarTask:
    """Convert a Supabase row dict to an AvatarTask."""
    data = dict(row)
    data["mask_urls"] = _decode_mask_urls(row.get("mask_urls"))
    data["processing"] = bool(row.get("processing") or False)
    return AvatarTask.model_validate(data)


def _to_row(fields: dict[str, Any]) -> dict[str, Any]:
    """Make partial task fields JSON-safe for the REST API."""
    row = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        row[key] = value
    return row


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseTaskStore:
    """TaskStore and ShotStore backed by Supabase tables."""

    def __init__(self, client: Optional[Client] = None, table: str = AVATAR_TASKS_TABLE):
        self._sb = client or self._create_service_client()
        self._table = table

    @staticmethod
    def _create_service_client() -> Client:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return create_client(url, key)

    @property
    def client(self) -> Client:
        return self._sb

    async def _execute(self, query):
        # supabase-py is synchronous; keep the event loop free while it runs
        return await asyncio.to_thread(query.execute)

    async def create(self, fields: dict[str, Any]) -> AvatarTask:
        now = _now()
        row = _to_row({
            "id": fields.get("id") or str(uuid4()),
            "stage": TaskStage.UPLOADING_ASSETS,
            "processing": False,
            "created_at": now,
            "updated_at": now,
            **fields,
        })
        result = await self._execute(self._sb.table(self._table).insert(row))
        return _row_to_task(result.data[0])

    async def get(self, task_id: str) -> AvatarTask:
        result = await self._execute(
            self._sb.table(self._table).select("*").eq("id", task_id).limit(1)
        )
        if not result.data:
            raise TaskNotFoundError(task_id)
        return _row_to_task(result.data[0])

    async def update(self, task_id: str, fields: dict[str, Any]) -> AvatarTask:
        row = _to_row({**fields, "updated_at": _now()})
        result = await self._execute(
            self._sb.table(self._table).update(row).eq("id", task_id)
        )
        if not result.data:
            raise TaskNotFoundError(task_id)
        return _row_to_task(result.data[0])

    async def list_by_owner(self, user_id: str) -> list[AvatarTask]:
        result = await self._execute(
            self._sb.table(self._table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
        )
        return [_row_to_task(row) for row in result.data]

    async def delete(self, task_id: str) -> None:
        await self._execute(self._sb.table(self._table).delete().eq("id", task_id))

    async def acquire_lease(self, task_id: str) -> bool:
        result = await self._execute(
            self._sb.table(self._table)
            .update({"processing": True, "updated_at": _now().isoformat()})
            .eq("id", task_id)
            .eq("processing", False)
        )
        return bool(result.data)

    async def release_lease(self, task_id: str) -> None:
        await self._execute(
            self._sb.table(self._table).update({"processing": False}).eq("id", task_id)
        )

    async def list_leased(self) -> list[AvatarTask]:
        result = await self._execute(
            self._sb.table(self._table).select("*").eq("processing", True)
        )
        return [_row_to_task(row) for row in result.data]

    async def update_shot_audio(self, shot_id: str, audio_url: str) -> None:
        await self._execute(
            self._sb.table(STUDIO_SHOTS_TABLE).update({"audio_url": audio_url}).eq("id", shot_id)
        )
        logger.info(f"Shot {shot_id} audio URL → {audio_url}")


def fetch_provider_credentials(client: Client, slug: str = "jimeng") -> Optional[CredentialsSource]:
    """Read the provider's credential fields from the ai_providers table."""
    result = (
        client.table(AI_PROVIDERS_TABLE)
        .select("api_key, api_key_id, api_key_secret")
        .eq("slug", slug)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    row = result.data[0]
    return CredentialsSource(
        api_key_id=row.get("api_key_id"),
        api_key_secret=row.get("api_key_secret"),
        api_key=row.get("api_key"),
    )


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryTaskStore:
    """
    Process-local store with the same contract as SupabaseTaskStore.

    stage_log records every persisted stage per task, in write order.
    """

    def __init__(self):
        self._tasks: dict[str, AvatarTask] = {}
        self._lock = asyncio.Lock()
        self.shots: dict[str, str] = {}
        self.stage_log: dict[str, list[TaskStage]] = {}

    async def create(self, fields: dict[str, Any]) -> AvatarTask:
        now = _now()
        data = {
            "id": str(uuid4()),
            "stage": TaskStage.UPLOADING_ASSETS,
            "created_at": now,
            "updated_at": now,
            **fields,
        }
        task = AvatarTask.model_validate(data)
        async with self._lock:
            self._tasks[task.id] = task
            self.stage_log[task.id] = [task.stage]
        return task

    async def get(self, task_id: str) -> AvatarTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update(self, task_id: str, fields: dict[str, Any]) -> AvatarTask:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            updated = AvatarTask.model_validate({
                **task.model_dump(),
                **fields,
                "updated_at": _now(),
            })
            self._tasks[task_id] = updated
            if "stage" in fields:
                self.stage_log[task_id].append(updated.stage)
        return updated

    async def list_by_owner(self, user_id: str) -> list[AvatarTask]:
        owned = [t for t in self._tasks.values() if t.user_id == user_id]
        return sorted(owned, key=lambda t: t.created_at, reverse=True)

    async def delete(self, task_id: str) -> None:
        async with self._lock:
            self._tasks.pop(task_id, None)

    async def acquire_lease(self, task_id: str) -> bool:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.processing:
                return False
            self._tasks[task_id] = task.model_copy(update={"processing": True})
            return True

    async def release_lease(self, task_id: str) -> None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is not None:
                self._tasks[task_id] = task.model_copy(update={"processing": False})

    async def list_leased(self) -> list[AvatarTask]:
        return [t for t in self._tasks.values() if t.processing]

    async def update_shot_audio(self, shot_id: str, audio_url: str) -> None:
        self.shots[shot_id] = audio_url
