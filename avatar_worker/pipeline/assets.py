"""
Asset preparation — make task inputs reachable by the provider.

Public http(s) references pass through untouched. Anything else is resolved
under PUBLIC_ASSET_ROOT and uploaded to R2. When the audio was re-hosted and
the task belongs to a storyboard shot, the shot is pointed at the new URL.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import UploadError
from .storage import is_public_url, resolve_local_path, task_asset_prefix
from .task_store import ShotStore

logger = logging.getLogger(__name__)


class Uploader(Protocol):
    async def upload_file(self, path, prefix: str) -> str: ...


@dataclass
class PreparedAssets:
    image_url: str
    audio_url: str
    image_uploaded: bool = False
    audio_uploaded: bool = False


class AssetPreparer:

    def __init__(self, uploader: Uploader, shots: Optional[ShotStore] = None, asset_root: Optional[str] = None):
        self._uploader = uploader
        self._shots = shots
        self._asset_root = asset_root

    async def _ensure_public(self, task_id: str, ref: str, label: str) -> tuple[str, bool]:
        if is_public_url(ref):
            return ref, False

        path = resolve_local_path(ref, self._asset_root)
        logger.info(f"[task {task_id}] {label} is not public, uploading {path}")
        try:
            url = await self._uploader.upload_file(path, task_asset_prefix(task_id))
        except Exception as e:
            raise UploadError(f"Failed to upload {label} '{ref}': {e}") from e

        logger.info(f"[task {task_id}] {label} uploaded: {url}")
        return url, True

    async def prepare(
        self,
        task_id: str,
        image_url: str,
        audio_url: str,
        shot_id: Optional[str] = None,
    ) -> PreparedAssets:
        """
        Ensure both inputs are public URLs.

        Raises:
            UploadError: If either upload fails. Propagating the linked shot's
                         audio URL is best-effort and never raises.
        """
        final_image, image_uploaded = await self._ensure_public(task_id, image_url, "image")
        final_audio, audio_uploaded = await self._ensure_public(task_id, audio_url, "audio")

        if audio_uploaded and shot_id and self._shots is not None:
            try:
                await self._shots.update_shot_audio(shot_id, final_audio)
                logger.info(f"[task {task_id}] Shot {shot_id} audio URL updated")
            except Exception as e:
                logger.warning(f"[task {task_id}] Could not update shot {shot_id} audio URL: {e}")

        return PreparedAssets(
            image_url=final_image,
            audio_url=final_audio,
            image_uploaded=image_uploaded,
            audio_uploaded=audio_uploaded,
        )
