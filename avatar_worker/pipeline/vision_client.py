"""
Jimeng avatar API client (Volcengine visual service).

Wraps the three provider steps behind one async client:
  Step 1 — Recognition: does the image contain a usable subject? (submit → poll)
  Step 2 — Subject detection: candidate masks for multi-subject images (synchronous)
  Step 3 — Generation: lip-synced avatar video from image + audio (submit → poll)

Every call is a signed POST to "/" with Action/Version in the query string.
The client never sleeps or polls on its own; the orchestrator owns polling.
"""

import os
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

import httpx

from .errors import (
    AuthError,
    ConfigurationError,
    ProviderError,
    RateLimitError,
    http_error_message,
)
from .signer import sign_request, DEFAULT_HOST

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

VISION_API_BASE = os.getenv("VISION_API_BASE", f"https://{DEFAULT_HOST}")
VISION_API_TIMEOUT = float(os.getenv("VISION_API_TIMEOUT", "30"))
API_VERSION = "2022-08-31"
SUCCESS_CODE = 10000

ACCESS_KEY_ENV = "AI_PROVIDER_JIMENG_ACCESS_KEY_ID"
SECRET_KEY_ENV = "AI_PROVIDER_JIMENG_SECRET_ACCESS_KEY"

RECOGNITION_REQ_KEY = "jimeng_realman_avatar_picture_create_role_omni_v15"
DETECTION_REQ_KEY = "jimeng_realman_avatar_object_detection"
GENERATION_REQ_KEY = "jimeng_realman_avatar_picture_omni_v15"

ACTION_SUBMIT = "CVSubmitTask"
ACTION_RESULT = "CVGetResult"
ACTION_PROCESS = "CVProcess"


# ── Credentials ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VolcengineCredentials:
    access_key_id: str
    secret_access_key: str


@dataclass(frozen=True)
class CredentialsSource:
    """Credential fields as stored on the provider row in the database."""
    api_key_id: Optional[str] = None
    api_key_secret: Optional[str] = None
    api_key: Optional[str] = None


def _parse_packed_key(api_key: str) -> Optional[VolcengineCredentials]:
    """Parse a single packed key: a JSON object, or "id:secret"."""
    if api_key.startswith("{"):
        try:
            parsed = json.loads(api_key)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            key_id = parsed.get("accessKeyId") or parsed.get("access_key_id")
            secret = parsed.get("secretAccessKey") or parsed.get("secret_access_key")
            if key_id and secret:
                return VolcengineCredentials(key_id, secret)

    if ":" in api_key:
        key_id, _, secret = api_key.partition(":")
        if key_id and secret:
            return VolcengineCredentials(key_id, secret)

    return None


def resolve_credentials(source: Optional[CredentialsSource] = None) -> Optional[VolcengineCredentials]:
    """
    Resolve provider credentials, first match wins:
      1. explicit id + secret fields
      2. packed api_key string (JSON or colon-separated)
      3. AI_PROVIDER_JIMENG_ACCESS_KEY_ID / AI_PROVIDER_JIMENG_SECRET_ACCESS_KEY
    """
    if source is not None:
        if source.api_key_id and source.api_key_secret:
            return VolcengineCredentials(source.api_key_id, source.api_key_secret)
        if source.api_key:
            packed = _parse_packed_key(source.api_key)
            if packed:
                return packed

    key_id = os.getenv(ACCESS_KEY_ENV)
    secret = os.getenv(SECRET_KEY_ENV)
    if key_id and secret:
        return VolcengineCredentials(key_id, secret)
    return None


# ── Results ──────────────────────────────────────────────────────────────────

class RemoteJobStatus(str, Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"


_PENDING_STATUSES = {"in_queue", "generating", "processing"}


def _job_status(raw: str) -> RemoteJobStatus:
    if raw in _PENDING_STATUSES:
        return RemoteJobStatus.PENDING
    if raw == "done":
        return RemoteJobStatus.DONE
    if raw == "not_found":
        return RemoteJobStatus.NOT_FOUND
    if raw == "expired":
        return RemoteJobStatus.EXPIRED
    raise ProviderError(f"Unknown task status: {raw}")


@dataclass
class RecognitionPoll:
    status: RemoteJobStatus
    subject_found: Optional[bool] = None


@dataclass
class SubjectDetection:
    subject_found: bool
    mask_urls: list[str]


@dataclass
class GenerationPoll:
    status: RemoteJobStatus
    video_url: Optional[str] = None
    aigc_meta_tagged: Optional[bool] = None


def _parse_resp_data(data: dict) -> dict:
    raw = data.get("resp_data")
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise ProviderError(f"Malformed resp_data in provider response: {e}")
    return parsed if isinstance(parsed, dict) else {}


# ── Client ───────────────────────────────────────────────────────────────────

class RemoteVisionClient:
    """
    Stateless adapter over the provider's recognition, detection and
    generation endpoints.

    Usage:
        async with create_vision_client(source) as client:
            job_id = await client.submit_recognition(image_url)
            poll = await client.query_recognition(job_id)
    """

    def __init__(
        self,
        credentials: Union[VolcengineCredentials, CredentialsSource, None] = None,
        base_url: str = VISION_API_BASE,
        timeout: float = VISION_API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if isinstance(credentials, VolcengineCredentials):
            creds = credentials
        else:
            creds = resolve_credentials(credentials)

        if creds is None:
            raise ConfigurationError(
                "Volcengine credentials are required for the avatar API. Configure either "
                "1) provider fields api_key_id + api_key_secret, "
                "2) provider api_key as JSON or 'id:secret', or "
                f"3) environment variables {ACCESS_KEY_ENV} + {SECRET_KEY_ENV}"
            )

        self._credentials = creds
        self._host = httpx.URL(base_url).host
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self):
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _call(self, action: str, payload: dict[str, Any]) -> dict:
        """Sign and send one request; return the ``data`` object of a success envelope."""
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        query = {"Action": action, "Version": API_VERSION}
        headers = {"Content-Type": "application/json"}
        headers.update(sign_request(
            self._credentials.access_key_id,
            self._credentials.secret_access_key,
            method="POST",
            path="/",
            query=query,
            body=body,
            headers={"Content-Type": "application/json"},
            host=self._host,
        ))

        response = await self._http.post("/", params=query, content=body, headers=headers)

        if response.status_code == 429:
            raise RateLimitError(http_error_message(response), status_code=429)
        if response.status_code in (401, 403):
            raise AuthError(http_error_message(response), status_code=response.status_code)
        if response.is_error:
            raise ProviderError(http_error_message(response), status_code=response.status_code)

        envelope = response.json()
        code = envelope.get("code")
        if code != SUCCESS_CODE:
            raise ProviderError(
                envelope.get("message") or f"Provider rejected {action} (code={code})",
                status_code=response.status_code,
                code=code,
            )

        data = envelope.get("data")
        if not isinstance(data, dict):
            raise ProviderError(f"No data in {action} response")
        return data

    # ── Step 1: Recognition ─────────────────────────────────────────────

    async def submit_recognition(self, image_url: str) -> str:
        data = await self._call(ACTION_SUBMIT, {
            "req_key": RECOGNITION_REQ_KEY,
            "image_url": image_url,
        })
        job_id = data.get("task_id")
        if not job_id:
            raise ProviderError("Recognition submit returned no task_id")
        logger.info(f"Recognition submitted: task_id={job_id}")
        return job_id

    async def query_recognition(self, job_id: str) -> RecognitionPoll:
        data = await self._call(ACTION_RESULT, {
            "req_key": RECOGNITION_REQ_KEY,
            "task_id": job_id,
        })
        status = _job_status(data.get("status", ""))
        if status is not RemoteJobStatus.DONE:
            return RecognitionPoll(status=status)

        result = _parse_resp_data(data)
        return RecognitionPoll(status=status, subject_found=result.get("status") == 1)

    # ── Step 2: Subject detection ───────────────────────────────────────

    async def detect_subjects(self, image_url: str) -> SubjectDetection:
        data = await self._call(ACTION_PROCESS, {
            "req_key": DETECTION_REQ_KEY,
            "image_url": image_url,
        })
        if not data.get("resp_data"):
            raise ProviderError("No resp_data in subject detection response")

        result = _parse_resp_data(data)
        detection = result.get("object_detection_result") or {}
        mask_urls = (detection.get("mask") or {}).get("url") or []
        logger.info(f"Subject detection: status={result.get('status')} masks={len(mask_urls)}")
        return SubjectDetection(
            subject_found=result.get("status") == 1,
            mask_urls=list(mask_urls),
        )

    # ── Step 3: Generation ──────────────────────────────────────────────

    async def submit_generation(
        self,
        image_url: str,
        audio_url: str,
        mask_url: Optional[str] = None,
        prompt: Optional[str] = None,
        seed: Optional[int] = None,
        pe_fast_mode: Optional[bool] = None,
    ) -> str:
        payload: dict[str, Any] = {
            "req_key": GENERATION_REQ_KEY,
            "image_url": image_url,
            "audio_url": audio_url,
        }
        if mask_url:
            payload["mask_url"] = [mask_url]
        if prompt:
            payload["prompt"] = prompt
        if seed is not None:
            payload["seed"] = seed
        if pe_fast_mode is not None:
            payload["pe_fast_mode"] = pe_fast_mode

        data = await self._call(ACTION_SUBMIT, payload)
        job_id = data.get("task_id")
        if not job_id:
            raise ProviderError("Generation submit returned no task_id")
        logger.info(f"Generation submitted: task_id={job_id} mask={'yes' if mask_url else 'no'}")
        return job_id

    async def query_generation(self, job_id: str) -> GenerationPoll:
        data = await self._call(ACTION_RESULT, {
            "req_key": GENERATION_REQ_KEY,
            "task_id": job_id,
        })
        status = _job_status(data.get("status", ""))
        if status is not RemoteJobStatus.DONE:
            return GenerationPoll(status=status)

        video_url = data.get("video_url")
        if not video_url:
            video_url = _parse_resp_data(data).get("video_url")
        if not video_url:
            raise ProviderError("Generation finished but no video URL in response")
        return GenerationPoll(
            status=status,
            video_url=video_url,
            aigc_meta_tagged=data.get("aigc_meta_tagged"),
        )


def create_vision_client(
    source: Union[VolcengineCredentials, CredentialsSource, None] = None,
    **kwargs,
) -> RemoteVisionClient:
    """Build an owned client instance; raises ConfigurationError without credentials."""
    return RemoteVisionClient(source, **kwargs)
