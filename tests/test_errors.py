from __future__ import annotations

import httpx

from avatar_worker.pipeline.errors import (
    AUTH_MESSAGE,
    RATE_LIMIT_MESSAGE,
    UNKNOWN_MESSAGE,
    AuthError,
    PollingTimeoutError,
    ProviderError,
    RateLimitError,
    RemoteTaskExpired,
    UploadError,
    classify_failure,
    http_error_message,
)
from avatar_worker.pipeline.models import FailureKind


def _status_error(status: int, body: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://cdn.example.com/a.mp3")
    response = httpx.Response(status, json=body, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


def test_rate_limit_uses_fixed_message() -> None:
    classified = classify_failure(RateLimitError("429 Too Many Requests", status_code=429))
    assert classified.kind is FailureKind.RATE_LIMITED
    assert classified.message == RATE_LIMIT_MESSAGE


def test_auth_uses_fixed_message() -> None:
    classified = classify_failure(AuthError("Forbidden", status_code=403))
    assert classified.kind is FailureKind.AUTH
    assert classified.message == AUTH_MESSAGE


def test_pipeline_errors_keep_their_text() -> None:
    assert classify_failure(UploadError("disk full")).kind is FailureKind.UPLOAD
    assert classify_failure(PollingTimeoutError("timed out")).message == "timed out"
    assert classify_failure(RemoteTaskExpired("gone")).kind is FailureKind.REMOTE_EXPIRED
    assert classify_failure(ProviderError("Internal error")).kind is FailureKind.PROVIDER


def test_raw_http_status_errors_are_mapped() -> None:
    assert classify_failure(_status_error(429)).kind is FailureKind.RATE_LIMITED
    assert classify_failure(_status_error(401)).message == AUTH_MESSAGE

    server = classify_failure(_status_error(502, {"message": "upstream down"}))
    assert server.kind is FailureKind.PROVIDER
    assert server.message == "upstream down"


def test_anything_else_is_unknown_verbatim() -> None:
    assert classify_failure(KeyError("video_url")).message == "'video_url'"
    assert classify_failure(RuntimeError()).message == UNKNOWN_MESSAGE
    assert classify_failure(RuntimeError("x")).kind is FailureKind.UNKNOWN


def test_http_error_message_reads_response_metadata() -> None:
    body = {"ResponseMetadata": {"Error": {"Code": "SignatureDoesNotMatch", "Message": "bad signature"}}}
    assert http_error_message(httpx.Response(400, json=body)) == "bad signature"
    assert http_error_message(httpx.Response(500, text="<html>")) == "HTTP 500 error"
