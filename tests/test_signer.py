from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from avatar_worker.pipeline.signer import canonical_query, format_x_date, sign_request, uri_escape

SIGNED_AT = datetime(2024, 3, 5, 7, 8, 9, tzinfo=timezone.utc)
QUERY = {"Action": "CVSubmitTask", "Version": "2022-08-31"}
BODY = b'{"req_key":"jimeng_realman_avatar_picture_create_role_omni_v15"}'


def _sign(**overrides) -> dict[str, str]:
    kwargs = {
        "access_key_id": "AKTEST",
        "secret_access_key": "secret",
        "method": "POST",
        "query": QUERY,
        "body": BODY,
        "headers": {"Content-Type": "application/json"},
        "now": SIGNED_AT,
    }
    kwargs.update(overrides)
    return sign_request(**kwargs)


def test_x_date_is_compact_utc() -> None:
    assert format_x_date(SIGNED_AT) == "20240305T070809Z"


def test_uri_escape_keeps_unreserved_characters() -> None:
    assert uri_escape("a-b_c.d~e") == "a-b_c.d~e"
    assert uri_escape("a b/c") == "a%20b%2Fc"


def test_canonical_query_is_sorted_and_escaped() -> None:
    assert canonical_query({"b": "x y", "a": "1"}) == "a=1&b=x%20y"


def test_signature_headers_shape() -> None:
    headers = _sign()

    assert headers["X-Date"] == "20240305T070809Z"
    assert headers["X-Content-Sha256"] == hashlib.sha256(BODY).hexdigest()
    match = re.fullmatch(
        r"HMAC-SHA256 Credential=AKTEST/20240305/cn-north-1/cv/request, "
        r"SignedHeaders=content-type;host;x-content-sha256;x-date, Signature=[0-9a-f]{64}",
        headers["Authorization"],
    )
    assert match is not None


def test_signature_is_deterministic_and_key_dependent() -> None:
    first = _sign()["Authorization"]

    assert _sign()["Authorization"] == first
    assert _sign(secret_access_key="other")["Authorization"] != first
    assert _sign(body=b"{}")["Authorization"] != first
    assert _sign(query={"Version": "2022-08-31", "Action": "CVSubmitTask"})["Authorization"] == first


def test_string_body_is_signed_like_bytes() -> None:
    assert _sign(body=BODY.decode("utf-8")) == _sign()
