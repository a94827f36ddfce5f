"""
HMAC-SHA256 request signing for the Volcengine visual API.

sign_request() takes the method, path, query, body and a credential pair and
returns the headers to attach (Authorization, X-Date, X-Content-Sha256).
The client composes it explicitly with every HTTP call.

Notes:
  - The secret access key is used as-is (the raw string), not base64-decoded.
  - Content-Type, Host, X-Date and X-Content-Sha256 are all signed.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Mapping, Optional
from urllib.parse import quote

SIGNING_ALGORITHM = "HMAC-SHA256"
DEFAULT_SERVICE = "cv"
DEFAULT_REGION = "cn-north-1"
DEFAULT_HOST = "visual.volcengineapi.com"

UNSIGNED_HEADERS = {"authorization", "content-length", "user-agent", "presigned-expires", "expect"}


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def uri_escape(value: str) -> str:
    """Percent-encode everything except A-Z a-z 0-9 - _ . ~"""
    return quote(value, safe="-_.~")


def canonical_query(query: Mapping[str, str]) -> str:
    return "&".join(
        f"{uri_escape(key)}={uri_escape(str(query[key]))}" for key in sorted(query)
    )


def format_x_date(now: datetime) -> str:
    """YYYYMMDDTHHMMSSZ in UTC."""
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def sign_request(
    access_key_id: str,
    secret_access_key: str,
    method: str,
    path: str = "/",
    query: Optional[Mapping[str, str]] = None,
    body: bytes | str = b"",
    headers: Optional[Mapping[str, str]] = None,
    service: str = DEFAULT_SERVICE,
    region: str = DEFAULT_REGION,
    host: str = DEFAULT_HOST,
    now: Optional[datetime] = None,
) -> dict[str, str]:
    """
    Build the signature headers for one request.

    Args:
        access_key_id:     Credential id, embedded in the Authorization header.
        secret_access_key: Raw secret, seeds the signing-key derivation.
        method:            HTTP method.
        path:              Request path ("/" for the visual API).
        query:             Query parameters (Action, Version, ...).
        body:              Exact bytes that will be sent.
        headers:           Extra headers to sign, typically Content-Type.
        now:               Signing time; defaults to the current UTC time.

    Returns:
        Headers to merge into the outgoing request.
    """
    if isinstance(body, str):
        body = body.encode("utf-8")

    x_date = format_x_date(now or datetime.now(timezone.utc))
    short_date = x_date[:8]
    payload_hash = _sha256_hex(body)

    all_headers = dict(headers or {})
    all_headers["X-Date"] = x_date
    all_headers["X-Content-Sha256"] = payload_hash
    all_headers["Host"] = host

    signable = sorted(
        (key for key in all_headers if key.lower() not in UNSIGNED_HEADERS),
        key=str.lower,
    )
    canonical_headers = "".join(
        f"{key.lower()}:{' '.join(str(all_headers[key]).split())}\n" for key in signable
    )
    signed_headers = ";".join(key.lower() for key in signable)

    canonical_request = "\n".join([
        method.upper(),
        path,
        canonical_query(query or {}),
        canonical_headers,
        signed_headers,
        payload_hash,
    ])

    credential_scope = f"{short_date}/{region}/{service}/request"
    string_to_sign = "\n".join([
        SIGNING_ALGORITHM,
        x_date,
        credential_scope,
        _sha256_hex(canonical_request.encode("utf-8")),
    ])

    k_date = _hmac(secret_access_key.encode("utf-8"), short_date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    k_signing = _hmac(k_service, "request")
    signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    authorization = (
        f"{SIGNING_ALGORITHM} Credential={access_key_id}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    return {
        "Authorization": authorization,
        "X-Date": x_date,
        "X-Content-Sha256": payload_hash,
    }
