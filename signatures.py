# signatures.py - HMAC checks for the webhook and app-proxy trust boundaries
import base64
import hashlib
import hmac
from typing import Mapping, Sequence, Union

ParamValue = Union[str, Sequence[str]]

SIGNATURE_FIELDS = ("signature", "hmac")


def sign_webhook(raw_body: bytes, shared_secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as sent in X-Shopify-Hmac-Sha256."""
    digest = hmac.new(shared_secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook(raw_body: bytes, provided_signature: str | None, shared_secret: str) -> bool:
    """Check a webhook signature against the exact bytes received on the wire.

    Never raises; a missing or malformed signature is simply a mismatch.
    """
    if not provided_signature or not isinstance(raw_body, (bytes, bytearray)):
        return False
    expected = sign_webhook(bytes(raw_body), shared_secret)
    try:
        return hmac.compare_digest(expected.encode("ascii"), provided_signature.strip().encode("ascii"))
    except UnicodeEncodeError:
        return False


def _joined(value: ParamValue) -> str:
    if isinstance(value, str):
        return value
    return ",".join(str(v) for v in value)


def canonical_query(params: Mapping[str, ParamValue]) -> str:
    """Sorted `key=value` pairs, concatenated without separators.

    Multi-value parameters are comma-joined. Signature fields are excluded.
    """
    keys = sorted(k for k in params if k not in SIGNATURE_FIELDS)
    return "".join(f"{k}={_joined(params[k])}" for k in keys)


def sign_proxy_request(params: Mapping[str, ParamValue], shared_secret: str) -> str:
    message = canonical_query(params)
    return hmac.new(shared_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _extract_signature(params: Mapping[str, ParamValue]) -> str | None:
    for field in SIGNATURE_FIELDS:
        value = params.get(field)
        if value:
            return value if isinstance(value, str) else _joined(value)
    return None


def verify_proxy_request(params: Mapping[str, ParamValue], shared_secret: str) -> bool:
    """Check an app-proxy query string signed with the shared secret (hex digest)."""
    provided = _extract_signature(params)
    if not provided:
        return False
    expected = sign_proxy_request(params, shared_secret)
    try:
        return hmac.compare_digest(expected.encode("ascii"), provided.encode("ascii"))
    except UnicodeEncodeError:
        return False
