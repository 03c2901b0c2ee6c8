from __future__ import annotations

import dataclasses
import hashlib
import hmac
import json
from enum import Enum
from typing import Any, Optional

from shipyard.core.errors import WebhookSignatureError


SIGNATURE_PREFIX = "sha256="


def sign_payload(payload: bytes, secret: str) -> str:
    """Signature in the `X-Hub-Signature-256` format: `sha256=<hex>`."""
    if not secret:
        raise WebhookSignatureError("webhook secret is empty")
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_payload(payload: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(signature.strip().lower(), expected)


def ensure_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """No-op when no secret is configured."""
    if not secret:
        return
    if not verify_payload(payload, signature, secret):
        raise WebhookSignatureError("invalid webhook signature")


def _to_jsonable(obj: Any) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): _to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(x) for x in obj]
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _to_jsonable(dataclasses.asdict(obj))
    if hasattr(obj, "model_dump"):
        return _to_jsonable(obj.model_dump(mode="json"))
    return str(obj)


def canonical_json_bytes(obj: Any) -> bytes:
    jsonable = _to_jsonable(obj)
    return json.dumps(jsonable, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def canonical_sha256(obj: Any) -> str:
    return hashlib.sha256(canonical_json_bytes(obj)).hexdigest()
