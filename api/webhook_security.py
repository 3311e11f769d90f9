import hashlib
import hmac
import json
from typing import Any, Iterable, Optional, Union


SIGNATURE_HEADER = 'x-tradingview-signature'


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """HMAC-SHA256 check over the raw body. No secret configured means no check."""
    if not secret:
        return True
    if not signature:
        return False
    candidate = signature.strip().lower()
    if candidate.startswith('sha256='):
        candidate = candidate[len('sha256='):]
    try:
        bytes.fromhex(candidate)
    except ValueError:
        return False
    expected = sign_payload(body, secret)
    return hmac.compare_digest(candidate, expected)


def ip_allowed(client_ip: Optional[str], allowed_ips: Iterable[str]) -> bool:
    allowed = list(allowed_ips)
    if not allowed:
        return True
    return client_ip in allowed


def decode_body(body: bytes) -> Union[dict, str]:
    """JSON objects map to dicts; anything else is treated as alert text.

    Raises ValueError for empty or undecodable bodies.
    """
    if not body or not body.strip():
        raise ValueError('empty body')
    try:
        text = body.decode('utf-8')
    except UnicodeDecodeError as exc:
        raise ValueError('body is not valid UTF-8') from exc
    stripped = text.strip()
    if stripped[:1] in ('{', '[', '"'):
        try:
            parsed: Any = json.loads(stripped)
        except json.JSONDecodeError as exc:
            if stripped[:1] == '{':
                raise ValueError(f'malformed JSON: {exc.msg}') from exc
            return stripped
        if isinstance(parsed, dict):
            return parsed
        if isinstance(parsed, str):
            return parsed
        raise ValueError('JSON body must be an object')
    return stripped
