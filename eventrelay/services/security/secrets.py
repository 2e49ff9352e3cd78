from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from eventrelay.core.config import get_settings
from eventrelay.core.errors import EndpointValidationError, SecretUnavailableError


_MIN_SECRET_BYTES = 16


def _build_fernet() -> Fernet:
    source = (get_settings().secrets_master_key or "").strip()
    if not source:
        raise SecretUnavailableError("SECRETS_MASTER_KEY is not configured")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def coerce_secret(secret: bytes | str) -> bytes:
    raw = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
    if len(raw) < _MIN_SECRET_BYTES:
        raise EndpointValidationError(f"secret must be at least {_MIN_SECRET_BYTES} bytes")
    return raw


def encrypt_secret(secret: bytes | str) -> str:
    token = _build_fernet().encrypt(coerce_secret(secret))
    return token.decode("utf-8")


def decrypt_secret(token: str | None) -> bytes:
    # Any failure here is a key-retrieval error; workers treat it as a transient delivery failure.
    if not token:
        raise SecretUnavailableError("endpoint has no signing secret")
    try:
        return _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken as exc:
        raise SecretUnavailableError("endpoint signing secret could not be decrypted") from exc
