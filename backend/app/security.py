"""Security utilities for session JWTs and OAuth token encryption.

WHAT:
    - Session JWTs (HS256) minted for dashboard users and validated by
      `get_current_user` in app/deps.py.
    - Fernet encryption for the Google Ads / GA4 access and refresh tokens
      stored on the client row.

WHY:
    Both secrets are required at import time: a deployment that cannot
    decrypt its token store must not start serving integration routes.

REFERENCES:
    - app/services/token_service.py (encrypts on store, decrypts on refresh)
    - app/models.py::Client (token store columns)
    - backend/generate_keys.py (creates both secrets)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt

from app.utils.env import get_env, load_env_file

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_SESSION_MINUTES = 7 * 24 * 60


def _read_secret(name: str) -> str:
    value = get_env(name)
    if value is None:
        # Local runs keep secrets in backend/.env
        load_env_file()
        value = get_env(name)
    if value is None:
        raise RuntimeError(f"{name} is not set. Run backend/generate_keys.py or export it.")
    return value


JWT_SECRET = _read_secret("JWT_SECRET")
TOKEN_ENCRYPTION_KEY = _read_secret("TOKEN_ENCRYPTION_KEY")
JWT_EXPIRES_MINUTES = int(get_env("JWT_EXPIRES_MINUTES", str(DEFAULT_SESSION_MINUTES)))

try:
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte Fernet key "
        "(see backend/generate_keys.py)."
    ) from exc


# --- OAuth token encryption --------------------------------------------------------

def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a vendor token before it is written to the client row.

    Args:
        plaintext: Raw token.
        context: Label for logs, e.g. "google_ads:<client id>:refresh".
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")
    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] %s encrypted (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored vendor token.

    Raises:
        ValueError: empty value, or ciphertext written under another key.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")
    try:
        return _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Stored token for %s is unreadable with the current key", context)
        raise ValueError("Unable to decrypt stored token.") from exc


# --- Session JWTs ----------------------------------------------------------------

def create_access_token(subject: str, expires_minutes: Optional[int] = None, **claims: Any) -> str:
    """Signed session token whose `sub` is the user's email."""
    issued = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=JWT_EXPIRES_MINUTES if expires_minutes is None else expires_minutes)
    payload: Dict[str, Any] = {
        "sub": subject,
        "iat": int(issued.timestamp()),
        "exp": int((issued + lifetime).timestamp()),
        **claims,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Validated payload of a session token; raises jose.JWTError when invalid or expired."""
    return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
