import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from fastapi import Request, Depends
from jose import jwt, JWTError

from playdeck.core.config import get_settings
from playdeck.core.exceptions import AuthorizationError, DecryptionError

settings = get_settings()
logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 1 day

VAULT_KDF_ITERATIONS = 390_000
VAULT_SALT_BYTES = 16
VAULT_BLOB_SEPARATOR = "$"


# --- Encryption Utilities ---

def get_fernet() -> Fernet:
    """Derives a Fernet key from the SECRET_KEY and returns a Fernet instance.

    Why: Fernet requires a 32-byte url-safe base64-encoded key. We derive this
    from the application's SECRET_KEY so secrets stored at rest (server keys,
    vault passwords) stay readable across restarts.
    """
    key_bytes = get_settings().SECRET_KEY.encode()
    hash_object = hashlib.sha256(key_bytes)
    key_32 = base64.urlsafe_b64encode(hash_object.digest())
    return Fernet(key_32)


def encrypt_secret(plain_text: str) -> str:
    """Encrypts a string with the application secret.

    Args:
        plain_text: The sensitive data to encrypt.

    Returns:
        The encrypted token as a string, or "" for empty input.
    """
    if not plain_text:
        return ""
    f = get_fernet()
    return f.encrypt(plain_text.encode()).decode()


def decrypt_secret(cipher_text: str) -> str:
    """Decrypts a token produced by `encrypt_secret`.

    Raises:
        DecryptionError: If the token was not produced with the current SECRET_KEY.
    """
    if not cipher_text:
        return ""
    try:
        f = get_fernet()
        return f.decrypt(cipher_text.encode()).decode()
    except InvalidToken as e:
        raise DecryptionError("stored secret cannot be decrypted with the current SECRET_KEY") from e


def _derive_vault_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=VAULT_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def encrypt_vault(plain_text: str, password: str) -> str:
    """Encrypts a vault payload with a key derived from its password.

    The blob is `<urlsafe-b64 salt>$<fernet token>`; a fresh salt is drawn
    for every call.
    """
    salt = os.urandom(VAULT_SALT_BYTES)
    token = Fernet(_derive_vault_key(password, salt)).encrypt(plain_text.encode())
    return base64.urlsafe_b64encode(salt).decode() + VAULT_BLOB_SEPARATOR + token.decode()


def decrypt_vault(blob: str, password: str) -> str:
    """Decrypts a vault blob produced by `encrypt_vault`.

    Raises:
        DecryptionError: Wrong password, or a blob that is truncated or corrupt.
    """
    salt_b64, sep, token = blob.partition(VAULT_BLOB_SEPARATOR)
    if not sep or not token:
        raise DecryptionError("vault blob is malformed")
    try:
        salt = base64.urlsafe_b64decode(salt_b64.encode())
    except ValueError as e:
        raise DecryptionError("vault blob is malformed") from e
    try:
        plain = Fernet(_derive_vault_key(password, salt)).decrypt(token.encode())
    except InvalidToken as e:
        raise DecryptionError("wrong vault password or corrupt vault payload") from e
    return plain.decode()


# --- Authentication Utilities ---

@dataclass
class CurrentUser:
    user_id: str
    username: str
    role: str


def create_access_token(username: str, role: str, user_id: str = "", expires_delta: Optional[timedelta] = None) -> str:
    """Issues a signed bearer token in the format `get_current_user` accepts."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": username, "uid": user_id, "role": role, "exp": expire}
    return jwt.encode(payload, get_settings().SECRET_KEY, algorithm=ALGORITHM)


def get_user_from_token(token: str) -> Optional[CurrentUser]:
    """Decodes a JWT token and extracts user info."""
    try:
        payload = jwt.decode(token, get_settings().SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    username = payload.get("sub")
    if username is None:
        return None
    return CurrentUser(user_id=payload.get("uid", ""), username=username, role=payload.get("role", "watcher"))


async def get_current_user(request: Request) -> CurrentUser:
    """Dependency that authenticates the caller from an `Authorization: Bearer` header."""
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else None
    if not token:
        raise AuthorizationError("Not authenticated")

    user = get_user_from_token(token)
    if not user:
        raise AuthorizationError("Invalid token")
    return user


class RoleChecker:
    """FastAPI dependency that enforces role-based access control."""

    def __init__(self, allowed_roles: list[str]):
        self.allowed_roles = allowed_roles

    async def __call__(self, user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        # Admin always has access
        if user.role == "admin" or user.role in self.allowed_roles:
            return user
        raise AuthorizationError("Operation not permitted", details={"role": user.role})
