"""Cryptographic utilities for credential encryption."""

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from functools import lru_cache
import base64
import hashlib
import json
from typing import Any, Dict


class DecryptionError(Exception):
    """Stored secret could not be decrypted with the configured key."""
    pass


@lru_cache(maxsize=8)
def generate_key(password: str, salt: str) -> bytes:
    """Derive a Fernet key from a password and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def encrypt_secret(secret: Dict[str, Any], encryption_key: str, salt: str) -> str:
    """Encrypt a credential payload into an opaque blob."""
    f = Fernet(generate_key(encryption_key, salt))
    return f.encrypt(json.dumps(secret, sort_keys=True).encode()).decode()


def decrypt_secret(blob: str, encryption_key: str, salt: str) -> Dict[str, Any]:
    """Decrypt a blob produced by encrypt_secret."""
    f = Fernet(generate_key(encryption_key, salt))
    try:
        decrypted = f.decrypt(blob.encode())
    except InvalidToken as e:
        raise DecryptionError("Stored credentials could not be decrypted") from e
    return json.loads(decrypted.decode())


def fingerprint(*parts: str) -> str:
    """Stable, non-reversible fingerprint of a credential set."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode())
        digest.update(b"\x00")
    return digest.hexdigest()
