"""One-way token hashing (scrypt) for verification without storing plaintext."""

import base64
import hmac
import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_SCHEME = "scrypt"
_SALT_BYTES = 16
_LENGTH = 32
_N, _R, _P = 2**14, 8, 1


def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=_LENGTH, n=_N, r=_R, p=_P)


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _unb64(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def hash_token(token: str) -> str:
    """Return ``scrypt$<salt>$<digest>`` for ``token``."""
    salt = os.urandom(_SALT_BYTES)
    digest = _kdf(salt).derive(token.encode())
    return f"{_SCHEME}${_b64(salt)}${_b64(digest)}"


def verify_token(token: str, hashed: str) -> bool:
    try:
        scheme, salt, digest = hashed.split("$")
    except ValueError:
        return False
    if not hmac.compare_digest(scheme, _SCHEME):
        return False
    try:
        _kdf(_unb64(salt)).verify(token.encode(), _unb64(digest))
    except (InvalidKey, ValueError):
        return False
    return True
