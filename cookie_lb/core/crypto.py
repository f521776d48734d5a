from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from cryptography.fernet import Fernet

from cookie_lb.core.config.settings import get_settings


def _load_or_create_key(key_file: Path) -> bytes:
    # Stored access/refresh tokens are unreadable without this key; move it together with the database.
    key_file.parent.mkdir(parents=True, exist_ok=True)
    if key_file.exists():
        return key_file.read_bytes()
    key = Fernet.generate_key()
    key_file.write_bytes(key)
    key_file.chmod(0o600)
    return key


@lru_cache(maxsize=8)
def _cached_key(key_file: str) -> bytes:
    return _load_or_create_key(Path(key_file))


@lru_cache(maxsize=8)
def _fernet_for(key: bytes) -> Fernet:
    return Fernet(key)


class TokenCipher:
    """Symmetric encryption for upstream credentials stored in the accounts table."""

    def __init__(self, key: bytes | None = None, key_file: Path | None = None) -> None:
        resolved_file = key_file or get_settings().encryption_key_file
        resolved_key = key or _cached_key(str(resolved_file))
        self._fernet = _fernet_for(resolved_key)

    def encrypt(self, token: str) -> bytes:
        return self._fernet.encrypt(token.encode())

    def decrypt(self, encrypted: bytes) -> str:
        return self._fernet.decrypt(encrypted).decode()
