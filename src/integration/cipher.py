"""Symmetric encryption for proxy credentials stored at rest."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from src.middleware.error_handler import RetrievalError


class CredentialCipher:
    """Thin Fernet wrapper; ``None`` passes through untouched."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str | None) -> str | None:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise RetrievalError("Stored proxy credentials could not be decrypted") from exc
