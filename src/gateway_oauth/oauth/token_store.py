"""Token storage implementations.

Each provider instance owns one storage holding its most recent token.
Operations are synchronous so they never introduce a suspension point
into the token lifecycle.
"""

from __future__ import annotations

import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from gateway_oauth.logging_config import get_logger
from gateway_oauth.oauth.token_exchange import TokenData

logger = get_logger(__name__)


class TokenStoreError(Exception):
    """Error during token storage operations."""


def _validate_token(token: TokenData) -> None:
    if not token.access_token:
        msg = "Cannot store a token without an access_token"
        raise ValueError(msg)
    if not token.token_type:
        msg = "Cannot store a token without a token_type"
        raise ValueError(msg)


class TokenStorage(ABC):
    """Abstract base class for token storage.

    Implementations must be read-your-write consistent: a ``retrieve``
    after ``store`` returns the stored token.
    """

    def __init__(self, expiry_buffer: timedelta = timedelta(0)) -> None:
        """Initialize storage.

        Args:
            expiry_buffer: Treat tokens as expired this long before expires_at
        """
        self._expiry_buffer = expiry_buffer

    @abstractmethod
    def retrieve(self) -> TokenData | None:
        """Return the stored token, or None if nothing is stored."""

    @abstractmethod
    def store(self, token: TokenData) -> None:
        """Replace the stored token.

        Raises:
            ValueError: If the token has no access_token or token_type
        """

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored token."""

    def is_expired(self) -> bool:
        """True if no token is stored or the stored token has expired."""
        token = self.retrieve()
        if token is None:
            return True
        return token.is_expired(self._expiry_buffer)


class MemoryTokenStorage(TokenStorage):
    """In-memory token storage.

    Tokens live for the lifetime of the process.
    """

    def __init__(self, expiry_buffer: timedelta = timedelta(0)) -> None:
        super().__init__(expiry_buffer)
        self._token: TokenData | None = None

    def retrieve(self) -> TokenData | None:
        return self._token

    def store(self, token: TokenData) -> None:
        _validate_token(token)
        self._token = token
        logger.debug("Stored %s token in memory", token.token_type)

    def clear(self) -> None:
        if self._token is not None:
            logger.debug("Cleared token from memory")
        self._token = None


class EncryptedFileTokenStorage(TokenStorage):
    """Encrypted file-based token storage.

    The token is encrypted using Fernet symmetric encryption and written
    as a single JSON document. Writes replace the file atomically so a
    crash never leaves a truncated token behind.
    """

    def __init__(
        self,
        encryption_key: str,
        file_path: str | Path,
        expiry_buffer: timedelta = timedelta(0),
    ) -> None:
        """Initialize encrypted file storage.

        Args:
            encryption_key: Fernet-compatible encryption key
            file_path: Path to the token file
            expiry_buffer: Treat tokens as expired this long before expires_at

        Raises:
            TokenStoreError: If encryption key is invalid
        """
        super().__init__(expiry_buffer)
        try:
            self._fernet = Fernet(encryption_key.encode())
        except (TypeError, ValueError) as e:
            raise TokenStoreError(f"Invalid encryption key: {e}") from e

        self._file_path = Path(file_path)
        self._cache: TokenData | None = None
        self._loaded = False

    @property
    def file_path(self) -> Path:
        return self._file_path

    def _load(self) -> TokenData | None:
        """Read and decrypt the token file once."""
        if self._loaded:
            return self._cache

        if not self._file_path.exists():
            self._loaded = True
            return None

        try:
            decrypted = self._fernet.decrypt(self._file_path.read_bytes())
            data = json.loads(decrypted.decode())
        except InvalidToken:
            logger.error("Failed to decrypt token file - wrong key?")
            raise TokenStoreError("Failed to decrypt token file") from None
        except json.JSONDecodeError as e:
            logger.error("Failed to parse token file: %s", e)
            raise TokenStoreError(f"Failed to parse token file: {e}") from e

        self._cache = self._deserialize(data)
        self._loaded = True
        logger.debug("Loaded token from %s", self._file_path)
        return self._cache

    def _save(self, payload: bytes) -> None:
        """Write encrypted bytes via a temp file and atomic replace."""
        dir_path = self._file_path.parent
        dir_path.mkdir(parents=True, exist_ok=True)

        fd, temp_path_str = tempfile.mkstemp(dir=dir_path)
        temp_path = Path(temp_path_str)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
            temp_path.replace(self._file_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise TokenStoreError(f"Failed to write token file: {e}") from e

    @staticmethod
    def _serialize(token: TokenData) -> dict[str, Any]:
        return {
            "access_token": token.access_token,
            "token_type": token.token_type,
            "expires_at": token.expires_at.timestamp(),
            "refresh_token": token.refresh_token,
            "scope": token.scope,
        }

    @staticmethod
    def _deserialize(data: Any) -> TokenData:
        if not isinstance(data, dict) or data.get("expires_at") is None:
            msg = "Token file is missing expires_at"
            raise TokenStoreError(msg)

        try:
            return TokenData(
                access_token=str(data["access_token"]),
                token_type=str(data.get("token_type") or "Bearer"),
                expires_at=datetime.fromtimestamp(float(data["expires_at"]), tz=UTC),
                refresh_token=str(data["refresh_token"]) if data.get("refresh_token") else None,
                scope=str(data["scope"]) if data.get("scope") else None,
            )
        except KeyError as e:
            raise TokenStoreError(f"Token file is missing {e}") from e
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise TokenStoreError(f"Token file has an invalid expires_at: {e}") from e

    def retrieve(self) -> TokenData | None:
        """Return the decrypted token.

        Raises:
            TokenStoreError: If the file cannot be decrypted or parsed
        """
        return self._load()

    def store(self, token: TokenData) -> None:
        _validate_token(token)
        encrypted = self._fernet.encrypt(json.dumps(self._serialize(token)).encode())
        self._save(encrypted)
        self._cache = token
        self._loaded = True
        logger.debug("Stored encrypted token in %s", self._file_path)

    def clear(self) -> None:
        self._cache = None
        self._loaded = True
        try:
            self._file_path.unlink(missing_ok=True)
        except OSError as e:
            raise TokenStoreError(f"Failed to remove token file: {e}") from e
        logger.debug("Removed token file %s", self._file_path)


def create_token_storage(
    encryption_key: str | None = None,
    file_path: str | Path | None = None,
) -> TokenStorage:
    """Create appropriate token storage based on configuration.

    Args:
        encryption_key: Optional Fernet encryption key
        file_path: Optional path for persistent storage

    Returns:
        Encrypted file storage if both arguments are given, else memory storage
    """
    if file_path and encryption_key:
        return EncryptedFileTokenStorage(encryption_key, file_path)
    return MemoryTokenStorage()
