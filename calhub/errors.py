"""Exception taxonomy shared by the calendar sync core."""

from __future__ import annotations

from typing import Any


class CalHubError(Exception):
    """Base exception for calhub errors."""


# Provider adapters


class ProviderError(CalHubError):
    """Raised by a provider adapter when a fetch cannot be completed."""

    kind = "network"


class AuthExpiredError(ProviderError):
    kind = "authentication"

    def __init__(self, account: str, message: str = "Re-authentication required") -> None:
        self.account = account
        super().__init__(f"{message}: {account}")


class ApiError(ProviderError):
    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"Upstream API request failed ({status}): {body[:200]}")


class NetworkError(ProviderError):
    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        detail = f"{message}: {cause}" if cause is not None else message
        super().__init__(detail)


class ConfigIncompleteError(ProviderError):
    kind = "configuration"

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        self.missing = list(missing or [])
        super().__init__(message)


# Storage


class StorageError(CalHubError):
    """A cache, config or secret read/write failed."""

    kind = "storage"


class EventCacheError(StorageError):
    pass


class ConfigStoreError(StorageError):
    pass


class SecretStorageError(StorageError):
    pass


# Cryptography


class CryptoError(CalHubError):
    kind = "cryptographic"


class EncryptionKeyError(CryptoError):
    """The server-held encryption key is missing or malformed."""


class EncryptionFailedError(CryptoError):
    pass


class DecryptionFailedError(CryptoError):
    """Ciphertext was tampered with, truncated, or sealed with another key."""


class ConfigParseError(CalHubError):
    """A stored calendar configuration failed schema validation."""

    kind = "configuration"


# Sync orchestration

SYNC_CONFIG_ERROR = "SYNC_CONFIG_ERROR"
SYNC_DB_ERROR = "SYNC_DB_ERROR"
SYNC_PROVIDER_ERROR = "SYNC_PROVIDER_ERROR"
SYNC_CALENDAR_NOT_FOUND = "SYNC_CALENDAR_NOT_FOUND"
SYNC_TOKEN_NOT_FOUND = "SYNC_TOKEN_NOT_FOUND"


def error_kind(exc: BaseException | None) -> str:
    if exc is None:
        return "unknown"
    return str(getattr(exc, "kind", "unknown"))


class SyncError(CalHubError):
    def __init__(
        self,
        code: str,
        message: str,
        *,
        calendar_id: str | None = None,
        cause: BaseException | None = None,
        kind: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.calendar_id = calendar_id
        self.cause = cause
        self.kind = kind or _default_kind(code, cause)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message, "kind": self.kind}
        if self.calendar_id is not None:
            payload["calendarId"] = self.calendar_id
        return payload


def _default_kind(code: str, cause: BaseException | None) -> str:
    if cause is not None and hasattr(cause, "kind"):
        return error_kind(cause)
    if code in {SYNC_CONFIG_ERROR, SYNC_CALENDAR_NOT_FOUND}:
        return "configuration"
    if code == SYNC_TOKEN_NOT_FOUND:
        return "authentication"
    if code == SYNC_DB_ERROR:
        return "storage"
    return "network"
