"""Encrypted per-user credential storage.

Rows hold only ciphertext produced by :class:`~calhub.crypto.AesGcmCipher`;
plaintext exists in memory only. ``get`` returns ``None`` strictly when no row
exists; a row that fails authentication raises ``DecryptionFailedError``.
"""

from __future__ import annotations

import aiosqlite

from calhub.crypto import AesGcmCipher
from calhub.database import Database
from calhub.errors import SecretStorageError
from calhub.models import to_storage_time, utc_now

GOOGLE_OAUTH_NAMESPACE = "google_oauth"


def google_oauth_key(account_email: str) -> str:
    return f"{GOOGLE_OAUTH_NAMESPACE}:{account_email.strip().lower()}"


def is_google_oauth_key(key: str) -> bool:
    return key.startswith(f"{GOOGLE_OAUTH_NAMESPACE}:") and len(key) > len(GOOGLE_OAUTH_NAMESPACE) + 1


def email_from_google_oauth_key(key: str) -> str | None:
    if not is_google_oauth_key(key):
        return None
    return key.split(":", 1)[1]


class SecretStore:
    def __init__(self, db: Database, user_id: str, cipher: AesGcmCipher) -> None:
        self.db = db
        self.user_id = user_id
        self._cipher = cipher

    async def get(self, key: str) -> str | None:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT encrypted_value FROM credentials WHERE user_id = ? AND key = ?",
                    (self.user_id, key),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise SecretStorageError(f"Failed to read secret {key}: {exc}") from exc
        if row is None:
            return None
        return self._cipher.decrypt(str(row["encrypted_value"]))

    async def set(self, key: str, value: str) -> None:
        encrypted = self._cipher.encrypt(value)
        now = to_storage_time(utc_now())
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO credentials(user_id, key, encrypted_value, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, key) DO UPDATE SET
                        encrypted_value = excluded.encrypted_value,
                        updated_at = excluded.updated_at
                    """,
                    (self.user_id, key, encrypted, now, now),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise SecretStorageError(f"Failed to write secret {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            async with self.db.connect() as conn:
                await conn.execute(
                    "DELETE FROM credentials WHERE user_id = ? AND key = ?",
                    (self.user_id, key),
                )
                await conn.commit()
        except aiosqlite.Error as exc:
            raise SecretStorageError(f"Failed to delete secret {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT 1 FROM credentials WHERE user_id = ? AND key = ?",
                    (self.user_id, key),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise SecretStorageError(f"Failed to check secret {key}: {exc}") from exc
        return row is not None

    async def list_keys(self, prefix: str = "") -> list[str]:
        try:
            async with self.db.connect() as conn:
                cursor = await conn.execute(
                    "SELECT key FROM credentials WHERE user_id = ? ORDER BY key",
                    (self.user_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise SecretStorageError(f"Failed to list secrets: {exc}") from exc
        return [str(row["key"]) for row in rows if str(row["key"]).startswith(prefix)]
