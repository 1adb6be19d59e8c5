from __future__ import annotations

from dataclasses import dataclass

from calhub.config_store import ConfigStore
from calhub.crypto import AesGcmCipher
from calhub.database import Database
from calhub.event_cache import EventCache
from calhub.secret_store import SecretStore


@dataclass(frozen=True)
class CalendarContext:
    """Repositories bound to the authenticated user of one request."""

    user_id: str
    event_cache: EventCache
    config_store: ConfigStore
    secret_store: SecretStore


def create_calendar_context(db: Database, user_id: str, cipher: AesGcmCipher) -> CalendarContext:
    if not user_id:
        raise ValueError("user_id is required to build a calendar context")
    return CalendarContext(
        user_id=user_id,
        event_cache=EventCache(db, user_id),
        config_store=ConfigStore(db, user_id),
        secret_store=SecretStore(db, user_id, cipher),
    )
