"""Transient key-value storage for intake data.

Entries carry an optional TTL; an expired entry reads as absent and is
removed lazily on access or in bulk by ``purge_expired``.
"""
import json
import logging
from datetime import timedelta

from medcheckout.database import SessionLocal
from medcheckout.models import KVEntry, utcnow

logger = logging.getLogger(__name__)

PHI_PREFIX = "intake:phi:"
INTAKE_LINK_PREFIX = "intakeq:intake:"
EMAIL_LINK_PREFIX = "intakeq:email:"


def phi_key(token: str) -> str:
    return f"{PHI_PREFIX}{token}"


def intake_link_key(intake_id: str) -> str:
    return f"{INTAKE_LINK_PREFIX}{intake_id}"


def email_link_key(email: str) -> str:
    return f"{EMAIL_LINK_PREFIX}{email.strip().lower()}"


class KeyValueStore:
    def __init__(self, session_factory=None, clock=utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def _session(self):
        factory = self._session_factory or SessionLocal
        return factory()

    def _is_expired(self, entry: KVEntry) -> bool:
        return entry.expires_at is not None and entry.expires_at <= self._clock()

    def set(self, key: str, value, ex: int = None) -> None:
        expires_at = self._clock() + timedelta(seconds=ex) if ex else None
        db = self._session()
        try:
            entry = db.get(KVEntry, key)
            if entry is None:
                entry = KVEntry(key=key)
                db.add(entry)
            entry.value = json.dumps(value)
            entry.expires_at = expires_at
            db.commit()
        finally:
            db.close()

    def get(self, key: str):
        db = self._session()
        try:
            entry = db.get(KVEntry, key)
            if entry is None:
                return None
            if self._is_expired(entry):
                db.delete(entry)
                db.commit()
                return None
            return json.loads(entry.value)
        finally:
            db.close()

    def delete(self, key: str) -> bool:
        db = self._session()
        try:
            entry = db.get(KVEntry, key)
            if entry is None:
                return False
            db.delete(entry)
            db.commit()
            return True
        finally:
            db.close()

    def take(self, key: str):
        """Return the value stored under ``key`` and delete it in the same transaction."""
        db = self._session()
        try:
            entry = db.get(KVEntry, key)
            if entry is None:
                return None
            expired = self._is_expired(entry)
            value = None if expired else json.loads(entry.value)
            db.delete(entry)
            db.commit()
            return value
        finally:
            db.close()

    def purge_expired(self) -> int:
        db = self._session()
        try:
            count = (
                db.query(KVEntry)
                .filter(KVEntry.expires_at.isnot(None), KVEntry.expires_at <= self._clock())
                .delete(synchronize_session=False)
            )
            db.commit()
            if count:
                logger.info("Purged %d expired kv entries", count)
            return count
        finally:
            db.close()


def get_kv() -> KeyValueStore:
    return KeyValueStore()
