import json
import logging
import time
import uuid
from typing import Optional, Tuple

from odindex.store import Store

logger = logging.getLogger(__name__)

COOKIE_NAME = "NEXT_SESSION_ID"
COOKIE_MAX_AGE = 60 * 60 * 24 * 365 * 10
WRITE_TTL = 60 * 60 * 24
READ_TTL = 60 * 60 * 24 * 30

BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(number: int) -> str:
    digits = ""
    while True:
        number, rem = divmod(number, 36)
        digits = BASE36[rem] + digits
        if number == 0:
            return digits


def new_session_id() -> str:
    return to_base36(int(time.time() * 1000)) + uuid.uuid4().hex


class SessionStore:
    """Server-side visitor sessions, referenced by the session cookie.

    A record looks like ``{"id", "createdAt", "passKeys"}``; ``passKeys`` maps
    a sentinel path to the password the visitor entered for it.
    """

    def __init__(self, store: Store):
        self.store = store

    def _key(self, session_id: str) -> str:
        return f"_session:{session_id}"

    def create(self) -> dict:
        session_id = new_session_id()
        data = {"id": session_id, "createdAt": int(time.time() * 1000)}
        self.store.set(self._key(session_id), json.dumps(data), ex=WRITE_TTL)
        return data

    def load(self, session_id: Optional[str]) -> Optional[dict]:
        if not session_id:
            return None

        raw = self.store.get(self._key(session_id))
        if not raw:
            return None

        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Discarding an unreadable session record.")
            return None
        if not isinstance(data, dict) or data.get("id") != session_id:
            return None

        try:
            self.store.expire(self._key(session_id), READ_TTL)
        except Exception as e:
            # The record was read fine, a failed refresh only shortens its life
            logger.warning("Could not refresh session TTL: %s", e)
        return data

    def get_or_create(self, session_id: Optional[str]) -> Tuple[dict, bool]:
        """Returns ``(record, created)``; the caller sets the cookie when created."""
        data = self.load(session_id)
        if data is not None:
            return data, False
        return self.create(), True

    def update(self, session_id: str, patch: dict) -> dict:
        existing = self.load(session_id) or {"id": session_id, "createdAt": int(time.time() * 1000)}
        data = dict(patch)
        data["id"] = existing["id"]
        data["createdAt"] = existing["createdAt"]
        self.store.set(self._key(session_id), json.dumps(data), ex=WRITE_TTL)
        return data

    def destroy(self, session_id: Optional[str]):
        if session_id:
            self.store.delete(self._key(session_id))
