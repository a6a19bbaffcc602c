import json
import logging
from typing import Iterable, Optional, Tuple, Union

from odindex.onedrive import NotFound, TransientError
from odindex.store import Cache

logger = logging.getLogger(__name__)

PASSWORD_TTL = 600


class Found:
    def __init__(self, plaintext: str):
        self.plaintext = plaintext

    def __repr__(self):
        # Never render the secret itself
        return "<Found>"


Resolution = Union[Found, NotFound, TransientError]


class PasswordResolver:
    """Reads the content of ``.password`` sentinel files, through the cache.

    Found passwords and confirmed absences are cached for ten minutes, so
    rotating a password takes effect once the old entry expires. Transient
    upstream failures are not cached.
    """

    def __init__(self, drive, cache: Cache, ttl: int = PASSWORD_TTL):
        self.drive = drive
        self.cache = cache
        self.ttl = ttl

    def resolve(self, sentinel_path: str) -> Resolution:
        key = f"TOKEN:{sentinel_path}"
        cached = self.cache.get(key)
        if cached is not None:
            value = json.loads(cached)
            return NotFound() if value is None else Found(value)

        result = self.drive.read_text(sentinel_path)

        if isinstance(result, NotFound):
            logger.info("No password file at %s", sentinel_path)
            self.cache.set(key, json.dumps(None), ex=self.ttl)
            return result

        if isinstance(result, TransientError):
            logger.warning("Could not read password file %s: %s", sentinel_path, result.reason)
            return result

        plaintext = result.strip()
        self.cache.set(key, json.dumps(plaintext), ex=self.ttl)
        return Found(plaintext)

    def resolve_first(self, candidates: Iterable[str]) -> Tuple[Optional[str], Optional[Found], bool]:
        """First candidate, in the given order, that has a password file.

        Returns ``(sentinel_path, found, transient)``. A transient failure
        stops the scan, since a farther password must not stand in for a
        nearer one that merely could not be read.
        """
        for sentinel_path in candidates:
            result = self.resolve(sentinel_path)
            if isinstance(result, Found):
                return sentinel_path, result, False
            if isinstance(result, TransientError):
                return None, None, True
        return None, None, False
