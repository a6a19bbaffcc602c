import logging

from odindex.onedrive import NotFound, TransientError
from odindex.store import Cache

logger = logging.getLogger(__name__)

NOTE_TTL = 300
NOTE_SIZE_LIMIT = 4 * 1024 * 1024


class FolderNotes:
    """``readme.md`` / ``head.md`` shown above a folder listing.

    Missing files are cached as empty text; transient failures are not cached.
    """

    def __init__(self, drive, cache: Cache, ttl: int = NOTE_TTL):
        self.drive = drive
        self.cache = cache
        self.ttl = ttl

    def read(self, folder: str, name: str) -> str:
        path = folder.rstrip("/") + "/" + name
        key = f"F_{path}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        result = self.drive.read_text(path, max_size=NOTE_SIZE_LIMIT)
        if isinstance(result, TransientError):
            logger.warning("Could not read %s: %s", path, result.reason)
            return ""
        text = "" if isinstance(result, NotFound) else result
        self.cache.set(key, text, ex=self.ttl)
        return text
