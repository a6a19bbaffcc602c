import json
import logging
import threading
from datetime import datetime, timezone
from typing import List

from odindex.onedrive import Page
from odindex.routes import Gate, classify, is_sentinel
from odindex.store import Cache

logger = logging.getLogger(__name__)

LOCK_KEY = "CRON:GENERATE_SITEMAP"
DATA_KEY = "DATA:SITEMAP"
LOCK_TTL = 60 * 60
DATA_TTL = 7 * 24 * 60 * 60

MAX_VISITS = 50000
MAX_ENTRIES = 10000
MAX_EXTRA_PAGES = 10


class SitemapGenerator:
    """Walks the public part of the drive and caches the result.

    Protected subtrees are recognised from the configured routes alone, so a
    run never fetches a password file and never lists anything behind one.
    """

    def __init__(self, drive, cache: Cache, gates: List[Gate], max_items: int = 100):
        self.drive = drive
        self.cache = cache
        self.gates = gates
        self.max_items = max_items
        self.visits = 0

    def private(self, path: str) -> bool:
        return bool(classify(path, self.gates)) or is_sentinel(path)

    def load(self):
        raw = self.cache.get(DATA_KEY)
        if raw is None:
            return None
        try:
            return json.loads(raw).get("data", [])
        except (ValueError, AttributeError):
            logger.warning("Cached sitemap is unreadable, ignoring it.")
            return []

    def _walk(self, path: str, entries: list):
        self.visits += 1
        if self.visits > MAX_VISITS:
            logger.warning("[%s] Visit count exceeds %d, aborting.", path, MAX_VISITS)
            return
        if len(entries) > MAX_ENTRIES:
            logger.warning("[%s] Entry count exceeds %d, aborting.", path, MAX_ENTRIES)
            return
        if self.private(path):
            logger.info("[%s] Skip private path.", path)
            return

        logger.info("[%s] Fetching file list.", path)
        page = self.drive.get_children(path, top=self.max_items)
        if not isinstance(page, Page):
            logger.warning("[%s] Failed to get files: %r", path, page)
            return

        entries.append({"path": path, "lastModifiedDateTime": page.folder.mtime.isoformat() if page.folder.mtime else None})

        items = list(page.items)
        extra = 0
        while page.next_token and extra < MAX_EXTRA_PAGES:
            extra += 1
            logger.info("[%s] Fetching next page, page count: %d", path, extra)
            page = self.drive.get_children(path, next_token=page.next_token, top=self.max_items)
            if not isinstance(page, Page):
                break
            items.extend(page.items)

        for item in items:
            child = path.rstrip("/") + "/" + item.name
            if self.private(child):
                logger.info("[%s] Skip protected item.", child)
                continue
            if item.is_folder:
                self._walk(child, entries)
            elif len(entries) <= MAX_ENTRIES:
                entries.append({"path": child, "lastModifiedDateTime": item.mtime.isoformat() if item.mtime else None})

    def generate(self) -> bool:
        if not self.cache.set(LOCK_KEY, "1", ex=LOCK_TTL, nx=True):
            logger.info("Sitemap generation is already running, aborting.")
            return False

        try:
            logger.info("Sitemap generation started.")
            self.visits = 0
            entries = []
            self._walk("/", entries)
            self.cache.set(DATA_KEY, json.dumps({
                "data": entries,
                "lastModifiedDateTime": datetime.now(timezone.utc).isoformat(),
            }), ex=DATA_TTL)
            logger.info("Sitemap cached with %d entries.", len(entries))
        finally:
            self.cache.delete(LOCK_KEY)
        return True

    def generate_in_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.generate, name="sitemap", daemon=True)
        thread.start()
        return thread
