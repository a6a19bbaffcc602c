from __future__ import annotations

import posixpath
import re
from collections import Counter
from datetime import datetime, timezone
from urllib.parse import unquote

import pytest

from main import create_app
from odindex.config import Settings
from odindex.onedrive import File, Folder, NotFound, Page, TransientError
from odindex.session import COOKIE_NAME
from odindex.store import MemoryStore

SECRET_KEY = "test-secret-key-for-access-tokens"
MTIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeDrive:
    """In-memory drive with the same lookup surface as ``odindex.onedrive.Client``.

    ``calls`` counts every upstream lookup so tests can assert on cache hits.
    """

    def __init__(self):
        self.authenticated = True
        self.calls = Counter()
        self.failing = set()
        self.failing_content = set()
        self._items = {}
        self._content = {}
        self._next_id = 1
        self._add("/", Folder("root", "ROOT", 0, None, None, MTIME))

    def _key(self, path: str) -> str:
        return "/" + path.strip("/").lower()

    def _new_id(self) -> str:
        item_id = f"ITEM{self._next_id:04d}"
        self._next_id += 1
        return item_id

    def _add(self, path, item):
        self._items[self._key(path)] = item
        return item

    def add_folder(self, path: str) -> Folder:
        path = "/" + path.strip("/")
        if self._key(path) in self._items:
            return self._items[self._key(path)]
        parent = self.add_folder(posixpath.dirname(path))
        folder = Folder(posixpath.basename(path), self._new_id(), 0, path, parent.id, MTIME)
        return self._add(path, folder)

    def add_file(self, path: str, content: str = "") -> File:
        parent = self.add_folder(posixpath.dirname(path))
        item = File(posixpath.basename(path), self._new_id(), len(content), path, parent.id, MTIME)
        item.mimetype = "text/plain"
        item.download_url = f"https://download.example/{item.id}"
        self._content[item.id] = content.encode()
        return self._add(path, item)

    def fail(self, path: str):
        self.failing.add(self._key(path))

    def get_item(self, path, select=None):
        self.calls["get_item"] += 1
        key = self._key(path)
        if key in self.failing:
            return TransientError("upstream unavailable", 503)
        return self._items.get(key) or NotFound()

    def get_item_by_id(self, item_id):
        self.calls["get_item_by_id"] += 1
        for item in self._items.values():
            if item.id == item_id:
                return item
        return NotFound()

    def get_children(self, path, next_token=None, sort=None, top=100):
        self.calls["get_children"] += 1
        folder = self.get_item(path)
        if not isinstance(folder, Folder):
            return folder
        parent = self._key(path)
        items = [
            item for key, item in sorted(self._items.items())
            if key != "/" and self._key(posixpath.dirname(key)) == parent
        ]
        return Page(folder, items)

    def search(self, query, top=100):
        self.calls["search"] += 1
        needle = unquote(query).lower()
        return [item for key, item in sorted(self._items.items()) if key != "/" and needle in item.name.lower()]

    def read_text(self, path, max_size=None):
        self.calls["read_text"] += 1
        item = self.get_item(path)
        if isinstance(item, (NotFound, TransientError)):
            return item
        if item.is_folder:
            return NotFound()
        if max_size is not None and item.size >= max_size:
            return ""
        return self._content[item.id].decode()

    def get_content(self, item_id):
        self.calls["get_content"] += 1
        if item_id in self.failing_content:
            return TransientError("upstream unavailable", 502)
        return self._content[item_id]


def session_id_from(response) -> str | None:
    for header in response.headers.getlist("Set-Cookie"):
        match = re.match(rf"{COOKIE_NAME}=([^;]*);", header)
        if match:
            return match.group(1)
    return None


def cookie_header(session_id: str) -> dict:
    return {"Cookie": f"{COOKIE_NAME}={session_id}"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore("test:", clock=clock)


@pytest.fixture
def drive():
    drive = FakeDrive()
    drive.add_file("/Public/readme.txt", "hello")
    drive.add_file("/Private/.password", "secret123\n")
    drive.add_file("/Private/file.txt", "private contents")
    drive.add_file("/Private/Inherit/child.txt", "inherited")
    drive.add_file("/Private/Nested/.password", "nested-pass")
    drive.add_file("/Private/Nested/deep.txt", "deep")
    drive.add_file("/docs/x.txt", "unset")
    return drive


@pytest.fixture
def settings():
    return Settings(
        protected_routes=["/Private", "/Private/Nested/", "/docs", ""],
        secret_key=SECRET_KEY,
    )


@pytest.fixture
def app(settings, store, drive):
    app = create_app(settings, store, drive)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client(use_cookies=False)


@pytest.fixture
def unlock(client):
    """Verifies a password and returns the session id that now holds it."""

    def _unlock(path="/Private/.password", token="secret123"):
        response = client.post("/api/verify", json={"token": token, "path": path})
        assert response.status_code == 200
        session_id = session_id_from(response)
        assert session_id
        return session_id

    return _unlock
