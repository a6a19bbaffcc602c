from __future__ import annotations

import json

import pytest

from odindex.routes import load_gates
from odindex.sitemap import DATA_KEY, LOCK_KEY, SitemapGenerator
from odindex.store import Cache


@pytest.fixture
def generator(drive, store, settings):
    return SitemapGenerator(drive, Cache(store), load_gates(settings.protected_routes))


class TestGenerate:
    def test_skips_protected_subtrees(self, generator):
        assert generator.generate()
        paths = [entry["path"] for entry in generator.load()]
        assert paths == ["/", "/Public", "/Public/readme.txt"]

    def test_never_reads_password_files(self, generator, drive):
        generator.generate()
        assert drive.calls["read_text"] == 0

    def test_sentinel_outside_gate_is_skipped(self, generator, drive):
        drive.add_file("/Public/.password", "stray")
        generator.generate()
        paths = [entry["path"] for entry in generator.load()]
        assert "/Public/.password" not in paths

    def test_lock_prevents_second_run(self, generator, store):
        Cache(store).set(LOCK_KEY, "1", ex=60)
        assert not generator.generate()
        assert generator.load() is None

    def test_concurrent_run_is_refused(self, generator, drive):
        nested = []
        get_children = drive.get_children

        def walk_and_race(*args, **kwargs):
            if not nested:
                nested.append(generator.generate())
            return get_children(*args, **kwargs)

        drive.get_children = walk_and_race
        assert generator.generate()
        assert nested == [False]
        assert [entry["path"] for entry in generator.load()] == ["/", "/Public", "/Public/readme.txt"]

    def test_lock_released(self, generator, store):
        generator.generate()
        assert not Cache(store).exists(LOCK_KEY)

    def test_result_cached(self, generator, store):
        generator.generate()
        data = json.loads(Cache(store).get(DATA_KEY))
        assert "lastModifiedDateTime" in data
        assert data["data"][0]["path"] == "/"

    def test_root_gate_hides_everything(self, drive, store):
        generator = SitemapGenerator(drive, Cache(store), load_gates(["/"]))
        generator.generate()
        assert generator.load() == []
        assert drive.calls["get_children"] == 0


class TestLoad:
    def test_missing(self, generator):
        assert generator.load() is None

    def test_unreadable(self, generator, store):
        Cache(store).set(DATA_KEY, "{broken")
        assert generator.load() == []
