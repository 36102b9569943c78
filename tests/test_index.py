import json
import logging

import pytest

from dabsearch import (IndexStore, LinkGraphIndex, PageRecord, PersistenceReadError,
                       PersistenceWriteError, VisitedSet)
from conftest import make_index


def test_put_overwrites_and_keeps_order():
    index = LinkGraphIndex()
    index.put("https://a.test/", PageRecord("A", ["https://b.test/"]))
    index.put("https://b.test/", PageRecord("B"))
    index.put("https://a.test/", PageRecord("A again", []))

    assert index.keys() == ["https://a.test/", "https://b.test/"]
    assert index.get("https://a.test/").title == "A again"
    assert index.get("https://missing.test/") is None
    assert len(index) == 2


def test_snapshot_is_detached_from_record():
    record = PageRecord("A", ["https://b.test/"])
    snap = record.snapshot()
    record.rank = 30
    record.links.append("https://c.test/")

    assert snap == {"title": "A", "links": ["https://b.test/"], "rank": 0}


def test_visited_claim_is_insert_if_absent():
    visited = VisitedSet()
    assert visited.claim("https://a.test/")
    assert not visited.claim("https://a.test/")
    assert "https://a.test/" in visited
    assert len(visited) == 1


def test_write_then_load_round_trips(tmp_path):
    index = make_index({
        "https://a.test/": ["https://b.test/", "https://b.test/", "https://gone.test/"],
        "https://b.test/": [],
    })
    index.get("https://b.test/").rank = 20
    store = IndexStore(str(tmp_path / "data.json"))

    store.write(index)
    loaded = store.load()

    assert loaded.keys() == index.keys()
    for url in index:
        assert loaded.get(url) == index.get(url)


def test_document_format(tmp_path):
    store = IndexStore(str(tmp_path / "data.json"))
    store.write(make_index({"https://a.test/": ["https://b.test/"]}))

    document = json.loads((tmp_path / "data.json").read_text())
    assert document == {
        "https://a.test/": {"title": "Page https://a.test/", "links": ["https://b.test/"], "rank": 0},
    }


def test_load_missing_document_is_empty(tmp_path):
    assert len(IndexStore(str(tmp_path / "nope.json")).load()) == 0


def test_read_missing_document_raises_read_error(tmp_path):
    with pytest.raises(PersistenceReadError):
        IndexStore(str(tmp_path / "nope.json")).read()


@pytest.mark.parametrize("content", [
    "{not json",
    "[1, 2, 3]",
    '{"https://a.test/": {"title": 5, "links": [], "rank": 0}}',
    '{"https://a.test/": {"title": "A", "links": "https://b.test/", "rank": 0}}',
    '{"https://a.test/": {"title": "A", "links": [], "rank": -10}}',
])
def test_load_broken_document_resets_and_logs(tmp_path, caplog, content):
    path = tmp_path / "data.json"
    path.write_text(content)
    store = IndexStore(str(path))

    with pytest.raises(PersistenceReadError):
        store.read()
    with caplog.at_level(logging.ERROR):
        index = store.load()

    assert len(index) == 0
    assert "error loading index" in caplog.text


def test_write_failure_raises(tmp_path):
    store = IndexStore(str(tmp_path / "no-such-dir" / "data.json"))
    with pytest.raises(PersistenceWriteError):
        store.write(make_index({"https://a.test/": []}))


async def test_save_failure_is_logged_not_raised(tmp_path, caplog):
    store = IndexStore(str(tmp_path / "no-such-dir" / "data.json"))
    index = make_index({"https://a.test/": []})

    with caplog.at_level(logging.ERROR):
        ok = await store.save(index)

    assert ok is False
    assert "error saving index" in caplog.text
    assert len(index) == 1


async def test_save_replaces_document_without_leftovers(tmp_path):
    store = IndexStore(str(tmp_path / "data.json"))
    index = make_index({"https://a.test/": []})
    assert await store.save(index)

    index.put("https://b.test/", PageRecord("B"))
    assert await store.save(index)

    assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
    assert store.load().keys() == ["https://a.test/", "https://b.test/"]
