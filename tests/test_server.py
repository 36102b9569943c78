import asyncio

import pytest

import crawl_config
from dabsearch import IndexStore
from server import ENGINE, create_app
from conftest import FakeFetcher, make_index

SEED = "https://seed.test/"
A = "https://a.test/"
B = "https://b.test/"


def seed_store(cfg, graph):
    index = make_index(graph)
    IndexStore(cfg["storage"]["path"]).write(index)
    return index


async def wait_for(predicate, timeout=2.0):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


async def test_search_page(aiohttp_client, cfg):
    client = await aiohttp_client(create_app(cfg))
    resp = await client.get("/")
    assert resp.status == 200
    text = await resp.text()
    assert "Dab Search Engine" in text
    assert "const resultsPerPage = 10;" in text


async def test_viewer_gets_full_replay(aiohttp_client, cfg):
    cfg = crawl_config.with_overrides(cfg, {"delivery": {"startup_replay_limit": 0}})
    seed_store(cfg, {SEED: [A], A: [], B: [A]})
    client = await aiohttp_client(create_app(cfg))

    ws = await client.ws_connect("/ws")
    messages = [await ws.receive_json(timeout=1) for _ in range(3)]

    assert sorted(m["url"] for m in messages) == sorted([SEED, A, B])
    assert all(m["data"] is not None for m in messages)
    assert all(isinstance(m["data"]["title"], str) and isinstance(m["data"]["rank"], int)
               for m in messages)
    with pytest.raises(asyncio.TimeoutError):
        await ws.receive_json(timeout=0.2)
    await ws.close()


async def test_loaded_pages_are_queued_at_startup(cfg):
    cfg = crawl_config.with_overrides(cfg, {"delivery": {"startup_replay_limit": 2}})
    seed_store(cfg, {SEED: [], A: [], B: []})
    engine = create_app(cfg)[ENGINE]

    assert len(engine.queue) == 2
    assert engine.queue.pop().url == SEED


async def test_viewer_is_unregistered_on_close(aiohttp_client, cfg):
    app = create_app(cfg)
    client = await aiohttp_client(app)
    engine = app[ENGINE]

    ws = await client.ws_connect("/ws")
    await wait_for(lambda: len(engine.registry) == 1)
    await ws.close()
    await wait_for(lambda: len(engine.registry) == 0)


async def test_live_crawl_reaches_viewers_and_ranks(aiohttp_client, cfg):
    cfg = crawl_config.with_overrides(cfg, {"crawl": {"seed": SEED, "max_depth": 2}})
    pages = {SEED: ("Seed", [A, B]), A: ("Crawler A", [B]), B: ("Crawler B", [])}
    fetcher = FakeFetcher(pages, delay=0.05)
    app = create_app(cfg, fetcher=fetcher)
    client = await aiohttp_client(app)
    engine = app[ENGINE]

    ws = await client.ws_connect("/ws")
    received = {}

    async def collect():
        while len(received) < 3:
            msg = await ws.receive_json(timeout=2)
            received[msg["url"]] = msg["data"]

    await asyncio.wait_for(collect(), timeout=3)
    assert set(received) == {SEED, A, B}

    await wait_for(lambda: engine.index.get(B) is not None and engine.index.get(B).rank == 20)

    resp = await client.get("/api/search", params={"q": "crawler"})
    body = await resp.json()
    assert [m["url"] for m in body["matches"]] == [B, A]
    assert body["total_pages"] == 1

    stats = await (await client.get("/api/stats")).json()
    assert stats["pages"] == 3
    assert stats["visited"] == 3
    assert stats["viewers"] == 1

    saved = IndexStore(cfg["storage"]["path"]).load()
    assert set(saved.keys()) == {SEED, A, B}
    await ws.close()


async def test_depth_zero_serves_stored_index_only(aiohttp_client, cfg):
    seed_store(cfg, {SEED: [A], A: []})
    fetcher = FakeFetcher({})
    client = await aiohttp_client(create_app(cfg, fetcher=fetcher))

    body = await (await client.get("/index.json")).json()

    assert set(body) == {SEED, A}
    assert body[SEED]["links"] == [A]
    await asyncio.sleep(0.05)
    assert fetcher.calls == []


async def test_bad_page_parameter(aiohttp_client, cfg):
    client = await aiohttp_client(create_app(cfg))
    resp = await client.get("/api/search", params={"q": "x", "page": "two"})
    assert resp.status == 400
