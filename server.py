#!/usr/bin/env python3
"""
dabsearch server - the search page, the live viewer feed, and the
background loops that keep the index moving.

    GET /               search page (connects to /ws)
    GET /ws             websocket: full replay on connect, then live updates
    GET /api/search     ?q=text&page=N
    GET /api/stats      index / queue / viewer counts
    GET /index.json     the index in its durable document form
"""

import asyncio
import logging
from string import Template
from typing import Optional

import aiohttp
from aiohttp import web

import crawl_config
import search
from dabsearch import Crawler, Fetcher, IndexStore, RankEngine, VisitedSet, crawl_site
from delivery import DeliveryQueue, Dispatcher, ViewerRegistry

logger = logging.getLogger(__name__)


class Engine:
    """Everything the running server shares: index, mirror, queue, viewers, loops."""

    def __init__(self, cfg: dict, fetcher: Optional[Fetcher] = None):
        self.cfg = cfg
        self.fetcher = fetcher
        self.store = IndexStore(cfg["storage"]["path"])
        self.index = self.store.load()
        self.visited = VisitedSet()
        self.queue = DeliveryQueue(max_pending=cfg["delivery"]["max_pending"])
        self.registry = ViewerRegistry()
        self.dispatcher = Dispatcher(self.queue, self.registry, interval=cfg["delivery"]["interval"],
                                     send_timeout=cfg["delivery"]["send_timeout"])
        self.ranker = RankEngine(self.index, interval=cfg["rank"]["interval"],
                                 weight=cfg["rank"]["backlink_weight"])

        # Queue part of the stored index so viewers that are already
        # connected when it loads get it too.
        limit = cfg["delivery"]["startup_replay_limit"]
        for url, record in self.index.items()[:limit]:
            self.queue.enqueue(url, record.snapshot())

    async def crawl(self, seed: str, depth: int):
        """Crawl from `seed`, feeding every indexed page to the delivery queue."""
        if depth <= 0:
            logger.info("crawling disabled (depth %d), serving the stored index", depth)
            return None
        if self.fetcher is None:
            return await crawl_site(seed, depth, self.index, self.store, self.cfg,
                                    on_indexed=self.queue.enqueue, visited=self.visited)
        crawler = Crawler(self.index, self.store, self.fetcher, on_indexed=self.queue.enqueue,
                          max_concurrency=self.cfg["crawl"]["max_concurrency"],
                          fetch_timeout=self.cfg["crawl"]["fetch_timeout"],
                          visited=self.visited)
        await crawler.crawl(seed, depth)
        return crawler

    async def run_crawl(self):
        seed = self.cfg["crawl"]["seed"]
        depth = self.cfg["crawl"]["max_depth"]
        try:
            crawler = await self.crawl(seed, depth)
        except Exception:
            logger.exception("crawling %s failed", seed)
            return
        if crawler is not None:
            logger.info("crawling completed: %d pages indexed, %d failed",
                        crawler.pages_indexed, crawler.failures)

    def stats(self) -> dict:
        return {
            **self.index.stats(),
            "visited": len(self.visited),
            "pending": len(self.queue),
            "viewers": len(self.registry),
        }


ENGINE = web.AppKey("engine", Engine)


# ── Handlers ─────────────────────────────────────────────────────────

async def handle_index(request):
    """Serve the search page."""
    page_size = request.app[ENGINE].cfg["search"]["page_size"]
    html = Template(SEARCH_HTML).safe_substitute(page_size=page_size)
    return web.Response(text=html, content_type="text/html")


async def handle_ws(request):
    """One viewer: replay the index, then stay registered until it goes away."""
    engine = request.app[ENGINE]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    try:
        sent = await engine.dispatcher.connect(ws, engine.index.items())
        logger.debug("replayed %d pages to new viewer", sent)
        async for msg in ws:
            # Viewers only listen; anything they send is ignored.
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("viewer connection error: %s", ws.exception())
    finally:
        engine.dispatcher.disconnect(ws)
    return ws


async def handle_search(request):
    """Title search over the live index."""
    engine = request.app[ENGINE]
    text = request.query.get("q", "")
    try:
        page = int(request.query.get("page", 1))
    except ValueError:
        return web.json_response({"error": "page must be an integer"}, status=400)
    result = search.search(engine.index, text, page=page,
                           page_size=engine.cfg["search"]["page_size"])
    return web.json_response(result.to_dict())


async def handle_stats(request):
    return web.json_response(request.app[ENGINE].stats())


async def handle_index_json(request):
    return web.json_response(request.app[ENGINE].index.to_json())


# ── App ──────────────────────────────────────────────────────────────

async def _background_tasks(app):
    engine = app[ENGINE]
    tasks = [
        asyncio.create_task(engine.ranker.run()),
        asyncio.create_task(engine.dispatcher.run()),
        asyncio.create_task(engine.run_crawl()),
    ]
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _close_viewers(app):
    for ws in app[ENGINE].registry.channels():
        await ws.close(code=aiohttp.WSCloseCode.GOING_AWAY, message=b"server shutdown")


def create_app(cfg: Optional[dict] = None, fetcher: Optional[Fetcher] = None) -> web.Application:
    if cfg is None:
        cfg = crawl_config.load_config()
    app = web.Application()
    app[ENGINE] = Engine(cfg, fetcher=fetcher)

    app.router.add_get("/", handle_index)
    app.router.add_get("/ws", handle_ws)
    app.router.add_get("/api/search", handle_search)
    app.router.add_get("/api/stats", handle_stats)
    app.router.add_get("/index.json", handle_index_json)

    app.cleanup_ctx.append(_background_tasks)
    app.on_shutdown.append(_close_viewers)
    return app


async def run_server(cfg: dict):
    """Serve until interrupted."""
    app = create_app(cfg)
    runner = web.AppRunner(app)
    await runner.setup()
    host, port = cfg["server"]["host"], cfg["server"]["port"]
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("server running at http://localhost:%d", port)

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()


SEARCH_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Dab - Search Engine</title>
<style>
  * { box-sizing: border-box; margin: 0; padding: 0; }
  body { font-family: 'Roboto', sans-serif; background: linear-gradient(135deg, #1d3557, #457b9d); color: #f1faee; padding: 20px; min-height: 100vh; display: flex; flex-direction: column; align-items: center; text-align: center; }
  h1 { font-size: 2.5rem; color: #a8dadc; text-transform: uppercase; letter-spacing: 2px; margin-bottom: 30px; }
  #searchQuery { padding: 10px; margin-bottom: 20px; font-size: 1rem; width: 300px; border-radius: 5px; border: 1px solid #ccc; }
  #searchButton { padding: 10px 20px; font-size: 1rem; cursor: pointer; background: #0077ff; color: #fff; border-radius: 5px; border: none; }
  #searchResults { display: grid; grid-template-columns: repeat(auto-fill, minmax(280px, 1fr)); gap: 20px; width: 100%; max-width: 1000px; padding: 20px; }
  .result-item { background: #1d3557; padding: 20px; border-radius: 12px; }
  .result-item a { color: #f1faee; text-decoration: none; font-weight: bold; }
  .result-item .metadata { font-size: 0.9rem; color: #b0bec5; margin-top: 10px; }
  .pagination button { padding: 10px 20px; margin: 5px; cursor: pointer; background: #ffb703; color: #1d3557; border-radius: 5px; border: none; }
  .pagination button.current { background: #0058cc; color: #fff; }
</style>
</head>
<body>
<h1>Dab Search Engine</h1>
<div>
  <input type="text" id="searchQuery" placeholder="Search...">
  <button id="searchButton">Search</button>
</div>
<div id="searchResults"></div>
<div class="pagination" id="pagination"></div>
<script>
  const resultsPerPage = $page_size;
  const indexedUrls = {};
  let currentPage = 1;
  const results = document.getElementById('searchResults');
  const pagination = document.getElementById('pagination');

  const scheme = window.location.protocol === 'https:' ? 'wss://' : 'ws://';
  const socket = new WebSocket(scheme + window.location.host + '/ws');
  socket.onmessage = (event) => {
    const msg = JSON.parse(event.data);
    if (msg.data) { indexedUrls[msg.url] = msg.data; }
  };

  function query(text, page) {
    const needle = text.toLowerCase();
    const matches = Object.entries(indexedUrls)
      .filter(([url, data]) => data.title.toLowerCase().includes(needle))
      .sort((a, b) => b[1].rank - a[1].rank);
    const start = (page - 1) * resultsPerPage;
    return { matches: matches.slice(start, start + resultsPerPage),
             totalPages: Math.ceil(matches.length / resultsPerPage) };
  }

  function display(page) {
    const text = document.getElementById('searchQuery').value;
    const { matches, totalPages } = query(text, page);
    results.innerHTML = '';
    pagination.innerHTML = '';
    if (matches.length === 0) {
      results.innerHTML = '<div class="result-item">No results found</div>';
    }
    matches.forEach(([url, data]) => {
      const item = document.createElement('div');
      item.className = 'result-item';
      const link = document.createElement('a');
      link.href = url;
      link.target = '_blank';
      link.textContent = data.title;
      const meta = document.createElement('div');
      meta.className = 'metadata';
      meta.textContent = 'rank ' + data.rank;
      item.appendChild(link);
      item.appendChild(meta);
      results.appendChild(item);
    });
    for (let i = 1; i <= totalPages; i++) {
      const button = document.createElement('button');
      button.textContent = 'Row ' + i;
      if (i === page) { button.className = 'current'; }
      button.onclick = () => { currentPage = i; display(currentPage); };
      pagination.appendChild(button);
    }
  }

  document.getElementById('searchButton').onclick = () => { currentPage = 1; display(currentPage); };
</script>
</body>
</html>"""


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default="", help="JSON config file")
    parser.add_argument("--port", "-p", type=int, default=None)
    parser.add_argument("--host", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    cfg = crawl_config.load_config(args.config)
    overrides = {"server": {}}
    if args.port:
        overrides["server"]["port"] = args.port
    if args.host:
        overrides["server"]["host"] = args.host
    cfg = crawl_config.with_overrides(cfg, overrides)
    web.run_app(create_app(cfg), host=cfg["server"]["host"], port=cfg["server"]["port"])
