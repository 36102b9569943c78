#!/usr/bin/env python3
"""
dabsearch - a tiny live search engine

Crawl outward from a seed page, keep an in-memory link graph, rank pages
by how many other indexed pages link to them, mirror the graph to a JSON
document, and stream every newly indexed page to connected viewers.

The graph document is plain JSON: {url: {title, links, rank}}.

Usage:
    dabsearch serve [--seed URL] [--depth N] [--port 3000] [--data data.json]
    dabsearch crawl <seed_url> [--depth N] [--data data.json]
    dabsearch rank [--data data.json] [--top N]
    dabsearch search <text> [--page N] [--data data.json]
    dabsearch info [--data data.json]

Global flags: --config FILE, --save-config FILE, --log-level LEVEL
"""

import argparse
import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup

import crawl_config

logger = logging.getLogger(__name__)

NO_TITLE = "No title"


# ── Errors ────────────────────────────────────────────────────────────

class FetchError(Exception):
    """A page could not be fetched or was not an HTML document."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class PersistenceError(Exception):
    """The durable index document could not be read or written."""


class PersistenceReadError(PersistenceError):
    pass


class PersistenceWriteError(PersistenceError):
    pass


# ── Graph Data Structure ──────────────────────────────────────────────

class PageRecord:
    """One indexed page. Only `rank` changes after creation."""

    __slots__ = ("title", "links", "rank")

    def __init__(self, title: str = NO_TITLE, links: Optional[List[str]] = None, rank: int = 0):
        self.title = title
        self.links = list(links or [])
        self.rank = rank

    def snapshot(self) -> dict:
        """Copy of the fields as they are right now, safe to hand to viewers."""
        return {"title": self.title, "links": list(self.links), "rank": self.rank}

    to_json = snapshot

    @classmethod
    def from_json(cls, data: dict) -> "PageRecord":
        """Build a record from its document form, rejecting wrongly typed fields."""
        if not isinstance(data, dict):
            raise ValueError(f"page entry must be an object, got {type(data).__name__}")
        title = data.get("title", NO_TITLE)
        links = data.get("links", [])
        rank = data.get("rank", 0)
        if not isinstance(title, str):
            raise ValueError("title must be a string")
        if not isinstance(links, list) or not all(isinstance(link, str) for link in links):
            raise ValueError("links must be a list of strings")
        if isinstance(rank, bool) or not isinstance(rank, int) or rank < 0:
            raise ValueError("rank must be a non-negative integer")
        return cls(title=title, links=links, rank=rank)

    def __eq__(self, other):
        if not isinstance(other, PageRecord):
            return NotImplemented
        return (self.title, self.links, self.rank) == (other.title, other.links, other.rank)

    def __repr__(self):
        return f"<PageRecord rank={self.rank} links={len(self.links)} {self.title[:40]!r}>"


class LinkGraphIndex:
    """
    The shared url -> PageRecord map. Append/update only, nothing is ever
    removed. Insertion order is kept so replays are deterministic.

    None of the methods suspend, so on a single event loop each call is
    atomic with respect to every other task touching the index.
    """

    def __init__(self, records: Optional[Dict[str, PageRecord]] = None):
        self._records: Dict[str, PageRecord] = dict(records or {})

    def get(self, url: str) -> Optional[PageRecord]:
        return self._records.get(url)

    def put(self, url: str, record: PageRecord):
        """Create or overwrite the record for `url`."""
        self._records[url] = record

    def keys(self) -> List[str]:
        return list(self._records)

    def values(self) -> List[PageRecord]:
        return list(self._records.values())

    def items(self) -> List[Tuple[str, PageRecord]]:
        return list(self._records.items())

    def __contains__(self, url: str) -> bool:
        return url in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def stats(self) -> dict:
        """Return index statistics."""
        return {
            "pages": len(self._records),
            "links": sum(len(r.links) for r in self._records.values()),
        }

    # ── Serialization ──

    def to_json(self) -> dict:
        """Serialize to the durable document form."""
        return {url: record.to_json() for url, record in self._records.items()}

    @classmethod
    def from_json(cls, data: dict) -> "LinkGraphIndex":
        """Deserialize from the durable document form."""
        if not isinstance(data, dict):
            raise ValueError(f"index document must be an object, got {type(data).__name__}")
        return cls({url: PageRecord.from_json(entry) for url, entry in data.items()})


class VisitedSet:
    """URLs already dispatched for crawling. Grows for the life of the process."""

    def __init__(self):
        self._urls = set()

    def claim(self, url: str) -> bool:
        """Mark `url` visited. Returns False if someone already claimed it."""
        if url in self._urls:
            return False
        self._urls.add(url)
        return True

    def __contains__(self, url: str) -> bool:
        return url in self._urls

    def __len__(self) -> int:
        return len(self._urls)


# ── Persistence ───────────────────────────────────────────────────────

class IndexStore:
    """
    Mirrors the index to a JSON document on disk.

    `read`/`write` raise PersistenceError; `load`/`save` are the forgiving
    versions the rest of the system calls - they log and carry on.
    """

    def __init__(self, path: str = "data.json"):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def read(self) -> LinkGraphIndex:
        try:
            with open(self.path, encoding="utf-8") as f:
                return LinkGraphIndex.from_json(json.load(f))
        except (OSError, ValueError) as e:
            raise PersistenceReadError(f"cannot read {self.path}: {e}") from e

    def write(self, index: LinkGraphIndex):
        """Write the whole index, replacing the document in one step."""
        self.write_document(index.to_json())

    def write_document(self, document: dict):
        try:
            fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceWriteError(f"cannot write {self.path}: {e}") from e

    def load(self) -> LinkGraphIndex:
        """Load the index at startup. A missing or broken document means an empty index."""
        if not self.path.exists():
            logger.info("%s not found, starting with an empty index", self.path)
            return LinkGraphIndex()
        try:
            index = self.read()
        except PersistenceReadError as e:
            logger.error("error loading index, starting empty: %s", e)
            return LinkGraphIndex()
        logger.info("loaded %d pages from %s", len(index), self.path)
        return index

    async def save(self, index: LinkGraphIndex) -> bool:
        """
        Snapshot the index and write it off the event loop. Saves are
        serialized, and each one snapshots after the previous finished, so
        the document only ever moves forward. Returns False on failure.
        """
        async with self._lock:
            document = index.to_json()
            try:
                await asyncio.get_running_loop().run_in_executor(None, self.write_document, document)
            except PersistenceWriteError as e:
                logger.error("error saving index: %s", e)
                return False
        logger.debug("saved %d pages to %s", len(document), self.path)
        return True


# ── Fetch & Extract ───────────────────────────────────────────────────

async def fetch_page(session: aiohttp.ClientSession, url: str, timeout: float = 10,
                     user_agent: str = "") -> Tuple[str, str]:
    """Fetch a page and return (html, final_url). Raises FetchError."""
    headers = {"User-Agent": user_agent} if user_agent else {}
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout),
                               allow_redirects=True, headers=headers) as resp:
            if resp.status != 200:
                raise FetchError(url, f"HTTP {resp.status}")
            content_type = resp.headers.get("Content-Type", "")
            if "text/html" not in content_type:
                raise FetchError(url, f"not HTML ({content_type or 'no content type'})")
            html = await resp.text(errors="replace")
            return html, str(resp.url)
    except asyncio.TimeoutError:
        raise FetchError(url, f"timed out after {timeout}s")
    except (aiohttp.ClientError, ValueError) as e:
        raise FetchError(url, str(e) or type(e).__name__)


def extract_links(html: str, base_url: str) -> Tuple[str, List[str]]:
    """Extract the title and outgoing http(s) links, in document order."""
    soup = BeautifulSoup(html, "html.parser")

    title = ""
    if soup.title and soup.title.string:
        title = soup.title.string.strip()

    links = []
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.startswith("#"):
            continue
        try:
            absolute, _ = urldefrag(urljoin(base_url, href))
            scheme = urlparse(absolute).scheme
        except ValueError:
            # malformed, e.g. "http://[broken"
            continue
        if scheme in ("http", "https"):
            links.append(absolute)

    return title or NO_TITLE, links


Fetcher = Callable[[str], Awaitable[Tuple[str, List[str]]]]


class HttpFetcher:
    """The real fetch/extract collaborator: aiohttp + BeautifulSoup."""

    def __init__(self, session: aiohttp.ClientSession, timeout: float = 10, user_agent: str = ""):
        self.session = session
        self.timeout = timeout
        self.user_agent = user_agent

    async def __call__(self, url: str) -> Tuple[str, List[str]]:
        html, final_url = await fetch_page(self.session, url, self.timeout, self.user_agent)
        try:
            return extract_links(html, final_url)
        except Exception as e:
            raise FetchError(url, f"unparsable document: {e}") from e


# ── Crawler ───────────────────────────────────────────────────────────

class Crawler:
    """
    Depth-bounded recursive crawl. Each page's links are crawled
    concurrently at depth - 1 and the call returns once all of them have.

    At most `max_concurrency` fetches are in flight; the limit covers only
    the fetch itself so parents waiting on children never hold a slot.
    """

    def __init__(self, index: LinkGraphIndex, store: Optional[IndexStore], fetcher: Fetcher,
                 on_indexed: Optional[Callable[[str, dict], None]] = None,
                 max_concurrency: int = 10, fetch_timeout: Optional[float] = None,
                 visited: Optional[VisitedSet] = None):
        self.index = index
        self.store = store
        self.fetcher = fetcher
        self.on_indexed = on_indexed
        self.visited = visited if visited is not None else VisitedSet()
        self.fetch_timeout = fetch_timeout
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self.pages_indexed = 0
        self.failures = 0

    async def crawl(self, url: str, depth: int = 1):
        """Crawl `url` and everything reachable within `depth - 1` more hops."""
        if depth <= 0:
            return
        if not self.visited.claim(url):
            return

        logger.info("crawling %s (depth %d)", url, depth)
        try:
            async with self._slots:
                if self.fetch_timeout:
                    title, links = await asyncio.wait_for(self.fetcher(url), self.fetch_timeout)
                else:
                    title, links = await self.fetcher(url)
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning("error crawling %s: timed out after %ss", url, self.fetch_timeout)
            return
        except FetchError as e:
            self.failures += 1
            logger.warning("error crawling %s: %s", url, e.reason)
            return

        record = PageRecord(title=title or NO_TITLE, links=links, rank=0)
        self.index.put(url, record)
        self.pages_indexed += 1
        logger.info("indexed %s, found %d links", url, len(links))

        if self.store is not None:
            await self.store.save(self.index)
        if self.on_indexed is not None:
            self.on_indexed(url, record.snapshot())

        children = list(dict.fromkeys(links))
        if depth > 1 and children:
            await asyncio.gather(*(self.crawl(link, depth - 1) for link in children))


# ── Ranking ───────────────────────────────────────────────────────────

def recompute_ranks(index: LinkGraphIndex, weight: int = 10) -> Dict[str, int]:
    """
    Set every page's rank to `weight` times the number of indexed pages
    linking to it. A page counts once per target however often it repeats
    the link, and links to unindexed URLs count for nothing.

    Full O(pages x links) pass; there is no incremental bookkeeping.
    """
    outbound = [set(record.links) for record in index.values()]
    ranks = {}
    for url, record in index.items():
        record.rank = weight * sum(1 for targets in outbound if url in targets)
        ranks[url] = record.rank
    return ranks


class RankEngine:
    """Recomputes all ranks every `interval` seconds."""

    def __init__(self, index: LinkGraphIndex, interval: float = 1.0, weight: int = 10):
        self.index = index
        self.interval = interval
        self.weight = weight
        self.cycles = 0

    def recompute_all(self) -> Dict[str, int]:
        ranks = recompute_ranks(self.index, self.weight)
        self.cycles += 1
        logger.debug("ranks recalculated for %d pages", len(ranks))
        return ranks

    async def run(self):
        while True:
            await asyncio.sleep(self.interval)
            self.recompute_all()


def top_pages(index: LinkGraphIndex, n: int = 10) -> List[Tuple[str, PageRecord]]:
    """Highest ranked pages first; ties keep index order."""
    return sorted(index.items(), key=lambda item: item[1].rank, reverse=True)[:n]


async def crawl_site(seed: str, depth: int, index: LinkGraphIndex, store: Optional[IndexStore],
                     cfg: dict, on_indexed: Optional[Callable[[str, dict], None]] = None,
                     visited: Optional[VisitedSet] = None) -> Crawler:
    """Run one crawl from `seed` with a fresh HTTP session. Returns the finished crawler."""
    crawl_cfg = cfg["crawl"]
    connector = aiohttp.TCPConnector(limit=crawl_cfg["max_concurrency"])
    async with aiohttp.ClientSession(connector=connector) as session:
        fetcher = HttpFetcher(session, timeout=crawl_cfg["fetch_timeout"],
                              user_agent=crawl_cfg["user_agent"])
        crawler = Crawler(index, store, fetcher, on_indexed=on_indexed,
                          max_concurrency=crawl_cfg["max_concurrency"],
                          fetch_timeout=crawl_cfg["fetch_timeout"], visited=visited)
        await crawler.crawl(seed, depth)
    return crawler


# ── CLI ───────────────────────────────────────────────────────────────

def _build_config(args) -> dict:
    cfg = crawl_config.load_config(args.config)
    overrides = {}
    if getattr(args, "data", None):
        overrides["storage"] = {"path": args.data}
    if getattr(args, "depth", None) is not None:
        overrides["crawl"] = {"max_depth": args.depth}
    if getattr(args, "seed", None):
        overrides.setdefault("crawl", {})["seed"] = args.seed
    if getattr(args, "port", None):
        overrides["server"] = {"port": args.port}
    return crawl_config.with_overrides(cfg, overrides)


def _write_index(store: IndexStore, index: LinkGraphIndex):
    try:
        store.write(index)
    except PersistenceWriteError as e:
        logger.error("error saving index: %s", e)


def _print_pages(pages: List[Tuple[str, PageRecord]]):
    for i, (url, record) in enumerate(pages):
        print(f"  {i+1:3d}. {record.rank:5d} {record.title[:60]}")
        print(f"       {url}")


def main():
    parser = argparse.ArgumentParser(description="dabsearch - live crawler and backlink search")
    parser.add_argument("--config", default="", help="JSON config file (overrides defaults)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--save-config", default="", metavar="FILE",
                        help="Write the effective config (non-default values only) to FILE")
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_p = subparsers.add_parser("serve", help="Serve the search page and crawl in the background")
    serve_p.add_argument("--seed", default="", help="Seed URL (default: from config)")
    serve_p.add_argument("--depth", "-n", type=int, default=None,
                         help="Crawl depth (default: 5, 0 = serve the stored index only)")
    serve_p.add_argument("--port", "-p", type=int, default=None, help="Port (default: 3000)")
    serve_p.add_argument("--data", default="", help="Index document (default: data.json)")

    # crawl
    crawl_p = subparsers.add_parser("crawl", help="Crawl from a seed URL without serving")
    crawl_p.add_argument("seed", help="Seed URL")
    crawl_p.add_argument("--depth", "-n", type=int, default=None, help="Crawl depth (default: 5)")
    crawl_p.add_argument("--data", default="", help="Index document (default: data.json)")

    # rank
    rank_p = subparsers.add_parser("rank", help="Recompute ranks of the stored index")
    rank_p.add_argument("--data", default="", help="Index document (default: data.json)")
    rank_p.add_argument("--top", "-n", type=int, default=20, help="Top N results")

    # search
    search_p = subparsers.add_parser("search", help="Search titles in the stored index")
    search_p.add_argument("text", help="Text to look for in page titles")
    search_p.add_argument("--page", type=int, default=1, help="Result page (default: 1)")
    search_p.add_argument("--data", default="", help="Index document (default: data.json)")

    # info
    info_p = subparsers.add_parser("info", help="Show index stats")
    info_p.add_argument("--data", default="", help="Index document (default: data.json)")

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return

    cfg = _build_config(args)
    if args.save_config:
        crawl_config.save_config(args.save_config, cfg)
        logger.info("saved config to %s", args.save_config)
    store = IndexStore(cfg["storage"]["path"])

    if args.command == "serve":
        from server import run_server
        asyncio.run(run_server(cfg))

    elif args.command == "crawl":
        depth = cfg["crawl"]["max_depth"]
        index = store.load()
        print(f"crawling from {args.seed}, depth {depth}")
        crawler = asyncio.run(crawl_site(args.seed, depth, index, store, cfg))
        recompute_ranks(index, cfg["rank"]["backlink_weight"])
        _write_index(store, index)
        print(f"indexed {crawler.pages_indexed} pages ({crawler.failures} failed), "
              f"{len(index)} in {store.path}")

    elif args.command == "rank":
        index = store.load()
        recompute_ranks(index, cfg["rank"]["backlink_weight"])
        _write_index(store, index)
        print(f"top {args.top} pages by backlinks:\n")
        _print_pages(top_pages(index, args.top))

    elif args.command == "search":
        import search
        index = store.load()
        result = search.search(index, args.text, page=args.page,
                               page_size=cfg["search"]["page_size"])
        print(f"{result.total} matches for {args.text!r}, page {result.page}/{result.total_pages}\n")
        for hit in result.matches:
            print(f"  {hit.rank:5d} {hit.title[:60]}")
            print(f"        {hit.url}")

    elif args.command == "info":
        index = store.load()
        stats = index.stats()
        print(f"index: {store.path}")
        print(f"  pages: {stats['pages']}")
        print(f"  links: {stats['links']}")
        print(f"\ntop pages:")
        _print_pages(top_pages(index, 10))


if __name__ == "__main__":
    main()
