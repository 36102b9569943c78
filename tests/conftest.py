import asyncio

import pytest

import crawl_config
from dabsearch import FetchError, LinkGraphIndex, PageRecord


class FakeFetcher:
    """Serves pages from a dict of url -> (title, links); anything else is a 404."""

    def __init__(self, pages, delay=0.0):
        self.pages = pages
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, url):
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if url not in self.pages:
                raise FetchError(url, "HTTP 404")
            title, links = self.pages[url]
            return title, list(links)
        finally:
            self.in_flight -= 1


class FakeChannel:
    """Stands in for a viewer websocket."""

    def __init__(self, closed=False, fail=False):
        self.closed = closed
        self.fail = fail
        self.sent = []

    async def send_json(self, message):
        if self.fail:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(message)


def make_index(graph):
    """Build an index from {url: [links]}, titled after the url."""
    return LinkGraphIndex({url: PageRecord(title=f"Page {url}", links=links) for url, links in graph.items()})


@pytest.fixture
def cfg(tmp_path):
    return crawl_config.with_overrides(crawl_config.DEFAULTS, {
        "crawl": {"max_depth": 0, "fetch_timeout": 2.0},
        "rank": {"interval": 0.01},
        "delivery": {"interval": 0.01},
        "storage": {"path": str(tmp_path / "data.json")},
    })
