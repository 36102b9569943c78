"""
dabsearch search - title search over the link graph.

Same contract the viewer page runs on its local copy of the index:
case-insensitive substring match on the title, highest rank first,
10 results per page.

Usage:
    from search import search
    result = search(index, "crawler", page=2)
    result.matches, result.total_pages
"""

import math
from typing import Iterable, List, Tuple

PAGE_SIZE = 10


# ── Search Result ────────────────────────────────────────────────────

class SearchResult:
    """A single matching page."""

    __slots__ = ("url", "title", "rank")

    def __init__(self, url: str, title: str = "", rank: int = 0):
        self.url = url
        self.title = title
        self.rank = rank

    def to_dict(self) -> dict:
        return {"url": self.url, "title": self.title, "rank": self.rank}

    def __repr__(self):
        t = self.title[:50] if self.title else self.url[:50]
        return f"<{self.rank}> {t}"


class SearchPage:
    """One page of results plus enough to draw the pager."""

    __slots__ = ("query", "page", "total", "total_pages", "matches")

    def __init__(self, query: str, page: int, total: int, total_pages: int,
                 matches: List[SearchResult]):
        self.query = query
        self.page = page
        self.total = total
        self.total_pages = total_pages
        self.matches = matches

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "page": self.page,
            "total": self.total,
            "total_pages": self.total_pages,
            "matches": [m.to_dict() for m in self.matches],
        }


# ── Matching ─────────────────────────────────────────────────────────

def find_matches(pages: Iterable[Tuple[str, object]], text: str) -> List[SearchResult]:
    """
    All pages whose title contains `text`, any case, sorted by rank
    descending. `pages` yields (url, record) pairs where record has
    `title` and `rank`. Equal ranks keep their input order.
    """
    needle = text.lower()
    results = [
        SearchResult(url, record.title, record.rank)
        for url, record in pages
        if needle in (record.title or "").lower()
    ]
    results.sort(key=lambda r: r.rank, reverse=True)
    return results


def search(index, text: str, page: int = 1, page_size: int = PAGE_SIZE) -> SearchPage:
    """Search an index (anything with `items()`) and cut out one page of results."""
    results = find_matches(index.items(), text)
    total_pages = math.ceil(len(results) / page_size)
    page = max(page, 1)
    start = (page - 1) * page_size
    return SearchPage(text, page, len(results), total_pages, results[start:start + page_size])
