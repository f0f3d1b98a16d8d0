import json
from typing import Any, Dict, List, Optional, Tuple, Union

from crawl_engine import FetchEngine, FetchResponse

Page = Tuple[int, Union[str, Dict[str, Any], Exception]]


class StubEngine(FetchEngine):
    """FetchEngine serving responses from an in-memory page table."""

    pages: Dict[str, Page] = {}
    # shared by every engine of a bound class, in request order
    history: Optional[List[str]] = None

    def __init__(self, pages: Dict[str, Page] = None, **kwargs):
        kwargs.setdefault("show_progress", False)
        kwargs.setdefault("rate_limit_delay", 0)
        super().__init__(**kwargs)
        self.pages = pages if pages is not None else type(self).pages
        self.requested = []

    async def _request(self, url, proxy_url):
        self.requested.append(url)
        if self.history is not None:
            self.history.append(url)
        status, body = self.pages.get(url, (404, "Not Found"))
        if isinstance(body, Exception):
            raise body
        if not isinstance(body, str):
            body = json.dumps(body)
        return FetchResponse(url=url, status=status, body=body)


def stub_engine_class(pages: Dict[str, Page], history: Optional[List[str]] = None) -> type:
    """A StubEngine subclass bound to `pages`, usable as `engine_class`."""
    return type("BoundStubEngine", (StubEngine,), {"pages": pages, "history": history})


def urlset(*urls: str) -> str:
    entries = "\n".join(f"  <url>\n    <loc>{url}</loc>\n  </url>" for url in urls)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{entries}\n"
        "</urlset>"
    )


def sitemapindex(*urls: str) -> str:
    entries = "\n".join(f"  <sitemap>\n    <loc>{url}</loc>\n  </sitemap>" for url in urls)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        f"{entries}\n"
        "</sitemapindex>"
    )


ROBOTS_TXT = """# we use Shopify as our ecommerce platform

User-agent: *
Disallow: /admin
Disallow: /cart

Sitemap: https://shop.example/sitemap.xml
"""
