# scraper.py
import asyncio
import logging
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from config import SCRAPE_TIMEOUT
from schemas import PageContent

logger = logging.getLogger(__name__)


class PageContentError(Exception):
    pass


# Browser-like headers so sites don't block us
HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

# Elements whose text never reaches innerText in a browser, or is page chrome.
HIDDEN_TAGS = ["script", "style", "noscript", "template", "svg", "nav", "footer"]


def validate_url(url: str) -> None:
    p = urlparse(url)
    if p.scheme not in ("http", "https") or not p.netloc:
        raise PageContentError("Only http(s) page URLs are supported.")


def _fetch(url: str) -> str:
    try:
        resp = requests.get(url, headers=HEADERS, timeout=SCRAPE_TIMEOUT, allow_redirects=True)
    except requests.RequestException as e:
        raise PageContentError(f"Failed to extract page content: {e}") from e
    if resp.status_code != 200:
        raise PageContentError(f"Failed to extract page content: HTTP {resp.status_code}")
    return resp.text


def _favicon(soup: BeautifulSoup, url: str) -> str:
    for link in soup.find_all("link", rel=True):
        rels = [r.lower() for r in link.get("rel", [])]
        if "icon" in rels and link.get("href"):
            return urljoin(url, link["href"])
    return urljoin(url, "/favicon.ico")


def parse_page(html: str, url: str) -> PageContent:
    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.get_text(strip=True) if soup.title else url
    favicon = _favicon(soup, url)

    body = soup.body or soup
    for el in body.find_all(HIDDEN_TAGS):
        el.decompose()

    lines = [ln.strip() for ln in body.get_text("\n").splitlines()]
    text = "\n".join(ln for ln in lines if ln)
    if not text:
        raise PageContentError("Failed to extract page content")

    return PageContent(title=title, text=text, favicon=favicon)


def scrape_page(url: str) -> PageContent:
    validate_url(url)
    html = _fetch(url)
    return parse_page(html, url)


class StaticPageProvider:
    """Serves a snapshot the client already captured (or one persisted for a restart)."""

    def __init__(self, page: PageContent):
        self.page = page

    async def fetch(self) -> PageContent:
        return self.page


class UrlPageProvider:
    def __init__(self, url: str):
        self.url = url

    async def fetch(self) -> PageContent:
        logger.info("Fetching page content from %s", self.url)
        return await asyncio.to_thread(scrape_page, self.url)


class MissingPageProvider:
    async def fetch(self) -> PageContent:
        raise PageContentError("No active tab found")
