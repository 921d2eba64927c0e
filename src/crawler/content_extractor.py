"""
Default collaborators of the crawl scheduler: page extraction through Crawl4AI,
PDF conversion with pypdf, link discovery and existence probes over httpx.
"""
import logging
import os
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import urlparse

import docx
import html2text
import httpx
from bs4 import BeautifulSoup
from crawl4ai import AsyncWebCrawler, CacheMode, CrawlerRunConfig
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from ..utils import (
    NETWORK_ERROR_TERMS,
    ExtractionError,
    NetworkError,
    PageNotFoundError,
    build_url,
    is_pdf_url,
    settings,
)

logger = logging.getLogger(__name__)

NOT_FOUND_STATUSES = (404, 410)
USER_AGENT = "Mozilla/5.0 (compatible; docsync crawler)"


class ContentExtractor(Protocol):
    async def extract(self, url: str) -> Optional[str]:
        """Markdown for the page, or None when it exceeds the size limit."""
        ...


@dataclass
class PageProbe:
    exists: bool
    validator: Optional[str] = None
    status_code: Optional[int] = None


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
    )


# --- Format conversion ---

def pdf_bytes_to_markdown(data: bytes, title: str) -> str:
    """
    Convert PDF bytes to markdown: a ``# title`` heading, then the text of each
    page. Multi-page documents get one ``## Page N`` section per non-empty page.

    Raises:
        ExtractionError: If pypdf cannot read the document.
    """
    try:
        reader = PdfReader(BytesIO(data))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
    except PyPdfError as e:
        raise ExtractionError(f"Could not read PDF '{title}': {e}") from e

    logger.debug(f"PDF '{title}' has {len(pages)} pages")
    parts = [f"# {title}\n\n"]
    for number, text in enumerate(pages, start=1):
        if not text:
            continue
        if len(pages) > 1:
            parts.append(f"## Page {number}\n\n")
        parts.append(f"{text}\n\n")
    return "".join(parts)


def pdf_file_to_markdown(path: Path) -> str:
    return pdf_bytes_to_markdown(path.read_bytes(), path.stem)


def docx_file_to_markdown(path: Path) -> str:
    """
    Convert a Word document to markdown: a ``# stem`` heading, then one block per
    non-empty paragraph. ``Heading N`` paragraphs become level N+1 headings so they
    nest under the title.

    Raises:
        ExtractionError: If python-docx cannot open the file.
    """
    try:
        document = docx.Document(str(path))
    except PackageNotFoundError as e:
        raise ExtractionError(f"Could not read DOCX '{path.name}': {e}") from e

    parts = [f"# {path.stem}\n\n"]
    for paragraph in document.paragraphs:
        text = paragraph.text.strip()
        if not text:
            continue
        style = paragraph.style.name if paragraph.style is not None else ""
        level = style.rsplit(' ', 1)[-1]
        if style.startswith('Heading') and level.isdigit():
            parts.append(f"{'#' * min(int(level) + 1, 6)} {text}\n\n")
        else:
            parts.append(f"{text}\n\n")
    logger.debug(f"Converted DOCX {path} to {len(parts) - 1} markdown blocks")
    return "".join(parts)


def html_to_markdown(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.ignore_tables = False
    converter.body_width = 0
    return converter.handle(html)


def extract_links(html: str, base_url: str) -> List[str]:
    """
    Absolute targets of every ``<a href>`` in the page, in document order and
    without duplicates. Fragment-only, ``mailto:`` and ``javascript:`` links are dropped.
    """
    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    seen = set()
    for a_tag in soup.find_all('a', href=True):
        href = a_tag['href'].strip()
        if not href or href.startswith('#'):
            continue
        if href.lower().startswith(('mailto:', 'javascript:')):
            continue
        absolute = build_url(href, base_url)
        if absolute and absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


# --- Network operations ---

async def fetch_links(url: str) -> List[str]:
    """
    Fetch a page over plain HTTP and return the links it contains.

    Non-HTML responses have no links. Transport failures propagate so the caller
    can classify them.
    """
    async with _http_client() as client:
        resp = await client.get(url)
        resp.raise_for_status()
    content_type = resp.headers.get('content-type', '')
    if content_type and 'html' not in content_type:
        logger.debug(f"Skipping link discovery for non-HTML response {url} ({content_type})")
        return []
    links = extract_links(resp.text, str(resp.url))
    logger.debug(f"Found {len(links)} links on {url}")
    return links


async def probe(url: str) -> PageProbe:
    """
    HEAD request used for change detection. 404/410 means the resource is gone.
    The validator is the ETag, falling back to Last-Modified.
    """
    async with _http_client() as client:
        resp = await client.head(url)
    if resp.status_code in NOT_FOUND_STATUSES:
        return PageProbe(exists=False, status_code=resp.status_code)
    validator = resp.headers.get('etag') or resp.headers.get('last-modified')
    return PageProbe(exists=True, validator=validator, status_code=resp.status_code)


async def download_pdf(url: str) -> bytes:
    try:
        async with _http_client() as client:
            resp = await client.get(url)
    except httpx.TransportError as e:
        raise NetworkError(f"Failed to download PDF {url}: {e}") from e
    if resp.status_code in NOT_FOUND_STATUSES:
        raise PageNotFoundError(url, resp.status_code)
    if resp.status_code >= 400:
        raise ExtractionError(f"Failed to download PDF {url}: HTTP {resp.status_code}")
    logger.debug(f"Downloaded PDF {url} ({len(resp.content)} bytes)")
    return resp.content


class Crawl4AIExtractor:
    """
    Renders pages with a shared AsyncWebCrawler and returns their markdown.
    PDFs are downloaded and converted with pypdf instead of being rendered.

    Args:
        crawler: An entered AsyncWebCrawler.
        max_size: Raw HTML (or converted PDF markdown) above this many characters is skipped.
    """

    def __init__(self, crawler: AsyncWebCrawler, max_size: Optional[int] = None):
        self.crawler = crawler
        self.max_size = max_size or settings.MAX_CONTENT_SIZE
        self.run_config = CrawlerRunConfig(cache_mode=CacheMode.BYPASS, stream=False)

    async def extract(self, url: str) -> Optional[str]:
        if is_pdf_url(url):
            return await self._extract_pdf(url)

        result = await self.crawler.arun(url=url, config=self.run_config)
        status_code = getattr(result, 'status_code', None)
        if status_code in NOT_FOUND_STATUSES:
            raise PageNotFoundError(url, status_code)
        if not result.success:
            message = result.error_message or "no error message"
            if any(term in message.lower() for term in NETWORK_ERROR_TERMS):
                raise NetworkError(f"Failed to load {url}: {message}")
            raise ExtractionError(f"Failed to crawl {url}: {message}")

        html = result.html or ""
        if len(html) > self.max_size:
            logger.warning(f"Raw HTML ({len(html)} chars) exceeds max size ({self.max_size}). Skipping {url}.")
            return None
        return str(result.markdown or "")

    async def _extract_pdf(self, url: str) -> Optional[str]:
        logger.info(f"Processing PDF: {url}")
        data = await download_pdf(url)
        title = os.path.splitext(os.path.basename(urlparse(url).path))[0] or 'document'
        markdown = pdf_bytes_to_markdown(data, title)
        if len(markdown) > self.max_size:
            logger.warning(f"PDF content ({len(markdown)} chars) exceeds max size ({self.max_size}). Skipping {url}.")
            return None
        return markdown
