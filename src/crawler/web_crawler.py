"""Crawl scheduling for websites and walking of local directories."""
import errno
import logging
import socket
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, FrozenSet, Iterator, List, Optional, Set
from xml.etree import ElementTree

import httpx
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import Timeout as RequestsTimeout

from ..utils import (
    NETWORK_ERROR_TERMS,
    ConfigError,
    DocSyncError,
    NetworkError,
    PageNotFoundError,
    StoreError,
    is_pdf_url,
    normalize_url,
    settings,
    should_process_url,
)
from .content_extractor import (
    ContentExtractor,
    docx_file_to_markdown,
    fetch_links,
    html_to_markdown,
    pdf_file_to_markdown,
)
from .sources import CodeSourceConfig, DirectorySourceConfig

logger = logging.getLogger(__name__)

MAX_SITEMAP_DEPTH = 10

NETWORK_ERRNOS = frozenset({
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
    errno.ECONNREFUSED,
    errno.ECONNRESET,
})

ContentCallback = Callable[[str, str], Awaitable[None]]
FileCallback = Callable[[Path, str], Awaitable[None]]
LinkFetcher = Callable[[str], Awaitable[List[str]]]
SitemapParser = Callable[[str], Awaitable[List[str]]]


class PageStatus(str, Enum):
    PROCESS = "process"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"


PageCheck = Callable[[str], Awaitable[PageStatus]]
NotFoundHandler = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class BrokenLink:
    source: str
    target: str


@dataclass
class CrawlOutcome:
    """Counters and bookkeeping for one crawl or directory walk."""
    processed_count: int = 0
    skipped_extension_count: int = 0
    skipped_size_count: int = 0
    pdf_processed_count: int = 0
    error_count: int = 0
    has_network_errors: bool = False
    skipped_unchanged_count: int = 0
    not_found_count: int = 0
    visited_urls: FrozenSet[str] = frozenset()
    broken_links: List[BrokenLink] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Pages: {self.processed_count}, PDFs: {self.pdf_processed_count}, "
            f"Unchanged: {self.skipped_unchanged_count}, Not found: {self.not_found_count}, "
            f"Skipped (Extension): {self.skipped_extension_count}, "
            f"Skipped (Size): {self.skipped_size_count}, Errors: {self.error_count}"
        )


def is_network_error(error: BaseException) -> bool:
    """
    True if the failure says the network, not the page, was the problem.
    A single such failure marks the whole run as incomplete.
    """
    if isinstance(error, NetworkError):
        return True
    if isinstance(error, (DocSyncError, httpx.HTTPStatusError)):
        return False
    if isinstance(error, (httpx.TransportError, RequestsConnectionError, RequestsTimeout,
                          socket.gaierror, ConnectionError, TimeoutError)):
        return True
    if isinstance(error, OSError) and error.errno in NETWORK_ERRNOS:
        return True
    message = str(error).lower()
    return any(term in message for term in NETWORK_ERROR_TERMS)


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


async def parse_sitemap(
    sitemap_url: str,
    _depth: int = 0,
    _visited: Optional[Set[str]] = None,
) -> List[str]:
    """
    Parse a sitemap and extract page URLs asynchronously.

    Sitemap indexes are expanded depth-first. Each sitemap is fetched at most once
    and nesting deeper than MAX_SITEMAP_DEPTH is ignored.

    Args:
        sitemap_url: URL of the sitemap or sitemap index

    Returns:
        Page URLs in document order. A sitemap answering with an HTTP error or
        invalid XML contributes nothing.

    Raises:
        NetworkError: The sitemap host could not be reached.
    """
    visited = _visited if _visited is not None else set()
    if sitemap_url in visited:
        logger.debug(f"Sitemap already parsed, skipping: {sitemap_url}")
        return []
    if _depth > MAX_SITEMAP_DEPTH:
        logger.warning(f"Sitemap nesting deeper than {MAX_SITEMAP_DEPTH}, skipping: {sitemap_url}")
        return []
    visited.add(sitemap_url)

    logger.info(f"Parsing sitemap from {sitemap_url}")
    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS, follow_redirects=True) as client:
            resp = await client.get(sitemap_url)
            resp.raise_for_status()
        tree = ElementTree.fromstring(resp.content)
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error fetching sitemap {sitemap_url}: {e.response.status_code}")
        return []
    except httpx.TransportError as e:
        raise NetworkError(f"Failed to fetch sitemap {sitemap_url}: {e}") from e
    except httpx.RequestError as e:
        logger.error(f"Request error fetching sitemap {sitemap_url}: {e}")
        return []
    except ElementTree.ParseError as e:
        logger.error(f"Error parsing sitemap XML from {sitemap_url}: {e}")
        return []

    urls: List[str] = []
    nested: List[str] = []
    for entry in tree:
        kind = _local_name(entry.tag)
        loc = entry.find('{*}loc')
        if loc is None or not loc.text:
            continue
        if kind == 'url':
            urls.append(loc.text.strip())
        elif kind == 'sitemap':
            nested.append(loc.text.strip())

    for nested_url in nested:
        logger.debug(f"Found nested sitemap: {nested_url}")
        urls.extend(await parse_sitemap(nested_url, _depth + 1, visited))

    logger.info(f"Found {len(urls)} URLs in sitemap {sitemap_url}")
    return urls


async def crawl_website(
    base_url: str,
    on_content: ContentCallback,
    extractor: ContentExtractor,
    sitemap_url: Optional[str] = None,
    link_fetcher: LinkFetcher = fetch_links,
    sitemap_parser: SitemapParser = parse_sitemap,
    page_check: Optional[PageCheck] = None,
    on_not_found: Optional[NotFoundHandler] = None,
) -> CrawlOutcome:
    """
    Breadth-first crawl of every page under ``base_url``, each visited once.

    Args:
        base_url: Start page; also the scope, since only URLs starting with it are queued.
        on_content: Awaited with ``(normalized_url, markdown)`` for every extracted page.
        extractor: Produces markdown for a URL, or None if the page is over the size limit.
        sitemap_url: Optional sitemap whose in-scope URLs seed the queue.
        link_fetcher: Returns the outbound links of an HTML page.
        sitemap_parser: Returns the page URLs listed in a sitemap.
        page_check: Optional change-detection hook consulted before extraction.
        on_not_found: Awaited with the normalized URL of a page that no longer exists.

    Returns:
        The run's counters, visited URLs and broken links.

    Raises:
        StoreError: Persistence failures inside ``on_content`` or ``on_not_found``
            are not per-page problems and stop the crawl.
    """
    outcome = CrawlOutcome()
    visited: Set[str] = set()
    queue = deque([base_url])
    queued: Set[str] = {normalize_url(base_url)}
    referrers: Dict[str, Set[str]] = {normalize_url(base_url): {base_url}}
    broken_keys: Set[BrokenLink] = set()

    def in_scope(candidate: str) -> bool:
        return candidate.startswith(base_url)

    def enqueue(candidate: str, source: str) -> bool:
        key = normalize_url(candidate)
        referrers.setdefault(key, set()).add(source)
        if key in visited or key in queued:
            return False
        queued.add(key)
        queue.append(candidate)
        return True

    def record_broken(key: str):
        for source in sorted(referrers.get(key, {base_url})):
            link = BrokenLink(source=source, target=key)
            if link not in broken_keys:
                broken_keys.add(link)
                outcome.broken_links.append(link)

    async def handle_not_found(key: str):
        outcome.not_found_count += 1
        record_broken(key)
        if on_not_found is not None:
            await on_not_found(key)

    if sitemap_url:
        try:
            added = 0
            for url in await sitemap_parser(sitemap_url):
                if in_scope(url) and enqueue(url, sitemap_url):
                    logger.debug(f"Adding URL from sitemap to queue: {url}")
                    added += 1
            logger.info(f"Added {added} URLs from sitemap to the crawl queue")
        except Exception as e:
            logger.error(f"Failed to seed the crawl from sitemap {sitemap_url}: {e}", exc_info=True)
            outcome.error_count += 1
            if is_network_error(e):
                outcome.has_network_errors = True

    logger.info(f"Starting crawl from {base_url} with {len(queue)} URLs in initial queue")

    while queue:
        url = queue.popleft()
        key = normalize_url(url)
        if key in visited:
            continue
        visited.add(key)

        if not should_process_url(url):
            logger.debug(f"Skipping URL with unsupported extension: {url}")
            outcome.skipped_extension_count += 1
            continue

        is_pdf = is_pdf_url(url)
        try:
            status = await page_check(key) if page_check is not None else PageStatus.PROCESS
            if status == PageStatus.NOT_FOUND:
                logger.info(f"Page no longer exists: {url}")
                await handle_not_found(key)
                continue

            if status == PageStatus.UNCHANGED:
                logger.debug(f"Unchanged since last sync: {url}")
                outcome.skipped_unchanged_count += 1
            else:
                logger.info(f"Crawling: {url}")
                try:
                    content = await extractor.extract(url)
                except PageNotFoundError as e:
                    logger.info(f"Page no longer exists: {url} (HTTP {e.status_code})")
                    await handle_not_found(key)
                    continue

                if content is None:
                    outcome.skipped_size_count += 1
                else:
                    await on_content(key, content)
                    if is_pdf:
                        outcome.pdf_processed_count += 1
                    else:
                        outcome.processed_count += 1

            if not is_pdf:
                new_links = 0
                for link in await link_fetcher(url):
                    if in_scope(link) and enqueue(link, key):
                        new_links += 1
                logger.debug(f"Found {new_links} new links on {url}")
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Failed during processing or link discovery for {url}: {e}", exc_info=True)
            outcome.error_count += 1
            if is_network_error(e):
                outcome.has_network_errors = True
                logger.warning(f"Network error detected for {url}, this may affect cleanup decisions")

    outcome.visited_urls = frozenset(visited)
    logger.info(f"Crawl completed. {outcome.summary()}")
    if outcome.has_network_errors:
        logger.warning("Network errors were encountered during crawling. Cleanup may be skipped to avoid removing valid chunks.")
    return outcome


# --- Local directories ---

def _iter_files(root: Path, recursive: bool) -> Iterator[Path]:
    candidates = root.rglob('*') if recursive else root.iterdir()
    for path in sorted(candidates):
        if path.is_file():
            yield path


def _check_directory(path: str) -> Path:
    root = Path(path)
    if not root.is_dir():
        raise ConfigError(f"Directory not found: {path}")
    return root


def _extension_allowed(file_path: Path, source: DirectorySourceConfig) -> bool:
    extension = file_path.suffix.lower()
    if extension in source.exclude_extensions:
        logger.debug(f"Skipping file with excluded extension: {file_path}")
        return False
    if source.include_extensions and extension not in source.include_extensions:
        logger.debug(f"Skipping file with non-included extension: {file_path}")
        return False
    return True


def read_document(file_path: Path, encoding: str) -> str:
    """Markdown for a local document. PDF, Word and HTML files are converted; anything else is read as text."""
    extension = file_path.suffix.lower()
    if extension == '.pdf':
        return pdf_file_to_markdown(file_path)
    if extension == '.docx':
        return docx_file_to_markdown(file_path)
    content = file_path.read_text(encoding=encoding)
    if extension in ('.html', '.htm'):
        logger.debug(f"Converting HTML to Markdown for {file_path}")
        return html_to_markdown(content)
    return content


async def _walk(
    root: Path,
    source: DirectorySourceConfig,
    on_file: FileCallback,
    reader: Callable[[Path], str],
) -> CrawlOutcome:
    outcome = CrawlOutcome()
    visited: Set[str] = set()

    for file_path in _iter_files(root, source.recursive):
        if not _extension_allowed(file_path, source):
            outcome.skipped_extension_count += 1
            continue
        visited.add(str(file_path))

        try:
            logger.info(f"Reading file: {file_path}")
            content = reader(file_path)
            if len(content) > source.max_size:
                logger.warning(f"File content ({len(content)} chars) exceeds max size ({source.max_size}). Skipping {file_path}.")
                outcome.skipped_size_count += 1
                continue
            await on_file(file_path, content)
            if file_path.suffix.lower() == '.pdf':
                outcome.pdf_processed_count += 1
            else:
                outcome.processed_count += 1
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Error processing file {file_path}: {e}", exc_info=True)
            outcome.error_count += 1

    outcome.visited_urls = frozenset(visited)
    logger.info(f"Directory {root} processed. {outcome.summary()}")
    return outcome


async def process_directory(path: str, source: DirectorySourceConfig, on_file: FileCallback) -> CrawlOutcome:
    """
    Walk a local documentation directory and hand each file's markdown to ``on_file``.

    ``visited_urls`` of the returned outcome holds the paths of every file that
    passed the extension filters. Directory walks never report network errors.
    """
    root = _check_directory(path)
    logger.info(f"Processing directory: {root}")
    return await _walk(root, source, on_file, lambda file_path: read_document(file_path, source.encoding))


async def process_code_directory(path: str, source: CodeSourceConfig, on_file: FileCallback) -> CrawlOutcome:
    """Walk a source tree and hand each file's raw text to ``on_file``."""
    root = _check_directory(path)
    logger.info(f"Processing code directory: {root}")
    return await _walk(root, source, on_file, lambda file_path: file_path.read_text(encoding=source.encoding))
