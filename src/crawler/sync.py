"""
Change detection and per-source synchronization.

The SyncCoordinator is the only component that writes to the chunk store. It
decides per chunk whether anything needs embedding, removes chunks that
disappeared from a page, and after a run deletes pages that were not seen again,
unless the run hit network errors and is therefore known to be incomplete.
"""
import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from crawl4ai import AsyncWebCrawler, BrowserConfig

from ..utils import (
    ConfigError,
    DocumentChunk,
    Embedder,
    EmbeddingError,
    OllamaEmbedder,
    StoreError,
    UnsupportedSourceError,
    get_url_prefix,
)
from .chunk_store import ChunkStore, get_store
from .code_chunker import chunk_code
from .content_extractor import ContentExtractor, Crawl4AIExtractor, fetch_links, probe
from .markdown_chunker import chunk_markdown
from .metadata_extractor import build_chunk_metadata
from .sources import (
    CodeSourceConfig,
    DirectorySourceConfig,
    GithubSourceConfig,
    LocalDirectorySourceConfig,
    SourceConfig,
    WebsiteSourceConfig,
)
from .web_crawler import (
    CrawlOutcome,
    LinkFetcher,
    PageStatus,
    SitemapParser,
    crawl_website,
    parse_sitemap,
    process_code_directory,
    process_directory,
)

logger = logging.getLogger(__name__)

VALIDATOR_KEY_PREFIX = "validator:"


@dataclass
class DocumentSyncResult:
    embedded: int = 0
    unchanged: int = 0
    removed: int = 0


@dataclass
class SyncReport:
    """What one source's run did to the store."""
    source_kind: str
    product_name: str
    version: str
    outcome: CrawlOutcome = dataclasses.field(default_factory=CrawlOutcome)
    embedded: int = 0
    unchanged: int = 0
    removed: int = 0
    not_found_removed: int = 0
    cleanup_deleted: Optional[int] = None
    cleanup_error: Optional[str] = None

    def add(self, result: DocumentSyncResult):
        self.embedded += result.embedded
        self.unchanged += result.unchanged
        self.removed += result.removed

    def as_dict(self) -> Dict[str, Any]:
        outcome = self.outcome
        return {
            "source_kind": self.source_kind,
            "product_name": self.product_name,
            "version": self.version,
            "processed": outcome.processed_count,
            "pdf_processed": outcome.pdf_processed_count,
            "skipped_unchanged": outcome.skipped_unchanged_count,
            "skipped_extension": outcome.skipped_extension_count,
            "skipped_size": outcome.skipped_size_count,
            "not_found": outcome.not_found_count,
            "errors": outcome.error_count,
            "has_network_errors": outcome.has_network_errors,
            "broken_links": [{"source": link.source, "target": link.target} for link in outcome.broken_links],
            "chunks_embedded": self.embedded,
            "chunks_unchanged": self.unchanged,
            "chunks_removed": self.removed,
            "not_found_removed": self.not_found_removed,
            "cleanup_deleted": self.cleanup_deleted,
            "cleanup_error": self.cleanup_error,
        }


def validator_key(url: str) -> str:
    return f"{VALIDATOR_KEY_PREFIX}{url}"


class SyncCoordinator:
    """
    Decides what gets embedded, stored and deleted for one source run.

    Args:
        store: Chunk store; the coordinator is its only writer.
        embedder: Turns chunk texts into vectors. Ollama by default.
        prober: Existence/validator probe used by ``check_page``.
        source_kind: Recorded in each chunk's metadata.
    """

    def __init__(self, store: ChunkStore, embedder: Optional[Embedder] = None, prober=probe, source_kind: str = "website"):
        self.store = store
        self.embedder = embedder or OllamaEmbedder()
        self.prober = prober
        self.source_kind = source_kind
        self.force = False
        self._probed_validators: Dict[str, Optional[str]] = {}

    def begin_run(self) -> bool:
        """An empty store means a first sync, which processes every page regardless of validators."""
        self.force = self.store.count_all() == 0
        self._probed_validators.clear()
        if self.force:
            logger.info("Chunk store is empty, processing every page.")
        return self.force

    async def check_page(self, url: str) -> PageStatus:
        result = await self.prober(url)
        if not result.exists:
            return PageStatus.NOT_FOUND
        self._probed_validators[url] = result.validator
        if self.force or not result.validator:
            return PageStatus.PROCESS
        if self.store.get_metadata(validator_key(url)) == result.validator and self.store.list_chunk_ids(url):
            return PageStatus.UNCHANGED
        return PageStatus.PROCESS

    async def handle_not_found(self, url: str) -> int:
        deleted = self.store.delete(url=url)
        self.store.delete_metadata(validator_key(url))
        logger.info(f"Removed {deleted} chunks of vanished page {url}")
        return deleted

    def sync_document(self, url: str, chunks: List[DocumentChunk]) -> DocumentSyncResult:
        """
        Bring the stored chunks of one document in line with ``chunks``.

        Raises:
            StoreError: On database or embedding failures.
        """
        result = DocumentSyncResult()
        fresh_ids: Set[str] = set()
        to_embed: List[DocumentChunk] = []

        for chunk in chunks:
            if chunk.chunk_id in fresh_ids:
                continue
            fresh_ids.add(chunk.chunk_id)
            if self.store.get_stored_hash(chunk.chunk_id) == chunk.content_hash:
                result.unchanged += 1
            else:
                to_embed.append(chunk)

        if to_embed:
            embeddings = self.embedder.embed([chunk.content for chunk in to_embed])
            if len(embeddings) != len(to_embed):
                raise EmbeddingError(f"Embedding count mismatch for {url}: expected {len(to_embed)}, got {len(embeddings)}")
            for chunk, embedding in zip(to_embed, embeddings):
                self.store.upsert(chunk, embedding, build_chunk_metadata(chunk, self.source_kind))
            result.embedded = len(to_embed)

        for stale_id in sorted(set(self.store.list_chunk_ids(url)) - fresh_ids):
            result.removed += self.store.delete(url=url, chunk_id=stale_id)

        validator = self._probed_validators.pop(url, None)
        if validator:
            self.store.set_metadata(validator_key(url), validator)
        else:
            self.store.delete_metadata(validator_key(url))

        logger.info(f"Synced {url}: {result.embedded} embedded, {result.unchanged} unchanged, {result.removed} removed")
        return result

    def cleanup(self, url_prefix: str, outcome: CrawlOutcome) -> Optional[int]:
        """
        Delete stored URLs under ``url_prefix`` that the run did not visit.

        Returns:
            The number of chunks deleted, or None when cleanup was skipped
            because the run recorded network errors.
        """
        if outcome.has_network_errors:
            logger.warning(f"Skipping cleanup for {url_prefix}: network errors make this run incomplete.")
            return None

        stale_urls = [url for url in self.store.list_stored_urls(url_prefix) if url not in outcome.visited_urls]
        deleted = 0
        for url in stale_urls:
            logger.info(f"Removing chunks of stale URL {url}")
            deleted += self.store.delete(url=url)
            self.store.delete_metadata(validator_key(url))
        logger.info(f"Cleanup for {url_prefix}: {len(stale_urls)} stale URLs, {deleted} chunks deleted.")
        return deleted


def _run_cleanup(coordinator: SyncCoordinator, url_prefix: str, report: SyncReport):
    try:
        report.cleanup_deleted = coordinator.cleanup(url_prefix, report.outcome)
    except StoreError as e:
        logger.error(f"Cleanup for {url_prefix} aborted: {e}", exc_info=True)
        report.cleanup_error = str(e)


def _log_report(report: SyncReport):
    logger.info(
        f"Finished {report.source_kind} source {report.product_name}@{report.version}. "
        f"{report.outcome.summary()}, Chunks embedded: {report.embedded}, unchanged: {report.unchanged}, "
        f"removed: {report.removed}, cleanup deleted: {report.cleanup_deleted}"
    )


# --- Website sources ---

async def sync_website(
    source: WebsiteSourceConfig,
    store: ChunkStore,
    extractor: ContentExtractor,
    embedder: Optional[Embedder] = None,
    link_fetcher: LinkFetcher = fetch_links,
    sitemap_parser: SitemapParser = parse_sitemap,
    prober=probe,
) -> SyncReport:
    coordinator = SyncCoordinator(store, embedder, prober, source_kind=source.type)
    coordinator.begin_run()
    report = SyncReport(source.type, source.product_name, source.version)

    async def on_content(url: str, markdown: str):
        chunks = chunk_markdown(
            markdown, source.product_name, source.version, url,
            max_tokens=source.chunk_size, overlap_fraction=source.chunk_overlap,
        )
        report.add(coordinator.sync_document(url, chunks))

    async def on_not_found(url: str):
        report.not_found_removed += await coordinator.handle_not_found(url)

    report.outcome = await crawl_website(
        source.url,
        on_content,
        extractor,
        sitemap_url=source.sitemap_url,
        link_fetcher=link_fetcher,
        sitemap_parser=sitemap_parser,
        page_check=coordinator.check_page,
        on_not_found=on_not_found,
    )
    _run_cleanup(coordinator, get_url_prefix(source.url), report)
    _log_report(report)
    return report


# --- Directory sources ---

def file_url(file_path: Path, source: DirectorySourceConfig) -> str:
    """
    URL a local file is stored under: the rewrite prefix plus the path relative to
    the source directory, or a ``file://`` URL when no prefix is configured or the
    file lies outside the directory.
    """
    resolved = file_path.resolve()
    if source.url_rewrite_prefix:
        try:
            relative = resolved.relative_to(Path(source.path).resolve())
        except ValueError:
            logger.debug(f"File outside configured path, using default URL: {resolved}")
            return resolved.as_uri()
        return f"{source.url_rewrite_prefix.rstrip('/')}/{relative.as_posix()}"
    return resolved.as_uri()


def directory_url_prefix(source: DirectorySourceConfig) -> str:
    if source.url_rewrite_prefix:
        return f"{source.url_rewrite_prefix.rstrip('/')}/"
    return f"{Path(source.path).resolve().as_uri().rstrip('/')}/"


def _with_file_urls(outcome: CrawlOutcome, source: DirectorySourceConfig) -> CrawlOutcome:
    return dataclasses.replace(
        outcome,
        visited_urls=frozenset(file_url(Path(path), source) for path in outcome.visited_urls),
    )


async def sync_local_directory(
    source: LocalDirectorySourceConfig,
    store: ChunkStore,
    embedder: Optional[Embedder] = None,
) -> SyncReport:
    coordinator = SyncCoordinator(store, embedder, source_kind=source.type)
    coordinator.begin_run()
    report = SyncReport(source.type, source.product_name, source.version)

    async def on_file(file_path: Path, markdown: str):
        url = file_url(file_path, source)
        chunks = chunk_markdown(
            markdown, source.product_name, source.version, url,
            max_tokens=source.chunk_size, overlap_fraction=source.chunk_overlap,
        )
        report.add(coordinator.sync_document(url, chunks))

    outcome = await process_directory(source.path, source, on_file)
    report.outcome = _with_file_urls(outcome, source)
    _run_cleanup(coordinator, directory_url_prefix(source), report)
    _log_report(report)
    return report


async def sync_code_source(
    source: CodeSourceConfig,
    store: ChunkStore,
    embedder: Optional[Embedder] = None,
) -> SyncReport:
    coordinator = SyncCoordinator(store, embedder, source_kind=source.type)
    coordinator.begin_run()
    report = SyncReport(source.type, source.product_name, source.version)
    root = Path(source.path)

    async def on_file(file_path: Path, code: str):
        url = file_url(file_path, source)
        relative = file_path.relative_to(root).as_posix()
        chunks = chunk_code(
            code, source.product_name, source.version, url, relative,
            chunk_size=source.chunk_size, lang=source.language,
        )
        report.add(coordinator.sync_document(url, chunks))

    outcome = await process_code_directory(source.path, source, on_file)
    report.outcome = _with_file_urls(outcome, source)
    _run_cleanup(coordinator, directory_url_prefix(source), report)
    _log_report(report)
    return report


# --- Dispatch ---

async def sync_source(
    source: SourceConfig,
    store: Optional[ChunkStore] = None,
    crawler: Optional[AsyncWebCrawler] = None,
    embedder: Optional[Embedder] = None,
) -> SyncReport:
    """
    Run one configured source against its store.

    Website sources render pages with ``crawler`` when given, otherwise with a
    headless crawler opened for this run.

    Raises:
        UnsupportedSourceError: For repository (``github``) sources.
        ConfigError: For an unknown source type.
        StoreError: On persistence or embedding failures outside cleanup.
    """
    if isinstance(source, GithubSourceConfig):
        raise UnsupportedSourceError(f"Source type 'github' ({source.repo}) has no ingestion support.")
    if not isinstance(source, (WebsiteSourceConfig, LocalDirectorySourceConfig, CodeSourceConfig)):
        raise ConfigError(f"Unknown source type: {getattr(source, 'type', source)!r}")

    store = store or get_store(source.database_config)
    logger.info(f"Syncing {source.type} source {source.product_name}@{source.version}")

    if isinstance(source, WebsiteSourceConfig):
        if crawler is not None:
            return await sync_website(source, store, Crawl4AIExtractor(crawler, source.max_size), embedder)
        browser_config = BrowserConfig(headless=True, verbose=False)
        async with AsyncWebCrawler(config=browser_config) as run_crawler:
            return await sync_website(source, store, Crawl4AIExtractor(run_crawler, source.max_size), embedder)
    if isinstance(source, LocalDirectorySourceConfig):
        return await sync_local_directory(source, store, embedder)
    return await sync_code_source(source, store, embedder)
