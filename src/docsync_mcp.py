"""
MCP server for documentation sync and retrieval.

Exposes tools to synchronize configured sources (websites, local directories,
source trees) into the chunk store and to query the stored chunks.
"""
import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from crawl4ai import AsyncWebCrawler, BrowserConfig
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from src.crawler import tool_definitions
from src.crawler.chunk_store import get_store
from src.crawler.sources import load_sync_config
from src.utils import ConfigError, settings

project_root = Path(__file__).resolve().parent.parent

# Load environment variables from the project root .env file
load_dotenv(project_root / '.env', override=True)

log_level_name = os.getenv('LOG_LEVEL', settings.LOG_LEVEL).upper()
log_level = getattr(logging, log_level_name, None)
invalid_log_level = not isinstance(log_level, int)
if invalid_log_level:
    log_level = logging.INFO

logging.basicConfig(level=log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
if invalid_log_level:
    logger.warning(f"Invalid LOG_LEVEL '{log_level_name}'. Defaulting to INFO.")


@dataclass
class DocSyncContext:
    """Context for the docsync MCP server."""
    crawler: AsyncWebCrawler


@asynccontextmanager
async def docsync_lifespan(server: FastMCP) -> AsyncIterator[DocSyncContext]:
    """
    Manages the shared crawler and opens the configured stores once at startup.
    """
    browser_config = BrowserConfig(headless=True, verbose=False)

    logger.info("Initializing AsyncWebCrawler...")
    crawler = AsyncWebCrawler(config=browser_config)
    await crawler.__aenter__()
    logger.info("AsyncWebCrawler initialized.")

    try:
        try:
            config = load_sync_config(settings.SYNC_CONFIG_PATH)
        except ConfigError as e:
            logger.warning(f"No usable sync configuration at startup: {e}")
        else:
            logger.info("Performing store connection check...")
            for source in config.sources:
                get_store(source.database_config).count_all()
            logger.info("Store connection check successful.")

        yield DocSyncContext(crawler=crawler)
    finally:
        logger.info("Cleaning up AsyncWebCrawler...")
        await crawler.__aexit__(None, None, None)
        logger.info("AsyncWebCrawler cleaned up.")


mcp = FastMCP(
    "mcp-docsync",
    instructions="Synchronizes documentation sources into a vector store and answers semantic queries over them.",
    lifespan=docsync_lifespan,
    host=os.getenv("HOST", "0.0.0.0"),
    port=int(os.getenv("PORT", "8051")),
)

mcp.tool()(tool_definitions.sync_source)
mcp.tool()(tool_definitions.query_documentation)


async def main():
    """Main function to run the MCP server."""
    transport = os.getenv("TRANSPORT", "sse")
    logger.info(f"Starting MCP server with {transport.upper()} transport...")
    if transport == 'sse':
        await mcp.run_sse_async()
    else:
        await mcp.run_stdio_async()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
