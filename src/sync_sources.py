"""
Script to synchronize every source of a YAML sync configuration.

Usage: python -m src.sync_sources [config.yaml]

The exit status is non-zero when any source failed.
"""
import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from src.crawler.sources import load_sync_config
from src.crawler.sync import SyncReport, sync_source
from src.utils import DocSyncError, settings

logger = logging.getLogger(__name__)


async def sync_all(config_path: str) -> List[Optional[SyncReport]]:
    """Run each configured source in order. A failed source is logged and leaves ``None`` in its slot."""
    config = load_sync_config(config_path)
    reports: List[Optional[SyncReport]] = []
    for source in config.sources:
        try:
            reports.append(await sync_source(source))
        except DocSyncError as e:
            logger.error(f"Sync of {source.type} source {source.product_name} failed: {e}", exc_info=True)
            reports.append(None)
    return reports


def main(argv: List[str]) -> int:
    config_path = argv[1] if len(argv) > 1 else settings.SYNC_CONFIG_PATH
    try:
        reports = asyncio.run(sync_all(config_path))
    except DocSyncError as e:
        logger.error(f"Could not start sync: {e}")
        return 2

    failed = sum(1 for report in reports if report is None)
    logger.info(f"Synced {len(reports) - failed}/{len(reports)} sources from {config_path}")
    return 1 if failed else 0


def run():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    if load_dotenv():
        logger.info(".env file loaded successfully.")
    else:
        logger.warning(".env file not found or not loaded. Using existing environment variables or defaults.")
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    run()
