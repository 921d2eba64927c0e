"""MCP tool definitions and implementations."""
import json
import logging
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import Context

from ..utils import DocSyncError, create_embedding, settings
from .chunk_store import get_store
from .sources import SourceConfig, load_sync_config
from .sync import sync_source as run_source_sync

logger = logging.getLogger(__name__)

# Note: The @mcp.tool() decorator is applied in docsync_mcp.py where the 'mcp'
# instance is defined. These are the raw function definitions.


def _select_sources(config_path: Optional[str], product_name: Optional[str]) -> List[SourceConfig]:
    config = load_sync_config(config_path or settings.SYNC_CONFIG_PATH)
    if not product_name:
        return list(config.sources)
    return [source for source in config.sources if source.product_name == product_name]


def _lifespan_crawler(ctx: Context):
    lifespan_context = getattr(getattr(ctx, 'request_context', None), 'lifespan_context', None)
    return getattr(lifespan_context, 'crawler', None)


async def sync_source(ctx: Context, product_name: Optional[str] = None, config_path: Optional[str] = None) -> str:
    """
    Synchronize configured documentation sources into the vector store.

    Only new or changed chunks are embedded. Pages that disappeared are removed,
    unless the crawl hit network errors.

    Args:
        ctx: The MCP server provided context.
        product_name: Only sync sources for this product. All sources when omitted.
        config_path: YAML sync configuration. Defaults to SYNC_CONFIG_PATH.

    Returns:
        JSON string with one report per source.
    """
    try:
        sources = _select_sources(config_path, product_name)
    except DocSyncError as e:
        logger.error(f"Error loading sync configuration: {e}")
        return json.dumps({"success": False, "error": str(e)}, indent=2)

    if not sources:
        return json.dumps({"success": False, "error": f"No sources configured for product '{product_name}'"}, indent=2)

    crawler = _lifespan_crawler(ctx)
    reports: List[Dict[str, Any]] = []
    for source in sources:
        try:
            report = await run_source_sync(source, crawler=crawler)
            reports.append({"success": True, **report.as_dict()})
        except DocSyncError as e:
            logger.error(f"Error syncing {source.type} source {source.product_name}: {e}", exc_info=True)
            reports.append({
                "success": False,
                "source_kind": source.type,
                "product_name": source.product_name,
                "error": str(e),
            })

    return json.dumps({
        "success": all(report["success"] for report in reports),
        "sources": reports,
        "count": len(reports),
    }, indent=2)


async def query_documentation(
    ctx: Context,
    query: str,
    product_name: Optional[str] = None,
    version: Optional[str] = None,
    limit: int = 5,
    config_path: Optional[str] = None,
) -> str:
    """
    Semantic search over the synchronized documentation.

    Args:
        ctx: The MCP server provided context.
        query: The search query.
        product_name: Optional product to restrict results to.
        version: Optional product version to restrict results to.
        limit: Maximum number of results to return.
        config_path: YAML sync configuration naming the stores to search.

    Returns:
        JSON string with the search results.
    """
    if not query or not query.strip():
        return json.dumps({"success": False, "query": query, "error": "Query must not be empty."}, indent=2)

    try:
        sources = _select_sources(config_path, product_name)
        query_embedding = create_embedding(query)

        results: List[Dict[str, Any]] = []
        searched = set()
        for source in sources:
            key = source.database_config.model_dump_json()
            if key in searched:
                continue
            searched.add(key)
            store = get_store(source.database_config)
            results.extend(store.search(query_embedding, limit=limit, product_name=product_name, version=version))

        results.sort(key=lambda item: item["similarity"], reverse=True)
        results = results[:limit]
        return json.dumps({
            "success": True,
            "query": query,
            "product_name": product_name,
            "version": version,
            "results": results,
            "count": len(results),
        }, indent=2)
    except DocSyncError as e:
        logger.error(f"Error in query_documentation for query '{query}': {e}", exc_info=True)
        return json.dumps({"success": False, "query": query, "error": str(e)}, indent=2)
