"""Functions for building the metadata stored with each chunk."""
import re
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlparse

from ..utils import DocumentChunk

_HEADER_RE = re.compile(r'^(#+)\s+(.+)$', re.MULTILINE)


def extract_section_info(text: str) -> Dict[str, Any]:
    """
    Extracts inline headers and size stats from chunk text.

    Args:
        text: Chunk content

    Returns:
        Dictionary with headers and stats
    """
    headers = _HEADER_RE.findall(text)
    header_str = '; '.join(f'{level} {title}' for level, title in headers)
    return {
        "headers": header_str,
        "char_count": len(text),
        "word_count": len(text.split()),
    }


def build_chunk_metadata(chunk: DocumentChunk, source_kind: str) -> Dict[str, Any]:
    """
    Metadata persisted alongside a chunk's embedding.

    The ``source`` key is the host for web pages and ``local`` for files.
    """
    meta = extract_section_info(chunk.content)
    meta.update({
        "breadcrumb": " > ".join(h for h in chunk.heading_hierarchy if h),
        "chunk_index": chunk.chunk_index,
        "total_chunks": chunk.total_chunks,
        "source": urlparse(chunk.url).netloc or "local",
        "source_kind": source_kind,
        "sync_time": datetime.now(timezone.utc).isoformat(),
    })
    return meta
