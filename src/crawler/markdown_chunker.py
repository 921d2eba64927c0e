"""Heading-aware, token-bounded chunking of extracted markdown."""
import logging
import re
from typing import List, Optional

from ..utils import ConfigError, DocumentChunk, Tokenizer, tokenize

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1000
DEFAULT_OVERLAP_FRACTION = 0.05

_HEADING_RE = re.compile(r'^(#+)\s*(.*)$')
_ANCHOR_LINK_RE = re.compile(r'\[[^\]]*\]\(#[^)]*\)')
_FENCE_RE = re.compile(r'^\s*(```|~~~)')


def _clean_heading(text: str) -> str:
    return _ANCHOR_LINK_RE.sub('', text).strip()


def _section_for(hierarchy: List[str]) -> str:
    for heading in reversed(hierarchy):
        if heading:
            return heading
    return "Introduction"


def split_tokens_with_overlap(tokens: List[str], max_tokens: int, overlap_tokens: int) -> List[List[str]]:
    """
    Sliding-window split of a token list.

    Tokens accumulate until the next one would exceed ``max_tokens``; the window is
    emitted and the next one is seeded with the last ``overlap_tokens`` tokens of it.

    Args:
        tokens: Tokens to split.
        max_tokens: Upper bound on tokens per window.
        overlap_tokens: Tokens carried from the tail of one window into the next.
            Must be smaller than ``max_tokens``.

    Returns:
        The windows, in order.
    """
    windows: List[List[str]] = []
    current: List[str] = []
    for token in tokens:
        if len(current) + 1 > max_tokens:
            windows.append(current)
            current = current[-overlap_tokens:] if overlap_tokens > 0 else []
        current.append(token)
    if current:
        windows.append(current)
    return windows


def chunk_markdown(
    markdown: str,
    product_name: str,
    version: str,
    url: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_fraction: float = DEFAULT_OVERLAP_FRACTION,
    tokenizer: Optional[Tokenizer] = None,
) -> List[DocumentChunk]:
    """
    Splits markdown into chunks that each carry the heading hierarchy active at their position.

    Every heading closes the body accumulated before it. Bodies over ``max_tokens``
    are cut into overlapping windows. Headings inside fenced code blocks are treated
    as body text. Chunks under a heading start with a ``[Topic: A > B]`` line naming
    the non-empty headings above them; the token budget applies to the body alone.

    Args:
        markdown: Extracted markdown text.
        product_name: Product the content belongs to.
        version: Product version.
        url: Page URL or file path the markdown came from.
        max_tokens: Token budget per chunk.
        overlap_fraction: Fraction of ``max_tokens`` repeated across a split boundary.
        tokenizer: Splits text into tokens; whitespace-preserving split by default.

    Returns:
        Ordered chunks, with ``chunk_index`` and ``total_chunks`` filled in.
    """
    if max_tokens <= 0:
        raise ConfigError(f"max_tokens must be greater than 0, got {max_tokens}")
    if not 0 <= overlap_fraction < 1:
        raise ConfigError(f"overlap_fraction must be in [0, 1), got {overlap_fraction}")

    tokenizer = tokenizer or tokenize
    overlap_tokens = int(max_tokens * overlap_fraction)
    chunks: List[DocumentChunk] = []
    hierarchy: List[str] = []
    buffer: List[str] = []
    in_fence = False

    def emit(text: str, current_hierarchy: List[str]):
        text = text.strip()
        if not text:
            return
        breadcrumb = " > ".join(heading for heading in current_hierarchy if heading)
        chunks.append(DocumentChunk(
            content=f"[Topic: {breadcrumb}]\n{text}" if breadcrumb else text,
            product_name=product_name,
            version=version,
            heading_hierarchy=list(current_hierarchy),
            section=_section_for(current_hierarchy),
            url=url,
        ))

    def flush():
        body = "".join(buffer)
        buffer.clear()
        if not body.strip():
            return
        tokens = tokenizer(body)
        if len(tokens) <= max_tokens:
            emit(body, hierarchy)
            return
        logger.debug(f"Section of {len(tokens)} tokens exceeds budget {max_tokens}, splitting with {overlap_tokens} tokens of overlap")
        for window in split_tokens_with_overlap(tokens, max_tokens, overlap_tokens):
            emit("".join(window), hierarchy)

    for line in markdown.split("\n"):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            buffer.append(f"{line}\n")
            continue

        match = None if in_fence else _HEADING_RE.match(line)
        if match:
            flush()
            level = len(match.group(1))
            heading = _clean_heading(match.group(2))
            del hierarchy[level - 1:]
            while len(hierarchy) < level - 1:
                hierarchy.append("")
            hierarchy.append(heading)
        else:
            buffer.append(f"{line}\n")
    flush()

    for index, chunk in enumerate(chunks):
        chunk.chunk_index = index
        chunk.total_chunks = len(chunks)

    logger.debug(f"Chunked {url}: {len(chunks)} chunks created.")
    return chunks


def fixed_size_chunks(text: str, size: int, overlap: int = 0) -> List[str]:
    """
    Chunks text into fixed character sizes with overlap.

    Args:
        text: The text to chunk.
        size: The target size of each chunk in characters.
        overlap: The number of characters to overlap between chunks.

    Returns:
        A list of text chunks; whitespace-only windows are dropped.
    """
    if not text:
        return []
    if size <= 0:
        raise ConfigError(f"size must be greater than 0, got {size}")
    chunks = []
    start = 0
    text_length = len(text)
    increment = size - overlap
    while start < text_length:
        end = start + size
        chunk = text[start:end]
        if chunk.strip():
            chunks.append(chunk)
        if end >= text_length or increment <= 0:
            break
        start += increment
    return chunks
