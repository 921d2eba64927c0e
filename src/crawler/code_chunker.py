"""Syntax-tree-aware chunking of source code using tree-sitter."""
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from tree_sitter_language_pack import get_parser

from ..utils import ConfigError, DocumentChunk, ParseError, ParserUnavailableError, TokenCounter
from .markdown_chunker import chunk_markdown, fixed_size_chunks

logger = logging.getLogger(__name__)

DEFAULT_CODE_CHUNK_SIZE = 512
MERGE_SEPARATOR = "\n"
SEPARATOR_SIZE = 1

LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.cjs': 'javascript',
    '.py': 'python',
    '.go': 'go',
    '.rs': 'rust',
    '.java': 'java',
    '.kt': 'kotlin',
    '.kts': 'kotlin',
    '.swift': 'swift',
    '.c': 'c',
    '.cc': 'cpp',
    '.cpp': 'cpp',
    '.h': 'cpp',
    '.hpp': 'cpp',
    '.cs': 'csharp',
    '.rb': 'ruby',
    '.php': 'php',
    '.scala': 'scala',
    '.sql': 'sql',
    '.sh': 'bash',
    '.bash': 'bash',
    '.zsh': 'bash',
    '.html': 'html',
    '.css': 'css',
    '.scss': 'scss',
    '.sass': 'scss',
    '.less': 'css',
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.md': 'markdown',
}


@dataclass
class CodeChunk:
    text: str
    size_estimate: int


def normalize_language(lang: str) -> str:
    return lang.strip().lower().replace('-', '_')


def detect_code_language(file_path: str) -> Optional[str]:
    """Map a file extension to a tree-sitter language name, or None if unknown."""
    return LANGUAGE_BY_EXTENSION.get(os.path.splitext(file_path)[1].lower())


class ParserRegistry:
    """
    Process-wide cache of tree-sitter parsers, one per normalized language.

    Construction is lazy and single-flight: concurrent callers asking for the same
    language wait on one construction. A failed construction is not cached.
    """

    def __init__(self, factory: Callable[[str], object] = get_parser):
        self._factory = factory
        self._parsers: Dict[str, object] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    def get(self, lang: str):
        key = normalize_language(lang)
        parser = self._parsers.get(key)
        if parser is not None:
            return parser

        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            parser = self._parsers.get(key)
            if parser is None:
                logger.debug(f"Building tree-sitter parser for '{key}'")
                try:
                    parser = self._factory(key)
                except Exception as e:
                    raise ParserUnavailableError(f"No tree-sitter parser available for language '{key}': {e}") from e
                self._parsers[key] = parser
        return parser

    def clear(self):
        with self._lock:
            self._parsers.clear()
            self._key_locks.clear()

    def __contains__(self, lang: str) -> bool:
        return normalize_language(lang) in self._parsers


parser_registry = ParserRegistry()


class CodeChunker:
    """
    Splits source code along syntax-tree boundaries, then merges small neighbouring
    pieces back together up to ``chunk_size``.

    Args:
        lang: Language identifier, e.g. ``"python"`` or ``"csharp"``.
        chunk_size: Size budget per chunk, in units of ``size_estimator``.
        size_estimator: Maps text to a size. Character count by default.
        registry: Parser cache; the shared process-wide registry by default.
    """

    def __init__(
        self,
        lang: str,
        chunk_size: int = DEFAULT_CODE_CHUNK_SIZE,
        size_estimator: Optional[TokenCounter] = None,
        registry: Optional[ParserRegistry] = None,
    ):
        if chunk_size <= 0:
            raise ConfigError("chunk_size must be greater than 0")
        self.lang = lang
        self.chunk_size = chunk_size
        self.size_estimator = size_estimator or len
        self.registry = registry or parser_registry

    def chunk(self, text: str) -> List[CodeChunk]:
        if not text.strip():
            return []

        parser = self.registry.get(self.lang)
        source = text.encode('utf-8')
        tree = parser.parse(source)
        if tree is None:
            raise ParseError(f"Failed to parse {self.lang} source")

        leaves = self.split_leaves(tree.root_node, source)
        return self.merge(leaves)

    def split_leaves(self, root, source: bytes) -> List[CodeChunk]:
        """
        Walk the tree top-down. A node that fits the budget, or has no children, is a
        leaf; otherwise its children are visited in source order. If none of the
        children produced a leaf, the whole node becomes one so nothing is dropped.
        """
        leaves: List[CodeChunk] = []
        # Frames are (node, None) to visit or (node, leaf_count_before) to close.
        stack = [(root, None)]
        while stack:
            node, leaves_before = stack.pop()
            node_text = source[node.start_byte:node.end_byte].decode('utf-8', errors='replace')

            if leaves_before is not None:
                if len(leaves) == leaves_before and node_text.strip():
                    leaves.append(CodeChunk(node_text, self.size_estimator(node_text)))
                continue

            size = self.size_estimator(node_text)
            children = [child for child in node.children if child is not None]
            if size <= self.chunk_size or not children:
                if node_text.strip():
                    leaves.append(CodeChunk(node_text, size))
                continue

            stack.append((node, len(leaves)))
            for child in reversed(children):
                stack.append((child, None))
        return leaves

    def merge(self, leaves: List[CodeChunk]) -> List[CodeChunk]:
        """Greedily coalesce consecutive leaves while the running size stays within budget."""
        merged: List[CodeChunk] = []
        current_text = ""
        current_size = 0

        for leaf in leaves:
            if not leaf.text.strip():
                continue
            if not current_text:
                current_text = leaf.text
                current_size = leaf.size_estimate
                continue

            next_size = current_size + SEPARATOR_SIZE + leaf.size_estimate
            if next_size <= self.chunk_size:
                current_text = f"{current_text}{MERGE_SEPARATOR}{leaf.text}"
                current_size = next_size
                continue

            merged.append(CodeChunk(current_text, current_size))
            current_text = leaf.text
            current_size = leaf.size_estimate

        if current_text:
            merged.append(CodeChunk(current_text, current_size))
        return merged


def chunk_code(
    code: str,
    product_name: str,
    version: str,
    url: str,
    file_path: str,
    chunk_size: int = DEFAULT_CODE_CHUNK_SIZE,
    lang: Optional[str] = None,
    size_estimator: Optional[TokenCounter] = None,
) -> List[DocumentChunk]:
    """
    Chunks one source file into DocumentChunks prefixed with the file path.

    Markdown files go through the markdown chunker. Files in a known language go
    through CodeChunker; if no parser is available or parsing fails, and for unknown
    extensions, fixed-size character windows are used instead.

    Args:
        code: File contents.
        product_name: Product the code belongs to.
        version: Product version.
        url: URL (or file URL) the chunks are stored under.
        file_path: Path of the file relative to the source root.
        chunk_size: Size budget per chunk.
        lang: Language override; detected from the extension when omitted.
        size_estimator: Size function for CodeChunker; character count by default.

    Returns:
        Ordered chunks with ``[File: <path>]`` prefixes.
    """
    normalized_path = file_path.replace('\\', '/')
    lang = lang or detect_code_language(normalized_path)
    prefix = f"[File: {normalized_path}]\n"

    if lang == 'markdown':
        markdown_chunks = chunk_markdown(code, product_name, version, url)
        texts = [chunk.content for chunk in markdown_chunks]
    elif lang:
        try:
            texts = [c.text for c in CodeChunker(lang, chunk_size, size_estimator).chunk(code)]
        except ParseError as e:
            logger.warning(f"CodeChunker failed for {normalized_path}, falling back to fixed-size chunking: {e}")
            texts = fixed_size_chunks(code, chunk_size)
    else:
        texts = fixed_size_chunks(code, chunk_size)

    chunks: List[DocumentChunk] = []
    for text in texts:
        content = text.strip()
        if not content:
            continue
        chunks.append(DocumentChunk(
            content=prefix + content,
            product_name=product_name,
            version=version,
            heading_hierarchy=[normalized_path],
            section=normalized_path,
            url=url,
            chunk_index=len(chunks),
        ))
    for chunk in chunks:
        chunk.total_chunks = len(chunks)

    logger.debug(f"Chunked {normalized_path}: {len(chunks)} chunks created.")
    return chunks
