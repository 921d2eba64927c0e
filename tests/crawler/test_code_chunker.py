"""
Unit tests for the syntax-tree code chunker in src.crawler.code_chunker.
"""
import threading
import time
from dataclasses import dataclass, field
from typing import List

import pytest

from src.crawler.code_chunker import (
    CodeChunk,
    CodeChunker,
    ParserRegistry,
    chunk_code,
    detect_code_language,
    normalize_language,
)
from src.utils import ConfigError, ParseError, ParserUnavailableError


@dataclass
class FakeNode:
    start_byte: int
    end_byte: int
    children: List["FakeNode"] = field(default_factory=list)


@dataclass
class FakeTree:
    root_node: FakeNode


class FakeParser:
    def __init__(self, build_tree):
        self.build_tree = build_tree

    def parse(self, source: bytes):
        return self.build_tree(source)


def registry_for(parser) -> ParserRegistry:
    return ParserRegistry(factory=lambda lang: parser)


def line_tree(source: bytes) -> FakeTree:
    """Root spanning the whole source with one child node per line."""
    children = []
    offset = 0
    for line in source.split(b"\n"):
        if line:
            children.append(FakeNode(offset, offset + len(line)))
        offset += len(line) + 1
    return FakeTree(FakeNode(0, len(source), children))


class TestMerge:
    def test_merge_respects_budget_with_separator(self):
        chunker = CodeChunker("python", chunk_size=100, registry=registry_for(None))
        leaves = [CodeChunk("a" * 40, 40), CodeChunk("b" * 40, 40), CodeChunk("c" * 40, 40)]

        merged = chunker.merge(leaves)

        assert [c.size_estimate for c in merged] == [81, 40]
        assert merged[0].text == "a" * 40 + "\n" + "b" * 40
        assert merged[1].text == "c" * 40

    def test_merge_skips_blank_leaves(self):
        chunker = CodeChunker("python", chunk_size=100, registry=registry_for(None))
        merged = chunker.merge([CodeChunk("  ", 2), CodeChunk("x", 1), CodeChunk("\n", 1), CodeChunk("y", 1)])
        assert [c.text for c in merged] == ["x\ny"]

    def test_oversized_leaf_stays_whole(self):
        chunker = CodeChunker("python", chunk_size=10, registry=registry_for(None))
        merged = chunker.merge([CodeChunk("z" * 30, 30), CodeChunk("w", 1)])
        assert [c.size_estimate for c in merged] == [30, 1]


class TestSplit:
    def test_small_source_is_a_single_chunk(self):
        chunker = CodeChunker("python", chunk_size=100, registry=registry_for(FakeParser(line_tree)))
        assert [c.text for c in chunker.chunk("x = 1\ny = 2")] == ["x = 1\ny = 2"]

    def test_large_root_is_split_into_children_and_nothing_is_lost(self):
        lines = [f"statement_{i} = {i}" for i in range(20)]
        source = "\n".join(lines)
        chunker = CodeChunker("python", chunk_size=50, registry=registry_for(FakeParser(line_tree)))

        chunks = chunker.chunk(source)

        assert len(chunks) > 1
        assert all(c.size_estimate <= 50 for c in chunks)
        assert "\n".join(c.text for c in chunks).split("\n") == lines

    def test_childless_oversized_node_is_kept(self):
        source = "x" * 80
        tree = FakeTree(FakeNode(0, 80))
        chunker = CodeChunker("python", chunk_size=10, registry=registry_for(FakeParser(lambda s: tree)))

        assert [c.text for c in chunker.chunk(source)] == [source]

    def test_node_whose_children_yield_nothing_is_kept_whole(self):
        source = b"abcdefghij  "
        # The only child covers whitespace, so the parent must be emitted itself.
        tree = FakeTree(FakeNode(0, len(source), [FakeNode(10, 12)]))
        chunker = CodeChunker("python", chunk_size=5, registry=registry_for(FakeParser(lambda s: tree)))

        assert [c.text for c in chunker.chunk(source.decode())] == ["abcdefghij  "]

    def test_deep_nesting_does_not_recurse(self):
        depth = 5000
        source = "x" * (depth + 1)
        node = FakeNode(depth, depth + 1)
        for start in range(depth - 1, -1, -1):
            node = FakeNode(start, depth + 1, [node])
        chunker = CodeChunker("python", chunk_size=1, registry=registry_for(FakeParser(lambda s: FakeTree(node))))

        assert [c.text for c in chunker.chunk(source)] == ["x"]

    def test_custom_size_estimator(self):
        source = "aaaa\nbbbb\ncccc"
        chunker = CodeChunker(
            "python", chunk_size=2, size_estimator=lambda text: len(text.split()),
            registry=registry_for(FakeParser(line_tree)),
        )
        assert [c.text for c in chunker.chunk(source)] == ["aaaa", "bbbb", "cccc"]

    def test_blank_input(self):
        chunker = CodeChunker("python", registry=registry_for(FakeParser(line_tree)))
        assert chunker.chunk("   \n") == []

    def test_parser_returning_no_tree_raises_parse_error(self):
        chunker = CodeChunker("python", registry=registry_for(FakeParser(lambda s: None)))
        with pytest.raises(ParseError):
            chunker.chunk("x = 1")

    def test_invalid_chunk_size(self):
        with pytest.raises(ConfigError):
            CodeChunker("python", chunk_size=0)


class TestParserRegistry:
    def test_language_keys_are_normalized(self):
        calls = []
        registry = ParserRegistry(factory=lambda lang: calls.append(lang) or object())

        first = registry.get("Embedded-Template")
        second = registry.get("embedded_template")

        assert first is second
        assert calls == ["embedded_template"]
        assert "EMBEDDED-TEMPLATE" in registry

    def test_concurrent_requests_build_one_parser(self):
        calls = []

        def slow_factory(lang):
            calls.append(lang)
            time.sleep(0.05)
            return object()

        registry = ParserRegistry(factory=slow_factory)
        results = []
        threads = [threading.Thread(target=lambda: results.append(registry.get("python"))) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert calls == ["python"]
        assert len(results) == 8
        assert all(result is results[0] for result in results)

    def test_failed_construction_is_not_cached(self):
        attempts = []

        def flaky_factory(lang):
            attempts.append(lang)
            if len(attempts) == 1:
                raise LookupError(f"unknown language {lang}")
            return "parser"

        registry = ParserRegistry(factory=flaky_factory)

        with pytest.raises(ParserUnavailableError):
            registry.get("python")
        assert "python" not in registry
        assert registry.get("python") == "parser"
        assert len(attempts) == 2

    def test_clear(self):
        registry = ParserRegistry(factory=lambda lang: object())
        registry.get("go")
        registry.clear()
        assert "go" not in registry


class TestLanguageDetection:
    @pytest.mark.parametrize("path,expected", [
        ("src/app.ts", "typescript"),
        ("lib/Main.JAVA", "java"),
        ("main.py", "python"),
        ("README.md", "markdown"),
        ("Makefile", None),
        ("data.bin", None),
    ])
    def test_detect_code_language(self, path, expected):
        assert detect_code_language(path) == expected

    def test_normalize_language(self):
        assert normalize_language(" Embedded-Template ") == "embedded_template"

    def test_normalized_names_match_detected_languages(self):
        assert normalize_language(" CSharp ") == detect_code_language("Program.cs") == "csharp"


class TestChunkCode:
    def test_unknown_extension_uses_fixed_size_windows(self):
        chunks = chunk_code("x" * 25, "prod", "1", "file:///repo/Makefile", "Makefile", chunk_size=10)

        assert [c.content for c in chunks] == [
            "[File: Makefile]\n" + "x" * 10,
            "[File: Makefile]\n" + "x" * 10,
            "[File: Makefile]\n" + "x" * 5,
        ]
        assert all(c.section == "Makefile" and c.heading_hierarchy == ["Makefile"] for c in chunks)
        assert [c.chunk_index for c in chunks] == [0, 1, 2]

    def test_missing_parser_falls_back_to_fixed_size(self, mocker):
        def no_parser(lang):
            raise LookupError(lang)

        mocker.patch('src.crawler.code_chunker.parser_registry', ParserRegistry(factory=no_parser))

        chunks = chunk_code("a" * 12, "prod", "1", "file:///repo/x.py", "x.py", chunk_size=6)

        assert [c.content for c in chunks] == ["[File: x.py]\naaaaaa", "[File: x.py]\naaaaaa"]

    def test_markdown_files_use_markdown_chunker(self):
        chunks = chunk_code("# Title\nbody text", "prod", "1", "file:///repo/README.md", "docs\\README.md")

        assert [c.content for c in chunks] == ["[File: docs/README.md]\n[Topic: Title]\nbody text"]

    def test_code_is_chunked_along_syntax_nodes(self, mocker):
        mocker.patch('src.crawler.code_chunker.parser_registry', registry_for(FakeParser(line_tree)))
        source = "first_line = 1\nsecond_line = 2"

        chunks = chunk_code(source, "prod", "1", "file:///repo/a.py", "a.py", chunk_size=16)

        assert [c.content for c in chunks] == ["[File: a.py]\nfirst_line = 1", "[File: a.py]\nsecond_line = 2"]
        assert all(c.total_chunks == 2 for c in chunks)


class TestTreeSitterPython:
    def test_functions_become_chunk_boundaries(self):
        source = "def a():\n    return 1\n\n\ndef b():\n    return 2\n\n\ndef c():\n    return 3\n"
        chunker = CodeChunker("python", chunk_size=60, registry=ParserRegistry())

        chunks = chunker.chunk(source)

        assert [c.text for c in chunks] == [
            "def a():\n    return 1\ndef b():\n    return 2",
            "def c():\n    return 3",
        ]
