"""
Tests for the chunk metadata builders in src.crawler.metadata_extractor.
"""
import dataclasses

from src.crawler.metadata_extractor import build_chunk_metadata, extract_section_info
from src.utils import DocumentChunk


def make_chunk(content, url, hierarchy):
    return DocumentChunk(
        content=content,
        product_name="example",
        version="1.0",
        heading_hierarchy=hierarchy,
        section=hierarchy[-1] if hierarchy else "Introduction",
        url=url,
    )


class TestExtractSectionInfo:
    def test_inline_headers_and_counts(self):
        info = extract_section_info("## Setup\nRun the installer.\n### Linux\nUse apt.")

        assert info == {
            "headers": "## Setup; ### Linux",
            "char_count": 46,
            "word_count": 9,
        }

    def test_topic_line_is_not_a_header(self):
        assert extract_section_info("[Topic: Guide > Setup]\nsteps")["headers"] == ""


class TestBuildChunkMetadata:
    def test_persisted_keys(self):
        chunk = make_chunk("[Topic: Guide > Setup]\nsteps", "https://docs.example.com/guide", ["Guide", "", "Setup"])
        chunk.chunk_index = 2
        chunk.total_chunks = 5

        meta = build_chunk_metadata(chunk, "website")

        assert set(meta) == {
            "headers", "char_count", "word_count", "breadcrumb", "chunk_index",
            "total_chunks", "source", "source_kind", "sync_time",
        }
        assert meta["breadcrumb"] == "Guide > Setup"
        assert (meta["chunk_index"], meta["total_chunks"]) == (2, 5)
        assert meta["source"] == "docs.example.com"
        assert meta["source_kind"] == "website"

    def test_local_files_have_local_source(self):
        chunk = make_chunk("notes", "file:///handbook/leave.md", [])

        meta = build_chunk_metadata(chunk, "local_directory")

        assert meta["source"] == "local"
        assert meta["breadcrumb"] == ""

    def test_chunk_carries_no_free_form_metadata(self):
        names = {f.name for f in dataclasses.fields(DocumentChunk)}

        assert names == {
            "content", "product_name", "version", "heading_hierarchy", "section", "url",
            "chunk_id", "content_hash", "chunk_index", "total_chunks",
        }
