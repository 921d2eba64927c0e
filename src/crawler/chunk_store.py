"""SQLModel-backed persistence for chunks, their embeddings and per-URL sync metadata."""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, delete, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Column, Field, Session, SQLModel, create_engine, select

from ..utils import ConfigError, DocumentChunk, StoreError, calculate_cosine_similarity, settings
from .sources import DatabaseConfig, PostgresDatabaseConfig, SqliteDatabaseConfig

logger = logging.getLogger(__name__)


class DocChunk(SQLModel, table=True):
    __tablename__ = "docchunk"
    chunk_id: str = Field(primary_key=True)
    url: str = Field(index=True)
    content: str
    content_hash: str
    product_name: str = Field(index=True)
    version: str
    heading_hierarchy: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    section: str
    chunk_index: int = 0
    chunk_metadata: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON().with_variant(JSONB(), "postgresql")),
    )
    embedding: List[float] = Field(
        sa_column=Column(Vector(settings.OLLAMA_EMBEDDING_DIM).with_variant(JSON(), "sqlite"))
    )


class SyncMetadata(SQLModel, table=True):
    __tablename__ = "syncmetadata"
    key: str = Field(primary_key=True)
    value: str


class ChunkStore:
    """
    The store contract used by the sync coordinator. Every database failure
    surfaces as a StoreError.
    """

    def __init__(self, engine):
        self.engine = engine

    def create_tables(self):
        try:
            if self.engine.dialect.name == "postgresql":
                with self.engine.begin() as conn:
                    conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            SQLModel.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not create tables: {e}") from e

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        with Session(self.engine) as session:
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StoreError(f"Database operation failed: {e}") from e

    def upsert(self, chunk: DocumentChunk, embedding: List[float], metadata: Optional[Dict[str, Any]] = None):
        row = DocChunk(
            chunk_id=chunk.chunk_id,
            url=chunk.url,
            content=chunk.content,
            content_hash=chunk.content_hash,
            product_name=chunk.product_name,
            version=chunk.version,
            heading_hierarchy=list(chunk.heading_hierarchy),
            section=chunk.section,
            chunk_index=chunk.chunk_index,
            chunk_metadata=metadata or {},
            embedding=list(embedding),
        )
        with self.session() as session:
            session.merge(row)

    def delete(self, url: Optional[str] = None, chunk_id: Optional[str] = None) -> int:
        """Delete rows by URL, by chunk id, or both. Returns the number of rows removed."""
        if url is None and chunk_id is None:
            raise ValueError("delete() needs a url or a chunk_id")
        statement = delete(DocChunk)
        if url is not None:
            statement = statement.where(DocChunk.url == url)
        if chunk_id is not None:
            statement = statement.where(DocChunk.chunk_id == chunk_id)
        with self.session() as session:
            result = session.connection().execute(statement)
            return result.rowcount or 0

    def list_stored_urls(self, prefix: str) -> List[str]:
        statement = select(DocChunk.url).where(DocChunk.url.startswith(prefix, autoescape=True)).distinct()
        with self.session() as session:
            return sorted(session.exec(statement).all())

    def get_stored_hash(self, chunk_id: str) -> Optional[str]:
        with self.session() as session:
            return session.exec(select(DocChunk.content_hash).where(DocChunk.chunk_id == chunk_id)).first()

    def count_all(self) -> int:
        with self.session() as session:
            return session.exec(select(func.count()).select_from(DocChunk)).one()

    def list_chunk_ids(self, url: str) -> List[str]:
        with self.session() as session:
            return list(session.exec(select(DocChunk.chunk_id).where(DocChunk.url == url)).all())

    def get_metadata(self, key: str) -> Optional[str]:
        with self.session() as session:
            row = session.get(SyncMetadata, key)
            return row.value if row else None

    def set_metadata(self, key: str, value: str):
        with self.session() as session:
            session.merge(SyncMetadata(key=key, value=value))

    def delete_metadata(self, key: str):
        with self.session() as session:
            session.connection().execute(delete(SyncMetadata).where(SyncMetadata.key == key))

    def search(
        self,
        query_embedding: List[float],
        limit: int = 5,
        product_name: Optional[str] = None,
        version: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Nearest chunks by cosine similarity. Postgres ranks in the database with
        pgvector; other backends score every candidate row in Python.
        """
        statement = select(DocChunk)
        if product_name:
            statement = statement.where(DocChunk.product_name == product_name)
        if version:
            statement = statement.where(DocChunk.version == version)

        with self.session() as session:
            if self.engine.dialect.name == "postgresql":
                statement = statement.order_by(DocChunk.embedding.cosine_distance(query_embedding)).limit(limit)
            rows = session.exec(statement).all()
            scored = []
            for row in rows:
                if row.embedding is None or len(row.embedding) == 0:
                    logger.warning(f"Skipping chunk {row.chunk_id} with missing embedding.")
                    continue
                similarity = calculate_cosine_similarity(query_embedding, list(row.embedding))
                scored.append({
                    "url": row.url,
                    "content": row.content,
                    "product_name": row.product_name,
                    "version": row.version,
                    "section": row.section,
                    "heading_hierarchy": row.heading_hierarchy,
                    "metadata": row.chunk_metadata,
                    "similarity": similarity,
                })

        scored.sort(key=lambda item: item["similarity"], reverse=True)
        return scored[:limit]


def create_store(database_config: DatabaseConfig) -> ChunkStore:
    """Build a store for the configured backend and make sure its tables exist."""
    if isinstance(database_config, PostgresDatabaseConfig):
        url = database_config.url or str(settings.POSTGRES_URL)
        engine = create_engine(url, echo=False)
    elif isinstance(database_config, SqliteDatabaseConfig):
        if database_config.db_path == ":memory:":
            engine = create_engine(
                "sqlite://",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(f"sqlite:///{database_config.db_path}", echo=False)
    else:
        raise ConfigError(f"Unsupported database type: {getattr(database_config, 'type', database_config)!r}")

    logger.info(f"Opening {engine.dialect.name} chunk store")
    store = ChunkStore(engine)
    store.create_tables()
    return store


_stores: Dict[str, ChunkStore] = {}


def get_store(database_config: DatabaseConfig) -> ChunkStore:
    """Process-wide store per database, created on first use."""
    key = database_config.model_dump_json()
    store = _stores.get(key)
    if store is None:
        store = create_store(database_config)
        _stores[key] = store
    return store
