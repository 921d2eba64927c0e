"""Source and database configuration models, loaded from YAML and validated at the boundary."""
import logging
from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ..utils import ConfigError, settings

logger = logging.getLogger(__name__)


# --- Database backends ---

class PostgresDatabaseConfig(BaseModel):
    type: Literal['postgres'] = 'postgres'
    url: Optional[str] = None  # Falls back to settings.POSTGRES_URL


class SqliteDatabaseConfig(BaseModel):
    type: Literal['sqlite'] = 'sqlite'
    db_path: str = './docsync.db'


DatabaseConfig = Annotated[
    Union[PostgresDatabaseConfig, SqliteDatabaseConfig],
    Field(discriminator='type'),
]


# --- Sources ---

class BaseSourceConfig(BaseModel):
    product_name: str
    version: str = 'latest'
    max_size: int = Field(default_factory=lambda: settings.MAX_CONTENT_SIZE)
    chunk_size: int = Field(default_factory=lambda: settings.CHUNK_SIZE)
    chunk_overlap: float = Field(default_factory=lambda: settings.CHUNK_OVERLAP)
    database_config: DatabaseConfig = Field(default_factory=SqliteDatabaseConfig)

    @field_validator('max_size', 'chunk_size')
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value

    @field_validator('chunk_overlap')
    @classmethod
    def check_overlap(cls, value: float) -> float:
        if not 0 <= value < 1:
            raise ValueError("must be a fraction in [0, 1)")
        return value


class WebsiteSourceConfig(BaseSourceConfig):
    type: Literal['website'] = 'website'
    url: str
    sitemap_url: Optional[str] = None


class DirectorySourceConfig(BaseSourceConfig):
    path: str
    include_extensions: List[str] = Field(default_factory=lambda: ['.md', '.txt', '.html', '.htm', '.pdf', '.docx'])
    exclude_extensions: List[str] = Field(default_factory=list)
    recursive: bool = True
    encoding: str = 'utf-8'
    url_rewrite_prefix: Optional[str] = None

    @field_validator('include_extensions', 'exclude_extensions')
    @classmethod
    def lowercase_extensions(cls, value: List[str]) -> List[str]:
        return [ext.lower() if ext.startswith('.') else f".{ext.lower()}" for ext in value]


class LocalDirectorySourceConfig(DirectorySourceConfig):
    type: Literal['local_directory'] = 'local_directory'


DEFAULT_CODE_EXTENSIONS = [
    '.ts', '.tsx', '.js', '.jsx', '.mjs', '.cjs',
    '.py', '.go', '.rs', '.java', '.kt', '.kts', '.swift',
    '.c', '.cc', '.cpp', '.h', '.hpp', '.cs',
    '.rb', '.php', '.scala', '.sql', '.sh', '.bash', '.zsh',
    '.html', '.css', '.scss', '.sass', '.less',
    '.json', '.yaml', '.yml', '.md',
]


class CodeSourceConfig(DirectorySourceConfig):
    type: Literal['code'] = 'code'
    include_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_CODE_EXTENSIONS))
    chunk_size: int = Field(default_factory=lambda: settings.CODE_CHUNK_SIZE)
    language: Optional[str] = None  # Overrides extension-based detection for every file


class GithubSourceConfig(BaseSourceConfig):
    """Accepted by the configuration; no ingestion behaviour is defined for it."""
    type: Literal['github'] = 'github'
    repo: str
    start_date: Optional[str] = None


SourceConfig = Annotated[
    Union[WebsiteSourceConfig, LocalDirectorySourceConfig, CodeSourceConfig, GithubSourceConfig],
    Field(discriminator='type'),
]


class SyncConfig(BaseModel):
    sources: List[SourceConfig]

    @model_validator(mode='after')
    def check_not_empty(self) -> 'SyncConfig':
        if not self.sources:
            raise ValueError("at least one source must be configured")
        return self


def parse_sync_config(data) -> SyncConfig:
    """Validate an already-loaded mapping. Any validation problem becomes a ConfigError."""
    try:
        return SyncConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid sync configuration: {e}") from e


def load_sync_config(config_path: Union[str, Path]) -> SyncConfig:
    """
    Load and validate the YAML sync configuration.

    Args:
        config_path: Path to a YAML file with a top-level ``sources`` list.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or fails validation.
    """
    path = Path(config_path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open('r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse YAML config {path}: {e}") from e

    config = parse_sync_config(data or {})
    logger.info(f"Loaded {len(config.sources)} source(s) from {path}")
    return config
