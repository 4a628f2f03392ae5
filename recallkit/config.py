"""YAML configuration loading with Pydantic validation."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    """Return the default data directory: ~/.recallkit"""
    return Path.home() / ".recallkit"


class ModelEndpoint(BaseModel):
    """Configuration for a single completion endpoint."""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key: str = "sk-placeholder"


class LLMConfig(BaseModel):
    enabled: bool = False
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key: str = "sk-placeholder"
    timeout: float = 30.0          # seconds, per provider call
    max_tokens: int = 2048
    temperature: float = 0.4
    max_retries: int = 3
    retry_base_delay: float = 1.0   # seconds
    retry_max_delay: float = 60.0   # seconds
    conversational_mode: bool = False

    # Extra endpoints used in round-robin order after the top-level one
    endpoints: List[ModelEndpoint] = Field(default_factory=list)

    def all_endpoints(self) -> List[ModelEndpoint]:
        """Return the primary endpoint followed by any configured extras."""
        primary = ModelEndpoint(base_url=self.base_url, model=self.model, api_key=self.api_key)
        return [primary, *self.endpoints]


class DatabaseConfig(BaseModel):
    path: str = str(_default_data_dir() / "recallkit.db")


class EmbeddingConfig(BaseModel):
    # "hashing" needs no model; "sentence-transformers" needs the embeddings extra
    provider: Literal["hashing", "sentence-transformers"] = "hashing"
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    device: Optional[str] = None


class IngestConfig(BaseModel):
    extensions: List[str] = Field(
        default_factory=lambda: [
            "txt", "md", "ts", "tsx", "js", "jsx", "py", "json", "yaml", "yml",
            "css", "html", "pdf", "docx", "xlsx",
        ]
    )
    exclude_patterns: List[str] = Field(
        default_factory=lambda: [
            "node_modules", ".git", "dist", "build", "__pycache__", ".venv",
            ".next", "coverage", ".cache",
        ]
    )
    min_size_bytes: int = 16
    parse_size_limit_bytes: int = 2 * 1024 * 1024
    priority_count: int = 10
    priority_batch_size: int = 5
    priority_delay: float = 0.5      # seconds between priority batches
    background_batch_size: int = 3
    background_delay: float = 2.0    # seconds between background batches
    section_max_chars: int = 2000
    sub_batch_size: int = 4
    max_attempts: int = 3
    fallback_max_chunks: int = 10
    fallback_confidence: float = 0.8
    extraction_floor: float = 0.7


class RetrievalConfig(BaseModel):
    context_limit: int = 6
    search_limit: int = 8
    disambiguation_margin: float = 0.05
    fact_boost: float = 1.5


class WorkspaceConfig(BaseModel):
    default_id: str = "local"


class LogConfig(BaseModel):
    dir: str = str(_default_data_dir() / "logs")


class AppConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    log: LogConfig = Field(default_factory=LogConfig)


_config: AppConfig | None = None


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file. Falls back to defaults if file not found."""
    global _config
    if _config is not None:
        return _config

    paths_to_try = []
    if config_path:
        paths_to_try.append(Path(config_path))
    paths_to_try.extend([
        Path("config.yaml"),
        Path("config.yml"),
        _default_data_dir() / "config.yaml",
        _default_data_dir() / "config.yml",
    ])

    for p in paths_to_try:
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}
            _config = AppConfig(**data)
            return _config

    _config = AppConfig()
    return _config


def get_config() -> AppConfig:
    """Get the current config, loading defaults if needed."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Reset config (for testing)."""
    global _config
    _config = None
