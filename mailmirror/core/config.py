"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # IMAP Configuration (defaults for the CLI and MCP server)
    # ============================================================
    imap_host: Optional[str] = Field(None, description="IMAP server hostname")
    imap_port: int = Field(993, description="IMAP server port")
    imap_username: Optional[str] = Field(None, description="IMAP username/email")
    imap_password: Optional[str] = Field(None, description="IMAP password")
    imap_use_ssl: bool = Field(True, description="Use SSL for IMAP")
    imap_timeout: int = Field(30, description="IMAP socket timeout in seconds")
    imap_account_name: Optional[str] = Field(None, description="Display name for the account (defaults to username)")

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("", description="PostgreSQL connection URL (pgvector extension required)")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")

    # ============================================================
    # Attachment Storage
    # ============================================================
    blob_store_dir: str = Field(
        "~/.mailmirror/blobs",
        description="Directory for content-addressed attachment blobs"
    )

    # ============================================================
    # Sync Configuration
    # ============================================================
    page_size: int = Field(40, description="Messages per folder page")
    backfill_interval_seconds: float = Field(30.0, description="Delay between backfill cycles")

    # ============================================================
    # Embedding Configuration
    # ============================================================
    embedding_model_id: str = Field(
        "onnx-community/Qwen3-Embedding-0.6B-ONNX",
        description="Hugging Face repo of the ONNX embedding model"
    )
    embedding_model_file: str = Field("onnx/model_fp16.onnx", description="ONNX graph inside the model repo")
    embedding_cache_dir: Optional[str] = Field(None, description="Hugging Face cache dir (default: HF_HOME)")
    embedding_max_seq_len: int = Field(1024, description="Max tokens per sequence")
    embedding_token_budget: int = Field(16 * 1024, description="Upper bound on batch_size * seq_len")
    embedding_batch_cap: int = Field(64, description="Messages embedded per loop iteration")
    embedding_idle_interval_seconds: float = Field(60.0, description="Delay when nothing needs embedding")
    embedding_active_interval_seconds: float = Field(1.0, description="Delay between non-empty batches")

    # ============================================================
    # Search Configuration
    # ============================================================
    max_search_results: int = Field(50, description="Rows per search signal and per merged page")

    # ============================================================
    # Logging Configuration
    # ============================================================
    log_level: str = Field("INFO", description="Logging level (DEBUG/INFO/WARNING/ERROR)")
    log_format: str = Field(
        "%(asctime)s - %(levelname)s - %(message)s",
        description="Log format string"
    )


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
