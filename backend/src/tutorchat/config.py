"""
TutorChat Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for TutorChat logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/tutorchat if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/tutorchat if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "tutorchat" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "tutorchat" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url_override: str = ""  # Full URL (e.g. sqlite:///./tutorchat.db)
    postgres_db: str = "tutorchat"
    postgres_user: str = "tutorchat"
    postgres_password: str = "tutorchat_dev_password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # LLM
    llm_provider: str = "openai"  # openai or anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    openai_base_url: str = ""
    chat_model: str = "gpt-4o-mini"
    chat_fast_model: str = ""  # Small-talk model (defaults to chat_model)
    chat_route_model: str = ""  # Router/planner model (defaults to chat_fast_model)
    chat_evidence_select_model: str = ""
    chat_evidence_answer_model: str = ""
    embedding_model: str = "text-embedding-3-small"
    llm_max_tokens: int = 2000
    llm_request_timeout_seconds: float = 180.0
    llm_max_retries: int = 4
    llm_backoff_cap_seconds: float = 10.0

    # Chat engine
    chat_context_route_timeout_seconds: float = 5.0
    chat_tool_max_calls: int = 1
    chat_max_message_chars: int = 20000
    chat_raptor_window: int = 20
    chat_raptor_branching: int = 8
    chat_index_chunk_chars: int = 2200
    chat_index_concurrency: int = 8
    chat_stream_db_flush_ms: int = 750
    chat_stream_db_flush_chars: int = 256
    chat_stream_notify_flush_ms: int = 150
    chat_stream_notify_flush_bytes: int = 512

    # SSE
    sse_buffer_size: int = 256
    sse_keepalive_seconds: float = 15.0

    # Redis event bus; required for standalone workers to reach API subscribers
    redis_url: str = ""
    sse_bus_channel: str = "tutorchat:sse"
    redis_socket_timeout_seconds: float = 5.0

    # Vector store
    vector_backend: str = "memory"  # memory or pinecone
    pinecone_api_key: str = ""
    pinecone_index_host: str = ""
    vector_query_timeout_seconds: float = 2.0

    # Graph mirror (Neo4j HTTP API)
    graph_mirror_enabled: bool = False
    neo4j_http_url: str = "http://localhost:7474"
    neo4j_database: str = "neo4j"
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""

    # Job worker
    worker_enabled: bool = True  # Run the job worker inside the API process
    worker_poll_interval: float = 1.0
    worker_lease_seconds: int = 300
    job_max_attempts: int = 5
    job_backoff_base_seconds: float = 2.0
    job_backoff_cap_seconds: float = 300.0

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = True
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5
    log_to_stdout: bool = True  # Log INFO/DEBUG to stdout
    log_to_stderr: bool = True  # Log WARNING/ERROR/CRITICAL to stderr

    # LLM Logging
    llm_logging_enabled: bool = False
    llm_log_requests: bool = True
    llm_log_responses: bool = True
    llm_log_tokens: bool = True

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())

    @property
    def fast_model(self) -> str:
        """Model used for small talk and lightweight calls."""
        return self.chat_fast_model or self.chat_model

    @property
    def route_model(self) -> str:
        """Model used for routing and context planning calls."""
        return self.chat_route_model or self.fast_model


# Global settings instance
settings = Settings()
