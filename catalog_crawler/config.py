"""Application configuration using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Target site
    base_url: str = "http://design-tuning.com"

    # Database
    database_url: str = "sqlite+aiosqlite:///./catalog.db"

    # App Settings
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"
    app_host: str = "0.0.0.0"
    app_port: int = 8001

    # ==========================================================================
    # Crawl Concurrency
    # ==========================================================================
    parallel_downloads: int = 1024  # In-flight bound for taxonomy and listing stages
    product_parallel_downloads: int = 2048  # In-flight bound inside a Products chunk
    product_chunk_size: int = 50  # Products are fetched chunk by chunk
    max_list_pages: int = 500  # Pagination ceiling per listing node

    # ==========================================================================
    # HTTP Client Settings
    # ==========================================================================
    fetch_max_attempts: int = 3
    fetch_backoff_base: float = 1.0  # Seconds, doubled on every attempt
    connection_timeout: float = 10.0
    read_timeout: float = 30.0
    http_max_connections: int = 100
    http_keepalive_connections: int = 20
    requests_per_second: float = 30.0  # 0 disables the global rate limit
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    )

    # Anti-bot interstitial markers (substring match against the raw body)
    challenge_markers: list[str] = [
        "<title>Browser check, please wait ...</title>",
    ]

    # ==========================================================================
    # Checkpoints
    # ==========================================================================
    models_checkpoint_path: str = "models.yml"
    links_checkpoint_path: str = "links.yml"
    checkpoint_max_age_hours: float = 24.0  # Older checkpoints are ignored

    # ==========================================================================
    # Work Cycle
    # ==========================================================================
    staleness_hours: float = 24.0  # Stored products older than this get re-crawled
    stage_retry_delay_seconds: float = 5.0
    cycle_error_delay_seconds: float = 30.0
    start_paused: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
