"""Base configuration for the mini-search server and CLI."""

from typing import Optional

from .engine.config import SearchConfig


class ServerConfig:
    """Base configuration class for mini-search.

    Projects can subclass this and override as needed.
    """

    # Server configuration
    DEFAULT_HOST: str = "127.0.0.1"  # Default to localhost for security (use 0.0.0.0 for all interfaces)
    DEFAULT_PORT: int = 8080
    SERVICE_NAME: str = "mini-search"

    # Index and model locations
    INDEX_DIR: str = "./mini-search-index"
    MODEL_DIR: str = "./model"

    # Crawl defaults
    MAX_PAGES: int = 10_000
    CRAWL_WORKERS: int = 8
    RATE_LIMIT_DELAY: float = 0.1
    REQUEST_TIMEOUT: float = 10.0

    # Embedding settings
    PRECISION: str = "fp32"
    DEVICE: Optional[str] = None  # None = auto-detect
    MAX_SEQ_LENGTH: int = 256
    EMBED_BATCH_SIZE: int = 32

    # Search settings
    SEARCH_TOP_K: int = 10
    MAX_TOP_K: int = 100
    LEXICAL_WEIGHT: float = 0.3
    SEMANTIC_WEIGHT: float = 0.7

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty = log to stderr only
    LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB default
    LOG_BACKUP_COUNT: int = 5  # Keep 5 backup files

    SHOW_PROGRESS: bool = True

    @classmethod
    def from_env(cls, env_prefix: str = ""):
        """Create config from environment variables with optional prefix.

        Args:
            env_prefix: Prefix for environment variables (e.g., "MINI_SEARCH_")

        Returns:
            ServerConfig instance populated from environment
        """
        import os

        from dotenv import load_dotenv

        load_dotenv()

        config = cls()

        # Helper to get env var with prefix
        def get_env(name: str, default):
            # Try with prefix first, then without
            prefixed = os.getenv(f"{env_prefix}{name}", None)
            if prefixed is not None:
                return prefixed
            return os.getenv(name, default)

        # Load configuration from environment
        config.DEFAULT_HOST = get_env("HOST", cls.DEFAULT_HOST)
        config.DEFAULT_PORT = int(get_env("PORT", str(cls.DEFAULT_PORT)))
        config.INDEX_DIR = get_env("INDEX_DIR", cls.INDEX_DIR)
        config.MODEL_DIR = get_env("MODEL_DIR", cls.MODEL_DIR)
        config.MAX_PAGES = int(get_env("MAX_PAGES", str(cls.MAX_PAGES)))
        config.CRAWL_WORKERS = int(get_env("CRAWL_WORKERS", str(cls.CRAWL_WORKERS)))
        config.RATE_LIMIT_DELAY = float(get_env("RATE_LIMIT_DELAY", str(cls.RATE_LIMIT_DELAY)))
        config.REQUEST_TIMEOUT = float(get_env("REQUEST_TIMEOUT", str(cls.REQUEST_TIMEOUT)))
        config.PRECISION = get_env("PRECISION", cls.PRECISION)
        config.DEVICE = get_env("DEVICE", cls.DEVICE) or None
        config.MAX_SEQ_LENGTH = int(get_env("MAX_SEQ_LENGTH", str(cls.MAX_SEQ_LENGTH)))
        config.EMBED_BATCH_SIZE = int(get_env("EMBED_BATCH_SIZE", str(cls.EMBED_BATCH_SIZE)))
        config.SEARCH_TOP_K = int(get_env("SEARCH_TOP_K", str(cls.SEARCH_TOP_K)))
        config.MAX_TOP_K = int(get_env("MAX_TOP_K", str(cls.MAX_TOP_K)))
        config.LEXICAL_WEIGHT = float(get_env("LEXICAL_WEIGHT", str(cls.LEXICAL_WEIGHT)))
        config.SEMANTIC_WEIGHT = float(get_env("SEMANTIC_WEIGHT", str(cls.SEMANTIC_WEIGHT)))
        config.LOG_LEVEL = get_env("LOG_LEVEL", cls.LOG_LEVEL).upper()
        config.LOG_FILE = get_env("LOG_FILE", cls.LOG_FILE)
        config.LOG_MAX_BYTES = int(get_env("LOG_MAX_BYTES", str(cls.LOG_MAX_BYTES)))
        config.LOG_BACKUP_COUNT = int(get_env("LOG_BACKUP_COUNT", str(cls.LOG_BACKUP_COUNT)))
        config.SHOW_PROGRESS = get_env("SHOW_PROGRESS", "").lower() not in ("false", "0", "no")

        return config

    def search_config(self, **overrides) -> SearchConfig:
        """Build the engine configuration, with keyword overrides applied last.

        Overrides set to None are ignored so CLI options can be passed through as-is.
        """
        settings = dict(
            index_dir=self.INDEX_DIR,
            model_dir=self.MODEL_DIR,
            max_pages=self.MAX_PAGES,
            max_workers=self.CRAWL_WORKERS,
            rate_limit_delay=self.RATE_LIMIT_DELAY,
            request_timeout=self.REQUEST_TIMEOUT,
            precision=self.PRECISION,
            device=self.DEVICE,
            max_seq_length=self.MAX_SEQ_LENGTH,
            embed_batch_size=self.EMBED_BATCH_SIZE,
            search_top_k=self.SEARCH_TOP_K,
            lexical_weight=self.LEXICAL_WEIGHT,
            semantic_weight=self.SEMANTIC_WEIGHT,
            show_progress=self.SHOW_PROGRESS,
        )
        settings.update({key: value for key, value in overrides.items() if value is not None})
        return SearchConfig(**settings)
