"""Configuration management for keyrelay."""

import os
from dataclasses import dataclass
from typing import List
from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    api_keys: List[str]
    port: int = 8000
    host: str = "0.0.0.0"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.5-flash"
    log_level: str = "INFO"
    store_path: str = ""
    unhealthy_threshold: int = 3
    session_timeout_minutes: int = 30
    max_sessions: int = 50
    max_history_messages: int = 10
    cleanup_interval_seconds: int = 300
    coordinator_url: str = ""
    cache_ttl_seconds: float = 5.0

    def __post_init__(self):
        if not self.api_keys and not self.coordinator_url:
            raise ValueError(
                "GEMINI_API_KEYS environment variable must be set and non-empty "
                "unless COORDINATOR_URL points at a remote coordinator"
            )
        if self.unhealthy_threshold <= 0:
            raise ValueError("UNHEALTHY_THRESHOLD must be a positive integer")


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Args:
        use_dotenv: Read a ``.env`` file into the environment first.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    if use_dotenv:
        load_dotenv()

    api_keys_raw = os.getenv("GEMINI_API_KEYS", "")
    api_keys = [key.strip() for key in api_keys_raw.split(",") if key.strip()]

    return Config(
        api_keys=api_keys,
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        gemini_base_url=os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
        ),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        store_path=os.getenv("STORE_PATH", ""),
        unhealthy_threshold=int(os.getenv("UNHEALTHY_THRESHOLD", "3")),
        session_timeout_minutes=int(os.getenv("SESSION_TIMEOUT_MINUTES", "30")),
        max_sessions=int(os.getenv("MAX_SESSIONS", "50")),
        max_history_messages=int(os.getenv("MAX_HISTORY_MESSAGES", "10")),
        cleanup_interval_seconds=int(os.getenv("CLEANUP_INTERVAL_SECONDS", "300")),
        coordinator_url=os.getenv("COORDINATOR_URL", ""),
        cache_ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "5")),
    )
