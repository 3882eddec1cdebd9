from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Settings:
    """Centralized application settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Optional database configuration for the SQL-backed chart store.
    database_url: Optional[str] = os.getenv("DATABASE_URL")
    use_sql_repos: bool = os.getenv("USE_SQL_REPOS", "false").lower() == "true"

    # Document renderer selection: "demo" (default) or "http".
    renderer_backend: str = os.getenv("RENDERER_BACKEND", "demo")
    # Endpoint of the render service when RENDERER_BACKEND=http. The service
    # receives a JSON snapshot and answers with {"document_url": "..."}.
    renderer_url: Optional[str] = os.getenv("RENDERER_URL")
    renderer_api_key: Optional[str] = os.getenv("RENDERER_API_KEY")
    # Upper bound for the synchronous render call made while closing a chart.
    renderer_timeout_ms: int = int(os.getenv("RENDERER_TIMEOUT_MS", "10000"))
    # Threads available for renders; a render that overruns its timeout keeps
    # its thread until the renderer returns.
    render_max_workers: int = int(os.getenv("RENDER_MAX_WORKERS", "4"))
    # Re-render the document after each addendum so the stored document
    # always reflects the amended chart.
    render_on_addendum: bool = os.getenv("RENDER_ON_ADDENDUM", "true").lower() == "true"

    # Charts left unsigned longer than this after the visit are overdue.
    overdue_threshold_hours: int = int(os.getenv("OVERDUE_THRESHOLD_HOURS", "24"))

    # Thread pool size used by bulk sign/close.
    bulk_max_workers: int = int(os.getenv("BULK_MAX_WORKERS", "4"))

    # Minimum lengths for free-text guards.
    addendum_min_length: int = int(os.getenv("ADDENDUM_MIN_LENGTH", "3"))
    reason_min_length: int = int(os.getenv("REASON_MIN_LENGTH", "5"))

    # Basic API authentication configuration.
    # When ENABLE_API_AUTH=true, protected endpoints require a valid API key.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    # Comma-separated list of allowed API keys when auth is enabled.
    api_keys: Optional[str] = os.getenv("API_KEYS")

    # CORS configuration: comma-separated origins (e.g. "https://app.example.com,https://admin.example.com").
    # Default is "*" (allow all) which is acceptable for local development but
    # should be tightened in production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
