"""
Configuration management for the GGE Tracker fill service.

Loads configuration from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Config:
    """Application configuration."""

    # Environment
    environment: str = os.getenv("ENVIRONMENT", "development")

    # Supabase Configuration
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_KEY", "")
    supabase_service_key: Optional[str] = os.getenv("SUPABASE_SERVICE_KEY", None)

    # Target game server: SERVER_NAME labels logs/markers (e.g. FR1, DE1, E4K_FR1),
    # ID_SERVER selects the empire-api proxy route ("null" = default EmpireEx route)
    server_name: str = os.getenv("SERVER_NAME", os.getenv("LOG_SUFFIX", ""))
    api_server_id: str = os.getenv("ID_SERVER", "null")
    empire_api_host: str = os.getenv("EMPIRE_API_HOST", "http://empire-api:3000")
    empire_api_base_url: str = os.getenv("EMPIRE_API_BASE_URL", "")
    request_timeout: float = float(os.getenv("REQUEST_TIMEOUT", "30.0"))

    # Rate Limiting (remote has no documented limit; keep well under what it tolerates)
    max_requests_per_second: int = int(os.getenv("MAX_REQUESTS_PER_SECOND", "20"))
    min_request_interval: float = float(os.getenv("MIN_REQUEST_INTERVAL", "0.0"))
    # Page throttle: pause after every N requests
    pace_every_requests: int = int(os.getenv("PACE_EVERY_REQUESTS", "50"))
    pace_pause_seconds: float = float(os.getenv("PACE_PAUSE_SECONDS", "0.15"))

    # Retry Configuration (per call site presets scale from these)
    retry_delay_scale: float = float(os.getenv("RETRY_DELAY_SCALE", "1.0"))
    # Ceiling on any single retry wait, in seconds
    max_retry_delay: int = int(os.getenv("MAX_RETRY_DELAY", "60"))

    # Pass pacing
    step_pause_seconds: float = float(os.getenv("STEP_PAUSE_SECONDS", "3.0"))
    # Hard wall-clock ceiling for the whole process; exits abruptly when reached
    pass_timeout_seconds: int = int(os.getenv("PASS_TIMEOUT_SECONDS", "3300"))

    # Storage
    staging_chunk_size: int = int(os.getenv("STAGING_CHUNK_SIZE", "4000"))
    history_batch_size: int = int(os.getenv("HISTORY_BATCH_SIZE", "500"))
    snapshot_page_size: int = int(os.getenv("SNAPSHOT_PAGE_SIZE", "1000"))
    # Reconnect tiers (seconds) applied on connection-level storage failures
    reconnect_delay_first: float = float(os.getenv("RECONNECT_DELAY_FIRST", "5"))
    reconnect_delay_second: float = float(os.getenv("RECONNECT_DELAY_SECOND", "20"))

    # Inactive players: re-fetched individually when not seen for this long
    inactive_after_hours: int = int(os.getenv("INACTIVE_AFTER_HOURS", "24"))
    inactive_min_population: int = int(os.getenv("INACTIVE_MIN_POPULATION", "100"))

    # Server statistics
    peace_max_seconds: int = int(os.getenv("PEACE_MAX_SECONDS", str(60 * 60 * 24 * 63)))
    peace_min_level: int = int(os.getenv("PEACE_MIN_LEVEL", "30"))

    # Dungeons
    map_size: int = int(os.getenv("MAP_SIZE", "1286"))
    dungeon_kingdoms: str = os.getenv("DUNGEON_KINGDOMS", "0")

    # Optional Loki push endpoint for pass start/end records
    loki_url: Optional[str] = os.getenv("LOKI_URL", None)

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_format: str = os.getenv("LOG_FORMAT", "json")  # json or text

    @property
    def is_e4k_server(self) -> bool:
        """E4K servers page their rankings 6 rows at a time instead of 10."""
        return self.server_name.lower().startswith("e4k")

    @property
    def api_base_url(self) -> str:
        """Base URL of the empire-api proxy route for this server (trailing slash)."""
        if self.empire_api_base_url:
            return self.empire_api_base_url.rstrip("/") + "/"
        host = self.empire_api_host.rstrip("/")
        if self.api_server_id == "null":
            return f"{host}/EmpireEx/"
        return f"{host}/EmpireEx_{self.api_server_id}/"

    @property
    def dungeon_kingdom_ids(self):
        return [int(k) for k in self.dungeon_kingdoms.split(",") if k.strip()]

    def validate(self):
        """Validate configuration."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_KEY is required")
        if not self.server_name:
            errors.append("SERVER_NAME is required")
        if self.staging_chunk_size <= 0:
            errors.append("STAGING_CHUNK_SIZE must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

        return True

    def __post_init__(self):
        """Validate after initialization."""
        self.validate()
