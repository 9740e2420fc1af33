from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from careops_router.transport import DEFAULT_GEMINI_BASE_URL


class Settings(BaseSettings):
    gemini_api_key: str | None = None
    gemini_api_key_backup: str | None = None
    gemini_api_keys_extra: str = ""
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    gemini_connect_timeout_seconds: float = 5.0
    router_profile_path: str | None = None
    latency_first_timeout_seconds: float = 8.0
    quality_first_timeout_seconds: float = 90.0
    transient_retry_delay_seconds: float = 0.0
    router_audit_log_enabled: bool = True
    router_audit_log_path: str = "logs/dispatch_events.jsonl"
    default_workspace_name: str = "CareOps"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def api_keys(self) -> list[str]:
        # Order defines credential slots: primary is slot 1, backup slot 2.
        keys = [self.gemini_api_key, self.gemini_api_key_backup]
        keys.extend(_split_csv(self.gemini_api_keys_extra))
        return [key.strip() for key in keys if key and key.strip()]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
