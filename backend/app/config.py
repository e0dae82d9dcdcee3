import os
from typing import List, Optional


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: Optional[List[str]]) -> Optional[List[str]]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/kasse')
        # Comma-separated list of origins allowed to call /sync from a browser.
        # None means wildcard CORS (devices are onboarded without listing origins).
        self.sync_allowed_origins = self._split_csv(
            os.getenv("SYNC_ALLOWED_ORIGINS", "").strip(),
            default=None,
        )
        self.sync_require_device_key = _truthy(os.getenv("SYNC_REQUIRE_DEVICE_KEY", "false"))
        self.sync_device_key = (os.getenv("SYNC_DEVICE_KEY") or "").strip()
        self.sync_default_tenant_id = (os.getenv("SYNC_DEFAULT_TENANT_ID") or "").strip() or None
        self.sync_max_skew_ms = self._env_int("SYNC_MAX_SKEW_MS", 5 * 60 * 1000)
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

    def reload(self) -> "Settings":
        self.__init__()
        return self


settings = Settings()
