import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from loguru import logger

# ─────────────────────────────────────────────────────────────
# PROCESS
# ─────────────────────────────────────────────────────────────
DATA_DIR      = Path(os.environ.get("DATA_DIR", "/opt/filehost"))
METADATA_PATH = Path(os.environ.get("METADATA_PATH", str(DATA_DIR / "metadata.json")))
LOG_LEVEL     = os.environ.get("LOG_LEVEL", "INFO").upper()

FLUSH_INTERVAL = 30.0   # seconds between background snapshot writes

# ─────────────────────────────────────────────────────────────
# DEFAULT CONFIG ENTRIES (seeded into the store on first run)
# ─────────────────────────────────────────────────────────────
INSECURE_DEFAULTS = {
    "auth.api_key":        "change-me-api-key",
    "auth.admin_password": "change-me-admin-password",
    "auth.list_password":  "change-me-list-password",
}


def default_config(data_dir: Path = DATA_DIR) -> dict:
    return {
        "server.host":                    "0.0.0.0",
        "server.port":                    "8080",
        "storage.images_dir":             str(data_dir / "files"),
        "storage.max_file_size":          str(100 * 1024 * 1024),
        "storage.cleanup_interval":       "60",
        "storage.default_ttl":            "1",
        "storage.max_ttl":                "8760",
        "auth.admin_username":            "admin",
        "security.ip_whitelist":          "",
        "security.rate_limit_per_minute": "60",
        "security.session_timeout":       "300",
        **INSECURE_DEFAULTS,
    }


def setup_logging(level: str = LOG_LEVEL):
    logger.remove()
    logger.add(sys.stderr, level=level,
               format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} - {message}")


# ─────────────────────────────────────────────────────────────
# RUNTIME SETTINGS (typed view over the store's config entries)
# ─────────────────────────────────────────────────────────────
@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    images_dir: Path = DATA_DIR / "files"
    max_file_size: int = 100 * 1024 * 1024
    cleanup_interval: int = 60
    default_ttl: int = 1
    max_ttl: int = 8760
    api_key: str = INSECURE_DEFAULTS["auth.api_key"]
    admin_username: str = "admin"
    admin_password: str = INSECURE_DEFAULTS["auth.admin_password"]
    list_password: str = INSECURE_DEFAULTS["auth.list_password"]
    ip_whitelist: List[str] = field(default_factory=list)
    rate_limit_per_minute: int = 60
    session_timeout: int = 300

    @classmethod
    def from_store(cls, store) -> "Settings":
        """Build settings from the config entries held by ``store``.

        Missing or non-numeric integer entries fall back to the dataclass
        defaults so a hand-edited value cannot stop the server from starting.
        """
        base = cls()

        def num(key, fallback):
            return store.get_config_int(key, fallback)

        whitelist = store.get_config("security.ip_whitelist", "")
        return cls(
            host                  = store.get_config("server.host") or base.host,
            port                  = num("server.port", base.port),
            images_dir            = Path(store.get_config("storage.images_dir") or base.images_dir),
            max_file_size         = num("storage.max_file_size", base.max_file_size),
            cleanup_interval      = num("storage.cleanup_interval", base.cleanup_interval),
            default_ttl           = num("storage.default_ttl", base.default_ttl),
            max_ttl               = num("storage.max_ttl", base.max_ttl),
            api_key               = store.get_config("auth.api_key", ""),
            admin_username        = store.get_config("auth.admin_username", ""),
            admin_password        = store.get_config("auth.admin_password", ""),
            list_password         = store.get_config("auth.list_password", ""),
            ip_whitelist          = [ip.strip() for ip in whitelist.split(",") if ip.strip()],
            rate_limit_per_minute = num("security.rate_limit_per_minute", base.rate_limit_per_minute),
            session_timeout       = num("security.session_timeout", base.session_timeout),
        )

    def insecure_keys(self) -> List[str]:
        current = {
            "auth.api_key":        self.api_key,
            "auth.admin_password": self.admin_password,
            "auth.list_password":  self.list_password,
        }
        return [k for k, v in current.items() if v == INSECURE_DEFAULTS[k]]
