# madlan_crawler/config.py
"""Crawler configuration loaded from the environment (and `.env`).

Delays are configured in milliseconds to match the variable names used by
the deployment scripts. `load_config` refuses to return a config that
violates any invariant; the raised `ConfigError` lists every problem.
"""
import os
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .errors import ConfigError

load_dotenv()

SEARCH_URL_TEMPLATE = (
    "https://www.madlan.co.il/for-sale/{city}-%D7%99%D7%A9%D7%A8%D7%90%D7%9C"
    "?tracking_search_source=new_search&marketplace=residential"
)
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BACKENDS = ("sqlite", "duckdb")


class CrawlerConfig(BaseModel):
    # target
    city: str = "חיפה"
    max_properties: int = 100
    max_search_pages: int = 50
    frontier_batch_size: int = 25
    search_url_template: str = SEARCH_URL_TEMPLATE

    # governor
    concurrency_min: int = 2
    concurrency_max: int = 5
    max_requests_per_minute: int = 60
    max_request_retries: int = 3
    request_delay_min_ms: int = 2000
    request_delay_max_ms: int = 5000
    fresh_browser_per_property: bool = True
    browser_launch_delay_min_ms: int = 60000
    browser_launch_delay_max_ms: int = 120000

    # storage
    db_backend: str = "sqlite"
    db_path: str = "./data/databases/properties.db"
    duckdb_path: str = "./data/databases/properties.duckdb"

    # browser
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    navigation_timeout_ms: int = 30000

    @property
    def storage_path(self) -> str:
        return self.duckdb_path if self.db_backend == "duckdb" else self.db_path

    def validate_invariants(self) -> List[str]:
        errors = []
        if not self.city.strip():
            errors.append("TARGET_CITY must not be empty")
        if self.max_properties < 0:
            errors.append("MAX_PROPERTIES must be >= 0 (0 means no limit)")
        if self.max_search_pages < 1:
            errors.append("MAX_SEARCH_PAGES must be >= 1")
        if self.frontier_batch_size < 1:
            errors.append("FRONTIER_BATCH_SIZE must be >= 1")
        if self.concurrency_min < 1:
            errors.append("CONCURRENCY_MIN must be >= 1")
        if self.concurrency_max < self.concurrency_min:
            errors.append("CONCURRENCY_MAX must be >= CONCURRENCY_MIN")
        if self.max_requests_per_minute < 1:
            errors.append("MAX_REQUESTS_PER_MINUTE must be >= 1")
        if self.max_request_retries < 0:
            errors.append("MAX_REQUEST_RETRIES must be >= 0")
        if self.request_delay_min_ms < 0:
            errors.append("REQUEST_DELAY_MIN must be >= 0")
        if self.request_delay_max_ms < self.request_delay_min_ms:
            errors.append("REQUEST_DELAY_MAX must be >= REQUEST_DELAY_MIN")
        if self.browser_launch_delay_min_ms < 0:
            errors.append("BROWSER_LAUNCH_DELAY_MIN must be >= 0")
        if self.browser_launch_delay_max_ms < self.browser_launch_delay_min_ms:
            errors.append("BROWSER_LAUNCH_DELAY_MAX must be >= BROWSER_LAUNCH_DELAY_MIN")
        if self.db_backend not in BACKENDS:
            errors.append(f"DB_BACKEND must be one of {', '.join(BACKENDS)}")
        if self.navigation_timeout_ms < 1:
            errors.append("NAVIGATION_TIMEOUT_MS must be >= 1")
        return errors


# env var -> (field, kind)
_ENV_FIELDS = {
    "TARGET_CITY": ("city", str),
    "MAX_PROPERTIES": ("max_properties", int),
    "MAX_SEARCH_PAGES": ("max_search_pages", int),
    "FRONTIER_BATCH_SIZE": ("frontier_batch_size", int),
    "SEARCH_URL_TEMPLATE": ("search_url_template", str),
    "CONCURRENCY_MIN": ("concurrency_min", int),
    "CONCURRENCY_MAX": ("concurrency_max", int),
    "MAX_REQUESTS_PER_MINUTE": ("max_requests_per_minute", int),
    "MAX_REQUEST_RETRIES": ("max_request_retries", int),
    "REQUEST_DELAY_MIN": ("request_delay_min_ms", int),
    "REQUEST_DELAY_MAX": ("request_delay_max_ms", int),
    "FRESH_BROWSER_PER_PROPERTY": ("fresh_browser_per_property", bool),
    "BROWSER_LAUNCH_DELAY_MIN": ("browser_launch_delay_min_ms", int),
    "BROWSER_LAUNCH_DELAY_MAX": ("browser_launch_delay_max_ms", int),
    "DB_BACKEND": ("db_backend", str),
    "DB_PATH": ("db_path", str),
    "DUCKDB_PATH": ("duckdb_path", str),
    "HEADLESS": ("headless", bool),
    "USER_AGENT": ("user_agent", str),
    "NAVIGATION_TIMEOUT_MS": ("navigation_timeout_ms", int),
}


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in ("0", "false", "no", "off", "")


def load_config(env: Optional[Dict[str, str]] = None, **overrides) -> CrawlerConfig:
    """Build a validated config from ``env`` (defaults to ``os.environ``).

    Keyword overrides win over the environment (used by the CLI flags).
    """
    env = os.environ if env is None else env
    values = {}
    errors = []
    for var, (field, kind) in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        if kind is int:
            try:
                values[field] = int(raw)
            except ValueError:
                errors.append(f"{var} must be an integer, got {raw!r}")
        elif kind is bool:
            values[field] = _parse_bool(raw)
        else:
            values[field] = raw.strip() if field == "db_backend" else raw
    values.update({k: v for k, v in overrides.items() if v is not None})

    cfg = CrawlerConfig(**values)
    errors.extend(cfg.validate_invariants())
    if errors:
        raise ConfigError(errors)
    return cfg
