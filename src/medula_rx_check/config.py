from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .models import PortalCredentials


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_PORTAL_URL = "https://medeczane.sgk.gov.tr/eczane"
DEFAULT_CAPTCHA_URL = "http://localhost:3000/medula/numbers"
DEFAULT_IP_CHECK_URL = "https://api.ipify.org?format=json"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _require_http_url(value: str, *, field: str) -> str:
    url = (value or "").strip().rstrip("/")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"{field} must be a full http(s) URL (got {value!r})")
    return url


def _default_config_from_env() -> dict:
    """
    Env-only config so a `.env` file is enough for most installs. YAML stays an optional override.
    """
    return {
        "portal": {
            "base_url": os.getenv("MEDULA_BASE_URL", DEFAULT_PORTAL_URL),
            "username": os.getenv("MEDULA_USERNAME", ""),
            "password": os.getenv("MEDULA_PASSWORD", ""),
            "max_login_attempts": os.getenv("MEDULA_MAX_LOGIN_ATTEMPTS", "5"),
            "retry_delay_s": os.getenv("MEDULA_RETRY_DELAY_S", "1.0"),
            "headless": not _env_bool("MEDULA_HEADFUL", default=False),
            "debug_dir": os.getenv("MEDULA_DEBUG_DIR", "data/debug"),
            "ip_check_url": os.getenv("MEDULA_IP_CHECK_URL", DEFAULT_IP_CHECK_URL),
        },
        "captcha": {
            "url": os.getenv("CAPTCHA_SERVICE_URL", DEFAULT_CAPTCHA_URL),
        },
        "scoring": {
            "base_url": os.getenv("SCORING_API_URL", ""),
            "token": os.getenv("SCORING_API_TOKEN", ""),
        },
        "cache": {
            "db_path": os.getenv("CACHE_DB_PATH", "data/cache.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/medula.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Medula e-pharmacy portal settings.

    Timeouts are split on purpose: element/navigation waits happen inside the browser, while
    `worker_timeout_s` bounds the whole round trip of one browser job.
    """

    base_url: str = DEFAULT_PORTAL_URL
    username: str = ""
    password: str = Field(default="", repr=False)

    max_login_attempts: int = Field(default=5, ge=1, le=20)
    # Minimum pause before every login retry; the portal rate-limits CAPTCHA failures.
    retry_delay_s: float = Field(default=1.0, ge=0)

    element_timeout_ms: int = Field(default=10_000, ge=100)
    navigation_timeout_ms: int = Field(default=15_000, ge=100)
    worker_timeout_s: float = Field(default=30.0, gt=0)
    # Login + fetch runs several pages (and possibly several login attempts) in one job.
    long_job_timeout_s: float = Field(default=180.0, gt=0)

    report_retries: int = Field(default=2, ge=0, le=10)
    report_retry_delay_s: float = Field(default=0.5, ge=0)

    headless: bool = True
    slow_mo_ms: int = Field(default=0, ge=0)
    debug_dir: str = "data/debug"
    # Echo service used only to name the refused IP in login errors.
    ip_check_url: str = DEFAULT_IP_CHECK_URL

    @model_validator(mode="after")
    def _normalize(self) -> "PortalConfig":
        self.base_url = _require_http_url(self.base_url, field="portal.base_url")
        self.ip_check_url = _require_http_url(self.ip_check_url, field="portal.ip_check_url")
        self.username = (self.username or "").strip()
        return self

    @property
    def home_url(self) -> str:
        return self.base_url

    def credentials(self) -> Optional[PortalCredentials]:
        if not self.username or not self.password:
            return None
        return PortalCredentials(username=self.username, password=self.password)


class CaptchaConfig(BaseModel):
    url: str = DEFAULT_CAPTCHA_URL
    timeout_s: float = Field(default=15.0, gt=0)

    @model_validator(mode="after")
    def _normalize(self) -> "CaptchaConfig":
        self.url = _require_http_url(self.url, field="captcha.url")
        return self


class ScoringConfig(BaseModel):
    # Empty base_url disables analysis (fetch/login still work).
    base_url: str = ""
    token: str = Field(default="", repr=False)
    timeout_s: float = Field(default=60.0, gt=0)
    concurrency: int = Field(default=3, ge=1, le=16)

    @model_validator(mode="after")
    def _normalize(self) -> "ScoringConfig":
        if self.base_url:
            self.base_url = _require_http_url(self.base_url, field="scoring.base_url")
        return self


class CacheConfig(BaseModel):
    db_path: str = "data/cache.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/medula.log"


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    captcha: CaptchaConfig = CaptchaConfig()
    scoring: ScoringConfig = ScoringConfig()
    cache: CacheConfig = CacheConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path, None] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
