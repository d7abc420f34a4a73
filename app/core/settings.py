"""
Environment-driven settings for the replicated profile store.

All problems found while loading are collected and raised together as a
SettingsValidationError; legal-but-risky values only emit warnings.
"""

from __future__ import annotations

import os
import tomllib
import warnings
from pathlib import Path
from typing import Any, Dict, List, Tuple
from urllib.parse import urlsplit, urlunsplit

_PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"

STORE_BACKENDS = ("sql", "memory")
REDACTED = "***REDACTED***"


class SettingsValidationError(ValueError):
    def __init__(self, errors: List[str]) -> None:
        self.errors = errors
        super().__init__("Invalid settings: " + "; ".join(errors))


def _read_version() -> str:
    try:
        with open(_PYPROJECT, "rb") as f:
            return str(tomllib.load(f)["project"]["version"])
    except (OSError, KeyError, tomllib.TOMLDecodeError):
        return "0.0.0"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _redact_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.password:
        return url
    userinfo, host = parts.netloc.rsplit("@", 1)
    netloc = f"{userinfo.split(':', 1)[0]}:{REDACTED}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class Settings:
    PROJECT_NAME = "profile-replica"

    def __init__(self) -> None:
        errors: List[str] = []

        self.VERSION = _read_version()
        self.DEV_MODE = _env_bool("DEV_MODE", False)

        self.STORE_BACKEND = os.getenv("STORE_BACKEND", "sql").strip().lower()
        if self.STORE_BACKEND not in STORE_BACKENDS:
            errors.append(f"STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)} (got '{self.STORE_BACKEND}')")

        self.RELATIONAL_DATABASE_URL = os.getenv("RELATIONAL_DATABASE_URL", "sqlite:///data/profiles.db").strip()
        self.DOCUMENT_DATABASE_URL = os.getenv("DOCUMENT_DATABASE_URL", "sqlite:///data/documents.db").strip()
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0").strip()

        self.HEALTH_CHECK_INTERVAL_SECONDS = self._float("HEALTH_CHECK_INTERVAL_SECONDS", 30.0, errors, minimum=0.1)
        self.STORE_TIMEOUT_SECONDS = self._float("STORE_TIMEOUT_SECONDS", 5.0, errors, minimum=0.001)
        if self.STORE_TIMEOUT_SECONDS > 60:
            errors.append("STORE_TIMEOUT_SECONDS must be <= 60")

        self.READ_MAX_RETRIES = self._int("READ_MAX_RETRIES", 3, errors, minimum=1)
        self.READ_RETRY_DELAY_MS = self._int("READ_RETRY_DELAY_MS", 1000, errors, minimum=0)
        self.WRITE_WORKERS = self._int("WRITE_WORKERS", 6, errors, minimum=1)
        self.SYNC_BATCH_SIZE = self._int("SYNC_BATCH_SIZE", 500, errors, minimum=1)
        self.REPAIR_DELAYS_SECONDS = self._delays("REPAIR_DELAYS_SECONDS", (5.0, 15.0, 45.0), errors)

        if errors:
            raise SettingsValidationError(errors)

        if self.DEV_MODE:
            warnings.warn("DEV_MODE is enabled; do not run this configuration in production.", stacklevel=2)
        elif self.STORE_BACKEND == "memory":
            warnings.warn("STORE_BACKEND=memory outside DEV_MODE: profiles are lost on restart.", stacklevel=2)
        elif self.STORE_BACKEND == "sql":
            for name in ("RELATIONAL_DATABASE_URL", "DOCUMENT_DATABASE_URL"):
                if getattr(self, name).startswith("sqlite"):
                    warnings.warn(f"{name} points at SQLite outside DEV_MODE.", stacklevel=2)

    @staticmethod
    def _int(name: str, default: int, errors: List[str], minimum: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            errors.append(f"{name} must be an integer (got '{raw}')")
            return default
        if value < minimum:
            errors.append(f"{name} must be >= {minimum} (got {value})")
        return value

    @staticmethod
    def _float(name: str, default: float, errors: List[str], minimum: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = float(raw)
        except ValueError:
            errors.append(f"{name} must be a number (got '{raw}')")
            return default
        if value < minimum:
            errors.append(f"{name} must be >= {minimum} (got {value})")
        return value

    @staticmethod
    def _delays(name: str, default: Tuple[float, ...], errors: List[str]) -> Tuple[float, ...]:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            delays = tuple(float(part) for part in raw.split(",") if part.strip())
        except ValueError:
            errors.append(f"{name} must be a comma-separated list of seconds (got '{raw}')")
            return default
        if not delays or any(d <= 0 for d in delays) or list(delays) != sorted(delays):
            errors.append(f"{name} must be positive and ascending (got '{raw}')")
        return delays

    @property
    def store_timeout(self) -> float:
        return self.STORE_TIMEOUT_SECONDS

    @property
    def read_retry_delay(self) -> float:
        return self.READ_RETRY_DELAY_MS / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        d = {k: v for k, v in vars(self).items() if k.isupper()}
        d["PROJECT_NAME"] = self.PROJECT_NAME
        for name in ("RELATIONAL_DATABASE_URL", "DOCUMENT_DATABASE_URL", "REDIS_URL"):
            d[name] = _redact_url(d[name])
        d["REPAIR_DELAYS_SECONDS"] = list(self.REPAIR_DELAYS_SECONDS)
        return d


settings = Settings()
