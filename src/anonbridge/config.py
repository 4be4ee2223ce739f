from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BridgeConfig:
    db_path: str = "anonbridge.db"
    store_timeout_ms: int = 5000
    store_retries: int = 2
    handle_min: int = 100
    handle_max: int = 998
    handle_max_attempts: int = 1000
    reports_per_min: int = 10
    session_ttl_s: int = 3600
    log_level: str = "INFO"

    @property
    def store_timeout_s(self) -> float:
        return self.store_timeout_ms / 1000

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000

    @property
    def handle_space(self) -> int:
        return self.handle_max - self.handle_min + 1


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"{name} must be a logging level name")
    return level


def load_config_from_env() -> BridgeConfig:
    handle_min = _parse_non_negative_int("ANONBRIDGE_HANDLE_MIN", 100)
    handle_max = _parse_non_negative_int("ANONBRIDGE_HANDLE_MAX", 998)
    if handle_max < handle_min:
        raise ValueError("ANONBRIDGE_HANDLE_MAX must not be below ANONBRIDGE_HANDLE_MIN")
    return BridgeConfig(
        db_path=os.environ.get("ANONBRIDGE_DB_PATH") or "anonbridge.db",
        store_timeout_ms=_parse_positive_int("ANONBRIDGE_STORE_TIMEOUT_MS", 5000),
        store_retries=_parse_non_negative_int("ANONBRIDGE_STORE_RETRIES", 2),
        handle_min=handle_min,
        handle_max=handle_max,
        handle_max_attempts=_parse_positive_int("ANONBRIDGE_HANDLE_MAX_ATTEMPTS", 1000),
        reports_per_min=_parse_positive_int("ANONBRIDGE_REPORTS_PER_MIN", 10),
        session_ttl_s=_parse_positive_int("ANONBRIDGE_SESSION_TTL_S", 3600),
        log_level=_parse_log_level("ANONBRIDGE_LOG_LEVEL", "INFO"),
    )
