from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


__version__ = "0.4.0"

BASE_DIR = Path(__file__).resolve().parent
DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$", re.IGNORECASE)
TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_path: Path
    workers: int = 4
    poll_interval: float = 2.0
    fetch_timeout: float = 30.0
    connect_timeout: float = 10.0
    max_redirects: int = 10
    max_body_bytes: int = 5 * 1024 * 1024
    link_check_timeout: float = 10.0
    link_check_concurrency: int = 8
    link_check_max_redirects: int = 5
    max_attempts: int = 3
    recover_after: float = 0.0
    user_agent: str = f"site-crawler/{__version__}"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 5000
    debug: bool = False


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def parse_duration(value: Optional[str], default: float, min_value: float, max_value: float) -> float:
    if value is None or not str(value).strip():
        return default
    match = DURATION_RE.match(str(value))
    if not match:
        return default
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit == "ms":
        amount /= 1000.0
    elif unit == "m":
        amount *= 60.0
    return max(min_value, min(max_value, amount))


def parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    try:
        parsed = int(str(value).strip()) if value is not None and str(value).strip() else default
    except ValueError:
        parsed = default
    return max(min_value, min(max_value, parsed))


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    if env is None:
        load_env_file(BASE_DIR / ".env")
        env = os.environ

    fetch_timeout = parse_duration(env.get("HTTP_TIMEOUT"), 30.0, 1.0, 600.0)
    connect_timeout = min(fetch_timeout, parse_duration(env.get("HTTP_CONNECT_TIMEOUT"), 10.0, 0.5, 120.0))
    link_check_timeout = parse_duration(env.get("LINK_CHECK_TIMEOUT"), 10.0, 0.5, 300.0)
    if link_check_timeout >= fetch_timeout:
        # link checks are health checks, never allowed to outlast the page fetch
        link_check_timeout = max(0.5, fetch_timeout / 2)

    db_path = Path(env.get("CRAWLER_DB_PATH") or str(BASE_DIR / "crawler.sqlite3")).expanduser()

    return Settings(
        db_path=db_path,
        workers=parse_int(env.get("CRAWLER_WORKERS"), 4, 1, 64),
        poll_interval=parse_duration(env.get("CRAWLER_POLL_INTERVAL"), 2.0, 0.05, 60.0),
        fetch_timeout=fetch_timeout,
        connect_timeout=connect_timeout,
        max_redirects=parse_int(env.get("HTTP_MAX_REDIRECTS"), 10, 0, 50),
        max_body_bytes=parse_int(env.get("HTTP_MAX_BODY_BYTES"), 5 * 1024 * 1024, 1024, 100 * 1024 * 1024),
        link_check_timeout=link_check_timeout,
        link_check_concurrency=parse_int(env.get("LINK_CHECK_CONCURRENCY"), 8, 1, 128),
        link_check_max_redirects=parse_int(env.get("LINK_CHECK_MAX_REDIRECTS"), 5, 0, 30),
        max_attempts=parse_int(env.get("CRAWLER_MAX_ATTEMPTS"), 3, 1, 100),
        recover_after=parse_duration(env.get("CRAWLER_RECOVER_AFTER"), 0.0, 0.0, 7 * 24 * 3600.0),
        user_agent=(env.get("CRAWLER_USER_AGENT") or "").strip() or f"site-crawler/{__version__}",
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        host=(env.get("HOST") or "127.0.0.1").strip(),
        port=parse_int(env.get("PORT"), 5000, 1, 65535),
        debug=parse_bool(env.get("FLASK_DEBUG")),
    )
