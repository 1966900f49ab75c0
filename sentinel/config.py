from dotenv import find_dotenv, load_dotenv
import os
import logging
from typing import Optional
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    api_key: Optional[str] = None
    api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    analysis_model: str = "gemini-2.5-flash"
    visual_model: str = "gemini-2.5-pro"
    request_timeout: float = 30.0
    requests_per_minute: int = 10
    history_window: int = 20
    drop_missing: bool = False
    protected_pids: frozenset = Field(default_factory=lambda: frozenset({0, 4}))
    poll_interval: float = 2.0
    spawn_pid_floor: int = 10000
    audit_view_limit: int = 50
    source: str = "simulated"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    logger.warning(f"Invalid boolean for {name}: {raw!r}, using {default}")
    return default


def _env_pids(name: str, default: frozenset) -> frozenset:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return frozenset(int(p) for p in raw.split(",") if p.strip())
    except ValueError:
        logger.warning(f"Invalid pid list for {name}: {raw!r}, using defaults")
        return default


def load_settings(dotenv: bool = True) -> Settings:
    """
    Builds the runtime settings from the environment.

    A .env file in the working directory (or any parent) is loaded first,
    values already present in the environment take precedence.

    Args:
        dotenv (bool): Whether to read a .env file before the environment.

    Returns:
        Settings: The resolved configuration.
    """
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    defaults = Settings()
    return Settings(
        api_key=os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or None,
        api_base_url=os.getenv("SENTINEL_API_BASE_URL", defaults.api_base_url).rstrip("/"),
        analysis_model=os.getenv("SENTINEL_ANALYSIS_MODEL", defaults.analysis_model),
        visual_model=os.getenv("SENTINEL_VISUAL_MODEL", defaults.visual_model),
        request_timeout=_env_float("SENTINEL_REQUEST_TIMEOUT", defaults.request_timeout),
        requests_per_minute=max(1, _env_int("SENTINEL_REQUESTS_PER_MINUTE", defaults.requests_per_minute)),
        history_window=max(1, _env_int("SENTINEL_HISTORY_WINDOW", defaults.history_window)),
        drop_missing=_env_bool("SENTINEL_DROP_MISSING", defaults.drop_missing),
        protected_pids=_env_pids("SENTINEL_PROTECTED_PIDS", defaults.protected_pids),
        poll_interval=max(0.1, _env_float("SENTINEL_POLL_INTERVAL", defaults.poll_interval)),
        spawn_pid_floor=_env_int("SENTINEL_SPAWN_PID_FLOOR", defaults.spawn_pid_floor),
        audit_view_limit=max(1, _env_int("SENTINEL_AUDIT_VIEW_LIMIT", defaults.audit_view_limit)),
        source=os.getenv("SENTINEL_SOURCE", defaults.source).strip().lower(),
    )
