"""Tokentrack configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_choice(name: str, choices: set[str], default: str) -> str:
    value = (os.getenv(name) or "").strip().lower()
    return value if value in choices else default

# Project root (one level up from tokentrack/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# External state source written by Claude Code
STATE_PATH = Path(os.getenv("TOKENTRACK_STATE_PATH", str(Path.home() / ".claude.json"))).expanduser()

# Database
DB_PATH = Path(os.getenv("TOKENTRACK_DB_PATH", str(PROJECT_ROOT / "data" / "tokens.db"))).expanduser()

# Polling (active:idle keeps a 1:4 ratio by default)
ACTIVE_INTERVAL_SECONDS = _env_float("TOKENTRACK_ACTIVE_INTERVAL_SECONDS", 0.5)
IDLE_INTERVAL_SECONDS = _env_float("TOKENTRACK_IDLE_INTERVAL_SECONDS", 2.0)
MAX_CONSECUTIVE_FAILURES = _env_int("TOKENTRACK_MAX_CONSECUTIVE_FAILURES", 10)
STATUS_LOG_SECONDS = _env_int("TOKENTRACK_STATUS_LOG_SECONDS", 0)

# Reconciliation
COST_EPSILON = _env_float("TOKENTRACK_COST_EPSILON", 1e-6)
DELTA_POLICY = _env_choice("TOKENTRACK_DELTA_POLICY", {"raw", "clamped"}, "raw")
SEED_FROM_STORE = _env_bool("TOKENTRACK_SEED_FROM_STORE", False)
REGISTER_PLACEHOLDERS = _env_bool("TOKENTRACK_REGISTER_PLACEHOLDERS", True)

# Observability
OTEL_ENABLED = _env_bool("TOKENTRACK_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("TOKENTRACK_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("TOKENTRACK_OTEL_SERVICE_NAME", "tokentrack")
PROM_PORT = _env_int("TOKENTRACK_PROM_PORT", 0)

# Server settings
HOST = os.getenv("TOKENTRACK_HOST", "127.0.0.1")
PORT = _env_int("TOKENTRACK_PORT", 8000)
