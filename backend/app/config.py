# Configuration and runtime state
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

VALID_MODES = ("paper", "live")
DEFAULT_MODE = (os.getenv("TRADING_MODE") or "paper").strip().lower()


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


config = {
    # Broker credentials (never persisted to the KV store)
    "broker_client_id": (os.getenv("BROKER_CLIENT_ID") or "").strip(),
    "broker_access_token": (os.getenv("BROKER_ACCESS_TOKEN") or "").strip(),
    "broker_token_expires_at": (os.getenv("BROKER_TOKEN_EXPIRES_AT") or "").strip(),  # ISO-8601, empty = no expiry

    # paper or live (default to paper for safety)
    "trading_mode": "live" if DEFAULT_MODE == "live" else "paper",

    # Broker proxy, serves quotes/history/orders
    "proxy_base_url": (os.getenv("PROXY_BASE_URL", "http://localhost:5000") or "").strip(),
    "fetch_timeout_seconds": _env_float("FETCH_TIMEOUT_SECONDS", 3.0),

    # Indicator
    "hma_period": _env_int("HMA_PERIOD", 55),
    "seed_history_on_add": _env_bool("SEED_HISTORY_ON_ADD", False),
    "history_resolution": (os.getenv("HISTORY_RESOLUTION") or "5").strip(),

    # Monitor loop
    "poll_seconds": _env_float("POLL_SECONDS", 5.0),
    "bypass_market_hours": _env_bool("BYPASS_MARKET_HOURS", False),  # If True: poll outside 9:15-15:30 IST
    "auto_start_monitor": _env_bool("AUTO_START_MONITOR", True),

    # Trade log
    "retention_days": _env_int("RETENTION_DAYS", 60),
}

# WebSocket auth token (optional). If set, clients must connect with ?token=<token>
config["ws_auth_token"] = (os.getenv("WS_AUTH_TOKEN", "") or "").strip()

# Keys that may be changed at runtime and saved to the KV store
PERSISTED_KEYS = {
    "hma_period": int,
    "seed_history_on_add": bool,
    "history_resolution": str,
    "poll_seconds": float,
    "fetch_timeout_seconds": float,
    "bypass_market_hours": bool,
    "retention_days": int,
}

SECRET_KEYS = ("broker_access_token", "broker_client_id", "ws_auth_token")

# SQLite Database path
DB_PATH = ROOT_DIR / 'data' / 'monitor.db'

# Ensure directories exist
(ROOT_DIR / 'logs').mkdir(exist_ok=True)
(ROOT_DIR / 'data').mkdir(exist_ok=True)
