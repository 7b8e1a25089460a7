# Monitor Service - Interface layer between API routes and the MonitorCoordinator
import logging
from typing import Awaitable, Callable, Optional

from broker import BrokerClient, BrokerSession, SessionExpired
from config import VALID_MODES, config
from database import SqliteKeyValueStore, load_config, save_config
from indicators import resolution_seconds
from indices import get_available_indices, get_index_config
from market_data import MarketDataClient
from monitor import DuplicateSymbolError, MonitorCoordinator, UnknownEntryError
from trade_log import TradeLogStore
from trade_state_machine import MonitorEntry

logger = logging.getLogger(__name__)

# Lazily built; server.py wires them in its lifespan
_store: Optional[SqliteKeyValueStore] = None
_trade_log: Optional[TradeLogStore] = None
_coordinator: Optional[MonitorCoordinator] = None


def get_store() -> SqliteKeyValueStore:
    global _store
    if _store is None:
        _store = SqliteKeyValueStore()
    return _store


def get_trade_log() -> TradeLogStore:
    global _trade_log
    if _trade_log is None:
        _trade_log = TradeLogStore(get_store(), retention_days=int(config.get("retention_days", 60)))
    return _trade_log


def get_coordinator(on_tick: Optional[Callable[[list], Awaitable[None]]] = None) -> MonitorCoordinator:
    """Get or create the coordinator instance"""
    global _coordinator
    if _coordinator is None:
        base_url = str(config.get("proxy_base_url") or "")
        timeout = float(config.get("fetch_timeout_seconds", 3.0))
        _coordinator = MonitorCoordinator(
            market_data=MarketDataClient(base_url, timeout=timeout),
            trade_log=get_trade_log(),
            store=get_store(),
            broker=BrokerClient(base_url, timeout=max(timeout, 5.0)),
            on_tick=on_tick,
        )
    return _coordinator


async def init_services(on_tick: Optional[Callable[[list], Awaitable[None]]] = None) -> dict:
    """Open the store, overlay persisted config, load history, restore the monitored set."""
    store = get_store()
    await store.init()
    await load_config(store)
    trade_log = get_trade_log()
    trade_log.retention_days = int(config.get("retention_days", 60))
    entries = await trade_log.load()
    coordinator = get_coordinator(on_tick)
    restored = await coordinator.restore()
    if config.get("auto_start_monitor", True):
        await coordinator.start()
    return {"trade_log_entries": entries, "restored_symbols": restored, "active": coordinator.is_active}


async def shutdown_services() -> None:
    if _coordinator is not None:
        await _coordinator.stop()
        await _coordinator.market_data.aclose()
        if _coordinator.broker is not None:
            await _coordinator.broker.aclose()


# ==================== Monitor ====================

async def add_symbol(data: dict) -> dict:
    """Start monitoring a symbol + contract type"""
    try:
        entry = MonitorEntry(
            symbol=str(data.get("symbol") or "").strip().upper(),
            contract_type=str(data.get("contract_type") or "").strip().upper(),
            lots=int(data.get("lots", 1)),
            target_points=float(data["target_points"]),
            stop_loss_points=float(data["stop_loss_points"]),
            entry_method=str(data.get("entry_method", "MARKET")).strip().upper(),
        )
        await get_coordinator().add_symbol(entry)
    except KeyError as e:
        return {"status": "error", "message": f"Missing field {e}"}
    except (TypeError, ValueError, DuplicateSymbolError) as e:
        return {"status": "error", "message": str(e)}
    return {"status": "success", "entry": get_coordinator().get(entry.id)}


async def remove_symbol(entry_id: str) -> dict:
    """Stop monitoring one entry"""
    coordinator = get_coordinator()
    try:
        entry = await coordinator.remove_symbol(entry_id)
    except UnknownEntryError as e:
        return {"status": "error", "message": str(e), "not_found": True}
    return {"status": "success", "removed": entry.to_dict(), "active": bool(coordinator.entries())}


async def clear_all() -> dict:
    removed = await get_coordinator().clear_all()
    return {"status": "success", "removed": removed}


def rearm(entry_id: str) -> dict:
    """Start a new WAITING cycle after target/SL"""
    coordinator = get_coordinator()
    try:
        ok = coordinator.rearm(entry_id)
    except UnknownEntryError as e:
        return {"status": "error", "message": str(e), "not_found": True}
    if not ok:
        return {"status": "error", "message": "Entry can only be re-armed after target or stop-loss hit"}
    return {"status": "success", "entry": coordinator.get(entry_id)}


def list_monitored() -> list:
    return get_coordinator().snapshot()


def get_entry(entry_id: str) -> dict:
    try:
        return {"status": "success", "entry": get_coordinator().get(entry_id)}
    except UnknownEntryError as e:
        return {"status": "error", "message": str(e), "not_found": True}


async def start_monitoring() -> dict:
    coordinator = get_coordinator()
    await coordinator.start()
    logger.info(f"[MONITOR] Start requested | active={coordinator.is_active}")
    return {"status": "success", "active": coordinator.is_active, "paused": coordinator.is_paused}


async def stop_monitoring() -> dict:
    coordinator = get_coordinator()
    await coordinator.stop()
    return {"status": "success", "active": coordinator.is_active}


def get_monitor_status() -> dict:
    """Get current monitor status with market hour validation"""
    from utils import get_ist_time, is_market_open

    ist = get_ist_time()
    coordinator = get_coordinator()
    session_check = BrokerSession.from_config(config).check()
    return {
        "is_active": coordinator.is_active,
        "is_paused": coordinator.is_paused,
        "mode": config.get("trading_mode", "paper"),
        "market_status": "open" if is_market_open() else "closed",
        "market_details": {
            "is_weekday": ist.weekday() < 5,
            "current_time_ist": ist.strftime('%H:%M:%S'),
            "trading_hours": "09:15 - 15:30 IST",
        },
        "session": "valid" if not isinstance(session_check, SessionExpired) else session_check.reason,
        "monitored": len(coordinator.entries()),
        "ticks": coordinator.tick_count,
        "hma_period": coordinator.indicators.period,
        "poll_seconds": config.get("poll_seconds"),
    }


# ==================== Trade log ====================

def query_trade_logs(date: Optional[str] = None, action: Optional[str] = None) -> list:
    return [e.to_dict() for e in get_trade_log().query(date=date, action=action)]


def trade_log_dates() -> list:
    return get_trade_log().dates()


def trade_log_stats() -> dict:
    return get_trade_log().stats()


def export_trade_logs() -> dict:
    return get_trade_log().export()


async def import_trade_logs(data: dict) -> dict:
    try:
        result = await get_trade_log().import_logs(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"[TRADELOG] Import rejected: {e}")
        return {"status": "error", "message": f"Invalid trade log payload: {e}"}
    return {"status": "success", **result}


async def clear_trade_logs() -> dict:
    removed = await get_trade_log().clear()
    return {"status": "success", "removed": removed}


# ==================== Config ====================

def get_config() -> dict:
    """Get current configuration (credentials reported as presence only)"""
    return {
        "has_credentials": bool(config.get("broker_access_token")),
        "mode": config.get("trading_mode", "paper"),
        "hma_period": config.get("hma_period"),
        "poll_seconds": config.get("poll_seconds"),
        "fetch_timeout_seconds": config.get("fetch_timeout_seconds"),
        "retention_days": config.get("retention_days"),
        "seed_history_on_add": config.get("seed_history_on_add"),
        "history_resolution": config.get("history_resolution"),
        "bypass_market_hours": config.get("bypass_market_hours"),
        "proxy_base_url": config.get("proxy_base_url"),
    }


def get_available_indices_list() -> list:
    return [{"key": key, **get_index_config(key)} for key in get_available_indices()]


_RANGES = {
    "poll_seconds": (1.0, 300.0),
    "fetch_timeout_seconds": (0.5, 30.0),
    "retention_days": (1, 365),
    "hma_period": (4, 500),
}


async def update_config_values(updates: dict) -> dict:
    """Update configuration values"""
    logger.info(f"[CONFIG] Received updates: {list(updates.keys())}")
    resolution = updates.get("history_resolution")
    if resolution is not None:
        try:
            resolution_seconds(resolution)
        except ValueError:
            logger.warning(f"[CONFIG] Rejected history_resolution {resolution!r}")
            return {"status": "error", "message": f"Invalid history_resolution {resolution!r}"}

    updated_fields = []

    for key in ("broker_access_token", "broker_client_id", "broker_token_expires_at"):
        if updates.get(key) is not None:
            config[key] = str(updates[key] or "").strip()
            updated_fields.append(key)

    for key, (low, high) in _RANGES.items():
        if updates.get(key) is None:
            continue
        kind = type(low)
        value = kind(updates[key])
        clamped = max(low, min(high, value))
        if clamped != value:
            logger.warning(f"[CONFIG] {key} clamped from {value} to {clamped}")
        config[key] = clamped
        updated_fields.append(key)

    for key in ("seed_history_on_add", "bypass_market_hours"):
        if updates.get(key) is not None:
            config[key] = bool(updates[key])
            updated_fields.append(key)

    if updates.get("history_resolution") is not None:
        config["history_resolution"] = str(updates["history_resolution"]).strip()
        updated_fields.append("history_resolution")

    if "retention_days" in updated_fields:
        get_trade_log().retention_days = int(config["retention_days"])

    await save_config(get_store())
    logger.info(f"[CONFIG] Updated: {updated_fields}")
    message = f"Updated {len(updated_fields)} fields"
    if "hma_period" in updated_fields:
        message += " (hma_period applies after restart)"
    return {"status": "success", "message": message, "updated": updated_fields}


async def set_trading_mode(mode: str) -> dict:
    """Set trading mode (paper/live)"""
    mode = str(mode or "").strip().lower()
    if mode not in VALID_MODES:
        return {"status": "error", "message": "Invalid mode. Use 'paper' or 'live'"}

    if mode == "live":
        check = BrokerSession.from_config(config).check()
        if isinstance(check, SessionExpired):
            return {"status": "error", "message": f"Broker session not usable for live mode: {check.reason}"}

    config["trading_mode"] = mode
    logger.info(f"[CONFIG] Trading mode changed to: {mode}")
    return {"status": "success", "mode": mode}
