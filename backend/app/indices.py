# Index configurations for option monitoring
# Each index has a different exchange symbol, lot size, tick size and strike interval.
import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_LOT_SIZE = 50

INDICES = {
    "NIFTY": {
        "name": "Nifty 50",
        "symbol": "NSE:NIFTY",
        "lot_size": 75,
        "tick_size": 0.05,
        "strike_interval": 50,
    },
    "BANKNIFTY": {
        "name": "Bank Nifty",
        "symbol": "NSE:NIFTYBANK",
        "lot_size": 30,
        "tick_size": 0.05,
        "strike_interval": 100,
    },
    "NIFTYMIDCAPSELECT": {
        "name": "Nifty Midcap Select",
        "symbol": "NSE:NIFTYMIDCPSELECT",
        "lot_size": 120,
        "tick_size": 0.05,
        "strike_interval": 25,
    },
    "NIFTYFINSERVICE": {
        "name": "Nifty Financial Services",
        "symbol": "NSE:NIFTYFINSERVICE",
        "lot_size": 65,
        "tick_size": 0.05,
        "strike_interval": 50,
    },
    "NIFTYNEXT50": {
        "name": "Nifty Next 50",
        "symbol": "NSE:NIFTYNEXT50",
        "lot_size": 25,
        "tick_size": 0.05,
        "strike_interval": 25,
    },
    "SENSEX": {
        "name": "BSE Sensex",
        "symbol": "BSE:SENSEX",
        "lot_size": 20,
        "tick_size": 0.01,
        "strike_interval": 100,
    },
    "BANKEX": {
        "name": "BSE Bankex",
        "symbol": "BSE:BANKEX",
        "lot_size": 30,
        "tick_size": 0.01,
        "strike_interval": 100,
    },
    "SENSEX50": {
        "name": "BSE Sensex 50",
        "symbol": "BSE:SENSEX50",
        "lot_size": 60,
        "tick_size": 0.01,
        "strike_interval": 50,
    },
}

# "NSE:NIFTY25JUN24550CE" -> "NIFTY"; the exchange prefix is required
_SYMBOL_RE = re.compile(r"^[A-Z]+:([A-Z]+)")

# Exchange option roots that differ from the index symbol
_ROOT_ALIASES = {
    "FINNIFTY": "NIFTYFINSERVICE",
    "MIDCPNIFTY": "NIFTYMIDCAPSELECT",
    "NIFTYNXT50": "NIFTYNEXT50",
}


def get_index_config(index_name: str) -> dict | None:
    """Get configuration for an index"""
    return INDICES.get(str(index_name or "").upper())


def get_available_indices() -> list:
    """Get list of available indices"""
    return list(INDICES.keys())


def index_from_symbol(symbol: str) -> str | None:
    """Resolve the underlying index name from an option trading symbol.

    Longest index-symbol prefix wins ("NSE:NIFTYBANK..." is BANKNIFTY, not
    NIFTY), then exchange root aliases, then any other NIFTY* root.
    """
    text = str(symbol or "").strip().upper()
    if text in INDICES:
        return text
    match = _SYMBOL_RE.match(text)
    if not match:
        return None

    best = None
    for name, cfg in INDICES.items():
        prefix = cfg["symbol"]
        if text.startswith(prefix) and (best is None or len(prefix) > len(INDICES[best]["symbol"])):
            best = name
    if best is not None:
        return best

    body = text.split(":", 1)[1]
    for root, name in _ROOT_ALIASES.items():
        if body.startswith(root):
            return name
    if match.group(1).startswith("NIFTY"):
        return "NIFTY"
    return None


def lot_size(symbol_or_index: str) -> int:
    """Lot size for an index name or an option symbol of that index."""
    cfg = get_index_config(symbol_or_index)
    if cfg is None:
        index_name = index_from_symbol(symbol_or_index)
        cfg = get_index_config(index_name) if index_name else None
    if cfg is None:
        logger.warning(f"[CONFIG] Unknown index for {symbol_or_index!r}, using default lot size {DEFAULT_LOT_SIZE}")
        return DEFAULT_LOT_SIZE
    return int(cfg["lot_size"])

