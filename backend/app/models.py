# Pydantic models for API requests/responses
from pydantic import BaseModel, Field
from typing import Optional, Dict, Literal


class MonitorEntryCreate(BaseModel):
    symbol: str = Field(..., min_length=3)  # e.g. NSE:NIFTY25JUN24550CE
    contract_type: Literal["CE", "PE"]
    lots: int = Field(1, ge=1, le=100)
    target_points: float = Field(..., gt=0)
    stop_loss_points: float = Field(..., gt=0)
    entry_method: Literal["MARKET", "LIMIT"] = "MARKET"


class TradeLogImport(BaseModel):
    # Shape produced by GET /api/trade-logs/export
    logs: Dict[str, list]
    version: Optional[int] = None
    exported_at: Optional[str] = None


class ConfigUpdate(BaseModel):
    broker_access_token: Optional[str] = None
    broker_client_id: Optional[str] = None
    broker_token_expires_at: Optional[str] = None  # ISO-8601
    hma_period: Optional[int] = None  # Applies after restart
    poll_seconds: Optional[float] = None
    fetch_timeout_seconds: Optional[float] = None
    retention_days: Optional[int] = None
    seed_history_on_add: Optional[bool] = None
    history_resolution: Optional[str] = None  # Candle resolution for seeding ("5" = 5 minutes)
    bypass_market_hours: Optional[bool] = None

