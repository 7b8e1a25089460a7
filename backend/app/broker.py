# Broker session + order placement through the broker proxy
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

import httpx

logger = logging.getLogger(__name__)

ORDER_TYPES = {"LIMIT": 1, "MARKET": 2, "SL-M": 3, "SL-L": 4}
SIDES = {"BUY": 1, "SELL": -1}
PRODUCT_TYPES = ("INTRADAY", "CNC", "MARGIN", "CO", "BO", "MTF")
VALIDITIES = ("DAY", "IOC")


# ── session ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionOk:
    session: "BrokerSession"


@dataclass(frozen=True)
class SessionExpired:
    reason: str


SessionCheck = Union[SessionOk, SessionExpired]


@dataclass(frozen=True)
class BrokerSession:
    """Access token holder passed explicitly into every broker/proxy call."""
    client_id: str
    access_token: str
    expires_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, cfg: dict) -> "BrokerSession":
        raw_expiry = str(cfg.get("broker_token_expires_at") or "").strip()
        expires_at = None
        if raw_expiry:
            try:
                expires_at = datetime.fromisoformat(raw_expiry)
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning(f"[AUTH] Ignoring unparseable token expiry {raw_expiry!r}")
        return cls(
            client_id=str(cfg.get("broker_client_id") or "").strip(),
            access_token=str(cfg.get("broker_access_token") or "").strip(),
            expires_at=expires_at,
        )

    @property
    def authorization(self) -> str:
        return f"{self.client_id}:{self.access_token}" if self.client_id else self.access_token

    def check(self, now: Optional[datetime] = None) -> SessionCheck:
        if not self.access_token:
            return SessionExpired("no access token")
        now = now or datetime.now(timezone.utc)
        if self.expires_at is not None and now >= self.expires_at:
            return SessionExpired(f"token expired at {self.expires_at.isoformat()}")
        return SessionOk(self)


# ── orders ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrderOk:
    order_id: str


@dataclass(frozen=True)
class OrderErr:
    code: int
    message: str


OrderResult = Union[OrderOk, OrderErr]


def format_order(
    symbol: str,
    quantity: int,
    side: str,
    order_type: str = "MARKET",
    limit_price: float = 0.0,
    product_type: str = "INTRADAY",
    order_tag: Optional[str] = None,
) -> dict:
    """Build the broker's order payload (type 1=LIMIT 2=MARKET, side 1=BUY -1=SELL)."""
    side = side.upper()
    order_type = order_type.upper()
    return {
        "symbol": symbol,
        "qty": int(quantity),
        "type": ORDER_TYPES.get(order_type, 0),
        "side": SIDES.get(side, 0),
        "productType": product_type,
        "limitPrice": float(limit_price) if order_type == "LIMIT" else 0,
        "stopPrice": 0,
        "validity": "DAY",
        "disclosedQty": 0,
        "offlineOrder": False,
        "orderTag": order_tag or f"hma{side.lower()}{int(time.time() * 1000)}",
    }


def validate_order(order: dict) -> list[str]:
    errors = []
    if not str(order.get("symbol") or "").strip():
        errors.append("Symbol is required")
    if int(order.get("qty") or 0) <= 0:
        errors.append("Quantity must be greater than 0")
    if order.get("type") not in ORDER_TYPES.values():
        errors.append("Invalid order type")
    if order.get("side") not in SIDES.values():
        errors.append("Invalid order side")
    if order.get("productType") not in PRODUCT_TYPES:
        errors.append("Invalid product type")
    if order.get("type") == ORDER_TYPES["LIMIT"] and float(order.get("limitPrice") or 0) <= 0:
        errors.append("Limit price is required for limit orders")
    if order.get("validity") not in VALIDITIES:
        errors.append("Invalid validity")
    return errors


def parse_order_response(payload: dict) -> OrderResult:
    """{"s": "ok", "id": ...} → OrderOk; anything else → OrderErr."""
    if not isinstance(payload, dict):
        return OrderErr(-1, "malformed broker response")
    if payload.get("s") == "ok" and payload.get("id"):
        return OrderOk(str(payload["id"]))
    code = payload.get("code")
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = -1
    return OrderErr(code, str(payload.get("message") or "order rejected"))


class BrokerClient:
    def __init__(self, base_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=2.0),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def place_order(self, session: BrokerSession, order: dict) -> OrderResult:
        check = session.check()
        if isinstance(check, SessionExpired):
            logger.warning(f"[ORDER] Not placed, session invalid: {check.reason}")
            return OrderErr(401, f"session invalid: {check.reason}")

        errors = validate_order(order)
        if errors:
            logger.warning(f"[ORDER] Validation failed for {order.get('symbol')}: {errors}")
            return OrderErr(400, "; ".join(errors))

        try:
            resp = await self._get_client().post(
                f"{self.base_url}/api/orders",
                json=order,
                headers={"Authorization": session.authorization},
            )
            payload = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[ORDER] Placement failed for {order.get('symbol')}: {e}")
            return OrderErr(-1, str(e))

        result = parse_order_response(payload)
        if isinstance(result, OrderOk):
            logger.info(f"[ORDER] Placed {order['symbol']} side={order['side']} qty={order['qty']} | id={result.order_id}")
        else:
            logger.warning(f"[ORDER] Rejected {order['symbol']} | code={result.code} msg={result.message}")
        return result
