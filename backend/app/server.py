"""FastAPI Server - Thin Controller Layer
Only handles API routes, request validation, and responses.
All business logic is delegated to monitor_service and the modules behind it.
"""
from fastapi import FastAPI, APIRouter, WebSocket, WebSocketDisconnect, HTTPException, Query
from starlette.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import asyncio
import os
import logging
from logging.handlers import TimedRotatingFileHandler
from datetime import datetime, timezone
from typing import List, Optional

import uvicorn

from config import ROOT_DIR, SECRET_KEYS, config
from models import ConfigUpdate, MonitorEntryCreate, TradeLogImport
import monitor_service

LOG_FILE = ROOT_DIR / 'logs' / 'monitor.log'


# Configure logging: daily rotating file, secrets masked
class _SecretMaskingFilter(logging.Filter):
    """Redact broker tokens from log messages before they hit any handler."""
    _MASK = "***REDACTED***"

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = {
            str(config.get(k))
            for k in SECRET_KEYS
            if config.get(k) and len(str(config.get(k))) > 4
        }
        if not secrets:
            return True
        msg = record.getMessage()
        masked = msg
        for secret in secrets:
            masked = masked.replace(secret, self._MASK)
        if masked != msg:
            record.msg = masked
            record.args = None
        return True


_mask_filter = _SecretMaskingFilter()

file_handler = TimedRotatingFileHandler(
    filename=str(LOG_FILE),
    when='midnight',
    interval=1,
    backupCount=7,
    encoding='utf-8',
)
file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
file_handler.addFilter(_mask_filter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
console_handler.addFilter(_mask_filter)
logging.basicConfig(level=logging.INFO, handlers=[console_handler, file_handler])
logger = logging.getLogger(__name__)

# Per-request quote polling would flood the log otherwise
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


# WebSocket Connection Manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"[WS] Client connected: {getattr(websocket, 'client', None)} | Total={len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"[WS] Client disconnected: {getattr(websocket, 'client', None)} | Total={len(self.active_connections)}")

    async def broadcast(self, message: dict):
        if not self.active_connections:
            return

        # Bounded send; broken or slow sockets are dropped
        stale: List[WebSocket] = []
        for connection in list(self.active_connections):
            try:
                await asyncio.wait_for(connection.send_json(message), timeout=5)
            except asyncio.TimeoutError:
                stale.append(connection)
                logger.warning(f"[WS] Broadcast timeout; dropping client: {getattr(connection, 'client', None)}")
            except Exception as e:
                stale.append(connection)
                logger.warning(f"[WS] Broadcast failed; dropping client {getattr(connection, 'client', None)}: {e}")

        for ws in stale:
            self.disconnect(ws)


manager = ConnectionManager()


async def broadcast_state(snapshot: list) -> None:
    """Called by the coordinator after every tick."""
    await manager.broadcast({
        "type": "state_update",
        "data": {
            "entries": snapshot,
            "stats": monitor_service.trade_log_stats(),
            "mode": config.get("trading_mode", "paper"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    })


# Lifespan context manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    result = await monitor_service.init_services(on_tick=broadcast_state)
    logger.info(
        f"[STARTUP] Store + config loaded | trade_log_entries={result['trade_log_entries']} "
        f"restored={result['restored_symbols']} active={result['active']} mode={config.get('trading_mode')}"
    )
    try:
        yield
    finally:
        await monitor_service.shutdown_services()
        logger.info("[SHUTDOWN] Server shut down")


app = FastAPI(lifespan=lifespan)
api_router = APIRouter(prefix="/api")


def _raise_on_error(result: dict) -> dict:
    if result.get("status") == "error":
        raise HTTPException(status_code=404 if result.get("not_found") else 400, detail=result["message"])
    return result


# ==================== API Routes ====================

@api_router.get("/")
async def root():
    """Health check endpoint"""
    return {"message": "HMA Monitor API", "status": "running"}


@api_router.get("/status")
async def get_status():
    """Get monitor status"""
    return monitor_service.get_monitor_status()


@api_router.get("/indices")
async def get_indices():
    """Get available indices with lot sizes"""
    return monitor_service.get_available_indices_list()


# ==================== Monitor ====================

@api_router.get("/monitor")
async def list_monitored():
    """Monitored entries with their live trade state"""
    return monitor_service.list_monitored()


@api_router.post("/monitor")
async def add_monitored(payload: MonitorEntryCreate):
    return _raise_on_error(await monitor_service.add_symbol(payload.model_dump()))


@api_router.post("/monitor/clear")
async def clear_monitored():
    return await monitor_service.clear_all()


@api_router.post("/monitor/start")
async def start_monitor():
    return await monitor_service.start_monitoring()


@api_router.post("/monitor/stop")
async def stop_monitor():
    return await monitor_service.stop_monitoring()


@api_router.get("/monitor/{entry_id}")
async def get_monitored(entry_id: str):
    return _raise_on_error(monitor_service.get_entry(entry_id))


@api_router.delete("/monitor/{entry_id}")
async def remove_monitored(entry_id: str):
    return _raise_on_error(await monitor_service.remove_symbol(entry_id))


@api_router.post("/monitor/{entry_id}/rearm")
async def rearm_monitored(entry_id: str):
    """Start a new WAITING cycle after target/SL hit"""
    return _raise_on_error(monitor_service.rearm(entry_id))


# ==================== Trade log ====================

@api_router.get("/trade-logs")
async def get_trade_logs(
    date: Optional[str] = Query(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    action: Optional[str] = Query(default=None, pattern="^(BUY|SELL)$"),
):
    """Trade log for one IST date, or all dates newest first"""
    return monitor_service.query_trade_logs(date=date, action=action)


@api_router.get("/trade-logs/dates")
async def get_trade_log_dates():
    return monitor_service.trade_log_dates()


@api_router.get("/trade-logs/stats")
async def get_trade_log_stats():
    return monitor_service.trade_log_stats()


@api_router.get("/trade-logs/export")
async def export_trade_logs():
    return monitor_service.export_trade_logs()


@api_router.post("/trade-logs/import")
async def import_trade_logs(payload: TradeLogImport):
    """Replace the whole trade log with an exported backup"""
    return _raise_on_error(await monitor_service.import_trade_logs(payload.model_dump()))


@api_router.delete("/trade-logs")
async def clear_trade_logs():
    return await monitor_service.clear_trade_logs()


# ==================== Config / logs ====================

@api_router.get("/config")
async def get_config():
    """Get current configuration"""
    return monitor_service.get_config()


@api_router.post("/config/update")
async def update_config(update: ConfigUpdate):
    """Update configuration"""
    return _raise_on_error(await monitor_service.update_config_values(update.model_dump(exclude_none=True)))


@api_router.post("/config/mode")
async def set_mode(mode: str = Query(..., pattern="^(paper|live)$")):
    """Set trading mode"""
    return _raise_on_error(await monitor_service.set_trading_mode(mode))


@api_router.get("/logs")
async def get_logs(level: str = Query(default="all"), limit: int = Query(default=100, le=500)):
    """Tail the service log"""
    logs = []
    if not LOG_FILE.exists():
        return logs

    with open(LOG_FILE, 'r', encoding='utf-8') as f:
        lines = f.readlines()[-limit:]
    for line in lines:
        parts = line.strip().split(' - ')
        if len(parts) < 4:
            continue
        log_level = parts[2]
        if level == "all" or level.upper() == log_level:
            logs.append({
                "timestamp": parts[0],
                "level": log_level,
                "message": ' - '.join(parts[3:]),
            })
    return logs


# ==================== WebSocket ====================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Single WebSocket endpoint.

    Client messages:
      "ping" → "pong"

    Server messages:
      {"type": "state_update", "data": {"entries", "stats", "mode", "timestamp"}}
      {"type": "heartbeat",    "timestamp": "..."}
    """
    expected = config.get('ws_auth_token') or ''
    if expected and websocket.query_params.get('token') != expected:
        await websocket.accept()
        await websocket.send_json({"type": "error", "message": "unauthorized"})
        await websocket.close(code=1008)
        logger.warning(f"[WS] Unauthorized connection attempt from {getattr(websocket, 'client', None)}")
        return

    await manager.connect(websocket)
    client = getattr(websocket, 'client', None)
    try:
        await websocket.send_json({"type": "state_update", "data": {
            "entries": monitor_service.list_monitored(),
            "stats": monitor_service.trade_log_stats(),
            "mode": config.get("trading_mode", "paper"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }})
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30)
                if data == "ping":
                    await websocket.send_text("pong")
                else:
                    logger.debug(f"[WS] Ignoring message from {client}")
            except asyncio.TimeoutError:
                # No message for 30s: send heartbeat to keep connection alive
                await websocket.send_json({"type": "heartbeat", "timestamp": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected: {client}")
    except Exception as e:
        logger.warning(f"[WS] Connection error for {client}: {e}")
    finally:
        manager.disconnect(websocket)


# Include router and middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def main():
    cfg = uvicorn.Config(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8001")),
        log_level="info",
        access_log=False,
    )
    uvicorn.Server(cfg).run()


if __name__ == "__main__":
    main()
