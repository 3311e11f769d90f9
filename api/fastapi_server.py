from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
import logging

from api.webhook_security import SIGNATURE_HEADER, decode_body, ip_allowed, verify_signature
from config import config
from config.utils import as_bool, get_config_section
from monitoring.logging_utils import setup_logging
from strategy.signal_types import Rejection
from strategy.signal_validator import coerce_float, normalize_symbol


logger = logging.getLogger(__name__)

api_cfg = get_config_section(config, 'api')
WEBHOOK_RATE_LIMIT = str(api_cfg.get('webhook_rate_limit') or '120/minute')

trading_system = None

limiter = Limiter(
    key_func=get_remote_address,
    enabled=as_bool(api_cfg.get('rate_limit_enabled'), True),
)


def webhook_rate_limit() -> str:
    """Per-IP webhook limit, taken from the running system when there is one."""
    if trading_system is not None:
        return trading_system.webhook_rate_limit
    return WEBHOOK_RATE_LIMIT


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    if trading_system is None:
        trading_system = TradingSystem()
    await trading_system.start()
    try:
        yield
    finally:
        await trading_system.stop()


app = FastAPI(title="Signal Ledger API", version="1.0.0", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_cfg.get('cors_origins') or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _system():
    if trading_system is None:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return trading_system


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.get("/")
async def root():
    return {
        "service": "Signal Ledger",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped",
        "webhook": "/webhook",
        "health": "/health",
    }


@app.post("/webhook")
@limiter.limit(webhook_rate_limit)
async def receive_webhook(request: Request):
    system = _system()
    client_ip = request.client.host if request.client else None
    logger.info("Webhook received from %s", client_ip)

    if not ip_allowed(client_ip, system.allowed_ips):
        logger.warning("Rejected webhook from unauthorized IP: %s", client_ip)
        system.auditor.record_intake_rejection('ip_not_allowed', '', client_ip)
        return _error(403, "Unauthorized IP")

    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), system.webhook_secret):
        logger.warning("Invalid webhook signature from %s", client_ip)
        system.auditor.record_intake_rejection('bad_signature', '', client_ip)
        return _error(401, "Invalid signature")

    if len(body) > system.max_body_bytes:
        logger.warning("Webhook body of %d bytes exceeds limit", len(body))
        return _error(400, "Invalid webhook data", reason="payload_too_large")

    try:
        payload = decode_body(body)
    except ValueError as exc:
        logger.warning("Undecodable webhook body: %s", exc)
        return _error(400, "Invalid webhook data", reason="malformed_payload")

    status, result = system.ingest(payload)
    if status == 'rejected':
        logger.warning("Invalid signal rejected: %s (%s)", result.reason, result.detail)
        return _error(400, "Invalid webhook data", reason=result.reason, detail=result.detail)
    if status == 'duplicate_ignored':
        return {"status": "duplicate_ignored"}
    return {"status": "received", "signalId": result.signal_id}


@app.get("/health")
async def health():
    system = _system()
    return {
        "status": "healthy",
        "recentSignalsCount": len(system.deduplicator),
        "active": system.active,
        "running": system.running,
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/signals/recent")
async def recent_signals():
    return _system().recent_signals()


@app.get("/status")
async def status():
    return _system().status()


@app.get("/portfolio")
async def portfolio():
    return _system().portfolio_summary()


@app.get("/positions")
async def positions():
    items = _system().open_positions()
    return {"positions": items, "count": len(items)}


@app.get("/trades")
async def trades(limit: Optional[int] = Query(None, ge=1)):
    items = _system().closed_trades(limit)
    return {"trades": items, "count": len(items)}


@app.post("/positions/{position_id}/close")
async def close_position(position_id: str, price: Optional[float] = None):
    system = _system()
    if price is not None and price <= 0:
        return _error(400, "Price must be positive")
    trade = await system.close_position(position_id, price, 'manual')
    if trade is None:
        return _error(404, "Position not found", position_id=position_id)
    return {"status": "closed", "trade": trade.to_dict()}


@app.post("/prices")
async def update_prices(request: Request):
    system = _system()
    try:
        data = await request.json()
    except ValueError:
        return _error(400, "Invalid price update")
    updates = data.get('prices') if isinstance(data, dict) and 'prices' in data else data
    if isinstance(updates, dict) and 'symbol' in updates:
        updates = {updates.get('symbol'): updates.get('price')}
    if not isinstance(updates, dict) or not updates:
        return _error(400, "Invalid price update")

    accepted = {}
    for raw_symbol, raw_price in updates.items():
        symbol = normalize_symbol(raw_symbol)
        price = coerce_float(raw_price)
        if not symbol or price is None or price <= 0:
            return _error(400, "Invalid price update", symbol=str(raw_symbol))
        accepted[symbol] = price
    for symbol, price in accepted.items():
        system.update_price(symbol, price)
    return {"status": "pending", "updated": len(accepted)}


@app.post("/intents")
async def submit_intent(request: Request):
    system = _system()
    try:
        data = await request.json()
    except ValueError:
        return _error(400, "Invalid intent")
    intent = system.validator.validate_intent(data)
    if isinstance(intent, Rejection):
        return _error(400, "Invalid intent", reason=intent.reason, detail=intent.detail)
    position = await system.submit_intent(intent)
    if position is None:
        return {"status": "rejected", "rejection": system.last_rejection}
    return {"status": "opened", "position": position.to_dict()}


@app.post("/admin/pause")
async def pause():
    system = _system()
    system.pause()
    return {"status": "paused"}


@app.post("/admin/resume")
async def resume():
    system = _system()
    system.resume()
    return {"status": "active"}


@app.get("/metrics")
async def prometheus_metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    monitoring_cfg = get_config_section(config, 'monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), log_file=monitoring_cfg.get('log_file') or None)
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 3000)),
        log_level="info"
    )
