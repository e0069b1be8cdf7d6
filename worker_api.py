# worker_api.py

import json
import os
import queue
import threading
import time
import logging
from typing import Any, Dict, Iterator, List, Optional

import requests
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

logger = logging.getLogger(__name__)

# =========================================================
# Env loader: MUST RUN BEFORE importing modules that read env at import time
# =========================================================
from env_utils import env_int, env_str, load_env
load_env()

import db
import learning
from activity_feed import feed
from alpaca_client import AlpacaAPIError, AlpacaClient
from alpaca_rate_limiter import alpaca_rate_limiter
from bot_manager import BotManager
from market_hours import market_session
from symbol_classifier import normalize_symbol

app = FastAPI()
app.add_middleware(GZipMiddleware, minimum_size=1000)

ALPACA_MODE = (env_str("ALPACA_MODE", "paper") or "paper").strip().lower()
SSE_PING_SEC = float(os.getenv("SSE_PING_SEC", "15"))
MAX_LIST_LIMIT = 500

client: Optional[AlpacaClient] = None
bm: Optional[BotManager] = None
ALPACA_READY = False
ALPACA_ERROR: Optional[str] = None
_APP_START_TIME = time.time()
_globals_lock = threading.Lock()

# =========================================================
# Rate limiting (per client IP, /api/* only)
# =========================================================
RATE_LIMIT_REQUESTS = env_int("RATE_LIMIT_REQUESTS", 0)
RATE_LIMIT_WINDOW_SEC = env_int("RATE_LIMIT_WINDOW_SEC", 60)
_RATE_LIMIT_STORE: Dict[str, List[float]] = {}
_RATE_LIMIT_LOCK = threading.Lock()


def _rate_limit_check(ip: str) -> Optional[str]:
    """Return error msg if rate limited, else None."""
    if RATE_LIMIT_REQUESTS <= 0:
        return None
    now = time.time()
    cutoff = now - RATE_LIMIT_WINDOW_SEC
    with _RATE_LIMIT_LOCK:
        timestamps = [t for t in _RATE_LIMIT_STORE.get(ip, []) if t > cutoff]
        if len(timestamps) >= RATE_LIMIT_REQUESTS:
            _RATE_LIMIT_STORE[ip] = timestamps
            return "Rate limit exceeded. Try again later."
        timestamps.append(now)
        _RATE_LIMIT_STORE[ip] = timestamps[-500:]
    return None


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if path.startswith("/api/") and RATE_LIMIT_REQUESTS > 0:
        client_host = request.client.host if request.client else ""
        err = _rate_limit_check(client_host)
        if err:
            return _json({"ok": False, "error": err}, 429)
    return await call_next(request)


def _json(payload: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code, headers={"Cache-Control": "no-store"})


def _limit(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    return max(1, min(int(value), MAX_LIST_LIMIT))


def _require_bot() -> BotManager:
    if bm is None:
        raise HTTPException(status_code=503, detail=f"Bot not initialized: {ALPACA_ERROR or 'Alpaca client not ready'}")
    return bm


# =========================================================
# Startup / shutdown (never raise; the API stays up without Alpaca)
# =========================================================
def _startup_impl() -> None:
    global client, bm, ALPACA_READY, ALPACA_ERROR
    db.init_db()
    with _globals_lock:
        try:
            client = AlpacaClient(mode=ALPACA_MODE)
            ALPACA_READY = True
            ALPACA_ERROR = None
        except (ValueError, requests.RequestException) as e:
            client = None
            ALPACA_READY = False
            ALPACA_ERROR = str(e)
            logger.warning("Alpaca client not ready (%s). Bot control disabled.", e)
        bm = BotManager(client) if client is not None else None
    if bm is not None:
        resumed = bm.resume_if_needed()
        if resumed and resumed.get("success"):
            logger.info("Bot resumed on startup: %s", resumed["data"]["sessionId"])


@app.on_event("startup")
def startup():
    try:
        _startup_impl()
    except Exception as e:
        logger.exception("startup: unhandled error")
        logger.error("worker_api startup: UNHANDLED ERROR (%s). Running in minimal mode.", e)


@app.on_event("shutdown")
def shutdown():
    if bm is not None:
        bm.shutdown()
    if client is not None:
        client.session.close()


# =========================================================
# Health
# =========================================================
@app.get("/health")
def health():
    """Always 200 + JSON so upstream never 502s."""
    try:
        db.init_db()
        db_ok = True
    except Exception as e:
        logger.warning("health: db check failed: %s", e)
        db_ok = False
    return {
        "ok": True,
        "status": "healthy" if db_ok else "degraded",
        "db_ok": db_ok,
        "alpaca_ready": bool(ALPACA_READY),
        "alpaca_error": ALPACA_ERROR,
        "bot_running": bool(bm and bm.status()["isRunning"]),
        "uptime_sec": int(time.time() - _APP_START_TIME),
        "rate_limiter": alpaca_rate_limiter.stats(),
        "ts": db.now_ts(),
    }


# =========================================================
# Bot control
# =========================================================
@app.post("/api/ai/bot-control")
async def api_bot_control(request: Request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _json({"ok": False, "success": False, "error": "Invalid JSON body"}, 400)
    if not isinstance(body, dict):
        return _json({"ok": False, "success": False, "error": "Body must be a JSON object"}, 400)

    action = str(body.get("action") or "").strip().lower()
    logger.info("Bot control action: %s", action)
    if action not in ("start", "stop", "status"):
        return _json({"ok": False, "success": False, "error": f"Unknown action: {body.get('action')}"}, 400)

    manager = _require_bot()
    if action == "start":
        result = manager.start(body.get("config") or {})
    elif action == "stop":
        result = manager.stop()
    else:
        result = {"success": True, "data": manager.status()}
    return _json({"ok": bool(result.get("success")), **result}, 200 if result.get("success") else 400)


@app.get("/api/ai/bot-control")
def api_bot_control_status():
    if bm is None:
        return _json({"ok": True, "success": True, "data": {
            "isRunning": False, "sessionId": None, "uptime": 0, "status": "STOPPED",
        }})
    st = bm.status()
    return _json({"ok": True, "success": True, "data": {
        "isRunning": st["isRunning"],
        "sessionId": st["sessionId"],
        "uptime": st["uptime"],
        "status": st["status"],
        "config": st["config"],
    }})


# =========================================================
# Records
# =========================================================
@app.get("/api/bot-activity")
def api_bot_activity(limit: Optional[int] = None, type: Optional[str] = None, since_id: Optional[int] = None):
    if type and type not in db.ACTIVITY_TYPES:
        return _json({"ok": False, "error": f"Unknown activity type: {type}"}, 400)
    rows = db.list_activity(limit=_limit(limit, 100), type=type, since_id=since_id)
    return _json({"ok": True, "activities": rows, "count": len(rows)})


@app.get("/api/trades")
def api_trades(limit: Optional[int] = None, symbol: Optional[str] = None):
    sym = normalize_symbol(symbol) if symbol else None
    rows = db.list_trades(limit=_limit(limit, 50), symbol=sym)
    return _json({"ok": True, "trades": rows, "count": len(rows)})


@app.get("/api/bot/metrics")
def api_bot_metrics():
    metrics = db.get_bot_metrics() or {
        "is_running": False, "uptime": 0, "trades_executed": 0, "recommendations_generated": 0,
        "success_rate": 0.0, "total_pnl": 0.0, "daily_pnl": 0.0, "risk_score": 0.0, "last_activity": None,
    }
    return _json({
        "ok": True,
        "metrics": metrics,
        "bot": bm.status() if bm is not None else None,
        "tradesToday": db.count_trades_today(),
    })


@app.get("/api/ai-learning")
def api_ai_learning(limit: Optional[int] = None, symbol: Optional[str] = None):
    sym = normalize_symbol(symbol) if symbol else None
    records = db.list_learning_records(limit=1000, symbol=sym)
    return _json({
        "ok": True,
        "summary": learning.learning_summary(records),
        "records": records[:_limit(limit, 50)],
    })


# =========================================================
# Market
# =========================================================
@app.get("/api/market/clock")
def api_market_clock():
    payload: Dict[str, Any] = {"ok": True, "local": market_session(), "alpaca": None}
    if client is not None:
        try:
            payload["alpaca"] = client.get_clock()
        except (AlpacaAPIError, requests.RequestException) as e:
            logger.warning("Alpaca clock unavailable: %s", e)
            payload["alpaca_error"] = str(e)
    return _json(payload)


@app.get("/api/assets")
def api_assets(asset_class: str = "us_equity"):
    manager = _require_bot()
    if asset_class == "crypto":
        symbols = manager.universe.crypto()
    elif asset_class == "us_equity":
        symbols = manager.universe.stocks()
    else:
        return _json({"ok": False, "error": f"Unknown asset_class: {asset_class}"}, 400)
    return _json({
        "ok": True,
        "asset_class": asset_class,
        "symbols": symbols,
        "count": len(symbols),
        "cache": manager.universe.stats(),
    })


@app.get("/api/analysis/{symbol:path}")
def api_analysis(symbol: str):
    manager = _require_bot()
    sym = normalize_symbol(symbol)
    if not sym:
        return _json({"ok": False, "error": "Symbol required"}, 400)
    result = manager.analyzer.analyze(sym)
    return _json({"ok": True, "symbol": sym, **result.to_dict()})


# =========================================================
# Activity stream (SSE)
# =========================================================
def _sse_events(q: "queue.Queue", ping_sec: float = SSE_PING_SEC, max_events: Optional[int] = None) -> Iterator[str]:
    """Yield SSE frames from a feed subscription, with a ping when idle. Unsubscribes on exit."""
    sent = 0
    try:
        yield "event: ping\ndata: {}\n\n"
        while max_events is None or sent < max_events:
            try:
                event = q.get(timeout=ping_sec)
            except queue.Empty:
                yield "event: ping\ndata: {}\n\n"
                continue
            yield f"event: {event['type']}\ndata: {json.dumps(event, default=str)}\n\n"
            sent += 1
    finally:
        feed.unsubscribe(q)


@app.get("/api/activity/stream")
def api_activity_stream():
    """Server-Sent Events stream of bot activity (activity_log, bot_activity, bot_started, bot_stopped)."""
    q = feed.subscribe()
    return StreamingResponse(_sse_events(q), media_type="text/event-stream", headers={"Cache-Control": "no-store"})
