# db.py
import json
import os
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DB_NAME = os.getenv("BOT_DB_PATH", "botdb.sqlite3")

ACTIVITY_TYPES = frozenset({"trade", "recommendation", "risk", "system", "info", "error"})
ACTIVITY_STATUSES = frozenset({"completed", "failed", "pending"})
TRADE_SIDES = frozenset({"buy", "sell"})
TRADE_STATUSES = frozenset({"FILLED", "PARTIAL", "PENDING", "REJECTED"})
LEARNING_OUTCOMES = frozenset({"profit", "loss", "breakeven"})

# Counters that increment_bot_metric may touch (column names are interpolated)
_METRIC_COUNTERS = frozenset({"trades_executed", "recommendations_generated"})
_METRIC_FIELDS = frozenset({
    "is_running", "uptime", "trades_executed", "recommendations_generated", "success_rate",
    "total_pnl", "daily_pnl", "risk_score", "last_activity",
})


def _conn() -> sqlite3.Connection:
    """
    Stability-focused SQLite connection:
    - WAL mode so the API can read while the bot thread writes
    - busy_timeout makes SQLite wait briefly instead of failing immediately
    """
    con = sqlite3.connect(DB_NAME, check_same_thread=False, timeout=30.0)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA synchronous=NORMAL;")
    con.execute("PRAGMA busy_timeout=5000;")
    return con


def now_ts() -> int:
    return int(time.time())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_start_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0).isoformat()


def _dumps(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj
    return json.dumps(obj, default=str)


def _loads(raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def init_db() -> None:
    """Creates tables if missing. Safe to call multiple times."""
    con = _conn()
    try:
        cur = con.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bot_activity_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                type TEXT NOT NULL,
                symbol TEXT,
                message TEXT NOT NULL,
                status TEXT NOT NULL,
                execution_time INTEGER,
                session_id TEXT,
                details TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS trade_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                side TEXT NOT NULL,
                quantity REAL NOT NULL,
                price REAL NOT NULL,
                value REAL NOT NULL,
                timestamp TEXT NOT NULL,
                status TEXT NOT NULL,
                strategy TEXT,
                pnl REAL,
                fees REAL,
                order_id TEXT,
                ai_confidence REAL,
                session_id TEXT,
                created_at INTEGER NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bot_metrics (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                is_running INTEGER NOT NULL DEFAULT 0,
                uptime INTEGER NOT NULL DEFAULT 0,
                trades_executed INTEGER NOT NULL DEFAULT 0,
                recommendations_generated INTEGER NOT NULL DEFAULT 0,
                success_rate REAL NOT NULL DEFAULT 0,
                total_pnl REAL NOT NULL DEFAULT 0,
                daily_pnl REAL NOT NULL DEFAULT 0,
                risk_score REAL NOT NULL DEFAULT 0,
                last_activity TEXT,
                updated_at INTEGER NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS ai_learning_data (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trade_id INTEGER,
                symbol TEXT NOT NULL,
                outcome TEXT NOT NULL,
                profit_loss REAL NOT NULL,
                confidence_score REAL NOT NULL,
                market_conditions TEXT NOT NULL,
                sentiment_score REAL,
                technical_indicators TEXT NOT NULL,
                strategy_used TEXT NOT NULL,
                learned_patterns TEXT,
                created_at TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bot_sessions (
                session_id TEXT PRIMARY KEY,
                config_json TEXT NOT NULL,
                started_at INTEGER NOT NULL,
                ended_at INTEGER,
                status TEXT NOT NULL DEFAULT 'active',
                stop_reason TEXT,
                cycles INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_activity_ts ON bot_activity_logs(timestamp);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_trade_history_symbol ON trade_history(symbol);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_trade_history_ts ON trade_history(timestamp);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_learning_symbol ON ai_learning_data(symbol);")
        con.commit()
    finally:
        con.close()


# =========================================================
# Activity logs
# =========================================================
def add_activity(
    type: str,
    message: str,
    status: str = "completed",
    symbol: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    execution_time: Optional[int] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Insert one bot activity row and return it."""
    if type not in ACTIVITY_TYPES:
        raise ValueError(f"Invalid activity type: {type}")
    if status not in ACTIVITY_STATUSES:
        raise ValueError(f"Invalid activity status: {status}")
    ts = now_iso()
    con = _conn()
    try:
        cur = con.execute(
            """
            INSERT INTO bot_activity_logs(timestamp, type, symbol, message, status, execution_time, session_id, details)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (ts, type, symbol, str(message), status,
             int(execution_time) if execution_time is not None else None,
             session_id, _dumps(details)),
        )
        con.commit()
        row_id = cur.lastrowid
    finally:
        con.close()
    return {
        "id": row_id,
        "timestamp": ts,
        "type": type,
        "symbol": symbol,
        "message": str(message),
        "status": status,
        "execution_time": execution_time,
        "session_id": session_id,
        "details": details,
    }


def list_activity(limit: int = 100, type: Optional[str] = None, since_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Newest first, or ascending ids after since_id when polling."""
    clauses = []
    params: List[Any] = []
    if type:
        clauses.append("type = ?")
        params.append(type)
    if since_id is not None:
        clauses.append("id > ?")
        params.append(int(since_id))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    order = "ASC" if since_id is not None else "DESC"
    params.append(int(limit))
    con = _conn()
    try:
        rows = con.execute(
            f"SELECT * FROM bot_activity_logs {where} ORDER BY id {order} LIMIT ?",
            params,
        ).fetchall()
    finally:
        con.close()
    out = []
    for r in rows:
        d = dict(r)
        d["details"] = _loads(d.get("details"))
        out.append(d)
    return out


# =========================================================
# Trade history
# =========================================================
def save_trade(
    symbol: str,
    side: str,
    quantity: float,
    price: float,
    value: float,
    status: str,
    order_id: Optional[str] = None,
    ai_confidence: Optional[float] = None,
    strategy: Optional[str] = None,
    session_id: Optional[str] = None,
    timestamp: Optional[str] = None,
    pnl: Optional[float] = None,
    fees: Optional[float] = None,
) -> int:
    side = str(side).lower()
    if side not in TRADE_SIDES:
        raise ValueError(f"Invalid trade side: {side}")
    if status not in TRADE_STATUSES:
        raise ValueError(f"Invalid trade status: {status}")
    con = _conn()
    try:
        cur = con.execute(
            """
            INSERT INTO trade_history(
                symbol, side, quantity, price, value, timestamp, status, strategy,
                pnl, fees, order_id, ai_confidence, session_id, created_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (symbol, side, float(quantity), float(price), float(value), timestamp or now_iso(), status,
             strategy, pnl, fees, order_id, ai_confidence, session_id, now_ts()),
        )
        con.commit()
        return int(cur.lastrowid)
    finally:
        con.close()


def list_trades(limit: int = 50, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
    con = _conn()
    try:
        if symbol:
            rows = con.execute(
                "SELECT * FROM trade_history WHERE symbol=? ORDER BY id DESC LIMIT ?",
                (symbol, int(limit)),
            ).fetchall()
        else:
            rows = con.execute(
                "SELECT * FROM trade_history ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [dict(r) for r in rows]
    finally:
        con.close()


def get_trade(trade_id: int) -> Optional[Dict[str, Any]]:
    con = _conn()
    try:
        row = con.execute("SELECT * FROM trade_history WHERE id=?", (int(trade_id),)).fetchone()
        return dict(row) if row else None
    finally:
        con.close()


def count_trades_today() -> int:
    con = _conn()
    try:
        row = con.execute(
            "SELECT COUNT(*) AS n FROM trade_history WHERE timestamp >= ? AND status != 'REJECTED'",
            (today_start_iso(),),
        ).fetchone()
        return int(row["n"] or 0)
    finally:
        con.close()


def symbols_traded_today(side: Optional[str] = None) -> List[str]:
    """Symbols with a non-rejected trade since UTC midnight (PDT same-day tracking)."""
    sql = "SELECT DISTINCT symbol FROM trade_history WHERE timestamp >= ? AND status != 'REJECTED'"
    params: List[Any] = [today_start_iso()]
    if side:
        sql += " AND side = ?"
        params.append(side.lower())
    con = _conn()
    try:
        return [r["symbol"] for r in con.execute(sql, params).fetchall()]
    finally:
        con.close()


def update_trade_status(order_id: str, status: str, pnl: Optional[float] = None) -> int:
    """Returns number of rows updated."""
    if status not in TRADE_STATUSES:
        raise ValueError(f"Invalid trade status: {status}")
    con = _conn()
    try:
        if pnl is None:
            cur = con.execute("UPDATE trade_history SET status=? WHERE order_id=?", (status, order_id))
        else:
            cur = con.execute(
                "UPDATE trade_history SET status=?, pnl=? WHERE order_id=?",
                (status, float(pnl), order_id),
            )
        con.commit()
        return int(cur.rowcount)
    finally:
        con.close()


# =========================================================
# Bot metrics (single row)
# =========================================================
def upsert_bot_metrics(
    is_running: bool,
    uptime: int,
    last_activity: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    unknown = set(fields) - _METRIC_FIELDS
    if unknown:
        raise ValueError(f"Unknown bot metric fields: {sorted(unknown)}")
    values: Dict[str, Any] = {
        "is_running": 1 if is_running else 0,
        "uptime": int(uptime),
        "last_activity": last_activity or now_iso(),
    }
    values.update(fields)
    cols = list(values.keys())
    placeholders = ",".join("?" for _ in cols)
    updates = ",".join(f"{c}=excluded.{c}" for c in cols)
    con = _conn()
    try:
        con.execute(
            f"""
            INSERT INTO bot_metrics(id, {','.join(cols)}, updated_at) VALUES (1, {placeholders}, ?)
            ON CONFLICT(id) DO UPDATE SET {updates}, updated_at=excluded.updated_at
            """,
            [values[c] for c in cols] + [now_ts()],
        )
        con.commit()
    finally:
        con.close()
    return get_bot_metrics() or {}


def increment_bot_metric(name: str, by: int = 1) -> None:
    if name not in _METRIC_COUNTERS:
        raise ValueError(f"Not a counter metric: {name}")
    con = _conn()
    try:
        con.execute(
            f"""
            INSERT INTO bot_metrics(id, {name}, updated_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET {name}={name}+excluded.{name}, updated_at=excluded.updated_at
            """,
            (int(by), now_ts()),
        )
        con.commit()
    finally:
        con.close()


def get_bot_metrics() -> Optional[Dict[str, Any]]:
    con = _conn()
    try:
        row = con.execute("SELECT * FROM bot_metrics WHERE id=1").fetchone()
    finally:
        con.close()
    if not row:
        return None
    d = dict(row)
    d["is_running"] = bool(d.get("is_running"))
    return d


# =========================================================
# AI learning data
# =========================================================
def add_learning_record(
    symbol: str,
    outcome: str,
    profit_loss: float,
    confidence_score: float,
    market_conditions: Dict[str, Any],
    technical_indicators: Dict[str, Any],
    strategy_used: str,
    trade_id: Optional[int] = None,
    sentiment_score: Optional[float] = None,
    learned_patterns: Optional[Dict[str, Any]] = None,
) -> int:
    if outcome not in LEARNING_OUTCOMES:
        raise ValueError(f"Invalid learning outcome: {outcome}")
    con = _conn()
    try:
        cur = con.execute(
            """
            INSERT INTO ai_learning_data(
                trade_id, symbol, outcome, profit_loss, confidence_score, market_conditions,
                sentiment_score, technical_indicators, strategy_used, learned_patterns, created_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (trade_id, symbol, outcome, float(profit_loss), float(confidence_score),
             _dumps(market_conditions or {}), sentiment_score, _dumps(technical_indicators or {}),
             strategy_used, _dumps(learned_patterns), now_iso()),
        )
        con.commit()
        return int(cur.lastrowid)
    finally:
        con.close()


def list_learning_records(limit: int = 1000, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
    con = _conn()
    try:
        if symbol:
            rows = con.execute(
                "SELECT * FROM ai_learning_data WHERE symbol=? ORDER BY id DESC LIMIT ?",
                (symbol, int(limit)),
            ).fetchall()
        else:
            rows = con.execute(
                "SELECT * FROM ai_learning_data ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
    finally:
        con.close()
    out = []
    for r in rows:
        d = dict(r)
        for k in ("market_conditions", "technical_indicators", "learned_patterns"):
            d[k] = _loads(d.get(k))
        out.append(d)
    return out


# =========================================================
# Bot sessions (survive restarts)
# =========================================================
def save_bot_session(session_id: str, config: Dict[str, Any], started_at: Optional[int] = None) -> None:
    con = _conn()
    try:
        # only one session may be active at a time
        con.execute(
            "UPDATE bot_sessions SET status='stopped', ended_at=?, stop_reason='superseded' WHERE status='active'",
            (now_ts(),),
        )
        con.execute(
            "INSERT INTO bot_sessions(session_id, config_json, started_at, status) VALUES (?,?,?, 'active')",
            (session_id, _dumps(config or {}), int(started_at or now_ts())),
        )
        con.commit()
    finally:
        con.close()


def get_active_session() -> Optional[Dict[str, Any]]:
    con = _conn()
    try:
        row = con.execute(
            "SELECT * FROM bot_sessions WHERE status='active' ORDER BY started_at DESC LIMIT 1"
        ).fetchone()
    finally:
        con.close()
    if not row:
        return None
    d = dict(row)
    d["config"] = _loads(d.pop("config_json")) or {}
    return d


def bump_session_cycles(session_id: str) -> None:
    con = _conn()
    try:
        con.execute("UPDATE bot_sessions SET cycles=cycles+1 WHERE session_id=?", (session_id,))
        con.commit()
    finally:
        con.close()


def end_bot_session(session_id: str, reason: str = "manual_stop") -> None:
    con = _conn()
    try:
        con.execute(
            "UPDATE bot_sessions SET status='stopped', ended_at=?, stop_reason=? WHERE session_id=?",
            (now_ts(), str(reason)[:64], session_id),
        )
        con.commit()
    finally:
        con.close()
