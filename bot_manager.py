# bot_manager.py
"""
Bot lifecycle and the polling timer.

One bot per process. start() spins a daemon thread that runs a trading cycle
every BOT_INTERVAL_SEC seconds: pick a random tradable symbol, score it, and
either send the order through the executor or log a recommendation.
"""
import logging
import random
import sqlite3
import string
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import db
from activity_feed import feed, log_activity
from asset_universe import AssetUniverse
from bot_config import BotConfig
from env_utils import env_bool, env_int
from executor import OrderExecutor
from market_hours import is_market_hours
from symbol_classifier import is_crypto_symbol
from technical_analyzer import SIGNAL_HOLD, TechnicalAnalyzer

logger = logging.getLogger(__name__)

BOT_INTERVAL_SEC = env_int("BOT_INTERVAL_SEC", 30)
STOP_JOIN_TIMEOUT_SEC = env_int("STOP_JOIN_TIMEOUT_SEC", 10)
# 0 disables the halt
MAX_CONSECUTIVE_ERRORS = env_int("MAX_CONSECUTIVE_ERRORS", 0)
BOT_AUTO_RESUME = env_bool("BOT_AUTO_RESUME", False)

_BASE36 = string.digits + string.ascii_lowercase


def new_session_id(now_ms: Optional[int] = None, rng: Any = random) -> str:
    """session_<epoch ms>_<9 base36 chars>"""
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    suffix = "".join(rng.choice(_BASE36) for _ in range(9))
    return f"session_{ms}_{suffix}"


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class BotState:
    is_running: bool = False
    config: Optional[BotConfig] = None
    start_time: Optional[float] = None
    session_id: Optional[str] = None

    cycles: int = 0
    last_cycle_at: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_errors: int = 0

    def uptime_sec(self, now: Optional[float] = None) -> float:
        if not self.start_time:
            return 0.0
        return max(0.0, (now or time.time()) - self.start_time)


class BotManager:
    def __init__(
        self,
        client: Any,
        interval_sec: int = BOT_INTERVAL_SEC,
        universe: Optional[AssetUniverse] = None,
        analyzer: Optional[TechnicalAnalyzer] = None,
        executor: Optional[OrderExecutor] = None,
        market_open_fn: Callable[[], bool] = is_market_hours,
        rng: Any = None,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
    ):
        self.client = client
        self.interval_sec = interval_sec
        self.universe = universe or AssetUniverse(client)
        self.analyzer = analyzer or TechnicalAnalyzer(client)
        self.executor = executor or OrderExecutor(client)
        self.market_open_fn = market_open_fn
        self.max_consecutive_errors = max_consecutive_errors
        self._rng = rng or random.Random()

        self.state = BotState()
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -----------------
    # Lifecycle
    # -----------------
    def start(self, config_dict: Optional[Dict[str, Any]] = None, resumed_from: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if self.state.is_running:
                logger.warning("Bot start requested but already running (session %s)", self.state.session_id)
                return {
                    "success": False,
                    "error": "Bot is already running",
                    "data": {
                        "sessionId": self.state.session_id,
                        "startTime": _iso(self.state.start_time),
                        "uptime": int(self.state.uptime_sec() * 1000),
                        "config": self.state.config.summary() if self.state.config else None,
                    },
                }
            try:
                config = BotConfig.from_dict(config_dict)
            except ValueError as e:
                return {"success": False, "error": "Invalid bot config", "details": str(e)}

            session_id = new_session_id(rng=self._rng)
            self.state = BotState(is_running=True, config=config, start_time=time.time(), session_id=session_id)
            self._stop = threading.Event()

        auto = config.execution_settings.auto_execute
        # the dashboard payload as sent, so a resume parses it the same way
        raw_config = dict(config_dict or {})
        try:
            db.upsert_bot_metrics(True, 0)
            db.save_bot_session(session_id, raw_config, started_at=int(self.state.start_time))
        except sqlite3.Error as e:
            logger.warning("Failed to persist bot start: %s", e)
        details = {
            "sessionId": session_id,
            "config": raw_config,
            "alpacaIntegration": True,
            "autoExecute": auto,
        }
        if resumed_from:
            details["resumedFrom"] = resumed_from
        log_activity("system", f"AI Trading Bot started with session {session_id}", details=details,
                     session_id=session_id)
        feed.publish("bot_started", {
            "sessionId": session_id,
            "config": {"mode": config.mode, "strategiesCount": len(config.strategies), "autoExecute": auto},
        })

        self._thread = threading.Thread(target=self._loop, args=(session_id, self._stop), daemon=True)
        self._thread.start()
        logger.info("AI Trading Bot started: session=%s mode=%s auto_execute=%s interval=%ss",
                    session_id, config.mode, auto, self.interval_sec)
        return {
            "success": True,
            "data": {
                "sessionId": session_id,
                "message": "AI Trading Bot started successfully",
                "config": config.summary(),
                "startTime": _iso(self.state.start_time),
            },
        }

    def stop(self, reason: str = "manual_stop") -> Dict[str, Any]:
        with self._lock:
            if not self.state.is_running:
                self.state = BotState()
                return {"success": True, "message": "Bot was not running, cleanup performed"}
            session_id = self.state.session_id
            uptime = self.state.uptime_sec()
            self.state.is_running = False
            stop_event, th = self._stop, self._thread

        self._halt_thread(stop_event, th)
        try:
            db.upsert_bot_metrics(False, int(uptime))
            db.end_bot_session(session_id, reason)
        except sqlite3.Error as e:
            logger.warning("Failed to persist bot stop: %s", e)
        log_activity(
            "system",
            f"AI Trading Bot stopped. Session duration: {int(uptime)}s",
            details={"sessionId": session_id, "duration": int(uptime * 1000), "reason": reason},
            session_id=session_id,
        )
        feed.publish("bot_stopped", {"sessionId": session_id, "uptime": int(uptime // 60), "reason": reason})
        logger.info("AI Trading Bot stopped: session=%s uptime=%dm reason=%s", session_id, int(uptime // 60), reason)

        with self._lock:
            self.state = BotState()
        return {
            "success": True,
            "data": {
                "message": "AI Trading Bot stopped successfully",
                "sessionId": session_id,
                "uptime": int(uptime // 60),
                "stoppedAt": db.now_iso(),
            },
        }

    def shutdown(self) -> None:
        """Process exit: stop the thread but leave the session row active for resume_if_needed()."""
        with self._lock:
            if not self.state.is_running:
                return
            session_id = self.state.session_id
            uptime = self.state.uptime_sec()
            self.state.is_running = False
            stop_event, th = self._stop, self._thread
        self._halt_thread(stop_event, th)
        try:
            db.upsert_bot_metrics(False, int(uptime))
        except sqlite3.Error as e:
            logger.warning("Failed to persist bot metrics on shutdown: %s", e)
        logger.info("Bot loop halted for shutdown; session %s left active", session_id)

    def resume_if_needed(self, enabled: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        """Restart the bot from the last active session row. Returns the start() result or None."""
        if not (BOT_AUTO_RESUME if enabled is None else enabled):
            return None
        with self._lock:
            if self.state.is_running:
                return None
        row = db.get_active_session()
        if not row:
            return None
        logger.info("Resuming bot from session %s", row["session_id"])
        return self.start(row.get("config") or {}, resumed_from=row["session_id"])

    def _halt_thread(self, stop_event: threading.Event, th: Optional[threading.Thread]) -> None:
        stop_event.set()
        # the loop may halt itself after repeated errors
        if th and th.is_alive() and th is not threading.current_thread():
            th.join(timeout=STOP_JOIN_TIMEOUT_SEC)
            if th.is_alive():
                logger.warning("Bot thread still shutting down after %ss", STOP_JOIN_TIMEOUT_SEC)
        with self._lock:
            if self._thread is th:
                self._thread = None

    def status(self) -> Dict[str, Any]:
        with self._lock:
            st = self.state
            return {
                "isRunning": st.is_running,
                "sessionId": st.session_id,
                "startTime": _iso(st.start_time),
                "uptime": int(st.uptime_sec() * 1000) if st.is_running else 0,
                "config": st.config.summary() if st.config else None,
                "status": "RUNNING" if st.is_running else "STOPPED",
                "cycles": st.cycles,
                "lastCycleAt": _iso(st.last_cycle_at),
                "lastError": st.last_error,
                "intervalSec": self.interval_sec,
            }

    # -----------------
    # Timer
    # -----------------
    def _loop(self, session_id: str, stop_event: threading.Event) -> None:
        logger.info("Trading loop scheduled every %ss for session %s", self.interval_sec, session_id)
        while not stop_event.wait(self.interval_sec):
            with self._lock:
                if not self.state.is_running or self.state.session_id != session_id:
                    break
            self.run_cycle()
            with self._lock:
                errors = self.state.consecutive_errors
            if self.max_consecutive_errors and errors >= self.max_consecutive_errors:
                logger.error("Halting bot after %d consecutive failed cycles", errors)
                log_activity(
                    "error",
                    f"AI Trading Bot halted after {errors} consecutive errors",
                    status="failed",
                    details={"sessionId": session_id, "consecutiveErrors": errors},
                    session_id=session_id,
                )
                self.stop(reason="max_consecutive_errors")
                break
        logger.info("Trading loop exited for session %s", session_id)

    def run_cycle(self) -> Dict[str, Any]:
        """
        One trading cycle. Never raises; failures are logged as an error activity.
        Returns a summary dict with an "action" of skipped_volatile, hold,
        low_confidence, recommended, executed, stopped or error.
        """
        with self._lock:
            if not self.state.is_running or not self.state.config:
                return {"ok": False, "action": "not_running"}
            session_id = self.state.session_id
            config = self.state.config
            self.state.cycles += 1
            self.state.last_cycle_at = time.time()

        t0 = time.time()
        try:
            db.bump_session_cycles(session_id)
            market_open = bool(self.market_open_fn())
            pool = self.universe.symbol_pool(market_open)
            if not pool:
                raise RuntimeError("No tradable symbols available")
            symbol = self._rng.choice(pool)
            logger.info(
                "Analyzing %s %s (market %s, pool of %d)",
                "CRYPTO" if is_crypto_symbol(symbol) else "STOCK", symbol,
                "OPEN" if market_open else "CLOSED", len(pool),
            )

            analysis = self.analyzer.analyze(symbol)
            result: Dict[str, Any] = {
                "ok": True,
                "symbol": symbol,
                "signal": analysis.signal,
                "confidence": analysis.confidence,
                "marketCondition": analysis.market_condition,
                "marketOpen": market_open,
            }
            if analysis.market_condition == "VOLATILE":
                logger.info("Skipping %s - too volatile (%.2f%%)", symbol,
                            analysis.indicators.get("volatility", 0.0) * 100)
                return self._cycle_done(result, "skipped_volatile")
            if analysis.signal == SIGNAL_HOLD:
                logger.info("Skipping %s - no clear signal (score %.1f)", symbol, analysis.indicators.get("score", 50.0))
                return self._cycle_done(result, "hold")

            min_conf = config.min_confidence()
            rsi = analysis.indicators.get("rsi")
            log_activity(
                "info",
                f"AI analyzing {symbol} | Signal: {analysis.signal} | Confidence: {analysis.confidence * 100:.1f}% | "
                f"RSI: {f'{rsi:.1f}' if rsi is not None else 'N/A'}",
                symbol=symbol,
                details={
                    "signal": analysis.signal,
                    "confidence": analysis.confidence,
                    "sessionId": session_id,
                    "minConfidenceRequired": min_conf,
                    "technicalIndicators": analysis.indicators,
                    "marketCondition": analysis.market_condition,
                },
                session_id=session_id,
                execution_time=int((time.time() - t0) * 1000),
            )

            auto = config.execution_settings.auto_execute
            executed = False
            if analysis.confidence >= min_conf:
                db.increment_bot_metric("recommendations_generated")
                if auto:
                    if not self._is_current(session_id):
                        logger.info("Session %s stopped mid-cycle, not executing %s %s",
                                    session_id, analysis.signal, symbol)
                        return self._cycle_done(result, "stopped")
                    execution = self.executor.execute(
                        symbol, analysis.signal, analysis.confidence, session_id=session_id,
                        market_open=market_open, analysis=analysis.to_dict(),
                    )
                    result["execution"] = execution
                    executed = bool(execution.get("success"))
                    action = "executed"
                else:
                    log_activity(
                        "recommendation",
                        f"AI recommends {analysis.signal} {symbol} with {analysis.confidence * 100:.1f}% confidence",
                        symbol=symbol,
                        details={
                            "signal": analysis.signal,
                            "confidence": analysis.confidence,
                            "reason": "ai_analysis",
                            "sessionId": session_id,
                            "manualExecutionRequired": True,
                        },
                        session_id=session_id,
                    )
                    action = "recommended"
            else:
                logger.info("Confidence too low (%.1f%% < %.1f%%) for %s - no trade",
                            analysis.confidence * 100, min_conf * 100, symbol)
                action = "low_confidence"

            with self._lock:
                current = self.state.is_running and self.state.session_id == session_id
                uptime = self.state.uptime_sec()
            if current:
                db.upsert_bot_metrics(True, int(uptime))
            feed.publish("bot_activity", {
                "sessionId": session_id,
                "activity": f"AI analyzed {symbol} | Signal: {analysis.signal} | "
                            f"Confidence: {analysis.confidence * 100:.1f}%",
                "symbol": symbol,
                "signal": analysis.signal,
                "confidence": analysis.confidence,
                "executed": executed,
            })
            return self._cycle_done(result, action)
        except Exception as e:
            logger.exception("Trading cycle failed for session %s", session_id)
            with self._lock:
                self.state.last_error = str(e)
                self.state.consecutive_errors += 1
            log_activity(
                "error",
                f"AI Trading logic error: {e}",
                status="failed",
                details={"error": str(e), "sessionId": session_id},
                session_id=session_id,
            )
            return {"ok": False, "action": "error", "error": str(e)}

    def _is_current(self, session_id: str) -> bool:
        with self._lock:
            return self.state.is_running and self.state.session_id == session_id

    def _cycle_done(self, result: Dict[str, Any], action: str) -> Dict[str, Any]:
        with self._lock:
            self.state.consecutive_errors = 0
        result["action"] = action
        return result
