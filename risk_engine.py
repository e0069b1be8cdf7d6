# risk_engine.py
"""
Pre-order risk gate. Single source of truth for "may this order go out?"

Every check returns (allowed, reason) and logs RISK_BLOCKED when it says no.
evaluate() runs the chain in order and stops at the first block.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from env_utils import env_float, env_int
from symbol_classifier import is_crypto_symbol, normalize_symbol

logger = logging.getLogger(__name__)

REASON_ACCOUNT_RESTRICTED = "account_restricted"
REASON_MARKET_CLOSED = "market_closed"
REASON_SAME_DIRECTION = "existing_position_same_direction"


@dataclass
class RiskConfig:
    """Risk limits from env. Sane defaults for a small paper account."""
    MIN_ORDER_VALUE: float = 25.0
    MAX_ORDER_VALUE: float = 1000.0
    BUYING_POWER_BUFFER: float = 0.05
    MAX_POSITION_PCT: float = 0.10
    MAX_ORDERS_PER_DAY: int = 20
    MAX_DAILY_LOSS_PCT: float = 0.02
    PDT_EQUITY_THRESHOLD: float = 25000.0
    PDT_MAX_DAY_TRADES: int = 3
    SMALL_ACCOUNT_EQUITY: float = 1000.0
    SMALL_ACCOUNT_MAX_POSITIONS: int = 5

    def __post_init__(self):
        self.MIN_ORDER_VALUE = env_float("RISK_MIN_ORDER_VALUE", self.MIN_ORDER_VALUE)
        self.MAX_ORDER_VALUE = env_float("RISK_MAX_ORDER_VALUE", self.MAX_ORDER_VALUE)
        self.BUYING_POWER_BUFFER = env_float("RISK_BUYING_POWER_BUFFER", self.BUYING_POWER_BUFFER)
        self.MAX_POSITION_PCT = env_float("RISK_MAX_POSITION_PCT", self.MAX_POSITION_PCT)
        self.MAX_ORDERS_PER_DAY = env_int("RISK_MAX_ORDERS_PER_DAY", self.MAX_ORDERS_PER_DAY)
        self.MAX_DAILY_LOSS_PCT = env_float("RISK_MAX_DAILY_LOSS_PCT", self.MAX_DAILY_LOSS_PCT)
        self.PDT_EQUITY_THRESHOLD = env_float("RISK_PDT_EQUITY_THRESHOLD", self.PDT_EQUITY_THRESHOLD)
        self.PDT_MAX_DAY_TRADES = env_int("RISK_PDT_MAX_DAY_TRADES", self.PDT_MAX_DAY_TRADES)
        self.SMALL_ACCOUNT_EQUITY = env_float("RISK_SMALL_ACCOUNT_EQUITY", self.SMALL_ACCOUNT_EQUITY)
        self.SMALL_ACCOUNT_MAX_POSITIONS = env_int("RISK_SMALL_ACCOUNT_MAX_POSITIONS", self.SMALL_ACCOUNT_MAX_POSITIONS)


def _f(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def _pos_key(symbol: str) -> str:
    # Alpaca reports crypto positions without the slash (BTCUSD)
    return normalize_symbol(symbol).replace("/", "")


def find_position(positions: List[Dict[str, Any]], symbol: str) -> Optional[Dict[str, Any]]:
    key = _pos_key(symbol)
    for p in positions or []:
        if _pos_key(str(p.get("symbol") or "")) == key:
            return p
    return None


def position_side(position: Optional[Dict[str, Any]]) -> Optional[str]:
    """LONG for a positive quantity, SHORT otherwise, None when flat."""
    if not position:
        return None
    qty = _f(position.get("qty", position.get("quantity", 0)))
    return "LONG" if qty > 0 else "SHORT"


def opening_side(position: Optional[Dict[str, Any]]) -> Optional[str]:
    """Order side that opened a position: buy for a LONG, sell for a SHORT."""
    return {"LONG": "buy", "SHORT": "sell"}.get(position_side(position))


@dataclass
class RiskContext:
    """Everything the checks need, gathered once per order attempt."""
    symbol: str
    side: str  # "buy" | "sell"
    notional: float
    market_open: bool
    account: Dict[str, Any] = field(default_factory=dict)
    positions: List[Dict[str, Any]] = field(default_factory=list)
    orders_today: int = 0
    daily_pnl_pct: Optional[float] = None
    opened_today: List[str] = field(default_factory=list)
    config: Optional[RiskConfig] = None

    @property
    def is_crypto(self) -> bool:
        return is_crypto_symbol(self.symbol)

    @property
    def equity(self) -> float:
        return _f(self.account.get("equity"))

    @property
    def buying_power(self) -> float:
        return _f(self.account.get("buying_power"))

    @property
    def cfg(self) -> RiskConfig:
        return self.config or RiskConfig()


def _blocked(check: str, reason: str) -> Tuple[bool, str]:
    logger.warning("RISK_BLOCKED %s: %s", check, reason)
    return False, reason


def check_account_restricted(ctx: RiskContext) -> Tuple[bool, str]:
    if ctx.account.get("trading_blocked") or ctx.account.get("account_blocked"):
        return _blocked("check_account_restricted", REASON_ACCOUNT_RESTRICTED)
    return True, ""


def check_market_hours(ctx: RiskContext) -> Tuple[bool, str]:
    """Stocks trade only during the session; crypto is exempt."""
    if not ctx.is_crypto and not ctx.market_open:
        return _blocked("check_market_hours", REASON_MARKET_CLOSED)
    return True, ""


def check_existing_position(ctx: RiskContext) -> Tuple[bool, str]:
    """No adding to a position in the direction it already points."""
    side = position_side(find_position(ctx.positions, ctx.symbol))
    if (ctx.side == "buy" and side == "LONG") or (ctx.side == "sell" and side == "SHORT"):
        return _blocked("check_existing_position", REASON_SAME_DIRECTION)
    return True, ""


def check_buying_power(ctx: RiskContext) -> Tuple[bool, str]:
    if ctx.side != "buy":
        return True, ""
    usable = ctx.buying_power * (1.0 - ctx.cfg.BUYING_POWER_BUFFER)
    if ctx.notional > usable:
        return _blocked(
            "check_buying_power",
            f"Insufficient buying power: need ${ctx.notional:.2f}, usable ${usable:.2f}",
        )
    return True, ""


def check_position_limit(ctx: RiskContext) -> Tuple[bool, str]:
    """Position after the order must stay within MAX_POSITION_PCT of equity."""
    if ctx.side != "buy" or ctx.equity <= 0:
        return True, ""
    existing = abs(_f((find_position(ctx.positions, ctx.symbol) or {}).get("market_value")))
    limit = ctx.equity * ctx.cfg.MAX_POSITION_PCT
    if existing + ctx.notional > limit:
        return _blocked(
            "check_position_limit",
            f"Position {ctx.symbol} would be ${existing + ctx.notional:.2f} > limit ${limit:.2f}",
        )
    return True, ""


def check_trade_value(ctx: RiskContext) -> Tuple[bool, str]:
    cfg = ctx.cfg
    if ctx.notional < cfg.MIN_ORDER_VALUE:
        return _blocked("check_trade_value", f"Order value ${ctx.notional:.2f} < minimum ${cfg.MIN_ORDER_VALUE:.2f}")
    if ctx.notional > cfg.MAX_ORDER_VALUE:
        return _blocked("check_trade_value", f"Order value ${ctx.notional:.2f} > maximum ${cfg.MAX_ORDER_VALUE:.2f}")
    return True, ""


def check_daily_limits(ctx: RiskContext) -> Tuple[bool, str]:
    cfg = ctx.cfg
    if ctx.orders_today >= cfg.MAX_ORDERS_PER_DAY:
        return _blocked("check_daily_limits", f"Max orders today ({ctx.orders_today}) reached")
    if ctx.daily_pnl_pct is not None and ctx.daily_pnl_pct <= -cfg.MAX_DAILY_LOSS_PCT:
        return _blocked(
            "check_daily_limits",
            f"Daily loss {ctx.daily_pnl_pct * 100:.2f}% exceeds limit {cfg.MAX_DAILY_LOSS_PCT * 100:.1f}%",
        )
    return True, ""


def check_pdt(ctx: RiskContext) -> Tuple[bool, str]:
    """
    Pattern day trader guard for equities under the PDT equity threshold.
    Crypto and accounts at or above the threshold are exempt.
    """
    cfg = ctx.cfg
    if ctx.is_crypto or ctx.equity >= cfg.PDT_EQUITY_THRESHOLD:
        return True, ""

    position = find_position(ctx.positions, ctx.symbol)
    side = position_side(position)
    closing = (ctx.side == "sell" and side == "LONG") or (ctx.side == "buy" and side == "SHORT")
    opened_today = {_pos_key(s) for s in ctx.opened_today}
    if closing:
        if _pos_key(ctx.symbol) in opened_today:
            return _blocked(
                "check_pdt",
                f"PDT: closing {ctx.symbol} opened today would be a day trade (equity ${ctx.equity:,.2f} < ${cfg.PDT_EQUITY_THRESHOLD:,.0f})",
            )
        return True, ""

    day_trades = int(_f(ctx.account.get("daytrade_count"), 0))
    if day_trades >= cfg.PDT_MAX_DAY_TRADES:
        return _blocked("check_pdt", f"PDT: {day_trades} day trades used, avoiding new stock positions")
    if ctx.equity < cfg.SMALL_ACCOUNT_EQUITY and len(ctx.positions or []) >= cfg.SMALL_ACCOUNT_MAX_POSITIONS:
        return _blocked(
            "check_pdt",
            f"Small account: {len(ctx.positions)} positions open with equity ${ctx.equity:,.2f}",
        )
    return True, ""


CHECKS = (
    check_account_restricted,
    check_market_hours,
    check_existing_position,
    check_buying_power,
    check_position_limit,
    check_trade_value,
    check_daily_limits,
    check_pdt,
)


def evaluate(ctx: RiskContext) -> Tuple[bool, str]:
    """Run every check in order. Returns (allowed, reason of the first block)."""
    for check in CHECKS:
        ok, reason = check(ctx)
        if not ok:
            return False, reason
    return True, ""
