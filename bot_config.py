"""
Bot configuration as posted by the dashboard (camelCase JSON) <-> dataclasses.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MODES = ("CONSERVATIVE", "BALANCED", "AGGRESSIVE")
DEFAULT_MIN_CONFIDENCE = 0.80


def _f(d: Dict[str, Any], key: str, default: float) -> float:
    v = d.get(key)
    if v is None or v == "":
        return default
    return float(v)


def _i(d: Dict[str, Any], key: str, default: int) -> int:
    v = d.get(key)
    if v is None or v == "":
        return default
    return int(v)


@dataclass
class StrategyPerformance:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    total_return: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "StrategyPerformance":
        d = d or {}
        return cls(
            total_trades=_i(d, "totalTrades", 0),
            winning_trades=_i(d, "winningTrades", 0),
            losing_trades=_i(d, "losingTrades", 0),
            win_rate=_f(d, "winRate", 0.0),
            avg_win=_f(d, "avgWin", 0.0),
            avg_loss=_f(d, "avgLoss", 0.0),
            profit_factor=_f(d, "profitFactor", 0.0),
            total_return=_f(d, "totalReturn", 0.0),
            sharpe_ratio=_f(d, "sharpeRatio", 0.0),
            max_drawdown=_f(d, "maxDrawdown", 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTrades": self.total_trades,
            "winningTrades": self.winning_trades,
            "losingTrades": self.losing_trades,
            "winRate": self.win_rate,
            "avgWin": self.avg_win,
            "avgLoss": self.avg_loss,
            "profitFactor": self.profit_factor,
            "totalReturn": self.total_return,
            "sharpeRatio": self.sharpe_ratio,
            "maxDrawdown": self.max_drawdown,
        }


@dataclass
class StrategyConfig:
    id: str
    name: str = ""
    type: str = "technical"
    enabled: bool = True
    weight: float = 1.0
    parameters: Dict[str, Any] = field(default_factory=dict)
    performance: StrategyPerformance = field(default_factory=StrategyPerformance)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StrategyConfig":
        sid = str(d.get("id") or d.get("name") or "").strip()
        if not sid:
            raise ValueError("strategy requires an id")
        return cls(
            id=sid,
            name=str(d.get("name") or sid),
            type=str(d.get("type") or "technical"),
            enabled=bool(d.get("enabled", True)),
            weight=_f(d, "weight", 1.0),
            parameters=dict(d.get("parameters") or {}),
            performance=StrategyPerformance.from_dict(d.get("performance")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "enabled": self.enabled,
            "weight": self.weight,
            "parameters": dict(self.parameters),
            "performance": self.performance.to_dict(),
        }


@dataclass
class RiskManagement:
    max_position_size: float = 0.05
    max_daily_loss: float = 0.02
    max_drawdown: float = 0.10
    min_confidence: float = 0.75
    stop_loss_percent: float = 0.05
    take_profit_percent: float = 0.10

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "RiskManagement":
        d = d or {}
        return cls(
            max_position_size=_f(d, "maxPositionSize", 0.05),
            max_daily_loss=_f(d, "maxDailyLoss", 0.02),
            max_drawdown=_f(d, "maxDrawdown", 0.10),
            min_confidence=_f(d, "minConfidence", 0.75),
            stop_loss_percent=_f(d, "stopLossPercent", 0.05),
            take_profit_percent=_f(d, "takeProfitPercent", 0.10),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxPositionSize": self.max_position_size,
            "maxDailyLoss": self.max_daily_loss,
            "maxDrawdown": self.max_drawdown,
            "minConfidence": self.min_confidence,
            "stopLossPercent": self.stop_loss_percent,
            "takeProfitPercent": self.take_profit_percent,
        }


@dataclass
class ExecutionSettings:
    auto_execute: bool = True
    min_confidence_for_order: float = 0.80
    max_orders_per_day: int = 20
    order_size_percent: float = 0.02
    slippage_tolerance: float = 0.01
    market_hours_only: bool = False

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "ExecutionSettings":
        d = d or {}
        auto = d.get("autoExecute")
        return cls(
            # unspecified means on
            auto_execute=True if auto is None else bool(auto),
            min_confidence_for_order=_f(d, "minConfidenceForOrder", 0.80),
            max_orders_per_day=_i(d, "maxOrdersPerDay", 20),
            order_size_percent=_f(d, "orderSizePercent", 0.02),
            slippage_tolerance=_f(d, "slippageTolerance", 0.01),
            market_hours_only=bool(d.get("marketHoursOnly", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "autoExecute": self.auto_execute,
            "minConfidenceForOrder": self.min_confidence_for_order,
            "maxOrdersPerDay": self.max_orders_per_day,
            "orderSizePercent": self.order_size_percent,
            "slippageTolerance": self.slippage_tolerance,
            "marketHoursOnly": self.market_hours_only,
        }


@dataclass
class ScheduleSettings:
    trading_start: str = "09:30"
    trading_end: str = "16:00"
    excluded_days: List[str] = field(default_factory=list)
    cooldown_minutes: int = 0

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "ScheduleSettings":
        d = d or {}
        hours = d.get("tradingHours") or {}
        return cls(
            trading_start=str(hours.get("start") or "09:30"),
            trading_end=str(hours.get("end") or "16:00"),
            excluded_days=[str(x) for x in (d.get("excludedDays") or [])],
            cooldown_minutes=_i(d, "cooldownMinutes", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tradingHours": {"start": self.trading_start, "end": self.trading_end},
            "excludedDays": list(self.excluded_days),
            "cooldownMinutes": self.cooldown_minutes,
        }


@dataclass
class BotConfig:
    mode: str = "BALANCED"
    strategies: List[StrategyConfig] = field(default_factory=list)
    risk_management: RiskManagement = field(default_factory=RiskManagement)
    execution_settings: ExecutionSettings = field(default_factory=ExecutionSettings)
    schedule_settings: ScheduleSettings = field(default_factory=ScheduleSettings)
    watchlist: List[str] = field(default_factory=list)
    # False when the dashboard did not send riskManagement.minConfidence
    explicit_min_confidence: bool = False

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "BotConfig":
        """Parse the dashboard payload. Raises ValueError on an unknown mode or bad numbers."""
        d = d or {}
        mode = str(d.get("mode") or "BALANCED").upper()
        if mode not in MODES:
            raise ValueError(f"Unknown bot mode: {d.get('mode')}")
        risk = d.get("riskManagement") or {}
        try:
            return cls(
                mode=mode,
                strategies=[StrategyConfig.from_dict(s) for s in (d.get("strategies") or [])],
                risk_management=RiskManagement.from_dict(risk),
                execution_settings=ExecutionSettings.from_dict(d.get("executionSettings")),
                schedule_settings=ScheduleSettings.from_dict(d.get("scheduleSettings")),
                watchlist=[str(s).upper() for s in (d.get("watchlist") or [])],
                explicit_min_confidence=risk.get("minConfidence") not in (None, "", 0),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid bot config: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "strategies": [s.to_dict() for s in self.strategies],
            "riskManagement": self.risk_management.to_dict(),
            "executionSettings": self.execution_settings.to_dict(),
            "scheduleSettings": self.schedule_settings.to_dict(),
            "watchlist": list(self.watchlist),
        }

    def min_confidence(self) -> float:
        """Gate for acting on a signal. 0.80 unless the dashboard set riskManagement.minConfidence."""
        if self.explicit_min_confidence:
            return self.risk_management.min_confidence
        return DEFAULT_MIN_CONFIDENCE

    def enabled_strategies(self) -> List[StrategyConfig]:
        return [s for s in self.strategies if s.enabled]

    def summary(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "strategiesEnabled": len(self.strategies),
            "autoExecution": self.execution_settings.auto_execute,
            "watchlistSize": len(self.watchlist),
        }
