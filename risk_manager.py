"""
Risk Manager
Entry gating (pause, daily limit, open positions, trading hours) and
closed-trade statistics. All dates and hours come from candle time (UTC).
"""

import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Dict, Optional

import config
from settings import LimitSettings

logger = logging.getLogger(__name__)


def utc_date(time_ms: int) -> str:
    return datetime.fromtimestamp(time_ms / 1000.0, tz=timezone.utc).date().isoformat()


def utc_hour(time_ms: int) -> int:
    return datetime.fromtimestamp(time_ms / 1000.0, tz=timezone.utc).hour


@dataclass
class DailyTradeCounter:
    count: int = 0
    date:  Optional[str] = None

    def roll(self, time_ms: int) -> bool:
        """Reset when the candle's UTC date changes; True on reset."""
        today = utc_date(time_ms)
        if self.date != today:
            if self.date is not None:
                logger.info(f"🔄 New day {today} - resetting daily trade count ({self.count})")
            self.date = today
            self.count = 0
            return True
        return False

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "DailyTradeCounter":
        return cls(count=int(data.get("count", 0)), date=data.get("date"))


@dataclass
class TradeRecord:
    pattern:      str
    entry_time:   int
    exit_time:    int
    entry_price:  float
    exit_price:   float
    profit_pct:   float
    is_win:       bool
    duration_ms:  int
    bars_held:    int
    reason:       str
    confidence:   float
    regime:       Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TradeStats:
    total:            int   = 0
    wins:             int   = 0
    losses:           int   = 0
    total_profit_pct: float = 0.0
    max_drawdown_pct: float = 0.0     # worst single-trade loss
    total_duration_ms: int  = 0
    exit_reasons:     Dict[str, int] = field(default_factory=dict)

    @property
    def win_rate(self) -> float:
        return self.wins / self.total * 100 if self.total else 0.0

    @property
    def avg_profit_pct(self) -> float:
        return self.total_profit_pct / self.total if self.total else 0.0

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.total if self.total else 0.0

    def record(self, trade: TradeRecord) -> None:
        self.total += 1
        if trade.is_win:
            self.wins += 1
        else:
            self.losses += 1
            self.max_drawdown_pct = max(self.max_drawdown_pct, -trade.profit_pct)
        self.total_profit_pct += trade.profit_pct
        self.total_duration_ms += trade.duration_ms
        self.exit_reasons[trade.reason] = self.exit_reasons.get(trade.reason, 0) + 1

        if self.total % config.TRADE_STATS_LOG_EVERY == 0:
            logger.info(
                f"📊 Trade stats: {self.total} trades | win rate {self.win_rate:.1f}% | "
                f"avg {self.avg_profit_pct:+.2f}% | max loss {self.max_drawdown_pct:.2f}%")

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["exit_reasons"] = dict(self.exit_reasons)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TradeStats":
        return cls(
            total=int(data.get("total", 0)),
            wins=int(data.get("wins", 0)),
            losses=int(data.get("losses", 0)),
            total_profit_pct=float(data.get("total_profit_pct", 0.0)),
            max_drawdown_pct=float(data.get("max_drawdown_pct", 0.0)),
            total_duration_ms=int(data.get("total_duration_ms", 0)),
            exit_reasons=dict(data.get("exit_reasons") or {}),
        )


class RiskManager:
    """Entry gates and trade bookkeeping for one instrument"""

    def __init__(self, limits: LimitSettings):
        self.limits = limits

    def can_enter(self, now_ms: int, paused: bool, daily: DailyTradeCounter,
                  open_positions: int) -> tuple[bool, str]:
        limits = self.limits

        if paused:
            return False, "Circuit breaker paused"

        # ── Daily trade limit ─────────────────────────────────────────────
        if daily.count >= limits.max_daily_trades:
            return False, f"Daily trade limit ({limits.max_daily_trades})"

        # ── Open positions ────────────────────────────────────────────────
        if open_positions >= limits.max_open_positions:
            return False, f"Max open positions ({limits.max_open_positions})"

        # ── Trading hours (UTC) ───────────────────────────────────────────
        if limits.enable_time_filter:
            hour = utc_hour(now_ms)
            if not (limits.trading_hours_start <= hour < limits.trading_hours_end):
                return False, (f"Outside trading hours "
                               f"({limits.trading_hours_start}-{limits.trading_hours_end} UTC)")

        return True, "OK"

    def record_trade(self, stats: TradeStats, trade: TradeRecord) -> None:
        """Record a completed trade"""
        stats.record(trade)
        logger.info(
            f"📊 Trade recorded: {trade.pattern} | {trade.reason} | "
            f"{trade.profit_pct:+.2f}% | Total: {stats.total}")

    def get_statistics(self, stats: TradeStats) -> Dict:
        """Get risk statistics"""
        return {
            "total_trades": stats.total,
            "winning_trades": stats.wins,
            "losing_trades": stats.losses,
            "win_rate": stats.win_rate,
            "avg_profit_pct": stats.avg_profit_pct,
            "total_profit_pct": stats.total_profit_pct,
            "max_drawdown_pct": stats.max_drawdown_pct,
            "avg_duration_ms": stats.avg_duration_ms,
            "exit_reasons": dict(stats.exit_reasons),
        }
