"""
config.py — Single source of truth for all engine defaults.
Naming: UPPER_SNAKE_CASE throughout. settings.py builds its typed schema
from these values; process-level values come from .env.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ─────────────────────────────────────────────
# PROCESS / LOGGING
# ─────────────────────────────────────────────
LOG_LEVEL          = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE           = os.getenv("LOG_FILE", "")            # empty = console only
WEBHOOK_URL        = os.getenv("WEBHOOK_URL", "")         # empty = no webhook publishing
WEBHOOK_TIMEOUT_SEC = float(os.getenv("WEBHOOK_TIMEOUT_SEC", "10"))
TRADE_HISTORY_FILE = os.getenv("TRADE_HISTORY_FILE", "")  # JSON-lines, empty = disabled
SETTINGS_FILE      = os.getenv("ALGO1META_SETTINGS", "")  # flat JSON settings map
PUBLISH_QUEUE_SIZE = 100

# ─────────────────────────────────────────────
# META DECISION
# (meta_arbiter.py, regime_engine.py)
# ─────────────────────────────────────────────
DECISION_MODE                  = "best_confidence"   # or "regime_based"
DECISION_MODES                 = ("best_confidence", "regime_based")
MIN_CONFIDENCE_THRESHOLD       = 6.0
MIN_CONFIDENCE_DIFFERENCE      = 1.5
ENABLE_REGIME_FILTER           = True
POSITION_SIZE_SCALING          = True
TREND_ADX_THRESHOLD            = 25.0
REGIME_UPDATE_INTERVAL_MINUTES = 15.0
REGIME_LOOKBACK                = 20
REGIME_HIGH_RATIO              = 1.5
REGIME_LOW_RATIO               = 0.7
WARMUP_CANDLES                 = 52                  # indicator warm-up before NaN counts as a fault

# ─────────────────────────────────────────────
# CONFIDENCE SCALE
# ─────────────────────────────────────────────
CONFIDENCE_MIN = 0.0
CONFIDENCE_MAX = 10.0

# ─────────────────────────────────────────────
# FLASH CRASH
# ─────────────────────────────────────────────
FLASH_CRASH_ENABLED           = True
FLASH_CRASH_PCT               = 2.5
FLASH_CRASH_DECLINE_PERIODS   = 1
FLASH_CRASH_CONSECUTIVE_RED   = 3
FLASH_CRASH_RSI_OVERSOLD      = 30.0
FLASH_CRASH_VOLUME_SPIKE      = 1.5
FLASH_CRASH_ATR_RISE          = 1.2
FLASH_CRASH_STOP_LOSS_PCT     = 1.5
FLASH_CRASH_PROFIT_TARGET_PCT = 2.0

# ─────────────────────────────────────────────
# POST STAGNATION
# ─────────────────────────────────────────────
POST_STAGNATION_ENABLED           = True
POST_STAGNATION_BB_THRESHOLD      = 0.08
POST_STAGNATION_ADX_MAX           = 20.0
POST_STAGNATION_SEARCH_CANDLES    = 5
POST_STAGNATION_RECOVERY_PCT      = 0.6
POST_STAGNATION_MIN_DECLINE_PCT   = 5.0
POST_STAGNATION_STOP_LOSS_PCT     = 1.8
POST_STAGNATION_PROFIT_TARGET_PCT = 1.6

# ─────────────────────────────────────────────
# UNSTEADY DECLINE
# ─────────────────────────────────────────────
UNSTEADY_DECLINE_ENABLED           = True
UNSTEADY_DECLINE_LOOKBACK          = 24
UNSTEADY_DECLINE_MIN_PCT           = 4.5
UNSTEADY_DECLINE_MAX_PCT           = 5.5
UNSTEADY_DECLINE_MIN_UP_RATIO      = 0.3
UNSTEADY_DECLINE_DIVERGENCE_LOOKBACK = 12
UNSTEADY_DECLINE_REVERSAL_ADX      = 30.0
UNSTEADY_DECLINE_STOP_LOSS_PCT     = 1.65
UNSTEADY_DECLINE_PROFIT_TARGET_PCT = 1.8

# ─────────────────────────────────────────────
# OVERSOLD RSI (backup entry, off by default)
# ─────────────────────────────────────────────
OVERSOLD_RSI_ENABLED           = False
OVERSOLD_RSI_LEVEL             = 30.0
OVERSOLD_RSI_DEEP_OFFSET       = 10.0
OVERSOLD_RSI_SIZE_MULTIPLIER   = 0.7

# ─────────────────────────────────────────────
# BASE RISK
# (tpsl_calculator.py, position_manager.py)
# ─────────────────────────────────────────────
STOP_LOSS_PCT                = 1.5
PROFIT_TARGET_PCT            = 2.0
POSITION_SIZE_PCT            = 10.0
TRAILING_STOP_PCT            = 1.0
TRAILING_STOP_ACTIVATION_PCT = 1.0
MIN_SIZE_FRACTION_OF_BASE    = 0.5   # confidence 0 sizes at half the base

# Regime multipliers: (stop, target, size)
VOLATILITY_MULTIPLIERS = {
    "high":   (1.3, 1.5, 0.7),
    "normal": (1.0, 1.0, 1.0),
    "low":    (0.8, 0.8, 1.2),
}
TREND_ALIGNED_MULTIPLIERS = (1.0, 1.2, 1.1)
TREND_OPPOSED_MULTIPLIERS = (0.9, 1.0, 0.9)
LOW_LIQUIDITY_SIZE_MULT   = 0.8

STOP_LOSS_BOUNDS     = (0.5, 5.0)
PROFIT_TARGET_BOUNDS = (1.0, 10.0)
POSITION_SIZE_BOUNDS = (5.0, 20.0)

# ─────────────────────────────────────────────
# POSITION LIMITS & EXITS
# (risk_manager.py, position_manager.py)
# ─────────────────────────────────────────────
MAX_OPEN_POSITIONS       = 1
MAX_DAILY_TRADES         = 5
MAX_HOLD_PERIODS         = 288       # candles
MINOR_PROFIT_FLOOR_PCT   = 5.0
ERROR_EXIT_THRESHOLD     = 5         # calculation errors while in position
EXIT_ON_MACD_CROSS       = False
ENABLE_TIME_FILTER       = False
TRADING_HOURS_START      = 8         # UTC hour, inclusive
TRADING_HOURS_END        = 20        # UTC hour, exclusive
TRADE_STATS_LOG_EVERY    = 10

# ─────────────────────────────────────────────
# CIRCUIT BREAKER
# ─────────────────────────────────────────────
AUTO_PAUSE_ON_ERRORS = True
PAUSE_ERROR_THRESHOLD = 10           # pause once total errors exceed this
PAUSE_MINUTES         = 15.0

# ─────────────────────────────────────────────
# DATA VALIDATION / HISTORY
# ─────────────────────────────────────────────
MAX_PRICE_JUMP_PCT     = 50.0
HISTORY_MAXLEN         = 256
STATE_HISTORY_MAXLEN   = 100

# ─────────────────────────────────────────────
# REGIME → PATTERN COMPATIBILITY
# key: "<volatility>-<trend>", unknown keys allow every pattern
# ─────────────────────────────────────────────
REGIME_PATTERN_COMPATIBILITY = {
    "high-bearish":   ("flash_crash", "unsteady_decline"),
    "high-neutral":   ("flash_crash",),
    "high-bullish":   (),
    "normal-bearish": ("unsteady_decline", "post_stagnation", "oversold_rsi"),
    "normal-neutral": ("post_stagnation",),
    "normal-bullish": (),
    "low-bearish":    ("unsteady_decline", "oversold_rsi"),
    "low-neutral":    ("post_stagnation",),
    "low-bullish":    (),
}
